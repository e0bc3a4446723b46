"""Constructed service dependencies shared by the HTTP routes.

Instances are built once per application in ``create_app`` and kept on
``app.state``; routes resolve them through the ``get_*`` functions so tests
can swap them with ``app.dependency_overrides``.
"""

import logging
from typing import Optional

from fastapi import FastAPI, HTTPException, Request

from furvino_ingest.core.config import Settings
from furvino_ingest.stack.client import StorageClient
from furvino_ingest.stack.consistency import ConsistencyWaiter
from furvino_ingest.stack.share_tokens import ShareTokenManager
from furvino_ingest.storage.staging import UploadStaging

logger = logging.getLogger(__name__)


def init_dependencies(app: FastAPI, settings: Settings) -> None:
    """Build staging, backend client, waiter and token manager for ``app``."""
    app.state.settings = settings
    app.state.staging = UploadStaging.from_settings(settings)
    app.state.storage_client = None
    app.state.consistency_waiter = None
    app.state.share_token_manager = None

    if not settings.stack_configured:
        logger.warning("STACK credentials not configured, sharing and upload tokens are disabled")
        return

    storage_client = StorageClient.from_settings(settings)
    app.state.storage_client = storage_client
    app.state.consistency_waiter = ConsistencyWaiter.from_settings(storage_client, settings)
    app.state.share_token_manager = ShareTokenManager(
        storage_client, default_ttl_seconds=settings.UPLOAD_TOKEN_TTL_SECONDS
    )


async def close_dependencies(app: FastAPI) -> None:
    storage_client = getattr(app.state, "storage_client", None)
    if storage_client is not None:
        await storage_client.aclose()


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_staging(request: Request) -> UploadStaging:
    return request.app.state.staging


def get_storage_client(request: Request) -> Optional[StorageClient]:
    return request.app.state.storage_client


def get_consistency_waiter(request: Request) -> Optional[ConsistencyWaiter]:
    return request.app.state.consistency_waiter


def get_share_token_manager(request: Request) -> ShareTokenManager:
    """Resolve the token manager; upload tokens need a configured backend."""
    manager = request.app.state.share_token_manager
    if manager is None:
        raise HTTPException(status_code=503, detail="Storage backend is not configured")
    return manager
