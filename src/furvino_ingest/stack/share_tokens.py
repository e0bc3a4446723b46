"""Short-lived upload-only share tokens for direct client uploads."""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from furvino_ingest.core.exceptions import StackError
from furvino_ingest.stack.client import StorageClient
from furvino_ingest.stack.protocol import UPLOAD_ONLY

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UploadShare:
    """Credentials that let a client upload into one directory."""

    share_id: int
    url_token: str
    share_token: str
    parent_node_id: int
    expires_at: int

    def needs_renewal(self, margin_seconds: int = 300, now: Optional[float] = None) -> bool:
        """True once the share is within ``margin_seconds`` of expiring."""
        current = time.time() if now is None else now
        return current >= self.expires_at - margin_seconds


class ShareTokenManager:
    """Issues and revokes upload-only shares scoped to a directory."""

    def __init__(
        self,
        storage_client: StorageClient,
        default_ttl_seconds: int = 1800,
        clock: Callable[[], float] = time.time,
    ):
        self.storage_client = storage_client
        self.default_ttl_seconds = default_ttl_seconds
        self._clock = clock

    async def create_upload_share(self, target_dir_node_id: int, ttl_seconds: Optional[int] = None) -> UploadShare:
        """Create an upload-only share on a directory and authorize it.

        The share may create files and directories but cannot read, update or
        delete anything. Its url token is exchanged right away for the bearer
        share token used by upload requests.
        """
        ttl = ttl_seconds or self.default_ttl_seconds
        expires_at = int(self._clock()) + ttl
        created = await self.storage_client.create_share(
            target_dir_node_id, UPLOAD_ONLY, expires_at=expires_at
        )
        try:
            share_token = await self.storage_client.authorize_share(created.url_token)
        except StackError:
            logger.warning(
                "Share authorization failed, deleting share", extra={"share_id": created.share_id}
            )
            try:
                await self.storage_client.delete_share(created.share_id)
            except StackError as e:
                logger.error(
                    f"Failed to delete unauthorized share: {e}", extra={"share_id": created.share_id}
                )
            raise

        logger.info(
            "Upload share created",
            extra={"share_id": created.share_id, "parent_node_id": target_dir_node_id, "expires_at": expires_at},
        )
        return UploadShare(
            share_id=created.share_id,
            url_token=created.url_token,
            share_token=share_token,
            parent_node_id=target_dir_node_id,
            expires_at=expires_at,
        )

    async def create_upload_share_for_path(self, path_parts: list[str], ttl_seconds: Optional[int] = None) -> UploadShare:
        """Find or create a directory path and issue an upload share on it."""
        node_id = await self.storage_client.ensure_directory_path(path_parts)
        return await self.create_upload_share(node_id, ttl_seconds)

    async def revoke(self, share_id: int) -> None:
        """Delete a share; an expired or already deleted share is fine."""
        await self.storage_client.delete_share(share_id)
        logger.info("Upload share revoked", extra={"share_id": share_id})

    async def renew(self, share: UploadShare, ttl_seconds: Optional[int] = None) -> UploadShare:
        """Issue a fresh share for the same directory and revoke the old one.

        There is no way to extend a share, so renewal swaps credentials.
        """
        fresh = await self.create_upload_share(share.parent_node_id, ttl_seconds)
        await self.revoke(share.share_id)
        return fresh
