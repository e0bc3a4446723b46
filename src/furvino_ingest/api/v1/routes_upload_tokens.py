"""Upload-token handoff routes for direct-to-backend uploads."""

import logging

from fastapi import APIRouter, Body, Depends, HTTPException

from furvino_ingest.api.dependencies import get_settings, get_share_token_manager
from furvino_ingest.core.config import Settings
from furvino_ingest.core.exceptions import InvalidTargetFolderError, StackError
from furvino_ingest.models.share import (
    CreateUploadTokenRequest,
    RevokeUploadTokenRequest,
    UploadTokenResponse,
)
from furvino_ingest.stack.share_tokens import ShareTokenManager
from furvino_ingest.storage.paths import normalize_target_folder, split_path

router = APIRouter(prefix="/upload-tokens", tags=["upload-tokens"])
logger = logging.getLogger(__name__)


@router.post("", response_model=UploadTokenResponse, status_code=201)
async def create_upload_token(
    request: CreateUploadTokenRequest = Body(...),
    manager: ShareTokenManager = Depends(get_share_token_manager),
    settings: Settings = Depends(get_settings),
) -> UploadTokenResponse:
    """Issue an upload-only share on the target folder below the service prefix."""
    try:
        folder = normalize_target_folder(request.target_folder)
        path_parts = [settings.STACK_PREFIX, *split_path(folder)]
        share = await manager.create_upload_share_for_path(path_parts, request.ttl_seconds)
    except InvalidTargetFolderError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StackError as e:
        logger.error(f"Failed to create upload token: {e}", extra={"target_folder": request.target_folder})
        raise HTTPException(status_code=502, detail=f"Storage backend error: {e}")

    return UploadTokenResponse(
        share_url_token=share.url_token,
        share_token=share.share_token,
        share_id=share.share_id,
        parent_node_id=share.parent_node_id,
        expires_at=share.expires_at,
        stack_api_url=settings.STACK_API_URL,
    )


@router.post("/revoke")
async def revoke_upload_token(
    request: RevokeUploadTokenRequest = Body(...),
    manager: ShareTokenManager = Depends(get_share_token_manager),
) -> dict:
    try:
        await manager.revoke(request.share_id)
    except StackError as e:
        logger.error(f"Failed to revoke upload token: {e}", extra={"share_id": request.share_id})
        raise HTTPException(status_code=502, detail=f"Storage backend error: {e}")
    return {"ok": True}
