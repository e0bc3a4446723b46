"""Chunked upload session API routes."""

import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request

from furvino_ingest.api.dependencies import (
    get_consistency_waiter,
    get_settings,
    get_staging,
    get_storage_client,
)
from furvino_ingest.core.config import Settings
from furvino_ingest.core.exceptions import (
    ConsistencyTimeoutError,
    IncompleteUploadError,
    InvalidPartNumberError,
    InvalidTargetFolderError,
    StackError,
    UploadAlreadyFinalizingError,
    UploadNotFoundError,
)
from furvino_ingest.core.logging import upload_id_context
from furvino_ingest.models.upload import (
    CompleteUploadRequest,
    CompleteUploadResponse,
    InitUploadRequest,
    InitUploadResponse,
    PartUploadResponse,
    UploadMetaResponse,
    UploadStatusResponse,
)
from furvino_ingest.stack.client import StorageClient
from furvino_ingest.stack.consistency import ConsistencyWaiter
from furvino_ingest.storage.staging import UploadStaging

router = APIRouter(prefix="/uploads", tags=["uploads"])
logger = logging.getLogger(__name__)


@router.post("/init", response_model=InitUploadResponse, status_code=201)
async def init_upload(
    request: InitUploadRequest = Body(...),
    staging: UploadStaging = Depends(get_staging),
) -> InitUploadResponse:
    """Open an upload session; the returned part size is authoritative."""
    try:
        if not request.filename.strip():
            raise HTTPException(status_code=400, detail="filename is required")

        result = staging.init_upload(
            target_folder=request.target_folder,
            filename=request.filename,
            total_size=request.total_size,
            part_size=request.part_size,
        )
        return InitUploadResponse(
            upload_id=result.upload_id,
            part_size=result.part_size,
            filename=result.filename,
            target_folder=result.target_folder,
            stack_path=result.stack_path,
        )

    except HTTPException:
        raise
    except InvalidTargetFolderError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Unexpected error initializing upload: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.put("/{upload_id}/part", response_model=PartUploadResponse)
async def upload_part(
    upload_id: str,
    request: Request,
    part: int = Query(...),
    staging: UploadStaging = Depends(get_staging),
) -> PartUploadResponse:
    """Store one part from the raw request body; re-sending a part replaces it."""
    upload_id_context.set(upload_id)
    try:
        size_bytes = await staging.write_part(upload_id, part, request.stream())
        return PartUploadResponse(part=part, size_bytes=size_bytes)

    except InvalidPartNumberError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except UploadNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to store part {part}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to store part")


@router.get("/{upload_id}/status", response_model=UploadStatusResponse)
async def get_upload_status(
    upload_id: str,
    staging: UploadStaging = Depends(get_staging),
) -> UploadStatusResponse:
    """Report session metadata and the part numbers received so far."""
    upload_id_context.set(upload_id)
    try:
        meta = staging.get_meta(upload_id)
        parts = staging.list_received_parts(upload_id)
    except UploadNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    return UploadStatusResponse(
        meta=UploadMetaResponse(
            id=meta.id,
            filename=meta.sanitized_filename,
            target_folder=meta.target_folder,
            part_size=meta.part_size,
            total_size=meta.total_size,
            stack_path=staging.stack_path_for(meta.target_folder, meta.sanitized_filename),
            created_at=meta.created_at,
        ),
        parts=parts,
    )


@router.post("/{upload_id}/complete", response_model=CompleteUploadResponse)
async def complete_upload(
    upload_id: str,
    request: Optional[CompleteUploadRequest] = Body(default=None),
    staging: UploadStaging = Depends(get_staging),
    storage_client: Optional[StorageClient] = Depends(get_storage_client),
    waiter: Optional[ConsistencyWaiter] = Depends(get_consistency_waiter),
    settings: Settings = Depends(get_settings),
) -> CompleteUploadResponse:
    """Assemble the parts into the final file, optionally publishing a share URL."""
    upload_id_context.set(upload_id)
    total_parts = request.total_parts if request else None

    try:
        result = await staging.finalize(upload_id, expected_total_parts=total_parts)
    except UploadNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except (IncompleteUploadError, UploadAlreadyFinalizingError) as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        logger.error(f"Unexpected error finalizing upload: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")

    share_url = None
    if settings.SHARE_ON_COMPLETE and storage_client is not None and waiter is not None:
        try:
            node_id = await waiter.wait_for_node(result.stack_path)
            share_url = await storage_client.share_node(node_id)
        except ConsistencyTimeoutError as e:
            raise HTTPException(status_code=504, detail=str(e))
        except StackError as e:
            logger.error(f"Failed to share uploaded file: {e}", extra={"stack_path": result.stack_path})
            raise HTTPException(status_code=502, detail=f"Storage backend error: {e}")

    return CompleteUploadResponse(
        stack_path=result.stack_path,
        size_bytes=result.size_bytes,
        share_url=share_url,
    )
