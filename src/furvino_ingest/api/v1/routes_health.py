"""Health check endpoint for the Furvino ingest service."""

from fastapi import APIRouter, Depends

from furvino_ingest.api.dependencies import get_settings
from furvino_ingest.core.config import Settings

router = APIRouter()


@router.get("/health")
async def health_check(settings: Settings = Depends(get_settings)) -> dict:
    """Health check endpoint.

    Returns:
        dict: Health status response with status, service, and version fields
    """
    return {
        "status": "ok",
        "service": settings.SERVICE_NAME,
        "version": settings.SERVICE_VERSION,
    }
