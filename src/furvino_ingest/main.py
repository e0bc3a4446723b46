"""Main application entrypoint for the Furvino ingest service."""

from contextlib import asynccontextmanager

from fastapi import FastAPI

from furvino_ingest.api.dependencies import close_dependencies, init_dependencies
from furvino_ingest.api.v1 import routes_health
from furvino_ingest.api.v1.routes_upload_tokens import router as upload_tokens_router
from furvino_ingest.api.v1.routes_uploads import router as uploads_router
from furvino_ingest.core.config import Settings, settings as default_settings
from furvino_ingest.core.logging import setup_logging


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    await close_dependencies(app)


def create_app(settings: Settings = default_settings) -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        FastAPI: Configured FastAPI application instance
    """
    # Initialize logging first
    setup_logging(settings)

    app = FastAPI(
        title=settings.SERVICE_NAME,
        version=settings.SERVICE_VERSION,
        lifespan=lifespan,
    )
    init_dependencies(app, settings)

    # Register routers
    app.include_router(routes_health.router, tags=["health"])
    app.include_router(uploads_router)
    app.include_router(upload_tokens_router)

    return app


# Export app instance for ASGI servers
app = create_app()
