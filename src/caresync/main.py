"""Main FastAPI application for CareSync.

Runs the device's sync service in the background and exposes the operator
endpoints and Prometheus metrics.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import FastAPI
from prometheus_client import make_asgi_app

from caresync.api import sync_endpoints
from caresync.config import get_settings
from caresync.sync.sync_service import SyncService
from caresync.utils.logging import get_logger, setup_logging

logger = get_logger(__name__)


def create_app(service: Optional[SyncService] = None, start_service: bool = True) -> FastAPI:
    """Create the application.

    Args:
        service: Sync service to expose; built from settings when omitted
        start_service: Run the background sync loop for the app's lifetime
    """
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Application lifespan handler."""
        logger.info("application_starting", app=settings.app_name, version=settings.app_version)
        sync_service = service or SyncService.from_settings(settings)
        app.state.sync_service = sync_service
        if start_service:
            await sync_service.start()

        yield

        logger.info("application_stopping")
        if start_service:
            await sync_service.stop()
        if service is None:
            sync_service.database.close()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Offline-first clinical record synchronization",
        docs_url="/api/docs" if settings.debug else None,
        lifespan=lifespan,
    )
    app.include_router(sync_endpoints.router)
    app.mount("/metrics", make_asgi_app())

    @app.get("/health")
    async def health() -> dict:
        """Liveness probe."""
        return {"status": "ok", "version": settings.app_version}

    return app


def main() -> None:
    """Run the API server."""
    import uvicorn

    setup_logging()
    settings = get_settings()
    uvicorn.run(
        create_app(),
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
