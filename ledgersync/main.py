"""
FastAPI application for the ledger sync engine.
Configures the API server with routes, middleware, and the engine lifecycle.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, status
from fastapi.responses import JSONResponse

import structlog

from ledgersync import __version__
from ledgersync.api.middleware import add_middleware
from ledgersync.api.routes import maintenance, sync
from ledgersync.api.schemas import create_success_response
from ledgersync.core.config import Settings, get_settings
from ledgersync.core.context import AppContext
from ledgersync.core.logging import setup_logging

logger = structlog.get_logger(__name__)


def create_app(settings: Optional[Settings] = None, context: Optional[AppContext] = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or (context.settings if context else get_settings())
    setup_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting ledgersync API server", environment=settings.environment)
        app_context = app.state.context or AppContext(settings)
        app.state.context = app_context
        await app_context.start()
        try:
            yield
        finally:
            logger.info("Shutting down ledgersync API server")
            await app_context.stop()

    app = FastAPI(
        title=settings.app_name,
        description="Keeps per-property and per-company ledgers in step with operational payments.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.context = context
    add_middleware(app)

    @app.get("/health", tags=["System"], summary="Health Check")
    async def health_check():
        """Liveness of both stores."""
        app_context = app.state.context
        if app_context is None:
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "starting"}
            )
        health = await app_context.database_health()
        if health["status"] != "healthy":
            return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=health)
        return health

    @app.get("/", tags=["System"], summary="API Information")
    async def root():
        return create_success_response(
            {"version": __version__, "environment": settings.environment},
            f"{settings.app_name} v{__version__}"
        )

    app.include_router(
        sync.router,
        prefix=f"{settings.api_v1_prefix}/sync",
        tags=["Sync"]
    )

    app.include_router(
        maintenance.router,
        prefix=f"{settings.api_v1_prefix}/maintenance",
        tags=["Maintenance"]
    )

    logger.info("FastAPI application created")
    return app


def run() -> None:
    """Serve the API with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "ledgersync.main:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        reload=settings.is_development,
        log_level=settings.log_level.lower()
    )


if __name__ == "__main__":
    run()
