"""FastAPI application entry point."""

import asyncio
import contextlib
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.api.v1 import router as v1_router
from src.core.cache import get_registry_caches
from src.core.config import get_settings
from src.core.database import close_database, init_database
from src.core.exceptions import setup_exception_handlers
from src.core.logging import APP_LOGGER_NAME, setup_logging, setup_request_logging
from src.services.cache_invalidation import close_invalidation_bus, init_invalidation_bus

logger = logging.getLogger(APP_LOGGER_NAME)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:  # noqa: ARG001
    """Application lifespan handler for startup and shutdown."""
    # Startup
    settings = get_settings()
    init_database(settings)
    bus = init_invalidation_bus(settings, get_registry_caches())
    listener = asyncio.create_task(bus.listen()) if bus is not None else None
    logger.info(
        "Application started",
        extra={"env": settings.app_env, "cache_invalidation": bus is not None},
    )
    try:
        yield
    finally:
        # Shutdown
        logger.info("Application shutting down")
        try:
            if listener is not None:
                listener.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await listener
        finally:
            await close_invalidation_bus()
            await close_database()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    # Setup structured logging first
    setup_logging(settings)

    app = FastAPI(
        title="Experimentation API",
        description="Experiment assignment, feature flags and conversion statistics",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # Setup request logging middleware (must be added before CORS)
    setup_request_logging(app)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    setup_exception_handlers(app)

    @app.get("/health", tags=["health"])
    async def health_check() -> dict[str, str]:
        """Simple health check endpoint for basic liveness probes."""
        return {"status": "healthy"}

    app.include_router(v1_router)

    return app


# Create application instance
app = create_app()


def run() -> None:
    """Run the application with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "src.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.is_development,
        log_level=settings.app_log_level.lower(),
    )


if __name__ == "__main__":
    run()
