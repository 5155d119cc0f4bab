"""FlexTasker Core - Main Application Module."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import uvicorn
from beartype import beartype
from fastapi import FastAPI

from .api.middleware.response_cache import ResponseCacheMiddleware
from .api.v1 import router as v1_router
from .core.config import get_settings
from .core.logging_utils import get_logger
from .core.performance_monitor import PerformanceMonitoringMiddleware
from .services.container import AppServices, build_services

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application lifecycle - startup and shutdown."""
    services: AppServices = app.state.services
    logger.info("Starting %s in %s mode", services.settings.app_name, services.settings.api_env)

    await services.start()
    logger.info("Database router, cache and monitors started")

    yield

    logger.info("Shutting down %s", services.settings.app_name)
    await services.stop()
    logger.info("Connections closed")


@beartype
def create_app(services: AppServices | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        services: Pre-built services; built from the environment when omitted.

    Returns:
        FastAPI: Configured application instance
    """
    services = services or build_services()
    settings = services.settings
    get_logger(level=logging.getLevelName(settings.log_level))

    app = FastAPI(
        title=settings.app_name,
        description="Task marketplace data layer: connection routing, response caching and monitoring",
        version="1.0.0",
        docs_url="/docs" if not settings.is_production else None,
        redoc_url="/redoc" if not settings.is_production else None,
        openapi_url="/openapi.json" if not settings.is_production else None,
        lifespan=lifespan,
    )
    app.state.services = services

    # Added last runs first: the performance middleware sees the X-Cache header
    app.add_middleware(ResponseCacheMiddleware, cache=services.response_cache)
    app.add_middleware(PerformanceMonitoringMiddleware, monitor=services.performance_monitor)

    app.include_router(v1_router)

    return app


@beartype
def main() -> None:
    """Run the main application entry point."""
    settings = get_settings()

    uvicorn.run(
        "flextasker_core.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.is_development,
        log_level="info" if not settings.is_production else "error",
    )


if __name__ == "__main__":
    main()
