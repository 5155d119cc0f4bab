"""FastAPI dependencies resolving the application's service instances.

The services are created once by the composition root and stored on
``app.state.services``; route handlers receive them through these
dependencies rather than through module-level globals.
"""

from fastapi import Request

from ..core.cache import CacheStore
from ..core.database import ConnectionRouter
from ..core.performance_monitor import PerformanceMonitor
from ..core.pool_monitor import ConnectionPoolMonitor
from ..services.container import AppServices


def get_services(request: Request) -> AppServices:
    services: AppServices = request.app.state.services
    return services


def get_router(request: Request) -> ConnectionRouter:
    """Provide the database connection router."""
    return get_services(request).router


def get_cache_store(request: Request) -> CacheStore:
    return get_services(request).cache_store


def get_pool_monitor(request: Request) -> ConnectionPoolMonitor:
    return get_services(request).pool_monitor


def get_performance_monitor(request: Request) -> PerformanceMonitor:
    return get_services(request).performance_monitor
