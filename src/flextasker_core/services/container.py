"""Composition of the data-layer services for one process."""

import asyncio

from attrs import define, field
from beartype import beartype

from ..api.middleware.response_cache import ResponseCache, ResponseCacheConfig
from ..core.cache import CacheStore, RedisType
from ..core.config import Settings, get_settings
from ..core.database import ClientFactory, ConnectionRouter
from ..core.logging_utils import get_logger
from ..core.performance_monitor import PerformanceMonitor
from ..core.pool_monitor import ConnectionPoolMonitor

logger = get_logger(__name__)

MONITORING_PATHS = ("/api/v1/monitoring", "/docs", "/redoc", "/openapi.json")


@define
class AppServices:
    """Single instances of every service, owned by the application."""

    settings: Settings = field()
    cache_store: CacheStore = field()
    router: ConnectionRouter = field()
    pool_monitor: ConnectionPoolMonitor = field()
    performance_monitor: PerformanceMonitor = field()
    response_cache: ResponseCache = field()
    _cleanup_task: asyncio.Task[None] | None = field(default=None, init=False)

    @beartype
    async def start(self) -> None:
        """Connect the cache and database and start the background monitors."""
        await self.cache_store.connect()
        await self.router.initialize()
        await self.pool_monitor.start_monitoring(self.settings.pool_monitor_interval_seconds)
        await self.performance_monitor.start()
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(
                self._cleanup_loop(self.settings.cache_cleanup_interval_seconds)
            )

    @beartype
    async def stop(self) -> None:
        """Stop the monitors, drain pending cache writes and close connections."""
        if self._cleanup_task is not None:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None
        await self.pool_monitor.stop_monitoring()
        await self.performance_monitor.stop()
        await self.response_cache.flush()
        await self.router.disconnect()
        await self.cache_store.disconnect()

    async def _cleanup_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            await self.cache_store.cleanup()

    @beartype
    def reset_metrics(self) -> None:
        """Clear every counter exposed by the monitoring surface."""
        self.performance_monitor.reset_metrics()
        self.pool_monitor.reset()
        self.router.reset_stats()
        logger.info("Monitoring counters reset")


@beartype
def build_services(
    settings: Settings | None = None,
    *,
    redis_client: RedisType | None = None,
    client_factory: ClientFactory | None = None,
    response_cache_config: ResponseCacheConfig | None = None,
) -> AppServices:
    """Wire the services together from ``settings``.

    ``redis_client`` and ``client_factory`` replace the real Redis and
    PostgreSQL connections, mostly for tests.
    """
    settings = settings or get_settings()

    slow_query_ms = settings.database_slow_query_ms

    # Both monitors are bound below, before the router runs its first query
    def record_query(duration_ms: float, succeeded: bool) -> None:
        pool_monitor.record_query_time(duration_ms)
        performance_monitor.record_database_query(duration_ms, duration_ms > slow_query_ms)

    cache_store = CacheStore.from_settings(settings, redis_client)
    router = ConnectionRouter(settings, client_factory=client_factory, on_query=record_query)
    pool_monitor = ConnectionPoolMonitor(router, settings)
    performance_monitor = PerformanceMonitor(pool_stats=router.get_stats)
    response_cache = ResponseCache(
        cache_store,
        response_cache_config
        or ResponseCacheConfig(
            ttl_seconds=settings.cache_default_ttl,
            exclude_paths=MONITORING_PATHS,
        ),
    )

    return AppServices(
        settings=settings,
        cache_store=cache_store,
        router=router,
        pool_monitor=pool_monitor,
        performance_monitor=performance_monitor,
        response_cache=response_cache,
    )
