# FlexTasker Core - Task Marketplace Data Layer
# Copyright (C) 2025 Luiz Frias <luizf35@gmail.com>
# Form F[x] Labs
#
# This software is dual-licensed under AGPL-3.0 and Commercial License.
# For commercial licensing, contact: luizf35@gmail.com
# See LICENSE file for full terms.

"""Process-wide performance counters, threshold alerts and request monitoring middleware."""

import asyncio
import os
import time
from collections import deque
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

import psutil
from attrs import define, field
from beartype import beartype
from fastapi import Request, Response
from pydantic import Field
from starlette.middleware.base import BaseHTTPMiddleware

from ..models.base import BaseModelConfig
from .database import ConnectionStats
from .logging_utils import get_logger

logger = get_logger(__name__)

ROLLING_WINDOW = 1000
SUMMARY_INTERVAL_SECONDS = 300.0
MAX_TRACKED_USERS = 1000


class SecurityEventType(str, Enum):
    RATE_LIMIT = "rate_limit"
    SUSPICIOUS = "suspicious"
    AUTH_FAILURE = "auth_failure"
    CSRF = "csrf"


class CacheMetrics(BaseModelConfig):
    hits: int = Field(default=0, ge=0)
    misses: int = Field(default=0, ge=0)
    hit_rate: float = Field(default=0.0, ge=0.0, le=1.0)
    total_requests: int = Field(default=0, ge=0)
    average_response_time: float = Field(default=0.0, ge=0.0, description="Milliseconds")


class DatabaseMetrics(BaseModelConfig):
    query_count: int = Field(default=0, ge=0)
    slow_queries: int = Field(default=0, ge=0)
    average_query_time: float = Field(default=0.0, ge=0.0, description="Milliseconds")
    connection_pool_size: int = Field(default=0, ge=0)
    active_connections: int = Field(default=0, ge=0)


class ApiMetrics(BaseModelConfig):
    total_requests: int = Field(default=0, ge=0)
    successful_requests: int = Field(default=0, ge=0)
    failed_requests: int = Field(default=0, ge=0)
    average_response_time: float = Field(default=0.0, ge=0.0, description="Milliseconds")
    requests_per_minute: float = Field(default=0.0, ge=0.0)


class SecurityMetrics(BaseModelConfig):
    rate_limit_hits: int = Field(default=0, ge=0)
    suspicious_requests: int = Field(default=0, ge=0)
    authentication_failures: int = Field(default=0, ge=0)
    csrf_attempts: int = Field(default=0, ge=0)


class SystemMetrics(BaseModelConfig):
    memory_usage_mb: float = Field(default=0.0, ge=0.0, description="Resident set size")
    uptime_seconds: float = Field(default=0.0, ge=0.0)
    active_users: int = Field(default=0, ge=0)


class PerformanceMetrics(BaseModelConfig):
    """Point-in-time copy of every counter group."""

    cache: CacheMetrics = Field(default_factory=CacheMetrics)
    database: DatabaseMetrics = Field(default_factory=DatabaseMetrics)
    api: ApiMetrics = Field(default_factory=ApiMetrics)
    security: SecurityMetrics = Field(default_factory=SecurityMetrics)
    system: SystemMetrics = Field(default_factory=SystemMetrics)


class PerformanceAlert(BaseModelConfig):
    type: str = Field(..., description="Alert category")
    message: str = Field(..., description="Human readable alert")
    severity: str = Field(..., pattern="^(low|medium|high)$")


@define
class _Counters:
    cache_hits: int = field(default=0)
    cache_misses: int = field(default=0)
    cache_response_time: float = field(default=0.0)
    query_count: int = field(default=0)
    slow_queries: int = field(default=0)
    api_total: int = field(default=0)
    api_successful: int = field(default=0)
    api_failed: int = field(default=0)
    security: dict[SecurityEventType, int] = field(
        factory=lambda: {event: 0 for event in SecurityEventType}
    )


@beartype
def format_uptime(seconds: float) -> str:
    """Render an uptime as ``2d 3h``, ``4h 5m``, ``6m 7s`` or ``8s``."""
    total = int(seconds)
    minutes, secs = divmod(total, 60)
    hours, minutes = divmod(minutes, 60)
    days, hours = divmod(hours, 24)

    if days > 0:
        return f"{days}d {hours}h"
    if hours > 0:
        return f"{hours}h {minutes}m"
    if minutes > 0:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


@beartype
def seconds_until_midnight(now: datetime | None = None) -> float:
    """Seconds from ``now`` (local time) to the next local midnight."""
    now = now or datetime.now()
    midnight = (now + timedelta(days=1)).replace(hour=0, minute=0, second=0, microsecond=0)
    return (midnight - now).total_seconds()


class PerformanceMonitor:
    """Rolling API, cache, database and security counters with threshold alerts.

    A single instance is created by the application's composition root and
    shared with the monitoring middleware and endpoints.
    """

    def __init__(
        self,
        *,
        pool_stats: Callable[[], ConnectionStats] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._pool_stats = pool_stats
        self._clock = clock
        self._start_time = clock()
        self._counters = _Counters()
        self._request_times: deque[float] = deque(maxlen=ROLLING_WINDOW)
        self._query_times: deque[float] = deque(maxlen=ROLLING_WINDOW)
        self._active_users: set[str] = set()
        self._process = psutil.Process(os.getpid())

        self._summary_task: asyncio.Task[None] | None = None
        self._reset_task: asyncio.Task[None] | None = None

    def record_cache_hit(self, response_time_ms: float) -> None:
        self._counters.cache_hits += 1
        self._update_cache_average(response_time_ms)

    def record_cache_miss(self, response_time_ms: float) -> None:
        self._counters.cache_misses += 1
        self._update_cache_average(response_time_ms)

    def _update_cache_average(self, response_time_ms: float) -> None:
        # Cumulative moving average over every cache lookup
        count = self._counters.cache_hits + self._counters.cache_misses
        current = self._counters.cache_response_time
        self._counters.cache_response_time = (current * (count - 1) + response_time_ms) / count

    def record_database_query(self, query_time_ms: float, is_slow: bool = False) -> None:
        self._counters.query_count += 1
        self._query_times.append(query_time_ms)
        if is_slow:
            self._counters.slow_queries += 1

    def record_api_request(
        self, response_time_ms: float, status_code: int, user_id: str | None = None
    ) -> None:
        """Count a request; 2xx and 3xx responses are successes."""
        self._counters.api_total += 1
        self._request_times.append(response_time_ms)

        if 200 <= status_code < 400:
            self._counters.api_successful += 1
        else:
            self._counters.api_failed += 1

        if user_id:
            self._active_users.add(user_id)

    def record_security_event(self, event: SecurityEventType | str) -> None:
        self._counters.security[SecurityEventType(event)] += 1

    def _memory_usage_mb(self) -> float:
        try:
            return self._process.memory_info().rss / 1024 / 1024
        except psutil.Error as e:
            logger.debug("Process memory unavailable: %s", e)
            return 0.0

    @beartype
    def get_metrics(self) -> PerformanceMetrics:
        """Snapshot of every counter group; later events do not alter it."""
        counters = self._counters
        cache_total = counters.cache_hits + counters.cache_misses
        uptime = max(0.0, self._clock() - self._start_time)
        uptime_minutes = uptime / 60

        pool_size = active_connections = 0
        if self._pool_stats is not None:
            stats = self._pool_stats()
            pool_size = stats.write.total + stats.read.total
            active_connections = stats.write.active + stats.read.active

        return PerformanceMetrics(
            cache=CacheMetrics(
                hits=counters.cache_hits,
                misses=counters.cache_misses,
                hit_rate=counters.cache_hits / cache_total if cache_total else 0.0,
                total_requests=cache_total,
                average_response_time=counters.cache_response_time,
            ),
            database=DatabaseMetrics(
                query_count=counters.query_count,
                slow_queries=counters.slow_queries,
                average_query_time=_mean(self._query_times),
                connection_pool_size=pool_size,
                active_connections=active_connections,
            ),
            api=ApiMetrics(
                total_requests=counters.api_total,
                successful_requests=counters.api_successful,
                failed_requests=counters.api_failed,
                average_response_time=_mean(self._request_times),
                requests_per_minute=counters.api_total / uptime_minutes if uptime_minutes else 0.0,
            ),
            security=SecurityMetrics(
                rate_limit_hits=counters.security[SecurityEventType.RATE_LIMIT],
                suspicious_requests=counters.security[SecurityEventType.SUSPICIOUS],
                authentication_failures=counters.security[SecurityEventType.AUTH_FAILURE],
                csrf_attempts=counters.security[SecurityEventType.CSRF],
            ),
            system=SystemMetrics(
                memory_usage_mb=self._memory_usage_mb(),
                uptime_seconds=uptime,
                active_users=len(self._active_users),
            ),
        )

    @beartype
    def get_metrics_summary(self) -> dict[str, dict[str, Any]]:
        """Dashboard-friendly figures with formatted rates."""
        metrics = self.get_metrics()
        api = metrics.api
        success_rate = api.successful_requests / api.total_requests if api.total_requests else 0.0

        return {
            "performance": {
                "cache_hit_rate": f"{metrics.cache.hit_rate * 100:.1f}%",
                "average_api_response_time": f"{api.average_response_time:.0f}ms",
                "average_db_query_time": f"{metrics.database.average_query_time:.0f}ms",
                "requests_per_minute": round(api.requests_per_minute, 2),
            },
            "health": {
                "success_rate": f"{success_rate * 100:.1f}%",
                "slow_queries": metrics.database.slow_queries,
                "active_users": metrics.system.active_users,
                "uptime": format_uptime(metrics.system.uptime_seconds),
            },
            "security": {
                "rate_limit_hits": metrics.security.rate_limit_hits,
                "suspicious_requests": metrics.security.suspicious_requests,
                "auth_failures": metrics.security.authentication_failures,
            },
        }

    @beartype
    def check_alerts(self) -> list[PerformanceAlert]:
        """Evaluate the fixed alert thresholds against the current counters."""
        metrics = self.get_metrics()
        alerts = []

        if metrics.cache.hit_rate < 0.7 and metrics.cache.total_requests >= 100:
            alerts.append(
                PerformanceAlert(
                    type="cache_performance",
                    message=f"Low cache hit rate: {metrics.cache.hit_rate * 100:.1f}%",
                    severity="medium",
                )
            )

        if metrics.database.average_query_time > 1000:
            alerts.append(
                PerformanceAlert(
                    type="database_performance",
                    message=f"High average query time: {metrics.database.average_query_time:.0f}ms",
                    severity="high",
                )
            )

        if metrics.api.average_response_time > 2000:
            alerts.append(
                PerformanceAlert(
                    type="api_performance",
                    message=f"High API response time: {metrics.api.average_response_time:.0f}ms",
                    severity="high",
                )
            )

        total = metrics.api.total_requests
        error_rate = metrics.api.failed_requests / total if total else 0.0
        if error_rate > 0.05 and total >= 50:
            alerts.append(
                PerformanceAlert(
                    type="error_rate",
                    message=f"High error rate: {error_rate * 100:.1f}%",
                    severity="high",
                )
            )

        if metrics.security.suspicious_requests > 10:
            alerts.append(
                PerformanceAlert(
                    type="security",
                    message=(
                        "High number of suspicious requests: "
                        f"{metrics.security.suspicious_requests}"
                    ),
                    severity="medium",
                )
            )

        return alerts

    @beartype
    def reset_metrics(self) -> None:
        """Zero every counter and clear the rolling windows."""
        self._counters = _Counters()
        self._request_times.clear()
        self._query_times.clear()
        self._active_users.clear()
        logger.info("Performance metrics reset")

    @property
    def is_running(self) -> bool:
        return self._summary_task is not None and not self._summary_task.done()

    async def start(self, summary_interval: float = SUMMARY_INTERVAL_SECONDS) -> None:
        """Start the periodic summary and the daily midnight reset."""
        if self.is_running:
            return

        self._summary_task = asyncio.create_task(self._summary_loop(summary_interval))
        self._reset_task = asyncio.create_task(self._daily_reset_loop())

    async def stop(self) -> None:
        tasks = [task for task in (self._summary_task, self._reset_task) if task is not None]
        self._summary_task = None
        self._reset_task = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    @beartype
    def log_summary(self) -> None:
        """Log the metrics summary and any alerts; trims the active-user set."""
        logger.info("Performance metrics summary: %s", self.get_metrics_summary())

        alerts = self.check_alerts()
        if alerts:
            logger.warning(
                "Performance alerts detected: %s",
                [alert.model_dump() for alert in alerts],
            )

        # Activity times are not tracked, so the set is dropped wholesale
        if len(self._active_users) > MAX_TRACKED_USERS:
            self._active_users.clear()

    async def _summary_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.log_summary()

    async def _daily_reset_loop(self) -> None:
        while True:
            await asyncio.sleep(seconds_until_midnight())
            self.reset_metrics()


def _mean(values: deque[float]) -> float:
    return sum(values) / len(values) if values else 0.0


class PerformanceMonitoringMiddleware(BaseHTTPMiddleware):
    """Record latency, status, user and cache outcome for every API request."""

    def __init__(self, app: Any, monitor: PerformanceMonitor) -> None:
        super().__init__(app)
        self.monitor = monitor

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        start_time = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration_ms = (time.perf_counter() - start_time) * 1000
            self.monitor.record_api_request(duration_ms, 500, _user_id(request))
            raise

        duration_ms = (time.perf_counter() - start_time) * 1000
        self.monitor.record_api_request(duration_ms, response.status_code, _user_id(request))

        cache_status = response.headers.get("X-Cache")
        if cache_status == "HIT":
            self.monitor.record_cache_hit(duration_ms)
        elif cache_status == "MISS":
            self.monitor.record_cache_miss(duration_ms)

        response.headers["X-Response-Time-Ms"] = f"{duration_ms:.2f}"
        return response


def _user_id(request: Request) -> str | None:
    user_id = getattr(request.state, "user_id", None)
    return str(user_id) if user_id is not None else None
