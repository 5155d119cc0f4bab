# FlexTasker Core - Task Marketplace Data Layer
# Copyright (C) 2025 Luiz Frias <luizf35@gmail.com>
# Form F[x] Labs
#
# This software is dual-licensed under AGPL-3.0 and Commercial License.
# For commercial licensing, contact: luizf35@gmail.com
# See LICENSE file for full terms.

"""Connection pool monitoring: metrics history, latency percentiles and PgBouncer advice.

The monitor samples a router through the :class:`RouterStatsSource` protocol on
a fixed interval, keeps a bounded history of :class:`MetricsSnapshot` records,
and derives performance statistics, health alerts and a recommended PgBouncer
configuration from them.
"""

import asyncio
import math
import time
from collections import deque
from collections.abc import Callable
from typing import Protocol, runtime_checkable

from attrs import define, field, frozen, validators
from beartype import beartype

from .config import Settings, get_settings
from .database import ConnectionStats, RouterHealth
from .logging_utils import get_logger

logger = get_logger(__name__)

RECENT_SNAPSHOTS = 10


@runtime_checkable
class RouterStatsSource(Protocol):
    """Statistics and health capability of a connection router."""

    def get_stats(self) -> ConnectionStats: ...

    async def health_check(self) -> RouterHealth: ...


@frozen
class ConnectionSummary:
    active: int = field(default=0)
    idle: int = field(default=0)
    total: int = field(default=0)
    waiting: int = field(default=0)


@frozen
class QuerySummary:
    total: int = field(default=0)
    successful: int = field(default=0)
    failed: int = field(default=0)


@frozen
class HealthSummary:
    write: bool = field()
    read: tuple[bool, ...] = field(factory=tuple)
    overall: bool = field(default=True)


@frozen
class PerformanceSummary:
    """Latency figures in milliseconds, throughput in queries per second."""

    avg_latency: float = field(default=0.0)
    p50: float = field(default=0.0)
    p95: float = field(default=0.0)
    p99: float = field(default=0.0)
    throughput: float = field(default=0.0)
    error_rate: float = field(default=0.0)


@frozen
class MetricsSnapshot:
    """Immutable point-in-time pool metrics."""

    timestamp: float = field()
    connections: ConnectionSummary = field()
    queries: QuerySummary = field()
    health: HealthSummary = field()
    performance: PerformanceSummary = field()


@frozen
class PerformanceStats:
    average_latency: float = field()
    throughput: float = field()
    error_rate: float = field()
    connection_utilization: float = field()
    recommendations: tuple[str, ...] = field()


@frozen
class PoolAlert:
    metric: str = field()
    severity: str = field(validator=validators.in_(["low", "medium", "high"]))
    message: str = field()
    value: float = field(default=0.0)
    threshold: float = field(default=0.0)


@frozen
class PoolHealthReport:
    healthy: bool = field()
    alerts: tuple[PoolAlert, ...] = field(factory=tuple)


@define(frozen=True, slots=True)
class PgBouncerPoolConfig:
    """Recommended PgBouncer settings; timeouts are in seconds."""

    max_connections: int = field(default=20)
    min_connections: int = field(default=5)
    idle_timeout: int = field(default=600)  # 10 minutes
    connection_timeout: int = field(default=10)
    statement_timeout: int = field(default=30)
    pool_mode: str = field(
        default="session",
        validator=validators.in_(["session", "transaction", "statement"]),
    )
    max_client_connections: int = field(default=100)
    default_pool_size: int = field(default=20)
    reserve_pool_size: int = field(default=5)


class ConnectionPoolMonitor:
    """Turns router statistics into history, percentiles and recommendations."""

    def __init__(
        self,
        source: RouterStatsSource,
        settings: Settings | None = None,
        *,
        clock: Callable[[], float] = time.time,
        max_metrics_history: int = 100,
        max_query_time_history: int = 1000,
    ) -> None:
        self._source = source
        self._settings = settings or get_settings()
        self._clock = clock
        self.max_metrics_history = max_metrics_history
        self.max_query_time_history = max_query_time_history

        self._metrics: deque[MetricsSnapshot] = deque(maxlen=max_metrics_history)
        self._query_times: deque[tuple[float, float]] = deque(maxlen=max_query_time_history)
        self._monitoring_task: asyncio.Task[None] | None = None
        self._interval_seconds: float | None = None

    @property
    def is_monitoring(self) -> bool:
        return self._monitoring_task is not None and not self._monitoring_task.done()

    @property
    def interval_seconds(self) -> float | None:
        return self._interval_seconds

    async def start_monitoring(self, interval_seconds: float | None = None) -> None:
        """Start periodic collection; a second call keeps the running schedule."""
        if self.is_monitoring:
            logger.warning("Connection pool monitoring is already running")
            return

        interval = interval_seconds or self._settings.pool_monitor_interval_seconds
        self._interval_seconds = interval
        self._monitoring_task = asyncio.create_task(self._monitoring_loop(interval))
        logger.info("Connection pool monitoring started (interval=%.1fs)", interval)

    @beartype
    async def stop_monitoring(self) -> None:
        """Stop periodic collection."""
        task, self._monitoring_task = self._monitoring_task, None
        self._interval_seconds = None
        if task is None or task.done():
            return

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Connection pool monitoring stopped")

    async def _monitoring_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            await self.collect_metrics()

    def record_query_time(self, duration_ms: float) -> None:
        """Append a query duration; the oldest sample drops out when full."""
        self._query_times.append((self._clock(), float(duration_ms)))

    @property
    def query_times(self) -> list[float]:
        return [duration for _, duration in self._query_times]

    @beartype
    async def collect_metrics(self) -> MetricsSnapshot | None:
        """Sample the router once and append a snapshot to the history.

        Failures are logged and leave the history untouched.
        """
        try:
            stats = self._source.get_stats()
            health = await self._source.health_check()
        except Exception as e:
            logger.error("Failed to collect connection pool metrics: %s", e)
            return None

        failed = stats.errors.query + stats.errors.timeout
        total_queries = stats.queries.total
        performance = self.calculate_performance_metrics()
        error_rate = failed / total_queries * 100 if total_queries else 0.0

        timestamp = self._clock()
        if self._metrics:
            timestamp = max(timestamp, self._metrics[-1].timestamp)

        snapshot = MetricsSnapshot(
            timestamp=timestamp,
            connections=ConnectionSummary(
                active=stats.write.active + stats.read.active,
                idle=stats.write.idle + stats.read.idle,
                total=stats.write.total + stats.read.total,
            ),
            queries=QuerySummary(
                total=total_queries,
                successful=max(0, total_queries - failed),
                failed=failed,
            ),
            health=HealthSummary(
                write=health.write.healthy,
                read=tuple(r.healthy for r in health.read),
                overall=health.overall.healthy,
            ),
            performance=PerformanceSummary(
                avg_latency=performance.avg_latency,
                p50=performance.p50,
                p95=performance.p95,
                p99=performance.p99,
                throughput=performance.throughput,
                error_rate=error_rate,
            ),
        )
        self._metrics.append(snapshot)
        logger.debug(
            "Connection pool metrics collected: total=%d active=%d healthy=%s",
            snapshot.connections.total,
            snapshot.connections.active,
            snapshot.health.overall,
        )
        return snapshot

    @staticmethod
    def _percentile(sorted_values: list[float], fraction: float) -> float:
        # Nearest rank; rounding keeps 0.95 * 100 from landing on rank 96
        rank = max(1, math.ceil(round(fraction * len(sorted_values), 9)))
        return sorted_values[rank - 1]

    @beartype
    def calculate_performance_metrics(self) -> PerformanceSummary:
        """Latency percentiles and throughput from the recorded query times."""
        if not self._query_times:
            return PerformanceSummary()

        durations = sorted(duration for _, duration in self._query_times)
        span = self._query_times[-1][0] - self._query_times[0][0]
        return PerformanceSummary(
            avg_latency=sum(durations) / len(durations),
            p50=self._percentile(durations, 0.50),
            p95=self._percentile(durations, 0.95),
            p99=self._percentile(durations, 0.99),
            throughput=len(durations) / max(span, 1.0),
        )

    def get_current_metrics(self) -> MetricsSnapshot | None:
        return self._metrics[-1] if self._metrics else None

    @beartype
    def get_metrics_history(self, limit: int | None = None) -> list[MetricsSnapshot]:
        """Snapshots oldest first; the last ``limit`` of them when given."""
        history = list(self._metrics)
        if limit is None:
            return history
        return history[-limit:] if limit > 0 else []

    @beartype
    def get_performance_stats(self) -> PerformanceStats:
        """Averages over the most recent snapshots plus recommendations."""
        if not self._metrics:
            return PerformanceStats(
                average_latency=0.0,
                throughput=0.0,
                error_rate=0.0,
                connection_utilization=0.0,
                recommendations=("No metrics available yet",),
            )

        recent = list(self._metrics)[-RECENT_SNAPSHOTS:]
        avg_latency = sum(m.performance.avg_latency for m in recent) / len(recent)
        throughput = sum(m.performance.throughput for m in recent) / len(recent)

        latest = recent[-1]
        error_rate = latest.performance.error_rate
        connections = latest.connections
        utilization = connections.active / connections.total if connections.total else 0.0

        return PerformanceStats(
            average_latency=round(avg_latency, 2),
            throughput=round(throughput, 2),
            error_rate=round(error_rate, 2),
            connection_utilization=round(utilization, 2),
            recommendations=tuple(
                self.generate_recommendations(avg_latency, throughput, error_rate, utilization)
            ),
        )

    @staticmethod
    def generate_recommendations(
        avg_latency: float,
        throughput: float,
        error_rate: float,
        utilization: float,
    ) -> list[str]:
        """Map the performance figures to advisory messages, in a fixed order."""
        recommendations = []

        if utilization > 0.8:
            recommendations.append("Consider increasing connection pool size")

        if avg_latency > 500:
            recommendations.append(
                "High latency detected - consider read replicas or query optimization"
            )

        if error_rate > 2:
            recommendations.append("High error rate - check database health and query patterns")

        if throughput < 10:
            recommendations.append("Low throughput - consider connection pooling optimization")

        if utilization < 0.3:
            recommendations.append("Low connection utilization - consider reducing pool size")

        if not recommendations:
            recommendations.append("Connection pool performance is optimal")

        return recommendations

    @beartype
    def check_pool_health(self) -> PoolHealthReport:
        """Alerts derived from the latest snapshot; healthy when nothing is high."""
        current = self.get_current_metrics()
        if current is None:
            return PoolHealthReport(healthy=True)

        stats = self.get_performance_stats()
        alerts: list[PoolAlert] = []

        utilization = stats.connection_utilization
        if utilization > 0.9:
            alerts.append(
                PoolAlert(
                    metric="connection_utilization",
                    severity="high",
                    message="Connection pool utilization is very high",
                    value=utilization,
                    threshold=0.9,
                )
            )
        elif utilization > 0.8:
            alerts.append(
                PoolAlert(
                    metric="connection_utilization",
                    severity="medium",
                    message="Connection pool utilization is high",
                    value=utilization,
                    threshold=0.8,
                )
            )

        if stats.error_rate > 5:
            alerts.append(
                PoolAlert(
                    metric="error_rate",
                    severity="high",
                    message="Database error rate is high",
                    value=stats.error_rate,
                    threshold=5.0,
                )
            )
        elif stats.error_rate > 2:
            alerts.append(
                PoolAlert(
                    metric="error_rate",
                    severity="medium",
                    message="Database error rate is elevated",
                    value=stats.error_rate,
                    threshold=2.0,
                )
            )

        if stats.average_latency > 1000:
            alerts.append(
                PoolAlert(
                    metric="latency",
                    severity="high",
                    message="Database latency is very high",
                    value=stats.average_latency,
                    threshold=1000.0,
                )
            )
        elif stats.average_latency > 500:
            alerts.append(
                PoolAlert(
                    metric="latency",
                    severity="medium",
                    message="Database latency is high",
                    value=stats.average_latency,
                    threshold=500.0,
                )
            )

        if not current.health.overall:
            alerts.append(
                PoolAlert(
                    metric="pool_health",
                    severity="high",
                    message="Database connection pool is unhealthy",
                    value=0.0,
                    threshold=1.0,
                )
            )

        healthy = not any(alert.severity == "high" for alert in alerts)
        return PoolHealthReport(healthy=healthy, alerts=tuple(alerts))

    @beartype
    def get_pgbouncer_config(self) -> PgBouncerPoolConfig:
        """Recommended pooler settings for the current load."""
        stats = self.get_performance_stats()
        utilization = stats.connection_utilization
        busy = utilization > 0.7 or stats.throughput > 100

        return PgBouncerPoolConfig(
            max_connections=25 if utilization > 0.8 else 20,
            pool_mode="transaction" if busy else "session",
            default_pool_size=25 if utilization > 0.7 else 20,
        )

    @beartype
    def generate_pgbouncer_config(self) -> str:
        """Render ``pgbouncer.ini`` for the write database and every replica."""
        config = self.get_pgbouncer_config()
        prefix = self._settings.pgbouncer_database_prefix

        databases = f"""[databases]
; Write database
{prefix}_write = {self._settings.database_url}

"""
        for index, url in enumerate(self._settings.read_replica_urls, start=1):
            databases += f"""; Read replica {index}
{prefix}_read_{index} = {url}

"""

        return databases + f"""[pgbouncer]
; Pool configuration
pool_mode = {config.pool_mode}
max_client_conn = {config.max_client_connections}
default_pool_size = {config.default_pool_size}
min_pool_size = {config.min_connections}
reserve_pool_size = {config.reserve_pool_size}

; Timeouts
server_connect_timeout = {config.connection_timeout}
server_idle_timeout = {config.idle_timeout}
query_timeout = {config.statement_timeout}

; Logging
log_connections = 1
log_disconnections = 1
log_pooler_errors = 1

; Security
auth_type = md5
auth_file = /etc/pgbouncer/userlist.txt

; Admin
admin_users = postgres
stats_users = postgres

; Listen
listen_addr = 0.0.0.0
listen_port = 6432

; Limits
max_db_connections = {config.max_connections}
max_user_connections = {config.max_client_connections}

; Performance
server_reset_query = DISCARD ALL
server_check_query = SELECT 1
server_check_delay = 30
"""

    @beartype
    def reset(self) -> None:
        """Drop the metrics history and recorded query times."""
        self._metrics.clear()
        self._query_times.clear()
