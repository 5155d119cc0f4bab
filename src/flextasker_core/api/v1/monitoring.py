# FlexTasker Core - Task Marketplace Data Layer
# Copyright (C) 2025 Luiz Frias <luizf35@gmail.com>
# Form F[x] Labs
#
# This software is dual-licensed under AGPL-3.0 and Commercial License.
# For commercial licensing, contact: luizf35@gmail.com
# See LICENSE file for full terms.

"""Database, cache and performance monitoring endpoints."""

from datetime import datetime, timezone
from typing import Any, TypeVar

import attrs
from fastapi import APIRouter, Depends, Query
from fastapi.responses import PlainTextResponse
from pydantic import Field

from ...core.cache import CacheStats, CacheStore
from ...core.database import ConnectionRouter, RouterState
from ...core.performance_monitor import PerformanceAlert, PerformanceMetrics, PerformanceMonitor
from ...core.pool_monitor import ConnectionPoolMonitor
from ...models.base import BaseModelConfig
from ...services.container import AppServices
from ..dependencies import (
    get_cache_store,
    get_performance_monitor,
    get_pool_monitor,
    get_router,
    get_services,
)

router = APIRouter(prefix="/monitoring", tags=["monitoring"])

M = TypeVar("M", bound="AttrsView")


class AttrsView(BaseModelConfig):
    """Response model populated from an attrs snapshot."""

    @classmethod
    def from_attrs(cls: type[M], instance: Any) -> M:
        return cls.model_validate(attrs.asdict(instance))


class HealthResponse(BaseModelConfig):
    status: str = Field(..., description="Service status")
    environment: str = Field(..., description="Deployment environment")
    timestamp: datetime = Field(..., description="Server time (UTC)")


class ConnectionCountsView(AttrsView):
    active: int = Field(..., ge=0)
    idle: int = Field(..., ge=0)
    total: int = Field(..., ge=0)


class QueryCountsView(AttrsView):
    write: int = Field(..., ge=0)
    read: int = Field(..., ge=0)
    total: int = Field(..., ge=0)


class ErrorCountsView(AttrsView):
    connection: int = Field(..., ge=0)
    query: int = Field(..., ge=0)
    timeout: int = Field(..., ge=0)


class DatabaseStatsResponse(AttrsView):
    """Router connection counts and cumulative counters."""

    write: ConnectionCountsView
    read: ConnectionCountsView
    queries: QueryCountsView
    errors: ErrorCountsView
    read_replicas: int = Field(..., ge=0, description="Registered read replicas")
    state: RouterState = Field(..., description="Router lifecycle state")


class HandleHealthView(AttrsView):
    name: str
    healthy: bool
    latency_ms: float = Field(..., ge=0.0, description="Probe round trip")
    error: str | None = None


class OverallHealthView(AttrsView):
    healthy: bool
    score: float = Field(..., ge=0.0, le=1.0, description="Share of healthy handles")


class DatabaseHealthResponse(AttrsView):
    write: HandleHealthView
    read: list[HandleHealthView]
    overall: OverallHealthView


class ConnectionSummaryView(AttrsView):
    active: int
    idle: int
    total: int
    waiting: int


class QuerySummaryView(AttrsView):
    total: int
    successful: int
    failed: int


class HealthSummaryView(AttrsView):
    write: bool
    read: list[bool]
    overall: bool


class PerformanceSummaryView(AttrsView):
    avg_latency: float
    p50: float
    p95: float
    p99: float
    throughput: float
    error_rate: float


class MetricsSnapshotView(AttrsView):
    timestamp: float = Field(..., description="Unix time of the sample")
    connections: ConnectionSummaryView
    queries: QuerySummaryView
    health: HealthSummaryView
    performance: PerformanceSummaryView


class PerformanceStatsView(AttrsView):
    average_latency: float
    throughput: float
    error_rate: float = Field(..., description="Failed queries, percent")
    connection_utilization: float
    recommendations: list[str]


class PoolAlertView(AttrsView):
    metric: str
    severity: str
    message: str
    value: float
    threshold: float


class PoolHealthView(AttrsView):
    healthy: bool
    alerts: list[PoolAlertView]


class PgBouncerConfigView(AttrsView):
    max_connections: int
    min_connections: int
    idle_timeout: int
    connection_timeout: int
    statement_timeout: int
    pool_mode: str
    max_client_connections: int
    default_pool_size: int
    reserve_pool_size: int


class ConnectionPoolResponse(BaseModelConfig):
    """Everything the pool monitor knows right now."""

    monitoring: bool = Field(..., description="Periodic collection running")
    current: MetricsSnapshotView | None = Field(None, description="Latest snapshot")
    performance: PerformanceStatsView
    health: PoolHealthView
    pgbouncer: PgBouncerConfigView


class MetricsHistoryResponse(BaseModelConfig):
    count: int = Field(..., ge=0)
    metrics: list[MetricsSnapshotView]


class PerformanceResponse(BaseModelConfig):
    metrics: PerformanceMetrics
    summary: dict[str, dict[str, Any]]
    alerts: list[PerformanceAlert]


class CacheStatusResponse(BaseModelConfig):
    primary_available: bool = Field(..., description="Redis answered a ping")
    stats: CacheStats


class ResetResponse(BaseModelConfig):
    status: str
    reset_at: datetime


@router.get("/health", response_model=HealthResponse)
async def health(services: AppServices = Depends(get_services)) -> HealthResponse:
    """Liveness probe."""
    return HealthResponse(
        status="ok",
        environment=services.settings.api_env,
        timestamp=datetime.now(timezone.utc),
    )


@router.get("/database/stats", response_model=DatabaseStatsResponse)
async def database_stats(db: ConnectionRouter = Depends(get_router)) -> DatabaseStatsResponse:
    return DatabaseStatsResponse.from_attrs(db.get_stats())


@router.get("/database/health", response_model=DatabaseHealthResponse)
async def database_health(db: ConnectionRouter = Depends(get_router)) -> DatabaseHealthResponse:
    """Probe the write handle and every read replica."""
    return DatabaseHealthResponse.from_attrs(await db.health_check())


@router.get("/connection-pool", response_model=ConnectionPoolResponse)
async def connection_pool(
    monitor: ConnectionPoolMonitor = Depends(get_pool_monitor),
) -> ConnectionPoolResponse:
    current = monitor.get_current_metrics()
    return ConnectionPoolResponse(
        monitoring=monitor.is_monitoring,
        current=MetricsSnapshotView.from_attrs(current) if current is not None else None,
        performance=PerformanceStatsView.from_attrs(monitor.get_performance_stats()),
        health=PoolHealthView.from_attrs(monitor.check_pool_health()),
        pgbouncer=PgBouncerConfigView.from_attrs(monitor.get_pgbouncer_config()),
    )


@router.get("/connection-pool/history", response_model=MetricsHistoryResponse)
async def connection_pool_history(
    limit: int | None = Query(None, ge=1, le=1000, description="Most recent snapshots"),
    monitor: ConnectionPoolMonitor = Depends(get_pool_monitor),
) -> MetricsHistoryResponse:
    history = monitor.get_metrics_history(limit)
    return MetricsHistoryResponse(
        count=len(history),
        metrics=[MetricsSnapshotView.from_attrs(snapshot) for snapshot in history],
    )


@router.get("/connection-pool/pgbouncer.ini", response_class=PlainTextResponse)
async def pgbouncer_config(
    monitor: ConnectionPoolMonitor = Depends(get_pool_monitor),
) -> str:
    """Generated PgBouncer configuration file."""
    return monitor.generate_pgbouncer_config()


@router.get("/performance", response_model=PerformanceResponse)
async def performance(
    monitor: PerformanceMonitor = Depends(get_performance_monitor),
) -> PerformanceResponse:
    return PerformanceResponse(
        metrics=monitor.get_metrics(),
        summary=monitor.get_metrics_summary(),
        alerts=monitor.check_alerts(),
    )


@router.get("/cache", response_model=CacheStatusResponse)
async def cache_status(store: CacheStore = Depends(get_cache_store)) -> CacheStatusResponse:
    return CacheStatusResponse(
        primary_available=await store.is_primary_available(),
        stats=await store.get_stats(),
    )


@router.post("/reset", response_model=ResetResponse)
async def reset_metrics(services: AppServices = Depends(get_services)) -> ResetResponse:
    """Reset performance counters, pool monitor buffers and router counters."""
    services.reset_metrics()
    return ResetResponse(status="reset", reset_at=datetime.now(timezone.utc))
