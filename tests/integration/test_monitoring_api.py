"""Integration tests for the monitoring API and the assembled application."""

from typing import Any

import pytest
from fastapi import APIRouter, Depends, FastAPI
from httpx import AsyncClient

from flextasker_core.api.dependencies import get_router
from flextasker_core.core.database import ConnectionRouter, DatabaseHandle, QueryKind, RouterState
from flextasker_core.main import create_app
from flextasker_core.services.container import AppServices
from tests.fixtures.doubles import FakeHandleFactory

pytestmark = pytest.mark.integration

MONITORING = "/api/v1/monitoring"


def bid_routes() -> APIRouter:
    """Handlers that go through the connection router."""
    bids = APIRouter(prefix="/api/v1/bids")

    @bids.get("")
    async def list_bids(db: ConnectionRouter = Depends(get_router)) -> dict[str, Any]:
        async def query(handle: DatabaseHandle) -> list[Any]:
            return await handle.fetch("SELECT id, amount FROM bids")

        rows = await db.execute_query(query, QueryKind.READ)
        return {"bids": rows}

    @bids.get("/broken")
    async def broken(db: ConnectionRouter = Depends(get_router)) -> dict[str, Any]:
        async def query(handle: DatabaseHandle) -> int:
            raise ConnectionError("replica went away")

        return {"count": await db.execute_query(query, QueryKind.READ, max_retries=1)}

    return bids


@pytest.fixture
def app(services: AppServices) -> FastAPI:
    app = create_app(services)
    app.include_router(bid_routes())
    return app


class TestHealthEndpoints:
    """Test liveness and database health."""

    @pytest.mark.asyncio
    async def test_health(self, client: AsyncClient) -> None:
        response = await client.get(f"{MONITORING}/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["environment"] == "test"
        assert "timestamp" in body

    @pytest.mark.asyncio
    async def test_database_health(self, client: AsyncClient) -> None:
        response = await client.get(f"{MONITORING}/database/health")

        body = response.json()
        assert response.status_code == 200
        assert body["write"]["healthy"] is True
        assert [r["name"] for r in body["read"]] == ["read_1", "read_2"]
        assert body["overall"] == {"healthy": True, "score": 1.0}

    @pytest.mark.asyncio
    async def test_database_health_reports_failed_replica(
        self, client: AsyncClient, handle_factory: FakeHandleFactory
    ) -> None:
        handle_factory.handles["read_1"].fetchval.side_effect = ConnectionError("refused")

        body = (await client.get(f"{MONITORING}/database/health")).json()

        assert body["read"][0] == {
            "name": "read_1",
            "healthy": False,
            "latency_ms": 0.0,
            "error": "refused",
        }
        assert body["overall"]["healthy"] is True

    @pytest.mark.asyncio
    async def test_database_stats(self, client: AsyncClient) -> None:
        body = (await client.get(f"{MONITORING}/database/stats")).json()

        assert body["state"] == "ready"
        assert body["read_replicas"] == 2
        assert body["write"] == {"active": 1, "idle": 3, "total": 4}
        assert body["errors"] == {"connection": 0, "query": 0, "timeout": 0}


class TestConnectionPoolEndpoints:
    """Test pool monitor views."""

    @pytest.mark.asyncio
    async def test_connection_pool_before_first_sample(self, client: AsyncClient) -> None:
        body = (await client.get(f"{MONITORING}/connection-pool")).json()

        assert body["monitoring"] is True
        assert body["current"] is None
        assert body["performance"]["recommendations"] == ["No metrics available yet"]
        assert body["health"] == {"healthy": True, "alerts": []}
        assert body["pgbouncer"]["pool_mode"] == "session"

    @pytest.mark.asyncio
    async def test_connection_pool_after_sampling(
        self, client: AsyncClient, services: AppServices
    ) -> None:
        services.pool_monitor.record_query_time(12.0)
        await services.pool_monitor.collect_metrics()

        body = (await client.get(f"{MONITORING}/connection-pool")).json()

        assert body["current"]["connections"]["total"] == 12
        assert body["current"]["health"]["read"] == [True, True]
        assert body["current"]["performance"]["p99"] == 12.0
        assert body["performance"]["connection_utilization"] == 0.25

    @pytest.mark.asyncio
    async def test_router_queries_feed_both_monitors(
        self, client: AsyncClient, services: AppServices, handle_factory: FakeHandleFactory
    ) -> None:
        for handle in handle_factory.handles.values():
            handle.fetch.return_value = []

        for page in range(50):
            await client.get("/api/v1/bids", params={"page": page})
        snapshot = await services.pool_monitor.collect_metrics()

        assert snapshot is not None
        assert snapshot.queries.total == 50
        assert snapshot.performance.throughput > 0
        assert len(services.pool_monitor.query_times) == 50
        assert "Low throughput" not in " ".join(
            services.pool_monitor.get_performance_stats().recommendations
        )
        database = services.performance_monitor.get_metrics().database
        assert database.query_count == 50
        assert database.slow_queries == 0

    @pytest.mark.asyncio
    async def test_history_limit(self, client: AsyncClient, services: AppServices) -> None:
        for _ in range(3):
            await services.pool_monitor.collect_metrics()

        everything = (await client.get(f"{MONITORING}/connection-pool/history")).json()
        latest = (
            await client.get(f"{MONITORING}/connection-pool/history", params={"limit": 2})
        ).json()

        assert everything["count"] == 3
        assert latest["count"] == 2
        assert latest["metrics"] == everything["metrics"][1:]

    @pytest.mark.asyncio
    async def test_history_limit_is_validated(self, client: AsyncClient) -> None:
        response = await client.get(f"{MONITORING}/connection-pool/history", params={"limit": 0})

        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_pgbouncer_ini(self, client: AsyncClient) -> None:
        response = await client.get(f"{MONITORING}/connection-pool/pgbouncer.ini")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert response.text.startswith("[databases]")
        assert "flextasker_read_2 = " in response.text


class TestPerformanceEndpoints:
    """Test performance metrics through real traffic."""

    @pytest.mark.asyncio
    async def test_requests_are_counted(self, client: AsyncClient) -> None:
        await client.get(f"{MONITORING}/health")
        await client.get("/api/v1/missing")

        body = (await client.get(f"{MONITORING}/performance")).json()

        api = body["metrics"]["api"]
        assert api["total_requests"] == 2
        assert api["successful_requests"] == 1
        assert api["failed_requests"] == 1
        assert set(body["summary"]) == {"performance", "health", "security"}
        assert body["alerts"] == []

    @pytest.mark.asyncio
    async def test_cache_outcomes_are_counted(
        self, client: AsyncClient, services: AppServices, handle_factory: FakeHandleFactory
    ) -> None:
        for handle in handle_factory.handles.values():
            handle.fetch.return_value = [{"id": 1, "amount": 40}]

        first = await client.get("/api/v1/bids")
        await services.response_cache.flush()
        second = await client.get("/api/v1/bids")

        assert first.json() == second.json() == {"bids": [{"id": 1, "amount": 40}]}
        assert (first.headers["X-Cache"], second.headers["X-Cache"]) == ("MISS", "HIT")

        cache = (await client.get(f"{MONITORING}/performance")).json()["metrics"]["cache"]
        assert (cache["hits"], cache["misses"]) == (1, 1)
        assert cache["hit_rate"] == 0.5

        stats = (await client.get(f"{MONITORING}/database/stats")).json()
        assert stats["queries"] == {"write": 0, "read": 1, "total": 1}

    @pytest.mark.asyncio
    async def test_exhausted_retries_return_500(
        self, client: AsyncClient, services: AppServices
    ) -> None:
        response = await client.get("/api/v1/bids/broken")

        assert response.status_code == 500
        stats = services.router.get_stats()
        assert stats.queries.read == 2
        assert stats.errors.query == 2
        api = services.performance_monitor.get_metrics().api
        assert api.failed_requests == 1

    @pytest.mark.asyncio
    async def test_pool_size_comes_from_router(self, client: AsyncClient) -> None:
        body = (await client.get(f"{MONITORING}/performance")).json()

        database = body["metrics"]["database"]
        assert database["connection_pool_size"] == 12
        assert database["active_connections"] == 3


class TestCacheAndReset:
    """Test cache status and counter reset."""

    @pytest.mark.asyncio
    async def test_cache_status(self, client: AsyncClient, services: AppServices) -> None:
        await services.cache_store.set("warm", {"ok": True})

        body = (await client.get(f"{MONITORING}/cache")).json()

        assert body["primary_available"] is True
        assert body["stats"]["size"] == 1
        assert body["stats"]["primary"]["max_size"] == -1

    @pytest.mark.asyncio
    async def test_reset(self, client: AsyncClient, services: AppServices) -> None:
        await client.get("/api/v1/bids")
        await services.pool_monitor.collect_metrics()

        response = await client.post(f"{MONITORING}/reset")

        assert response.status_code == 200
        assert response.json()["status"] == "reset"
        assert services.router.get_stats().queries.total == 0
        assert services.pool_monitor.get_metrics_history() == []
        # Only the reset request itself, recorded after the handler ran
        assert services.performance_monitor.get_metrics().api.total_requests == 1


class TestLifespan:
    """Test startup and shutdown through the ASGI lifespan."""

    @pytest.mark.asyncio
    async def test_lifespan_starts_and_stops_services(self, services: AppServices) -> None:
        app = create_app(services)

        async with app.router.lifespan_context(app):
            assert services.router.is_ready
            assert services.pool_monitor.is_monitoring
            assert services.performance_monitor.is_running

        assert services.router.state is RouterState.CLOSED
        assert not services.pool_monitor.is_monitoring
        assert not services.performance_monitor.is_running
