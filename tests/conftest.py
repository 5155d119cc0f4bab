"""Test configuration and fixtures.

Database handles are replaced by in-memory doubles and Redis by fakeredis,
so the whole suite runs without external services.
"""


from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from fakeredis import FakeServer
from fakeredis.aioredis import FakeRedis
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from flextasker_core.core.cache import Cache, CacheConfig, CacheStore, FallbackCache
from flextasker_core.core.config import Settings, clear_settings_cache
from flextasker_core.core.database import ConnectionRouter
from flextasker_core.main import create_app
from flextasker_core.services.container import AppServices, build_services
from tests.fixtures.doubles import FakeClock, FakeHandleFactory, make_settings


@pytest.fixture(autouse=True)
def _reset_settings_cache() -> None:
    clear_settings_cache()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def handle_factory() -> FakeHandleFactory:
    return FakeHandleFactory()


@pytest.fixture
def router(settings: Settings, handle_factory: FakeHandleFactory) -> ConnectionRouter:
    return ConnectionRouter(settings, client_factory=handle_factory)


@pytest.fixture
def fake_server() -> FakeServer:
    """In-memory Redis server; set ``connected = False`` to simulate an outage."""
    return FakeServer()


@pytest_asyncio.fixture  # type: ignore[misc]
async def fake_redis(fake_server: FakeServer) -> AsyncGenerator[FakeRedis, None]:
    """Isolated fakeredis client speaking the redis.asyncio API."""
    client = FakeRedis(server=fake_server, decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def cache_store(fake_redis: FakeRedis, clock: FakeClock) -> CacheStore:
    """Cache store whose Redis tier is fakeredis and whose clock is manual."""
    primary = Cache(CacheConfig(url="redis://test", prefix="test:"), fake_redis, clock=clock)
    return CacheStore(primary, FallbackCache(max_size=100, clock=clock), default_ttl=300)


@pytest.fixture
def offline_cache_store(clock: FakeClock) -> CacheStore:
    """Cache store whose Redis tier was never connected."""
    primary = Cache(CacheConfig(url="redis://unreachable"), clock=clock)
    return CacheStore(primary, FallbackCache(max_size=5, clock=clock), default_ttl=300)


@pytest.fixture
def services(
    settings: Settings, fake_redis: FakeRedis, handle_factory: FakeHandleFactory
) -> AppServices:
    return build_services(settings, redis_client=fake_redis, client_factory=handle_factory)


@pytest.fixture
def app(services: AppServices) -> FastAPI:
    return create_app(services)


@pytest_asyncio.fixture  # type: ignore[misc]
async def client(app: FastAPI, services: AppServices) -> AsyncGenerator[AsyncClient, None]:
    """Async client against a started application.

    ``ASGITransport`` does not run the lifespan, so the services are started
    and stopped here.
    """
    await services.start()
    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    await services.stop()
