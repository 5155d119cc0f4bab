# FlexTasker Core - Task Marketplace Data Layer
# Copyright (C) 2025 Luiz Frias <luizf35@gmail.com>
# Form F[x] Labs
#
# This software is dual-licensed under AGPL-3.0 and Commercial License.
# For commercial licensing, contact: luizf35@gmail.com
# See LICENSE file for full terms.

"""Read/write database connection routing with retry and health monitoring."""

import asyncio
import time
from collections.abc import Awaitable, Callable, Sequence
from enum import Enum
from typing import Any, Protocol, TypeVar, runtime_checkable

import asyncpg
from attrs import field, frozen
from beartype import beartype

from .config import Settings, get_settings
from .logging_utils import get_logger, mask_url
from .result_types import Err, Ok, Result

logger = get_logger(__name__)

T = TypeVar("T")


class QueryKind(str, Enum):
    """Routing tag for a logical query."""

    READ = "read"
    WRITE = "write"


class RouterState(str, Enum):
    """Lifecycle of a connection router."""

    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    SHUTTING_DOWN = "shutting_down"
    CLOSED = "closed"


@runtime_checkable
class DatabaseHandle(Protocol):
    """A connection (or pool) able to run parameterized queries."""

    name: str

    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...

    async def fetch(self, query: str, *args: Any) -> list[Any]: ...

    async def fetchval(self, query: str, *args: Any) -> Any: ...

    async def execute(self, query: str, *args: Any) -> str: ...

    def get_size(self) -> int: ...

    def get_idle_size(self) -> int: ...


ClientFactory = Callable[[str, str, bool], DatabaseHandle]
QueryFn = Callable[[DatabaseHandle], Awaitable[T]]
# Called once per query attempt with its duration in milliseconds and whether it succeeded
QueryObserver = Callable[[float, bool], None]


class PostgresClient:
    """asyncpg pool bound to a single connection URL."""

    def __init__(
        self,
        url: str,
        *,
        name: str,
        min_size: int = 2,
        max_size: int = 10,
        connect_timeout: float = 10.0,
        command_timeout: float | None = None,
        read_only: bool = False,
    ) -> None:
        self.url = url
        self.name = name
        self.read_only = read_only
        self._min_size = min_size
        self._max_size = max_size
        self._connect_timeout = connect_timeout
        self._command_timeout = command_timeout
        self._pool: asyncpg.Pool | None = None

    def __repr__(self) -> str:
        return f"PostgresClient(name={self.name!r}, url={mask_url(self.url)!r})"

    async def _init_read_connection(self, conn: asyncpg.Connection) -> None:
        """Initialize read-only connections."""
        await conn.execute("SET SESSION CHARACTERISTICS AS TRANSACTION READ ONLY")

    async def connect(self) -> None:
        """Create the connection pool."""
        if self._pool is not None:
            return

        self._pool = await asyncpg.create_pool(
            self.url,
            min_size=self._min_size,
            max_size=self._max_size,
            timeout=self._connect_timeout,
            command_timeout=self._command_timeout,
            init=self._init_read_connection if self.read_only else None,
        )

    async def disconnect(self) -> None:
        """Close the connection pool."""
        if self._pool is None:
            return

        pool, self._pool = self._pool, None
        await pool.close()

    def _require_pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError(f"Database handle {self.name!r} not connected")
        return self._pool

    async def fetch(self, query: str, *args: Any) -> list[Any]:
        return list(await self._require_pool().fetch(query, *args))

    async def fetchval(self, query: str, *args: Any) -> Any:
        return await self._require_pool().fetchval(query, *args)

    async def execute(self, query: str, *args: Any) -> str:
        return str(await self._require_pool().execute(query, *args))

    def get_size(self) -> int:
        return self._pool.get_size() if self._pool is not None else 0

    def get_idle_size(self) -> int:
        return self._pool.get_idle_size() if self._pool is not None else 0


@beartype
def postgres_client_factory(settings: Settings) -> ClientFactory:
    """Build :class:`PostgresClient` handles sized from ``settings``."""

    def factory(url: str, name: str, read_only: bool) -> DatabaseHandle:
        return PostgresClient(
            url,
            name=name,
            min_size=settings.database_pool_min,
            max_size=settings.database_pool_max,
            connect_timeout=settings.database_connection_timeout,
            read_only=read_only,
        )

    return factory


@frozen
class RecoveryConfig:
    """Connection recovery configuration."""

    max_retry_attempts: int = field(default=3)
    retry_delay_seconds: float = field(default=1.0)
    exponential_backoff: bool = field(default=True)

    @classmethod
    def from_settings(cls, settings: Settings) -> "RecoveryConfig":
        return cls(
            max_retry_attempts=settings.database_retry_attempts,
            retry_delay_seconds=settings.database_retry_delay,
        )

    def delay_for(self, attempt: int) -> float:
        """Backoff before the retry that follows ``attempt`` (0-based)."""
        if self.exponential_backoff:
            return self.retry_delay_seconds * (2**attempt)
        return self.retry_delay_seconds


@frozen
class ConnectionCounts:
    """Active, idle and total connections for a group of handles."""

    active: int = field(default=0)
    idle: int = field(default=0)
    total: int = field(default=0)


@frozen
class QueryCounts:
    write: int = field(default=0)
    read: int = field(default=0)
    total: int = field(default=0)


@frozen
class ErrorCounts:
    connection: int = field(default=0)
    query: int = field(default=0)
    timeout: int = field(default=0)

    @property
    def total(self) -> int:
        return self.connection + self.query + self.timeout


@frozen
class ConnectionStats:
    """Immutable router statistics snapshot."""

    write: ConnectionCounts = field()
    read: ConnectionCounts = field()
    queries: QueryCounts = field()
    errors: ErrorCounts = field()
    read_replicas: int = field(default=0)
    state: RouterState = field(default=RouterState.UNINITIALIZED)


@frozen
class HandleHealth:
    """Result of probing one connection handle."""

    name: str = field()
    healthy: bool = field()
    latency_ms: float = field(default=0.0)
    error: str | None = field(default=None)


@frozen
class OverallHealth:
    healthy: bool = field()
    score: float = field()


@frozen
class RouterHealth:
    """Health of the write handle, every read handle and the router overall."""

    write: HandleHealth = field()
    read: tuple[HandleHealth, ...] = field()
    overall: OverallHealth = field()


class ConnectionRouter:
    """Single point of access to the write and read database handles.

    The write handle exists from construction so it can be used lazily
    before :meth:`initialize`. Read handles are only registered once every
    configured handle has connected; until then reads go to the write handle.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        client_factory: ClientFactory | None = None,
        recovery: RecoveryConfig | None = None,
        on_query: QueryObserver | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._on_query = on_query
        self._client_factory = client_factory or postgres_client_factory(self._settings)
        self._recovery = recovery or RecoveryConfig.from_settings(self._settings)
        self._state = RouterState.UNINITIALIZED
        self._init_lock = asyncio.Lock()

        self._write = self._client_factory(self._settings.database_url, "write", False)
        self._read: list[DatabaseHandle] = []
        self._read_index = 0

        self._queries = {QueryKind.WRITE: 0, QueryKind.READ: 0}
        self._errors = {"connection": 0, "query": 0, "timeout": 0}

    @property
    def state(self) -> RouterState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is RouterState.READY

    @property
    def read_replica_urls(self) -> list[str]:
        return self._settings.read_replica_urls

    @beartype
    async def initialize(self) -> None:
        """Connect the write handle and every read replica.

        Idempotent once ready. If any handle fails to connect, the handles
        opened so far are closed, the router goes back to ``UNINITIALIZED``
        and the error is re-raised.
        """
        async with self._init_lock:
            if self._state is RouterState.READY:
                return

            self._state = RouterState.INITIALIZING
            logger.info("Connecting write database: %s", mask_url(self._settings.database_url))

            readers = [
                self._client_factory(url, f"read_{i + 1}", True)
                for i, url in enumerate(self._settings.read_replica_urls)
            ]
            try:
                await self._write.connect()
                results = await asyncio.gather(
                    *(reader.connect() for reader in readers), return_exceptions=True
                )
                failures = [r for r in results if isinstance(r, BaseException)]
                if failures:
                    raise failures[0]
            except Exception as e:
                self._errors["connection"] += 1
                logger.error("Database initialization failed: %s", e)
                await self._close_handles([self._write, *readers])
                self._state = RouterState.UNINITIALIZED
                raise

            self._read = readers
            self._read_index = 0
            self._state = RouterState.READY
            logger.info(
                "Database router ready: 1 write handle, %d read replica(s)", len(readers)
            )

    @beartype
    async def disconnect(self) -> None:
        """Close every handle. A no-op unless the router was initialized."""
        async with self._init_lock:
            if self._state in (RouterState.UNINITIALIZED, RouterState.CLOSED):
                return

            self._state = RouterState.SHUTTING_DOWN
            await self._close_handles([self._write, *self._read])
            self._read = []
            self._read_index = 0
            self._state = RouterState.CLOSED
            logger.info("Database connections closed")

    async def _close_handles(self, handles: Sequence[DatabaseHandle]) -> None:
        results = await asyncio.gather(
            *(handle.disconnect() for handle in handles), return_exceptions=True
        )
        for handle, result in zip(handles, results):
            if isinstance(result, BaseException):
                logger.warning("Error closing database handle %s: %s", handle.name, result)

    def get_write_client(self) -> DatabaseHandle:
        """Return the write handle, initialized or not."""
        return self._write

    def get_read_client(self) -> DatabaseHandle:
        """Return the next read replica in round-robin order.

        Falls back to the write handle while no replicas are registered. The
        index update has no suspension point, so concurrent callers on the
        event loop never observe an out-of-range index.
        """
        if not self._read:
            return self._write

        handle = self._read[self._read_index]
        self._read_index = (self._read_index + 1) % len(self._read)
        return handle

    def get_client(self, kind: QueryKind | str = QueryKind.WRITE) -> DatabaseHandle:
        if QueryKind(kind) is QueryKind.READ:
            return self.get_read_client()
        return self.get_write_client()

    async def execute_query(
        self,
        query_fn: QueryFn[T],
        kind: QueryKind | str = QueryKind.WRITE,
        max_retries: int | None = None,
    ) -> T:
        """Run ``query_fn(handle)`` with a per-attempt timeout and bounded retries.

        ``query_fn`` is invoked at most ``max_retries + 1`` times. A new handle
        is selected for every attempt, so a read retry moves on to the next
        replica. When every attempt fails the last error is re-raised as is.

        Each attempt's duration is reported to the ``on_query`` observer.
        """
        kind = QueryKind(kind)
        retries = self._recovery.max_retry_attempts if max_retries is None else max_retries
        if retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {retries}")
        timeout = self._settings.database_query_timeout
        last_error: BaseException = RuntimeError("query was never attempted")

        for attempt in range(retries + 1):
            handle = self.get_client(kind)
            self._queries[kind] += 1
            start = time.perf_counter()
            try:
                result = await asyncio.wait_for(query_fn(handle), timeout=timeout)
            except asyncio.TimeoutError as e:
                self._errors["timeout"] += 1
                last_error = e
            except Exception as e:
                self._errors["query"] += 1
                last_error = e
            else:
                self._observe(start, succeeded=True)
                return result
            self._observe(start, succeeded=False)

            if attempt < retries:
                delay = self._recovery.delay_for(attempt)
                logger.warning(
                    "%s query failed on %s (attempt %d/%d), retrying in %.2fs: %r",
                    kind.value,
                    handle.name,
                    attempt + 1,
                    retries + 1,
                    delay,
                    last_error,
                )
                await asyncio.sleep(delay)

        logger.error("%s query failed after %d attempt(s): %r", kind.value, retries + 1, last_error)
        raise last_error

    def _observe(self, start: float, *, succeeded: bool) -> None:
        if self._on_query is not None:
            self._on_query((time.perf_counter() - start) * 1000, succeeded)

    async def _probe(self, handle: DatabaseHandle) -> Result[float, str]:
        timeout = self._settings.database_health_check_timeout
        start = time.perf_counter()
        try:
            await asyncio.wait_for(handle.fetchval("SELECT 1"), timeout=timeout)
        except asyncio.TimeoutError:
            return Err(f"health check timed out after {timeout}s")
        except Exception as e:
            return Err(str(e) or type(e).__name__)
        return Ok((time.perf_counter() - start) * 1000)

    async def _handle_health(self, handle: DatabaseHandle) -> HandleHealth:
        result = await self._probe(handle)
        if result.is_ok():
            return HandleHealth(name=handle.name, healthy=True, latency_ms=result.ok_value)
        return HandleHealth(name=handle.name, healthy=False, error=result.err_value)

    @beartype
    async def health_check(self) -> RouterHealth:
        """Probe every handle concurrently with ``SELECT 1``."""
        readers = list(self._read)
        write, *read = await asyncio.gather(
            self._handle_health(self._write),
            *(self._handle_health(reader) for reader in readers),
        )

        healthy = write.healthy and (not read or any(r.healthy for r in read))
        probes = [write, *read]
        score = sum(1 for p in probes if p.healthy) / len(probes)

        for probe in probes:
            if not probe.healthy:
                logger.warning("Database handle %s unhealthy: %s", probe.name, probe.error)

        return RouterHealth(
            write=write,
            read=tuple(read),
            overall=OverallHealth(healthy=healthy, score=round(score, 4)),
        )

    @staticmethod
    def _counts(handles: Sequence[DatabaseHandle]) -> ConnectionCounts:
        total = sum(handle.get_size() for handle in handles)
        idle = sum(handle.get_idle_size() for handle in handles)
        return ConnectionCounts(active=max(0, total - idle), idle=idle, total=total)

    @beartype
    def get_stats(self) -> ConnectionStats:
        """Current connection counts and cumulative query and error counters."""
        write_queries = self._queries[QueryKind.WRITE]
        read_queries = self._queries[QueryKind.READ]
        return ConnectionStats(
            write=self._counts([self._write]),
            read=self._counts(self._read),
            queries=QueryCounts(
                write=write_queries, read=read_queries, total=write_queries + read_queries
            ),
            errors=ErrorCounts(**self._errors),
            read_replicas=len(self._read),
            state=self._state,
        )

    @beartype
    def reset_stats(self) -> None:
        """Zero the cumulative query and error counters."""
        self._queries = {QueryKind.WRITE: 0, QueryKind.READ: 0}
        self._errors = {"connection": 0, "query": 0, "timeout": 0}
