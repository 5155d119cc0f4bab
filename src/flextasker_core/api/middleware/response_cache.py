# FlexTasker Core - Task Marketplace Data Layer
# Copyright (C) 2025 Luiz Frias <luizf35@gmail.com>
# Form F[x] Labs
#
# This software is dual-licensed under AGPL-3.0 and Commercial License.
# For commercial licensing, contact: luizf35@gmail.com
# See LICENSE file for full terms.

"""Read-through HTTP response cache backed by the cache store.

GET responses are looked up by a deterministic key. A hit is answered from
the cache without calling the route; a miss runs the route, buffers the JSON
body into a fresh response and stores the payload in a background task.
Mutating requests can register key patterns with :func:`invalidate_cache`;
they are cleared once the request succeeds.
"""

import asyncio
import hashlib
import json
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

from attrs import field, frozen, validators
from beartype import beartype
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.types import ASGIApp

from ...core.cache import CacheStore
from ...core.logging_utils import get_logger

logger = get_logger(__name__)

KEY_NAMESPACE = "response"
ANONYMOUS_USER = "anonymous"
INVALIDATION_STATE_ATTR = "cache_invalidation_patterns"

KeyGenerator = Callable[[Request], str]
ShouldCache = Callable[[Request, int], bool]
PatternSource = Sequence[str] | Callable[[Request], Sequence[str]]


def request_user_id(request: Request) -> str:
    """User id placed on ``request.state`` by the auth layer, if any."""
    user_id = getattr(request.state, "user_id", None)
    return str(user_id) if user_id is not None else ANONYMOUS_USER


@beartype
def generate_cache_key(request: Request, *, include_user: bool = True) -> str:
    """Deterministic key for ``(method, path, query, user)``.

    The digest is an MD5 of the canonical JSON form of the tuple; the path is
    repeated in clear so invalidation patterns can target it.
    """
    identity = {
        "method": request.method,
        "path": request.url.path,
        "query": sorted(request.query_params.multi_items()),
        "user_id": request_user_id(request) if include_user else None,
    }
    canonical = json.dumps(identity, sort_keys=True, separators=(",", ":"))
    digest = hashlib.md5(canonical.encode("utf-8"), usedforsecurity=False).hexdigest()
    return f"{KEY_NAMESPACE}:{request.url.path}:{digest}"


def public_cache_key(request: Request) -> str:
    """Same key for every user; for responses that carry no user data."""
    return generate_cache_key(request, include_user=False)


def default_should_cache(request: Request, status_code: int) -> bool:
    return request.method == "GET" and status_code == 200


@frozen
class ResponseCacheConfig:
    """Per-application response cache behaviour."""

    ttl_seconds: int = field(default=300, validator=validators.gt(0))
    key_generator: KeyGenerator = field(default=generate_cache_key)
    should_cache: ShouldCache = field(default=default_should_cache)
    vary_by: tuple[str, ...] = field(default=(), converter=tuple)
    exclude_paths: tuple[str, ...] = field(default=(), converter=tuple)


CACHE_PRESETS: dict[str, ResponseCacheConfig] = {
    "short": ResponseCacheConfig(ttl_seconds=60),
    "medium": ResponseCacheConfig(ttl_seconds=300),
    "long": ResponseCacheConfig(ttl_seconds=3600),
    "public": ResponseCacheConfig(ttl_seconds=600, key_generator=public_cache_key),
}


class ResponseCache:
    """Cache lookups, background stores and invalidation for HTTP responses."""

    def __init__(self, store: CacheStore, config: ResponseCacheConfig | None = None) -> None:
        self.store = store
        self.config = config or ResponseCacheConfig()
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def is_excluded(self, path: str) -> bool:
        return any(path.startswith(prefix) for prefix in self.config.exclude_paths)

    def cache_headers(self) -> dict[str, str]:
        headers = {"Cache-Control": f"public, max-age={self.config.ttl_seconds}"}
        if self.config.vary_by:
            headers["Vary"] = ", ".join(self.config.vary_by)
        return headers

    async def lookup(self, key: str) -> Any | None:
        return await self.store.get(key)

    def _track(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def schedule_store(self, key: str, payload: Any) -> None:
        """Store ``payload`` without holding up the response."""
        self._track(self._store(key, payload))

    async def _store(self, key: str, payload: Any) -> None:
        try:
            await self.store.set(key, payload, self.config.ttl_seconds)
            logger.debug("Response cached: key=%s ttl=%s", key, self.config.ttl_seconds)
        except Exception as e:
            logger.warning("Failed to cache response: key=%s error=%s", key, e)

    def schedule_invalidation(self, patterns: Sequence[str]) -> None:
        self._track(self.invalidate(patterns))

    async def invalidate(self, patterns: Sequence[str]) -> int:
        """Clear cached responses whose path matches any of ``patterns``."""
        removed = 0
        for pattern in patterns:
            try:
                removed += await self.store.clear_pattern(f"{KEY_NAMESPACE}:{pattern}*")
            except Exception as e:
                logger.warning("Failed to invalidate cache: pattern=%s error=%s", pattern, e)
        logger.debug("Cache invalidated: count=%d patterns=%s", removed, list(patterns))
        return removed

    async def flush(self) -> None:
        """Wait for every scheduled store and invalidation to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


class ResponseCacheMiddleware(BaseHTTPMiddleware):
    """Serve cached GET responses and capture cacheable ones on a miss."""

    def __init__(self, app: ASGIApp, cache: ResponseCache) -> None:
        super().__init__(app)
        self.cache = cache

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.method != "GET":
            return await self._dispatch_mutation(request, call_next)

        if self.cache.is_excluded(request.url.path):
            return await call_next(request)

        try:
            key = self.cache.config.key_generator(request)
        except Exception as e:
            logger.warning("Cache key generation failed for %s: %s", request.url.path, e)
            return await call_next(request)

        cached = None
        try:
            cached = await self.cache.lookup(key)
        except Exception as e:
            logger.warning("Cache lookup failed: key=%s error=%s", key, e)

        if cached is not None:
            logger.debug("Cache hit: %s", key)
            return JSONResponse(
                content=cached,
                headers={"X-Cache": "HIT", **self.cache.cache_headers()},
            )

        response = await call_next(request)
        return await self._capture(request, response, key)

    async def _capture(self, request: Request, response: Response, key: str) -> Response:
        content_type = response.headers.get("content-type", "")
        try:
            cacheable = self.cache.config.should_cache(request, response.status_code)
        except Exception as e:
            logger.warning("Cache eligibility check failed: key=%s error=%s", key, e)
            cacheable = False

        if not (cacheable and content_type.startswith("application/json")):
            # Streamed through untouched
            response.headers["X-Cache"] = "MISS"
            return response

        body = b""
        async for chunk in response.body_iterator:  # type: ignore[attr-defined]
            body += chunk if isinstance(chunk, bytes) else chunk.encode("utf-8")

        wrapped = Response(
            content=body,
            status_code=response.status_code,
            headers=response.headers,
            media_type=response.media_type,
            background=response.background,
        )
        wrapped.headers["X-Cache"] = "MISS"

        try:
            self.cache.schedule_store(key, json.loads(body))
            wrapped.headers.update(self.cache.cache_headers())
        except Exception as e:
            logger.warning("Response not cached: key=%s error=%s", key, e)

        return wrapped

    async def _dispatch_mutation(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        response = await call_next(request)
        patterns = getattr(request.state, INVALIDATION_STATE_ATTR, None)
        if patterns and 200 <= response.status_code < 300:
            self.cache.schedule_invalidation(list(patterns))
        return response


def invalidate_cache(patterns: PatternSource) -> Callable[[Request], Awaitable[None]]:
    """Dependency that clears cached responses after a successful mutation.

    ``patterns`` are path globs (``"/api/v1/tasks"`` also matches every path
    below it), or a callable deriving them from the request::

        @router.post("/tasks", dependencies=[Depends(invalidate_cache(["/api/v1/tasks"]))])
    """

    async def register_invalidation(request: Request) -> None:
        if callable(patterns):
            try:
                resolved = patterns(request)
            except Exception as e:
                logger.warning(
                    "Cache invalidation patterns failed for %s: %s", request.url.path, e
                )
                return
        else:
            resolved = patterns
        registered = getattr(request.state, INVALIDATION_STATE_ATTR, [])
        setattr(request.state, INVALIDATION_STATE_ATTR, [*registered, *resolved])

    return register_invalidation
