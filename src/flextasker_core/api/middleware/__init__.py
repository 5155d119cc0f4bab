"""HTTP middleware."""

from .response_cache import (
    CACHE_PRESETS,
    ResponseCache,
    ResponseCacheConfig,
    ResponseCacheMiddleware,
    generate_cache_key,
    invalidate_cache,
)

__all__ = [
    "CACHE_PRESETS",
    "ResponseCache",
    "ResponseCacheConfig",
    "ResponseCacheMiddleware",
    "generate_cache_key",
    "invalidate_cache",
]
