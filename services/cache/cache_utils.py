# services/cache/cache_utils.py
from __future__ import annotations

import inspect
import logging
from functools import wraps
from typing import Any, Awaitable, Callable, TypeVar, cast

from services.cache.cache_backend import JsonValue, cache_get, cache_set

logger = logging.getLogger(__name__)

T = TypeVar("T")


def should_cache_ok_json(val: Any) -> bool:
    """Cache only payloads that report {"status": "ok"}."""
    return isinstance(val, dict) and val.get("status") == "ok"


def cacheable(
    *,
    ttl: int,
    key_fn: Callable[..., str],
    should_cache: Callable[[Any], bool] = should_cache_ok_json,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Read-through cache decorator for sync or async fetchers.

    key_fn receives the wrapped call's arguments; an empty key bypasses the
    cache for that call.
    """
    def _store(key: str, val: Any) -> None:
        if key and should_cache(val):
            cache_set(key, cast(JsonValue, val), ttl_seconds=ttl)

    def deco(fn: Callable[..., T]) -> Callable[..., T]:
        if inspect.iscoroutinefunction(fn):
            @wraps(fn)
            async def awrapper(*args: Any, **kwargs: Any) -> T:
                key = (key_fn(*args, **kwargs) or "").strip()
                hit = cache_get(key) if key else None
                if hit is not None:
                    logger.debug("cache.hit key=%s", key)
                    return cast(T, hit)
                val = await cast(Callable[..., Awaitable[Any]], fn)(*args, **kwargs)
                _store(key, val)
                return cast(T, val)

            return cast(Callable[..., T], awrapper)

        @wraps(fn)
        def swrapper(*args: Any, **kwargs: Any) -> T:
            key = (key_fn(*args, **kwargs) or "").strip()
            hit = cache_get(key) if key else None
            if hit is not None:
                logger.debug("cache.hit key=%s", key)
                return cast(T, hit)
            val = fn(*args, **kwargs)
            _store(key, val)
            return val

        return swrapper

    return deco
