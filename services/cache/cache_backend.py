# services/cache/cache_backend.py
"""Two-level JSON cache: process memory (L1) in front of optional redis (L2).

Redis is only used when UPSTASH_REDIS_URL is set. Cache failures never fail a
request; they are logged and treated as misses.
"""
from __future__ import annotations

import json
import logging
import os
import time
from typing import Any, Dict, List, Optional, Tuple, Union

import redis

logger = logging.getLogger(__name__)

JsonValue = Union[Dict[str, Any], List[Any], str, int, float, bool, None]

DEFAULT_TTL_SEC = int(os.getenv("CACHE_DEFAULT_TTL_SEC", "60"))
LOCAL_CACHE_TTL_SEC = int(os.getenv("CACHE_LOCAL_TTL_SEC", "60"))
LOCAL_CACHE_MAX_ENTRIES = int(os.getenv("CACHE_LOCAL_MAX_ENTRIES", "2048"))
REDIS_PREFIX = os.getenv("REDIS_PREFIX", "chatpipeline:")
UPSTASH_REDIS_URL = os.getenv("UPSTASH_REDIS_URL")

# key -> (expires_at_epoch, payload)
_LOCAL: Dict[str, Tuple[float, JsonValue]] = {}

_redis_client: Optional[redis.Redis] = None
_redis_checked = False


def get_redis_client() -> Optional[redis.Redis]:
    """Lazily build the redis client; None when not configured."""
    global _redis_client, _redis_checked
    if _redis_checked:
        return _redis_client
    _redis_checked = True
    if not UPSTASH_REDIS_URL:
        return None
    try:
        _redis_client = redis.from_url(
            UPSTASH_REDIS_URL,
            decode_responses=True,
            socket_timeout=2,
            socket_connect_timeout=2,
        )
    except (redis.RedisError, ValueError):
        logger.warning("cache.redis_unavailable")
        _redis_client = None
    return _redis_client


def _norm_key(key: str) -> str:
    return (key or "").strip()


def _local_get(k: str) -> Optional[JsonValue]:
    hit = _LOCAL.get(k)
    if not hit:
        return None
    expires_at, payload = hit
    if time.time() <= expires_at:
        return payload
    _LOCAL.pop(k, None)
    return None


def _local_set(k: str, payload: JsonValue, ttl_seconds: int) -> None:
    if len(_LOCAL) >= LOCAL_CACHE_MAX_ENTRIES:
        now = time.time()
        for stale in [key for key, (exp, _) in _LOCAL.items() if exp < now]:
            _LOCAL.pop(stale, None)
        if len(_LOCAL) >= LOCAL_CACHE_MAX_ENTRIES:
            _LOCAL.pop(next(iter(_LOCAL)), None)
    _LOCAL[k] = (time.time() + ttl_seconds, payload)


def cache_get(key: str) -> Optional[JsonValue]:
    k = _norm_key(key)
    if not k:
        return None

    hit = _local_get(k)
    if hit is not None:
        return hit

    r = get_redis_client()
    if r is None:
        return None
    try:
        raw = r.get(f"{REDIS_PREFIX}{k}")
    except redis.RedisError as exc:
        logger.warning("cache.redis_get_error err=%s", type(exc).__name__)
        return None
    if not isinstance(raw, (str, bytes, bytearray)):
        return None
    try:
        payload: JsonValue = json.loads(raw)
    except ValueError:
        return None
    _local_set(k, payload, LOCAL_CACHE_TTL_SEC)
    return payload


def cache_set(key: str, payload: JsonValue, ttl_seconds: int = DEFAULT_TTL_SEC) -> None:
    k = _norm_key(key)
    if not k:
        return
    ttl_seconds = int(ttl_seconds) if ttl_seconds and ttl_seconds > 0 else DEFAULT_TTL_SEC

    _local_set(k, payload, min(LOCAL_CACHE_TTL_SEC, ttl_seconds))

    r = get_redis_client()
    if r is None:
        return
    try:
        r.setex(f"{REDIS_PREFIX}{k}", ttl_seconds, json.dumps(payload, separators=(",", ":")))
    except (redis.RedisError, TypeError, ValueError) as exc:
        logger.warning("cache.redis_set_error err=%s", type(exc).__name__)


def cache_clear_local() -> None:
    _LOCAL.clear()
