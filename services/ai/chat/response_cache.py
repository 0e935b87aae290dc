from __future__ import annotations

import hashlib
import logging
import re
from typing import Any, Dict, Optional

from services.ai.chat.module_policy import OperatingMode
from services.cache.cache_backend import cache_get, cache_set

logger = logging.getLogger(__name__)

# Time-sensitive questions must always reach the model.
_UNCACHEABLE_RE = re.compile(
    r"harga.*sekarang|saat\s+ini|\bsekarang\b|hari\s+ini|\blive\b|real[- ]?time|"
    r"\bterbaru\b|\blatest\b|current\s+price|\btoday\b|\bnow\b|\bcuaca\b|\bweather\b|"
    r"\bwaktu\b|\bjam\b|\btanggal\b|\bdate\b|\btime\b",
    re.IGNORECASE,
)


def normalize_query(query: str) -> str:
    return " ".join((query or "").lower().split())


def should_cache_query(query: str) -> bool:
    q = normalize_query(query)
    return bool(q) and not _UNCACHEABLE_RE.search(q)


def response_cache_key(mode: OperatingMode, query: str) -> str:
    digest = hashlib.sha256(normalize_query(query).encode("utf-8")).hexdigest()
    return f"chat:response:{mode.value}:{digest}"


def get_cached_response(mode: OperatingMode, query: str) -> Optional[str]:
    hit = cache_get(response_cache_key(mode, query))
    if isinstance(hit, dict) and isinstance(hit.get("response"), str) and hit["response"]:
        logger.info("response_cache.hit mode=%s", mode.value)
        return hit["response"]
    return None


def set_cached_response(mode: OperatingMode, query: str, response: str, ttl_seconds: int) -> None:
    payload: Dict[str, Any] = {"response": response, "mode": mode.value}
    cache_set(response_cache_key(mode, query), payload, ttl_seconds=ttl_seconds)
