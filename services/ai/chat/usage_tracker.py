from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Optional, Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UsageRecord:
    query_type: str
    tokens_in: int
    tokens_out: int
    cached: bool
    latency_ms: int = 0
    model: Optional[str] = None


class UsageSink(Protocol):
    def record(self, rec: UsageRecord) -> None:
        ...


def estimate_tokens(text: Optional[str]) -> int:
    # ~4 characters per token for mixed English/Indonesian text.
    return int(math.ceil(len(text or "") / 4))


class LoggingUsageSink:
    def record(self, rec: UsageRecord) -> None:
        logger.info(
            "usage.record query_type=%s tokens_in=%s tokens_out=%s cached=%s latency_ms=%s model=%s",
            rec.query_type,
            rec.tokens_in,
            rec.tokens_out,
            rec.cached,
            rec.latency_ms,
            rec.model,
        )
