from __future__ import annotations

import os
from dataclasses import dataclass


def _env_flag(name: str, default: str) -> bool:
    return (os.getenv(name) or default).strip().lower() in ("1", "true", "yes")


@dataclass(frozen=True)
class PipelineConfig:
    fetch_timeout_s: float = 8.0
    max_history_turns: int = 5
    response_cache_enabled: bool = True
    response_cache_ttl_s: int = 7 * 24 * 3600
    streaming_enabled: bool = True
    image_timeout_s: float = 20.0

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        return cls(
            fetch_timeout_s=float(os.getenv("PIPELINE_FETCH_TIMEOUT_SEC", "8")),
            max_history_turns=int(os.getenv("PIPELINE_MAX_HISTORY_TURNS", "5")),
            response_cache_enabled=_env_flag("RESPONSE_CACHE_ENABLED", "1"),
            response_cache_ttl_s=int(os.getenv("RESPONSE_CACHE_TTL_SEC", str(7 * 24 * 3600))),
            streaming_enabled=_env_flag("CHAT_STREAMING_ENABLED", "1"),
            image_timeout_s=float(os.getenv("IMAGE_GEN_TIMEOUT_SEC", "20")),
        )
