from __future__ import annotations

import asyncio
import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Optional, Protocol, Union

from services.ai.chat.errors import ModelTransportError

logger = logging.getLogger(__name__)


def _trace_info(msg: str, *args: Any) -> None:
    logger.info(msg, *args)


def _trace_warning(msg: str, *args: Any) -> None:
    logger.warning(msg, *args)


class ModelClient(Protocol):
    supports_streaming: bool

    async def generate(
        self, *, system_prompt: str, user_prompt: str, temperature: Optional[float] = None
    ) -> str:
        ...

    def stream_answer(
        self, *, system_prompt: str, user_prompt: str, temperature: Optional[float] = None
    ) -> AsyncIterator[str]:
        ...


@dataclass
class GeminiConfig:
    model: str
    temperature: float
    project_id: str
    location: str
    timeout_s: float


class GeminiStreamClient:
    supports_streaming = True

    def __init__(self, config: Optional[GeminiConfig] = None):
        self.config = config or self._from_env()
        from google import genai

        self._client = genai.Client(
            vertexai=True,
            project=self.config.project_id,
            location=self.config.location,
        )

    @staticmethod
    def _from_env() -> GeminiConfig:
        project_id = (os.getenv("GCP_PROJECT_ID") or os.getenv("GOOGLE_CLOUD_PROJECT") or "").strip()
        if not project_id:
            raise ValueError("Missing GCP_PROJECT_ID")
        return GeminiConfig(
            model=os.getenv("GEMINI_MODEL") or "gemini-2.5-flash",
            temperature=float(os.getenv("AI_TEMPERATURE", "0.3")),
            project_id=project_id,
            location=(os.getenv("GCP_LOCATION") or os.getenv("GOOGLE_CLOUD_LOCATION") or "us-central1").strip(),
            timeout_s=float(os.getenv("GEMINI_TIMEOUT_S", "45")),
        )

    def _build_config(self, system_prompt: str, temperature: Optional[float]):
        from google.genai import types

        return types.GenerateContentConfig(
            system_instruction=system_prompt or None,
            temperature=self.config.temperature if temperature is None else temperature,
        )

    def _contents(self, user_prompt: str):
        from google.genai import types

        return [types.Content(role="user", parts=[types.Part.from_text(text=user_prompt)])]

    def _sync_generate_text(self, system_prompt: str, user_prompt: str, temperature: Optional[float]) -> str:
        resp = self._client.models.generate_content(
            model=self.config.model,
            contents=self._contents(user_prompt),
            config=self._build_config(system_prompt, temperature),
        )
        return getattr(resp, "text", None) or ""

    async def generate(
        self, *, system_prompt: str, user_prompt: str, temperature: Optional[float] = None
    ) -> str:
        started = time.perf_counter()
        _trace_info("gemini.generate.start model=%s prompt_len=%s", self.config.model, len(user_prompt or ""))
        try:
            text = await asyncio.wait_for(
                asyncio.to_thread(self._sync_generate_text, system_prompt, user_prompt, temperature),
                timeout=self.config.timeout_s,
            )
        except Exception as exc:
            _trace_warning("gemini.generate.error err=%s", type(exc).__name__)
            raise ModelTransportError(f"generate failed: {type(exc).__name__}") from exc
        _trace_info(
            "gemini.generate.done elapsed_ms=%s chars=%s",
            int((time.perf_counter() - started) * 1000),
            len(text),
        )
        return text.strip()

    async def stream_answer(
        self, *, system_prompt: str, user_prompt: str, temperature: Optional[float] = None
    ) -> AsyncIterator[str]:
        """Yield text chunks; raises ModelTransportError if the stream breaks."""
        loop = asyncio.get_running_loop()
        q: asyncio.Queue[Union[str, BaseException, None]] = asyncio.Queue()
        started = time.perf_counter()
        state: Dict[str, int] = {"chunks": 0}
        _trace_info("gemini.stream.start model=%s prompt_len=%s", self.config.model, len(user_prompt or ""))

        def _worker() -> None:
            try:
                stream = self._client.models.generate_content_stream(
                    model=self.config.model,
                    contents=self._contents(user_prompt),
                    config=self._build_config(system_prompt, temperature),
                )
                for chunk in stream:
                    text = getattr(chunk, "text", None)
                    if text:
                        state["chunks"] += 1
                        loop.call_soon_threadsafe(q.put_nowait, text)
            except Exception as exc:
                loop.call_soon_threadsafe(q.put_nowait, exc)
            loop.call_soon_threadsafe(q.put_nowait, None)

        threading.Thread(target=_worker, daemon=True).start()

        while True:
            item = await q.get()
            if item is None:
                break
            if isinstance(item, BaseException):
                _trace_warning(
                    "gemini.stream.error chunks_emitted=%s err=%s", state["chunks"], type(item).__name__
                )
                raise ModelTransportError(f"stream failed: {type(item).__name__}") from item
            yield item

        _trace_info(
            "gemini.stream.done elapsed_ms=%s chunks=%s",
            int((time.perf_counter() - started) * 1000),
            state["chunks"],
        )


# ── Singleton ────────────────────────────────────────────────────────────

_shared_client: Optional[GeminiStreamClient] = None
_shared_client_lock = threading.Lock()


def get_shared_gemini_client() -> GeminiStreamClient:
    global _shared_client
    if _shared_client is not None:
        return _shared_client
    with _shared_client_lock:
        if _shared_client is None:
            _shared_client = GeminiStreamClient()
    return _shared_client
