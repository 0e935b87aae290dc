"""Chat pipeline orchestrator.

Flow per request:
  1. Resolve mode + streaming eligibility (deterministic, no model call)
  2. Response cache lookup for repeatable, non-live questions
  3. Gather optional context (documents / web search), failures isolated
  4. Streaming path: open the model stream; a failed start demotes to 5
  5. Blocking path: (market prefetch) -> model -> guard chain -> visualization
     -> optional image
  6. Assemble the answer envelope, cache it, log usage

States: MODE_RESOLVED -> STREAMING | BLOCKING -> MODEL_INVOKED ->
VALIDATED | REJECTED -> VISUALIZATION_RESOLVED -> DONE. Rejection is final
for the request; the model is never re-asked.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Union

from config.pipeline_config import PipelineConfig
from services.ai.chat.chat_models import (
    AnswerEnvelope,
    CandidateResponse,
    ChartSpec,
    ChatRequest,
    MiddlewareResult,
    ValidationReport,
    format_sse,
)
from services.ai.chat.chat_prompts import build_system_prompt, build_user_prompt, temperature_for
from services.ai.chat.gemini_stream_client import ModelClient, get_shared_gemini_client
from services.ai.chat.guard_chain import validate
from services.ai.chat.image_generator import ImageGenerator
from services.ai.chat.letter_templates import resolve_letter_type
from services.ai.chat.mode_resolver import ModeDecision, resolve_mode
from services.ai.chat.module_policy import OperatingMode
from services.ai.chat.response_cache import get_cached_response, set_cached_response, should_cache_query
from services.ai.chat.structured_output import is_placeholder_text, split_candidate
from services.ai.chat.usage_tracker import LoggingUsageSink, UsageRecord, UsageSink, estimate_tokens
from services.ai.chat.user_data_parser import extract_user_data
from services.ai.chat.visualization_resolver import VisualizationResolver, VisualizationResult
from services.market.market_data_client import MarketDataClient, MarketDataService

logger = logging.getLogger(__name__)

DisconnectFn = Callable[[], Awaitable[bool]]
Retriever = Callable[[str, Optional[str], List[str]], Awaitable[str]]
Searcher = Callable[[str], Awaitable[str]]

_MARKET_PREFETCH_RULES = ("comparison", "multi_symbol", "market_intent")
# prose survives these failures; the payload never does
_PROSE_SAFE_GUARDS = frozenset({"Schema Guard", "Consistency Guard"})

_APOLOGY = {
    "en": "Sorry, I couldn't produce an answer right now. Please try again in a moment.",
    "id": "Maaf, saya belum bisa memberikan jawaban saat ini. Silakan coba lagi sebentar lagi.",
}
_STREAM_ERROR_MESSAGE = "The answer was interrupted. Please try again."


def _trace_info(msg: str, *args: Any) -> None:
    logger.info(msg, *args)


def _trace_warning(msg: str, *args: Any) -> None:
    logger.warning(msg, *args)


def _trace_exception(msg: str, *args: Any) -> None:
    logger.exception(msg, *args)


class PipelineState(str, Enum):
    MODE_RESOLVED = "mode_resolved"
    CACHED = "cached"
    STREAMING = "streaming"
    BLOCKING = "blocking"
    MODEL_INVOKED = "model_invoked"
    VALIDATED = "validated"
    REJECTED = "rejected"
    VISUALIZATION_RESOLVED = "visualization_resolved"
    DONE = "done"
    FAILED = "failed"


@dataclass
class StreamingAnswer:
    request_id: str
    mode: OperatingMode
    chunks: AsyncIterator[str]
    states: List[PipelineState] = field(default_factory=list)


@dataclass
class _Run:
    request_id: str
    started: float
    states: List[PipelineState] = field(default_factory=list)

    def enter(self, state: PipelineState) -> None:
        self.states.append(state)
        _trace_info("chat.state req_id=%s state=%s", self.request_id, state.value)

    def elapsed_ms(self) -> int:
        return int((time.perf_counter() - self.started) * 1000)


@dataclass
class _Context:
    text: Optional[str] = None
    web_search_active: bool = False
    document_analysis_active: bool = False


def _apology(language: str) -> str:
    return _APOLOGY.get(language, _APOLOGY["en"])


def _history_text(req: ChatRequest, max_turns: int) -> str:
    turns = req.history[-max_turns:] if max_turns > 0 else []
    return "\n".join(f"{m.role.upper()}: {m.content}" for m in turns)


def _chart_summary(chart: ChartSpec) -> str:
    if chart.comparison_assets:
        lines = []
        for a in chart.comparison_assets:
            lines.append(
                f"- {a.symbol} ({a.name}): price {a.current_price} {a.currency}, "
                f"change {a.change_percent}% over {chart.timeframe}, RSI {a.rsi}, trend {a.trend}"
            )
        return "\n".join(lines)
    return (
        f"- {chart.symbol}: last close {chart.current_price}, 24h change {chart.change_24h}%, "
        f"{len(chart.data)} points ({chart.timeframe})"
    )


def _market_context(prefetch: VisualizationResult) -> Optional[str]:
    parts: List[str] = []
    charts: List[ChartSpec] = list(prefetch.charts or [])
    if prefetch.chart is not None:
        charts.insert(0, prefetch.chart)
    parts.extend(_chart_summary(c) for c in charts)
    if prefetch.notice:
        parts.append(f"Unavailable: {prefetch.notice}")
    return "\n".join(parts) or None


def _recovered_prose(candidate: CandidateResponse, result: MiddlewareResult) -> Optional[str]:
    guards = {e[1:].split("]", 1)[0] for e in result.errors if e.startswith("[")}
    if not candidate.text or not guards or not guards <= _PROSE_SAFE_GUARDS:
        return None
    return candidate.text


def _market_data(chart: Optional[ChartSpec], charts: Optional[Sequence[ChartSpec]]) -> Optional[Dict[str, Any]]:
    if chart is not None and chart.comparison_assets:
        return {
            "symbols": [a.symbol for a in chart.comparison_assets],
            "timeframe": chart.timeframe,
            "assets": [a.model_dump(mode="json", by_alias=True, exclude_none=True) for a in chart.comparison_assets],
        }
    singles = [c for c in ([chart] if chart else []) + list(charts or []) if c.symbol]
    if not singles:
        return None
    items = [
        {
            "symbol": c.symbol,
            "assetType": c.asset_type,
            "currentPrice": c.current_price,
            "change24h": c.change_24h,
            "points": len(c.data),
        }
        for c in singles
    ]
    return items[0] if len(items) == 1 else {"symbols": [i["symbol"] for i in items], "items": items}


class ChatOrchestrator:
    def __init__(
        self,
        *,
        model_client: Optional[ModelClient] = None,
        market_data: Optional[MarketDataService] = None,
        resolver: Optional[VisualizationResolver] = None,
        retriever: Optional[Retriever] = None,
        searcher: Optional[Searcher] = None,
        usage_sink: Optional[UsageSink] = None,
        image_generator: Optional[ImageGenerator] = None,
        config: Optional[PipelineConfig] = None,
    ):
        self.config = config or PipelineConfig.from_env()
        self.model = model_client or get_shared_gemini_client()
        self.resolver = resolver or VisualizationResolver(
            market_data or MarketDataClient(),
            fetch_timeout_s=self.config.fetch_timeout_s,
            max_history_turns=self.config.max_history_turns,
        )
        self.retriever = retriever
        self.searcher = searcher
        self.image_generator = image_generator
        self.usage = usage_sink or LoggingUsageSink()

    # ── helpers ──────────────────────────────────────────────────────

    def _model_name(self) -> Optional[str]:
        cfg = getattr(self.model, "config", None)
        return getattr(cfg, "model", None)

    def _cacheable(self, req: ChatRequest, decision: ModeDecision) -> bool:
        return (
            self.config.response_cache_enabled
            and not req.history
            and not req.file_ids
            and not req.context_text
            and not req.web_search
            and not decision.image_requested
            and decision.mode != OperatingMode.MARKET_ANALYSIS
            and should_cache_query(req.message)
        )

    def _record_usage(
        self, run: _Run, mode: OperatingMode, prompt: str, answer: str, *, cached: bool = False
    ) -> None:
        try:
            self.usage.record(
                UsageRecord(
                    query_type=mode.value,
                    tokens_in=0 if cached else estimate_tokens(prompt),
                    tokens_out=0 if cached else estimate_tokens(answer),
                    cached=cached,
                    latency_ms=run.elapsed_ms(),
                    model=None if cached else self._model_name(),
                )
            )
        except Exception:
            _trace_exception("chat.usage_record_failed req_id=%s", run.request_id)

    async def _gather_context(self, req: ChatRequest, run: _Run) -> _Context:
        ctx = _Context()
        parts: List[str] = []
        if req.context_text:
            parts.append(req.context_text)

        jobs: List[Tuple[str, Awaitable[str]]] = []
        if self.retriever is not None and req.file_ids:
            jobs.append(("documents", self.retriever(req.message, req.user_id, list(req.file_ids))))
        if self.searcher is not None and req.web_search:
            jobs.append(("web_search", self.searcher(req.message)))
        if jobs:
            results = await asyncio.gather(*[j for _, j in jobs], return_exceptions=True)
            for (name, _), res in zip(jobs, results):
                if isinstance(res, BaseException):
                    _trace_warning(
                        "chat.context_failed req_id=%s source=%s err=%s",
                        run.request_id,
                        name,
                        type(res).__name__,
                    )
                    continue
                if res:
                    parts.append(res)
                    if name == "documents":
                        ctx.document_analysis_active = True
                    else:
                        ctx.web_search_active = True

        ctx.text = "\n\n".join(parts) or None
        return ctx

    def _prompts(
        self,
        req: ChatRequest,
        decision: ModeDecision,
        ctx: _Context,
        market_context: Optional[str] = None,
    ) -> Tuple[str, str]:
        system_prompt = build_system_prompt(
            decision.mode,
            decision.language,
            context_text=ctx.text,
            market_context=market_context,
            letter_type=resolve_letter_type(req.message) if decision.mode == OperatingMode.LETTER_GENERATOR else None,
        )
        user_prompt = build_user_prompt(req.message, _history_text(req, self.config.max_history_turns))
        return system_prompt, user_prompt

    # ── streaming path ──────────────────────────────────────────────

    async def _close_stream(self, agen: Optional[AsyncIterator[str]], run: _Run) -> None:
        aclose = getattr(agen, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception as exc:
            _trace_warning("chat.stream_close_failed req_id=%s err=%s", run.request_id, type(exc).__name__)

    async def _try_stream(
        self, req: ChatRequest, decision: ModeDecision, ctx: _Context, run: _Run
    ) -> Optional[StreamingAnswer]:
        system_prompt, user_prompt = self._prompts(req, decision, ctx)
        agen: Optional[AsyncIterator[str]] = None
        try:
            agen = self.model.stream_answer(
                system_prompt=system_prompt,
                user_prompt=user_prompt,
                temperature=temperature_for(decision.mode),
            )
            first = await agen.__anext__()
        except StopAsyncIteration:
            _trace_warning("chat.stream_demoted req_id=%s reason=empty_stream", run.request_id)
            await self._close_stream(agen, run)
            return None
        except Exception as exc:
            _trace_warning("chat.stream_demoted req_id=%s err=%s", run.request_id, type(exc).__name__)
            await self._close_stream(agen, run)
            return None

        run.enter(PipelineState.STREAMING)

        async def _chunks() -> AsyncIterator[str]:
            emitted = [first]
            yield first
            async for chunk in agen:
                emitted.append(chunk)
                yield chunk
            self._record_usage(run, decision.mode, system_prompt + user_prompt, "".join(emitted))

        return StreamingAnswer(
            request_id=run.request_id,
            mode=decision.mode,
            chunks=_chunks(),
            states=run.states,
        )

    # ── blocking path ───────────────────────────────────────────────

    async def _blocking(
        self, req: ChatRequest, decision: ModeDecision, ctx: _Context, run: _Run
    ) -> AnswerEnvelope:
        run.enter(PipelineState.BLOCKING)
        mode = decision.mode
        lang = decision.language

        prefetch: Optional[VisualizationResult] = None
        if mode == OperatingMode.MARKET_ANALYSIS:
            prefetch = await self.resolver.resolve(
                mode,
                "",
                None,
                market_intent=decision.market_intent,
                message=req.message,
                history=req.history,
                language=lang,
                rules=_MARKET_PREFETCH_RULES,
            )
            _trace_info("chat.market_prefetch req_id=%s rule=%s", run.request_id, prefetch.rule)

        market_context = _market_context(prefetch) if prefetch is not None else None
        system_prompt, user_prompt = self._prompts(req, decision, ctx, market_context)
        try:
            raw = await self.model.generate(
                system_prompt=system_prompt,
                user_prompt=user_prompt,
                temperature=temperature_for(mode),
            )
        except Exception as exc:
            run.enter(PipelineState.FAILED)
            _trace_warning("chat.model_failed req_id=%s err=%s", run.request_id, type(exc).__name__)
            return AnswerEnvelope(
                success=False,
                response=_apology(lang),
                mode=mode,
                pipeline_state=PipelineState.FAILED.value,
            )
        run.enter(PipelineState.MODEL_INVOKED)

        candidate = split_candidate(raw)
        placeholder = is_placeholder_text(candidate.text)
        if placeholder:
            candidate = CandidateResponse(text=_apology(lang), structured=candidate.structured)

        extracted = extract_user_data(req.message)
        result = validate(mode, candidate, extracted, user_message=req.message, language=lang)
        if not result.valid:
            run.enter(PipelineState.REJECTED)
            _trace_warning(
                "chat.rejected req_id=%s mode=%s errors=%s",
                run.request_id,
                mode.value,
                " | ".join(result.errors),
            )
            self._record_usage(run, mode, system_prompt + user_prompt, raw)
            fallback = result.fallback_message or _apology(lang)
            prose = None if placeholder else _recovered_prose(candidate, result)
            return AnswerEnvelope(
                success=True,
                response=f"{prose}\n\n{fallback}" if prose else fallback,
                mode=mode,
                validation=ValidationReport(errors=result.errors, warnings=result.warnings),
                pipeline_state=PipelineState.REJECTED.value,
                web_search_active=ctx.web_search_active,
                document_analysis_active=ctx.document_analysis_active,
            )
        run.enter(PipelineState.VALIDATED)

        if prefetch is not None and prefetch.rule != "none" and prefetch.chart is None:
            viz = prefetch
        else:
            viz = await self.resolver.resolve(
                mode,
                candidate.text,
                candidate.structured,
                router_chart=prefetch.chart if prefetch is not None else None,
                market_intent=decision.market_intent,
                message=req.message,
                history=req.history,
                extracted_user_data=extracted,
                language=lang,
            )
            if prefetch is not None and viz.rule == "router_chart":
                viz = replace(viz, table=prefetch.table, notice=prefetch.notice)
        run.enter(PipelineState.VISUALIZATION_RESOLVED)

        response_text = viz.response_text or candidate.text
        if viz.notice:
            response_text = f"{response_text}\n\n{viz.notice}".strip()

        image_url = await self._generate_image(req, run) if decision.image_requested else None

        envelope = AnswerEnvelope(
            success=True,
            response=response_text,
            mode=mode,
            chart=viz.chart,
            charts=viz.charts,
            table=viz.table,
            structured_output=candidate.structured,
            letter=response_text if mode == OperatingMode.LETTER_GENERATOR else None,
            image_url=image_url,
            market_data=_market_data(viz.chart, viz.charts) if mode == OperatingMode.MARKET_ANALYSIS else None,
            validation=ValidationReport(warnings=result.warnings) if result.warnings else None,
            pipeline_state=PipelineState.DONE.value,
            web_search_active=ctx.web_search_active,
            document_analysis_active=ctx.document_analysis_active,
        )
        run.enter(PipelineState.DONE)

        if self._cacheable(req, decision) and not (viz.chart or viz.charts or viz.table):
            set_cached_response(mode, req.message, response_text, self.config.response_cache_ttl_s)
        self._record_usage(run, mode, system_prompt + user_prompt, raw)
        return envelope

    async def _generate_image(self, req: ChatRequest, run: _Run) -> Optional[str]:
        if self.image_generator is None:
            _trace_info("chat.image_skipped req_id=%s reason=no_generator", run.request_id)
            return None
        try:
            url = await asyncio.wait_for(self.image_generator(req.message), timeout=self.config.image_timeout_s)
        except Exception as exc:
            _trace_warning("chat.image_failed req_id=%s err=%s", run.request_id, type(exc).__name__)
            return None
        _trace_info("chat.image_done req_id=%s generated=%s", run.request_id, bool(url))
        return url or None

    # ── entry points ────────────────────────────────────────────────

    async def respond(
        self, req: ChatRequest, *, request_id: Optional[str] = None
    ) -> Union[AnswerEnvelope, StreamingAnswer]:
        run = _Run(
            request_id=request_id or req.conversation_id or f"chat-{int(time.time() * 1000)}",
            started=time.perf_counter(),
        )
        _trace_info(
            "chat.start req_id=%s history=%s msg_chars=%s requested_mode=%s stream=%s",
            run.request_id,
            len(req.history),
            len(req.message),
            req.mode.value if req.mode else "auto",
            req.stream,
        )
        decision = resolve_mode(
            req,
            transport_supports_streaming=bool(
                self.config.streaming_enabled and getattr(self.model, "supports_streaming", False)
            ),
        )
        run.enter(PipelineState.MODE_RESOLVED)

        if self._cacheable(req, decision):
            hit = get_cached_response(decision.mode, req.message)
            if hit is not None:
                run.enter(PipelineState.CACHED)
                self._record_usage(run, decision.mode, req.message, hit, cached=True)
                return AnswerEnvelope(
                    success=True,
                    response=hit,
                    mode=decision.mode,
                    cached=True,
                    pipeline_state=PipelineState.CACHED.value,
                )

        ctx = await self._gather_context(req, run)

        if decision.stream:
            streaming = await self._try_stream(req, decision, ctx, run)
            if streaming is not None:
                return streaming

        envelope = await self._blocking(req, decision, ctx, run)
        _trace_info(
            "chat.done req_id=%s mode=%s state=%s elapsed_ms=%s",
            run.request_id,
            decision.mode.value,
            envelope.pipeline_state,
            run.elapsed_ms(),
        )
        return envelope

    async def _safe_is_disconnected(self, fn: Optional[DisconnectFn]) -> bool:
        if fn is None:
            return False
        try:
            return bool(await fn())
        except Exception:
            return False

    async def stream_sse(
        self,
        req: ChatRequest,
        *,
        is_disconnected: Optional[DisconnectFn] = None,
        request_id: Optional[str] = None,
    ) -> AsyncIterator[str]:
        start = time.perf_counter()
        req_id = request_id or req.conversation_id or f"chat-{int(start * 1000)}"
        try:
            outcome = await self.respond(req, request_id=req_id)
        except Exception:
            _trace_exception("chat.stream_sse_failed req_id=%s", req_id)
            yield format_sse("error", {"request_id": req_id, "message": _apology("en")})
            return

        if isinstance(outcome, StreamingAnswer):
            yield format_sse(
                "meta", {"request_id": req_id, "mode": outcome.mode.value, "streamed": True}
            )
            try:
                async for chunk in outcome.chunks:
                    if await self._safe_is_disconnected(is_disconnected):
                        _trace_info("chat.client_disconnected req_id=%s", req_id)
                        return
                    yield format_sse("token", {"request_id": req_id, "text": chunk})
            except Exception as exc:
                _trace_warning("chat.stream_interrupted req_id=%s err=%s", req_id, type(exc).__name__)
                yield format_sse("error", {"request_id": req_id, "message": _STREAM_ERROR_MESSAGE})
                return
        else:
            yield format_sse(
                "meta", {"request_id": req_id, "mode": outcome.mode.value, "streamed": False}
            )
            yield format_sse("answer", outcome.to_payload())

        yield format_sse(
            "done",
            {"request_id": req_id, "elapsed_ms": int((time.perf_counter() - start) * 1000)},
        )
