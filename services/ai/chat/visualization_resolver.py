"""Visualization resolution as a priority chain.

Rules are tried in order and the first one that returns a result wins:

  router_chart            chart already built upstream (market handler)
  comparison              >=2 assets + comparison wording -> one comparison chart
  multi_symbol            >=2 assets without comparison wording -> one chart each
  structured_output       the model's show_chart / show_table action
  market_intent           confident symbol but no structured output from the model
  deferred_visualization  chart wording -> chart from the user's own numbers

Market rules only fire in modes whose policy allows market data. A failed
fetch never empties the answer: it becomes a notice appended to the prose.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from services.ai.chat.chat_models import ChartSpec, ChatMessage, ExtractedUserData, TableSpec
from services.ai.chat.history_symbols import resolve_comparison_symbols
from services.ai.chat.intent_parser import (
    AssetRef,
    MarketIntent,
    detect_chart_type,
    detect_market_request,
    extract_symbols,
    has_comparison_keyword,
    lookup_asset,
    needs_visualization,
    timeframe_to_days,
)
from services.ai.chat.module_policy import (
    OperatingMode,
    allows_market_data,
    get_allowed_chart_types,
)
from services.ai.chat.structured_output import effective_chart_type, nested_chart
from services.market.comparison_chart import build_comparison, build_price_chart
from services.market.market_data_client import MarketDataService, MarketSeries

logger = logging.getLogger(__name__)


def _trace_info(msg: str, *args: Any) -> None:
    logger.info(msg, *args)


def _trace_warning(msg: str, *args: Any) -> None:
    logger.warning(msg, *args)


@dataclass(frozen=True)
class VisualizationResult:
    chart: Optional[ChartSpec] = None
    charts: Optional[List[ChartSpec]] = None
    table: Optional[TableSpec] = None
    response_text: Optional[str] = None
    notice: Optional[str] = None
    rule: str = "none"


@dataclass(frozen=True)
class VisualizationRequest:
    mode: OperatingMode
    raw_text: str
    structured: Optional[Dict[str, Any]]
    router_chart: Optional[ChartSpec]
    market_intent: MarketIntent
    message: str
    history: Sequence[ChatMessage] = field(default_factory=tuple)
    extracted_user_data: Optional[ExtractedUserData] = None
    language: str = "en"


Rule = Callable[[VisualizationRequest], Awaitable[Optional[VisualizationResult]]]

_NOTICES: Dict[str, Dict[str, str]] = {
    "fetch_failed": {
        "en": "Live market data for {symbols} is unavailable right now, so the chart could not be shown.",
        "id": "Data market untuk {symbols} sedang tidak tersedia, sehingga grafik tidak dapat ditampilkan.",
    },
    "comparison_failed": {
        "en": "Not enough market data was available to compare {symbols}, so the comparison chart could not be shown.",
        "id": "Data market tidak cukup untuk membandingkan {symbols}, sehingga grafik perbandingan tidak dapat ditampilkan.",
    },
    "partial": {
        "en": "Data for {symbols} is unavailable and was left out.",
        "id": "Data untuk {symbols} tidak tersedia dan tidak ditampilkan.",
    },
}


def _notice(key: str, symbols: Sequence[str], language: str) -> str:
    lang = language if language in ("en", "id") else "en"
    return _NOTICES[key][lang].format(symbols=", ".join(symbols))


def _message_override(structured: Optional[Dict[str, Any]]) -> Optional[str]:
    if not isinstance(structured, dict):
        return None
    message = structured.get("message")
    if isinstance(message, str) and message.strip():
        return message.strip()
    return None


class VisualizationResolver:
    def __init__(
        self,
        market_data: MarketDataService,
        *,
        fetch_timeout_s: float = 8.0,
        max_history_turns: int = 5,
    ):
        self.market_data = market_data
        self.fetch_timeout_s = float(fetch_timeout_s)
        self.max_history_turns = int(max_history_turns)
        self.rules: Tuple[Tuple[str, Rule], ...] = (
            ("router_chart", self._rule_router_chart),
            ("comparison", self._rule_comparison),
            ("multi_symbol", self._rule_multi_symbol),
            ("structured_output", self._rule_structured_output),
            ("market_intent", self._rule_market_intent),
            ("deferred_visualization", self._rule_deferred_visualization),
        )

    async def resolve(
        self,
        mode: OperatingMode,
        raw_text: str,
        structured: Optional[Dict[str, Any]],
        router_chart: Optional[ChartSpec] = None,
        market_intent: Optional[MarketIntent] = None,
        *,
        message: str = "",
        history: Sequence[ChatMessage] = (),
        extracted_user_data: Optional[ExtractedUserData] = None,
        language: str = "en",
        rules: Optional[Sequence[str]] = None,
    ) -> VisualizationResult:
        """Run the chain; `rules` limits it to a subset (order is fixed)."""
        req = VisualizationRequest(
            mode=mode,
            raw_text=raw_text or "",
            structured=structured if isinstance(structured, dict) else None,
            router_chart=router_chart,
            market_intent=market_intent or detect_market_request(message or raw_text or ""),
            message=message or "",
            history=tuple(history),
            extracted_user_data=extracted_user_data,
            language=language,
        )
        for name, rule in self.rules:
            if rules is not None and name not in rules:
                continue
            result = await rule(req)
            if result is not None:
                _trace_info(
                    "viz.resolved rule=%s mode=%s chart=%s charts=%s table=%s notice=%s",
                    name,
                    mode.value,
                    result.chart.type if result.chart else None,
                    len(result.charts or []),
                    bool(result.table),
                    bool(result.notice),
                )
                return replace(result, rule=name)
        _trace_info("viz.resolved rule=none mode=%s", mode.value)
        return VisualizationResult()

    # ── fetch helpers ───────────────────────────────────────────────

    async def _fetch_one(self, ref: AssetRef, days: int) -> MarketSeries:
        return await asyncio.wait_for(
            self.market_data.fetch_series(ref.symbol, ref.asset_type, days),
            timeout=self.fetch_timeout_s,
        )

    async def _fetch_many(
        self, refs: Sequence[AssetRef], days: int
    ) -> List[Tuple[AssetRef, Optional[MarketSeries]]]:
        raw = await asyncio.gather(
            *[self._fetch_one(r, days) for r in refs], return_exceptions=True,
        )
        out: List[Tuple[AssetRef, Optional[MarketSeries]]] = []
        for ref, res in zip(refs, raw):
            if isinstance(res, BaseException):
                _trace_warning(
                    "viz.fetch_failed symbol=%s type=%s err=%s",
                    ref.symbol,
                    ref.asset_type,
                    type(res).__name__,
                )
                out.append((ref, None))
                continue
            out.append((ref, res))
        return out

    async def _single_chart(
        self,
        ref: AssetRef,
        days: int,
        chart_type: str,
        req: VisualizationRequest,
        response_text: Optional[str] = None,
    ) -> VisualizationResult:
        try:
            series = await self._fetch_one(ref, days)
        except Exception as exc:
            _trace_warning("viz.fetch_failed symbol=%s err=%s", ref.symbol, type(exc).__name__)
            return VisualizationResult(
                response_text=response_text,
                notice=_notice("fetch_failed", [ref.symbol], req.language),
            )
        chart = build_price_chart(series, days=days, chart_type=chart_type, language=req.language)
        return VisualizationResult(chart=chart, response_text=response_text)

    # ── rules ───────────────────────────────────────────────────────

    async def _rule_router_chart(self, req: VisualizationRequest) -> Optional[VisualizationResult]:
        if req.router_chart is None:
            return None
        return VisualizationResult(chart=req.router_chart)

    async def _rule_comparison(self, req: VisualizationRequest) -> Optional[VisualizationResult]:
        if not allows_market_data(req.mode) or not has_comparison_keyword(req.message):
            return None
        refs = resolve_comparison_symbols(
            req.message, req.history, max_history_turns=self.max_history_turns
        )
        if len(refs) < 2:
            return None

        days = req.market_intent.days
        fetched = await self._fetch_many(refs, days)
        series = [s for _, s in fetched if s is not None]
        symbols = [r.symbol for r in refs]
        if len(series) < 2:
            return VisualizationResult(notice=_notice("comparison_failed", symbols, req.language))
        try:
            chart, table = build_comparison(series, days=days, language=req.language)
        except ValueError as exc:
            _trace_warning("viz.comparison_unbuildable symbols=%s err=%s", ",".join(symbols), exc)
            return VisualizationResult(notice=_notice("comparison_failed", symbols, req.language))

        missing = [r.symbol for r, s in fetched if s is None]
        notice = _notice("partial", missing, req.language) if missing else None
        return VisualizationResult(chart=chart, table=table, notice=notice)

    async def _rule_multi_symbol(self, req: VisualizationRequest) -> Optional[VisualizationResult]:
        if not allows_market_data(req.mode) or has_comparison_keyword(req.message):
            return None
        refs = extract_symbols(req.message)
        if len(refs) < 2:
            return None

        days = req.market_intent.days
        chart_type = req.market_intent.chart_type
        fetched = await self._fetch_many(refs, days)
        charts = [
            build_price_chart(s, days=days, chart_type=chart_type, language=req.language)
            for _, s in fetched
            if s is not None
        ]
        missing = [r.symbol for r, s in fetched if s is None]
        if not charts:
            return VisualizationResult(notice=_notice("fetch_failed", missing, req.language))
        notice = _notice("partial", missing, req.language) if missing else None
        return VisualizationResult(charts=charts, notice=notice)

    async def _rule_structured_output(self, req: VisualizationRequest) -> Optional[VisualizationResult]:
        s = req.structured
        if s is None:
            return None
        action = s.get("action")
        override = _message_override(s)
        rows = s.get("data")

        if action == "show_table" and isinstance(rows, list) and rows:
            dict_rows = [r for r in rows if isinstance(r, dict)]
            columns: List[str] = []
            for r in dict_rows:
                columns.extend(k for k in r if k not in columns)
            table = TableSpec(title=str(s.get("title") or "Data"), columns=columns, rows=dict_rows)
            return VisualizationResult(table=table, response_text=override)

        if action != "show_chart":
            return None

        if isinstance(rows, list) and rows:
            chart = ChartSpec(
                type=effective_chart_type(s),
                title=str(s.get("title") or "Data Visualization"),
                data=[r for r in rows if isinstance(r, dict)],
                x_key=s.get("xKey") or "name",
                y_key=s.get("yKey") or "value",
                source=s.get("source"),
                timeframe=s.get("timeframe"),
            )
            return VisualizationResult(chart=chart, response_text=override)

        if not allows_market_data(req.mode):
            return None
        chart_meta = nested_chart(s)
        symbol = s.get("symbol") or chart_meta.get("symbol") or req.market_intent.symbol
        if not symbol:
            return None
        known = lookup_asset(str(symbol))
        asset_type = s.get("asset_type") or (known.asset_type if known else None) or req.market_intent.asset_type
        if asset_type not in ("crypto", "stock"):
            return None
        days = timeframe_to_days(s.get("timeframe")) or req.market_intent.days
        ref = AssetRef(str(symbol).upper(), asset_type)
        return await self._single_chart(ref, days, effective_chart_type(s), req, response_text=override)

    async def _rule_market_intent(self, req: VisualizationRequest) -> Optional[VisualizationResult]:
        intent = req.market_intent
        if req.structured is not None or not allows_market_data(req.mode):
            return None
        if intent.confidence != "high" or not intent.symbol or not intent.asset_type:
            return None
        ref = AssetRef(intent.symbol, intent.asset_type)
        return await self._single_chart(ref, intent.days, intent.chart_type, req)

    async def _rule_deferred_visualization(self, req: VisualizationRequest) -> Optional[VisualizationResult]:
        if not needs_visualization(req.message):
            return None
        allowed = get_allowed_chart_types(req.mode)
        data = req.extracted_user_data
        if not allowed or data is None or data.data_points < 2:
            return None

        chart_type = detect_chart_type(req.message)
        if chart_type not in allowed:
            chart_type = "bar" if "bar" in allowed else ("line" if "line" in allowed else sorted(allowed)[0])
        title = "Visualisasi Data" if req.language == "id" else "Data Visualization"
        chart = ChartSpec(
            type=chart_type,
            title=title,
            data=[{"name": label, "value": value} for label, value in zip(data.labels, data.values)],
            x_key="name",
            y_key="value",
            source="user",
        )
        return VisualizationResult(chart=chart)
