from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from services.ai.chat.chat_models import ChatRequest
from services.ai.chat.intent_parser import (
    MarketIntent,
    detect_language,
    detect_market_request,
    extract_symbols,
    has_market_keyword,
    is_comparison_request,
    is_file_analysis_request,
    is_letter_request,
    is_report_request,
    needs_visualization,
    wants_image,
)
from services.ai.chat.module_policy import OperatingMode

logger = logging.getLogger(__name__)

_NON_STREAMING_MODES = frozenset({OperatingMode.MARKET_ANALYSIS, OperatingMode.LETTER_GENERATOR})


def _trace_info(msg: str, *args: Any) -> None:
    logger.info(msg, *args)


@dataclass(frozen=True)
class ModeDecision:
    mode: OperatingMode
    stream: bool
    comparison_intent: bool
    chart_needed: bool
    image_requested: bool
    market_intent: MarketIntent
    language: str
    reason: str


def _infer_mode(req: ChatRequest, market_intent: MarketIntent, comparison: bool) -> tuple[OperatingMode, str]:
    message = req.message
    if comparison and (extract_symbols(message) or has_market_keyword(message)):
        return OperatingMode.MARKET_ANALYSIS, "comparison"
    if is_letter_request(message):
        return OperatingMode.LETTER_GENERATOR, "letter_keyword"
    if is_report_request(message):
        return OperatingMode.REPORT_GENERATOR, "report_keyword"
    if req.file_ids and is_file_analysis_request(message):
        return OperatingMode.BUSINESS_ADMIN, "file_analysis"
    if market_intent.is_market:
        return OperatingMode.MARKET_ANALYSIS, "market_symbol"
    return OperatingMode.BUSINESS_ADMIN, "default"


def resolve_mode(req: ChatRequest, *, transport_supports_streaming: bool = True) -> ModeDecision:
    """Pick the operating mode and decide whether the answer may stream.

    An explicit non-chat view wins outright. Streaming is only allowed for
    pure prose answers; anything that needs a chart, letter, comparison or
    image has to be generated in full so it can be validated.
    """
    message = req.message
    market_intent = detect_market_request(message)
    comparison = is_comparison_request(message)

    if req.mode is not None and req.mode != OperatingMode.CHAT:
        mode, reason = req.mode, "explicit_view"
    else:
        mode, reason = _infer_mode(req, market_intent, comparison)

    chart_needed = needs_visualization(message) or market_intent.is_market
    image_requested = bool(req.image_generation and wants_image(message))

    stream = bool(
        req.stream
        and transport_supports_streaming
        and mode not in _NON_STREAMING_MODES
        and not comparison
        and not chart_needed
        and not image_requested
    )

    decision = ModeDecision(
        mode=mode,
        stream=stream,
        comparison_intent=comparison,
        chart_needed=chart_needed,
        image_requested=image_requested,
        market_intent=market_intent,
        language=detect_language(message),
        reason=reason,
    )
    _trace_info(
        "mode.resolved mode=%s reason=%s stream=%s requested_stream=%s comparison=%s chart_needed=%s image=%s symbol=%s",
        mode.value,
        reason,
        stream,
        req.stream,
        comparison,
        chart_needed,
        image_requested,
        market_intent.symbol,
    )
    return decision
