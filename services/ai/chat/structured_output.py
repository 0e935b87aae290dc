from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, Optional

from services.ai.chat.chat_models import CandidateResponse

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
_TRAILING_COMMA_RE = re.compile(r",\s*([}\]])")

_PLACEHOLDER_TEXTS = frozenset({"", "null", "none", "undefined", "[object object]", "{}", "..."})


def _loads_dict(text: str) -> Optional[Dict[str, Any]]:
    try:
        parsed = json.loads(text)
    except (TypeError, ValueError):
        return None
    return parsed if isinstance(parsed, dict) else None


def _balanced_object_with_action(text: str) -> Optional[str]:
    idx = text.find('"action"')
    if idx < 0:
        return None
    start = text.rfind("{", 0, idx)
    while start >= 0:
        depth = 0
        in_str = False
        escaped = False
        for pos in range(start, len(text)):
            ch = text[pos]
            if in_str:
                if escaped:
                    escaped = False
                elif ch == "\\":
                    escaped = True
                elif ch == '"':
                    in_str = False
                continue
            if ch == '"':
                in_str = True
            elif ch == "{":
                depth += 1
            elif ch == "}":
                depth -= 1
                if depth == 0:
                    if pos > idx:
                        return text[start:pos + 1]
                    break
        start = text.rfind("{", 0, start)
    return None


def _candidates(raw: str):
    yield raw
    for m in _FENCE_RE.finditer(raw):
        yield m.group(1).strip()
    block = _balanced_object_with_action(raw)
    if block:
        yield block
    first, last = raw.find("{"), raw.rfind("}")
    if 0 <= first < last:
        yield raw[first:last + 1]


def parse_structured_output(raw_text: Optional[str]) -> Optional[Dict[str, Any]]:
    """Pull the structured action object out of free-form model text.

    Returns None when there is no JSON object carrying an "action" key; the
    answer is then treated as text-only.
    """
    raw = (raw_text or "").strip()
    if not raw or "{" not in raw:
        return None
    for text in _candidates(raw):
        parsed = _loads_dict(text)
        if parsed is None:
            parsed = _loads_dict(_TRAILING_COMMA_RE.sub(r"\1", text))
        if parsed is not None and "action" in parsed:
            return parsed
    logger.info("structured_output.unparsed chars=%s", len(raw))
    return None


def _strip_json(raw: str) -> str:
    text = _FENCE_RE.sub("", raw)
    block = _balanced_object_with_action(text)
    if block:
        text = text.replace(block, "")
    text = text.strip()
    if _loads_dict(text) is not None:
        return ""
    return text


def is_placeholder_text(text: Optional[str]) -> bool:
    return (text or "").strip().lower() in _PLACEHOLDER_TEXTS


def split_candidate(raw_text: Optional[str]) -> CandidateResponse:
    raw = (raw_text or "").strip()
    structured = parse_structured_output(raw)
    if structured is None:
        return CandidateResponse(text=raw)
    text = _strip_json(raw)
    message = structured.get("message")
    if not text and isinstance(message, str):
        text = message.strip()
    return CandidateResponse(text=text, structured=structured)


# ── Shape helpers shared by guards and the visualization resolver ──────

def nested_chart(structured: Dict[str, Any]) -> Dict[str, Any]:
    chart = structured.get("chart")
    return chart if isinstance(chart, dict) else {}


def looks_like_market(structured: Dict[str, Any]) -> bool:
    chart = nested_chart(structured)
    if structured.get("symbol") or structured.get("asset_type"):
        return True
    if chart.get("symbol") or chart.get("asset_type"):
        return True
    declared = structured.get("chart_type") or chart.get("type")
    return isinstance(declared, str) and declared.strip().lower() == "candlestick"


def effective_chart_type(structured: Dict[str, Any]) -> str:
    declared = structured.get("chart_type") or nested_chart(structured).get("type")
    if isinstance(declared, str) and declared.strip():
        return declared.strip().lower()
    return "candlestick" if looks_like_market(structured) else "bar"
