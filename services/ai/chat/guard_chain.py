"""Validation middleware for structured model output.

Five independent guards police every chart/table claim the model makes:

  1. Module       declared module and forbidden market content
  2. Source       declared or inferred data source vs. mode policy
  3. Chart Type   chart type vs. mode policy
  4. Schema       structural shape (jsonschema)
  5. Consistency  model data vs. data the user actually typed

All guards run on every structured candidate and their errors accumulate in
that order. Text-only answers skip the chain. A failing chain produces a
single user-facing fallback message and no payload.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from jsonschema import Draft202012Validator

from services.ai.chat.chat_models import CandidateResponse, ExtractedUserData, MiddlewareResult
from services.ai.chat.intent_parser import KNOWN_TICKERS, has_comparison_language
from services.ai.chat.module_policy import (
    OperatingMode,
    allows_market_data,
    display_name,
    get_allowed_chart_types,
    get_allowed_sources,
    parse_mode,
)
from services.ai.chat.structured_output import effective_chart_type, looks_like_market, nested_chart
from services.ai.chat.structured_output_schema import STRUCTURED_ACTION_SCHEMA
from services.ai.chat.user_data_parser import label_key

logger = logging.getLogger(__name__)

_SCHEMA_VALIDATOR = Draft202012Validator(STRUCTURED_ACTION_SCHEMA)
_MAX_SCHEMA_ERRORS = 3

_TICKER_RE = re.compile(
    r"(?<![A-Z0-9])(" + "|".join(sorted(KNOWN_TICKERS, key=len, reverse=True)) + r")(?![A-Z0-9])"
)


@dataclass(frozen=True)
class GuardVerdict:
    passed: bool
    error: Optional[str] = None
    warning: Optional[str] = None

    @classmethod
    def ok(cls, warning: Optional[str] = None) -> "GuardVerdict":
        return cls(passed=True, warning=warning)

    @classmethod
    def fail(cls, error: str) -> "GuardVerdict":
        return cls(passed=False, error=error)


@dataclass(frozen=True)
class GuardInput:
    mode: OperatingMode
    structured: Dict[str, Any]
    extracted: Optional[ExtractedUserData]
    user_message: str


Guard = Callable[[GuardInput], GuardVerdict]


def _fmt_allowed(values: Sequence[str]) -> str:
    return ", ".join(sorted(values)) or "none"


# ── Guards ───────────────────────────────────────────────────────────────

def module_guard(g: GuardInput) -> GuardVerdict:
    declared = g.structured.get("module")
    if declared is not None and parse_mode(declared) != g.mode:
        return GuardVerdict.fail(f'Module mismatch: expected "{g.mode.value}", got "{declared}"')

    if not allows_market_data(g.mode):
        blob = json.dumps(g.structured, ensure_ascii=False, default=str)
        found = sorted(set(_TICKER_RE.findall(blob)))
        if found:
            return GuardVerdict.fail(
                f"Market symbols detected in {g.mode.value} module: {', '.join(found)}"
            )
    return GuardVerdict.ok()


def source_guard(g: GuardInput) -> GuardVerdict:
    allowed = get_allowed_sources(g.mode)
    declared = g.structured.get("source") or nested_chart(g.structured).get("source")

    if declared:
        if str(declared).strip().lower() not in allowed:
            return GuardVerdict.fail(
                f'Invalid source "{declared}" for module "{g.mode.value}". '
                f"Allowed: {_fmt_allowed(allowed)}"
            )
        return GuardVerdict.ok()

    if looks_like_market(g.structured) and "market" not in allowed:
        return GuardVerdict.fail(f"Market data source not allowed in {g.mode.value} module")
    if not allowed and g.structured.get("data"):
        return GuardVerdict.fail(f'No data sources are allowed in "{g.mode.value}" module')
    return GuardVerdict.ok()


def chart_type_guard(g: GuardInput) -> GuardVerdict:
    if g.structured.get("action") != "show_chart":
        return GuardVerdict.ok()
    allowed = get_allowed_chart_types(g.mode)
    if not allowed:
        return GuardVerdict.fail(f'Charts not allowed in "{g.mode.value}" module')
    chart_type = effective_chart_type(g.structured)
    if chart_type not in allowed:
        return GuardVerdict.fail(
            f'Chart type "{chart_type}" not allowed in "{g.mode.value}". '
            f"Allowed: {_fmt_allowed(allowed)}"
        )
    return GuardVerdict.ok()


def schema_guard(g: GuardInput) -> GuardVerdict:
    errors = sorted(
        _SCHEMA_VALIDATOR.iter_errors(g.structured),
        key=lambda e: [str(p) for p in e.absolute_path],
    )
    if not errors:
        return GuardVerdict.ok()
    details = []
    for err in errors[:_MAX_SCHEMA_ERRORS]:
        path = "/".join(str(p) for p in err.absolute_path) or "<root>"
        details.append(f"{path}: {err.message}")
    return GuardVerdict.fail("Schema validation failed: " + "; ".join(details))


def consistency_guard(g: GuardInput) -> GuardVerdict:
    extracted = g.extracted
    if extracted is None or extracted.data_points <= 0:
        return GuardVerdict.ok()
    rows = g.structured.get("data")
    if g.structured.get("action") != "show_chart" or not isinstance(rows, list):
        return GuardVerdict.ok()

    if len(rows) != extracted.data_points:
        return GuardVerdict.fail(
            f"Data count mismatch: user provided {extracted.data_points} points, "
            f"model returned {len(rows)}"
        )

    dict_rows = [r for r in rows if isinstance(r, dict) and r]
    x_key = g.structured.get("xKey")
    if not isinstance(x_key, str) or not x_key:
        x_key = next(iter(dict_rows[0])) if dict_rows else None

    loose: List[str] = []
    if x_key:
        model_labels = [label_key(r.get(x_key, "")) for r in dict_rows]
        model_labels = [m for m in model_labels if m]
        for label in extracted.labels:
            needle = label_key(label)
            if not needle or needle in model_labels:
                continue
            match = next((m for m in model_labels if needle in m or m in needle), None)
            if match is None:
                return GuardVerdict.fail(
                    f'Label mismatch: user label "{label}" not found in model output'
                )
            loose.append(f'"{label}"~"{match}"')

    y_key = g.structured.get("yKey")
    if isinstance(y_key, list) and len(y_key) > 1:
        if not (extracted.is_comparison or has_comparison_language(g.user_message)):
            return GuardVerdict.fail(
                f"Model invented {len(y_key)} value series but user only provided single values"
            )

    warning = f"Labels matched loosely: {', '.join(loose)}" if loose else None
    return GuardVerdict.ok(warning=warning)


GUARDS: Tuple[Tuple[str, Guard], ...] = (
    ("Module Guard", module_guard),
    ("Source Guard", source_guard),
    ("Chart Type Guard", chart_type_guard),
    ("Schema Guard", schema_guard),
    ("Consistency Guard", consistency_guard),
)


def _run_guard(name: str, guard: Guard, g: GuardInput) -> GuardVerdict:
    try:
        return guard(g)
    except Exception:
        logger.exception("guard.crashed guard=%s mode=%s", name, g.mode.value)
        return GuardVerdict.fail("could not evaluate candidate")


def validate(
    mode: OperatingMode,
    candidate: CandidateResponse,
    extracted_user_data: Optional[ExtractedUserData] = None,
    *,
    user_message: str = "",
    language: str = "en",
) -> MiddlewareResult:
    structured = candidate.structured
    if not isinstance(structured, dict) or structured.get("action") in (None, "text_only"):
        return MiddlewareResult(valid=True, payload=candidate)

    g = GuardInput(
        mode=mode,
        structured=structured,
        extracted=extracted_user_data,
        user_message=user_message,
    )
    errors: List[str] = []
    warnings: List[str] = []
    for name, guard in GUARDS:
        verdict = _run_guard(name, guard, g)
        if not verdict.passed:
            errors.append(f"[{name}] {verdict.error}")
        if verdict.warning:
            warnings.append(f"[{name}] {verdict.warning}")

    if errors:
        logger.warning(
            "guard.rejected mode=%s action=%s errors=%s",
            mode.value,
            structured.get("action"),
            len(errors),
        )
        return MiddlewareResult(
            valid=False,
            payload=None,
            errors=errors,
            warnings=warnings,
            fallback_message=build_fallback_message(mode, errors, language),
        )

    logger.info("guard.passed mode=%s action=%s warnings=%s", mode.value, structured.get("action"), len(warnings))
    return MiddlewareResult(valid=True, payload=candidate, errors=[], warnings=warnings)


# ── Fallback messages ────────────────────────────────────────────────────

_FALLBACK_TEXT: Dict[str, Dict[str, str]] = {
    "market_redirect": {
        "en": (
            "Market data can't be shown in the {module} menu. Please switch to "
            "Market Analysis to view prices, charts and asset comparisons."
        ),
        "id": (
            "Data market tidak dapat ditampilkan di menu {module}. Silakan gunakan "
            "menu Analisis Market untuk melihat harga, grafik, dan perbandingan aset."
        ),
    },
    "data_mismatch": {
        "en": (
            "The generated chart didn't match the data you provided, so it was not "
            "shown. Please check your data and try again."
        ),
        "id": (
            "Terjadi ketidakcocokan antara data Anda dan hasil visualisasi, sehingga "
            "grafik tidak ditampilkan. Silakan periksa data Anda dan coba lagi."
        ),
    },
    "invalid_format": {
        "en": "The response format was invalid and could not be displayed. Please try again.",
        "id": "Format respons tidak valid sehingga tidak dapat ditampilkan. Silakan coba lagi.",
    },
    "chart_type": {
        "en": "That chart type isn't available in the {module} menu. Available types: {allowed}.",
        "id": "Jenis grafik tersebut tidak tersedia di menu {module}. Jenis yang tersedia: {allowed}.",
    },
    "no_charts": {
        "en": "Charts aren't available in the {module} menu.",
        "id": "Grafik tidak tersedia di menu {module}.",
    },
    "generic": {
        "en": "The visualization can't be displayed right now. Please try again or rephrase your request.",
        "id": "Visualisasi tidak dapat ditampilkan saat ini. Silakan coba lagi atau ubah permintaan Anda.",
    },
}


def _mentions(errors: Sequence[str], *needles: str) -> bool:
    text = " ".join(errors).lower()
    return any(n.lower() in text for n in needles)


def _fallback_key(mode: OperatingMode, errors: Sequence[str]) -> str:
    # no redirect from market analysis to itself
    if mode != OperatingMode.MARKET_ANALYSIS and _mentions(errors, "market"):
        return "market_redirect"
    if _mentions(errors, "mismatch", "invented"):
        return "data_mismatch"
    if _mentions(errors, "Schema"):
        return "invalid_format"
    if _mentions(errors, "Chart type", "Charts not allowed"):
        return "chart_type" if get_allowed_chart_types(mode) else "no_charts"
    return "generic"


def build_fallback_message(mode: OperatingMode, errors: Sequence[str], language: str = "en") -> str:
    """Map any set of guard errors to exactly one user-facing message."""
    lang = language if language in ("en", "id") else "en"
    template = _FALLBACK_TEXT[_fallback_key(mode, errors)][lang]
    return template.format(
        module=display_name(mode, lang),
        allowed=", ".join(sorted(get_allowed_chart_types(mode))),
    )
