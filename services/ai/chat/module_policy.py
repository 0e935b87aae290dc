from __future__ import annotations

from enum import Enum
from types import MappingProxyType
from typing import Dict, FrozenSet, Mapping, Optional


class OperatingMode(str, Enum):
    CHAT = "chat"
    MARKET_ANALYSIS = "market_analysis"
    LETTER_GENERATOR = "letter_generator"
    REPORT_GENERATOR = "report_generator"
    BUSINESS_ADMIN = "business_admin"


# ── Policy tables (read-only, shared across requests) ─────────────────

ALLOWED_SOURCES: Mapping[OperatingMode, FrozenSet[str]] = MappingProxyType(
    {
        OperatingMode.MARKET_ANALYSIS: frozenset({"market", "live"}),
        OperatingMode.BUSINESS_ADMIN: frozenset({"internal", "user"}),
        OperatingMode.REPORT_GENERATOR: frozenset({"internal", "user"}),
        OperatingMode.LETTER_GENERATOR: frozenset(),
        OperatingMode.CHAT: frozenset({"internal", "user"}),
    }
)

ALLOWED_CHART_TYPES: Mapping[OperatingMode, FrozenSet[str]] = MappingProxyType(
    {
        OperatingMode.MARKET_ANALYSIS: frozenset({"candlestick", "line", "comparison"}),
        OperatingMode.BUSINESS_ADMIN: frozenset({"line", "bar", "pie", "area", "composed"}),
        OperatingMode.REPORT_GENERATOR: frozenset({"bar", "line", "pie", "area"}),
        OperatingMode.LETTER_GENERATOR: frozenset(),
        OperatingMode.CHAT: frozenset({"bar", "line"}),
    }
)

# 0 = strictly factual, 10 = free-form prose.
CREATIVITY_LEVEL: Mapping[OperatingMode, int] = MappingProxyType(
    {
        OperatingMode.MARKET_ANALYSIS: 5,
        OperatingMode.BUSINESS_ADMIN: 0,
        OperatingMode.REPORT_GENERATOR: 3,
        OperatingMode.LETTER_GENERATOR: 7,
        OperatingMode.CHAT: 5,
    }
)

MODE_DISPLAY_NAMES: Mapping[OperatingMode, Dict[str, str]] = MappingProxyType(
    {
        OperatingMode.MARKET_ANALYSIS: {"en": "Market Analysis", "id": "Analisis Market"},
        OperatingMode.BUSINESS_ADMIN: {"en": "Data Visualization", "id": "Visualisasi Data"},
        OperatingMode.REPORT_GENERATOR: {"en": "Report Generator", "id": "Pembuat Laporan"},
        OperatingMode.LETTER_GENERATOR: {"en": "Letter Generator", "id": "Pembuat Surat"},
        OperatingMode.CHAT: {"en": "Chat", "id": "Chat"},
    }
)

_MODE_ALIASES: Mapping[str, OperatingMode] = MappingProxyType(
    {
        "market": OperatingMode.MARKET_ANALYSIS,
        "market-analysis": OperatingMode.MARKET_ANALYSIS,
        "data-visualization": OperatingMode.BUSINESS_ADMIN,
        "data_visualization": OperatingMode.BUSINESS_ADMIN,
        "general": OperatingMode.BUSINESS_ADMIN,
        "business": OperatingMode.BUSINESS_ADMIN,
        "reports": OperatingMode.REPORT_GENERATOR,
        "report": OperatingMode.REPORT_GENERATOR,
        "letter": OperatingMode.LETTER_GENERATOR,
    }
)


def parse_mode(value: object) -> Optional[OperatingMode]:
    """Map a declared module string (or alias) to an OperatingMode, None if unknown."""
    if isinstance(value, OperatingMode):
        return value
    if not isinstance(value, str):
        return None
    key = value.strip().lower()
    if not key:
        return None
    try:
        return OperatingMode(key)
    except ValueError:
        return _MODE_ALIASES.get(key)


def get_allowed_sources(mode: OperatingMode) -> FrozenSet[str]:
    return ALLOWED_SOURCES[mode]


def get_allowed_chart_types(mode: OperatingMode) -> FrozenSet[str]:
    return ALLOWED_CHART_TYPES[mode]


def get_creativity_level(mode: OperatingMode) -> int:
    return CREATIVITY_LEVEL[mode]


def charts_allowed(mode: OperatingMode) -> bool:
    return bool(ALLOWED_CHART_TYPES[mode])


def allows_market_data(mode: OperatingMode) -> bool:
    return "market" in ALLOWED_SOURCES[mode]


def display_name(mode: OperatingMode, language: str = "en") -> str:
    names = MODE_DISPLAY_NAMES[mode]
    return names.get(language) or names["en"]


def policy_snapshot() -> Dict[str, Dict[str, object]]:
    return {
        mode.value: {
            "allowed_sources": sorted(ALLOWED_SOURCES[mode]),
            "allowed_chart_types": sorted(ALLOWED_CHART_TYPES[mode]),
            "creativity_level": CREATIVITY_LEVEL[mode],
        }
        for mode in OperatingMode
    }
