from __future__ import annotations

from typing import Optional

from services.ai.chat.letter_templates import letter_instructions
from services.ai.chat.module_policy import (
    OperatingMode,
    get_allowed_chart_types,
    get_allowed_sources,
    get_creativity_level,
)

GLOBAL_RULES = {
    "en": """Global rules:
- Answer in English.
- Never invent prices, metrics, dates or data points. If data is missing, say so.
- Only use numbers that appear in the user's message, attached documents or the provided market data.
- Keep answers concise; expand only when asked.""",
    "id": """Aturan umum:
- Jawab dalam Bahasa Indonesia.
- Jangan pernah mengarang harga, metrik, tanggal, atau data. Jika data tidak ada, katakan dengan jelas.
- Hanya gunakan angka dari pesan pengguna, dokumen terlampir, atau data market yang diberikan.
- Jawab ringkas; perluas hanya jika diminta.""",
}

_MODE_PROMPTS = {
    OperatingMode.MARKET_ANALYSIS: """You are a market analyst inside a business assistant.
Explain price action, trend and risk for the requested crypto or stock assets using the market data provided.
When a chart helps, emit a show_chart action with symbol, asset_type and timeframe instead of raw price rows.
Educational guidance only, not personalized financial advice.""",
    OperatingMode.BUSINESS_ADMIN: """You are a business administration assistant.
Help with business data, operations and visualizations of the user's own figures.
Charts must use exactly the labels and values the user supplied: no extra rows, no extra series.
Market prices are out of scope here; point the user to Market Analysis for those.""",
    OperatingMode.REPORT_GENERATOR: """You are a business report writer.
Produce structured reports (summary, findings, recommendations) from the user's data and attached documents.
Charts may only restate figures present in the input.""",
    OperatingMode.LETTER_GENERATOR: """You are a professional letter writer.
Draft complete, well-formatted business or official letters (heading, salutation, body, closing, signature block).
Do not attach charts or tables.""",
    OperatingMode.CHAT: """You are a helpful business assistant.
Answer conversationally. Simple bar or line charts of user-provided data are allowed.""",
}

STRUCTURED_OUTPUT_RULES = """Structured output:
If (and only if) the answer needs a chart or table, append one JSON object in a ```json block:
{{"action": "show_chart" | "show_table" | "text_only", "module": "{mode}", "chart_type": one of [{chart_types}],
  "title": str, "data": [{{"name": str, "value": number}}], "xKey": str, "yKey": str | [str],
  "source": one of [{sources}], "symbol": str, "asset_type": "crypto" | "stock", "timeframe": str, "message": str}}
Omit fields that do not apply. Use "text_only" when no visualization is needed."""


def temperature_for(mode: OperatingMode) -> float:
    return round(get_creativity_level(mode) / 10.0, 2)


def build_system_prompt(
    mode: OperatingMode,
    language: str = "en",
    *,
    context_text: Optional[str] = None,
    market_context: Optional[str] = None,
    letter_type: Optional[str] = None,
) -> str:
    parts = [_MODE_PROMPTS[mode], GLOBAL_RULES.get(language, GLOBAL_RULES["en"])]
    if mode == OperatingMode.LETTER_GENERATOR:
        parts.append(letter_instructions(letter_type or "official", language))
    chart_types = get_allowed_chart_types(mode)
    if chart_types:
        parts.append(
            STRUCTURED_OUTPUT_RULES.format(
                mode=mode.value,
                chart_types=", ".join(sorted(chart_types)),
                sources=", ".join(sorted(get_allowed_sources(mode))) or "none",
            )
        )
    if market_context:
        parts.append(f"Market data (fetched, authoritative):\n{market_context}")
    if context_text:
        parts.append(f"Reference context (documents / web search):\n{context_text}")
    return "\n\n".join(parts)


def build_user_prompt(message: str, history_text: str) -> str:
    if not history_text:
        return message
    return f"Conversation so far:\n{history_text}\n\nUSER: {message}"
