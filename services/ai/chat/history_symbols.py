"""Symbol sourcing for comparison requests that lean on earlier turns.

"bandingkan dengan yang lain" only makes sense together with the assets
discussed before, so symbols may be borrowed from recent history. Assistant
turns usually end with suggested follow-up questions; those sections are cut
before scanning so the assistant's own suggestions are not read back as the
user's choice. The header list below is a heuristic and can be extended.
"""
from __future__ import annotations

import logging
import re
from typing import List, Sequence, Tuple

from services.ai.chat.chat_models import ChatMessage
from services.ai.chat.intent_parser import AssetRef, extract_symbols

logger = logging.getLogger(__name__)

MAX_COMPARISON_SYMBOLS = 5
PAIR_LOOKBACK_TURNS = 3

_RECOMMENDATION_RES = (
    re.compile(
        r"\b(pertanyaan\s+lanjutan|rekomendasi\s+pertanyaan|saran\s+pertanyaan|"
        r"follow[- ]?up\s+questions?|suggested\s+questions?|you\s+might\s+also\s+ask|"
        r"related\s+questions?)\b",
        re.IGNORECASE,
    ),
    # A line holding only a "Recommendations" style header.
    re.compile(
        r"^[\s#>*_\-]*(rekomendasi|recommendations?|saran)[\s*_:]*$",
        re.IGNORECASE | re.MULTILINE,
    ),
)


def strip_recommendations(text: str) -> Tuple[str, str]:
    """Split turn text into (kept, removed) at the first recommendation header."""
    cut = len(text or "")
    for pattern in _RECOMMENDATION_RES:
        m = pattern.search(text or "")
        if m and m.start() < cut:
            cut = m.start()
    return (text or "")[:cut], (text or "")[cut:]


def _scan_turn(turn: ChatMessage) -> List[AssetRef]:
    kept, removed = strip_recommendations(turn.content)
    if removed:
        dropped = [r.symbol for r in extract_symbols(removed)]
        if dropped:
            logger.info(
                "history.recommendation_stripped role=%s dropped_symbols=%s",
                turn.role,
                ",".join(dropped),
            )
    return extract_symbols(kept)


def resolve_comparison_symbols(
    message: str,
    history: Sequence[ChatMessage],
    *,
    max_history_turns: int = 5,
) -> List[AssetRef]:
    current = extract_symbols(message)
    if len(current) >= 2:
        return current[:MAX_COMPARISON_SYMBOLS]

    if len(current) == 1:
        base = current[0]
        candidates: List[AssetRef] = []
        for turn in reversed(list(history)[-PAIR_LOOKBACK_TURNS:]):
            for ref in _scan_turn(turn):
                if ref.symbol != base.symbol and ref.asset_type == base.asset_type and ref not in candidates:
                    candidates.append(ref)
        if not candidates:
            logger.info("history.no_pair symbol=%s", base.symbol)
            return [base]
        if len(candidates) > 1:
            logger.warning(
                "history.ambiguous_pair symbol=%s candidates=%s chosen=%s",
                base.symbol,
                ",".join(c.symbol for c in candidates),
                candidates[0].symbol,
            )
        return [base, candidates[0]]

    collected: List[AssetRef] = []
    for turn in reversed(list(history)[-max_history_turns:]):
        for ref in _scan_turn(turn):
            if all(ref.symbol != c.symbol for c in collected):
                collected.append(ref)
    if len(collected) > 2:
        logger.warning(
            "history.ambiguous_symbols candidates=%s chosen=%s",
            ",".join(c.symbol for c in collected),
            ",".join(c.symbol for c in collected[:2]),
        )
    return collected[:2]
