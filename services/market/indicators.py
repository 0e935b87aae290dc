from __future__ import annotations

from typing import List, Optional


def sma(values: List[float], window: int) -> Optional[float]:
    if window <= 0 or len(values) < window:
        return None
    return sum(values[-window:]) / window


def rsi(closes: List[float], period: int = 14) -> Optional[float]:
    """Wilder RSI over the last `period` changes. None when history is too short."""
    if len(closes) <= period:
        return None
    gains = 0.0
    losses = 0.0
    for prev, cur in zip(closes[-period - 1:-1], closes[-period:]):
        delta = cur - prev
        if delta >= 0:
            gains += delta
        else:
            losses -= delta
    if losses == 0:
        return 100.0
    rs = (gains / period) / (losses / period)
    return 100.0 - (100.0 / (1.0 + rs))


def trend(closes: List[float], window: int = 20, band_pct: float = 1.0) -> str:
    if not closes:
        return "unknown"
    ma = sma(closes, min(window, len(closes)))
    if ma is None or ma == 0:
        return "unknown"
    diff_pct = (closes[-1] / ma - 1.0) * 100.0
    if diff_pct > band_pct:
        return "bullish"
    if diff_pct < -band_pct:
        return "bearish"
    return "sideways"


def pct_change(cur: Optional[float], base: Optional[float]) -> Optional[float]:
    if cur is None or base in (None, 0):
        return None
    return (cur / base - 1.0) * 100.0
