from __future__ import annotations

from typing import Dict, List, Optional, Sequence, Tuple

from services.ai.chat.chat_models import ChartSpec, ComparisonAsset, TableSpec
from services.ai.chat.intent_parser import timeframe_label
from services.market.indicators import pct_change, rsi, trend
from services.market.market_data_client import MarketSeries


def _r(x: Optional[float], nd: int = 2) -> Optional[float]:
    return None if x is None else round(float(x), nd)


def build_price_chart(
    series: MarketSeries,
    *,
    days: int,
    chart_type: str = "candlestick",
    language: str = "en",
) -> ChartSpec:
    kind = chart_type if chart_type in ("candlestick", "line") else "candlestick"
    if language == "id":
        title = f"Grafik Harga {series.symbol} ({days} hari)"
    else:
        title = f"{series.symbol} Price Chart ({days} days)"
    return ChartSpec(
        type=kind,
        title=title,
        data=[p.model_dump(exclude_none=True) for p in series.points],
        x_key="time",
        y_key="close",
        source="market",
        symbol=series.symbol,
        asset_type=series.asset_type,
        timeframe=timeframe_label(days),
        current_price=_r(series.current_price, 6),
        change_24h=_r(series.change_24h),
    )


def comparison_asset(series: MarketSeries, window: Optional[Sequence[float]] = None) -> ComparisonAsset:
    """Change figures cover `window` (the closes shared with the other assets) when given."""
    closes = series.closes
    span = list(window) if window else closes
    first = span[0] if span else None
    last = span[-1] if span else None
    return ComparisonAsset(
        symbol=series.symbol,
        name=series.name,
        asset_type=series.asset_type,
        exchange=series.exchange,
        market=series.exchange,
        currency=series.currency,
        current_price=_r(series.current_price, 6),
        change=_r(last - first, 6) if first is not None and last is not None else None,
        change_percent=_r(pct_change(last, first)),
        rsi=_r(rsi(closes), 1),
        trend=trend(closes),
    )


def _closes_by_time(series_list: Sequence[MarketSeries]) -> Dict[str, Dict[str, float]]:
    # hourly and daily series only meet at day granularity; the day's last close wins
    intraday = all(any("T" in p.time for p in s.points) for s in series_list)
    out: Dict[str, Dict[str, float]] = {}
    for s in series_list:
        by_time: Dict[str, float] = {}
        for p in s.points:
            by_time[p.time if intraday else p.time[:10]] = p.close
        out[s.symbol] = by_time
    return out


def _shared_times(close_by_time: Dict[str, Dict[str, float]]) -> List[str]:
    maps = list(close_by_time.values())
    shared = set(maps[0])
    for m in maps[1:]:
        shared &= set(m)
    return sorted(shared)


def build_comparison(
    series_list: Sequence[MarketSeries],
    *,
    days: int,
    language: str = "en",
) -> Tuple[ChartSpec, TableSpec]:
    """One chart, every series rebased to 100 at the first shared timestamp."""
    if len(series_list) < 2:
        raise ValueError("comparison needs at least two series")
    close_by_time = _closes_by_time(series_list)
    times = _shared_times(close_by_time)
    if len(times) < 2:
        raise ValueError("series have no overlapping history")

    rows: List[Dict[str, object]] = []
    for t in times:
        row: Dict[str, object] = {"time": t}
        for s in series_list:
            base = close_by_time[s.symbol][times[0]]
            row[s.symbol] = round(close_by_time[s.symbol][t] / base * 100.0, 2) if base else None
        rows.append(row)

    assets = [
        comparison_asset(s, [close_by_time[s.symbol][t] for t in times]) for s in series_list
    ]
    kinds = {s.asset_type for s in series_list}
    tf = timeframe_label(days)
    title = f"Perbandingan Performa - {tf}" if language == "id" else f"Performance Comparison - {tf}"

    chart = ChartSpec(
        type="comparison",
        title=title,
        data=rows,
        x_key="time",
        y_key=[s.symbol for s in series_list],
        source="market",
        asset_type=kinds.pop() if len(kinds) == 1 else "mixed",
        timeframe=tf,
        comparison_assets=assets,
    )
    table = TableSpec(
        title=title,
        columns=["symbol", "name", "price", "change_percent", "rsi", "trend"],
        rows=[
            {
                "symbol": a.symbol,
                "name": a.name,
                "price": a.current_price,
                "change_percent": a.change_percent,
                "rsi": a.rsi,
                "trend": a.trend,
            }
            for a in assets
        ],
    )
    return chart, table
