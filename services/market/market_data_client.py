# services/market/market_data_client.py
from __future__ import annotations

import asyncio
import logging
import os
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Protocol

import httpx
import pandas as pd
from pydantic import BaseModel, Field
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from services.ai.chat.errors import MarketDataError
from services.ai.chat.intent_parser import IDX_TICKERS
from services.cache.cache_utils import cacheable, should_cache_ok_json
from services.market.indicators import pct_change

logger = logging.getLogger(__name__)

BINANCE_KLINES_URL = "https://api.binance.com/api/v3/klines"
MARKET_CACHE_TTL_SEC = int(os.getenv("MARKET_CACHE_TTL_SEC", "60"))
HTTP_TIMEOUT_SEC = float(os.getenv("MARKET_HTTP_TIMEOUT_SEC", "10"))

ASSET_NAMES: Dict[str, str] = {
    "BTC": "Bitcoin", "ETH": "Ethereum", "BNB": "BNB", "SOL": "Solana",
    "ADA": "Cardano", "XRP": "XRP", "DOT": "Polkadot", "MATIC": "Polygon",
    "AVAX": "Avalanche", "DOGE": "Dogecoin", "LTC": "Litecoin",
    "LINK": "Chainlink", "ATOM": "Cosmos", "TRX": "TRON", "SHIB": "Shiba Inu",
    "USDT": "Tether", "AAPL": "Apple", "MSFT": "Microsoft", "GOOGL": "Alphabet",
    "AMZN": "Amazon", "TSLA": "Tesla", "META": "Meta Platforms", "NVDA": "NVIDIA",
    "GOTO": "GoTo Gojek Tokopedia", "BBCA": "Bank Central Asia",
    "BBRI": "Bank Rakyat Indonesia", "BBNI": "Bank Negara Indonesia",
    "BMRI": "Bank Mandiri", "TLKM": "Telkom Indonesia", "ASII": "Astra International",
}


class OhlcPoint(BaseModel):
    time: str
    open: float
    high: float
    low: float
    close: float
    volume: Optional[float] = None


class MarketSeries(BaseModel):
    symbol: str
    asset_type: str
    name: str
    currency: str = "USD"
    exchange: Optional[str] = None
    points: List[OhlcPoint] = Field(default_factory=list)

    @property
    def closes(self) -> List[float]:
        return [p.close for p in self.points]

    @property
    def current_price(self) -> Optional[float]:
        return self.points[-1].close if self.points else None

    @property
    def change_24h(self) -> Optional[float]:
        if len(self.points) < 2:
            return None
        return pct_change(self.points[-1].close, self.points[-2].close)


class MarketDataService(Protocol):
    async def fetch_series(self, symbol: str, asset_type: str, days: int) -> MarketSeries:
        ...


# ── Crypto (Binance klines) ──────────────────────────────────────────────

@retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.2, max=2),
    retry=retry_if_exception_type(httpx.TransportError),
    reraise=True,
)
async def _get_klines(pair: str, interval: str, limit: int) -> List[Any]:
    async with httpx.AsyncClient(timeout=HTTP_TIMEOUT_SEC) as client:
        r = await client.get(
            BINANCE_KLINES_URL,
            params={"symbol": pair, "interval": interval, "limit": limit},
        )
        r.raise_for_status()
        data = r.json()
    return data if isinstance(data, list) else []


def _crypto_key(symbol: str, days: int) -> str:
    return f"market:crypto:{symbol}:{days}"


@cacheable(ttl=MARKET_CACHE_TTL_SEC, key_fn=_crypto_key, should_cache=should_cache_ok_json)
async def fetch_crypto_series_raw(symbol: str, days: int) -> Dict[str, Any]:
    hourly = days <= 2
    interval = "1h" if hourly else "1d"
    limit = min(1000, days * 24 if hourly else days + 1)
    try:
        rows = await _get_klines(f"{symbol.upper()}USDT", interval, limit)
    except httpx.HTTPError as exc:
        return {"status": "error", "error": f"{type(exc).__name__}"}

    points: List[Dict[str, Any]] = []
    for row in rows:
        if not isinstance(row, list) or len(row) < 6:
            continue
        opened = datetime.fromtimestamp(int(row[0]) / 1000, tz=timezone.utc)
        points.append(
            {
                "time": opened.strftime("%Y-%m-%dT%H:%M") if hourly else opened.date().isoformat(),
                "open": float(row[1]),
                "high": float(row[2]),
                "low": float(row[3]),
                "close": float(row[4]),
                "volume": float(row[5]),
            }
        )
    if not points:
        return {"status": "error", "error": "empty_klines"}
    return {"status": "ok", "points": points}


# ── Stocks (yahooquery) ──────────────────────────────────────────────────

def _yahoo_symbol(symbol: str) -> str:
    sym = symbol.upper()
    return f"{sym}.JK" if sym in IDX_TICKERS else sym


def _yahoo_period(days: int) -> str:
    if days <= 5:
        return "5d"
    if days <= 30:
        return "1mo"
    if days <= 90:
        return "3mo"
    if days <= 180:
        return "6mo"
    if days <= 365:
        return "1y"
    if days <= 730:
        return "2y"
    if days <= 1825:
        return "5y"
    return "max"


def _sync_stock_history(yahoo_symbol: str, days: int) -> List[Dict[str, Any]]:
    from yahooquery import Ticker

    df = Ticker(yahoo_symbol).history(period=_yahoo_period(days), interval="1d")
    # yahooquery returns a dict (error payload) instead of a frame for unknown tickers
    if not isinstance(df, pd.DataFrame) or df.empty:
        return []
    df = df.reset_index()
    df["date"] = pd.to_datetime(df["date"], utc=True, errors="coerce")
    cutoff = (date.today() - timedelta(days=max(days, 2))).isoformat()
    points: List[Dict[str, Any]] = []
    for rec in df.to_dict("records"):
        ts = rec.get("date")
        close = rec.get("close")
        if ts is None or pd.isna(ts) or close is None or pd.isna(close):
            continue
        day = ts.strftime("%Y-%m-%d")
        points.append(
            {
                "time": day,
                "open": float(rec.get("open", close)),
                "high": float(rec.get("high", close)),
                "low": float(rec.get("low", close)),
                "close": float(close),
                "volume": float(rec["volume"]) if pd.notna(rec.get("volume")) else None,
            }
        )
    recent = [p for p in points if p["time"] >= cutoff]
    return recent if len(recent) >= 2 else points[-2:]


def _stock_key(symbol: str, days: int) -> str:
    return f"market:stock:{symbol}:{days}"


@cacheable(ttl=MARKET_CACHE_TTL_SEC, key_fn=_stock_key, should_cache=should_cache_ok_json)
async def fetch_stock_series_raw(symbol: str, days: int) -> Dict[str, Any]:
    try:
        points = await asyncio.to_thread(_sync_stock_history, _yahoo_symbol(symbol), days)
    except Exception as exc:
        logger.warning("market.stock_history_error symbol=%s err=%s", symbol, type(exc).__name__)
        return {"status": "error", "error": type(exc).__name__}
    if not points:
        return {"status": "error", "error": "empty_history"}
    return {"status": "ok", "points": points}


class MarketDataClient:
    """OHLC series for crypto (Binance) and stocks (Yahoo Finance)."""

    async def fetch_series(self, symbol: str, asset_type: str, days: int) -> MarketSeries:
        sym = (symbol or "").strip().upper()
        if not sym:
            raise MarketDataError(symbol, "empty symbol")
        if asset_type == "crypto":
            raw = await fetch_crypto_series_raw(sym, days)
            exchange, currency = "Binance", "USD"
        elif asset_type == "stock":
            raw = await fetch_stock_series_raw(sym, days)
            idx = sym in IDX_TICKERS
            exchange, currency = ("IDX", "IDR") if idx else ("NASDAQ", "USD")
        else:
            raise MarketDataError(sym, f"unsupported asset type {asset_type!r}")

        if not isinstance(raw, dict) or raw.get("status") != "ok":
            reason = raw.get("error") if isinstance(raw, dict) else "bad_payload"
            logger.warning("market.fetch_failed symbol=%s type=%s reason=%s", sym, asset_type, reason)
            raise MarketDataError(sym, str(reason))

        return MarketSeries(
            symbol=sym,
            asset_type=asset_type,
            name=ASSET_NAMES.get(sym, sym),
            currency=currency,
            exchange=exchange,
            points=[OhlcPoint(**p) for p in raw.get("points", [])],
        )
