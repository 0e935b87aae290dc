"""Deterministic intent extraction for chat messages.

Everything here is regex / lookup based so mode and streaming decisions
never wait on the model. Messages arrive in English or Indonesian.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date
from typing import Dict, List, Literal, Optional

AssetKind = Literal["crypto", "stock"]
Confidence = Literal["high", "low", "none"]


@dataclass(frozen=True)
class AssetRef:
    symbol: str
    asset_type: AssetKind


@dataclass
class MarketIntent:
    is_market: bool
    symbol: Optional[str]
    asset_type: Optional[AssetKind]
    days: int
    chart_type: str
    confidence: Confidence

    @classmethod
    def none(cls) -> "MarketIntent":
        return cls(
            is_market=False,
            symbol=None,
            asset_type=None,
            days=DEFAULT_DAYS,
            chart_type="candlestick",
            confidence="none",
        )


DEFAULT_DAYS = 7
MAX_DAYS = 3650

# ── Symbol tables ────────────────────────────────────────────────────────

CRYPTO_TICKERS: Dict[str, str] = {
    t: t.upper()
    for t in (
        "btc", "eth", "bnb", "sol", "ada", "xrp", "dot", "matic", "avax",
        "doge", "ltc", "link", "atom", "trx", "shib", "usdt",
    )
}

CRYPTO_NAMES: Dict[str, str] = {
    "bitcoin": "BTC",
    "ethereum": "ETH",
    "binance coin": "BNB",
    "solana": "SOL",
    "cardano": "ADA",
    "ripple": "XRP",
    "polkadot": "DOT",
    "polygon": "MATIC",
    "avalanche": "AVAX",
    "dogecoin": "DOGE",
    "litecoin": "LTC",
    "chainlink": "LINK",
    "cosmos": "ATOM",
    "tron": "TRX",
    "shiba inu": "SHIB",
    "tether": "USDT",
}

STOCK_TICKERS: Dict[str, str] = {
    t: t.upper()
    for t in (
        "aapl", "msft", "googl", "amzn", "tsla", "meta", "nvda",
        "goto", "bbca", "bbri", "bbni", "bmri", "tlkm", "asii",
    )
}

STOCK_NAMES: Dict[str, str] = {
    "apple": "AAPL",
    "microsoft": "MSFT",
    "google": "GOOGL",
    "alphabet": "GOOGL",
    "amazon": "AMZN",
    "tesla": "TSLA",
    "nvidia": "NVDA",
    "bca": "BBCA",
    "bri": "BBRI",
    "bni": "BBNI",
    "mandiri": "BMRI",
    "telkom": "TLKM",
    "astra": "ASII",
}

# Listed on the Indonesia Stock Exchange; quoted with a ".JK" suffix upstream.
IDX_TICKERS = frozenset({"GOTO", "BBCA", "BBRI", "BBNI", "BMRI", "TLKM", "ASII"})

# Tickers that are also everyday words only count when written in upper case.
_AMBIGUOUS_TICKERS = frozenset({"ada", "sol", "dot", "link", "atom", "meta", "goto"})

_ALIASES: Dict[str, AssetRef] = {}
for _alias, _sym in CRYPTO_TICKERS.items():
    _ALIASES[_alias] = AssetRef(_sym, "crypto")
for _alias, _sym in CRYPTO_NAMES.items():
    _ALIASES[_alias] = AssetRef(_sym, "crypto")
for _alias, _sym in STOCK_TICKERS.items():
    _ALIASES[_alias] = AssetRef(_sym, "stock")
for _alias, _sym in STOCK_NAMES.items():
    _ALIASES[_alias] = AssetRef(_sym, "stock")

_SYMBOL_RE = re.compile(
    r"(?<![a-z0-9])("
    + "|".join(re.escape(a) for a in sorted(_ALIASES, key=len, reverse=True))
    + r")(?![a-z0-9])",
    re.IGNORECASE,
)

KNOWN_TICKERS = frozenset(
    list(CRYPTO_TICKERS.values()) + list(STOCK_TICKERS.values())
)

# ── Keyword patterns ─────────────────────────────────────────────────────

_COMPARISON_RE = re.compile(
    r"\b(compare|comparison|comparing|vs|versus|bandingkan|perbandingan|"
    r"membandingkan|dibandingkan|banding|komparasi)\b",
    re.IGNORECASE,
)
_COMPARISON_LANGUAGE = (" vs ", "banding", "kategori", "category", "compare", "versus")

_MARKET_KEYWORD_RE = re.compile(
    r"\b(saham|stock|stocks|crypto|kripto|cryptocurrency|coin|koin|token|bursa|ihsg)\b",
    re.IGNORECASE,
)

_BUSINESS_CONTEXT_RE = re.compile(
    r"\b(penjualan|sales|revenue|pendapatan|omzet|omset|karyawan|employee|"
    r"pelanggan|customer|inventory|inventaris|solusi|anggaran|budget)\b",
    re.IGNORECASE,
)

_MARKET_ACTION_RE = re.compile(
    r"\b(tampilkan|analisis|analisa|analyze|analysis|chart|grafik|harga|price|"
    r"data|lihat|show|perlihatkan|buat|create|berapa|naik|turun|trend|tren|"
    r"performa|performance|prediksi|forecast|how much)\b",
    re.IGNORECASE,
)

_VIS_EXPLICIT_RE = re.compile(
    r"\b(tampilkan|buatkan|buat|bikin|show|make|create|generate|display|draw)\s+"
    r"(a\s+|an\s+|the\s+|sebuah\s+|me\s+a\s+)?"
    r"(grafik|chart|diagram|tabel|table|graph|visualisasi|visualization)\b"
    r"|\b(visualisasi|visualisasikan|visualize|visualise|plot)\b",
    re.IGNORECASE,
)
_VIS_TYPE_RE = re.compile(
    r"\b(pie|bar|line|area|donut)\s+(chart|graph)\b"
    r"|\bgrafik\s+(batang|garis|lingkaran|pie|bar|line|area)\b"
    r"|\bdiagram\s+(batang|lingkaran|garis)\b"
    r"|\b(data\s+table|tabel\s+data)\b",
    re.IGNORECASE,
)
_VIS_GENERIC_RE = re.compile(r"\b(grafik|chart|diagram|graph|tabel|table)\b", re.IGNORECASE)
_EXPLANATION_RE = re.compile(
    r"^\s*(apa\s+itu|apa\s+yang\s+dimaksud|bagaimana|mengapa|kenapa|jelaskan|"
    r"what\s+is|what\s+are|how\s+(do|does|to|can)|why|explain)\b",
    re.IGNORECASE,
)

_LETTER_RE = re.compile(r"\b(surat|letter)\b", re.IGNORECASE)
_REPORT_RE = re.compile(
    r"\b(laporan|report|executive\s+summary|ringkasan\s+eksekutif)\b",
    re.IGNORECASE,
)
_FILE_ANALYSIS_RE = re.compile(
    r"\b(analisis|analisa|analyze|analyse|review|ringkas|rangkum|summarize|summarise|periksa)\b",
    re.IGNORECASE,
)
_IMAGE_RE = re.compile(
    r"\b(gambar|gambarkan|ilustrasi|foto|desain|logo|poster|generate\s+image|"
    r"draw|illustration|image)\b",
    re.IGNORECASE,
)

_ID_WORDS = frozenset(
    {
        "yang", "dan", "di", "ke", "dari", "ini", "itu", "untuk", "dengan",
        "tidak", "apa", "bagaimana", "saya", "kamu", "anda", "bisa", "akan",
        "sudah", "belum", "berapa", "tolong", "buat", "buatkan", "tampilkan",
        "bandingkan", "harga", "naik", "turun", "dong", "sih", "juga", "atau",
        "karena", "jika", "kalau", "sekarang", "hari", "bulan", "tahun",
        "minggu", "grafik", "laporan", "surat", "lain", "lainnya", "mohon",
    }
)
_EN_WORDS = frozenset(
    {
        "the", "and", "is", "are", "what", "how", "show", "please", "of",
        "to", "for", "with", "compare", "price", "chart", "my", "can", "you",
        "me", "make", "write", "this", "that", "about", "give", "last",
    }
)
_ID_AFFIX_RE = re.compile(r"\b(meng|meny|mem|men|me|ber|ter|di)\w{3,}(kan|nya)\b", re.IGNORECASE)

_DAYS_SHORTHAND_RE = re.compile(r"\b(\d{1,4})\s?(d|w|m|y)\b", re.IGNORECASE)
_DAYS_NATURAL_RE = re.compile(
    r"\b(\d{1,4})\s*(hari|days?|minggu|weeks?|bulan|months?|tahun|years?)\b",
    re.IGNORECASE,
)
_UNIT_DAYS = {
    "d": 1, "hari": 1, "day": 1, "days": 1,
    "w": 7, "minggu": 7, "week": 7, "weeks": 7,
    "m": 30, "bulan": 30, "month": 30, "months": 30,
    "y": 365, "tahun": 365, "year": 365, "years": 365,
}


# ── Symbols ──────────────────────────────────────────────────────────────

def extract_symbols(text: str) -> List[AssetRef]:
    """All recognised assets in order of first appearance, de-duplicated."""
    out: List[AssetRef] = []
    seen: set[str] = set()
    for m in _SYMBOL_RE.finditer(text or ""):
        raw = m.group(1)
        alias = raw.lower()
        if alias in _AMBIGUOUS_TICKERS and raw != raw.upper():
            continue
        ref = _ALIASES[alias]
        if ref.symbol in seen:
            continue
        seen.add(ref.symbol)
        out.append(ref)
    return out


def lookup_asset(symbol: str) -> Optional[AssetRef]:
    return _ALIASES.get((symbol or "").strip().lower())


def parse_days(text: str) -> int:
    t = (text or "").lower()
    if re.search(r"\bytd\b|year\s+to\s+date|sejak\s+awal\s+tahun", t):
        today = date.today()
        return _clamp_days((today - date(today.year, 1, 1)).days or 1)
    if re.search(r"\b(max|all\s+time|sepanjang\s+masa)\b", t):
        return MAX_DAYS

    m = _DAYS_NATURAL_RE.search(t)
    if m:
        return _clamp_days(int(m.group(1)) * _UNIT_DAYS[m.group(2).lower()])
    m = _DAYS_SHORTHAND_RE.search(t)
    if m:
        return _clamp_days(int(m.group(1)) * _UNIT_DAYS[m.group(2).lower()])
    return DEFAULT_DAYS


def _clamp_days(days: int) -> int:
    return max(1, min(MAX_DAYS, int(days)))


def timeframe_label(days: int) -> str:
    if days <= 1:
        return "1D"
    if days <= 5:
        return "5D"
    if days <= 31:
        return "1M"
    if days <= 183:
        return "6M"
    if days <= 366:
        return "1Y"
    if days <= 1830:
        return "5Y"
    return "MAX"


_TIMEFRAME_DAYS: Dict[str, int] = {
    "1D": 1, "5D": 5, "7D": 7, "1W": 7, "1M": 30, "3M": 90,
    "6M": 180, "1Y": 365, "5Y": 1825, "MAX": MAX_DAYS, "YTD": 0,
}


def timeframe_to_days(timeframe: Optional[str]) -> Optional[int]:
    if not timeframe or not isinstance(timeframe, str):
        return None
    key = timeframe.strip().upper()
    if key in _TIMEFRAME_DAYS:
        return _TIMEFRAME_DAYS[key] or parse_days("ytd")
    return parse_days(timeframe) if _DAYS_SHORTHAND_RE.search(timeframe) else None


def detect_chart_type(text: str) -> str:
    t = (text or "").lower()
    if re.search(r"\b(candle|candlestick|ohlc)\b", t):
        return "candlestick"
    if re.search(r"\b(pie|lingkaran|donut|proporsi|komposisi)\b", t):
        return "pie"
    if re.search(r"\b(bar|batang)\b", t):
        return "bar"
    if re.search(r"\barea\b", t):
        return "area"
    if re.search(r"\b(line|garis|trend|tren)\b", t):
        return "line"
    return "candlestick"


def has_market_keyword(text: str) -> bool:
    return bool(_MARKET_KEYWORD_RE.search(text or ""))


def is_business_context(text: str) -> bool:
    return bool(_BUSINESS_CONTEXT_RE.search(text or ""))


def detect_market_request(text: str) -> MarketIntent:
    if not text or is_business_context(text):
        return MarketIntent.none()
    symbols = extract_symbols(text)
    if not symbols:
        return MarketIntent.none()
    first = symbols[0]
    confidence: Confidence = "high" if _MARKET_ACTION_RE.search(text) else "low"
    return MarketIntent(
        is_market=True,
        symbol=first.symbol,
        asset_type=first.asset_type,
        days=parse_days(text),
        chart_type=detect_chart_type(text),
        confidence=confidence,
    )


# ── Intent flags ─────────────────────────────────────────────────────────

def has_comparison_keyword(text: str) -> bool:
    return bool(_COMPARISON_RE.search(text or ""))


def is_comparison_request(text: str) -> bool:
    return has_comparison_keyword(text) or len(extract_symbols(text)) >= 2


def has_comparison_language(text: str) -> bool:
    t = f" {(text or '').lower()} "
    return any(k in t for k in _COMPARISON_LANGUAGE)


def needs_visualization(text: str) -> bool:
    if not text:
        return False
    if _VIS_EXPLICIT_RE.search(text) or _VIS_TYPE_RE.search(text):
        return True
    if _EXPLANATION_RE.search(text):
        return False
    return bool(_VIS_GENERIC_RE.search(text))


def is_letter_request(text: str) -> bool:
    return bool(_LETTER_RE.search(text or ""))


def is_report_request(text: str) -> bool:
    return bool(_REPORT_RE.search(text or ""))


def is_file_analysis_request(text: str) -> bool:
    return bool(_FILE_ANALYSIS_RE.search(text or ""))


def wants_image(text: str) -> bool:
    return bool(_IMAGE_RE.search(text or ""))


def detect_language(text: str) -> str:
    words = re.findall(r"[a-zA-Z]+", (text or "").lower())
    if not words:
        return "en"
    id_score = sum(1 for w in words if w in _ID_WORDS)
    id_score += 0.5 * len(_ID_AFFIX_RE.findall(text))
    en_score = sum(1 for w in words if w in _EN_WORDS)
    return "id" if id_score > en_score else "en"
