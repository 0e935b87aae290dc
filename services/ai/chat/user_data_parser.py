from __future__ import annotations

import logging
import re
from typing import Dict, List, NamedTuple, Optional

from services.ai.chat.chat_models import ExtractedUserData
from services.ai.chat.intent_parser import has_comparison_keyword

logger = logging.getLogger(__name__)

_UNIT = r"ribu|rb|k|juta|jt|miliar|milyar|m|b|triliun|t"
_NUMBER = r"(?:rp\.?\s*|\$\s*|usd\s*|idr\s*)?(-?\d+(?:[.,]\d+)*)\s*(" + _UNIT + r")?\b"
# a year directly after a period label belongs to the label ("Jan 2024 100")
_YEAR = r"(?:\s+((?:19|20)\d{2})(?![.,]?\d)(?!\s*(?:" + _UNIT + r")\b))?"

_PERIOD_RE = re.compile(
    r"\b(q[1-4]|(?:kuartal|quarter)\s*[1-4]|[a-z]{3,12})\b" + _YEAR + r"\s*[:=]?\s*" + _NUMBER,
    re.IGNORECASE,
)

_LABEL_VALUE_RE = re.compile(
    r"\b([a-z][\w\-/& ]{0,40}?)\s*[:=]?\s*" + _NUMBER,
    re.IGNORECASE,
)

_UNIT_MULTIPLIER = {
    "ribu": 1e3, "rb": 1e3, "k": 1e3,
    "juta": 1e6, "jt": 1e6, "m": 1e6,
    "miliar": 1e9, "milyar": 1e9, "b": 1e9,
    "triliun": 1e12, "t": 1e12,
}

MONTH_NAMES = (
    "Januari", "Februari", "Maret", "April", "Mei", "Juni",
    "Juli", "Agustus", "September", "Oktober", "November", "Desember",
)

_MONTH_ALIASES: Dict[str, int] = {}
for _num, _names in enumerate(
    (
        ("januari", "jan", "january"),
        ("februari", "feb", "february", "pebruari"),
        ("maret", "mar", "march"),
        ("april", "apr"),
        ("mei", "may"),
        ("juni", "jun", "june"),
        ("juli", "jul", "july"),
        ("agustus", "agu", "agt", "aug", "august"),
        ("september", "sep", "sept"),
        ("oktober", "okt", "oct", "october"),
        ("november", "nov"),
        ("desember", "des", "dec", "december"),
    ),
    start=1,
):
    for _name in _names:
        _MONTH_ALIASES[_name] = _num

_MONTH_TYPOS = {
    "januri": 1, "januray": 1, "janauri": 1, "jnuari": 1,
    "febuari": 2, "febuary": 2, "feburari": 2,
    "marer": 3, "martet": 3,
    "aprill": 4, "aprl": 4,
    "junni": 6, "jni": 6,
    "jully": 7, "julli": 7,
    "agusutus": 8, "agusts": 8, "agstus": 8,
    "septmber": 9, "setember": 9, "sepetember": 9,
    "okotber": 10, "oktber": 10, "ocktober": 10,
    "novmber": 11, "noveber": 11,
    "desemeber": 12, "descember": 12, "desembr": 12,
}

# only long names are fuzzy-matched; short ones collide with ordinary words
_FUZZY_TARGETS = [name for name in _MONTH_ALIASES if len(name) >= 6]

_FILLER_WORDS = {
    "tampilkan", "buatkan", "buat", "tolong", "data", "penjualan", "grafik",
    "chart", "dan", "atau", "dengan", "untuk", "dari", "ke", "di", "adalah",
    "dalam", "menampilkan", "bandingkan", "show", "make", "create", "and",
    "vs", "versus", "the", "of", "for",
}


class _Point(NamedTuple):
    label: str
    number: float
    unit: Optional[str]


def _edit_distance(a: str, b: str) -> int:
    prev = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        cur = [i]
        for j, cb in enumerate(b, start=1):
            cur.append(min(prev[j] + 1, cur[j - 1] + 1, prev[j - 1] + (ca != cb)))
        prev = cur
    return prev[-1]


def month_number(word: str) -> Optional[int]:
    """1-12 for a month name in Indonesian or English, tolerating common typos."""
    w = (word or "").strip().lower()
    if w in _MONTH_ALIASES:
        return _MONTH_ALIASES[w]
    if w in _MONTH_TYPOS:
        return _MONTH_TYPOS[w]
    if len(w) >= 5 and w.isalpha():
        limit = 1 if len(w) < 7 else 2
        for target in _FUZZY_TARGETS:
            if abs(len(target) - len(w)) <= limit and _edit_distance(w, target) <= limit:
                return _MONTH_ALIASES[target]
    return None


def _period_name(token: str) -> Optional[str]:
    t = " ".join(token.lower().split())
    quarter = re.fullmatch(r"(?:q|kuartal ?|quarter ?)([1-4])", t)
    if quarter:
        return f"Q{quarter.group(1)}"
    num = month_number(t)
    return None if num is None else MONTH_NAMES[num - 1]


def label_key(label: str) -> str:
    """Comparable form of a label: month and quarter spellings collapse to one key."""
    words = []
    text = re.sub(r"\b(?:kuartal|quarter)\s*([1-4])\b", r"q\1", str(label or "").lower())
    for word in text.split():
        period = _period_name(word)
        if period is None:
            words.append(word)
        elif period.startswith("Q"):
            words.append(period.lower())
        else:
            words.append(f"month-{MONTH_NAMES.index(period) + 1:02d}")
    return " ".join(words)


def _parse_number(raw: str, unit: Optional[str]) -> float:
    negative = raw.startswith("-")
    digits = raw.lstrip("-")
    if re.fullmatch(r"\d{1,3}(?:[.,]\d{3})+", digits):
        value = float(re.sub(r"[.,]", "", digits))
    else:
        value = float(digits.replace(",", "."))
    if unit:
        value *= _UNIT_MULTIPLIER.get(unit.lower(), 1.0)
    return -value if negative else value


def _collect_periods(text: str) -> List[_Point]:
    out: List[_Point] = []
    seen = set()
    for m in _PERIOD_RE.finditer(text):
        name = _period_name(m.group(1))
        if name is None:
            continue
        if not name.startswith("Q") and m.group(1).lower() not in _MONTH_ALIASES:
            logger.info("user_data.month_typo raw=%s corrected=%s", m.group(1), name)
        label = f"{name} {m.group(2)}" if m.group(2) else name
        if label.lower() in seen:
            continue
        try:
            number = _parse_number(m.group(3), m.group(4))
        except ValueError:
            continue
        seen.add(label.lower())
        out.append(_Point(label, number, m.group(4)))
    return out


def _clean_label(raw: str) -> str:
    words = raw.split()
    while words and words[0].lower() in _FILLER_WORDS:
        words.pop(0)
    if len(words) == 1:
        return _period_name(words[0]) or words[0]
    return " ".join(words)


def _collect_labels(text: str) -> List[_Point]:
    out: List[_Point] = []
    seen = set()
    for m in _LABEL_VALUE_RE.finditer(text):
        label = _clean_label(m.group(1))
        if len(label) < 2 or label.lower() in seen:
            continue
        try:
            number = _parse_number(m.group(2), m.group(3))
        except ValueError:
            continue
        seen.add(label.lower())
        out.append(_Point(label, number, m.group(3)))
    return out


def _infer_units(points: List[_Point]) -> List[float]:
    """Unit-less values take the unit at least half of the dataset uses."""
    values = [round(p.number, 6) for p in points]
    bare = [i for i, p in enumerate(points) if not p.unit]
    if not bare or len(bare) == len(points):
        return values

    counts: Dict[float, int] = {}
    for p in points:
        if p.unit:
            mult = _UNIT_MULTIPLIER.get(p.unit.lower(), 1.0)
            counts[mult] = counts.get(mult, 0) + 1
    dominant = next((mult for mult, n in counts.items() if n >= len(points) / 2), None)
    if dominant is None:
        return values

    for i in bare:
        values[i] = round(points[i].number * dominant, 6)
    logger.info("user_data.unit_inferred multiplier=%s points=%s", dominant, len(bare))
    return values


def extract_user_data(message: str) -> Optional[ExtractedUserData]:
    """Labels and values the user typed themselves.

    Period/value pairs ("Januari 500jt, Feb 600") win over generic
    "label value" pairs ("Produk A 100" or "Produk A: 100"). Fewer than two
    points is not a dataset.
    """
    text = message or ""
    points = _collect_periods(text)
    if len(points) < 2:
        points = _collect_labels(text)
    if len(points) < 2:
        return None
    return ExtractedUserData(
        labels=[p.label for p in points],
        data_points=len(points),
        values=_infer_units(points),
        is_comparison=has_comparison_keyword(text),
    )
