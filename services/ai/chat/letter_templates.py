from __future__ import annotations

import logging
import re
from typing import Dict, Tuple

logger = logging.getLogger(__name__)

OFFICIAL = "official"
INFORMAL = "informal"
BUSINESS = "business"
COVER_LETTER = "cover_letter"
RESIGNATION = "resignation"
RECOMMENDATION = "recommendation"
PROPOSAL = "proposal"
COMPLAINT = "complaint"
THANK_YOU = "thank_you"

# first match wins, so "tidak resmi" must come before "resmi"
_TYPE_PATTERNS: Tuple[Tuple[str, re.Pattern], ...] = tuple(
    (name, re.compile(pattern, re.IGNORECASE))
    for name, pattern in (
        (RESIGNATION, r"\b(pengunduran\s+diri|resign(?:ation)?|mengundurkan\s+diri)\b"),
        (COVER_LETTER, r"\b(lamaran(?:\s+kerja|\s+pekerjaan)?|cover\s+letter|job\s+application)\b"),
        (RECOMMENDATION, r"\b(rekomendasi|recommendation|reference\s+letter)\b"),
        (PROPOSAL, r"\bproposal\b"),
        (COMPLAINT, r"\b(keluhan|komplain|complaint)\b"),
        (THANK_YOU, r"\b(terima\s+kasih|thank[\s-]you)\b"),
        (INFORMAL, r"\b(tidak\s+resmi|informal|pribadi|personal)\b"),
        (BUSINESS, r"\b(bisnis|business|penawaran|kerja\s*sama|partnership)\b"),
        (OFFICIAL, r"\b(resmi|official|formal|dinas)\b"),
    )
)

_OFFICIAL_FORMAT = """1. Letterhead (logo, company name, address)
2. Letter number
3. Date
4. Subject
5. Attachments (if any)
6. Recipient address
7. Opening salutation
8. Body (introduction, main content, closing)
9. Closing salutation
10. Sender name and position
11. Signature"""

LETTER_FORMATS: Dict[str, str] = {
    OFFICIAL: _OFFICIAL_FORMAT,
    INFORMAL: """1. Date
2. Opening salutation
3. Body
4. Closing salutation
5. Sender name""",
    BUSINESS: """1. Company letterhead
2. Letter number
3. Date
4. Subject
5. Recipient address
6. Opening salutation
7. Body (context, request or offer, expected outcome)
8. Closing salutation
9. Name, position and signature""",
    COVER_LETTER: """1. Letterhead (if any)
2. Date
3. Subject: job application
4. Recipient address
5. Opening salutation
6. Paragraph 1: position applied for and where it was advertised
7. Paragraph 2: qualifications and experience
8. Paragraph 3: the contribution the applicant can make
9. Closing salutation
10. Name and signature""",
    RESIGNATION: """1. Letterhead (if any)
2. Date
3. Subject: resignation
4. Recipient address
5. Opening salutation
6. Body: intent to resign, effective date, short reason, thanks
7. Closing salutation
8. Name, position and signature""",
    RECOMMENDATION: """1. Letterhead
2. Date
3. Subject: letter of recommendation
4. Recipient address
5. Opening salutation
6. Body: who is recommended, qualifications, experience, the recommendation
7. Closing salutation
8. Name, position and signature""",
    PROPOSAL: """1. Letterhead
2. Letter number
3. Date
4. Subject: proposal title
5. Recipient address
6. Opening salutation
7. Background
8. Objectives
9. Planned activities
10. Budget (if needed)
11. Closing paragraph
12. Closing salutation
13. Name, position and signature""",
    COMPLAINT: """1. Letterhead (if any)
2. Date
3. Subject: complaint
4. Recipient address
5. Opening salutation
6. Body: the problem, its impact, the resolution expected
7. Closing salutation
8. Name and signature""",
    THANK_YOU: """1. Letterhead (if any)
2. Date
3. Subject: thank you
4. Recipient address
5. Opening salutation
6. Body: the thanks, the reason, hopes for the future
7. Closing salutation
8. Name and signature""",
}

PLACEHOLDERS: Dict[str, Dict[str, str]] = {
    "en": {
        "name": "[NAME]",
        "position": "[POSITION]",
        "address": "[ADDRESS]",
        "date": "[DATE]",
        "number": "[LETTER NUMBER]",
        "signature": "[SIGNATURE]",
        "logo": "[LOGO]",
    },
    "id": {
        "name": "[NAMA]",
        "position": "[JABATAN]",
        "address": "[ALAMAT]",
        "date": "[TANGGAL]",
        "number": "[NOMOR]",
        "signature": "[TANDA TANGAN]",
        "logo": "[LOGO]",
    },
}


def resolve_letter_type(message: str) -> str:
    """Template key for the letter the user is asking for; official by default."""
    text = message or ""
    for name, pattern in _TYPE_PATTERNS:
        if pattern.search(text):
            return name
    return OFFICIAL


def letter_instructions(letter_type: str, language: str = "en") -> str:
    fmt = LETTER_FORMATS.get(letter_type)
    if fmt is None:
        logger.warning("letter.unknown_type type=%s", letter_type)
        letter_type, fmt = OFFICIAL, LETTER_FORMATS[OFFICIAL]
    ph = PLACEHOLDERS.get(language, PLACEHOLDERS["en"])
    return (
        f"Letter type: {letter_type.replace('_', ' ')}\n"
        f"Required format:\n{fmt}\n\n"
        "Personal data rules:\n"
        "- Never invent personal or sensitive data (full names, ID numbers, tax numbers, addresses, phone numbers).\n"
        f"- Use placeholders for anything the user did not give: {ph['name']}, {ph['position']}, "
        f"{ph['address']}, {ph['date']}, {ph['number']}, {ph['signature']}, {ph['logo']}.\n"
        "- The letter must be ready to send once the placeholders are filled in."
    )
