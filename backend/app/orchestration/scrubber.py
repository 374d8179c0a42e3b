from __future__ import annotations

import re
from bisect import bisect_left, bisect_right
from typing import Dict, List, Tuple

from ..models.safety import RedactionSpan

# Placeholders must never match any pattern below, so a second pass finds nothing.
PLACEHOLDERS: Dict[str, str] = {
    "email": "[EMAIL REDACTED]",
    "phone": "[PHONE REDACTED]",
    "social_handle": "[CONTACT REDACTED]",
    "link": "[CONTACT REDACTED]",
}

MIN_PHONE_DIGITS = 7

_SOCIAL_DOMAINS = (
    "facebook|fb|instagram|twitter|x|linkedin|telegram|whatsapp|discord|snapchat"
    "|tiktok|wechat|line|kakao|viber|signal|skype"
)

# Tails stop at brackets so a link can never grow into a placeholder.
_CONTACT_PATTERNS: List[Tuple[re.Pattern, str]] = [
    (re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"), "email"),
    (
        re.compile(
            r"(?<![\w+])(?:\+\s?)?(?:\(\d{1,4}\)|\d{1,4})(?:[\s.-]?(?:\(\d{1,4}\)|\d{1,4})){1,6}(?!\w)"
        ),
        "phone",
    ),
    (re.compile(r"@[A-Za-z0-9_]{1,30}"), "social_handle"),
    (
        re.compile(
            r"(?:https?://)?(?:www\.)?\b(?:" + _SOCIAL_DOMAINS + r")\.(?:com|me|org|gg|net)/[^\s\[\]]+",
            re.I,
        ),
        "link",
    ),
    (
        re.compile(
            r"(?:https?://)?\b(?:wa\.me|t\.me|discord\.gg|chat\.whatsapp\.com|m\.me|line\.me|signal\.me)/[^\s\[\]]+",
            re.I,
        ),
        "link",
    ),
]


def _digit_count(value: str) -> int:
    return sum(1 for ch in value if ch.isdigit())


def _candidates(text: str, start: int, end: int) -> List[Tuple[int, int, str]]:
    segment = text[start:end]
    found: List[Tuple[int, int, str]] = []
    for pattern, kind in _CONTACT_PATTERNS:
        for m in pattern.finditer(segment):
            if kind == "phone" and _digit_count(m.group(0)) < MIN_PHONE_DIGITS:
                # Dates, times and short numbers
                continue
            found.append((start + m.start(), start + m.end(), kind))
    return found


def _overlaps(starts: List[int], taken: List[Tuple[int, int, str]], start: int, end: int) -> bool:
    # taken is sorted by start and never overlaps itself
    i = bisect_right(starts, start)
    if i > 0 and taken[i - 1][1] > start:
        return True
    return i < len(taken) and taken[i][0] < end


def _uncovered(length: int, taken: List[Tuple[int, int, str]]) -> List[Tuple[int, int]]:
    gaps: List[Tuple[int, int]] = []
    cursor = 0
    for s, e, _kind in taken:
        if s > cursor:
            gaps.append((cursor, s))
        cursor = max(cursor, e)
    if cursor < length:
        gaps.append((cursor, length))
    return gaps


def redact_contact_info(text: str) -> Tuple[str, List[RedactionSpan]]:
    """Replace contact details in ``text`` with fixed placeholders.

    Candidates are accepted longest first (earliest start breaks ties) as long
    as they do not overlap an accepted span. Only the gaps opened up by a round
    of acceptances are scanned again, so no character is redacted twice and the
    cost stays close to linear. Spans use offsets into the original text.

    Returns (processed_text, spans)
    """
    original = text or ""
    taken: List[Tuple[int, int, str]] = []
    starts: List[int] = []
    scanned = set()
    pending = [(0, len(original))] if original else []

    while pending:
        found: List[Tuple[int, int, str]] = []
        for gap in pending:
            scanned.add(gap)
            found.extend(_candidates(original, gap[0], gap[1]))
        if not found:
            break
        found.sort(key=lambda c: (c[0] - c[1], c[0]))
        for s, e, kind in found:
            if _overlaps(starts, taken, s, e):
                continue
            i = bisect_left(starts, s)
            starts.insert(i, s)
            taken.insert(i, (s, e, kind))
        pending = [g for g in _uncovered(len(original), taken) if g not in scanned]

    pieces: List[str] = []
    cursor = 0
    for s, e, kind in taken:
        pieces.append(original[cursor:s])
        pieces.append(PLACEHOLDERS[kind])
        cursor = e
    pieces.append(original[cursor:])

    spans = [RedactionSpan(start=s, end=e, type=kind) for s, e, kind in taken]
    return "".join(pieces), spans


def contains_contact_info(text: str) -> bool:
    _, spans = redact_contact_info(text)
    return bool(spans)
