"""Layer 1 — ordered regex rules for structured PII.

``RULES`` is the precedence list: candidates from an earlier rule claim
their span and any later candidate overlapping it is dropped.  Spans that
already hold a ``[REDACTED_*]`` placeholder are claimed up front so a
second pass over sanitized text finds nothing new.
"""

from __future__ import annotations
import re
from typing import Callable, Iterable

from .types import RedactionKind, RedactionMatch

PLACEHOLDERS: dict[RedactionKind, str] = {
    RedactionKind.EMAIL: "[REDACTED_EMAIL]",
    RedactionKind.PHONE: "[REDACTED_PHONE]",
    RedactionKind.IBAN: "[REDACTED_IBAN]",
    RedactionKind.NATIONAL_ID: "[REDACTED_NATIONAL_ID]",
    RedactionKind.CREDIT_CARD: "[REDACTED_CC]",
    RedactionKind.PASSPORT_LIKE: "[REDACTED_PASSPORT]",
}

PLACEHOLDER_RE = re.compile(r"\[REDACTED_[A-Z_]+\]")

DEFAULT_PASSPORT_KEYWORDS: tuple[str, ...] = (
    "passport",     # en
    "pasaport",     # tr
    "passeport",    # fr
    "reisepass",    # de
    "pasaporte",    # es
)

DEFAULT_PHONE_TAIL = 4
DEFAULT_PASSPORT_WINDOW = 40

_EMAIL = re.compile(r"\b[a-zA-Z0-9._%+\-]+@[a-zA-Z0-9.\-]+\.[a-zA-Z]{2,}\b")

# A maximal chain of digit groups.  Digit-count rules are applied in code.
_PHONE = re.compile(
    r"(?<![\w+])"
    r"\+?(?:\(\d{1,4}\)|\d{1,4})"
    r"(?:[ .\-]?(?:\(\d{1,4}\)|\d{1,4}))*"
)

_IBAN = re.compile(
    r"\bTR\d{2}(?:[0-9A-Z]{22,24}|(?: [0-9A-Z]{4}){5} [0-9A-Z]{2,4})\b",
    re.IGNORECASE,
)

_NATIONAL_ID = re.compile(r"\b[1-9]\d{10}\b")

_CARD = re.compile(r"(?<!\w)\d(?:[ \-]?\d){12,18}(?!\w)")

_PASSPORT_TOKEN = re.compile(r"\b(?=[A-Za-z]*\d)[A-Za-z0-9]{8,12}\b")

_NON_DIGIT = re.compile(r"\D")

# Dates and clock times are digit chains too; neither is a phone
_DATE = re.compile(
    r"(?<!\d)(?:(?:19|20)\d{2}[-./]\d{1,2}[-./]\d{1,2}|\d{1,2}[-./]\d{1,2}[-./](?:19|20)\d{2})(?!\d)"
)
_TIME_AFTER = re.compile(r":\d{2}")
_LAST_GROUP = re.compile(r"[ .\-]?\(?\d{1,4}\)?$")

# Spaced 13-15 digit card layouts (Amex 4-6-5, Diners 4-6-4) that a phone chain would swallow
_CARD_LAYOUT = re.compile(r"[1-9]\d{3}(?:[ \-]\d{1,6})+")


# ── Masking ─────────────────────────────────────────────────────────

def digits_only(value: str) -> str:
    return _NON_DIGIT.sub("", value)


def mask_email(email: str) -> str:
    """``john@acme.com`` → ``j***n@acme.com``; short local parts lose everything."""
    local, sep, domain = email.partition("@")
    if not sep or not domain:
        return PLACEHOLDERS[RedactionKind.EMAIL]
    if len(local) <= 2:
        return f"***@{domain}"
    return f"{local[0]}***{local[-1]}@{domain}"


def mask_phone(phone: str, tail: int = DEFAULT_PHONE_TAIL) -> str:
    digits = digits_only(phone)
    if len(digits) < 10:
        return PLACEHOLDERS[RedactionKind.PHONE]
    return "***" + digits[-tail:] if tail > 0 else "***"


def luhn_valid(digits: str) -> bool:
    """Mod-10 check, doubling every second digit from the right."""
    if not digits.isdigit():
        return False
    total = 0
    for i, ch in enumerate(reversed(digits)):
        d = int(ch)
        if i % 2 == 1:
            d *= 2
            if d > 9:
                d -= 9
        total += d
    return total % 10 == 0


# ── Rule scanners ───────────────────────────────────────────────────
# Each yields candidate matches over the whole text; overlap arbitration
# happens in ``scan_regex``.

def _scan_email(text: str, **_: object) -> Iterable[RedactionMatch]:
    for m in _EMAIL.finditer(text):
        yield RedactionMatch(RedactionKind.EMAIL, m.start(), m.end(), m.group(), mask_email(m.group()))


def _is_phone_shaped(candidate: str) -> bool:
    digits = digits_only(candidate)
    if not 10 <= len(digits) <= 15:
        return False
    if candidate.isdigit():
        # Bare runs: leave 11-digit IDs and card numbers to the later rules
        return len(digits) == 10 or (len(digits) == 11 and digits.startswith("0"))
    if len(digits) >= 13 and _CARD_LAYOUT.fullmatch(candidate) and luhn_valid(digits):
        return False
    return not _DATE.search(candidate)


def _scan_phone(text: str, *, phone_tail: int = DEFAULT_PHONE_TAIL, **_: object) -> Iterable[RedactionMatch]:
    for m in _PHONE.finditer(text):
        candidate, end = m.group(), m.end()
        if _TIME_AFTER.match(text, end):
            # The last group is an hour; judge the chain without it
            candidate = _LAST_GROUP.sub("", candidate)
            end = m.start() + len(candidate)
        if _is_phone_shaped(candidate):
            yield RedactionMatch(
                RedactionKind.PHONE, m.start(), end, candidate, mask_phone(candidate, phone_tail)
            )


def _scan_iban(text: str, **_: object) -> Iterable[RedactionMatch]:
    for m in _IBAN.finditer(text):
        compact = m.group().replace(" ", "").upper()
        yield RedactionMatch(RedactionKind.IBAN, m.start(), m.end(), m.group(), "TR**" + compact[-4:])


def _scan_national_id(text: str, **_: object) -> Iterable[RedactionMatch]:
    for m in _NATIONAL_ID.finditer(text):
        yield RedactionMatch(RedactionKind.NATIONAL_ID, m.start(), m.end(), m.group(), "***" + m.group()[-4:])


def _scan_credit_card(text: str, **_: object) -> Iterable[RedactionMatch]:
    for m in _CARD.finditer(text):
        digits = digits_only(m.group())
        if luhn_valid(digits):
            yield RedactionMatch(RedactionKind.CREDIT_CARD, m.start(), m.end(), m.group(), "****" + digits[-4:])


def _keyword_regex(keywords: Iterable[str]) -> re.Pattern | None:
    words = sorted({k.strip() for k in keywords if k and k.strip()}, key=len, reverse=True)
    if not words:
        return None
    return re.compile(r"\b(?:" + "|".join(re.escape(w) for w in words) + r")", re.IGNORECASE)


def _scan_passport(
    text: str,
    *,
    passport_keywords: Iterable[str] = DEFAULT_PASSPORT_KEYWORDS,
    passport_window: int = DEFAULT_PASSPORT_WINDOW,
    **_: object,
) -> Iterable[RedactionMatch]:
    keyword_re = _keyword_regex(passport_keywords)
    if keyword_re is None:
        return
    anchors = [(k.start(), k.end()) for k in keyword_re.finditer(text)]
    if not anchors:
        return
    for m in _PASSPORT_TOKEN.finditer(text):
        near = any(
            m.start() - end <= passport_window and start - m.end() <= passport_window
            for start, end in anchors
        )
        if near:
            yield RedactionMatch(RedactionKind.PASSPORT_LIKE, m.start(), m.end(), m.group(), "***" + m.group()[-4:])


Scanner = Callable[..., Iterable[RedactionMatch]]

# Precedence order: earliest rule wins an overlap
RULES: list[tuple[RedactionKind, Scanner]] = [
    (RedactionKind.EMAIL, _scan_email),
    (RedactionKind.PHONE, _scan_phone),
    (RedactionKind.IBAN, _scan_iban),
    (RedactionKind.NATIONAL_ID, _scan_national_id),
    (RedactionKind.CREDIT_CARD, _scan_credit_card),
    (RedactionKind.PASSPORT_LIKE, _scan_passport),
]


def placeholder_spans(text: str) -> list[tuple[int, int]]:
    return [(m.start(), m.end()) for m in PLACEHOLDER_RE.finditer(text)]


def overlaps(start: int, end: int, spans: Iterable[tuple[int, int]]) -> bool:
    return any(start < e and end > s for s, e in spans)


def scan_regex(
    text: str,
    *,
    skip_kinds: Iterable[RedactionKind] = (),
    allow_list: Iterable[str] = (),
    phone_tail: int = DEFAULT_PHONE_TAIL,
    passport_keywords: Iterable[str] = DEFAULT_PASSPORT_KEYWORDS,
    passport_window: int = DEFAULT_PASSPORT_WINDOW,
) -> list[RedactionMatch]:
    """Run all rules in precedence order. Returns non-overlapping matches."""
    skip = set(skip_kinds)
    allowed = set(allow_list)
    claimed = placeholder_spans(text)
    taken: list[RedactionMatch] = []
    for kind, scanner in RULES:
        if kind in skip:
            continue
        for m in scanner(
            text,
            phone_tail=phone_tail,
            passport_keywords=passport_keywords,
            passport_window=passport_window,
        ):
            if overlaps(m.start, m.end, claimed):
                continue
            # Allow-listed values still claim their span so no later rule nibbles at them
            claimed.append((m.start, m.end))
            if m.text not in allowed:
                taken.append(m)
    return sorted(taken, key=lambda m: m.start)
