"""
Variable Extractor — deterministic field extraction from free-text messages.

Provides:
- extract_variables: run the ordered field rules over one message
- extract_date / extract_time / extract_guest_count / extract_phone /
  extract_email / extract_name / extract_review_rating: single-field matchers
- extract_awaited_field: targeted extraction when a node asks for one field
- merge_variables: left-biased union (first write wins)

All dates are `YYYY-MM-DD`, all times `HH:MM`, guest counts are ints.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Callable, Optional
from zoneinfo import ZoneInfo

DEFAULT_TIMEZONE = "Europe/Berlin"


def today_in(timezone: str = DEFAULT_TIMEZONE) -> date:
    """Current calendar date in the given IANA timezone."""
    return datetime.now(ZoneInfo(timezone)).date()


def is_filled(value: Any) -> bool:
    return value is not None and value != ""


# ──────────────────────────────────────────────────────
#  Vocabulary
# ──────────────────────────────────────────────────────

_PEOPLE_NOUN = r"(?:personen|person|leute|gäste|gaeste|gast|pax)"

_WEEKDAYS = {
    "montag": 0, "dienstag": 1, "mittwoch": 2, "donnerstag": 3,
    "freitag": 4, "samstag": 5, "sonnabend": 5, "sonntag": 6,
}

_MONTHS = {
    "januar": 1, "jänner": 1, "jan": 1,
    "februar": 2, "feb": 2,
    "märz": 3, "maerz": 3, "mär": 3, "mrz": 3,
    "april": 4, "apr": 4,
    "mai": 5,
    "juni": 6, "jun": 6,
    "juli": 7, "jul": 7,
    "august": 8, "aug": 8,
    "september": 9, "sept": 9, "sep": 9,
    "oktober": 10, "okt": 10,
    "november": 11, "nov": 11,
    "dezember": 12, "dez": 12,
}
# Longest names first so "juni" wins over "jun"
_MONTH_ALTERNATION = "|".join(sorted(_MONTHS, key=len, reverse=True))

NAME_INPUT_BLACKLIST = (
    "ich weiß nicht", "ich weiss nicht", "weiß ich nicht",
    "weiss ich nicht", "keine ahnung", "keine idee",
)

NAME_STOP_WORDS = frozenset({
    "ich", "bin", "weiß", "weiss", "nicht", "keine", "kein",
    "mein", "meine", "name", "ja", "nein", "hallo", "hi", "hey",
    "danke", "ok", "okay",
})

_NAME_WORD = r"[^\W\d_](?:[^\W\d_]|['.\-])*"


# ──────────────────────────────────────────────────────
#  Patterns
# ──────────────────────────────────────────────────────

_GUEST_NOUN_RE = re.compile(rf"(?<!\d)(\d{{1,3}})\s*{_PEOPLE_NOUN}\b", re.IGNORECASE)
_BARE_NUMBER_RE = re.compile(r"^\d{1,2}$")

_RELATIVE_DAYS = (
    (re.compile(r"\bheute\b", re.IGNORECASE), 0),
    (re.compile(r"\b(?:übermorgen|uebermorgen)\b", re.IGNORECASE), 2),
    (re.compile(r"\bmorgen\b", re.IGNORECASE), 1),
)
_WEEKDAY_RE = re.compile(rf"\b({'|'.join(_WEEKDAYS)})\b", re.IGNORECASE)
_MONTH_DATE_RE = re.compile(
    rf"(?<!\d)(\d{{1,2}})\.?\s*({_MONTH_ALTERNATION})\b\.?(?:\s*(\d{{4}}))?",
    re.IGNORECASE,
)
_NUMERIC_DATE_RE = re.compile(
    r"(?<![\d.:/-])(\d{1,2})([./-])(\d{1,2})(?:\2(\d{4}|\d{2}))?(?![\d:])(?!\s*uhr)",
    re.IGNORECASE,
)

_PREFIXED_TIME_RE = re.compile(
    rf"\b(?:um|gegen|ab)\s+(\d{{1,2}})(?::(\d{{2}}))?(?:\s*uhr\b)?(?![\d.:/-])(?!\s*{_PEOPLE_NOUN})",
    re.IGNORECASE,
)
_COLON_TIME_RE = re.compile(r"(?<![\d:])(\d{1,2}):(\d{2})(?![\d:])")
_DOT_UHR_TIME_RE = re.compile(r"(?<![\d.])(\d{1,2})\.(\d{2})\s*uhr\b", re.IGNORECASE)
_DOT_TIME_RE = re.compile(r"(?<![\d.])(\d{1,2})\.(\d{2})(?![\d.])")
_HOUR_UHR_RE = re.compile(r"(?<![\d.:])(\d{1,2})\s*uhr\b", re.IGNORECASE)

_PHONE_RE = re.compile(
    r"(?:\b(?:tel|telefon|handy|mobil|nummer)\b\.?\s*:?\s*)?(\+?\d[\d\s\-/()]{5,}\d)",
    re.IGNORECASE,
)
_PHONE_SEPARATORS_RE = re.compile(r"[\s\-/()]")
_BARE_PHONE_RE = re.compile(r"^\+?\d{6,15}$")

_EMAIL_RE = re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")

_NAME_PATTERNS = (
    re.compile(rf"\bich\s+(?:heiße|heisse|bin)\s+({_NAME_WORD}(?:\s+{_NAME_WORD})?)", re.IGNORECASE),
    re.compile(rf"\bmein\s+name\s+ist\s+({_NAME_WORD}(?:\s+{_NAME_WORD})?)", re.IGNORECASE),
    re.compile(rf"\bname\s*:\s*({_NAME_WORD}(?:\s+{_NAME_WORD})?)", re.IGNORECASE),
)

_RATING_EXPLICIT_RE = re.compile(r"\b([1-5])\s*(?:/\s*5|von\s*5|sterne?n?)\b", re.IGNORECASE)
_RATING_BARE_RE = re.compile(r"^([1-5])[.!]?$")


# ──────────────────────────────────────────────────────
#  Single-field matchers
# ──────────────────────────────────────────────────────

def _safe_date(year: int, month: int, day: int) -> Optional[date]:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _resolve_yearless(day: int, month: int, today: date) -> Optional[date]:
    """A date without a year means its next occurrence on or after today."""
    candidate = _safe_date(today.year, month, day)
    if candidate is None:
        return None
    if candidate < today:
        return _safe_date(today.year + 1, month, day)
    return candidate


def extract_date(text: str, today: Optional[date] = None) -> Optional[str]:
    if not text:
        return None
    today = today or today_in()

    for pattern, offset in _RELATIVE_DAYS:
        if pattern.search(text):
            return (today + timedelta(days=offset)).isoformat()

    weekday = _WEEKDAY_RE.search(text)
    if weekday:
        target = _WEEKDAYS[weekday.group(1).lower()]
        days_ahead = (target - today.weekday()) % 7
        return (today + timedelta(days=days_ahead)).isoformat()

    named = _MONTH_DATE_RE.search(text)
    if named:
        day = int(named.group(1))
        month = _MONTHS[named.group(2).lower()]
        if named.group(3):
            resolved = _safe_date(int(named.group(3)), month, day)
        else:
            resolved = _resolve_yearless(day, month, today)
        if resolved:
            return resolved.isoformat()

    for match in _NUMERIC_DATE_RE.finditer(text):
        day, month, year = int(match.group(1)), int(match.group(3)), match.group(4)
        if year:
            full_year = int(year) + 2000 if len(year) == 2 else int(year)
            resolved = _safe_date(full_year, month, day)
        else:
            resolved = _resolve_yearless(day, month, today)
        if resolved:
            return resolved.isoformat()

    return None


def _normalize_time(hour: int, minute: int) -> Optional[str]:
    if hour == 24 and minute == 0:
        hour = 0
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        return None
    return f"{hour:02d}:{minute:02d}"


def extract_time(text: str, allow_dot_time: bool = False) -> Optional[str]:
    """
    Find a clock time. `HH.MM` is only read as a time when followed by
    "Uhr" or when `allow_dot_time` is set, because it collides with `D.M`.
    """
    if not text:
        return None

    patterns = [_PREFIXED_TIME_RE, _COLON_TIME_RE, _DOT_UHR_TIME_RE]
    if allow_dot_time:
        patterns.append(_DOT_TIME_RE)
    patterns.append(_HOUR_UHR_RE)

    for pattern in patterns:
        for match in pattern.finditer(text):
            minute = match.group(2) if pattern.groups >= 2 else None
            normalized = _normalize_time(int(match.group(1)), int(minute or 0))
            if normalized:
                return normalized
    return None


def extract_guest_count(text: str, allow_bare: bool = True) -> Optional[int]:
    """
    `4 Personen` style counts up to 100. A bare number up to 20 only counts
    when `allow_bare` is set, since it is just as likely an hour or a day.
    """
    if not text:
        return None
    match = _GUEST_NOUN_RE.search(text)
    if match:
        count = int(match.group(1))
        if 1 <= count <= 100:
            return count
    trimmed = text.strip()
    if allow_bare and _BARE_NUMBER_RE.match(trimmed):
        count = int(trimmed)
        if 1 <= count <= 20:
            return count
    return None


def _mask_dates(text: str) -> str:
    """Blank out calendar dates so their digits never join a phone number."""
    def blank(match: re.Match) -> str:
        return "#" * len(match.group(0))

    def blank_numeric(match: re.Match) -> str:
        # Leap year so 29.02 still counts as a date
        if _safe_date(2000, int(match.group(3)), int(match.group(1))) is None:
            return match.group(0)
        return blank(match)

    text = _MONTH_DATE_RE.sub(blank, text)
    return _NUMERIC_DATE_RE.sub(blank_numeric, text)


def extract_phone(text: str) -> Optional[str]:
    if not text:
        return None
    for match in _PHONE_RE.finditer(_mask_dates(text)):
        candidate = _PHONE_SEPARATORS_RE.sub("", match.group(1))
        digits = candidate.lstrip("+")
        if digits.isdigit() and 7 <= len(digits) <= 15:
            return candidate
    return None


def extract_email(text: str) -> Optional[str]:
    if not text:
        return None
    match = _EMAIL_RE.search(text)
    return match.group(0) if match else None


def looks_like_name(text: str) -> bool:
    """Bare-name check: up to three alphabetic words, none of them filler."""
    trimmed = text.strip()
    if not trimmed or len(trimmed) > 60:
        return False
    words = trimmed.split()
    if len(words) > 3:
        return False
    if any(word.lower() in NAME_STOP_WORDS for word in words):
        return False
    return all(re.fullmatch(_NAME_WORD, word) for word in words)


def extract_name(text: str) -> Optional[str]:
    """Only called when the dialogue is waiting for a name."""
    if not text:
        return None
    trimmed = text.strip()
    lowered = trimmed.lower()
    if any(phrase in lowered for phrase in NAME_INPUT_BLACKLIST):
        return None
    if looks_like_name(trimmed):
        return trimmed
    for pattern in _NAME_PATTERNS:
        match = pattern.search(trimmed)
        if match:
            candidate = match.group(1).strip()
            if candidate.split()[0].lower() not in NAME_STOP_WORDS:
                return candidate
    return None


def extract_review_rating(text: str) -> Optional[int]:
    if not text:
        return None
    explicit = _RATING_EXPLICIT_RE.search(text)
    if explicit:
        return int(explicit.group(1))
    compact = re.sub(r"\s+", "", text)
    bare = _RATING_BARE_RE.match(compact)
    if bare:
        return int(bare.group(1))
    stars = text.count("⭐")
    if 1 <= stars <= 5:
        return stars
    return None


# ──────────────────────────────────────────────────────
#  Ordered field rules
# ──────────────────────────────────────────────────────

@dataclass(frozen=True)
class FieldRule:
    """
    One extraction step. Rules run in list order; `suppressed_when`
    vetoes the rule for a message even when the matcher would hit.
    """
    field: str
    extract: Callable[..., Any]
    suppressed_when: Optional[re.Pattern] = None


FIELD_RULES: tuple[FieldRule, ...] = (
    FieldRule("guestCount",
              lambda text, ctx: extract_guest_count(text, ctx.get("bare_guest_count", True)),
              suppressed_when=_MONTH_DATE_RE),
    FieldRule("date", lambda text, ctx: extract_date(text, ctx.get("today"))),
    FieldRule("time", lambda text, ctx: extract_time(text, ctx.get("allow_dot_time", False))),
    FieldRule("phone", lambda text, ctx: extract_phone(text)),
    FieldRule("email", lambda text, ctx: extract_email(text)),
)


def extract_variables(
    text: str,
    existing: Optional[dict[str, Any]] = None,
    today: Optional[date] = None,
    allow_dot_time: bool = False,
    rules: tuple[FieldRule, ...] = FIELD_RULES,
    awaited_fields: Optional[list[str]] = None,
) -> dict[str, Any]:
    """
    Run every rule over `text` and return only the newly found fields.
    Fields that already hold a non-empty value in `existing` are skipped.
    While the dialogue waits for some other field, a bare number is not
    taken as a guest count.
    """
    existing = existing or {}
    if not text or not text.strip():
        return {}
    ctx = {
        "today": today or today_in(),
        "allow_dot_time": allow_dot_time,
        "bare_guest_count": not awaited_fields or "guestCount" in awaited_fields,
    }

    found: dict[str, Any] = {}
    for rule in rules:
        if is_filled(existing.get(rule.field)) or rule.field in found:
            continue
        if rule.suppressed_when is not None and rule.suppressed_when.search(text):
            continue
        value = rule.extract(text, ctx)
        if is_filled(value):
            found[rule.field] = value
    return found


# ──────────────────────────────────────────────────────
#  Awaited-field extraction
# ──────────────────────────────────────────────────────

# Node-id keywords that tell us which field the current question collects
AWAITED_FIELD_HINTS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("reviewRating", ("review-rating",)),
    ("reviewFeedback", ("review-feedback",)),
    ("name", ("name",)),
    ("date", ("date", "datum")),
    ("time", ("time", "uhrzeit", "zeit")),
    ("guestCount", ("guest", "personen", "gaeste")),
    ("phone", ("phone", "telefon", "nummer")),
    ("specialRequests", ("special", "wunsch", "wünsch", "notes", "notiz")),
)


def infer_awaited_fields(node_id: Optional[str]) -> list[str]:
    """Fields a node is asking for, guessed from keywords in its id."""
    if not node_id:
        return []
    key = node_id.lower()
    fields = []
    for field, hints in AWAITED_FIELD_HINTS:
        if any(hint in key for hint in hints):
            fields.append(field)
    if "reviewRating" in fields or "reviewFeedback" in fields:
        fields = [f for f in fields if f.startswith("review")]
    return fields


def extract_awaited_field(field: str, text: str, today: Optional[date] = None) -> Any:
    """Targeted extraction for a node that asks for exactly `field`."""
    trimmed = (text or "").strip()
    if not trimmed:
        return None

    if field == "name":
        return extract_name(trimmed)
    if field == "date":
        return extract_date(trimmed, today)
    if field == "time":
        found = extract_time(trimmed, allow_dot_time=True)
        if found is None and _BARE_NUMBER_RE.match(trimmed):
            found = _normalize_time(int(trimmed), 0)
        return found
    if field == "guestCount":
        return extract_guest_count(trimmed)
    if field == "phone":
        phone = extract_phone(trimmed)
        if phone:
            return phone
        cleaned = _PHONE_SEPARATORS_RE.sub("", trimmed)
        return cleaned if _BARE_PHONE_RE.match(cleaned) else None
    if field == "email":
        return extract_email(trimmed)
    if field == "reviewRating":
        return extract_review_rating(trimmed)
    if field in ("specialRequests", "reviewFeedback"):
        return trimmed
    return None


def merge_variables(existing: dict[str, Any], incoming: dict[str, Any]) -> dict[str, Any]:
    """Left-biased union: keys already filled in `existing` are never replaced."""
    merged = dict(existing)
    for key, value in incoming.items():
        if is_filled(value) and not is_filled(merged.get(key)):
            merged[key] = value
    return merged
