"""
Variable Substitutor — renders `{{key}}` placeholders from conversation variables.

Unknown keys are left in place verbatim so a half-filled conversation still
produces a readable message.
"""
from __future__ import annotations

import re
from typing import Any

_PLACEHOLDER_RE = re.compile(r"\{\{(\w+)\}\}")
_ISO_DATE_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")


def format_value(key: str, value: Any) -> str:
    """Display formatting per field; dates render as DD.MM.YYYY."""
    if key == "date" and isinstance(value, str):
        match = _ISO_DATE_RE.match(value)
        if match:
            year, month, day = match.groups()
            return f"{day}.{month}.{year}"
    return str(value)


def _is_unresolved(variables: dict[str, Any], key: str) -> bool:
    value = variables.get(key)
    return value is None or value == ""


def substitute_variables(template: str, variables: dict[str, Any]) -> str:
    if not template:
        return ""

    def replacer(match: re.Match) -> str:
        key = match.group(1)
        if _is_unresolved(variables, key):
            return match.group(0)
        return format_value(key, variables[key])

    return _PLACEHOLDER_RE.sub(replacer, template)


def has_placeholders(template: str) -> bool:
    return bool(template) and _PLACEHOLDER_RE.search(template) is not None


def get_placeholder_names(template: str) -> list[str]:
    """Placeholder names in order of first appearance, without duplicates."""
    if not template:
        return []
    return list(dict.fromkeys(_PLACEHOLDER_RE.findall(template)))


def find_unfilled_placeholders(template: str, variables: dict[str, Any]) -> list[str]:
    return [name for name in get_placeholder_names(template) if _is_unresolved(variables, name)]


# ── Reservation summary ───────────────────────────────────

# (field, line template) in display order
SUMMARY_LINES: tuple[tuple[str, str], ...] = (
    ("date", "📅 Datum: {{date}}"),
    ("time", "⏰ Uhrzeit: {{time}} Uhr"),
    ("guestCount", "👥 Personen: {{guestCount}}"),
    ("name", "👤 Name: {{name}}"),
    ("phone", "📞 Telefon: {{phone}}"),
    ("email", "📧 E-Mail: {{email}}"),
    ("specialRequests", "📝 Wünsche: {{specialRequests}}"),
)


def build_summary_lines(variables: dict[str, Any]) -> list[str]:
    """Rendered summary lines for the fields that are actually filled."""
    return [
        substitute_variables(line, variables)
        for field, line in SUMMARY_LINES
        if not _is_unresolved(variables, field)
    ]


def format_reservation_summary(variables: dict[str, Any]) -> str:
    """One-line booking summary; missing fields show as [Feld] markers."""
    def shown(key: str, marker: str) -> str:
        return marker if _is_unresolved(variables, key) else format_value(key, variables[key])

    return (
        f"{shown('name', '[Name]')}, {shown('guestCount', '[Anzahl]')} Personen "
        f"am {shown('date', '[Datum]')} um {shown('time', '[Uhrzeit]')} Uhr"
    )
