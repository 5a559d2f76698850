"""Deterministic variable extraction and template substitution."""
from extraction.extractor import (
    FieldRule,
    FIELD_RULES,
    extract_variables,
    extract_date,
    extract_time,
    extract_guest_count,
    extract_phone,
    extract_email,
    extract_name,
    extract_review_rating,
    extract_awaited_field,
    infer_awaited_fields,
    merge_variables,
    today_in,
)
from extraction.substitutor import (
    substitute_variables,
    has_placeholders,
    get_placeholder_names,
    find_unfilled_placeholders,
    build_summary_lines,
    format_reservation_summary,
)

__all__ = [
    "FieldRule", "FIELD_RULES",
    "extract_variables", "extract_date", "extract_time", "extract_guest_count",
    "extract_phone", "extract_email", "extract_name", "extract_review_rating",
    "extract_awaited_field", "infer_awaited_fields", "merge_variables", "today_in",
    "substitute_variables", "has_placeholders", "get_placeholder_names",
    "find_unfilled_placeholders", "build_summary_lines", "format_reservation_summary",
]
