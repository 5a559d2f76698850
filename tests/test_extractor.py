"""
Tests for variable extraction from German free text.

Covers:
  - date / time / guest count / phone / email / name / review rating matchers
  - ordered field rules with suppression
  - awaited-field inference and targeted extraction
  - left-biased variable merge
"""
from datetime import date

import pytest

from extraction.extractor import (
    extract_awaited_field, extract_date, extract_email, extract_guest_count, extract_name,
    extract_phone, extract_review_rating, extract_time, extract_variables,
    infer_awaited_fields, looks_like_name, merge_variables,
)

TODAY = date(2026, 3, 2)  # Monday


# ══════════════════════════════════════════════════════════════
#  TIME
# ══════════════════════════════════════════════════════════════

class TestExtractTime:
    @pytest.mark.parametrize("text,expected", [
        ("19:00", "19:00"),
        ("19 Uhr", "19:00"),
        ("um 19:30", "19:30"),
        ("gegen 20", "20:00"),
        ("19.30 Uhr", "19:30"),
        ("Wir kommen um 7:05", "07:05"),
        ("24:00", "00:00"),
    ])
    def test_recognized_times(self, text, expected):
        assert extract_time(text) == expected

    def test_dot_time_needs_opt_in(self):
        assert extract_time("15.03") is None
        assert extract_time("15.03", allow_dot_time=True) == "15:03"

    def test_out_of_range_rejected(self):
        assert extract_time("25:00") is None
        assert extract_time("19:75") is None

    def test_people_after_um_is_not_a_time(self):
        assert extract_time("Tisch um 4 Personen") is None

    def test_no_time(self):
        assert extract_time("Hallo") is None
        assert extract_time("") is None


# ══════════════════════════════════════════════════════════════
#  DATE
# ══════════════════════════════════════════════════════════════

class TestExtractDate:
    def test_relative_days(self):
        assert extract_date("heute", TODAY) == "2026-03-02"
        assert extract_date("Morgen Abend", TODAY) == "2026-03-03"
        assert extract_date("übermorgen", TODAY) == "2026-03-04"

    def test_weekday_is_next_occurrence(self):
        assert extract_date("am Freitag", TODAY) == "2026-03-06"
        assert extract_date("Sonntag", TODAY) == "2026-03-08"

    def test_month_name(self):
        assert extract_date("am 15. März", TODAY) == "2026-03-15"
        assert extract_date("3 Juni 2027", TODAY) == "2027-06-03"

    def test_numeric(self):
        assert extract_date("am 15.03.", TODAY) == "2026-03-15"
        assert extract_date("15.03.2026", TODAY) == "2026-03-15"
        assert extract_date("15/03/26", TODAY) == "2026-03-15"

    def test_yearless_past_date_rolls_forward(self):
        assert extract_date("01.02", TODAY) == "2027-02-01"

    def test_impossible_dates_rejected(self):
        assert extract_date("31.02.2026", TODAY) is None
        assert extract_date("31.02", TODAY) is None

    def test_clock_time_is_not_a_date(self):
        assert extract_date("19:00", TODAY) is None
        assert extract_date("19.30 Uhr", TODAY) is None


# ══════════════════════════════════════════════════════════════
#  OTHER FIELDS
# ══════════════════════════════════════════════════════════════

class TestGuestCount:
    def test_with_noun(self):
        assert extract_guest_count("für 4 Personen") == 4
        assert extract_guest_count("wir sind 12 Leute") == 12

    def test_bare_number(self):
        assert extract_guest_count("4") == 4
        assert extract_guest_count(" 20 ") == 20
        assert extract_guest_count("4", allow_bare=False) is None
        assert extract_guest_count("4 Personen", allow_bare=False) == 4

    def test_out_of_range(self):
        assert extract_guest_count("25") is None
        assert extract_guest_count("0") is None
        assert extract_guest_count("120 Personen") is None


class TestContactFields:
    def test_phone(self):
        assert extract_phone("Meine Nummer: 0171 1234567") == "01711234567"
        assert extract_phone("+49 (171) 123-4567") == "+491711234567"
        assert extract_phone("12345") is None

    @pytest.mark.parametrize("text", ["am 15/03/2026", "15-03-2026", "am 15.03.26 um 19 Uhr"])
    def test_numeric_dates_are_not_phone_numbers(self, text):
        assert extract_phone(text) is None

    def test_phone_next_to_date(self):
        assert extract_phone("15/03 0171 1234567") == "01711234567"

    def test_email(self):
        assert extract_email("Schreib an lisa.meyer@example.de bitte") == "lisa.meyer@example.de"
        assert extract_email("keine Mail") is None


class TestName:
    def test_bare_name(self):
        assert extract_name("Lisa Müller") == "Lisa Müller"
        assert extract_name("Jean-Luc") == "Jean-Luc"

    def test_phrases(self):
        assert extract_name("Ich heiße Anna") == "Anna"
        assert extract_name("Mein Name ist Max Mustermann, danke") == "Max Mustermann"

    def test_rejects_non_names(self):
        assert extract_name("ich weiß nicht") is None
        assert extract_name("19 Uhr") is None
        assert extract_name("ja") is None

    def test_looks_like_name_word_limit(self):
        assert looks_like_name("Anna Lena Schmidt")
        assert not looks_like_name("das ist ein Test")


class TestReviewRating:
    @pytest.mark.parametrize("text,expected", [
        ("4/5", 4),
        ("5 Sterne", 5),
        ("3", 3),
        ("2!", 2),
        ("⭐⭐⭐⭐", 4),
        ("super", None),
        ("7", None),
    ])
    def test_ratings(self, text, expected):
        assert extract_review_rating(text) == expected


# ══════════════════════════════════════════════════════════════
#  RULES, AWAITED FIELDS, MERGE
# ══════════════════════════════════════════════════════════════

class TestExtractVariables:
    def test_full_sentence(self):
        found = extract_variables("morgen um 19 Uhr für 4 Personen", today=TODAY)
        assert found == {"guestCount": 4, "date": "2026-03-03", "time": "19:00"}

    def test_month_date_suppresses_guest_count(self):
        assert extract_variables("4. März", today=TODAY) == {"date": "2026-03-04"}

    def test_filled_fields_are_skipped(self):
        found = extract_variables("morgen um 20 Uhr", {"date": "2026-04-01"}, today=TODAY)
        assert found == {"time": "20:00"}

    def test_slash_date_leaves_phone_empty(self):
        found = extract_variables("Reservierung am 15/03/2026 um 19 Uhr", today=TODAY)
        assert found == {"date": "2026-03-15", "time": "19:00"}

    def test_bare_number_while_waiting_for_time(self):
        assert extract_variables("19", today=TODAY, awaited_fields=["time"]) == {}
        assert extract_variables("4", today=TODAY, awaited_fields=["guestCount"]) == {"guestCount": 4}
        assert extract_variables("4", today=TODAY) == {"guestCount": 4}

    def test_empty_text(self):
        assert extract_variables("   ", today=TODAY) == {}


class TestAwaitedFields:
    def test_inferred_from_node_id(self):
        assert infer_awaited_fields("ask-name") == ["name"]
        assert infer_awaited_fields("frage-uhrzeit") == ["time"]
        assert infer_awaited_fields("welcome") == []
        assert infer_awaited_fields(None) == []

    def test_review_fields_are_exclusive(self):
        assert infer_awaited_fields("review-rating-name") == ["reviewRating"]

    def test_targeted_extraction(self):
        assert extract_awaited_field("time", "19.30", TODAY) == "19:30"
        assert extract_awaited_field("time", "19", TODAY) == "19:00"
        assert extract_awaited_field("time", "25", TODAY) is None
        assert extract_awaited_field("name", "Lisa", TODAY) == "Lisa"
        assert extract_awaited_field("phone", "0171 123456", TODAY) == "0171123456"
        assert extract_awaited_field("specialRequests", " Fensterplatz bitte ", TODAY) == "Fensterplatz bitte"
        assert extract_awaited_field("guestCount", "", TODAY) is None


class TestMergeVariables:
    def test_existing_values_win(self):
        merged = merge_variables({"name": "Lisa", "date": ""}, {"name": "Max", "date": "2026-03-03"})
        assert merged == {"name": "Lisa", "date": "2026-03-03"}

    def test_empty_incoming_values_ignored(self):
        assert merge_variables({"time": "19:00"}, {"phone": None, "email": ""}) == {"time": "19:00"}
