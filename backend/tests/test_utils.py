"""Tests for backend/cadena/pipeline/utils.py: shared utility functions.

Covers:
  - parse_date / to_date: ISO timestamps, Mexican formats, bare year, garbage
  - calendar helpers: add_years on 29 Feb, last_day_of_month
  - parse_amount: $, MXN, thousands separators
  - normalize_state_name / normalize_identifier
  - name_similarity: accents, word order, unrelated names
  - shared_surname, validate_rfc_format, is_agency_name
"""

from datetime import date, datetime

from cadena.pipeline.utils import (
    parse_date,
    to_date,
    add_years,
    last_day_of_month,
    years_between,
    parse_amount,
    normalize_state_name,
    normalize_identifier,
    normalize_rfc,
    normalize_name,
    levenshtein_ratio,
    name_similarity,
    shared_surname,
    validate_rfc_format,
    is_agency_name,
)


# ═══════════════════════════════════════════════════
# 1. Dates
# ═══════════════════════════════════════════════════

class TestParseDate:
    """parse_date never raises and always returns naive datetimes."""

    def test_iso_date(self):
        assert parse_date("2021-03-15") == datetime(2021, 3, 15)

    def test_iso_timestamp_with_z(self):
        assert parse_date("2023-05-01T10:30:00Z") == datetime(2023, 5, 1, 10, 30)

    def test_iso_timestamp_with_offset_is_naive(self):
        result = parse_date("2023-05-01T10:30:00-06:00")
        assert result.tzinfo is None

    def test_odd_fractional_seconds(self):
        assert parse_date("2023-05-01T10:30:00.12Z") == datetime(2023, 5, 1, 10, 30, 0, 120000)

    def test_mexican_slash_format(self):
        assert parse_date("15/03/2021") == datetime(2021, 3, 15)

    def test_bare_year(self):
        assert parse_date("2019") == datetime(2019, 1, 1)

    def test_date_object(self):
        assert parse_date(date(2020, 1, 2)) == datetime(2020, 1, 2)

    def test_garbage(self):
        assert parse_date("no es fecha") is None

    def test_non_string(self):
        assert parse_date(12345) is None

    def test_empty(self):
        assert parse_date("   ") is None

    def test_to_date(self):
        assert to_date("2022-08-15T23:59:59") == date(2022, 8, 15)


class TestCalendarHelpers:

    def test_add_years_leap_day(self):
        assert add_years(date(2020, 2, 29), 1) == date(2021, 2, 28)

    def test_add_years_regular(self):
        assert add_years(date(2019, 6, 1), 3) == date(2022, 6, 1)

    def test_last_day_of_month_leap(self):
        assert last_day_of_month(2024, 2) == date(2024, 2, 29)

    def test_years_between(self):
        assert round(years_between(date(2020, 1, 1), date(2022, 1, 1)), 1) == 2.0


# ═══════════════════════════════════════════════════
# 2. Amounts
# ═══════════════════════════════════════════════════

class TestParseAmount:

    def test_numeric(self):
        assert parse_amount(350000) == 350000.0

    def test_currency_symbols(self):
        assert parse_amount("$1,234.50 MXN") == 1234.5

    def test_mn_suffix(self):
        assert parse_amount("280,000.00 M.N.") == 280000.0

    def test_bool_rejected(self):
        assert parse_amount(True) is None

    def test_garbage(self):
        assert parse_amount("doscientos mil") is None


# ═══════════════════════════════════════════════════
# 3. Normalization
# ═══════════════════════════════════════════════════

class TestNormalization:

    def test_state_accents_and_spaces(self):
        assert normalize_state_name("  Nuevo León ") == "NUEVO LEON"

    def test_state_abbreviation_dots(self):
        assert normalize_state_name("Edo. Méx.") == "EDO MEX"

    def test_state_non_string(self):
        assert normalize_state_name(None) == ""

    def test_identifier_strict(self):
        assert normalize_identifier(" pegj-800101 ab1 ") == "PEGJ800101AB1"

    def test_rfc_empty_is_none(self):
        assert normalize_rfc("   ") is None

    def test_rfc_upper(self):
        assert normalize_rfc(" pegj800101ab1") == "PEGJ800101AB1"

    def test_name_tokens(self):
        assert normalize_name("José  Pérez-García") == "JOSE PEREZ GARCIA"


# ═══════════════════════════════════════════════════
# 4. Name similarity
# ═══════════════════════════════════════════════════

class TestNameSimilarity:

    def test_levenshtein_ratio(self):
        assert abs(levenshtein_ratio("ABC", "ABD") - 2 / 3) < 1e-9

    def test_levenshtein_empty(self):
        assert levenshtein_ratio("", "") == 1.0

    def test_accents_ignored(self):
        assert name_similarity("JOSÉ PÉREZ", "Jose Perez") == 1.0

    def test_word_order_ignored(self):
        assert name_similarity("PEREZ GARCIA JUAN", "JUAN PEREZ GARCIA") == 1.0

    def test_ocr_typo_above_threshold(self):
        assert name_similarity("MARIA LOPEZ MARTINEZ", "MARIA LOPES MARTINEZ") >= 0.7

    def test_unrelated_below_threshold(self):
        assert name_similarity("JUAN PEREZ", "MARIA LOPEZ") < 0.7

    def test_missing_name(self):
        assert name_similarity("", "JUAN") == 0.0

    def test_shared_surname(self):
        assert shared_surname("JUAN PEREZ GARCIA", "MARIA PEREZ LOPEZ") == "PEREZ"

    def test_corporate_tokens_not_surnames(self):
        assert shared_surname("AUTOS DEL NORTE SA DE CV", "AUTOS DEL SUR SA DE CV") is None


# ═══════════════════════════════════════════════════
# 5. RFC & agencies
# ═══════════════════════════════════════════════════

class TestRfcAndAgencies:

    def test_persona_fisica(self):
        assert validate_rfc_format("PEGJ800101AB1")

    def test_persona_moral(self):
        assert validate_rfc_format("AGE850101AB1")

    def test_truncated(self):
        assert not validate_rfc_format("PEGJ8001")

    def test_none(self):
        assert not validate_rfc_format(None)

    def test_agency_keyword(self):
        assert is_agency_name("AGENCIA AUTOMOTRIZ DEL NORTE")

    def test_concesionaria(self):
        assert is_agency_name("Concesionaria Ford Satélite")

    def test_person_is_not_agency(self):
        assert not is_agency_name("JUAN PEREZ")
