import pytest

from app.domain.imports.columns import CanonicalField, ColumnResolver
from app.domain.imports.normalizer import (
    FieldNormalizer,
    clean_boolean,
    clean_numeric,
    clean_text,
    extract_student_id_from_filename,
    resolve_student_id,
)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("1,234.5", 1234.5),
        ("1.234,5", 1234.5),
        ("1.234.567,25", 1234567.25),
        ("1234.5", 1234.5),
        ("1234,5", 1234.5),
        ("3,500", 3500.0),
        ("1,234,567", 1234567.0),
        (" 87.5% ", 87.5),
        ("٣٫٥", 3.5),
        ("0", 0.0),
        ("-2", -2.0),
    ],
)
def test_clean_numeric_parses_localized_numbers(raw, expected):
    assert clean_numeric(raw) == expected


@pytest.mark.parametrize("raw", [None, "", "   ", "-", "--", "N/A", "null", "abc", "1,2,3", "nan", "inf"])
def test_clean_numeric_returns_none_for_blank_or_invalid(raw):
    assert clean_numeric(raw) is None


def test_clean_boolean_accepts_arabic_and_english_affirmatives():
    for value in ("true", "TRUE", "1", "yes", "Y", "نعم", " صح "):
        assert clean_boolean(value) is True
    for value in (None, "", "0", "no", "لا", "false"):
        assert clean_boolean(value) is False


def test_clean_text_trims_and_blanks_to_none():
    assert clean_text("  CS  ") == "CS"
    assert clean_text("   ") is None
    assert clean_text(None) is None


def test_student_id_from_filename():
    assert extract_student_id_from_filename("4220212.csv") == "4220212"
    assert extract_student_id_from_filename("records/4220212_transcript.csv") == "4220212"
    assert extract_student_id_from_filename("C:\\exports\\12345.csv") == "12345"
    assert extract_student_id_from_filename("1234.csv") is None
    assert extract_student_id_from_filename("grades_4220212.csv") is None


def test_resolve_student_id_preference_and_fallback():
    assert resolve_student_id("9999999", "4220212", prefer_filename=True) == "4220212"
    assert resolve_student_id("9999999", "4220212", prefer_filename=False) == "9999999"
    assert resolve_student_id("", "4220212", prefer_filename=False) == "4220212"
    assert resolve_student_id(" 555 ", None, prefer_filename=True) == "555"
    assert resolve_student_id(None, None, prefer_filename=True) is None


def _normalizer(headers, file_name="grades.csv", prefer=False, job_id="job-1"):
    columns = ColumnResolver().resolve_all(headers)
    return FieldNormalizer(
        headers,
        columns,
        file_name=file_name,
        prefer_filename_student_id=prefer,
        import_job_id=job_id,
    )


def test_filename_id_overrides_column_when_preferred():
    normalizer = _normalizer(["student_id", "course_code"], file_name="4220212.csv", prefer=True)

    record = normalizer.normalize_row(["9999999", "CS101"])

    assert record.student_id == "4220212"


def test_column_id_used_when_filename_not_preferred():
    normalizer = _normalizer(["student_id", "course_code"], file_name="4220212.csv", prefer=False)

    record = normalizer.normalize_row(["9999999", "CS101"])

    assert record.student_id == "9999999"


def test_row_fields_are_normalized():
    headers = ["student_id", "course_code", "final_grade", "credits", "منحة", "extra"]
    normalizer = _normalizer(headers)

    record = normalizer.normalize_row(["42", " CS 101 ", "1,234.5", "-", "نعم", "kept", "overflow"])

    assert record.course_code == "CS101"
    assert record.final_grade == 1234.5
    assert record.course_credits is None
    assert record.has_ministry_scholarship is True
    assert record.import_job_id == "job-1"
    assert record.source_file_name == "grades.csv"
    assert record.raw_data["extra"] == "kept"
    assert record.raw_data["column_7"] == "overflow"


def test_short_rows_leave_missing_fields_empty():
    normalizer = _normalizer(["student_id", "course_code", "final_grade"])

    record = normalizer.normalize_row(["42"])

    assert record.course_code is None
    assert record.final_grade is None
    assert record.raw_data == {"student_id": "42", "course_code": "", "final_grade": ""}


def test_rows_without_student_id_are_dropped():
    normalizer = _normalizer(["student_id", "course_code"])

    records = normalizer.normalize_rows([["", "CS101"], ["7", "CS102"]])

    assert [record.student_id for record in records] == ["7"]


def test_absent_column_fields_are_none():
    normalizer = _normalizer(["student_id"])

    record = normalizer.normalize_row(["7"])

    assert record.college is None
    assert record.cumulative_gpa_points is None
    assert record.has_ministry_scholarship is False
    assert CanonicalField.COLLEGE not in normalizer.columns
