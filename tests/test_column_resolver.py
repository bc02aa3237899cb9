from app.domain.imports.columns import (
    COLUMN_ALIASES,
    CanonicalField,
    ColumnResolver,
    normalize_header,
    template_headers,
)


ENGLISH_HEADERS = ["Student ID", "Course Code", "Course Name", "Final Grade", "Letter Grade", "Academic Year"]
ARABIC_HEADERS = ["الرقم الجامعي", "رمز المقرر", "اسم المقرر", "العلامة النهائية", "الدرجة الحرفية", "العام الدراسي"]

EXPECTED = {
    CanonicalField.STUDENT_ID: 0,
    CanonicalField.COURSE_CODE: 1,
    CanonicalField.COURSE_NAME: 2,
    CanonicalField.FINAL_GRADE: 3,
    CanonicalField.LETTER_GRADE: 4,
    CanonicalField.ACADEMIC_YEAR: 5,
}


def test_normalize_header_drops_case_spaces_underscores_and_hyphens():
    assert normalize_header(" Student_ID ") == "studentid"
    assert normalize_header("student-id") == "studentid"
    assert normalize_header("الساعات المسجلة-فصل") == "الساعاتالمسجلةفصل"


def test_english_and_arabic_headers_resolve_identically():
    resolver = ColumnResolver()

    assert resolver.resolve_all(ENGLISH_HEADERS) == EXPECTED
    assert resolver.resolve_all(ARABIC_HEADERS) == EXPECTED


def test_exact_match_beats_substring_match():
    resolver = ColumnResolver()
    headers = ["Student ID (registry)", "student_id"]

    assert resolver.resolve_index(headers, CanonicalField.STUDENT_ID) == 1


def test_header_containing_alias_is_matched():
    resolver = ColumnResolver()

    assert resolver.resolve_index(["#", "Student ID (registry)"], CanonicalField.STUDENT_ID) == 1


def test_first_matching_header_wins_within_a_pass():
    resolver = ColumnResolver()

    assert resolver.resolve_index(["student_id", "Student ID"], CanonicalField.STUDENT_ID) == 0


def test_blank_headers_never_match():
    resolver = ColumnResolver()

    assert resolver.resolve_index(["", "  ", "student_id"], CanonicalField.STUDENT_ID) == 2


def test_unknown_headers_are_absent():
    resolver = ColumnResolver()

    assert resolver.resolve_all(["foo", "bar"]) == {}


def test_custom_alias_table_is_used():
    resolver = ColumnResolver({CanonicalField.STUDENT_ID: ("matricule",)})

    assert resolver.fields == [CanonicalField.STUDENT_ID]
    assert resolver.resolve_all(["nom", "Matricule"]) == {CanonicalField.STUDENT_ID: 1}


def test_every_canonical_field_has_aliases():
    assert set(COLUMN_ALIASES) == set(CanonicalField)
    assert all(COLUMN_ALIASES[field] for field in CanonicalField)


def test_template_headers_resolve_to_their_own_fields():
    headers = template_headers()
    resolved = ColumnResolver().resolve_all(headers)

    assert headers[0] == "student_id"
    assert resolved == {field: index for index, field in enumerate(CanonicalField)}
