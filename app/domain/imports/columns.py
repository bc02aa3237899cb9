"""
Canonical academic record fields and the header aliases that resolve to them.

Input spreadsheets come from several registrar exports with Arabic and English
headers. ``COLUMN_ALIASES`` is the single source of truth for which header
spellings are accepted; ``ColumnResolver`` applies it to a concrete header row.

Matching normalizes both sides (lowercase, no whitespace, underscores or
hyphens) and tries three passes in order: equality, header contains alias,
header contained by alias. Within a pass the left-most header wins.
"""
from __future__ import annotations

import re
from enum import Enum
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

TEMPLATE_VERSION = "2024.1"


class CanonicalField(str, Enum):
    STUDENT_ID = "student_id"
    COLLEGE = "college"
    MAJOR = "major"
    ACADEMIC_YEAR = "academic_year"
    SEMESTER = "semester"
    LAST_REGISTRATION_SEMESTER = "last_registration_semester"
    STUDY_MODE = "study_mode"
    PERMANENT_STATUS = "permanent_status"
    SEMESTER_STATUS = "semester_status"
    REGISTERED_HOURS_SEMESTER = "registered_hours_semester"
    COMPLETED_HOURS_SEMESTER = "completed_hours_semester"
    ACADEMIC_WARNING = "academic_warning"
    PREVIOUS_ACADEMIC_WARNING = "previous_academic_warning"
    CUMULATIVE_GPA_PERCENT = "cumulative_gpa_percent"
    CUMULATIVE_GPA_POINTS = "cumulative_gpa_points"
    TOTAL_COMPLETED_HOURS = "total_completed_hours"
    BACCALAUREATE_TYPE = "baccalaureate_type"
    BACCALAUREATE_COUNTRY = "baccalaureate_country"
    CERTIFICATE_SCORE = "certificate_score"
    CERTIFICATE_AVERAGE = "certificate_average"
    COURSE_CODE = "course_code"
    COURSE_NAME = "course_name"
    COURSE_CREDITS = "course_credits"
    FINAL_GRADE = "final_grade"
    LETTER_GRADE = "letter_grade"
    GRADE_POINTS = "grade_points"
    HAS_MINISTRY_SCHOLARSHIP = "has_ministry_scholarship"


AliasTable = Mapping[CanonicalField, Tuple[str, ...]]

# Keep aliases specific: a short alias such as "grade" or "points" would be
# matched by substring against unrelated headers.
COLUMN_ALIASES: Dict[CanonicalField, Tuple[str, ...]] = {
    CanonicalField.STUDENT_ID: (
        "student_id", "Student ID", "student number", "الرقم الجامعي", "رقم الطالب",
    ),
    CanonicalField.COLLEGE: ("college", "faculty", "الكلية"),
    CanonicalField.MAJOR: ("major", "specialization", "الاختصاص", "التخصص"),
    CanonicalField.ACADEMIC_YEAR: (
        "academic_year", "Academic Year", "العام الدراسي", "السنة الأكاديمية", "السنة الدراسية",
    ),
    CanonicalField.SEMESTER: ("semester", "term", "الفصل الدراسي"),
    CanonicalField.LAST_REGISTRATION_SEMESTER: (
        "last_registration_semester", "last registered semester", "آخر فصل تسجيل",
    ),
    CanonicalField.STUDY_MODE: ("study_mode", "study system", "نمط الدراسة", "نظام الدراسة"),
    CanonicalField.PERMANENT_STATUS: ("permanent_status", "enrollment status", "الحالة الدائمة"),
    CanonicalField.SEMESTER_STATUS: ("semester_status", "term status", "حالة الفصل"),
    CanonicalField.REGISTERED_HOURS_SEMESTER: (
        "registered_hours_semester", "registered hours", "الساعات المسجلة-فصل", "الساعات المسجلة",
    ),
    CanonicalField.COMPLETED_HOURS_SEMESTER: (
        "completed_hours_semester", "semester completed hours", "الساعات المنجزة-الفصل",
    ),
    CanonicalField.ACADEMIC_WARNING: ("academic_warning", "الإنذار الأكاديمي"),
    CanonicalField.PREVIOUS_ACADEMIC_WARNING: (
        "previous_academic_warning", "الإنذار الاكاديمي السابق", "الإنذار الأكاديمي السابق",
    ),
    CanonicalField.CUMULATIVE_GPA_PERCENT: (
        "cumulative_gpa_percent", "gpa percent", "المعدل التراكمي المئوي-نهاية", "المعدل التراكمي المئوي",
    ),
    CanonicalField.CUMULATIVE_GPA_POINTS: (
        "cumulative_gpa_points", "cumulative_gpa", "GPA", "المعدل التراكمي النقطي-نهاية",
        "المعدل التراكمي النقطي", "المعدل التراكمي",
    ),
    CanonicalField.TOTAL_COMPLETED_HOURS: (
        "total_completed_hours", "completed_hours_total", "total_credits", "الساعات المنجزة-نهاية",
        "إجمالي الساعات المكتملة",
    ),
    CanonicalField.BACCALAUREATE_TYPE: ("baccalaureate_type", "certificate type", "نوع البكالوريا"),
    CanonicalField.BACCALAUREATE_COUNTRY: (
        "baccalaureate_country", "certificate country", "بلد البكالوريا",
    ),
    CanonicalField.CERTIFICATE_SCORE: ("certificate_score", "علامة الشهادة"),
    CanonicalField.CERTIFICATE_AVERAGE: ("certificate_average", "معدل الشهادة"),
    CanonicalField.COURSE_CODE: ("course_code", "Course Code", "رمز المقرر", "رمز المادة"),
    CanonicalField.COURSE_NAME: (
        "course_name", "Course Name", "course title", "اسم المقرر", "اسم المادة",
    ),
    CanonicalField.COURSE_CREDITS: (
        "course_credits", "credit hours", "credits", "عدد الساعات", "الساعات المعتمدة",
    ),
    CanonicalField.FINAL_GRADE: (
        "final_grade", "Final Grade", "final mark", "العلامة النهائية", "الدرجة النهائية",
    ),
    CanonicalField.LETTER_GRADE: ("letter_grade", "Letter Grade", "الدرجة الحرفية", "الدرجة"),
    CanonicalField.GRADE_POINTS: ("grade_points", "course points", "النقاط"),
    CanonicalField.HAS_MINISTRY_SCHOLARSHIP: (
        "has_ministry_scholarship", "ministry scholarship", "scholarship", "لديه منحة وزارة", "منحة",
    ),
}

_STRIP_PATTERN = re.compile(r"[\s_\-]+")


def normalize_header(value: str) -> str:
    """Lowercase and drop whitespace, underscores and hyphens."""
    return _STRIP_PATTERN.sub("", (value or "").lower())


class ColumnResolver:
    """Resolve header positions for canonical fields using an alias table."""

    def __init__(self, alias_table: Optional[AliasTable] = None):
        table = alias_table if alias_table is not None else COLUMN_ALIASES
        self._aliases: Dict[CanonicalField, List[str]] = {
            canonical: [normalize_header(alias) for alias in aliases if normalize_header(alias)]
            for canonical, aliases in table.items()
        }

    @property
    def fields(self) -> List[CanonicalField]:
        return list(self._aliases)

    def resolve_index(self, headers: Sequence[str], canonical: CanonicalField) -> Optional[int]:
        aliases = self._aliases.get(canonical) or [normalize_header(canonical.value)]
        normalized = [normalize_header(header) for header in headers]

        matchers = (
            lambda header, alias: header == alias,
            lambda header, alias: alias in header,
            lambda header, alias: header in alias,
        )
        for matches in matchers:
            for index, header in enumerate(normalized):
                if not header:
                    continue
                if any(matches(header, alias) for alias in aliases):
                    return index
        return None

    def resolve_all(self, headers: Sequence[str]) -> Dict[CanonicalField, int]:
        """Map every resolvable canonical field to its header index."""
        resolved: Dict[CanonicalField, int] = {}
        for canonical in self._aliases:
            index = self.resolve_index(headers, canonical)
            if index is not None:
                resolved[canonical] = index
        return resolved


def template_headers() -> List[str]:
    """Canonical header row handed out as the import template."""
    return [canonical.value for canonical in CanonicalField]
