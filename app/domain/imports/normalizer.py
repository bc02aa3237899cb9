"""
Conversion of raw spreadsheet rows into ``AcademicRecordRow`` objects.
"""
import logging
import math
import os
import re
from typing import Dict, List, Mapping, Optional, Sequence

from app.domain.imports.columns import CanonicalField
from app.domain.imports.models import AcademicRecordRow

logger = logging.getLogger(__name__)

FILENAME_STUDENT_ID_PATTERN = re.compile(r"^(\d{5,10})")

AFFIRMATIVE_VALUES = {"true", "1", "yes", "y", "نعم", "صح", "صحيح"}

NULL_MARKERS = {"", "-", "--", "\u2014", "n/a", "na", "null", "none"}

# Arabic-Indic and Eastern Arabic-Indic digits, Arabic decimal/thousands separators
_DIGIT_TRANSLATION = str.maketrans(
    "٠١٢٣٤٥٦٧٨٩۰۱۲۳۴۵۶۷۸۹٫٬",
    "01234567890123456789.,",
)
_GROUPED_THOUSANDS = re.compile(r"^[+-]?\d{1,3}(,\d{3})+$")

TEXT_FIELDS = (
    CanonicalField.COLLEGE,
    CanonicalField.MAJOR,
    CanonicalField.ACADEMIC_YEAR,
    CanonicalField.SEMESTER,
    CanonicalField.LAST_REGISTRATION_SEMESTER,
    CanonicalField.STUDY_MODE,
    CanonicalField.PERMANENT_STATUS,
    CanonicalField.SEMESTER_STATUS,
    CanonicalField.ACADEMIC_WARNING,
    CanonicalField.PREVIOUS_ACADEMIC_WARNING,
    CanonicalField.BACCALAUREATE_TYPE,
    CanonicalField.BACCALAUREATE_COUNTRY,
    CanonicalField.COURSE_NAME,
    CanonicalField.LETTER_GRADE,
)

NUMERIC_FIELDS = (
    CanonicalField.REGISTERED_HOURS_SEMESTER,
    CanonicalField.COMPLETED_HOURS_SEMESTER,
    CanonicalField.TOTAL_COMPLETED_HOURS,
    CanonicalField.CUMULATIVE_GPA_PERCENT,
    CanonicalField.CUMULATIVE_GPA_POINTS,
    CanonicalField.CERTIFICATE_SCORE,
    CanonicalField.CERTIFICATE_AVERAGE,
    CanonicalField.COURSE_CREDITS,
    CanonicalField.FINAL_GRADE,
    CanonicalField.GRADE_POINTS,
)


def clean_numeric(value: Optional[str]) -> Optional[float]:
    """
    Parse a localized number.

    Thousands separators are removed and a lone decimal comma becomes a period,
    so ``"1,234.5"``, ``"1.234,5"``, ``"1234.5"`` and ``"1234,5"`` are equal. Blank or
    unparsable values return ``None``; ``"0"`` stays ``0.0``.
    """
    if value is None:
        return None
    text = str(value).strip().translate(_DIGIT_TRANSLATION)
    if text.lower() in NULL_MARKERS:
        return None

    text = text.replace(" ", "").replace("\u00a0", "")
    if text.endswith("%"):
        text = text[:-1]

    if "," in text and "." in text:
        # Whichever separator comes last is the decimal point
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    elif "," in text:
        if _GROUPED_THOUSANDS.match(text):
            text = text.replace(",", "")
        elif text.count(",") == 1:
            text = text.replace(",", ".")
        else:
            return None

    try:
        number = float(text)
    except ValueError:
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def clean_boolean(value: Optional[str]) -> bool:
    if value is None:
        return False
    return str(value).strip().lower() in AFFIRMATIVE_VALUES


def clean_text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def extract_student_id_from_filename(file_name: str) -> Optional[str]:
    """Leading run of 5-10 digits in the file's base name, e.g. ``4220212.csv``."""
    if not file_name:
        return None
    base_name = os.path.basename(file_name.replace("\\", "/"))
    match = FILENAME_STUDENT_ID_PATTERN.match(base_name)
    return match.group(1) if match else None


def resolve_student_id(
    column_value: Optional[str],
    filename_student_id: Optional[str],
    prefer_filename: bool,
) -> Optional[str]:
    """
    Choose the row's owning identifier. The preferred source wins when it is
    non-empty, otherwise the other source is used.
    """
    column_id = clean_text(column_value)
    if prefer_filename:
        return filename_student_id or column_id
    return column_id or filename_student_id


class FieldNormalizer:
    """
    Build ``AcademicRecordRow`` objects for one parsed file.

    ``columns`` is the resolver output (canonical field -> header index); fields
    missing from it are simply absent on the produced rows.
    """

    def __init__(
        self,
        headers: Sequence[str],
        columns: Mapping[CanonicalField, int],
        *,
        file_name: str,
        prefer_filename_student_id: bool,
        import_job_id: Optional[str] = None,
    ):
        self.headers = list(headers)
        self.columns = dict(columns)
        self.file_name = file_name
        self.prefer_filename_student_id = prefer_filename_student_id
        self.import_job_id = import_job_id
        self.filename_student_id = extract_student_id_from_filename(file_name)

    def _value(self, row: Sequence[str], canonical: CanonicalField) -> Optional[str]:
        index = self.columns.get(canonical)
        if index is None or index >= len(row):
            return None
        return row[index]

    def raw_data(self, row: Sequence[str]) -> Dict[str, str]:
        raw: Dict[str, str] = {}
        for index, header in enumerate(self.headers):
            key = header or f"column_{index + 1}"
            raw[key] = row[index] if index < len(row) else ""
        # Values beyond the header row are kept too
        for index in range(len(self.headers), len(row)):
            raw[f"column_{index + 1}"] = row[index]
        return raw

    def normalize_row(self, row: Sequence[str]) -> Optional[AcademicRecordRow]:
        """Return the normalized row, or ``None`` when no owning identifier resolves."""
        student_id = resolve_student_id(
            self._value(row, CanonicalField.STUDENT_ID),
            self.filename_student_id,
            self.prefer_filename_student_id,
        )
        if not student_id:
            return None

        values = {}
        for canonical in TEXT_FIELDS:
            values[canonical.value] = clean_text(self._value(row, canonical))
        for canonical in NUMERIC_FIELDS:
            values[canonical.value] = clean_numeric(self._value(row, canonical))

        course_code = clean_text(self._value(row, CanonicalField.COURSE_CODE))
        if course_code:
            course_code = re.sub(r"\s+", "", course_code)

        return AcademicRecordRow(
            student_id=student_id,
            raw_data=self.raw_data(row),
            import_job_id=self.import_job_id,
            source_file_name=self.file_name,
            course_code=course_code,
            has_ministry_scholarship=clean_boolean(
                self._value(row, CanonicalField.HAS_MINISTRY_SCHOLARSHIP)
            ),
            **values,
        )

    def normalize_rows(self, rows: Sequence[Sequence[str]]) -> List[AcademicRecordRow]:
        records: List[AcademicRecordRow] = []
        dropped = 0
        for row in rows:
            record = self.normalize_row(row)
            if record is None:
                dropped += 1
                continue
            records.append(record)
        if dropped:
            logger.info(
                "Dropped %d of %d rows in '%s' without a resolvable student id",
                dropped,
                len(rows),
                self.file_name,
            )
        return records
