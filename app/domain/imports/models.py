"""
Domain types shared by the academic records import pipeline.

Jobs and file statuses are persisted by the ledger; ``AcademicRecordRow`` is
the unit written to the record store.
"""
from __future__ import annotations

from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class JobStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_JOB_STATUSES = {
    JobStatus.COMPLETED,
    JobStatus.COMPLETED_WITH_ERRORS,
    JobStatus.CANCELLED,
    JobStatus.FAILED,
}


class FileStatus(str, Enum):
    PENDING = "pending"
    IMPORTING = "importing"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


FINAL_FILE_STATUSES = {FileStatus.SUCCESS, FileStatus.FAILED, FileStatus.SKIPPED}


class SourceKind(str, Enum):
    SINGLE_FILE = "single_file"
    ARCHIVE = "archive"


class JobFatalError(Exception):
    """Raised when a job cannot proceed at all; the job is marked failed."""

    def __init__(self, message: str, job_id: Optional[str] = None):
        self.message = message
        self.job_id = job_id
        super().__init__(message)


class ArchiveError(JobFatalError):
    """The uploaded archive (or one of its members) could not be read."""


class JobNotFoundError(LookupError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        self.message = f"Import job {job_id} not found"
        super().__init__(self.message)


@dataclass
class SourceFile:
    """One logical tabular file: a bare upload or an archive member."""
    name: str
    text: str
    # Set when an archive member could not be read; the file fails on its own
    error: Optional[str] = None


@dataclass
class AcademicRecordRow:
    """A normalized course/term outcome for one student."""
    student_id: str
    raw_data: Dict[str, str]
    import_job_id: Optional[str] = None
    source_file_name: Optional[str] = None

    college: Optional[str] = None
    major: Optional[str] = None
    academic_year: Optional[str] = None
    semester: Optional[str] = None
    last_registration_semester: Optional[str] = None
    study_mode: Optional[str] = None
    permanent_status: Optional[str] = None
    semester_status: Optional[str] = None
    academic_warning: Optional[str] = None
    previous_academic_warning: Optional[str] = None

    registered_hours_semester: Optional[float] = None
    completed_hours_semester: Optional[float] = None
    total_completed_hours: Optional[float] = None

    cumulative_gpa_percent: Optional[float] = None
    cumulative_gpa_points: Optional[float] = None

    baccalaureate_type: Optional[str] = None
    baccalaureate_country: Optional[str] = None
    certificate_score: Optional[float] = None
    certificate_average: Optional[float] = None

    course_code: Optional[str] = None
    course_name: Optional[str] = None
    course_credits: Optional[float] = None

    final_grade: Optional[float] = None
    letter_grade: Optional[str] = None
    grade_points: Optional[float] = None

    has_ministry_scholarship: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class FileImportStatus:
    file_name: str
    student_id: Optional[str] = None
    status: FileStatus = FileStatus.PENDING
    records_count: int = 0  # rows actually persisted
    total_rows: int = 0  # normalized rows that had an owning identifier
    failed_rows: int = 0  # rows in batches the store rejected
    error: Optional[str] = None
    completed_at: Optional[datetime] = None

    @property
    def is_final(self) -> bool:
        return self.status in FINAL_FILE_STATUSES


@dataclass
class ImportJob:
    id: str
    file_name: str
    source_kind: SourceKind
    status: JobStatus = JobStatus.PROCESSING
    total_files: int = 0
    files_processed: int = 0
    total_records: int = 0
    successful_records: int = 0
    failed_records: int = 0
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    rolled_back_at: Optional[datetime] = None
    rows_rolled_back: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES


@dataclass
class ImportOptions:
    """
    Per-job knobs.

    ``prefer_filename_student_id`` left as ``None`` resolves to the configured
    default for the job's source kind.
    """
    prefer_filename_student_id: Optional[bool] = None

    def resolve_prefer_filename(self, source_kind: SourceKind, defaults: Any) -> bool:
        if self.prefer_filename_student_id is not None:
            return self.prefer_filename_student_id
        if source_kind == SourceKind.ARCHIVE:
            return defaults.archive_prefers_filename_student_id
        return defaults.single_file_prefers_filename_student_id


@dataclass
class ProgressUpdate:
    job_id: str
    files_processed: int
    total_files: int
    message: str
    file_status: Optional[FileImportStatus] = None

    @property
    def percent(self) -> int:
        if self.total_files <= 0:
            return 100
        return int(round(self.files_processed * 100 / self.total_files))


@dataclass
class JobOutcome:
    job: ImportJob
    files: List[FileImportStatus] = field(default_factory=list)
    cancelled: bool = False

    def _count(self, status: FileStatus) -> int:
        return sum(1 for item in self.files if item.status == status)

    @property
    def success_files(self) -> int:
        return self._count(FileStatus.SUCCESS)

    @property
    def failed_files(self) -> int:
        return self._count(FileStatus.FAILED)

    @property
    def skipped_files(self) -> int:
        return self._count(FileStatus.SKIPPED)

    @property
    def pending_files(self) -> int:
        return self._count(FileStatus.PENDING)

    @property
    def total_inserted(self) -> int:
        return sum(item.records_count for item in self.files)


@dataclass
class RetryOutcome:
    job_id: str
    files: List[FileImportStatus] = field(default_factory=list)
    newly_successful: int = 0
    job: Optional[ImportJob] = None
