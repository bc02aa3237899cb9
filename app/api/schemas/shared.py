from dataclasses import asdict
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from app.domain.imports.models import FileImportStatus, FileStatus, ImportJob, JobStatus, SourceKind


class ImportJobInfo(BaseModel):
    """Metadata about an academic records import job."""
    id: str
    file_name: str
    source_kind: SourceKind
    status: JobStatus
    total_files: int = 0
    files_processed: int = 0
    progress: int = 0
    total_records: int = 0
    successful_records: int = 0
    failed_records: int = 0
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    rolled_back_at: Optional[datetime] = None
    rows_rolled_back: Optional[int] = None

    @classmethod
    def from_job(cls, job: ImportJob) -> "ImportJobInfo":
        progress = 100 if job.total_files == 0 and job.is_terminal else 0
        if job.total_files:
            progress = int(round(job.files_processed * 100 / job.total_files))
        return cls(progress=progress, **asdict(job))


class FileImportStatusInfo(BaseModel):
    file_name: str
    student_id: Optional[str] = None
    status: FileStatus
    records_count: int = 0
    total_rows: int = 0
    failed_rows: int = 0
    error: Optional[str] = None
    completed_at: Optional[datetime] = None

    @classmethod
    def from_status(cls, item: FileImportStatus) -> "FileImportStatusInfo":
        return cls(**asdict(item))


class ImportSummary(BaseModel):
    total_files: int
    success_files: int
    failed_files: int
    skipped_files: int
    pending_files: int
    total_inserted: int


class ImportJobResponse(BaseModel):
    """Response wrapper for a single import job."""
    success: bool
    job: ImportJobInfo
    files: Optional[List[FileImportStatusInfo]] = None
    summary: Optional[ImportSummary] = None
    message: Optional[str] = None


class ImportJobListResponse(BaseModel):
    """Response wrapper for a list of import jobs."""
    success: bool
    jobs: List[ImportJobInfo]
    total_count: int
    limit: int
    offset: int


class ImportFilesResponse(BaseModel):
    success: bool
    job_id: str
    files: List[FileImportStatusInfo]
    total_count: int


class CancelImportResponse(BaseModel):
    success: bool
    job_id: str
    message: str


class RetryImportResponse(BaseModel):
    success: bool
    job: ImportJobInfo
    retried_files: List[FileImportStatusInfo]
    newly_successful: int


class RollbackImportResponse(BaseModel):
    success: bool
    job_id: str
    rows_deleted: int
    message: str


class AcademicRecordsResponse(BaseModel):
    success: bool
    records: List[Dict[str, Any]]
    total_count: int
    limit: int = Field(default=100)
    offset: int = Field(default=0)


class PreviewResponse(BaseModel):
    """First rows of an uploaded file with the columns the resolver recognised."""
    success: bool
    file_name: str
    delimiter: str
    headers: List[str]
    rows: List[List[str]]
    mapped_columns: Dict[str, str]
    unmapped_headers: List[str]
    valid_rows: int
    invalid_rows: int
