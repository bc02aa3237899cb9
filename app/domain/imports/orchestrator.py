"""
Batch ingestion orchestration for academic record imports.

One job processes its files strictly in order. Each file goes through
parse -> column resolution -> normalization -> batched writes, and its outcome
is written to the ledger before the next file starts. Cancellation is polled
between files only, so a file that has started always reaches a final status.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional

from app.core.config import Settings, settings
from app.db.academic_records import AcademicRecordStore, RecordStoreUnavailableError
from app.domain.imports.columns import COLUMN_ALIASES, AliasTable, ColumnResolver
from app.domain.imports.ingest import DEFAULT_BATCH_SIZE, IngestResult, ingest_file
from app.domain.imports.ledger import ImportLedger
from app.domain.imports.models import (
    FileImportStatus,
    FileStatus,
    ImportJob,
    ImportOptions,
    JobFatalError,
    JobOutcome,
    JobStatus,
    ProgressUpdate,
    RetryOutcome,
    SourceFile,
    SourceKind,
)
from app.domain.imports.normalizer import extract_student_id_from_filename
from app.domain.imports.processors.archive_processor import detect_source_kind, expand_upload

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressUpdate], None]


class JobStateError(Exception):
    """The requested operation is not allowed in the job's current state."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class CancellationToken:
    """Cooperative cancellation flag shared between the caller and a running job."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class ImportConfig:
    batch_size: int = DEFAULT_BATCH_SIZE
    alias_table: AliasTable = field(default_factory=lambda: COLUMN_ALIASES)
    archive_prefers_filename_student_id: bool = True
    single_file_prefers_filename_student_id: bool = False

    @classmethod
    def from_settings(cls, source: Settings) -> "ImportConfig":
        return cls(
            batch_size=source.import_batch_size,
            archive_prefers_filename_student_id=source.archive_prefers_filename_student_id,
            single_file_prefers_filename_student_id=source.single_file_prefers_filename_student_id,
        )


def aggregate_counters(files: Iterable[FileImportStatus]) -> Dict[str, int]:
    files = list(files)
    return {
        "total_records": sum(item.total_rows for item in files),
        "successful_records": sum(item.records_count for item in files),
        "failed_records": sum(item.failed_rows for item in files),
    }


def derive_job_status(files: Iterable[FileImportStatus], cancelled: bool) -> JobStatus:
    if cancelled:
        return JobStatus.CANCELLED
    files = list(files)
    has_errors = any(
        item.status == FileStatus.FAILED or item.failed_rows > 0 for item in files
    )
    return JobStatus.COMPLETED_WITH_ERRORS if has_errors else JobStatus.COMPLETED


def apply_ingest_result(file_status: FileImportStatus, result: IngestResult) -> None:
    file_status.status = result.status
    file_status.records_count = result.rows_inserted
    file_status.total_rows = result.total_rows
    file_status.failed_rows = result.failed_rows
    file_status.error = result.error_message
    if result.student_id:
        file_status.student_id = result.student_id


def _emit(callback: Optional[ProgressCallback], update: ProgressUpdate) -> None:
    """Progress listeners must never break the import."""
    if callback is None:
        return
    try:
        callback(update)
    except Exception as exc:
        logger.debug("Progress callback failed for job %s: %s", update.job_id, exc)


class ImportOrchestrator:
    """Runs import jobs and owns every write to the ledger."""

    def __init__(
        self,
        store: Optional[AcademicRecordStore] = None,
        ledger: Optional[ImportLedger] = None,
        config: Optional[ImportConfig] = None,
    ):
        self.store = store or AcademicRecordStore()
        self.ledger = ledger or ImportLedger(store=self.store)
        self.config = config or ImportConfig.from_settings(settings)
        self.resolver = ColumnResolver(self.config.alias_table)

    # ------------------------------------------------------------------
    # Job lifecycle
    # ------------------------------------------------------------------

    def start_job(self, file_name: str, source_kind: Optional[SourceKind] = None) -> ImportJob:
        """Create the job record (status ``processing``) before any file is touched."""
        return self.ledger.create_job(file_name, source_kind or detect_source_kind(file_name))

    def fail_job(self, job_id: str, message: str) -> None:
        try:
            self.ledger.update_job(
                job_id, status=JobStatus.FAILED, error_message=message, completed=True
            )
        except Exception as exc:
            logger.warning("Unable to mark job %s failed: %s", job_id, exc)

    def import_upload(
        self,
        file_name: str,
        content: bytes,
        options: Optional[ImportOptions] = None,
        *,
        job: Optional[ImportJob] = None,
        cancel_token: Optional[CancellationToken] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> JobOutcome:
        """
        Import an uploaded CSV/Excel file or ZIP archive end to end.

        Raises:
            ValueError: unsupported file type (no job is created)
            JobFatalError: the archive is unreadable or the store is unavailable;
                the job is marked ``failed`` first
            Exception: any other error also marks the job ``failed`` first
        """
        source_kind = detect_source_kind(file_name)
        job = job or self.start_job(file_name, source_kind)

        try:
            files = expand_upload(file_name, content)
        except JobFatalError as exc:
            logger.error("Import job %s failed before processing files: %s", job.id, exc.message)
            exc.job_id = job.id
            self.fail_job(job.id, exc.message)
            raise
        except Exception as exc:
            logger.exception("Import job %s could not expand '%s'", job.id, file_name)
            self.fail_job(job.id, f"Unexpected error while importing: {exc}")
            raise

        return self.run(
            job,
            files,
            options,
            cancel_token=cancel_token,
            progress_callback=progress_callback,
        )

    def run(
        self,
        job: ImportJob,
        files: List[SourceFile],
        options: Optional[ImportOptions] = None,
        *,
        cancel_token: Optional[CancellationToken] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> JobOutcome:
        """
        Process ``files`` for an already created job.

        Every file is registered as ``pending`` up front. Files are then
        processed in order; a set cancellation token stops the loop before the
        next file and leaves the rest ``pending``.
        Any other unexpected error marks the job ``failed`` before it propagates.
        """
        options = options or ImportOptions()
        prefer_filename = options.resolve_prefer_filename(job.source_kind, self.config)

        try:
            return self._run_files(job, files, prefer_filename, cancel_token, progress_callback)
        except JobFatalError:
            raise
        except Exception as exc:
            logger.exception("Import job %s stopped by an unexpected error", job.id)
            self.fail_job(job.id, f"Unexpected error while importing: {exc}")
            raise

    def _run_files(
        self,
        job: ImportJob,
        files: List[SourceFile],
        prefer_filename: bool,
        cancel_token: Optional[CancellationToken],
        progress_callback: Optional[ProgressCallback],
    ) -> JobOutcome:
        statuses = [
            FileImportStatus(file_name=source.name, student_id=extract_student_id_from_filename(source.name))
            for source in files
        ]
        self.ledger.record_files(job.id, zip(statuses, (None if source.error else source.text for source in files)))
        self.ledger.update_job(job.id, total_files=len(files))

        try:
            self.store.ping()
        except RecordStoreUnavailableError as exc:
            exc.job_id = job.id
            self.fail_job(job.id, exc.message)
            raise

        logger.info(
            "Import job %s: processing %d files (prefer filename student id: %s, batch size: %d)",
            job.id,
            len(files),
            prefer_filename,
            self.config.batch_size,
        )

        cancelled = False
        for index, (source, file_status) in enumerate(zip(files, statuses)):
            if cancel_token is not None and cancel_token.cancelled:
                cancelled = True
                logger.info(
                    "Import job %s cancelled after %d of %d files", job.id, index, len(files)
                )
                break

            self._process_file(job.id, source, file_status, prefer_filename, position=index)
            self.ledger.update_job(job.id, files_processed=index + 1)
            _emit(
                progress_callback,
                ProgressUpdate(
                    job_id=job.id,
                    files_processed=index + 1,
                    total_files=len(files),
                    message=f"Imported {index + 1} of {len(files)}: {source.name} ({file_status.status.value})",
                    file_status=file_status,
                ),
            )

        job = self._finalize(job.id, statuses, cancelled)
        return JobOutcome(job=job, files=statuses, cancelled=cancelled)

    def _process_file(
        self,
        job_id: str,
        source: SourceFile,
        file_status: FileImportStatus,
        prefer_filename: bool,
        position: int = 0,
    ) -> FileImportStatus:
        file_status.status = FileStatus.IMPORTING
        file_status.error = None
        self.ledger.record_file(job_id, file_status, position=position)

        if source.error:
            file_status.status = FileStatus.FAILED
            file_status.records_count = 0
            file_status.error = source.error
            self.ledger.record_file(job_id, file_status, position=position)
            return file_status

        try:
            result = ingest_file(
                source.text,
                source.name,
                job_id,
                prefer_filename,
                self.store,
                resolver=self.resolver,
                batch_size=self.config.batch_size,
            )
        except Exception as exc:
            # File-level failures are recorded on the file, never raised to the caller.
            logger.exception("Unexpected error importing '%s' for job %s", source.name, job_id)
            file_status.status = FileStatus.FAILED
            file_status.records_count = 0
            file_status.error = str(exc) or exc.__class__.__name__
        else:
            apply_ingest_result(file_status, result)

        self.ledger.record_file(job_id, file_status, position=position)
        return file_status

    def _finalize(self, job_id: str, statuses: List[FileImportStatus], cancelled: bool) -> ImportJob:
        counters = aggregate_counters(statuses)
        status = derive_job_status(statuses, cancelled)
        job = self.ledger.update_job(job_id, status=status, completed=True, **counters)
        logger.info(
            "Import job %s finished with status %s: %d/%d records inserted, %d failed",
            job_id,
            status.value,
            counters["successful_records"],
            counters["total_records"],
            counters["failed_records"],
        )
        return job

    # ------------------------------------------------------------------
    # Retry and rollback
    # ------------------------------------------------------------------

    def retry_failed(
        self,
        job_id: str,
        files: Optional[List[SourceFile]] = None,
        options: Optional[ImportOptions] = None,
        *,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> RetryOutcome:
        """
        Re-run ingestion for the job's ``failed`` files.

        Uses ``files`` when given, otherwise the text stored in the ledger when
        the job ran. Rows keep the original job id so rollback still covers
        them. The job's counters and status are recomputed afterwards; a
        cancelled job stays cancelled.
        """
        job = self.ledger.require_job(job_id)
        if job.status == JobStatus.PROCESSING:
            raise JobStateError(f"Import job {job_id} is still processing")
        if job.rolled_back_at is not None:
            raise JobStateError(f"Import job {job_id} has been rolled back")

        all_statuses = self.ledger.list_files(job_id)
        failed = [item for item in all_statuses if item.status == FileStatus.FAILED]
        outcome = RetryOutcome(job_id=job_id, job=job)
        if not failed:
            logger.info("Import job %s has no failed files to retry", job_id)
            return outcome

        failed_names = [item.file_name for item in failed]
        supplied = files if files is not None else self.ledger.get_file_sources(job_id, failed_names)
        sources = {source.name: source for source in supplied}

        self.store.ping()

        options = options or ImportOptions()
        prefer_filename = options.resolve_prefer_filename(job.source_kind, self.config)
        positions = {item.file_name: index for index, item in enumerate(all_statuses)}

        for count, file_status in enumerate(failed, start=1):
            source = sources.get(file_status.file_name)
            if source is None:
                logger.warning(
                    "No content available to retry '%s' in job %s", file_status.file_name, job_id
                )
                continue
            self._process_file(
                job_id,
                source,
                file_status,
                prefer_filename,
                position=positions.get(file_status.file_name, 0),
            )
            outcome.files.append(file_status)
            if file_status.status == FileStatus.SUCCESS:
                outcome.newly_successful += 1
            _emit(
                progress_callback,
                ProgressUpdate(
                    job_id=job_id,
                    files_processed=count,
                    total_files=len(failed),
                    message=f"Retried {count} of {len(failed)}: {source.name} ({file_status.status.value})",
                    file_status=file_status,
                ),
            )

        refreshed = self.ledger.list_files(job_id)
        cancelled = job.status == JobStatus.CANCELLED
        status = job.status if job.status == JobStatus.FAILED else derive_job_status(refreshed, cancelled)
        outcome.job = self.ledger.update_job(job_id, status=status, **aggregate_counters(refreshed))
        logger.info(
            "Retried %d failed files for job %s: %d now successful",
            len(outcome.files),
            job_id,
            outcome.newly_successful,
        )
        return outcome

    def rollback(self, job_id: str) -> int:
        """Delete every record the job wrote and return the count removed."""
        job = self.ledger.require_job(job_id)
        if job.status == JobStatus.PROCESSING:
            logger.warning("Rolling back import job %s while it is still marked processing", job_id)
        return self.ledger.rollback_job(job_id)
