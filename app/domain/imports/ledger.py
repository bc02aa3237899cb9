"""
Persistent ledger of academic record import jobs and their per-file outcomes.

The orchestrator is the only writer. Everything else reads jobs and file
statuses through this module, and rollback removes a job's rows from the
record store.
"""
from __future__ import annotations

import logging
import threading
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import text
from sqlalchemy.engine import Engine

from app.db.academic_records import AcademicRecordStore
from app.db.session import get_engine, serial_primary_key
from app.domain.imports.models import (
    FileImportStatus,
    FileStatus,
    ImportJob,
    JobNotFoundError,
    JobStatus,
    SourceFile,
    SourceKind,
)

logger = logging.getLogger(__name__)

JOBS_TABLE = "academic_import_jobs"
FILES_TABLE = "academic_import_files"

_JOB_COUNTER_FIELDS = (
    "total_files",
    "files_processed",
    "total_records",
    "successful_records",
    "failed_records",
)


def _as_datetime(value: Any) -> Optional[datetime]:
    """SQLite hands timestamps back as text; Postgres as datetimes."""
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _row_to_job(row: Any) -> ImportJob:
    return ImportJob(
        id=str(row["id"]),
        file_name=row["file_name"],
        source_kind=SourceKind(row["source_kind"]),
        status=JobStatus(row["status"]),
        total_files=row["total_files"] or 0,
        files_processed=row["files_processed"] or 0,
        total_records=row["total_records"] or 0,
        successful_records=row["successful_records"] or 0,
        failed_records=row["failed_records"] or 0,
        error_message=row["error_message"],
        created_at=_as_datetime(row["created_at"]),
        updated_at=_as_datetime(row["updated_at"]),
        completed_at=_as_datetime(row["completed_at"]),
        rolled_back_at=_as_datetime(row["rolled_back_at"]),
        rows_rolled_back=row["rows_rolled_back"],
    )


def _row_to_file(row: Any) -> FileImportStatus:
    return FileImportStatus(
        file_name=row["file_name"],
        student_id=row["student_id"],
        status=FileStatus(row["status"]),
        records_count=row["records_count"] or 0,
        total_rows=row["total_rows"] or 0,
        failed_rows=row["failed_rows"] or 0,
        error=row["error_message"],
        completed_at=_as_datetime(row["completed_at"]),
    )


class ImportLedger:
    """Durable job log with rollback of a job's persisted rows."""

    def __init__(self, engine: Optional[Engine] = None, store: Optional[AcademicRecordStore] = None):
        self._engine = engine
        self.store = store or AcademicRecordStore(engine)
        self._tables_ready = False
        self._tables_lock = threading.Lock()

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            self._engine = get_engine()
        return self._engine

    def ensure_tables(self) -> None:
        """Create the ledger tables on-demand."""
        if self._tables_ready:
            return
        with self._tables_lock:
            if self._tables_ready:
                return
            self._create_tables()
            self._tables_ready = True

    def _create_tables(self) -> None:
        engine = self.engine
        create_jobs_sql = f"""
        CREATE TABLE IF NOT EXISTS {JOBS_TABLE} (
            id VARCHAR(36) PRIMARY KEY,
            file_name VARCHAR(500) NOT NULL,
            source_kind VARCHAR(20) NOT NULL,
            status VARCHAR(30) NOT NULL DEFAULT 'processing',
            total_files INTEGER DEFAULT 0,
            files_processed INTEGER DEFAULT 0,
            total_records INTEGER DEFAULT 0,
            successful_records INTEGER DEFAULT 0,
            failed_records INTEGER DEFAULT 0,
            error_message TEXT,
            rolled_back_at TIMESTAMP,
            rows_rolled_back INTEGER,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            completed_at TIMESTAMP
        )
        """
        create_files_sql = f"""
        CREATE TABLE IF NOT EXISTS {FILES_TABLE} (
            id {serial_primary_key(engine)},
            job_id VARCHAR(36) NOT NULL REFERENCES {JOBS_TABLE}(id) ON DELETE CASCADE,
            position INTEGER NOT NULL DEFAULT 0,
            file_name VARCHAR(500) NOT NULL,
            student_id VARCHAR(64),
            status VARCHAR(20) NOT NULL DEFAULT 'pending',
            records_count INTEGER DEFAULT 0,
            total_rows INTEGER DEFAULT 0,
            failed_rows INTEGER DEFAULT 0,
            error_message TEXT,
            source_text TEXT,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            completed_at TIMESTAMP
        )
        """
        with engine.begin() as conn:
            conn.execute(text(create_jobs_sql))
            conn.execute(text(create_files_sql))
            conn.execute(text(f"CREATE INDEX IF NOT EXISTS idx_{JOBS_TABLE}_status ON {JOBS_TABLE}(status)"))
            conn.execute(text(
                f"CREATE UNIQUE INDEX IF NOT EXISTS idx_{FILES_TABLE}_job_file "
                f"ON {FILES_TABLE}(job_id, file_name)"
            ))
        logger.info("%s and %s tables created/verified", JOBS_TABLE, FILES_TABLE)

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def create_job(self, file_name: str, source_kind: SourceKind, total_files: int = 0) -> ImportJob:
        """Persist a new job in ``processing`` state and return it."""
        self.ensure_tables()
        job_id = str(uuid.uuid4())
        insert_sql = f"""
        INSERT INTO {JOBS_TABLE} (id, file_name, source_kind, status, total_files)
        VALUES (:id, :file_name, :source_kind, :status, :total_files)
        """
        with self.engine.begin() as conn:
            conn.execute(text(insert_sql), {
                "id": job_id,
                "file_name": file_name,
                "source_kind": source_kind.value,
                "status": JobStatus.PROCESSING.value,
                "total_files": total_files,
            })
        logger.info("Created import job %s for '%s' (%s)", job_id, file_name, source_kind.value)
        return self.get_job(job_id)

    def update_job(
        self,
        job_id: str,
        *,
        status: Optional[JobStatus] = None,
        error_message: Optional[str] = None,
        completed: bool = False,
        **counters: int,
    ) -> ImportJob:
        """Update counters and/or status. Unknown counter names raise ``ValueError``."""
        self.ensure_tables()
        unknown = set(counters) - set(_JOB_COUNTER_FIELDS)
        if unknown:
            raise ValueError(f"Unknown job counters: {sorted(unknown)}")

        update_parts = ["updated_at = CURRENT_TIMESTAMP"]
        params: Dict[str, Any] = {"job_id": job_id}
        for name, value in counters.items():
            if value is None:
                continue
            update_parts.append(f"{name} = :{name}")
            params[name] = value
        if status is not None:
            update_parts.append("status = :status")
            params["status"] = status.value
        if error_message is not None:
            update_parts.append("error_message = :error_message")
            params["error_message"] = error_message
        if completed:
            update_parts.append("completed_at = COALESCE(completed_at, CURRENT_TIMESTAMP)")

        with self.engine.begin() as conn:
            result = conn.execute(
                text(f"UPDATE {JOBS_TABLE} SET {', '.join(update_parts)} WHERE id = :job_id"),
                params,
            )
            if result.rowcount == 0:
                raise JobNotFoundError(job_id)
        return self.get_job(job_id)

    def get_job(self, job_id: str) -> Optional[ImportJob]:
        self.ensure_tables()
        with self.engine.connect() as conn:
            row = conn.execute(
                text(f"SELECT * FROM {JOBS_TABLE} WHERE id = :job_id"), {"job_id": job_id}
            ).mappings().first()
        return _row_to_job(row) if row else None

    def require_job(self, job_id: str) -> ImportJob:
        job = self.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def list_jobs(
        self,
        *,
        status: Optional[JobStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[ImportJob], int]:
        self.ensure_tables()
        where_clause = "WHERE status = :status" if status else ""
        params: Dict[str, Any] = {"limit": limit, "offset": offset}
        if status:
            params["status"] = status.value
        with self.engine.connect() as conn:
            total = conn.execute(
                text(f"SELECT COUNT(*) FROM {JOBS_TABLE} {where_clause}"), params
            ).scalar() or 0
            rows = conn.execute(
                text(
                    f"SELECT * FROM {JOBS_TABLE} {where_clause} "
                    "ORDER BY created_at DESC, id LIMIT :limit OFFSET :offset"
                ),
                params,
            ).mappings().all()
        return [_row_to_job(row) for row in rows], total

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def record_file(
        self,
        job_id: str,
        file_status: FileImportStatus,
        *,
        position: Optional[int] = None,
        source_text: Optional[str] = None,
    ) -> None:
        """
        Insert or update one file's status under ``job_id``.

        ``source_text`` is kept so a failed file can be retried without the
        original upload; it is only written when provided.
        """
        self.ensure_tables()
        params = {
            "job_id": job_id,
            "file_name": file_status.file_name,
            "student_id": file_status.student_id,
            "status": file_status.status.value,
            "records_count": file_status.records_count,
            "total_rows": file_status.total_rows,
            "failed_rows": file_status.failed_rows,
            "error_message": file_status.error,
            "is_final": file_status.is_final,
            "source_text": source_text,
            "position": position or 0,
        }
        update_sql = f"""
        UPDATE {FILES_TABLE} SET
            student_id = :student_id,
            status = :status,
            records_count = :records_count,
            total_rows = :total_rows,
            failed_rows = :failed_rows,
            error_message = :error_message,
            source_text = COALESCE(:source_text, source_text),
            updated_at = CURRENT_TIMESTAMP,
            completed_at = CASE WHEN :is_final THEN CURRENT_TIMESTAMP ELSE NULL END
        WHERE job_id = :job_id AND file_name = :file_name
        """
        insert_sql = f"""
        INSERT INTO {FILES_TABLE} (
            job_id, position, file_name, student_id, status, records_count,
            total_rows, failed_rows, error_message, source_text
        ) VALUES (
            :job_id, :position, :file_name, :student_id, :status, :records_count,
            :total_rows, :failed_rows, :error_message, :source_text
        )
        """
        with self.engine.begin() as conn:
            result = conn.execute(text(update_sql), params)
            if result.rowcount == 0:
                conn.execute(text(insert_sql), params)

    def record_files(self, job_id: str, files: Iterable[Tuple[FileImportStatus, Optional[str]]]) -> None:
        for position, (file_status, source_text) in enumerate(files):
            self.record_file(job_id, file_status, position=position, source_text=source_text)

    def list_files(self, job_id: str, status: Optional[FileStatus] = None) -> List[FileImportStatus]:
        self.ensure_tables()
        where_clause = "WHERE job_id = :job_id"
        params: Dict[str, Any] = {"job_id": job_id}
        if status:
            where_clause += " AND status = :status"
            params["status"] = status.value
        with self.engine.connect() as conn:
            rows = conn.execute(
                text(f"SELECT * FROM {FILES_TABLE} {where_clause} ORDER BY position, id"), params
            ).mappings().all()
        return [_row_to_file(row) for row in rows]

    def get_file_sources(self, job_id: str, file_names: Optional[Iterable[str]] = None) -> List[SourceFile]:
        """Stored text for the job's files, in original order."""
        self.ensure_tables()
        wanted = set(file_names) if file_names is not None else None
        with self.engine.connect() as conn:
            rows = conn.execute(
                text(
                    f"SELECT file_name, source_text FROM {FILES_TABLE} "
                    "WHERE job_id = :job_id ORDER BY position, id"
                ),
                {"job_id": job_id},
            ).mappings().all()
        return [
            SourceFile(name=row["file_name"], text=row["source_text"] or "")
            for row in rows
            if row["source_text"] is not None and (wanted is None or row["file_name"] in wanted)
        ]

    # ------------------------------------------------------------------
    # Rollback
    # ------------------------------------------------------------------

    def rollback_job(self, job_id: str) -> int:
        """
        Delete every academic record tagged with ``job_id``.

        Counters on the job are left as they were so the job history still shows
        what had been imported; ``rows_rolled_back`` records what was removed.

        Returns:
            Number of rows deleted from the record store
        """
        job = self.require_job(job_id)
        deleted = self.store.delete_by_job(job.id)
        with self.engine.begin() as conn:
            conn.execute(
                text(
                    f"UPDATE {JOBS_TABLE} SET rolled_back_at = CURRENT_TIMESTAMP, "
                    "rows_rolled_back = COALESCE(rows_rolled_back, 0) + :deleted, "
                    "updated_at = CURRENT_TIMESTAMP WHERE id = :job_id"
                ),
                {"job_id": job.id, "deleted": deleted},
            )
        logger.info("Rolled back import job %s: %d rows removed", job.id, deleted)
        return deleted
