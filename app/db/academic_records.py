"""
Record store for normalized academic records.

Rows are written in caller-sized batches and tagged with the import job that
produced them so a whole job can be removed again (see ``delete_by_job``).
"""
import json
import logging
import threading
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from app.db.session import get_engine, is_postgres, serial_primary_key
from app.domain.imports.models import AcademicRecordRow, JobFatalError
from app.utils.serialization import dump_json

logger = logging.getLogger(__name__)

RECORDS_TABLE = "student_academic_records"

RECORD_COLUMNS = (
    "student_id",
    "import_job_id",
    "source_file_name",
    "college",
    "major",
    "academic_year",
    "semester",
    "last_registration_semester",
    "study_mode",
    "permanent_status",
    "semester_status",
    "registered_hours_semester",
    "completed_hours_semester",
    "academic_warning",
    "previous_academic_warning",
    "cumulative_gpa_percent",
    "cumulative_gpa_points",
    "total_completed_hours",
    "baccalaureate_type",
    "baccalaureate_country",
    "certificate_score",
    "certificate_average",
    "course_code",
    "course_name",
    "course_credits",
    "final_grade",
    "letter_grade",
    "grade_points",
    "has_ministry_scholarship",
    "raw_data",
)


class RecordStoreError(Exception):
    """A write or delete was rejected by the record store."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class RecordStoreUnavailableError(JobFatalError):
    """The record store cannot be reached or refused the credentials."""


class AcademicRecordStore:
    """SQL-backed store for ``AcademicRecordRow`` batches."""

    def __init__(self, engine: Optional[Engine] = None):
        self._engine = engine
        self._table_ready = False
        self._table_lock = threading.Lock()

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            self._engine = get_engine()
        return self._engine

    def ensure_table(self) -> None:
        if self._table_ready:
            return
        with self._table_lock:
            if self._table_ready:
                return
            self._create_table()
            self._table_ready = True

    def _create_table(self) -> None:
        engine = self.engine
        json_type = "JSONB" if is_postgres(engine) else "TEXT"
        create_sql = f"""
        CREATE TABLE IF NOT EXISTS {RECORDS_TABLE} (
            id {serial_primary_key(engine)},
            student_id VARCHAR(64) NOT NULL,
            import_job_id VARCHAR(36),
            source_file_name VARCHAR(500),
            college VARCHAR(255),
            major VARCHAR(255),
            academic_year VARCHAR(50),
            semester VARCHAR(100),
            last_registration_semester VARCHAR(100),
            study_mode VARCHAR(100),
            permanent_status VARCHAR(100),
            semester_status VARCHAR(100),
            registered_hours_semester DOUBLE PRECISION,
            completed_hours_semester DOUBLE PRECISION,
            academic_warning VARCHAR(255),
            previous_academic_warning VARCHAR(255),
            cumulative_gpa_percent DOUBLE PRECISION,
            cumulative_gpa_points DOUBLE PRECISION,
            total_completed_hours DOUBLE PRECISION,
            baccalaureate_type VARCHAR(255),
            baccalaureate_country VARCHAR(255),
            certificate_score DOUBLE PRECISION,
            certificate_average DOUBLE PRECISION,
            course_code VARCHAR(100),
            course_name VARCHAR(500),
            course_credits DOUBLE PRECISION,
            final_grade DOUBLE PRECISION,
            letter_grade VARCHAR(20),
            grade_points DOUBLE PRECISION,
            has_ministry_scholarship BOOLEAN DEFAULT FALSE,
            raw_data {json_type},
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        )
        """
        with engine.begin() as conn:
            conn.execute(text(create_sql))
            conn.execute(text(
                f"CREATE INDEX IF NOT EXISTS idx_{RECORDS_TABLE}_job ON {RECORDS_TABLE}(import_job_id)"
            ))
            conn.execute(text(
                f"CREATE INDEX IF NOT EXISTS idx_{RECORDS_TABLE}_student ON {RECORDS_TABLE}(student_id)"
            ))
        logger.info("%s table created/verified", RECORDS_TABLE)

    def ping(self) -> None:
        """
        Verify the store is reachable before a job touches any file.

        Raises:
            RecordStoreUnavailableError: connection or authentication failure.
        """
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            self.ensure_table()
        except OperationalError as exc:
            logger.error("Record store unavailable: %s", exc)
            raise RecordStoreUnavailableError(f"Record store unavailable: {exc.orig or exc}") from exc

    def _insert_sql(self) -> str:
        placeholders = []
        for column in RECORD_COLUMNS:
            if column == "raw_data" and is_postgres(self.engine):
                placeholders.append("CAST(:raw_data AS jsonb)")
            else:
                placeholders.append(f":{column}")
        return (
            f"INSERT INTO {RECORDS_TABLE} ({', '.join(RECORD_COLUMNS)}) "
            f"VALUES ({', '.join(placeholders)})"
        )

    @staticmethod
    def _row_params(row: AcademicRecordRow) -> Dict[str, Any]:
        values = row.to_dict()
        params = {column: values.get(column) for column in RECORD_COLUMNS}
        params["raw_data"] = dump_json(row.raw_data)
        return params

    def insert_batch(self, rows: Sequence[AcademicRecordRow]) -> int:
        """
        Insert one batch in a single transaction and return the row count.

        Raises:
            RecordStoreError: the batch was rejected; nothing from it persisted.
        """
        if not rows:
            return 0
        self.ensure_table()
        params = [self._row_params(row) for row in rows]
        try:
            with self.engine.begin() as conn:
                conn.execute(text(self._insert_sql()), params)
        except SQLAlchemyError as exc:
            message = str(getattr(exc, "orig", None) or exc)
            logger.warning("Record store rejected batch of %d rows: %s", len(rows), message)
            raise RecordStoreError(message) from exc
        return len(rows)

    def delete_by_job(self, import_job_id: str) -> int:
        """Delete every row tagged with ``import_job_id`` and return how many were removed."""
        self.ensure_table()
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    text(f"DELETE FROM {RECORDS_TABLE} WHERE import_job_id = :import_job_id"),
                    {"import_job_id": import_job_id},
                )
                deleted = result.rowcount or 0
        except SQLAlchemyError as exc:
            raise RecordStoreError(f"Failed to delete rows for job {import_job_id}: {exc}") from exc
        logger.info("Deleted %d academic records for import job %s", deleted, import_job_id)
        return deleted

    def count_by_job(self, import_job_id: str) -> int:
        self.ensure_table()
        with self.engine.connect() as conn:
            return conn.execute(
                text(f"SELECT COUNT(*) FROM {RECORDS_TABLE} WHERE import_job_id = :import_job_id"),
                {"import_job_id": import_job_id},
            ).scalar() or 0

    def list_records(
        self,
        *,
        student_id: Optional[str] = None,
        import_job_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> Tuple[List[Dict[str, Any]], int]:
        """Query stored rows, newest first, with optional student/job filters."""
        self.ensure_table()
        conditions = []
        params: Dict[str, Any] = {"limit": limit, "offset": offset}
        if student_id:
            conditions.append("student_id = :student_id")
            params["student_id"] = student_id
        if import_job_id:
            conditions.append("import_job_id = :import_job_id")
            params["import_job_id"] = import_job_id
        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        with self.engine.connect() as conn:
            total = conn.execute(
                text(f"SELECT COUNT(*) FROM {RECORDS_TABLE} {where_clause}"), params
            ).scalar() or 0
            result = conn.execute(
                text(
                    f"SELECT id, {', '.join(RECORD_COLUMNS)} FROM {RECORDS_TABLE} {where_clause} "
                    "ORDER BY id DESC LIMIT :limit OFFSET :offset"
                ),
                params,
            )
            records = []
            for row in result.mappings():
                record = dict(row)
                raw_data = record.get("raw_data")
                if isinstance(raw_data, str):
                    record["raw_data"] = json.loads(raw_data)
                record["has_ministry_scholarship"] = bool(record.get("has_ministry_scholarship"))
                records.append(record)
        return records, total
