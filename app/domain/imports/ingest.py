"""
Single-file ingestion: parse, resolve columns, normalize, then write in batches.

``ingest_file`` never raises for data or store problems; they come back on the
``IngestResult`` so the orchestrator can record them against the file.
"""
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from app.db.academic_records import AcademicRecordStore, RecordStoreError
from app.domain.imports.columns import ColumnResolver
from app.domain.imports.models import AcademicRecordRow, FileStatus
from app.domain.imports.normalizer import FieldNormalizer, extract_student_id_from_filename
from app.domain.imports.processors.csv_processor import parse_tabular_text

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100

SKIP_NO_ROWS = "No rows found"
SKIP_NO_STUDENT_ID = "No rows with a resolvable student id"


@dataclass
class IngestResult:
    file_name: str
    success: bool = False
    rows_inserted: int = 0
    student_id: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    total_rows: int = 0
    failed_rows: int = 0
    batches: int = 0
    failed_batches: int = 0
    unique_students: int = 0
    skip_reason: Optional[str] = None

    @property
    def status(self) -> FileStatus:
        if self.skip_reason:
            return FileStatus.SKIPPED
        if self.rows_inserted > 0:
            return FileStatus.SUCCESS
        return FileStatus.FAILED

    @property
    def error_message(self) -> Optional[str]:
        if self.skip_reason:
            return self.skip_reason
        if self.errors:
            return "; ".join(self.errors)
        return None


def build_records(
    text: str,
    file_name: str,
    *,
    import_job_id: Optional[str],
    prefer_filename_student_id: bool,
    resolver: Optional[ColumnResolver] = None,
) -> Tuple[int, List[AcademicRecordRow]]:
    """Return ``(parsed_row_count, records)`` for one file's text."""
    table = parse_tabular_text(text)
    if table.is_empty:
        return 0, []

    resolver = resolver or ColumnResolver()
    columns = resolver.resolve_all(table.headers)
    logger.debug("Resolved %d canonical columns for '%s'", len(columns), file_name)

    normalizer = FieldNormalizer(
        table.headers,
        columns,
        file_name=file_name,
        prefer_filename_student_id=prefer_filename_student_id,
        import_job_id=import_job_id,
    )
    return len(table.rows), normalizer.normalize_rows(table.rows)


def write_in_batches(
    store: AcademicRecordStore,
    records: List[AcademicRecordRow],
    result: IngestResult,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> None:
    """Write ``records`` batch by batch; a rejected batch does not stop the next one."""
    batch_size = max(1, batch_size)
    for start in range(0, len(records), batch_size):
        batch = records[start:start + batch_size]
        batch_number = start // batch_size + 1
        result.batches += 1
        try:
            result.rows_inserted += store.insert_batch(batch)
        except RecordStoreError as exc:
            result.failed_batches += 1
            result.failed_rows += len(batch)
            result.errors.append(f"Batch {batch_number}: {exc.message}")


def ingest_file(
    text: str,
    file_name: str,
    import_job_id: Optional[str],
    prefer_filename_student_id: bool,
    store: AcademicRecordStore,
    *,
    resolver: Optional[ColumnResolver] = None,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> IngestResult:
    """
    Ingest one logical tabular file.

    Args:
        text: Decoded file content
        file_name: Source name; its leading digits may supply the student id
        import_job_id: Job tag written on every row
        prefer_filename_student_id: Whether the file name beats the column value
        store: Record store collaborator
        resolver: Column resolver (defaults to the built-in alias table)
        batch_size: Rows per insert call

    Returns:
        IngestResult with insert counts, the resolved student id and batch errors
    """
    result = IngestResult(file_name=file_name)
    parsed_rows, records = build_records(
        text,
        file_name,
        import_job_id=import_job_id,
        prefer_filename_student_id=prefer_filename_student_id,
        resolver=resolver,
    )

    if parsed_rows == 0:
        result.skip_reason = SKIP_NO_ROWS
        result.student_id = extract_student_id_from_filename(file_name)
        logger.info("Skipping '%s': %s", file_name, result.skip_reason)
        return result
    if not records:
        result.skip_reason = SKIP_NO_STUDENT_ID
        logger.info("Skipping '%s': %s", file_name, result.skip_reason)
        return result

    student_ids = list(dict.fromkeys(record.student_id for record in records))
    result.unique_students = len(student_ids)
    result.student_id = student_ids[0] if len(student_ids) == 1 else None
    result.total_rows = len(records)

    write_in_batches(store, records, result, batch_size)
    result.success = result.rows_inserted > 0

    logger.info(
        "Ingested '%s': %d/%d rows inserted in %d batches (%d failed)",
        file_name,
        result.rows_inserted,
        result.total_rows,
        result.batches,
        result.failed_batches,
    )
    return result
