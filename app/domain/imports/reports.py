"""
CSV artifacts handed back to operators: the per-job error report and the
blank import template. Both start with a UTF-8 BOM so spreadsheet tools
open the Arabic text correctly.
"""
import csv
import io
from typing import Any, Dict, Iterable, List

from app.domain.imports.columns import template_headers
from app.domain.imports.models import FileImportStatus, FileStatus, JobOutcome
from app.domain.imports.processors.csv_processor import BOM

ERROR_REPORT_HEADERS = ["file_name", "student_id", "status", "error"]


def _write_csv(headers: List[str], rows: Iterable[List[Any]]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(headers)
    for row in rows:
        writer.writerow(["" if value is None else value for value in row])
    return BOM + buffer.getvalue()


def build_error_report_csv(files: Iterable[FileImportStatus]) -> str:
    """One line per file that did not end in ``success``."""
    rows = [
        [item.file_name, item.student_id, item.status.value, item.error]
        for item in files
        if item.status != FileStatus.SUCCESS
    ]
    return _write_csv(ERROR_REPORT_HEADERS, rows)


def build_template_csv() -> str:
    return _write_csv(template_headers(), [])


def summarize_outcome(outcome: JobOutcome) -> Dict[str, int]:
    return {
        "total_files": len(outcome.files),
        "success_files": outcome.success_files,
        "failed_files": outcome.failed_files,
        "skipped_files": outcome.skipped_files,
        "pending_files": outcome.pending_files,
        "total_inserted": outcome.total_inserted,
    }
