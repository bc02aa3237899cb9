"""
Academic records import endpoints: upload, preview, cancel, retry and rollback.
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, HTTPException, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import Response

from app.api.dependencies import (
    detect_file_type,
    get_cancel_token,
    get_import_orchestrator,
    register_cancel_token,
    release_cancel_token,
)
from app.api.schemas.shared import (
    CancelImportResponse,
    FileImportStatusInfo,
    ImportJobInfo,
    ImportJobResponse,
    ImportSummary,
    PreviewResponse,
    RetryImportResponse,
    RollbackImportResponse,
)
from app.core.config import settings
from app.db.academic_records import RecordStoreError
from app.domain.imports.columns import ColumnResolver
from app.domain.imports.models import (
    ImportJob,
    ImportOptions,
    JobFatalError,
    JobNotFoundError,
)
from app.domain.imports.orchestrator import CancellationToken, ImportOrchestrator, JobStateError
from app.domain.imports.processors.archive_processor import expand_upload
from app.domain.imports.processors.csv_processor import preview_tabular_text
from app.domain.imports.reports import build_template_csv, summarize_outcome

router = APIRouter(prefix="/academic-imports", tags=["academic-imports"])

logger = logging.getLogger(__name__)


async def _read_upload(file: UploadFile) -> bytes:
    content = await file.read()
    max_bytes = settings.upload_max_file_size_mb * 1024 * 1024
    if len(content) > max_bytes:
        raise HTTPException(
            status_code=413,
            detail=f"File exceeds the {settings.upload_max_file_size_mb} MB upload limit",
        )
    return content


def run_import_job(
    orchestrator: ImportOrchestrator,
    job: ImportJob,
    file_name: str,
    content: bytes,
    options: ImportOptions,
    cancel_token: CancellationToken,
) -> None:
    """Background entry point; the job record carries every outcome."""
    try:
        orchestrator.import_upload(
            file_name, content, options, job=job, cancel_token=cancel_token
        )
    except JobFatalError as exc:
        logger.error("Import job %s failed: %s", job.id, exc.message)
    except Exception as exc:
        # The orchestrator has already marked the job failed
        logger.error("Import job %s crashed: %s", job.id, exc)
    finally:
        release_cancel_token(job.id)


@router.post("", response_model=ImportJobResponse)
async def create_academic_import(
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    prefer_filename_student_id: Optional[bool] = Form(None),
    run_async: bool = Form(False),
    orchestrator: ImportOrchestrator = Depends(get_import_orchestrator),
):
    """
    Import a CSV/Excel file or a ZIP archive of per-student files.

    Parameters:
    - file: The upload (.csv, .tsv, .txt, .xlsx, .xls or .zip)
    - prefer_filename_student_id: Take the student id from the file name before
      the student id column (defaults depend on the upload kind)
    - run_async: Return immediately and process in the background; poll
      ``GET /import-jobs/{job_id}`` for progress

    Returns:
    - The job, per-file statuses and a summary (synchronous mode)
    """
    file_name = file.filename or "upload"
    source_kind = detect_file_type(file_name)
    content = await _read_upload(file)
    options = ImportOptions(prefer_filename_student_id=prefer_filename_student_id)

    job = orchestrator.start_job(file_name, source_kind)
    cancel_token = register_cancel_token(job.id)
    logger.info("Received academic import '%s' as job %s (async=%s)", file_name, job.id, run_async)

    if run_async:
        background_tasks.add_task(
            run_import_job,
            orchestrator,
            job,
            file_name,
            content,
            options,
            cancel_token,
        )
        return ImportJobResponse(
            success=True,
            job=ImportJobInfo.from_job(job),
            message="Import queued",
        )

    try:
        outcome = await run_in_threadpool(
            orchestrator.import_upload,
            file_name,
            content,
            options,
            job=job,
            cancel_token=cancel_token,
        )
    except JobFatalError as exc:
        raise HTTPException(status_code=422, detail={"job_id": job.id, "error": exc.message})
    except Exception as exc:
        logger.error("Import job %s crashed: %s", job.id, exc)
        raise HTTPException(
            status_code=500, detail={"job_id": job.id, "error": f"Unexpected error while importing: {exc}"}
        )
    finally:
        release_cancel_token(job.id)

    return ImportJobResponse(
        success=True,
        job=ImportJobInfo.from_job(outcome.job),
        files=[FileImportStatusInfo.from_status(item) for item in outcome.files],
        summary=ImportSummary(**summarize_outcome(outcome)),
    )


@router.post("/preview", response_model=PreviewResponse)
async def preview_academic_import(
    file: UploadFile = File(...),
    limit: int = Form(5),
    orchestrator: ImportOrchestrator = Depends(get_import_orchestrator),
):
    """Show the first rows of an upload (first member for archives) and the recognised columns."""
    file_name = file.filename or "upload"
    detect_file_type(file_name)
    content = await _read_upload(file)
    try:
        files = expand_upload(file_name, content)
    except JobFatalError as exc:
        raise HTTPException(status_code=422, detail=exc.message)
    if not files:
        raise HTTPException(status_code=422, detail="No tabular files found in upload")

    source = files[0]
    preview = preview_tabular_text(source.text, limit=limit)
    resolver = ColumnResolver(orchestrator.config.alias_table)
    columns = resolver.resolve_all(preview.headers)
    mapped_indexes = set(columns.values())
    return PreviewResponse(
        success=True,
        file_name=source.name,
        delimiter=preview.delimiter,
        headers=preview.headers,
        rows=preview.rows,
        mapped_columns={field.value: preview.headers[index] for field, index in columns.items()},
        unmapped_headers=[
            header for index, header in enumerate(preview.headers)
            if header and index not in mapped_indexes
        ],
        valid_rows=preview.valid_rows,
        invalid_rows=preview.invalid_rows,
    )


@router.get("/template")
async def download_template():
    """Blank CSV with the canonical column headers."""
    return Response(
        content=build_template_csv().encode("utf-8"),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{settings.template_file_name}"'},
    )


@router.post("/{job_id}/cancel", response_model=CancelImportResponse)
async def cancel_academic_import(
    job_id: str,
    orchestrator: ImportOrchestrator = Depends(get_import_orchestrator),
):
    token = get_cancel_token(job_id)
    if token is None:
        job = orchestrator.ledger.get_job(job_id)
        if not job:
            raise HTTPException(status_code=404, detail="Job not found")
        raise HTTPException(status_code=409, detail=f"Job is not running (status: {job.status.value})")

    token.cancel()
    logger.info("Cancellation requested for import job %s", job_id)
    return CancelImportResponse(
        success=True,
        job_id=job_id,
        message="Cancellation requested; the job stops before its next file",
    )


@router.post("/{job_id}/retry", response_model=RetryImportResponse)
async def retry_academic_import(
    job_id: str,
    files: Optional[List[UploadFile]] = File(None),
    prefer_filename_student_id: Optional[bool] = Form(None),
    orchestrator: ImportOrchestrator = Depends(get_import_orchestrator),
):
    """
    Re-run the job's failed files.

    Parameters:
    - files: Corrected contents for failed files (matched by name); when
      omitted the contents stored with the job are used
    """
    sources = None
    if files:
        sources = []
        for upload in files:
            upload_name = upload.filename or "upload"
            try:
                sources.extend(expand_upload(upload_name, await _read_upload(upload)))
            except (JobFatalError, ValueError) as exc:
                raise HTTPException(status_code=422, detail=getattr(exc, "message", str(exc)))

    try:
        outcome = await run_in_threadpool(
            orchestrator.retry_failed,
            job_id,
            sources,
            ImportOptions(prefer_filename_student_id=prefer_filename_student_id),
        )
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    except JobStateError as exc:
        raise HTTPException(status_code=409, detail=exc.message)
    except JobFatalError as exc:
        raise HTTPException(status_code=422, detail=exc.message)

    return RetryImportResponse(
        success=True,
        job=ImportJobInfo.from_job(outcome.job),
        retried_files=[FileImportStatusInfo.from_status(item) for item in outcome.files],
        newly_successful=outcome.newly_successful,
    )


@router.post("/{job_id}/rollback", response_model=RollbackImportResponse)
async def rollback_academic_import(
    job_id: str,
    orchestrator: ImportOrchestrator = Depends(get_import_orchestrator),
):
    """Delete every academic record the job inserted."""
    try:
        deleted = await run_in_threadpool(orchestrator.rollback, job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    except RecordStoreError as exc:
        raise HTTPException(status_code=500, detail=exc.message)

    return RollbackImportResponse(
        success=True,
        job_id=job_id,
        rows_deleted=deleted,
        message=f"Removed {deleted} records imported by job {job_id}",
    )
