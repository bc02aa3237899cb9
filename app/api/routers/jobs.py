"""
Endpoints for tracking import job progress, per-file outcomes and imported records.
"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import Response

from app.api.dependencies import get_import_ledger, get_record_store
from app.api.schemas.shared import (
    AcademicRecordsResponse,
    FileImportStatusInfo,
    ImportFilesResponse,
    ImportJobInfo,
    ImportJobListResponse,
    ImportJobResponse,
)
from app.core.config import settings
from app.db.academic_records import AcademicRecordStore
from app.domain.imports.ledger import ImportLedger
from app.domain.imports.models import FileStatus, JobStatus
from app.domain.imports.reports import build_error_report_csv

router = APIRouter(tags=["import-jobs"])


@router.get("/import-jobs/{job_id}", response_model=ImportJobResponse)
async def get_import_job_endpoint(job_id: str, ledger: ImportLedger = Depends(get_import_ledger)):
    job = ledger.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return ImportJobResponse(success=True, job=ImportJobInfo.from_job(job))


@router.get("/import-jobs", response_model=ImportJobListResponse)
async def list_import_jobs_endpoint(
    status: Optional[JobStatus] = None,
    limit: int = 50,
    offset: int = 0,
    ledger: ImportLedger = Depends(get_import_ledger),
):
    jobs, total = ledger.list_jobs(status=status, limit=limit, offset=offset)
    return ImportJobListResponse(
        success=True,
        jobs=[ImportJobInfo.from_job(job) for job in jobs],
        total_count=total,
        limit=limit,
        offset=offset,
    )


@router.get("/import-jobs/{job_id}/files", response_model=ImportFilesResponse)
async def list_import_job_files_endpoint(
    job_id: str,
    status: Optional[FileStatus] = None,
    ledger: ImportLedger = Depends(get_import_ledger),
):
    if not ledger.get_job(job_id):
        raise HTTPException(status_code=404, detail="Job not found")
    files = ledger.list_files(job_id, status=status)
    return ImportFilesResponse(
        success=True,
        job_id=job_id,
        files=[FileImportStatusInfo.from_status(item) for item in files],
        total_count=len(files),
    )


@router.get("/import-jobs/{job_id}/error-report")
async def download_error_report(job_id: str, ledger: ImportLedger = Depends(get_import_ledger)):
    """CSV of every file that did not import successfully."""
    if not ledger.get_job(job_id):
        raise HTTPException(status_code=404, detail="Job not found")
    report = build_error_report_csv(ledger.list_files(job_id))
    return Response(
        content=report.encode("utf-8"),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{settings.error_report_file_name}"'},
    )


@router.get("/academic-records", response_model=AcademicRecordsResponse)
async def list_academic_records_endpoint(
    student_id: Optional[str] = None,
    import_job_id: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
    store: AcademicRecordStore = Depends(get_record_store),
):
    records, total = store.list_records(
        student_id=student_id,
        import_job_id=import_job_id,
        limit=limit,
        offset=offset,
    )
    return AcademicRecordsResponse(
        success=True,
        records=records,
        total_count=total,
        limit=limit,
        offset=offset,
    )
