from typing import List, Sequence, Set

import pytest

from app.db.academic_records import (
    AcademicRecordStore,
    RecordStoreError,
    RecordStoreUnavailableError,
)
from app.domain.imports.ingest import DEFAULT_BATCH_SIZE, SKIP_NO_STUDENT_ID
from app.domain.imports.ledger import ImportLedger
from app.domain.imports.models import (
    AcademicRecordRow,
    ArchiveError,
    FileStatus,
    ImportOptions,
    JobStatus,
    SourceFile,
    SourceKind,
)
from app.domain.imports.orchestrator import (
    CancellationToken,
    ImportConfig,
    ImportOrchestrator,
    JobStateError,
)
from tests.utils.archives import build_zip


class RecordingStore(AcademicRecordStore):
    """Real SQLite store that can reject chosen batches and records batch sizes."""

    def __init__(self, engine):
        super().__init__(engine)
        self.batch_sizes: List[int] = []
        self.reject_students: Set[str] = set()
        self.reject_batch_numbers: Set[int] = set()

    def insert_batch(self, rows: Sequence[AcademicRecordRow]) -> int:
        self.batch_sizes.append(len(rows))
        if len(self.batch_sizes) in self.reject_batch_numbers:
            raise RecordStoreError("value too long for column")
        if any(row.student_id in self.reject_students for row in rows):
            raise RecordStoreError("rejected by store")
        return super().insert_batch(rows)


class UnavailableStore(AcademicRecordStore):
    def ping(self) -> None:
        raise RecordStoreUnavailableError("Record store unavailable: connection refused")


class BrokenProgressLedger(ImportLedger):
    """Ledger whose progress writes fail once the first file has been imported."""

    def update_job(self, job_id, **kwargs):
        if "files_processed" in kwargs:
            raise RuntimeError("ledger write lost")
        return super().update_job(job_id, **kwargs)


@pytest.fixture
def recording_store(engine):
    return RecordingStore(engine)


@pytest.fixture
def recording_orchestrator(engine, recording_store):
    ledger = ImportLedger(engine, store=recording_store)
    return ImportOrchestrator(store=recording_store, ledger=ledger, config=ImportConfig())


def _three_file_archive() -> bytes:
    return build_zip(
        {
            "4220212.csv": b"course_code,final_grade\nCS101,80\nCS102,90\nCS103,70\n",
            "4220213.csv": b"course_code,final_grade\n",
            "4220214.csv": b"course_code,final_grade\nCS101,55\nCS102,61\n",
        }
    )


def test_archive_with_success_skip_and_failure(recording_orchestrator, recording_store):
    recording_store.reject_students = {"4220214"}

    outcome = recording_orchestrator.import_upload("batch.zip", _three_file_archive())

    statuses = {item.file_name: item for item in outcome.files}
    assert statuses["4220212.csv"].status == FileStatus.SUCCESS
    assert statuses["4220212.csv"].records_count == 3
    assert statuses["4220212.csv"].student_id == "4220212"
    assert statuses["4220213.csv"].status == FileStatus.SKIPPED
    assert statuses["4220213.csv"].error == "No rows found"
    assert statuses["4220214.csv"].status == FileStatus.FAILED
    assert statuses["4220214.csv"].error == "Batch 1: rejected by store"

    job = outcome.job
    assert job.source_kind == SourceKind.ARCHIVE
    assert job.status == JobStatus.COMPLETED_WITH_ERRORS
    assert job.total_files == 3
    assert job.files_processed == 3
    assert job.total_records == 5
    assert job.successful_records == 3
    assert job.failed_records == 2
    assert job.completed_at is not None
    assert recording_store.count_by_job(job.id) == 3


def test_counters_match_the_file_statuses(recording_orchestrator, recording_store):
    recording_store.reject_students = {"4220214"}

    outcome = recording_orchestrator.import_upload("batch.zip", _three_file_archive())
    job = outcome.job

    assert job.successful_records + job.failed_records <= job.total_records
    assert job.successful_records == sum(item.records_count for item in outcome.files)
    assert all(item.is_final for item in outcome.files)
    assert outcome.success_files + outcome.failed_files + outcome.skipped_files == job.files_processed


def test_clean_import_completes(orchestrator, store):
    outcome = orchestrator.import_upload(
        "grades.csv",
        "student_id,course_code,final_grade\n111111,CS101,80\n222222,CS101,75\n".encode("utf-8"),
    )

    assert outcome.job.status == JobStatus.COMPLETED
    assert outcome.job.source_kind == SourceKind.SINGLE_FILE
    assert outcome.files[0].status == FileStatus.SUCCESS
    # Several students in one file: no single owning id
    assert outcome.files[0].student_id is None
    records, total = store.list_records(import_job_id=outcome.job.id)
    assert total == 2
    assert {record["student_id"] for record in records} == {"111111", "222222"}


def test_skipped_files_do_not_mark_the_job_with_errors(orchestrator):
    archive = build_zip(
        {
            "4220212.csv": b"course_code,final_grade\nCS101,80\n",
            "4220213.csv": b"",
        }
    )

    outcome = orchestrator.import_upload("batch.zip", archive)

    assert outcome.skipped_files == 1
    assert outcome.job.status == JobStatus.COMPLETED


def test_rows_are_written_in_configured_batches(engine, recording_store):
    orchestrator = ImportOrchestrator(
        store=recording_store,
        ledger=ImportLedger(engine, store=recording_store),
        config=ImportConfig(batch_size=100),
    )
    body = "\n".join(f"CS{i},70" for i in range(250))

    outcome = orchestrator.import_upload("4220212.zip", build_zip({"4220212.csv": f"course_code,final_grade\n{body}\n".encode()}))

    assert recording_store.batch_sizes == [100, 100, 50]
    assert outcome.files[0].records_count == 250


def test_rejected_batch_does_not_stop_the_rest(recording_orchestrator, recording_store):
    recording_store.reject_batch_numbers = {2}
    body = "\n".join(f"CS{i},70" for i in range(250))
    archive = build_zip({"4220212.csv": f"course_code,final_grade\n{body}\n".encode()})

    outcome = recording_orchestrator.import_upload("batch.zip", archive)

    file_status = outcome.files[0]
    assert file_status.status == FileStatus.SUCCESS
    assert file_status.records_count == 150
    assert file_status.failed_rows == 100
    assert file_status.error == "Batch 2: value too long for column"
    assert outcome.job.status == JobStatus.COMPLETED_WITH_ERRORS
    assert recording_store.count_by_job(outcome.job.id) == 150


def test_prefer_filename_option_overrides_source_kind_default(orchestrator, store):
    content = b"student_id,course_code\n9999999,CS101\n"

    outcome = orchestrator.import_upload(
        "4220212.csv",
        content,
        ImportOptions(prefer_filename_student_id=True),
    )

    records, _ = store.list_records(import_job_id=outcome.job.id)
    assert records[0]["student_id"] == "4220212"


def test_single_file_prefers_the_column_by_default(orchestrator, store):
    outcome = orchestrator.import_upload("4220212.csv", b"student_id,course_code\n9999999,CS101\n")

    records, _ = store.list_records(import_job_id=outcome.job.id)
    assert records[0]["student_id"] == "9999999"


def test_cancellation_between_files_leaves_rest_pending(orchestrator):
    token = CancellationToken()
    updates = []

    def on_progress(update):
        updates.append(update)
        token.cancel()

    outcome = orchestrator.import_upload(
        "batch.zip",
        _three_file_archive(),
        cancel_token=token,
        progress_callback=on_progress,
    )

    assert outcome.cancelled is True
    assert outcome.job.status == JobStatus.CANCELLED
    assert outcome.job.files_processed == 1
    assert [item.status for item in outcome.files] == [
        FileStatus.SUCCESS,
        FileStatus.PENDING,
        FileStatus.PENDING,
    ]
    assert len(updates) == 1
    assert updates[0].message.startswith("Imported 1 of 3: 4220212.csv")
    pending = orchestrator.ledger.list_files(outcome.job.id, status=FileStatus.PENDING)
    assert [item.file_name for item in pending] == ["4220213.csv", "4220214.csv"]


def test_cancellation_after_last_file_is_not_observed(orchestrator):
    token = CancellationToken()
    archive = build_zip({"4220212.csv": b"course_code\nCS101\n"})

    outcome = orchestrator.import_upload(
        "batch.zip", archive, cancel_token=token, progress_callback=lambda update: token.cancel()
    )

    assert outcome.job.status == JobStatus.COMPLETED


def test_progress_reports_every_file(orchestrator):
    updates = []

    orchestrator.import_upload("batch.zip", _three_file_archive(), progress_callback=updates.append)

    assert [update.files_processed for update in updates] == [1, 2, 3]
    assert updates[-1].percent == 100


def test_corrupt_archive_fails_the_job(orchestrator):
    with pytest.raises(ArchiveError) as exc_info:
        orchestrator.import_upload("batch.zip", b"not a zip")

    job = orchestrator.ledger.require_job(exc_info.value.job_id)
    assert job.status == JobStatus.FAILED
    assert "corrupted" in job.error_message
    assert orchestrator.ledger.list_files(job.id) == []


def test_unavailable_store_fails_the_job_before_any_file(engine):
    store = UnavailableStore(engine)
    orchestrator = ImportOrchestrator(store=store, ledger=ImportLedger(engine, store=store))

    with pytest.raises(RecordStoreUnavailableError) as exc_info:
        orchestrator.import_upload("batch.zip", _three_file_archive())

    job = orchestrator.ledger.require_job(exc_info.value.job_id)
    assert job.status == JobStatus.FAILED
    assert job.files_processed == 0
    assert all(item.status == FileStatus.PENDING for item in orchestrator.ledger.list_files(job.id))


def test_unsupported_upload_creates_no_job(orchestrator):
    with pytest.raises(ValueError):
        orchestrator.import_upload("grades.json", b"{}")

    jobs, total = orchestrator.ledger.list_jobs()
    assert total == 0


def test_retry_uses_stored_text_and_recomputes_the_job(recording_orchestrator, recording_store):
    recording_store.reject_students = {"4220214"}
    first = recording_orchestrator.import_upload("batch.zip", _three_file_archive())
    assert first.job.status == JobStatus.COMPLETED_WITH_ERRORS

    recording_store.reject_students = set()
    retry = recording_orchestrator.retry_failed(first.job.id)

    assert retry.newly_successful == 1
    assert [item.file_name for item in retry.files] == ["4220214.csv"]
    assert retry.files[0].status == FileStatus.SUCCESS
    assert retry.job.status == JobStatus.COMPLETED
    assert retry.job.successful_records == 5
    assert retry.job.failed_records == 0
    assert recording_store.count_by_job(first.job.id) == 5


def test_retry_with_supplied_contents(recording_orchestrator, recording_store):
    recording_store.reject_students = {"4220214"}
    first = recording_orchestrator.import_upload("batch.zip", _three_file_archive())
    recording_store.reject_students = set()

    retry = recording_orchestrator.retry_failed(
        first.job.id,
        [SourceFile(name="4220214.csv", text="course_code,final_grade\nCS200,99\n")],
    )

    assert retry.newly_successful == 1
    assert retry.job.successful_records == 4


def test_retry_without_failed_files_is_a_no_op(orchestrator):
    outcome = orchestrator.import_upload("grades.csv", b"student_id,course_code\n1234567,CS101\n")

    retry = orchestrator.retry_failed(outcome.job.id)

    assert retry.files == []
    assert retry.newly_successful == 0


def test_retry_refuses_rolled_back_jobs(recording_orchestrator, recording_store):
    recording_store.reject_students = {"4220214"}
    first = recording_orchestrator.import_upload("batch.zip", _three_file_archive())
    recording_orchestrator.rollback(first.job.id)

    with pytest.raises(JobStateError):
        recording_orchestrator.retry_failed(first.job.id)


def test_unreadable_archive_member_fails_only_that_file(orchestrator, store):
    archive = build_zip(
        {
            "4220212.csv": b"course_code,final_grade\nCS101,80\nCS102,90\n",
            "4220213.xlsx": b"this is not a workbook",
        }
    )

    outcome = orchestrator.import_upload("batch.zip", archive)

    assert outcome.job.status == JobStatus.COMPLETED_WITH_ERRORS
    assert [item.status for item in outcome.files] == [FileStatus.SUCCESS, FileStatus.FAILED]
    assert "Could not read Excel file" in outcome.files[1].error
    assert outcome.job.files_processed == 2
    assert store.count_by_job(outcome.job.id) == 2

    stored = orchestrator.ledger.list_files(outcome.job.id)
    assert stored[1].status == FileStatus.FAILED
    assert stored[1].error == outcome.files[1].error


def test_unexpected_error_mid_job_marks_the_job_failed(engine, store):
    ledger = BrokenProgressLedger(engine, store=store)
    orchestrator = ImportOrchestrator(store=store, ledger=ledger, config=ImportConfig())
    job = orchestrator.start_job("batch.zip")

    with pytest.raises(RuntimeError):
        orchestrator.import_upload("batch.zip", _three_file_archive(), job=job)

    stored = ledger.require_job(job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.completed_at is not None
    assert "ledger write lost" in stored.error_message


def test_file_without_student_id_is_skipped(orchestrator, store):
    outcome = orchestrator.import_upload("grades.csv", b"course_code,final_grade\nCS101,80\n")

    assert outcome.files[0].status == FileStatus.SKIPPED
    assert outcome.files[0].error == SKIP_NO_STUDENT_ID
    assert outcome.job.status == JobStatus.COMPLETED
    assert store.count_by_job(outcome.job.id) == 0


def test_default_batch_size_matches_ingest():
    assert ImportConfig().batch_size == DEFAULT_BATCH_SIZE
