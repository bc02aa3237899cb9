"""
Shared dependencies and state for the API.

The record store, ledger and orchestrator are process-wide singletons; tests
swap them through ``app.dependency_overrides``. Running jobs register their
cancellation token here so the cancel endpoint can reach them.
"""
import threading
from typing import Dict, Optional

from fastapi import HTTPException

from app.core.config import settings
from app.db.academic_records import AcademicRecordStore
from app.domain.imports.ledger import ImportLedger
from app.domain.imports.orchestrator import CancellationToken, ImportConfig, ImportOrchestrator
from app.domain.imports.processors.archive_processor import detect_source_kind
from app.domain.imports.models import SourceKind

_record_store: Optional[AcademicRecordStore] = None
_import_ledger: Optional[ImportLedger] = None
_orchestrator: Optional[ImportOrchestrator] = None

# Running jobs (in production with several workers, use a shared store)
cancel_tokens: Dict[str, CancellationToken] = {}
_cancel_tokens_lock = threading.Lock()


def get_record_store() -> AcademicRecordStore:
    global _record_store
    if _record_store is None:
        _record_store = AcademicRecordStore()
    return _record_store


def get_import_ledger() -> ImportLedger:
    global _import_ledger
    if _import_ledger is None:
        _import_ledger = ImportLedger(store=get_record_store())
    return _import_ledger


def get_import_orchestrator() -> ImportOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = ImportOrchestrator(
            store=get_record_store(),
            ledger=get_import_ledger(),
            config=ImportConfig.from_settings(settings),
        )
    return _orchestrator


def register_cancel_token(job_id: str) -> CancellationToken:
    token = CancellationToken()
    with _cancel_tokens_lock:
        cancel_tokens[job_id] = token
    return token


def release_cancel_token(job_id: str) -> None:
    with _cancel_tokens_lock:
        cancel_tokens.pop(job_id, None)


def get_cancel_token(job_id: str) -> Optional[CancellationToken]:
    with _cancel_tokens_lock:
        return cancel_tokens.get(job_id)


def detect_file_type(filename: str) -> SourceKind:
    """
    Detect the upload kind from its extension.

    Raises:
    - HTTPException: If file type is not supported
    """
    try:
        return detect_source_kind(filename)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
