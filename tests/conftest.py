"""
Pytest configuration and fixtures for the academic records import tests.

Every test gets its own in-memory SQLite database so the record store and the
import ledger can be exercised without a Postgres server.
"""

import os

# Unit tests never bootstrap the configured database.
os.environ["SKIP_DB_INIT"] = "1"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from app.api import dependencies
from app.db.academic_records import AcademicRecordStore
from app.domain.imports.ledger import ImportLedger
from app.domain.imports.orchestrator import ImportConfig, ImportOrchestrator


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine):
    return AcademicRecordStore(engine)


@pytest.fixture
def ledger(engine, store):
    return ImportLedger(engine, store=store)


@pytest.fixture
def orchestrator(store, ledger):
    return ImportOrchestrator(store=store, ledger=ledger, config=ImportConfig())


@pytest.fixture
def client(store, ledger, orchestrator):
    from app.main import app

    app.dependency_overrides[dependencies.get_record_store] = lambda: store
    app.dependency_overrides[dependencies.get_import_ledger] = lambda: ledger
    app.dependency_overrides[dependencies.get_import_orchestrator] = lambda: orchestrator
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    dependencies.cancel_tokens.clear()
