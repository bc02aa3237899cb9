import os
import socket
from contextlib import closing

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.engine.url import make_url

from app.core.config import settings

_engine = None


def _report_connection_failure(exc: Exception) -> None:
    """Print high-signal diagnostics when the application cannot reach the record store."""
    print(f"Warning: Could not connect to database: {exc}")
    print("The application will start but imports will fail until the connection succeeds.")

    try:
        url = make_url(settings.database_url)
    except Exception as parse_error:  # pragma: no cover
        print(f"  Unable to parse DATABASE_URL ({parse_error}); skipping detailed diagnostics.")
        return

    masked_url = url._replace(password="***" if url.password else None)
    print("  Database connection settings:")
    print(f"    Dialect: {masked_url.get_backend_name()} (driver: {masked_url.get_driver_name() or 'default'})")
    print(f"    Host: {masked_url.host or 'localhost'}")
    print(f"    Port: {masked_url.port or '(default)'}")
    print(f"    Database: {masked_url.database}")
    print(f"    SKIP_DB_INIT: {os.getenv('SKIP_DB_INIT')!r}")

    if masked_url.get_backend_name() == "sqlite":
        return

    host = masked_url.host or "localhost"
    port = masked_url.port or 5432

    try:
        with closing(socket.create_connection((host, port), timeout=2)):
            print(f"    Socket check: ✅ Able to reach {host}:{port}")
    except OSError as socket_err:
        print(f"    Socket check: ❌ Unable to reach {host}:{port} ({socket_err})")


def _create_engine(database_url: str) -> Engine:
    if make_url(database_url).get_backend_name() == "sqlite":
        # Background import jobs share the engine across worker threads
        return create_engine(database_url, connect_args={"check_same_thread": False})
    return create_engine(database_url, pool_pre_ping=True)


def get_engine() -> Engine:
    """Process-wide engine; the connection is checked once when it is first built."""
    global _engine
    if _engine is None:
        _engine = _create_engine(settings.database_url)
        try:
            with _engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except Exception as e:
            # Keep the engine; the record store ping fails the first job instead.
            _report_connection_failure(e)
    return _engine


def is_postgres(engine: Engine) -> bool:
    return engine.dialect.name == "postgresql"


def serial_primary_key(engine: Engine) -> str:
    """Auto-increment primary key DDL for the engine's dialect."""
    if is_postgres(engine):
        return "BIGSERIAL PRIMARY KEY"
    return "INTEGER PRIMARY KEY AUTOINCREMENT"
