"""Database configuration and session management."""
from __future__ import annotations

from collections.abc import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from payledger.config import get_settings
from payledger.models.base import Base

engine: Engine | None = None
SessionLocal: sessionmaker[Session] | None = None

DB_POOL_TIMEOUT_SECONDS = 10


def _engine_kwargs(database_url: str) -> dict[str, object]:
    if database_url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False, "timeout": DB_POOL_TIMEOUT_SECONDS}}
    return {"pool_pre_ping": True, "pool_timeout": DB_POOL_TIMEOUT_SECONDS}


def _enable_sqlite_savepoints(sqlite_engine: Engine) -> None:
    """Let SQLAlchemy drive BEGIN so that SAVEPOINT works with pysqlite."""

    @event.listens_for(sqlite_engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, connection_record) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(sqlite_engine, "begin")
    def _emit_begin(conn) -> None:
        conn.exec_driver_sql("BEGIN")


def build_engine(database_url: str) -> Engine:
    """Create an engine for ``database_url`` with the service defaults applied."""

    new_engine = create_engine(database_url, future=True, echo=False, **_engine_kwargs(database_url))
    if database_url.startswith("sqlite"):
        _enable_sqlite_savepoints(new_engine)
    return new_engine


def init_engine() -> Engine:
    """Initialise the synchronous SQLAlchemy engine lazily."""

    global engine, SessionLocal
    if engine is None:
        settings = get_settings()
        engine = build_engine(settings.database_url)
        SessionLocal = sessionmaker(
            bind=engine,
            autoflush=False,
            autocommit=False,
            expire_on_commit=False,
            future=True,
        )
    return engine


def get_engine() -> Engine:
    """Return the active SQLAlchemy engine, creating it if necessary."""

    if engine is None:
        return init_engine()
    return engine


def get_sessionmaker() -> sessionmaker[Session]:
    """Return the configured session factory, initialising the engine on demand."""

    if SessionLocal is None:
        init_engine()
    assert SessionLocal is not None  # for type-checkers
    return SessionLocal


@event.listens_for(Engine, "connect")
def _set_sqlite_pragma(dbapi_connection, connection_record) -> None:  # pragma: no cover - driver specific
    """Ensure SQLite enforces foreign key constraints."""

    module = type(dbapi_connection).__module__
    if not module.startswith("sqlite3"):
        return
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_all() -> None:
    """Create all database tables using the shared declarative metadata."""

    Base.metadata.create_all(bind=get_engine())


def close_engine() -> None:
    """Dispose of the SQLAlchemy engine and reset the session factory."""

    global engine, SessionLocal
    if engine is not None:
        engine.dispose()
        engine = None
        SessionLocal = None


def get_db() -> Generator[Session, None, None]:
    """Provide a database session for FastAPI dependencies."""

    session = get_sessionmaker()()
    try:
        yield session
    finally:
        session.close()


__all__ = [
    "Base",
    "SessionLocal",
    "engine",
    "build_engine",
    "create_all",
    "get_db",
    "get_engine",
    "get_sessionmaker",
    "init_engine",
    "close_engine",
]
