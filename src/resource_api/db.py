"""Database wiring: declarative base, engine, per-request sessions and transactions."""

from __future__ import annotations

import logging
from collections.abc import Generator, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from sqlalchemy import MetaData, create_engine, event
from sqlalchemy.engine import URL, Engine, make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.types import DateTime, TypeDecorator
from starlette.exceptions import HTTPException
from starlette.requests import HTTPConnection

from resource_api.common.exceptions import ResourceError
from resource_api.common.validators import normalize_utc
from resource_api.settings import Settings, get_settings

logger = logging.getLogger(__name__)

NAMING_CONVENTION: dict[str, str] = {
    "ix": "%(table_name)s_%(column_0_name)s_idx",
    "uq": "%(table_name)s_%(column_0_name)s_key",
    "ck": "%(table_name)s_%(constraint_name)s_check",
    "fk": "%(table_name)s_%(column_0_name)s_fkey",
    "pk": "%(table_name)s_pkey",
}

metadata = MetaData(naming_convention=NAMING_CONVENTION)


class Base(DeclarativeBase):
    """Declarative base using the shared naming convention."""

    metadata = metadata


def utc_now() -> datetime:
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime that normalizes values to UTC."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Any):
        return normalize_utc(value) if isinstance(value, datetime) else value

    def process_result_value(self, value: Any, dialect: Any):
        return normalize_utc(value) if isinstance(value, datetime) else value


# --- Engine -----------------------------------------------------------------


def is_sqlite_memory_url(url: URL) -> bool:
    database = (url.database or "").strip()
    if not database or database == ":memory:":
        return True
    return database.startswith("file:") and dict(url.query or {}).get("mode") == "memory"


def ensure_sqlite_database_directory(url: URL) -> None:
    """Ensure a filesystem-backed SQLite database can be created."""

    database = (url.database or "").strip()
    if not database or database == ":memory:" or database.startswith("file:"):
        return
    path = Path(database)
    if not path.is_absolute():
        path = Path.cwd() / path
    path.parent.mkdir(parents=True, exist_ok=True)


def build_engine(settings: Settings) -> Engine:
    url = make_url(settings.database_url)
    engine_kwargs: dict[str, Any] = {"echo": settings.database_echo, "pool_pre_ping": True}

    sqlite = url.get_backend_name() == "sqlite"
    if sqlite:
        engine_kwargs["connect_args"] = {"check_same_thread": False}
        if is_sqlite_memory_url(url):
            engine_kwargs["poolclass"] = StaticPool
        else:
            ensure_sqlite_database_directory(url)

    engine = create_engine(url, **engine_kwargs)

    if sqlite:

        @event.listens_for(engine, "connect")
        def _set_sqlite_pragma(dbapi_connection, _connection_record) -> None:
            cursor = dbapi_connection.cursor()
            try:
                cursor.execute("PRAGMA foreign_keys=ON")
            finally:
                cursor.close()

    return engine


# --- App lifecycle ----------------------------------------------------------


def init_db(app: FastAPI, settings: Settings | None = None) -> None:
    settings = settings or get_settings()

    existing_engine = getattr(app.state, "db_engine", None)
    if existing_engine is not None:
        existing_engine.dispose()

    engine = build_engine(settings)
    if settings.database_create_all:
        Base.metadata.create_all(engine)

    app.state.db_engine = engine
    app.state.db_sessionmaker = sessionmaker(bind=engine, expire_on_commit=False)


def shutdown_db(app: FastAPI) -> None:
    engine = getattr(app.state, "db_engine", None)
    if engine is not None:
        engine.dispose()
    app.state.db_engine = None
    app.state.db_sessionmaker = None


def get_session_factory_from_app(app: FastAPI) -> sessionmaker[Session]:
    session_factory = getattr(app.state, "db_sessionmaker", None)
    if session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db(app, ...) at startup.")
    return session_factory


def get_session_factory(conn: HTTPConnection) -> sessionmaker[Session]:
    return get_session_factory_from_app(conn.app)


# --- Dependencies -----------------------------------------------------------


def _log_unexpected_db_exception(request: Request, exc: BaseException) -> None:
    if isinstance(exc, (HTTPException, RequestValidationError)):
        return
    if isinstance(exc, ResourceError) and exc.status_code < 500:
        return
    logger.warning(
        "db.session.rollback",
        extra={"path": str(request.url.path), "method": request.method},
        exc_info=exc,
    )


def get_session(request: Request) -> Generator[Session, None, None]:
    """One session per request; rolled back on error and always closed."""

    session = get_session_factory(request)()
    try:
        yield session
    except BaseException as exc:
        session.rollback()
        _log_unexpected_db_exception(request, exc)
        raise
    finally:
        session.close()


@contextmanager
def transaction(session: Session) -> Iterator[Session]:
    """Commit when the block succeeds, roll back on any exception."""

    try:
        yield session
        session.commit()
    except BaseException:
        session.rollback()
        raise


__all__ = [
    "Base",
    "NAMING_CONVENTION",
    "UTCDateTime",
    "build_engine",
    "get_session",
    "get_session_factory",
    "get_session_factory_from_app",
    "init_db",
    "metadata",
    "shutdown_db",
    "transaction",
    "utc_now",
]
