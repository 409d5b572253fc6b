"""Build history storage.

The history is a small relational store (SQLite by default) written to
from orchestrator worker threads, one short transaction per finished
job, and read back by the ``builds`` CLI commands.
"""

from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.engine import make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from pkgbake.config import get_settings

# Milliseconds a writer waits on a locked SQLite database
SQLITE_BUSY_TIMEOUT_MS = 5000


class Base(DeclarativeBase):
    """Declarative base for history tables."""


def _sqlite_file(db_url: str) -> Path | None:
    url = make_url(db_url)
    if url.get_backend_name() != "sqlite":
        return None
    if not url.database or url.database == ":memory:":
        return None
    return Path(url.database)


def _configure_sqlite(dbapi_connection: Any, connection_record: Any) -> None:
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
    finally:
        cursor.close()


def get_engine(db_url: str | None = None) -> Engine:
    """Create an engine for the build history database.

    File-backed SQLite databases get their parent directory created and
    are switched to WAL mode so concurrent job recorders do not fail on
    a locked database.

    Args:
        db_url: Database URL. Defaults to ``Settings.db_url``.

    Returns:
        SQLAlchemy Engine instance.
    """
    if db_url is None:
        db_url = get_settings().db_url

    connect_args: dict[str, Any] = {}
    sqlite_file = _sqlite_file(db_url)
    if make_url(db_url).get_backend_name() == "sqlite":
        connect_args["check_same_thread"] = False
    if sqlite_file is not None:
        sqlite_file.parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(db_url, connect_args=connect_args, echo=False)
    if sqlite_file is not None:
        event.listen(engine, "connect", _configure_sqlite)
    return engine


def get_session_factory(engine: Engine | None = None) -> sessionmaker[Session]:
    """Create a session factory bound to the history engine."""
    if engine is None:
        engine = get_engine()
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@contextmanager
def get_session(
    session_factory: sessionmaker[Session] | None = None,
) -> Generator[Session, None, None]:
    """Yield a session that commits on success and rolls back on error."""
    if session_factory is None:
        session_factory = get_session_factory()

    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables(engine: Engine | None = None) -> None:
    """Create the history tables if they do not exist yet."""
    # Registers BuildRecord with Base.metadata
    from pkgbake.builds import models  # noqa: F401

    if engine is None:
        engine = get_engine()
    Base.metadata.create_all(bind=engine)


def open_history(db_url: str | None = None) -> sessionmaker[Session]:
    """Open the history database, creating its tables on first use.

    Args:
        db_url: Database URL. Defaults to ``Settings.db_url``.

    Returns:
        Session factory for the history database.
    """
    engine = get_engine(db_url)
    create_all_tables(engine)
    return get_session_factory(engine)


__all__ = [
    "Base",
    "SQLITE_BUSY_TIMEOUT_MS",
    "create_all_tables",
    "get_engine",
    "get_session",
    "get_session_factory",
    "open_history",
]
