"""Database engine and session management for the session grading service."""

from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from typing import Generator, Optional

from dotenv import load_dotenv
from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

# Load environment from .env if available so database configuration is discoverable.
load_dotenv()

LOGGER = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Base declarative class used by all ORM models."""


def _build_sqlite_url() -> str:
    """Construct the default SQLite connection string."""
    sqlite_path_env = os.getenv("GRADER_SQLITE_PATH", "data/session_grader.db")
    if sqlite_path_env == ":memory:":
        return "sqlite:///:memory:"

    project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
    sqlite_path = os.path.expanduser(sqlite_path_env)
    if not os.path.isabs(sqlite_path):
        sqlite_path = os.path.normpath(os.path.join(project_root, sqlite_path))

    directory = os.path.dirname(sqlite_path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    return f"sqlite:///{sqlite_path}"


def _build_database_url() -> str:
    """Use ``GRADER_DB_URL`` when set, otherwise a local SQLite file."""
    url = os.getenv("GRADER_DB_URL", "").strip()
    if url:
        return url
    return _build_sqlite_url()


def create_db_engine(url: str) -> Engine:
    kwargs = {"future": True, "pool_pre_ping": True}
    if url.startswith("sqlite"):
        # SQLite requires disabling same-thread checks for threaded workers.
        kwargs["connect_args"] = {"check_same_thread": False}
    return create_engine(url, **kwargs)


def make_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(
        bind=bind,
        expire_on_commit=False,
        autoflush=False,
        autocommit=False,
        future=True,
    )


DATABASE_URL = _build_database_url()
engine = create_db_engine(DATABASE_URL)
SessionLocal = make_session_factory(engine)


@contextmanager
def session_scope(factory: Optional[sessionmaker] = None) -> Generator[Session, None, None]:
    """Provide a transactional scope around a series of operations."""
    session = (factory or SessionLocal)()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# Columns added to service-owned tables after their first release.
_LATE_COLUMNS = {
    "voice_conversations": {
        "analysis": "JSON",
        "message_count": "INTEGER",
        "correlation_confidence": "VARCHAR(16)",
    },
    "phrase_cache": {
        "hit_count": "INTEGER NOT NULL DEFAULT 0",
    },
}


def _run_migrations(bind: Engine) -> None:
    """Add late-arriving columns to tables this service owns.

    ``training_sessions`` belongs to the host application and is never
    altered here; missing columns there surface as schema mismatches.
    """
    inspector = inspect(bind)
    for table, columns in _LATE_COLUMNS.items():
        if not inspector.has_table(table):
            continue
        existing = {column["name"] for column in inspector.get_columns(table)}
        with bind.begin() as conn:
            for name, ddl in columns.items():
                if name not in existing:
                    conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {name} {ddl}"))
                    LOGGER.info("Added %s column to %s table", name, table)


def init_database(bind: Optional[Engine] = None) -> None:
    """Ensure all ORM tables exist in the configured database."""
    # Import models within the function to avoid circular imports.
    from . import db_models  # noqa: F401  # pylint: disable=unused-import

    target = bind or engine
    if target.dialect.name == "sqlite" and target.url.database not in (None, "", ":memory:"):
        with target.begin() as conn:
            # WAL lets concurrent batch merges read while one writes.
            conn.execute(text("PRAGMA journal_mode=WAL"))
            conn.execute(text("PRAGMA synchronous=NORMAL"))

    Base.metadata.create_all(bind=target)
    _run_migrations(target)
