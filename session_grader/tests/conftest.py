"""Shared fixtures: an in-memory database and seeded training sessions."""

from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from typing import Any, Callable, Dict

import pytest

# Keep the module-level engine off the real data directory during tests.
os.environ.setdefault("GRADER_SQLITE_PATH", ":memory:")

from sqlalchemy import create_engine, text  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from session_grader.retry import NO_RETRY  # noqa: E402
from session_grader.storage import SessionStorage  # noqa: E402

SESSION_START = datetime(2024, 3, 1, 18, 0, tzinfo=timezone.utc)

SAMPLE_TRANSCRIPT = [
    {"speaker": "user", "text": "Hi, I'm Sam with Apex Pest. How are you today?", "timestamp": "2024-03-01T18:00:00Z"},
    {"speaker": "agent", "text": "Fine. What's this about?", "timestamp": "2024-03-01T18:00:05Z"},
    {"speaker": "user", "text": "We're treating a few homes on your street this week.", "timestamp": "2024-03-01T18:00:10Z"},
    {"speaker": "agent", "text": "How much is it?", "timestamp": "2024-03-01T18:00:20Z"},
    {"speaker": "user", "text": "Would you like to get started Tuesday?", "timestamp": "2024-03-01T18:00:30Z"},
]


@pytest.fixture
def engine():
    """Single-connection in-memory SQLite shared across threads."""
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    yield eng
    eng.dispose()


@pytest.fixture
def storage(engine) -> SessionStorage:
    return SessionStorage(engine, policy=NO_RETRY)


@pytest.fixture
def seed_session(storage) -> Callable[..., Dict[str, Any]]:
    """Insert a training session with sensible defaults and return its row."""

    def _seed(session_id: str = "session-1", **overrides: Any) -> Dict[str, Any]:
        values: Dict[str, Any] = {
            "id": session_id,
            "user_id": "user-1",
            "agent_id": "agent-1",
            "started_at": SESSION_START,
            "ended_at": datetime(2024, 3, 1, 18, 5, tzinfo=timezone.utc),
            "duration_seconds": 300.0,
            "full_transcript": list(SAMPLE_TRANSCRIPT),
            "analytics": {},
        }
        values.update(overrides)
        return storage.create_session(values)

    return _seed


@pytest.fixture
def legacy_storage():
    """Storage over a host table that predates the grading columns."""
    eng = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    with eng.begin() as conn:
        conn.execute(
            text(
                "CREATE TABLE training_sessions ("
                "id VARCHAR(64) PRIMARY KEY, user_id VARCHAR(255), agent_id VARCHAR(255), "
                "started_at DATETIME, ended_at DATETIME, duration_seconds FLOAT, "
                "full_transcript JSON, analytics JSON)"
            )
        )
        conn.execute(
            text(
                "INSERT INTO training_sessions (id, agent_id, started_at, duration_seconds, full_transcript, analytics) "
                "VALUES (:id, :agent, :started, :duration, :transcript, :analytics)"
            ),
            {
                "id": "legacy-1",
                "agent": "agent-1",
                "started": "2024-03-01 18:00:00.000000",
                "duration": 60.0,
                "transcript": json.dumps([{"speaker": "user", "text": "Hello there"}]),
                "analytics": json.dumps({"kept": True}),
            },
        )
    yield SessionStorage(eng, policy=NO_RETRY)
    eng.dispose()
