"""Tests for the grading health diagnosis."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

from session_grader.diagnostics import ERROR, HEALTHY, WARNING, diagnose_session
from session_grader.grader import RubricGrader
from session_grader.orchestrator import GradingOrchestrator

ENDED = datetime(2024, 3, 1, 18, 5, tzinfo=timezone.utc)

RUBRIC_JSON = json.dumps(
    {
        "scores": {"rapport": 80, "discovery": 70, "objection_handling": 60, "closing": 50, "safety": 90, "overall": 75},
        "session_summary": "Solid opener, soft close.",
        "feedback": {"strengths": ["Friendly"], "improvements": [], "specific_tips": []},
    }
)

NO_PROGRESS = {"ratings": [], "completed_batches": 0, "total_batches": 0, "complete": False}


def _grade(storage, session_id: str) -> None:
    llm = MagicMock()
    llm.complete.return_value = RUBRIC_JSON
    GradingOrchestrator(storage, RubricGrader(llm)).grade_session(session_id)


class TestDiagnoseStoredSessions:
    def test_graded_session_is_healthy(self, storage, seed_session) -> None:
        """A fully graded session with no line ratings requested reports no issues."""
        seed_session()
        _grade(storage, "session-1")

        result = diagnose_session(
            storage.load_session("session-1"),
            storage.get_line_ratings("session-1"),
            now=ENDED + timedelta(minutes=30),
        )

        assert result["status"] == HEALTHY
        assert result["issues"] == []
        assert result["graded"] is True
        assert result["downgraded"] is False
        assert result["has_scores"] is True
        assert result["overall_score"] == 75
        assert result["has_speech_metrics"] is True
        assert result["parse_status"] == "ok"
        assert result["minutes_since_ended"] == 30

    def test_stale_ungraded_session_is_an_error(self, storage, seed_session) -> None:
        """Grading still missing well after the session ended looks stuck."""
        seed_session()

        result = diagnose_session(
            storage.load_session("session-1"),
            storage.get_line_ratings("session-1"),
            now=ENDED + timedelta(minutes=12),
        )

        assert result["status"] == ERROR
        assert result["graded"] is False
        assert "Session ended 12 minutes ago but grading is not complete" in result["issues"]

    def test_recently_ended_ungraded_session_is_a_warning(self, storage, seed_session) -> None:
        """Within the grace period a missing grade is only a warning."""
        seed_session()

        result = diagnose_session(
            storage.load_session("session-1"), NO_PROGRESS, now=ENDED + timedelta(minutes=2)
        )

        assert result["status"] == WARNING
        assert result["minutes_since_ended"] == 2

    def test_downgraded_grading_on_legacy_table(self, legacy_storage) -> None:
        """Scores kept only in analytics are reported as a downgrade."""
        _grade(legacy_storage, "legacy-1")

        result = diagnose_session(legacy_storage.load_session("legacy-1"), legacy_storage.get_line_ratings("legacy-1"))

        assert result["graded"] is True
        assert result["downgraded"] is True
        assert result["has_scores"] is True
        assert result["has_ended_at"] is False
        assert result["status"] == ERROR
        assert any("analytics only" in issue for issue in result["issues"])

    def test_incomplete_and_failed_line_ratings(self, storage, seed_session) -> None:
        """Unfinished batches and error labels are both surfaced."""
        seed_session()
        _grade(storage, "session-1")
        storage.merge_line_ratings(
            "session-1", {0: {"turn_index": 0, "label": "error"}}, batch_index=0, total_batches=2
        )

        result = diagnose_session(
            storage.load_session("session-1"),
            storage.get_line_ratings("session-1"),
            now=ENDED + timedelta(minutes=1),
        )

        assert result["status"] == WARNING
        assert result["line_ratings"] == {"total_batches": 2, "completed_batches": 1, "complete": False, "errors": 1}
        assert "Line ratings incomplete (1/2 batches)" in result["issues"]
        assert "1 line rating(s) failed" in result["issues"]


class TestDiagnoseRecords:
    def test_missing_transcript_and_end(self) -> None:
        """A session that never ended and has no transcript is an error."""
        record = {"id": "s1", "full_transcript": None, "ended_at": None, "analytics": {}}

        result = diagnose_session(record, NO_PROGRESS)

        assert result["status"] == ERROR
        assert result["has_transcript"] is False
        assert result["minutes_since_ended"] is None
        assert "No transcript available" in result["issues"]
        assert "Session never ended (ended_at is not set)" in result["issues"]

    def test_partial_rubric_is_flagged(self) -> None:
        """A partially recovered rubric is healthy enough to read but worth regrading."""
        record = {
            "id": "s1",
            "full_transcript": [{"speaker": "rep", "text": "Hello"}],
            "ended_at": ENDED,
            "graded_at": ENDED,
            "overall_score": None,
            "analytics": {"parse_status": "partial", "scores": {}},
        }

        result = diagnose_session(record, NO_PROGRESS, now=ENDED)

        assert result["status"] == WARNING
        assert result["has_scores"] is False
        assert "Rubric response was only partially recovered" in result["issues"]
        assert "Regrade the session for a complete rubric" in result["recommendations"]
