"""Grading entry point: load, measure, grade, persist (with downgrade)."""

from __future__ import annotations

import json
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from . import config
from .errors import (
    GradingTimeoutError,
    InvalidInputError,
    PersistenceError,
    SchemaMismatchError,
    TranscriptNotFoundError,
)
from .grader import RubricGrader, RubricPacket
from .speech_metrics import SpeechMetrics, compute_speech_metrics
from .storage import SessionStorage
from .transcript import Transcript, as_utc

LOGGER = logging.getLogger(__name__)

# Rubric category -> training_sessions column.
SCORE_COLUMNS = {
    "overall": "overall_score",
    "rapport": "rapport_score",
    "discovery": "discovery_score",
    "objection_handling": "objection_handling_score",
    "closing": "close_score",
    "safety": "safety_score",
}


@dataclass
class GradingOutcome:
    session_id: str
    packet: RubricPacket
    metrics: SpeechMetrics
    graded_at: datetime
    downgraded: bool = False
    persisted_fields: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "scores": dict(self.packet.scores),
            "summary": self.packet.summary,
            "feedback": self.packet.feedback,
            "parse_status": self.packet.parse_status,
            "line_ratings_source": self.packet.line_ratings_source,
            "line_ratings": [rating.to_dict() for rating in self.packet.line_ratings],
            "metrics": self.metrics.to_dict(),
            "graded_at": self.graded_at.isoformat(),
            "downgraded": self.downgraded,
        }


def load_transcript(record: Mapping[str, Any]) -> Transcript:
    """Build the session transcript, raising when there is nothing to grade."""
    session_id = str(record.get("id"))
    entries = record.get("full_transcript")
    if isinstance(entries, str):
        try:
            entries = json.loads(entries)
        except ValueError:
            entries = None
    if not isinstance(entries, list):
        raise TranscriptNotFoundError(session_id)
    transcript = Transcript.from_entries(entries, started_at=as_utc(record.get("started_at")))
    if not any(turn.text.strip() for turn in transcript):
        raise TranscriptNotFoundError(session_id)
    return transcript


def build_analytics(
    packet: RubricPacket,
    metrics: SpeechMetrics,
    graded_at: datetime,
) -> Dict[str, Any]:
    """Rubric keys to overlay onto the stored analytics blob."""
    analytics: Dict[str, Any] = {
        "scores": dict(packet.scores),
        "summary": packet.summary,
        "feedback": packet.feedback,
        "contextual_line_ratings": [rating.to_dict() for rating in packet.line_ratings],
        "line_ratings_source": packet.line_ratings_source,
        "speech_metrics": metrics.to_dict(),
        "parse_status": packet.parse_status,
        "graded_at": graded_at.isoformat(),
    }
    if packet.extras:
        analytics["rubric_extras"] = packet.extras
    return analytics


def build_score_columns(
    packet: RubricPacket,
    metrics: SpeechMetrics,
    graded_at: datetime,
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {}
    for category, column in SCORE_COLUMNS.items():
        value = packet.scores.get(category)
        if value is not None:
            payload[column] = value
    payload.update(
        {
            "summary": packet.summary,
            "feedback": packet.feedback,
            "contextual_line_ratings": [rating.to_dict() for rating in packet.line_ratings],
            "speech_metrics": metrics.to_dict(),
            "graded_at": graded_at,
        }
    )
    return payload


class GradingOrchestrator:
    """Drives one grading request end to end within an overall time budget."""

    def __init__(
        self,
        storage: SessionStorage,
        grader: RubricGrader,
        *,
        budget_seconds: Optional[float] = None,
    ) -> None:
        self.storage = storage
        self.grader = grader
        self.budget_seconds = budget_seconds or config.GRADING_BUDGET_SECONDS

    def _grade_within_budget(
        self,
        session_id: str,
        transcript: Transcript,
        metrics: SpeechMetrics,
        deadline: float,
    ) -> RubricPacket:
        # One worker per request: a call that overruns keeps only its own thread.
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"rubric-{session_id}")
        future = executor.submit(self.grader.grade, transcript, metrics, deadline=deadline)
        try:
            return future.result(timeout=max(0.0, deadline - time.monotonic()))
        except FuturesTimeoutError as exc:
            future.cancel()
            LOGGER.error("Grading session %s exceeded %gs budget", session_id, self.budget_seconds)
            raise GradingTimeoutError(session_id, self.budget_seconds) from exc
        finally:
            executor.shutdown(wait=False)

    def _persist(self, session_id: str, columns: Dict[str, Any], analytics: Dict[str, Any]) -> bool:
        """Write columns plus the analytics overlay, falling back to analytics only.

        Returns True when downgraded.
        """
        try:
            self.storage.merge_session_analytics(session_id, analytics, fields=columns)
            return False
        except SchemaMismatchError as exc:
            LOGGER.warning(
                "Full grading payload rejected for session %s (missing %s); retrying with analytics only",
                session_id,
                ", ".join(exc.missing_columns),
            )
        try:
            self.storage.merge_session_analytics(session_id, analytics)
        except PersistenceError as exc:
            LOGGER.error("Reduced grading payload also failed for session %s: %s", session_id, exc)
            raise PersistenceError(f"Could not persist grading for session {session_id}: {exc}") from exc
        return True

    def grade_session(self, session_id: str) -> GradingOutcome:
        if not session_id or not str(session_id).strip():
            raise InvalidInputError("session_id is required")
        deadline = time.monotonic() + self.budget_seconds

        record = self.storage.load_session(session_id)
        transcript = load_transcript(record)
        duration = record.get("duration_seconds") or transcript.duration_seconds()
        metrics = compute_speech_metrics(transcript, duration)

        packet = self._grade_within_budget(session_id, transcript, metrics, deadline)
        if time.monotonic() > deadline:
            raise GradingTimeoutError(session_id, self.budget_seconds)

        graded_at = datetime.now(timezone.utc)
        columns = build_score_columns(packet, metrics, graded_at)
        downgraded = self._persist(session_id, columns, build_analytics(packet, metrics, graded_at))

        LOGGER.info(
            "Graded session %s overall=%s parse_status=%s line_ratings=%s downgraded=%s",
            session_id,
            packet.overall,
            packet.parse_status,
            packet.line_ratings_source,
            downgraded,
        )
        return GradingOutcome(
            session_id=session_id,
            packet=packet,
            metrics=metrics,
            graded_at=graded_at,
            downgraded=downgraded,
            persisted_fields=["analytics"] if downgraded else sorted([*columns, "analytics"]),
        )
