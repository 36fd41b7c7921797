"""Grading health diagnosis for one stored session.

Reports which grading stages have finished, whether the result was stored in
full or downgraded into the analytics blob, and what to do about anything
that looks stuck.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional

from .errors import TranscriptNotFoundError
from .grader import LABEL_ERROR, STATUS_PARTIAL
from .orchestrator import load_transcript
from .transcript import parse_timestamp

LOGGER = logging.getLogger(__name__)

HEALTHY = "healthy"
WARNING = "warning"
ERROR = "error"

_SEVERITY = {HEALTHY: 0, WARNING: 1, ERROR: 2}

# Ungraded this long after the session ended counts as stuck.
STALE_GRADING_AFTER = timedelta(minutes=5)


@dataclass
class Diagnosis:
    status: str = HEALTHY
    issues: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)

    def flag(self, level: str, issue: str, recommendation: Optional[str] = None) -> None:
        self.issues.append(issue)
        if recommendation and recommendation not in self.recommendations:
            self.recommendations.append(recommendation)
        if _SEVERITY[level] > _SEVERITY[self.status]:
            self.status = level


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def diagnose_session(
    record: Mapping[str, Any],
    progress: Mapping[str, Any],
    *,
    now: Optional[datetime] = None,
    stale_after: timedelta = STALE_GRADING_AFTER,
) -> Dict[str, Any]:
    """Diagnose grading for ``record`` given its line-rating ``progress``."""
    now = now or datetime.now(timezone.utc)
    analytics = record.get("analytics") if isinstance(record.get("analytics"), Mapping) else {}
    stored_scores = analytics.get("scores") if isinstance(analytics.get("scores"), Mapping) else {}

    try:
        load_transcript(record)
        has_transcript = True
    except TranscriptNotFoundError:
        has_transcript = False

    started_at = parse_timestamp(record.get("started_at"))
    ended_at = parse_timestamp(record.get("ended_at"))
    graded_at = parse_timestamp(record.get("graded_at")) or parse_timestamp(analytics.get("graded_at"))
    graded = graded_at is not None
    downgraded = graded and record.get("graded_at") is None
    overall = record.get("overall_score")
    if overall is None:
        overall = stored_scores.get("overall")
    has_scores = overall is not None
    has_speech_metrics = bool(record.get("speech_metrics") or analytics.get("speech_metrics"))
    parse_status = analytics.get("parse_status")

    total_batches = int(progress.get("total_batches") or 0)
    completed_batches = int(progress.get("completed_batches") or 0)
    rating_errors = sum(
        1
        for rating in progress.get("ratings") or []
        if isinstance(rating, Mapping) and rating.get("label") == LABEL_ERROR
    )

    diagnosis = Diagnosis()
    if ended_at is None:
        diagnosis.flag(ERROR, "Session never ended (ended_at is not set)", "Finalize the session before grading it")
    if not has_transcript:
        diagnosis.flag(ERROR, "No transcript available", "Check that the session stored its conversation")
    if not graded:
        diagnosis.flag(WARNING, "Rubric grading has not completed", "POST /api/v1/grade/session to grade the session")
    else:
        if parse_status == STATUS_PARTIAL:
            diagnosis.flag(
                WARNING,
                "Rubric response was only partially recovered",
                "Regrade the session for a complete rubric",
            )
        if not has_scores:
            diagnosis.flag(WARNING, "Grading recorded but no overall score found", "Regrade the session")
        if downgraded:
            diagnosis.flag(
                WARNING,
                "Grading stored in analytics only; the session table lacks grading columns",
                "Add the grading columns to training_sessions",
            )
    if total_batches and completed_batches < total_batches:
        diagnosis.flag(
            WARNING,
            f"Line ratings incomplete ({completed_batches}/{total_batches} batches)",
            "POST /api/v1/grade/line-ratings to rerun the missing batches",
        )
    if rating_errors:
        diagnosis.flag(
            WARNING,
            f"{rating_errors} line rating(s) failed",
            "POST /api/v1/grade/line-ratings to rerun the missing batches",
        )

    minutes_since_ended = None
    if ended_at is not None:
        elapsed = now - ended_at
        minutes_since_ended = int(elapsed.total_seconds() // 60)
        if not graded and elapsed > stale_after:
            diagnosis.flag(
                ERROR,
                f"Session ended {minutes_since_ended} minutes ago but grading is not complete",
                "Grading appears stuck; check the server logs or regrade",
            )

    if diagnosis.status != HEALTHY:
        LOGGER.info(
            "Grading health for session %s is %s: %s",
            record.get("id"),
            diagnosis.status,
            "; ".join(diagnosis.issues),
        )
    return {
        "session_id": str(record.get("id")),
        "status": diagnosis.status,
        "issues": diagnosis.issues,
        "recommendations": diagnosis.recommendations,
        "has_transcript": has_transcript,
        "has_ended_at": ended_at is not None,
        "has_scores": has_scores,
        "has_speech_metrics": has_speech_metrics,
        "graded": graded,
        "downgraded": downgraded,
        "parse_status": parse_status,
        "overall_score": overall,
        "line_ratings": {
            "total_batches": total_batches,
            "completed_batches": completed_batches,
            "complete": bool(progress.get("complete")),
            "errors": rating_errors,
        },
        "started_at": _iso(started_at),
        "ended_at": _iso(ended_at),
        "graded_at": _iso(graded_at),
        "minutes_since_ended": minutes_since_ended,
    }
