"""Match externally delivered conversation records to internal sessions.

The voice provider only knows its agent id and roughly when the call
happened. A record matches a session of the same agent when its start (or,
as a weaker fallback, its end) falls inside the session's padded window.
No match is a valid outcome, reported as ``matched=False``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from .transcript import as_utc, parse_timestamp, shift

LOGGER = logging.getLogger(__name__)

# Padding applied on both sides of a session's observed start/end.
CORRELATION_WINDOW = timedelta(minutes=5)

HIGH_CONFIDENCE_DELTA = timedelta(minutes=1)
MEDIUM_CONFIDENCE_DELTA = timedelta(minutes=3)

CONFIDENCE_HIGH = "high"
CONFIDENCE_MEDIUM = "medium"
CONFIDENCE_LOW = "low"


@dataclass(frozen=True)
class ConversationRecord:
    conversation_id: str
    agent_id: str
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ConversationRecord":
        """Build a record from a webhook payload.

        Start is ``metadata.started_at`` (or ``start_time_unix_secs``) falling
        back to ``created_at``; end is ``metadata.ended_at`` falling back to
        ``ended_at``, or start plus the reported call duration.
        """
        metadata = payload.get("metadata") if isinstance(payload.get("metadata"), Mapping) else {}
        started = (
            parse_timestamp(metadata.get("started_at"))
            or parse_timestamp(metadata.get("start_time_unix_secs"))
            or parse_timestamp(payload.get("created_at"))
        )
        ended = parse_timestamp(metadata.get("ended_at")) or parse_timestamp(payload.get("ended_at"))
        duration = metadata.get("call_duration_secs", metadata.get("duration_seconds"))
        if ended is None and started is not None and isinstance(duration, (int, float)) and duration > 0:
            ended = shift(started, duration)
        return cls(
            conversation_id=str(payload.get("conversation_id") or ""),
            agent_id=str(payload.get("agent_id") or ""),
            started_at=started,
            ended_at=ended,
            metadata=dict(metadata),
        )


@dataclass(frozen=True)
class SessionCandidate:
    session_id: str
    started_at: Optional[datetime]
    ended_at: Optional[datetime] = None
    user_id: Optional[str] = None
    agent_id: Optional[str] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "SessionCandidate":
        return cls(
            session_id=str(row.get("id") or row.get("session_id")),
            started_at=as_utc(row.get("started_at")),
            ended_at=as_utc(row.get("ended_at")),
            user_id=row.get("user_id"),
            agent_id=row.get("agent_id"),
        )

    def window(self, width: timedelta = CORRELATION_WINDOW) -> Tuple[datetime, datetime]:
        if self.started_at is None:
            raise ValueError(f"Session {self.session_id} has no start time")
        anchor_end = self.ended_at if self.ended_at and self.ended_at > self.started_at else self.started_at
        return self.started_at - width, anchor_end + width


@dataclass(frozen=True)
class CorrelationResult:
    matched: bool
    session_id: Optional[str] = None
    user_id: Optional[str] = None
    confidence: Optional[str] = None
    matched_on: Optional[str] = None
    time_delta_seconds: Optional[float] = None

    @property
    def should_backlink(self) -> bool:
        """Only high and medium confidence matches drive side effects."""
        return self.matched and self.confidence in (CONFIDENCE_HIGH, CONFIDENCE_MEDIUM)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "matched": self.matched,
            "session_id": self.session_id,
            "user_id": self.user_id,
            "confidence": self.confidence,
            "matched_on": self.matched_on,
            "time_delta_seconds": self.time_delta_seconds,
        }


NO_MATCH = CorrelationResult(matched=False)


def confidence_for_start_delta(delta: timedelta) -> str:
    if delta < HIGH_CONFIDENCE_DELTA:
        return CONFIDENCE_HIGH
    if delta < MEDIUM_CONFIDENCE_DELTA:
        return CONFIDENCE_MEDIUM
    return CONFIDENCE_LOW


def _evaluate(
    record: ConversationRecord,
    candidate: SessionCandidate,
    width: timedelta,
) -> Optional[Tuple[str, timedelta, str]]:
    if candidate.started_at is None:
        return None
    lower, upper = candidate.window(width)
    start = as_utc(record.started_at)
    if start is not None and lower <= start <= upper:
        delta = abs(start - candidate.started_at)
        return "start", delta, confidence_for_start_delta(delta)
    end = as_utc(record.ended_at)
    if end is not None and lower <= end <= upper:
        reference = candidate.ended_at or candidate.started_at
        return "end", abs(end - reference), CONFIDENCE_LOW
    return None


def correlate(
    record: ConversationRecord,
    candidates: Iterable[SessionCandidate],
    *,
    window: timedelta = CORRELATION_WINDOW,
) -> CorrelationResult:
    """Pick at most one session for ``record``.

    Ties are broken deterministically: start matches beat end matches, then
    the smallest time delta, then the most recent session start, then the
    session id.
    """
    if record.started_at is None and record.ended_at is None:
        LOGGER.info("Conversation %s carries no timestamp; not correlating", record.conversation_id)
        return NO_MATCH

    scored: List[Tuple[Tuple[Any, ...], SessionCandidate, str, timedelta, str]] = []
    for candidate in candidates:
        if record.agent_id and candidate.agent_id and candidate.agent_id != record.agent_id:
            continue
        outcome = _evaluate(record, candidate, window)
        if outcome is None:
            continue
        matched_on, delta, confidence = outcome
        key = (
            0 if matched_on == "start" else 1,
            delta,
            -candidate.started_at.timestamp(),
            candidate.session_id,
        )
        scored.append((key, candidate, matched_on, delta, confidence))

    if not scored:
        LOGGER.info("No session matched conversation %s", record.conversation_id)
        return NO_MATCH

    scored.sort(key=lambda item: item[0])
    _, best, matched_on, delta, confidence = scored[0]
    if len(scored) > 1:
        LOGGER.info(
            "Conversation %s matched %d sessions; picked %s",
            record.conversation_id,
            len(scored),
            best.session_id,
        )
    return CorrelationResult(
        matched=True,
        session_id=best.session_id,
        user_id=best.user_id,
        confidence=confidence,
        matched_on=matched_on,
        time_delta_seconds=delta.total_seconds(),
    )
