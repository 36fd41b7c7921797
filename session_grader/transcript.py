"""Transcript model shared by every grading component.

Upstream producers label speakers inconsistently (``user``/``agent``/``ai``)
and sometimes omit timestamps. Everything downstream sees only the two
canonical roles and an absolute timestamp per turn.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, List, Mapping, Optional, Sequence

LOGGER = logging.getLogger(__name__)

REP = "rep"
HOMEOWNER = "homeowner"

_REP_LABELS = frozenset({"rep", "user", "sales_rep", "salesrep", "salesperson", "sales rep"})
_HOMEOWNER_LABELS = frozenset({"homeowner", "agent", "ai", "assistant", "customer", "prospect"})

# Spacing used when a turn carries no timestamp of its own.
SYNTHETIC_TURN_SPACING = timedelta(seconds=1)

_CLOCK_PATTERN = re.compile(r"^(?:(\d+):)?(\d{1,2}):(\d{2})(?:\.(\d+))?$")
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def normalize_speaker(label: Any) -> str:
    """Map an upstream speaker label onto ``rep`` or ``homeowner``."""
    candidate = str(label or "").strip().lower()
    if candidate in _REP_LABELS:
        return REP
    if candidate in _HOMEOWNER_LABELS:
        return HOMEOWNER
    if candidate:
        LOGGER.debug("Unknown speaker label %r treated as homeowner", candidate)
    return HOMEOWNER


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Return ``value`` as an aware UTC datetime (naive values are assumed UTC)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def shift(base: datetime, seconds: Any) -> Optional[datetime]:
    """Return ``base`` moved by ``seconds``, or None when that instant is not representable."""
    try:
        offset = float(seconds)
        if not math.isfinite(offset):
            return None
        return base + timedelta(seconds=offset)
    except (OverflowError, TypeError, ValueError):
        return None


def parse_timestamp(value: Any, *, base: Optional[datetime] = None) -> Optional[datetime]:
    """Parse an upstream timestamp into an aware datetime.

    Accepts datetimes, ISO 8601 strings, epoch seconds or milliseconds, and
    clock offsets such as ``"1:05"`` (resolved against ``base``). Non-finite
    or out-of-range numbers parse to None.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            seconds = float(value)
        except OverflowError:
            return None
        if seconds > 1e11:
            seconds /= 1000.0
        return shift(_EPOCH, seconds)
    text = str(value).strip()
    match = _CLOCK_PATTERN.match(text)
    if match:
        if base is None:
            return None
        hours, minutes, secs, fraction = match.groups()
        try:
            offset = timedelta(
                hours=int(hours or 0),
                minutes=int(minutes),
                seconds=int(secs) + float(f"0.{fraction}" if fraction else 0),
            )
            return as_utc(base) + offset
        except OverflowError:
            LOGGER.debug("Clock offset %r out of range", value)
            return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return as_utc(datetime.fromisoformat(text))
    except ValueError:
        LOGGER.debug("Unparseable transcript timestamp %r", value)
        return None


@dataclass(frozen=True)
class Turn:
    """One utterance by one speaker.

    Attributes:
        index: Position in the full transcript (canonical order).
        speaker: ``rep`` or ``homeowner``.
        text: Utterance text, possibly empty.
        timestamp: Absolute start instant, synthesized when the source had none.
        synthetic_timestamp: True when ``timestamp`` was synthesized.
    """

    index: int
    speaker: str
    text: str
    timestamp: datetime
    synthetic_timestamp: bool = False

    @property
    def is_rep(self) -> bool:
        return self.speaker == REP

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "speaker": self.speaker,
            "text": self.text,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class Transcript:
    """Ordered, append-only sequence of turns."""

    turns: Sequence[Turn] = field(default_factory=tuple)

    @classmethod
    def from_entries(
        cls,
        entries: Optional[Iterable[Mapping[str, Any]]],
        *,
        started_at: Optional[datetime] = None,
    ) -> "Transcript":
        """Build a transcript from raw ``{speaker, text|message, timestamp}`` entries."""
        base = as_utc(started_at) or _EPOCH
        turns: List[Turn] = []
        previous: Optional[datetime] = None
        for position, entry in enumerate(entries or []):
            if not isinstance(entry, Mapping):
                continue
            speaker = normalize_speaker(entry.get("speaker") or entry.get("role"))
            raw_text = entry.get("text")
            if raw_text is None:
                raw_text = entry.get("message") or entry.get("content") or ""
            stamp = parse_timestamp(
                entry.get("timestamp", entry.get("time")),
                base=base,
            )
            offset = entry.get("time_in_call_secs")
            if stamp is None and isinstance(offset, (int, float)) and not isinstance(offset, bool):
                stamp = shift(base, offset)
            synthetic = stamp is None
            if stamp is None:
                if previous is not None:
                    stamp = shift(previous, SYNTHETIC_TURN_SPACING.total_seconds()) or previous
                else:
                    stamp = shift(base, SYNTHETIC_TURN_SPACING.total_seconds() * position) or base
            turns.append(
                Turn(
                    index=len(turns),
                    speaker=speaker,
                    text=str(raw_text),
                    timestamp=stamp,
                    synthetic_timestamp=synthetic,
                )
            )
            previous = stamp
        return cls(turns=tuple(turns))

    def __len__(self) -> int:
        return len(self.turns)

    def __iter__(self):
        return iter(self.turns)

    def __bool__(self) -> bool:
        return bool(self.turns)

    def rep_turns(self) -> List[Turn]:
        return [turn for turn in self.turns if turn.is_rep]

    def homeowner_turns(self) -> List[Turn]:
        return [turn for turn in self.turns if not turn.is_rep]

    def duration_seconds(self) -> float:
        """Seconds between the first and the last turn (0 for fewer than two turns)."""
        if len(self.turns) < 2:
            return 0.0
        delta = self.turns[-1].timestamp - self.turns[0].timestamp
        return max(0.0, delta.total_seconds())

    def offset_seconds(self, turn: Turn) -> float:
        """Seconds from the first turn to ``turn``."""
        if not self.turns:
            return 0.0
        return max(0.0, (turn.timestamp - self.turns[0].timestamp).total_seconds())
