"""Tests for matching voice conversations to training sessions."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from session_grader.correlator import (
    CONFIDENCE_HIGH,
    CONFIDENCE_LOW,
    CONFIDENCE_MEDIUM,
    ConversationRecord,
    SessionCandidate,
    confidence_for_start_delta,
    correlate,
)

T0 = datetime(2024, 3, 1, 18, 0, tzinfo=timezone.utc)


def _record(start=None, end=None, agent="agent-1") -> ConversationRecord:
    return ConversationRecord(conversation_id="conv-1", agent_id=agent, started_at=start, ended_at=end)


def _candidate(session_id: str, start, end=None, agent="agent-1") -> SessionCandidate:
    return SessionCandidate(session_id=session_id, started_at=start, ended_at=end, user_id="user-" + session_id, agent_id=agent)


class TestConfidence:
    @pytest.mark.parametrize(
        "seconds, expected",
        [(0, CONFIDENCE_HIGH), (59, CONFIDENCE_HIGH), (60, CONFIDENCE_MEDIUM), (179, CONFIDENCE_MEDIUM), (180, CONFIDENCE_LOW)],
    )
    def test_start_delta_thresholds(self, seconds, expected) -> None:
        """Under a minute is high, under three minutes medium, otherwise low."""
        assert confidence_for_start_delta(timedelta(seconds=seconds)) == expected


class TestCorrelate:
    """Start matches beat end matches; ties resolve deterministically."""

    def test_close_start_is_high_confidence(self) -> None:
        """A record starting 30s after the session links with high confidence."""
        result = correlate(_record(T0 + timedelta(seconds=30)), [_candidate("s1", T0, T0 + timedelta(minutes=4))])

        assert result.matched is True
        assert result.session_id == "s1"
        assert result.user_id == "user-s1"
        assert result.confidence == CONFIDENCE_HIGH
        assert result.matched_on == "start"
        assert result.time_delta_seconds == 30.0
        assert result.should_backlink is True

    def test_low_confidence_does_not_backlink(self) -> None:
        """A start four minutes off still matches but is not linked."""
        result = correlate(_record(T0 + timedelta(minutes=4)), [_candidate("s1", T0)])

        assert result.matched is True
        assert result.confidence == CONFIDENCE_LOW
        assert result.should_backlink is False

    def test_end_only_match_is_low(self) -> None:
        """When only the end falls inside the window the match is low confidence."""
        record = _record(start=T0 - timedelta(minutes=30), end=T0 + timedelta(minutes=2))
        result = correlate(record, [_candidate("s1", T0, T0 + timedelta(minutes=3))])

        assert result.matched_on == "end"
        assert result.confidence == CONFIDENCE_LOW
        assert result.time_delta_seconds == 60.0

    def test_outside_window_is_no_match(self) -> None:
        """Records far from every session are a valid no-match."""
        result = correlate(_record(T0 + timedelta(minutes=20)), [_candidate("s1", T0, T0 + timedelta(minutes=2))])

        assert result.matched is False
        assert result.session_id is None

    def test_record_without_timestamps(self) -> None:
        """No start and no end means nothing to correlate."""
        assert correlate(_record(), [_candidate("s1", T0)]).matched is False

    def test_start_match_beats_closer_end_match(self) -> None:
        """A start match outranks an end match even with a larger delta."""
        record = _record(start=T0 + timedelta(minutes=2), end=T0 + timedelta(minutes=12))
        start_match = _candidate("start", T0)
        end_match = _candidate("end", T0 + timedelta(minutes=15), T0 + timedelta(minutes=12))

        result = correlate(record, [end_match, start_match])

        assert result.session_id == "start"
        assert result.matched_on == "start"

    def test_equal_delta_prefers_most_recent_session(self) -> None:
        """With equal deltas the later-starting session wins."""
        record = _record(T0)
        earlier = _candidate("earlier", T0 - timedelta(seconds=40))
        later = _candidate("later", T0 + timedelta(seconds=40))

        assert correlate(record, [earlier, later]).session_id == "later"
        assert correlate(record, [later, earlier]).session_id == "later"

    def test_full_tie_breaks_on_session_id(self) -> None:
        """Identical candidates resolve by id, independent of input order."""
        record = _record(T0)
        first = _candidate("a", T0)
        second = _candidate("b", T0)

        assert correlate(record, [second, first]).session_id == "a"

    def test_other_agents_and_unstarted_sessions_are_ignored(self) -> None:
        """Candidates for another agent or without a start never match."""
        record = _record(T0)
        result = correlate(record, [_candidate("other", T0, agent="agent-2"), _candidate("nostart", None)])

        assert result.matched is False

    def test_naive_candidate_times_are_utc(self) -> None:
        """Rows read back without tzinfo compare as UTC."""
        row = {"id": "s1", "started_at": datetime(2024, 3, 1, 18, 0), "agent_id": "agent-1"}
        result = correlate(_record(T0 + timedelta(seconds=10)), [SessionCandidate.from_row(row)])

        assert result.confidence == CONFIDENCE_HIGH


class TestWindow:
    def test_end_before_start_uses_start(self) -> None:
        """A bogus end does not shrink the window below the start."""
        candidate = _candidate("s1", T0, T0 - timedelta(minutes=1))
        assert candidate.window(timedelta(minutes=5)) == (T0 - timedelta(minutes=5), T0 + timedelta(minutes=5))

    @pytest.mark.parametrize(
        "start, matched",
        [
            (T0 - timedelta(minutes=5), True),
            (T0 - timedelta(minutes=5, seconds=1), False),
            (T0 + timedelta(minutes=7), True),
            (T0 + timedelta(minutes=7, seconds=1), False),
        ],
    )
    def test_window_edges_are_inclusive(self, start, matched) -> None:
        """Starts exactly W before the session start or W after its end still match."""
        candidate = _candidate("s1", T0, T0 + timedelta(minutes=2))

        result = correlate(_record(start), [candidate], window=timedelta(minutes=5))

        assert result.matched is matched

    @pytest.mark.parametrize(
        "end, matched",
        [(T0 - timedelta(minutes=5), True), (T0 + timedelta(minutes=7, seconds=1), False)],
    )
    def test_end_only_record_uses_the_same_edges(self, end, matched) -> None:
        """Records carrying only an end instant are held to the same window."""
        candidate = _candidate("s1", T0, T0 + timedelta(minutes=2))

        result = correlate(_record(end=end), [candidate], window=timedelta(minutes=5))

        assert result.matched is matched
        if matched:
            assert result.matched_on == "end"

    def test_window_requires_start(self) -> None:
        """A candidate without a start has no window."""
        with pytest.raises(ValueError):
            _candidate("s1", None).window()


class TestRecordFromPayload:
    def test_unix_start_and_duration(self) -> None:
        """Provider metadata yields start and derived end."""
        record = ConversationRecord.from_payload(
            {
                "conversation_id": "conv-9",
                "agent_id": "agent-1",
                "metadata": {"start_time_unix_secs": int(T0.timestamp()), "call_duration_secs": 120},
            }
        )

        assert record.started_at == T0
        assert record.ended_at == T0 + timedelta(minutes=2)

    def test_metadata_start_preferred_over_created_at(self) -> None:
        """metadata.started_at wins over the payload's created_at."""
        record = ConversationRecord.from_payload(
            {
                "conversation_id": "conv-9",
                "agent_id": "agent-1",
                "created_at": "2024-03-01T19:00:00Z",
                "metadata": {"started_at": "2024-03-01T18:00:00Z", "ended_at": "2024-03-01T18:04:00Z"},
            }
        )

        assert record.started_at == T0
        assert record.ended_at == T0 + timedelta(minutes=4)

    @pytest.mark.parametrize("duration", [float("inf"), float("nan"), 1e300])
    def test_unrepresentable_duration_leaves_end_unset(self, duration) -> None:
        """A duration that cannot be added to the start is ignored."""
        record = ConversationRecord.from_payload(
            {
                "conversation_id": "conv-9",
                "agent_id": "agent-1",
                "metadata": {"start_time_unix_secs": int(T0.timestamp()), "call_duration_secs": duration},
            }
        )

        assert record.started_at == T0
        assert record.ended_at is None

    def test_out_of_range_start_is_missing(self) -> None:
        """An epoch beyond the calendar does not crash record building."""
        record = ConversationRecord.from_payload(
            {"conversation_id": "conv-9", "agent_id": "agent-1", "metadata": {"start_time_unix_secs": 1e20}}
        )

        assert record.started_at is None
        assert record.ended_at is None
