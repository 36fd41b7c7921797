"""Tests for SessionStorage against an in-memory SQLite database."""

from __future__ import annotations

import gc
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import text

from session_grader.errors import SchemaMismatchError, SessionNotFoundError

from .conftest import SESSION_START


class TestSessionReadsAndWrites:
    def test_load_missing_session_raises(self, storage) -> None:
        """Unknown ids surface as SessionNotFoundError."""
        with pytest.raises(SessionNotFoundError):
            storage.load_session("nope")

    def test_update_is_partial(self, storage, seed_session) -> None:
        """Only the named columns change."""
        seed_session(analytics={"voice": {"duration": 12}})

        storage.update_session("session-1", {"overall_score": 81, "summary": "Good"})
        record = storage.load_session("session-1")

        assert record["overall_score"] == 81
        assert record["summary"] == "Good"
        assert record["analytics"] == {"voice": {"duration": 12}}
        assert record["full_transcript"][0]["speaker"] == "user"

    def test_unknown_column_is_a_schema_mismatch(self, storage, seed_session) -> None:
        """Fields that are not live columns are rejected before writing."""
        seed_session()

        with pytest.raises(SchemaMismatchError) as excinfo:
            storage.update_session("session-1", {"overall_score": 80, "bogus": 1})

        assert excinfo.value.missing_columns == ["bogus"]
        assert storage.load_session("session-1")["overall_score"] is None

    def test_update_missing_row_raises(self, storage) -> None:
        """Updating a session that does not exist is a not-found error."""
        with pytest.raises(SessionNotFoundError):
            storage.update_session("ghost", {"summary": "x"})

    def test_merge_session_analytics_preserves_keys(self, storage, seed_session) -> None:
        """Analytics merges overlay keys and keep the rest."""
        seed_session(analytics={"scores": {"overall": 70}})

        storage.merge_session_analytics("session-1", {"voice_metrics": {"duration": 60}})

        assert storage.load_session("session-1")["analytics"] == {
            "scores": {"overall": 70},
            "voice_metrics": {"duration": 60},
        }

    def test_merge_session_analytics_writes_columns_together(self, storage, seed_session) -> None:
        """Column fields land in the same write as the analytics overlay."""
        seed_session(analytics={"voice_metrics": {"duration": 60}})

        storage.merge_session_analytics("session-1", {"scores": {"overall": 74}}, fields={"overall_score": 74})
        record = storage.load_session("session-1")

        assert record["overall_score"] == 74
        assert record["analytics"] == {"voice_metrics": {"duration": 60}, "scores": {"overall": 74}}

    def test_concurrent_analytics_merges_keep_every_key(self, storage, seed_session) -> None:
        """Overlays from many threads never drop each other's keys."""
        seed_session()

        def _merge(index: int) -> None:
            storage.merge_session_analytics("session-1", {f"key_{index}": index})

        with ThreadPoolExecutor(max_workers=8) as executor:
            list(executor.map(_merge, range(24)))

        analytics = storage.load_session("session-1")["analytics"]
        assert analytics == {f"key_{index}": index for index in range(24)}

    def test_merge_locks_are_released(self, storage, seed_session) -> None:
        """Per-session locks do not accumulate once merges finish."""
        for index in range(5):
            seed_session(f"session-{index}")
            storage.merge_session_analytics(f"session-{index}", {"seen": True})
        gc.collect()

        assert len(storage._merge_locks) == 0  # pylint: disable=protected-access


class TestLineRatingMerge:
    """Batch merges union by turn index regardless of order."""

    def test_out_of_order_batches_union(self, storage, seed_session) -> None:
        """Completing batches in any order converges on the same result."""
        seed_session()

        first = storage.merge_line_ratings("session-1", {4: {"label": "good"}}, batch_index=1, total_batches=2)
        assert first["complete"] is False
        assert first["status"] == "processing"

        second = storage.merge_line_ratings(
            "session-1", {0: {"label": "poor"}, 2: {"label": "excellent"}}, batch_index=0, total_batches=2
        )

        assert second["complete"] is True
        assert second["status"] == "completed"
        assert second["completed_batch_indices"] == [0, 1]
        assert [rating["label"] for rating in second["ratings"]] == ["poor", "excellent", "good"]

    def test_rerun_batch_is_idempotent(self, storage, seed_session) -> None:
        """A duplicate batch rewrites its own keys without double counting."""
        seed_session()
        for _ in range(2):
            progress = storage.merge_line_ratings(
                "session-1", {0: {"label": "good"}}, batch_index=0, total_batches=3
            )

        assert progress["completed_batches"] == 1
        assert progress["rated_lines"] == 1
        assert storage.get_line_ratings("session-1")["total_batches"] == 3

    def test_merge_for_missing_session(self, storage) -> None:
        """Merging into an unknown session raises not-found."""
        with pytest.raises(SessionNotFoundError):
            storage.merge_line_ratings("ghost", {0: {"label": "good"}}, batch_index=0, total_batches=1)

    def test_concurrent_batches_for_one_session(self, storage, seed_session) -> None:
        """Batches merged from parallel threads all survive."""
        seed_session()
        total = 12

        def _merge(batch_index: int) -> None:
            ratings = {batch_index * 2: {"label": "good", "batch": batch_index}}
            storage.merge_line_ratings("session-1", ratings, batch_index=batch_index, total_batches=total)

        with ThreadPoolExecutor(max_workers=6) as executor:
            list(executor.map(_merge, range(total)))

        progress = storage.get_line_ratings("session-1")
        assert progress["completed_batch_indices"] == list(range(total))
        assert progress["complete"] is True
        assert [rating["batch"] for rating in progress["ratings"]] == list(range(total))


class TestCandidateSessions:
    def test_range_agent_and_link_filters(self, storage, seed_session) -> None:
        """Only unlinked (or same-conversation) sessions of the agent in range are returned."""
        seed_session("in-range")
        seed_session("other-agent", agent_id="agent-2")
        seed_session("too-late", started_at=SESSION_START + timedelta(hours=1))
        seed_session("linked-elsewhere", conversation_id="conv-other")
        seed_session("linked-here", conversation_id="conv-1")

        rows = storage.find_candidate_sessions(
            "agent-1",
            started_after=SESSION_START - timedelta(minutes=5),
            started_before=SESSION_START + timedelta(minutes=5),
            conversation_id="conv-1",
        )

        assert sorted(row["id"] for row in rows) == ["in-range", "linked-here"]


class TestConversations:
    def test_upsert_creates_then_updates(self, storage) -> None:
        """Duplicate deliveries update the existing record in place."""
        record, created = storage.upsert_conversation(
            {"conversation_id": "conv-1", "agent_id": "agent-1", "status": "conversation.completed", "metadata": {"a": 1}}
        )
        assert created is True
        assert record["metadata"] == {"a": 1}

        record, created = storage.upsert_conversation(
            {"conversation_id": "conv-1", "session_id": "session-1", "metadata": None}
        )

        assert created is False
        assert record["session_id"] == "session-1"
        assert record["agent_id"] == "agent-1"
        assert record["metadata"] == {"a": 1}

    def test_update_unknown_conversation(self, storage) -> None:
        """Updating a conversation that was never stored reports False."""
        assert storage.update_conversation("missing", {"status": "conversation.analyzed"}) is False


class TestPersistentPhraseCache:
    def test_round_trip_counts_hits(self, storage, engine) -> None:
        """Reads bump the hit counter; clear removes every row."""
        storage.put_cached_phrase("hi there", {"label": "good"})
        storage.put_cached_phrase("hi there", {"label": "excellent"})

        assert storage.get_cached_phrase("hi there") == {"label": "excellent"}
        assert storage.get_cached_phrase("unknown") is None
        with engine.connect() as conn:
            hits = conn.execute(text("SELECT hit_count FROM phrase_cache WHERE phrase = 'hi there'")).scalar()
        assert hits == 1
        assert storage.clear_phrase_cache() == 1


class TestLegacySessionTable:
    """A host table lacking newer columns is read and written through its live schema."""

    def test_load_reads_only_live_columns(self, legacy_storage) -> None:
        """Columns the table lacks are absent from the loaded record."""
        record = legacy_storage.load_session("legacy-1")

        assert "overall_score" not in record
        assert record["full_transcript"] == [{"speaker": "user", "text": "Hello there"}]
        assert record["started_at"] == datetime(2024, 3, 1, 18, 0)

    def test_score_write_is_rejected_but_analytics_write_succeeds(self, legacy_storage) -> None:
        """Missing score columns raise; the analytics blob is still writable."""
        with pytest.raises(SchemaMismatchError) as excinfo:
            legacy_storage.update_session("legacy-1", {"overall_score": 80, "analytics": {}})
        assert excinfo.value.missing_columns == ["overall_score"]

        legacy_storage.update_session("legacy-1", {"analytics": {"kept": True, "scores": {"overall": 80}}})
        assert legacy_storage.load_session("legacy-1")["analytics"]["scores"] == {"overall": 80}

    def test_line_rating_merge_reports_missing_columns(self, legacy_storage) -> None:
        """Merging line ratings into a table without their columns is a schema mismatch."""
        with pytest.raises(SchemaMismatchError):
            legacy_storage.merge_line_ratings("legacy-1", {0: {"label": "good"}}, batch_index=0, total_batches=1)

    def test_candidates_without_link_column(self, legacy_storage) -> None:
        """Candidate lookup works when the table has no conversation link column."""
        rows = legacy_storage.find_candidate_sessions(
            "agent-1",
            started_after=datetime(2024, 3, 1, 17, 55, tzinfo=timezone.utc),
            started_before=datetime(2024, 3, 1, 18, 5, tzinfo=timezone.utc),
            conversation_id="conv-1",
        )
        assert [row["id"] for row in rows] == ["legacy-1"]

    def test_analytics_merge_with_missing_columns_writes_nothing(self, legacy_storage) -> None:
        """Column fields the table lacks fail the whole merge."""
        with pytest.raises(SchemaMismatchError) as excinfo:
            legacy_storage.merge_session_analytics("legacy-1", {"scores": {"overall": 80}}, fields={"overall_score": 80})

        assert excinfo.value.missing_columns == ["overall_score"]
        assert legacy_storage.load_session("legacy-1")["analytics"] == {"kept": True}
