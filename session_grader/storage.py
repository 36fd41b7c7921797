"""SQLAlchemy-backed persistence for sessions, conversations and cached phrases."""

from __future__ import annotations

import logging
import threading
import weakref
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple, TypeVar

from sqlalchemy import Table, column, delete, func, inspect, or_, select, table, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DisconnectionError, IntegrityError, OperationalError, ProgrammingError
from sqlalchemy.sql.expression import TableClause

from . import db
from .db import init_database, make_session_factory, session_scope
from .db_models import PhraseCacheEntry, TrainingSession, VoiceConversation
from .errors import PersistenceError, PersistenceUnavailableError, SchemaMismatchError, SessionNotFoundError
from .retry import RetryExhaustedError, RetryPolicy

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

_UNKNOWN_COLUMN_MARKERS = (
    "no such column",
    "has no column",
    "unknown column",
    "column does not exist",
    "could not find the",
)

SESSION_TABLE: Table = TrainingSession.__table__
CONVERSATION_TABLE: Table = VoiceConversation.__table__

_LINE_RATING_COLUMNS = ("line_ratings", "line_rating_batches_done", "line_rating_total_batches")


def persistence_policy() -> RetryPolicy:
    """Short backoff for lock contention and dropped connections."""
    return RetryPolicy(
        max_attempts=3,
        base_delay=0.2,
        max_delay=2.0,
        retryable=(DisconnectionError,),
    )


def _is_unknown_column_error(exc: BaseException) -> bool:
    message = str(exc).lower()
    return any(marker in message for marker in _UNKNOWN_COLUMN_MARKERS)


class SessionStorage:
    """Utility class encapsulating all database reads and writes.

    Session updates are partial: only the named columns are written, so the
    rubric write and line-rating merges never clobber each other.
    """

    def __init__(self, bind: Optional[Engine] = None, *, policy: Optional[RetryPolicy] = None) -> None:
        self._engine = bind or db.engine
        self._factory = make_session_factory(bind) if bind is not None else db.SessionLocal
        self._policy = policy or persistence_policy()
        # Entries vanish once no merge holds the lock.
        self._merge_locks: weakref.WeakValueDictionary[str, threading.Lock] = weakref.WeakValueDictionary()
        self._merge_locks_guard = threading.Lock()
        safe_url = str(self._engine.url) if self._engine.dialect.name == "sqlite" else "redacted"
        LOGGER.info("Initializing session storage (database_url=%s)", safe_url)
        try:
            init_database(self._engine)
        except Exception:  # pylint: disable=broad-except
            LOGGER.exception("Database initialisation failed")
            raise

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------
    def _run(self, func: Callable[[], T], description: str) -> T:
        try:
            return self._policy.call(func, description=description)
        except RetryExhaustedError as exc:
            raise PersistenceUnavailableError(f"{description} failed: {exc.last_error}") from exc

    def _scope(self):
        return session_scope(self._factory)

    def session_columns(self) -> Set[str]:
        """Columns of the live ``training_sessions`` table (inspected, not assumed)."""
        inspector = inspect(self._engine)
        return {info["name"] for info in inspector.get_columns(SESSION_TABLE.name)}

    def _live_session_table(self) -> TableClause:
        """The session table restricted to its live columns, without ORM-level defaults."""
        live = self.session_columns()
        return table(
            SESSION_TABLE.name,
            *[column(col.name, col.type) for col in SESSION_TABLE.columns if col.name in live],
        )

    def _session_lock(self, session_id: str) -> threading.Lock:
        with self._merge_locks_guard:
            lock = self._merge_locks.get(session_id)
            if lock is None:
                lock = threading.Lock()
                self._merge_locks[session_id] = lock
            return lock

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------
    def load_session(self, session_id: str) -> Dict[str, Any]:
        """Return the session row as a dict of its live columns.

        Raises:
            SessionNotFoundError: When no row has ``session_id``.
        """

        def _load() -> Optional[Dict[str, Any]]:
            target = self._live_session_table()
            with self._scope() as session:
                row = session.execute(
                    select(*target.c).where(target.c.id == session_id)
                ).mappings().first()
                return dict(row) if row else None

        record = self._run(_load, "Session load")
        if record is None:
            raise SessionNotFoundError(session_id)
        return record

    def update_session(self, session_id: str, fields: Mapping[str, Any]) -> None:
        """Write only ``fields`` onto the session row.

        Raises:
            SchemaMismatchError: When a field is not a column of the live table
                or the driver rejects a column.
            SessionNotFoundError: When no row has ``session_id``.
        """
        if not fields:
            return
        target = self._live_session_table()
        missing = [name for name in fields if name not in target.c]
        if missing:
            raise SchemaMismatchError(missing)
        values = dict(fields)
        if "updated_at" in target.c and "updated_at" not in values:
            values["updated_at"] = func.now()

        def _update() -> int:
            with self._scope() as session:
                result = session.execute(
                    update(target).where(target.c.id == session_id).values(**values)
                )
                return result.rowcount

        try:
            updated = self._run(_update, "Session update")
        except (OperationalError, ProgrammingError) as exc:
            if _is_unknown_column_error(exc):
                raise SchemaMismatchError(fields, f"Session update rejected by database: {exc}") from exc
            raise PersistenceError(f"Session update failed: {exc}") from exc
        if not updated:
            raise SessionNotFoundError(session_id)

    def create_session(self, values: Mapping[str, Any]) -> Dict[str, Any]:
        """Insert a session row. Used by local tooling and tests; the host owns sessions."""

        def _insert() -> None:
            with self._scope() as session:
                session.add(TrainingSession(**dict(values)))

        self._run(_insert, "Session insert")
        return self.load_session(str(values["id"]))

    def merge_line_ratings(
        self,
        session_id: str,
        ratings: Mapping[int, Mapping[str, Any]],
        *,
        batch_index: int,
        total_batches: int,
    ) -> Dict[str, Any]:
        """Upsert ``ratings`` by turn index and mark ``batch_index`` complete.

        Runs under a per-session lock inside one transaction. Re-running a
        batch rewrites the same keys and re-adds the same batch index, so the
        outcome does not depend on dispatch order or duplicates.
        """

        def _merge() -> Dict[str, Any]:
            target = self._live_session_table()
            absent = [name for name in _LINE_RATING_COLUMNS if name not in target.c]
            if absent:
                raise SchemaMismatchError(absent)
            with self._scope() as session:
                row = session.execute(
                    select(*(target.c[name] for name in _LINE_RATING_COLUMNS))
                    .where(target.c.id == session_id)
                    .with_for_update()
                ).first()
                if row is None:
                    raise SessionNotFoundError(session_id)
                merged: Dict[str, Any] = dict(row[0] or {})
                for index, rating in ratings.items():
                    merged[str(int(index))] = dict(rating)
                done = sorted(set(int(value) for value in (row[1] or [])) | {int(batch_index)})
                total = max(int(total_batches), int(row[2] or 0))
                values: Dict[str, Any] = {
                    "line_ratings": merged,
                    "line_rating_batches_done": done,
                    "line_rating_total_batches": total,
                }
                if "updated_at" in target.c:
                    values["updated_at"] = func.now()
                session.execute(update(target).where(target.c.id == session_id).values(**values))
                return _progress(merged, done, total)

        with self._session_lock(session_id):
            try:
                return self._run(_merge, "Line rating merge")
            except (OperationalError, ProgrammingError) as exc:
                if _is_unknown_column_error(exc):
                    raise SchemaMismatchError(
                        _LINE_RATING_COLUMNS,
                        f"Line rating columns missing: {exc}",
                    ) from exc
                raise PersistenceError(f"Line rating merge failed: {exc}") from exc

    def merge_session_analytics(
        self,
        session_id: str,
        updates: Mapping[str, Any],
        fields: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Overlay ``updates`` onto the stored analytics blob, keeping other keys.

        ``fields`` are written to their own columns in the same statement.
        The blob is re-read under the per-session lock inside the writing
        transaction, so concurrent overlays keep each other's keys.

        Raises:
            SchemaMismatchError: When ``analytics`` or one of ``fields`` is not
                a column of the live table. Nothing is written in that case.
            SessionNotFoundError: When no row has ``session_id``.
        """
        extra = dict(fields or {})

        def _merge() -> Dict[str, Any]:
            target = self._live_session_table()
            absent = [name for name in ("analytics", *extra) if name not in target.c]
            if absent:
                raise SchemaMismatchError(absent)
            with self._scope() as session:
                row = session.execute(
                    select(target.c.analytics).where(target.c.id == session_id).with_for_update()
                ).first()
                if row is None:
                    raise SessionNotFoundError(session_id)
                analytics: Dict[str, Any] = dict(row[0] or {})
                analytics.update(updates)
                values: Dict[str, Any] = {**extra, "analytics": analytics}
                if "updated_at" in target.c and "updated_at" not in values:
                    values["updated_at"] = func.now()
                session.execute(update(target).where(target.c.id == session_id).values(**values))
                return analytics

        with self._session_lock(session_id):
            try:
                return self._run(_merge, "Analytics merge")
            except (OperationalError, ProgrammingError) as exc:
                if _is_unknown_column_error(exc):
                    raise SchemaMismatchError(
                        ["analytics", *extra],
                        f"Analytics merge rejected by database: {exc}",
                    ) from exc
                raise PersistenceError(f"Analytics merge failed: {exc}") from exc

    def get_line_ratings(self, session_id: str) -> Dict[str, Any]:
        record = self.load_session(session_id)
        return _progress(
            dict(record.get("line_ratings") or {}),
            list(record.get("line_rating_batches_done") or []),
            int(record.get("line_rating_total_batches") or 0),
        )

    def find_candidate_sessions(
        self,
        agent_id: str,
        *,
        started_after: datetime,
        started_before: datetime,
        conversation_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Sessions for ``agent_id`` whose start falls in the given range.

        Sessions already linked to a different conversation are excluded.
        """

        def _query() -> List[Dict[str, Any]]:
            target = self._live_session_table()
            conditions = [
                target.c.agent_id == agent_id,
                target.c.started_at.is_not(None),
                target.c.started_at >= started_after,
                target.c.started_at <= started_before,
            ]
            # Legacy session tables without the link column cannot be pre-filtered.
            if "conversation_id" in target.c:
                link_filter = target.c.conversation_id.is_(None)
                if conversation_id:
                    link_filter = or_(link_filter, target.c.conversation_id == conversation_id)
                conditions.append(link_filter)
            with self._scope() as session:
                rows = session.execute(
                    select(
                        target.c.id,
                        target.c.user_id,
                        target.c.agent_id,
                        target.c.started_at,
                        target.c.ended_at,
                    ).where(*conditions)
                ).mappings().all()
                return [dict(row) for row in rows]

        return self._run(_query, "Candidate session query")

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------
    @staticmethod
    def _conversation_to_dict(record: VoiceConversation) -> Dict[str, Any]:
        return {
            "conversation_id": record.conversation_id,
            "agent_id": record.agent_id,
            "session_id": record.session_id,
            "user_id": record.user_id,
            "status": record.status,
            "transcript": record.transcript,
            "metadata": dict(record.metadata_json or {}),
            "analysis": record.analysis,
            "duration_seconds": record.duration_seconds,
            "message_count": record.message_count,
            "correlation_confidence": record.correlation_confidence,
            "created_at": record.created_at,
        }

    def upsert_conversation(self, values: Mapping[str, Any]) -> Tuple[Dict[str, Any], bool]:
        """Insert or update a conversation keyed by ``conversation_id``.

        Returns the stored record and whether it was newly created. A
        duplicate delivery updates the existing row in place.
        """
        payload = dict(values)
        if "metadata" in payload:
            payload["metadata_json"] = payload.pop("metadata")
        conversation_id = str(payload["conversation_id"])

        def _apply(record: VoiceConversation) -> None:
            for key, value in payload.items():
                if value is not None:
                    setattr(record, key, value)

        def _upsert() -> Tuple[Dict[str, Any], bool]:
            with self._scope() as session:
                record = session.execute(
                    select(VoiceConversation).where(VoiceConversation.conversation_id == conversation_id)
                ).scalar_one_or_none()
                created = record is None
                if created:
                    record = VoiceConversation(conversation_id=conversation_id)
                    session.add(record)
                _apply(record)
                session.flush()
                return self._conversation_to_dict(record), created

        try:
            return self._run(_upsert, "Conversation upsert")
        except IntegrityError:
            # Concurrent delivery inserted the row first; update it instead.
            LOGGER.info("Conversation %s inserted concurrently; updating", conversation_id)
            return self._run(_upsert, "Conversation upsert")

    def update_conversation(self, conversation_id: str, fields: Mapping[str, Any]) -> bool:
        payload = dict(fields)

        def _update() -> int:
            with self._scope() as session:
                result = session.execute(
                    update(CONVERSATION_TABLE)
                    .where(CONVERSATION_TABLE.c.conversation_id == conversation_id)
                    .values(**payload)
                )
                return result.rowcount

        return bool(self._run(_update, "Conversation update"))

    def get_conversation(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        def _load() -> Optional[Dict[str, Any]]:
            with self._scope() as session:
                record = session.execute(
                    select(VoiceConversation).where(VoiceConversation.conversation_id == conversation_id)
                ).scalar_one_or_none()
                return self._conversation_to_dict(record) if record else None

        return self._run(_load, "Conversation load")

    # ------------------------------------------------------------------
    # Phrase cache (persistent tier)
    # ------------------------------------------------------------------
    def get_cached_phrase(self, key: str) -> Optional[Dict[str, Any]]:
        with self._scope() as session:
            entry = session.get(PhraseCacheEntry, key)
            if entry is None:
                return None
            entry.hit_count = int(entry.hit_count or 0) + 1
            return dict(entry.rating or {})

    def put_cached_phrase(self, key: str, rating: Mapping[str, Any]) -> None:
        def _write() -> None:
            with self._scope() as session:
                entry = session.get(PhraseCacheEntry, key)
                if entry is None:
                    session.add(PhraseCacheEntry(phrase=key, rating=dict(rating), hit_count=0))
                else:
                    entry.rating = dict(rating)

        try:
            _write()
        except IntegrityError:
            # Another batch cached the phrase first; last write wins.
            _write()

    def clear_phrase_cache(self) -> int:
        with self._scope() as session:
            result = session.execute(delete(PhraseCacheEntry))
            return int(result.rowcount or 0)


def _progress(ratings: Mapping[str, Any], done: Iterable[int], total: int) -> Dict[str, Any]:
    completed = sorted(set(int(value) for value in done))
    ordered = [ratings[key] for key in sorted(ratings, key=lambda value: int(value))]
    return {
        "ratings": ordered,
        "rated_lines": len(ordered),
        "completed_batches": len(completed),
        "completed_batch_indices": completed,
        "total_batches": total,
        "complete": bool(total) and len(completed) >= total,
        "status": "completed" if total and len(completed) >= total else "processing",
    }
