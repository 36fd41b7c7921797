"""Service layer wiring storage, the model client and the grading components."""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, List, Mapping, Optional

from . import config
from .diagnostics import diagnose_session
from .errors import GradingError, InvalidInputError
from .grader import RubricGrader
from .line_ratings import LineRatingProcessor, split_into_batches
from .llm import LLMClient
from .orchestrator import GradingOrchestrator, load_transcript
from .phrase_cache import PhraseCache
from .providers import get_provider
from .speech_metrics import compute_speech_metrics
from .storage import SessionStorage
from .transcript import Transcript
from .webhooks import WebhookProcessor

LOGGER = logging.getLogger(__name__)


class GradingService:
    """Facade used by the API routes.

    Holds one storage handle, one phrase cache and one model client per
    purpose (rubric vs. line ratings) for the lifetime of the process.
    """

    def __init__(
        self,
        storage: Optional[SessionStorage] = None,
        *,
        rubric_llm: Optional[LLMClient] = None,
        line_llm: Optional[LLMClient] = None,
        cache: Optional[PhraseCache] = None,
    ) -> None:
        self.storage = storage or SessionStorage()
        if rubric_llm is None or line_llm is None:
            provider = get_provider()
            LOGGER.info(
                "Using LLM provider %s (rubric model=%s, line model=%s)",
                provider.get_provider_name(),
                config.GRADER_MODEL,
                config.LINE_RATING_MODEL,
            )
            if not provider.is_available():
                LOGGER.warning("LLM provider %s is not configured; grading calls will fail", provider.get_provider_name())
            rubric_llm = rubric_llm or LLMClient(provider, model=config.GRADER_MODEL)
            line_llm = line_llm or LLMClient(provider, model=config.LINE_RATING_MODEL)
        self.cache = cache or PhraseCache(self.storage)
        self.grader = RubricGrader(rubric_llm)
        self.orchestrator = GradingOrchestrator(self.storage, self.grader)
        self.line_ratings = LineRatingProcessor(line_llm, self.cache, self.storage)
        self.webhooks = WebhookProcessor(self.storage)

    # ------------------------------------------------------------------
    # Rubric grading
    # ------------------------------------------------------------------
    def grade_session(self, session_id: str) -> Dict[str, Any]:
        outcome = self.orchestrator.grade_session(session_id)
        return outcome.to_dict()

    def session_transcript(self, session_id: str) -> Transcript:
        return load_transcript(self.storage.load_session(session_id))

    def quick_analysis(self, session_id: str) -> Optional[Dict[str, Any]]:
        """Deterministic metrics for a session, or None when they cannot be computed."""
        try:
            record = self.storage.load_session(session_id)
            transcript = load_transcript(record)
        except GradingError as exc:
            LOGGER.warning("Quick analysis unavailable for session %s: %s", session_id, exc)
            return None
        duration = record.get("duration_seconds") or transcript.duration_seconds()
        return compute_speech_metrics(transcript, duration).to_dict()

    def quick_metrics(
        self,
        entries: List[Mapping[str, Any]],
        duration_seconds: Optional[float] = None,
    ) -> Dict[str, Any]:
        transcript = Transcript.from_entries(entries)
        if not transcript:
            raise InvalidInputError("transcript must contain at least one entry")
        duration = duration_seconds if duration_seconds is not None else transcript.duration_seconds()
        return compute_speech_metrics(transcript, duration).to_dict()

    def grading_health(self, session_id: str) -> Dict[str, Any]:
        record = self.storage.load_session(session_id)
        return diagnose_session(record, self.storage.get_line_ratings(session_id))

    # ------------------------------------------------------------------
    # Line ratings
    # ------------------------------------------------------------------
    def line_rating_batch_count(self, session_id: str) -> int:
        return len(split_into_batches(list(self.session_transcript(session_id))))

    def rate_line_batch(
        self,
        session_id: str,
        batch_index: int,
        rep_name: str = "",
        customer_name: str = "",
    ) -> Dict[str, Any]:
        batches = split_into_batches(list(self.session_transcript(session_id)))
        if not 0 <= batch_index < len(batches):
            raise InvalidInputError(
                f"batch_index {batch_index} out of range for session {session_id} ({len(batches)} batches)"
            )
        result = self.line_ratings.process_batch(
            session_id,
            batches[batch_index],
            batch_index,
            len(batches),
            rep_name,
            customer_name,
        )
        return result.to_dict()

    def dispatch_line_ratings(self, session_id: str, rep_name: str = "", customer_name: str = "") -> Dict[str, Any]:
        """Run every batch for ``session_id``; used as a background task."""
        try:
            transcript = self.session_transcript(session_id)
        except GradingError as exc:
            LOGGER.error("Cannot dispatch line ratings for session %s: %s", session_id, exc)
            return {"session_id": session_id, "total_batches": 0, "failed": {"*": str(exc)}, "complete": False}
        report = self.line_ratings.dispatch_all(session_id, transcript, rep_name, customer_name)
        if report.failures:
            LOGGER.warning(
                "Line ratings for session %s finished with %d failed batch(es) of %d",
                session_id,
                len(report.failures),
                report.total_batches,
            )
        return report.to_dict()

    def get_line_ratings(self, session_id: str) -> Dict[str, Any]:
        progress = self.storage.get_line_ratings(session_id)
        return {"session_id": session_id, **progress}

    # ------------------------------------------------------------------
    # Webhooks and cache
    # ------------------------------------------------------------------
    def handle_webhook(self, raw_body: bytes, signature: Optional[str]) -> Dict[str, Any]:
        return self.webhooks.handle(raw_body, signature, config.get_webhook_secret())

    def clear_phrase_cache(self) -> Dict[str, Any]:
        cleared = self.cache.clear()
        LOGGER.info("Phrase cache cleared (%d persisted entries removed)", cleared)
        return {"cleared": cleared, "stats": self.cache.stats()}


_grading_service: Optional[GradingService] = None
_grading_service_lock = threading.Lock()


def get_grading_service() -> GradingService:
    """FastAPI dependency to retrieve the shared grading service."""
    global _grading_service  # pylint: disable=global-statement
    with _grading_service_lock:
        if _grading_service is None:
            _grading_service = GradingService()
        return _grading_service
