"""Line-by-line coaching ratings processed in cache-deduplicated batches.

Each batch is an independent unit of work: it rates its rep turns (phrase
cache first, model on a miss) and merges the results into the session by
turn index. A failed line is recorded with an error marker; only failing
to read or write the session record aborts a batch.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from . import config
from .errors import StructuredResponseError
from .grader import LABEL_ERROR, SOURCE_LLM, CompletionClient, LineRating
from .json_repair import parse_json_lenient
from .phrase_cache import PhraseCache
from .storage import SessionStorage
from .transcript import Transcript, Turn

LOGGER = logging.getLogger(__name__)

# Rep turns per batch.
LINE_RATING_BATCH_SIZE = 5

LINE_SYSTEM_PROMPT = "You are an expert sales coach. Return only valid JSON."

_LINE_PROMPT_TEMPLATE = """You are an expert door-to-door sales coach. Rate this sales rep line and provide better alternatives.

Sales rep: {rep_name}
Homeowner: {customer_name}
Sales Rep Line: "{line}"

Rate the effectiveness as one of: "excellent", "good", "poor", "missed_opportunity"

Provide 2-3 alternative ways to say this that would be more effective.

Return JSON:
{{
  "rating": "excellent|good|poor|missed_opportunity",
  "alternatives": ["alternative 1", "alternative 2", "alternative 3"],
  "reason": "brief explanation"
}}"""


def split_into_batches(turns: Sequence[Turn], size: int = LINE_RATING_BATCH_SIZE) -> List[List[Turn]]:
    """Split the rep turns of ``turns`` into consecutive batches of ``size``."""
    if size < 1:
        raise ValueError("batch size must be at least 1")
    rep_turns = [turn for turn in turns if turn.is_rep]
    return [rep_turns[start:start + size] for start in range(0, len(rep_turns), size)]


@dataclass
class BatchResult:
    session_id: str
    batch_index: int
    total_batches: int
    rated: int = 0
    cached: int = 0
    errors: int = 0
    completed_batches: int = 0
    complete: bool = False
    ratings: List[LineRating] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "batch_index": self.batch_index,
            "total_batches": self.total_batches,
            "rated": self.rated,
            "cached": self.cached,
            "errors": self.errors,
            "completed_batches": self.completed_batches,
            "complete": self.complete,
        }


@dataclass
class DispatchReport:
    session_id: str
    total_batches: int
    results: List[BatchResult] = field(default_factory=list)
    failures: Dict[int, str] = field(default_factory=dict)

    @property
    def complete(self) -> bool:
        return not self.failures and any(result.complete for result in self.results)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "total_batches": self.total_batches,
            "succeeded": sorted(result.batch_index for result in self.results),
            "failed": {str(index): message for index, message in sorted(self.failures.items())},
            "complete": self.complete,
        }


class LineRatingProcessor:
    """Rates rep turns batch by batch and merges them into the session."""

    def __init__(
        self,
        llm: CompletionClient,
        cache: PhraseCache,
        storage: SessionStorage,
        *,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        max_workers: Optional[int] = None,
    ) -> None:
        self.llm = llm
        self.cache = cache
        self.storage = storage
        self.temperature = config.LINE_RATING_TEMPERATURE if temperature is None else temperature
        self.max_tokens = max_tokens or config.LINE_RATING_MAX_TOKENS
        self.max_workers = max_workers or config.LINE_RATING_MAX_WORKERS

    def _rate_with_llm(self, turn: Turn, rep_name: str, customer_name: str) -> LineRating:
        prompt = _LINE_PROMPT_TEMPLATE.format(
            rep_name=rep_name or "Sales Rep",
            customer_name=customer_name or "Homeowner",
            line=turn.text.replace('"', "'"),
        )
        response_text = self.llm.complete(
            prompt,
            system=LINE_SYSTEM_PROMPT,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            json_mode=True,
            description="Line rating",
        )
        data, _status = parse_json_lenient(response_text)
        if not isinstance(data, dict):
            raise StructuredResponseError("Line rating response is not a JSON object", response_text)
        alternatives = data.get("alternatives") or []
        if not isinstance(alternatives, list):
            alternatives = [alternatives]
        return LineRating(
            turn_index=turn.index,
            label=str(data.get("rating") or data.get("label") or "good").strip().lower(),
            source=SOURCE_LLM,
            reason=str(data.get("reason") or ""),
            alternatives=[str(item) for item in alternatives if str(item).strip()],
            text=turn.text,
        )

    def rate_turn(self, turn: Turn, rep_name: str = "", customer_name: str = "") -> LineRating:
        """Rate one rep turn: cache hit, fresh model rating, or an error marker."""
        cached = self.cache.get(turn.text)
        if cached is not None:
            rating = cached.rating
            return LineRating(
                turn_index=turn.index,
                label=str(rating.get("label") or ""),
                source=str(rating.get("source") or SOURCE_LLM),
                reason=str(rating.get("reason") or ""),
                alternatives=list(rating.get("alternatives") or []),
                text=turn.text,
                cached=True,
            )
        try:
            rating = self._rate_with_llm(turn, rep_name, customer_name)
        except Exception as exc:  # pylint: disable=broad-except
            LOGGER.error("Failed to rate line %d (%r): %s", turn.index, turn.text[:50], exc)
            return LineRating(
                turn_index=turn.index,
                label=LABEL_ERROR,
                source=SOURCE_LLM,
                text=turn.text,
                error=str(exc),
            )
        self.cache.put(
            turn.text,
            {
                "label": rating.label,
                "reason": rating.reason,
                "alternatives": list(rating.alternatives),
                "source": rating.source,
            },
        )
        return rating

    def process_batch(
        self,
        session_id: str,
        turns: Sequence[Turn],
        batch_index: int,
        total_batches: int,
        rep_name: str = "",
        customer_name: str = "",
    ) -> BatchResult:
        """Rate the rep turns in ``turns`` and merge them into the session.

        Raises:
            SessionNotFoundError: The session no longer exists.
            PersistenceError: The session could not be read or written.
        """
        if total_batches < 1 or not 0 <= batch_index < total_batches:
            raise ValueError(f"batch_index {batch_index} outside 0..{total_batches - 1}")
        # Existence check before spending on the model.
        self.storage.load_session(session_id)

        rep_turns = [turn for turn in turns if turn.is_rep]
        LOGGER.info(
            "Processing line rating batch session=%s batch=%d/%d lines=%d",
            session_id,
            batch_index + 1,
            total_batches,
            len(rep_turns),
        )
        ratings = [self.rate_turn(turn, rep_name, customer_name) for turn in rep_turns]

        progress = self.storage.merge_line_ratings(
            session_id,
            {rating.turn_index: rating.to_dict() for rating in ratings},
            batch_index=batch_index,
            total_batches=total_batches,
        )
        result = BatchResult(
            session_id=session_id,
            batch_index=batch_index,
            total_batches=total_batches,
            rated=len(ratings),
            cached=sum(1 for rating in ratings if rating.cached),
            errors=sum(1 for rating in ratings if rating.label == LABEL_ERROR),
            completed_batches=progress["completed_batches"],
            complete=progress["complete"],
            ratings=ratings,
        )
        LOGGER.info(
            "Line rating batch done session=%s batch=%d rated=%d cached=%d errors=%d progress=%d/%d",
            session_id,
            batch_index,
            result.rated,
            result.cached,
            result.errors,
            result.completed_batches,
            total_batches,
        )
        return result

    def dispatch_all(
        self,
        session_id: str,
        transcript: Transcript,
        rep_name: str = "",
        customer_name: str = "",
    ) -> DispatchReport:
        """Run every batch of ``transcript`` concurrently on a bounded pool.

        A failed batch is reported in ``failures`` and leaves the merged
        progress of the other batches intact.
        """
        batches = split_into_batches(list(transcript))
        report = DispatchReport(session_id=session_id, total_batches=len(batches))
        if not batches:
            LOGGER.info("No rep lines to rate for session %s", session_id)
            return report

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(batches))) as executor:
            futures = {
                executor.submit(
                    self.process_batch,
                    session_id,
                    batch,
                    index,
                    len(batches),
                    rep_name,
                    customer_name,
                ): index
                for index, batch in enumerate(batches)
            }
            for future, index in futures.items():
                try:
                    report.results.append(future.result())
                except Exception as exc:  # pylint: disable=broad-except
                    LOGGER.error("Line rating batch %d for session %s failed: %s", index, session_id, exc)
                    report.failures[index] = str(exc)
        return report
