"""Typed errors raised by the grading pipeline.

Every error carries a machine-readable ``category`` and the HTTP status the
routes translate it into. Recoverable conditions (cache misses, repairable
JSON, schema downgrades) are absorbed inside their components and only reach
this taxonomy when there is no safe way forward.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, Optional


class GradingError(RuntimeError):
    """Base class for errors surfaced at the HTTP boundary."""

    category = "internal"
    status_code = 500

    def to_dict(self) -> Dict[str, Any]:
        return {"category": self.category, "message": str(self)}


class InvalidInputError(GradingError):
    """Raised when a request is missing required fields or is malformed."""

    category = "input"
    status_code = 400


class SessionNotFoundError(GradingError):
    """Raised when the requested session does not exist."""

    category = "not_found"
    status_code = 404

    def __init__(self, session_id: str, message: Optional[str] = None) -> None:
        super().__init__(message or f"Session {session_id} not found")
        self.session_id = session_id


class TranscriptNotFoundError(SessionNotFoundError):
    """Raised when a session exists but carries no gradable transcript."""

    def __init__(self, session_id: str) -> None:
        super().__init__(session_id, f"No transcript to grade for session {session_id}")


class WebhookSignatureError(GradingError):
    """Raised when a signed webhook fails verification."""

    category = "auth"
    status_code = 401


class GradingUnavailableError(GradingError):
    """Raised when the language model cannot be reached after transport retries."""

    category = "upstream_unavailable"
    status_code = 503

    def __init__(self, message: str, *, attempts: int = 1, last_error: Optional[str] = None) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error or ""


class GradingTimeoutError(GradingError):
    """Raised when a grading request exceeds its overall budget."""

    category = "timeout"
    status_code = 504

    def __init__(self, session_id: str, budget_seconds: float) -> None:
        super().__init__(f"Grading session {session_id} exceeded its {budget_seconds:g}s budget")
        self.session_id = session_id
        self.budget_seconds = budget_seconds


class StructuredResponseError(GradingError):
    """Raised when a model response cannot be parsed, repaired or partially extracted."""

    category = "parse"
    status_code = 502

    def __init__(self, message: str, response_text: str = "") -> None:
        super().__init__(message)
        self.response_text = response_text or ""


class PersistenceError(GradingError):
    """Raised when the session store cannot be read or written."""

    category = "persistence"
    status_code = 500


class PersistenceUnavailableError(PersistenceError):
    """Raised when the session store stays unreachable after retries."""

    category = "upstream_unavailable"
    status_code = 503


class SchemaMismatchError(PersistenceError):
    """Raised when an update names columns the live schema does not have."""

    category = "schema_mismatch"

    def __init__(self, missing_columns: Iterable[str], message: Optional[str] = None) -> None:
        self.missing_columns = sorted(set(missing_columns))
        super().__init__(
            message or "Unknown column(s) for session update: " + ", ".join(self.missing_columns)
        )


class CorrelationError(GradingError):
    """Raised when correlation could not run; distinct from a valid no-match."""

    category = "internal"
    status_code = 500
