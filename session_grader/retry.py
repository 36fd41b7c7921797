"""Retry policy applied at the LLM and persistence call boundaries.

The policy is a plain value object so the backoff curve and the retryable
error classes can be exercised without any business logic around them. Parse
failures are never routed through a policy; they go through JSON repair.
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Callable, FrozenSet, Iterable, Optional, Tuple, Type, TypeVar

import requests

from . import config

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

_TRANSIENT_KEYWORDS = (
    "failed to establish a new connection",
    "connection refused",
    "connection reset",
    "network is unreachable",
    "name or service not known",
    "temporarily unavailable",
    "connection aborted",
    "database is locked",
    "timed out",
    "timeout",
)


class RetryExhaustedError(RuntimeError):
    """Raised when every attempt allowed by a policy failed with a retryable error."""

    def __init__(self, message: str, *, attempts: int, last_error: BaseException) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


class TransientStatusError(RuntimeError):
    """Raised by transports for HTTP statuses a policy may retry (429, 5xx)."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code


def _calculate_retry_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    use_exponential: bool,
    jitter_ratio: float = 0.1,
) -> float:
    """Return the delay before retry ``attempt`` (1-based), with up to 10% jitter."""
    if use_exponential:
        delay = base_delay * (2 ** max(0, attempt - 1))
    else:
        delay = base_delay
    delay = min(delay, max_delay)
    return delay + random.uniform(0, delay * jitter_ratio)


def _iter_exception_chain(exc: BaseException) -> Iterable[BaseException]:
    """Yield the exception and its causes without cycles."""
    seen: set[int] = set()
    current: Optional[BaseException] = exc
    while current and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__  # type: ignore[assignment]


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to try a call, how long to wait, and which errors qualify.

    Attributes:
        max_attempts: Total attempts including the first call.
        base_delay: Delay before the first retry in seconds.
        max_delay: Cap applied to the exponential curve.
        exponential: Double the delay on every retry when True.
        jitter_ratio: Random jitter added on top of each delay (fraction of it).
        retryable: Exception classes that are always worth retrying.
        retryable_status_codes: HTTP statuses carried by TransientStatusError
            that qualify for a retry.
    """

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 10.0
    exponential: bool = True
    jitter_ratio: float = 0.1
    retryable: Tuple[Type[BaseException], ...] = (
        requests.exceptions.ConnectionError,
        requests.exceptions.Timeout,
    )
    retryable_status_codes: FrozenSet[int] = field(
        default_factory=lambda: frozenset({408, 429, 500, 502, 503, 504})
    )
    match_transient_messages: bool = True

    def compute_delay(self, attempt: int) -> float:
        """Return the wait before retry number ``attempt`` (1-based)."""
        return _calculate_retry_delay(
            attempt,
            self.base_delay,
            self.max_delay,
            self.exponential,
            self.jitter_ratio,
        )

    def is_retryable(self, exc: BaseException) -> bool:
        """Return True when ``exc`` (or anything in its cause chain) is transient."""
        for candidate in _iter_exception_chain(exc):
            if isinstance(candidate, TransientStatusError):
                return candidate.status_code in self.retryable_status_codes
            if isinstance(candidate, self.retryable):
                return True
            if self.match_transient_messages:
                text = str(candidate).lower()
                if any(keyword in text for keyword in _TRANSIENT_KEYWORDS):
                    return True
        return False

    def call(
        self,
        func: Callable[[], T],
        *,
        description: str = "call",
        sleep: Callable[[float], None] = time.sleep,
        deadline: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> T:
        """Invoke ``func`` until it succeeds or the policy is exhausted.

        Non-retryable exceptions propagate immediately. When every attempt fails
        with a retryable error, RetryExhaustedError is raised from the last one.
        A ``deadline`` (an instant on ``clock``) also ends the loop: no retry is
        scheduled whose wait would reach it.
        """
        attempts = max(1, self.max_attempts)
        for attempt in range(1, attempts + 1):
            try:
                return func()
            except Exception as exc:  # pylint: disable=broad-except
                if not self.is_retryable(exc):
                    raise
                if attempt >= attempts:
                    raise RetryExhaustedError(
                        f"{description} failed after {attempts} attempts: {exc}",
                        attempts=attempts,
                        last_error=exc,
                    ) from exc
                wait_seconds = self.compute_delay(attempt)
                if deadline is not None and clock() + wait_seconds >= deadline:
                    LOGGER.warning(
                        "%s attempt %d/%d failed and the deadline leaves no time to retry: %s",
                        description,
                        attempt,
                        attempts,
                        exc,
                    )
                    raise RetryExhaustedError(
                        f"{description} failed after {attempt} attempts before its deadline: {exc}",
                        attempts=attempt,
                        last_error=exc,
                    ) from exc
                LOGGER.warning(
                    "%s attempt %d/%d failed with a transient error; retrying in %.1fs: %s",
                    description,
                    attempt,
                    attempts,
                    wait_seconds,
                    exc,
                )
                sleep(wait_seconds)
        raise AssertionError("unreachable")  # pragma: no cover


def default_llm_policy() -> RetryPolicy:
    """Return the transport policy configured for model calls."""
    return RetryPolicy(
        max_attempts=config.LLM_RETRY_ATTEMPTS,
        base_delay=config.LLM_RETRY_BASE_DELAY_SECONDS,
        max_delay=config.LLM_RETRY_MAX_DELAY_SECONDS,
    )


NO_RETRY = RetryPolicy(max_attempts=1)
