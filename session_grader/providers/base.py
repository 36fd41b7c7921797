"""Base provider interface for LLM vendors.

Providers perform exactly one HTTP attempt per ``generate`` call. Retries,
backoff and the overall timeout budget are owned by ``llm.LLMClient`` and
its ``RetryPolicy`` so they can be tested without a network.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import requests
from requests.adapters import HTTPAdapter

from ..retry import TransientStatusError

# Statuses the transport reports as transient; the retry policy decides what to do.
TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


class ProviderError(RuntimeError):
    """Raised when a provider rejects a request for a non-transient reason."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass
class GenerateResult:
    """Result from a completion request.

    Attributes:
        content: Generated text content
        model: Model name that was used
        provider: Provider that generated the response
        metadata: Additional response metadata (usage, finish reason, etc.)
    """
    content: str
    model: str
    provider: str
    metadata: Dict[str, Any] = field(default_factory=dict)


def build_session(pool_size: int = 10) -> requests.Session:
    """Return a pooled session without adapter-level retries."""
    session = requests.Session()
    adapter = HTTPAdapter(pool_connections=pool_size, pool_maxsize=pool_size, max_retries=0)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


def raise_for_status(response: requests.Response, provider: str) -> None:
    """Translate an HTTP error status into TransientStatusError or ProviderError."""
    if response.status_code < 400:
        return
    detail = (response.text or "").strip()[:500]
    message = f"{provider} responded with {response.status_code}: {detail}"
    if response.status_code in TRANSIENT_STATUS_CODES:
        raise TransientStatusError(response.status_code, message)
    raise ProviderError(message, status_code=response.status_code)


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    @abstractmethod
    def generate(
        self,
        model: str,
        prompt: str,
        system: Optional[str] = None,
        options: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> GenerateResult:
        """Generate a completion from the model.

        Args:
            model: Model name/identifier to use
            prompt: User prompt/message
            system: Optional system prompt
            options: ``temperature``, ``max_tokens`` and ``json_mode``
            timeout: Per-request timeout in seconds

        Raises:
            TransientStatusError: For 408/429/5xx responses.
            ProviderError: For any other error status.
            requests.exceptions.RequestException: For transport failures.
        """

    @abstractmethod
    def get_provider_name(self) -> str:
        """Return the provider identifier ("openai" or "ollama")."""

    @abstractmethod
    def supports_json_mode(self) -> bool:
        """Return True when the backend offers a native JSON response mode."""

    def is_available(self) -> bool:
        """Lightweight configuration check run when the grading service starts."""
        return True
