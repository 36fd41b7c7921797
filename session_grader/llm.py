"""Language-model completion client used by the grader and line-rating processor."""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

import requests

from . import config
from .errors import GradingUnavailableError
from .providers import LLMProvider, ProviderError, get_provider
from .retry import RetryExhaustedError, RetryPolicy, TransientStatusError, default_llm_policy

LOGGER = logging.getLogger(__name__)

# Upper bound on prompt/response text copied into log records.
LOG_PREVIEW_LIMIT = 2048

# Floor for a deadline-capped attempt so a nearly spent budget still fails fast.
MIN_ATTEMPT_TIMEOUT = 0.1


def preview(text: Optional[str], limit: int = LOG_PREVIEW_LIMIT) -> str:
    """Return ``text`` truncated for logging."""
    if not text:
        return ""
    if len(text) <= limit:
        return text
    return f"{text[:limit]}... [{len(text) - limit} more chars]"


class LLMClient:
    """``complete(prompt) -> str`` over a provider, with timeout and retry policy.

    Transport failures that survive the policy surface as
    GradingUnavailableError. Response content is returned untouched; parsing
    is the caller's job.
    """

    def __init__(
        self,
        provider: Optional[LLMProvider] = None,
        *,
        model: Optional[str] = None,
        policy: Optional[RetryPolicy] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.provider = provider or get_provider()
        self.model = model or config.GRADER_MODEL
        self.policy = policy or default_llm_policy()
        self.timeout = timeout or config.LLM_TIMEOUT_SECONDS

    @property
    def provider_name(self) -> str:
        return self.provider.get_provider_name()

    def attempt_timeout(self, deadline: Optional[float] = None) -> float:
        """Per-attempt timeout, capped by the time left before ``deadline``."""
        if deadline is None:
            return self.timeout
        remaining = deadline - time.monotonic()
        return max(MIN_ATTEMPT_TIMEOUT, min(self.timeout, remaining))

    def complete(
        self,
        prompt: str,
        *,
        system: Optional[str] = None,
        temperature: Optional[float] = None,
        json_mode: bool = True,
        max_tokens: Optional[int] = None,
        description: str = "LLM completion",
        deadline: Optional[float] = None,
    ) -> str:
        options: Dict[str, Any] = {}
        if temperature is not None:
            options["temperature"] = temperature
        if max_tokens:
            options["max_tokens"] = max_tokens
        if json_mode and self.provider.supports_json_mode():
            options["json_mode"] = True

        def _attempt() -> str:
            result = self.provider.generate(
                self.model,
                prompt,
                system=system,
                options=options,
                timeout=self.attempt_timeout(deadline),
            )
            return result.content or ""

        try:
            return self.policy.call(_attempt, description=description, deadline=deadline)
        except RetryExhaustedError as exc:
            LOGGER.warning(
                "%s unavailable after %d attempts (provider=%s model=%s): %s\nPrompt preview: %s",
                description,
                exc.attempts,
                self.provider_name,
                self.model,
                exc.last_error,
                preview(prompt),
            )
            raise GradingUnavailableError(
                f"Language model unavailable: {exc.last_error}",
                attempts=exc.attempts,
                last_error=str(exc.last_error),
            ) from exc
        except (ProviderError, TransientStatusError, requests.exceptions.RequestException) as exc:
            LOGGER.warning(
                "%s failed (provider=%s model=%s): %s\nPrompt preview: %s",
                description,
                self.provider_name,
                self.model,
                exc,
                preview(prompt),
            )
            raise GradingUnavailableError(
                f"Language model request failed: {exc}",
                last_error=str(exc),
            ) from exc
