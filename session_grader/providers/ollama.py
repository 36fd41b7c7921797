"""Ollama provider using the ``/api/generate`` endpoint."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import requests

from .. import config
from .base import GenerateResult, LLMProvider, ProviderError, build_session, raise_for_status

LOGGER = logging.getLogger(__name__)


class OllamaProvider(LLMProvider):
    """Ollama provider for self-hosted models."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = (base_url or config.OLLAMA_BASE_URL).rstrip("/")
        self.timeout = timeout or config.LLM_TIMEOUT_SECONDS
        self._session = session or build_session()

    def generate(
        self,
        model: str,
        prompt: str,
        system: Optional[str] = None,
        options: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> GenerateResult:
        """Generate a completion.

        ``max_tokens`` maps to Ollama's ``num_predict``; ``json_mode`` sets
        ``format="json"``.
        """
        options = options or {}
        ollama_options: Dict[str, Any] = {}
        if options.get("temperature") is not None:
            ollama_options["temperature"] = options["temperature"]
        if options.get("max_tokens"):
            ollama_options["num_predict"] = options["max_tokens"]

        payload: Dict[str, Any] = {"model": model, "prompt": prompt, "stream": False}
        if system:
            payload["system"] = system
        if ollama_options:
            payload["options"] = ollama_options
        if options.get("json_mode"):
            payload["format"] = "json"

        response = self._session.post(
            f"{self.base_url}/api/generate",
            json=payload,
            timeout=timeout or self.timeout,
        )
        raise_for_status(response, "ollama")

        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderError(f"Ollama returned a non-JSON body: {exc}") from exc
        if data.get("error"):
            message = str(data["error"])
            if "requires more system memory" in message.lower():
                LOGGER.error("Ollama model %s does not fit in memory", model)
            raise ProviderError(f"Ollama error: {message}")

        return GenerateResult(
            content=str(data.get("response", "")).strip(),
            model=data.get("model") or model,
            provider="ollama",
            metadata={
                "done_reason": data.get("done_reason"),
                "eval_count": data.get("eval_count"),
                "prompt_eval_count": data.get("prompt_eval_count"),
            },
        )

    def get_provider_name(self) -> str:
        return "ollama"

    def supports_json_mode(self) -> bool:
        return True
