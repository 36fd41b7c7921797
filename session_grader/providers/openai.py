"""OpenAI-compatible chat completions provider."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import requests

from .. import config
from .base import GenerateResult, LLMProvider, ProviderError, build_session, raise_for_status

LOGGER = logging.getLogger(__name__)


class OpenAIProvider(LLMProvider):
    """OpenAI API provider.

    Works against any OpenAI-compatible base URL. Authentication is via
    Bearer token.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        self.api_key = api_key if api_key is not None else config.OPENAI_API_KEY
        self.base_url = (base_url or config.OPENAI_API_BASE).rstrip("/")
        self.timeout = timeout or config.LLM_TIMEOUT_SECONDS
        self._session = session or build_session()

    def is_available(self) -> bool:
        if not self.api_key:
            LOGGER.debug("OpenAI provider unavailable: API key not configured")
            return False
        return True

    def generate(
        self,
        model: str,
        prompt: str,
        system: Optional[str] = None,
        options: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> GenerateResult:
        """Generate a chat completion.

        Note:
            Maps common options to OpenAI parameter names:
            - temperature: temperature
            - max_tokens: max_tokens
            - json_mode: response_format={"type": "json_object"}
        """
        options = options or {}

        messages: List[Dict[str, str]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        request_body: Dict[str, Any] = {"model": model, "messages": messages}
        if options.get("temperature") is not None:
            request_body["temperature"] = options["temperature"]
        if options.get("max_tokens"):
            request_body["max_tokens"] = options["max_tokens"]
        if options.get("json_mode"):
            request_body["response_format"] = {"type": "json_object"}

        response = self._session.post(
            f"{self.base_url}/chat/completions",
            headers=self._get_headers(),
            json=request_body,
            timeout=timeout or self.timeout,
        )
        raise_for_status(response, "openai")

        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderError(f"OpenAI returned a non-JSON body: {exc}") from exc
        content = ""
        choices = data.get("choices") or []
        primary: Dict[str, Any] = (choices[0] or {}) if choices else {}
        message_content = (primary.get("message") or {}).get("content")
        if isinstance(message_content, str):
            content = message_content
        elif isinstance(message_content, list):
            content = "".join(
                part["text"]
                for part in message_content
                if isinstance(part, dict) and isinstance(part.get("text"), str)
            )
        if not content and isinstance(primary.get("text"), str):
            content = primary["text"]
        if not content:
            LOGGER.warning(
                "OpenAI completion returned empty content; finish_reason=%s",
                primary.get("finish_reason"),
            )

        return GenerateResult(
            content=content,
            model=model,
            provider="openai",
            metadata={
                "finish_reason": primary.get("finish_reason"),
                "usage": data.get("usage", {}),
                "model_used": data.get("model"),
            },
        )

    def get_provider_name(self) -> str:
        return "openai"

    def supports_json_mode(self) -> bool:
        return True

    def _get_headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers
