"""LLM provider abstraction layer.

Providers share one interface so the grader and the line-rating processor do
not care which vendor serves the model.
"""

from typing import Optional

from .. import config
from .base import GenerateResult, LLMProvider, ProviderError
from .ollama import OllamaProvider
from .openai import OpenAIProvider

_PROVIDERS = {
    "openai": OpenAIProvider,
    "ollama": OllamaProvider,
}


def get_provider(name: Optional[str] = None) -> LLMProvider:
    """Instantiate the configured provider (``GRADER_LLM_PROVIDER``)."""
    key = (name or config.LLM_PROVIDER or "openai").strip().lower()
    try:
        provider_cls = _PROVIDERS[key]
    except KeyError as exc:
        raise ValueError(f"Unknown LLM provider {key!r}; expected one of {sorted(_PROVIDERS)}") from exc
    return provider_cls()


__all__ = [
    "GenerateResult",
    "LLMProvider",
    "OllamaProvider",
    "OpenAIProvider",
    "ProviderError",
    "get_provider",
]
