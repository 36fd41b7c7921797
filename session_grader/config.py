"""Configuration helpers for the session grading backend."""

from __future__ import annotations

import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

# Load environment variables from a .env file if present.
load_dotenv()


def _split_origins(value: str) -> List[str]:
    """Convert a comma-separated origin string into a clean list.

    Args:
        value (str): One or many origins separated by commas.
    Returns:
        List[str]: Normalized origin values with whitespace removed.
    """
    return [origin.strip() for origin in value.split(",") if origin.strip()]


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


DEFAULT_ALLOWED_ORIGINS = "http://localhost:3000,http://127.0.0.1:3000"
DEFAULT_DATA_DIR = Path(__file__).resolve().parent.parent / "data"

API_HOST = os.getenv("GRADER_API_HOST", "0.0.0.0")
API_PORT = _env_int("GRADER_API_PORT", 8600)
API_ALLOWED_ORIGINS = _split_origins(os.getenv("GRADER_API_ALLOWED_ORIGINS", DEFAULT_ALLOWED_ORIGINS))
# Resolve the data directory eagerly so downstream code can rely on absolute paths.
DATA_DIR = Path(os.getenv("GRADER_DATA_DIR", str(DEFAULT_DATA_DIR))).resolve()

# LLM provider selection: "openai" (any OpenAI-compatible endpoint) or "ollama".
LLM_PROVIDER = os.getenv("GRADER_LLM_PROVIDER", "openai").strip().lower()

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
OPENAI_API_BASE = os.getenv("OPENAI_API_BASE", "https://api.openai.com/v1").rstrip("/")


def _detect_containerized_default_ollama_url() -> str:
    """Return a reasonable default Ollama URL depending on the runtime host."""
    env_url = os.getenv("OLLAMA_BASE_URL")
    if env_url:
        return env_url.rstrip("/")

    docker_marker = Path("/.dockerenv")
    if docker_marker.exists():
        # When running inside Docker we need to reach the host-bound Ollama instance.
        return "http://host.docker.internal:11434"
    return "http://localhost:11434"


OLLAMA_BASE_URL = _detect_containerized_default_ollama_url()

GRADER_MODEL = os.getenv("GRADER_MODEL", "gpt-4o-mini").strip()
LINE_RATING_MODEL = os.getenv("LINE_RATING_MODEL", GRADER_MODEL).strip()
GRADER_TEMPERATURE = _env_float("GRADER_TEMPERATURE", 0.1)
LINE_RATING_TEMPERATURE = _env_float("LINE_RATING_TEMPERATURE", 0.3)
GRADER_MAX_TOKENS = _env_int("GRADER_MAX_TOKENS", 3500)
LINE_RATING_MAX_TOKENS = _env_int("LINE_RATING_MAX_TOKENS", 200)

LLM_TIMEOUT_SECONDS = _env_float("LLM_TIMEOUT_SECONDS", 30.0)
LLM_RETRY_ATTEMPTS = max(1, _env_int("LLM_RETRY_ATTEMPTS", 3))
LLM_RETRY_BASE_DELAY_SECONDS = max(0.0, _env_float("LLM_RETRY_BASE_DELAY_SECONDS", 1.0))
LLM_RETRY_MAX_DELAY_SECONDS = max(0.0, _env_float("LLM_RETRY_MAX_DELAY_SECONDS", 10.0))

# Overall wall-clock budget for one grading request.
GRADING_BUDGET_SECONDS = _env_float("GRADING_BUDGET_SECONDS", 60.0)

PHRASE_CACHE_MEMORY_CAPACITY = max(1, _env_int("PHRASE_CACHE_MEMORY_CAPACITY", 2048))
LINE_RATING_MAX_WORKERS = max(1, _env_int("LINE_RATING_MAX_WORKERS", 3))


def get_webhook_secret() -> Optional[str]:
    """Return the shared secret used to sign voice-provider webhooks, if any."""
    secret = os.getenv("ELEVENLABS_WEBHOOK_SECRET", "").strip()
    return secret or None
