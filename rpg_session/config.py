"""Runtime settings, read from the environment (and ``.env`` in the project root)."""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel

from rpg_session.coordinator import IDLE_TIMEOUT
from rpg_session.llm import ProviderFormat

ROOT = Path(__file__).parent.parent
DEFAULT_DATA_DIR = ROOT / "data"


class Settings(BaseModel):
    data_dir: Path = DEFAULT_DATA_DIR

    # Narration backend. An empty provider URL selects EchoLLM.
    llm_provider_url: str = ""
    llm_api_key: str = ""
    llm_provider_format: ProviderFormat = "openai"
    llm_model: str = ""
    llm_timeout: float = 120.0

    narration_max_attempts: int = 2
    narration_backoff_ms: int = 250
    narration_max_tokens: int = 1000

    session_idle_timeout: float = IDLE_TIMEOUT


_ENV_VARS = {
    "DATA_DIR": "data_dir",
    "LLM_PROVIDER_URL": "llm_provider_url",
    "LLM_API_KEY": "llm_api_key",
    "LLM_PROVIDER_FORMAT": "llm_provider_format",
    "LLM_MODEL": "llm_model",
    "LLM_TIMEOUT": "llm_timeout",
    "NARRATION_MAX_ATTEMPTS": "narration_max_attempts",
    "NARRATION_BACKOFF_MS": "narration_backoff_ms",
    "NARRATION_MAX_TOKENS": "narration_max_tokens",
    "SESSION_IDLE_TIMEOUT": "session_idle_timeout",
}


def load_settings(env_file: Path | None = ROOT / ".env") -> Settings:
    """Build Settings from environment variables; unset ones keep their defaults.

    Values already in the environment win over the ``.env`` file.
    """
    if env_file is not None:
        load_dotenv(env_file)
    values = {field: os.getenv(var) for var, field in _ENV_VARS.items()}
    return Settings(**{k: v for k, v in values.items() if v not in (None, "")})
