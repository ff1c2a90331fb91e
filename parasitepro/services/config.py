"""Runtime settings read from the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional


def _env_bool(name: str, default: str = "0") -> bool:
    v = str(os.environ.get(name, default)).strip().lower()
    return v in ("1", "true", "yes", "y", "on")


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.environ.get(name, default))
    except (TypeError, ValueError):
        return float(default)


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.environ.get(name, default))
    except (TypeError, ValueError):
        return int(default)


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./parasitepro.db"
    storage_dir: str = "./storage"
    storage_base_url: str = "/storage"

    anthropic_model: str = "claude-opus-4-5"
    openai_model: str = "gpt-4o"
    provider_timeout_s: float = 60.0
    provider_max_tokens: int = 4096

    max_upload_bytes: int = 10 * 1024 * 1024
    run_detached: bool = True
    reference_catalog_path: Optional[str] = None

    share_base_url: str = "http://localhost:3000"
    share_expiry_days: int = 30


def load_settings() -> Settings:
    return Settings(
        database_url=os.getenv("DATABASE_URL", Settings.database_url),
        storage_dir=os.getenv("STORAGE_DIR", Settings.storage_dir),
        storage_base_url=os.getenv("STORAGE_BASE_URL", Settings.storage_base_url).rstrip("/"),
        anthropic_model=os.getenv("ANTHROPIC_MODEL", Settings.anthropic_model),
        openai_model=os.getenv("OPENAI_MODEL", Settings.openai_model),
        provider_timeout_s=_env_float("PROVIDER_TIMEOUT_S", Settings.provider_timeout_s),
        provider_max_tokens=_env_int("PROVIDER_MAX_TOKENS", Settings.provider_max_tokens),
        max_upload_bytes=_env_int("MAX_UPLOAD_BYTES", Settings.max_upload_bytes),
        run_detached=_env_bool("ANALYSIS_RUN_DETACHED", "1"),
        reference_catalog_path=os.getenv("REFERENCE_CATALOG_PATH") or None,
        share_base_url=os.getenv("SHARE_BASE_URL", Settings.share_base_url).rstrip("/"),
        share_expiry_days=_env_int("SHARE_EXPIRY_DAYS", Settings.share_expiry_days),
    )


# API keys are resolved at call time: a missing key is a provider failure,
# not a startup failure.


def get_anthropic_api_key() -> str:
    key = os.getenv("ANTHROPIC_API_KEY")
    if not key:
        raise RuntimeError("Missing ANTHROPIC_API_KEY for the primary vision provider")
    return key


def get_openai_api_key() -> str:
    # Primary: OPENAI_API_KEY (recommended). Also accept LLM_API_KEY for local debugging.
    key = os.getenv("OPENAI_API_KEY") or os.getenv("LLM_API_KEY")
    if not key:
        raise RuntimeError("Missing OPENAI_API_KEY (or LLM_API_KEY) for the fallback vision provider")
    return key
