from __future__ import annotations

import pytest

from parasitepro.services import config


def test_load_settings_defaults(monkeypatch) -> None:
    for key in ("DATABASE_URL", "ANALYSIS_RUN_DETACHED", "PROVIDER_TIMEOUT_S", "MAX_UPLOAD_BYTES"):
        monkeypatch.delenv(key, raising=False)

    settings = config.load_settings()

    assert settings.database_url == config.Settings.database_url
    assert settings.run_detached is True
    assert settings.max_upload_bytes == 10 * 1024 * 1024


def test_load_settings_reads_env(monkeypatch) -> None:
    monkeypatch.setenv("DATABASE_URL", "sqlite://")
    monkeypatch.setenv("STORAGE_BASE_URL", "https://cdn.example.test/img/")
    monkeypatch.setenv("ANALYSIS_RUN_DETACHED", "no")
    monkeypatch.setenv("PROVIDER_TIMEOUT_S", "12.5")
    monkeypatch.setenv("MAX_UPLOAD_BYTES", "not-a-number")
    monkeypatch.setenv("SHARE_BASE_URL", "https://app.example.test/")
    monkeypatch.setenv("SHARE_EXPIRY_DAYS", "7")

    settings = config.load_settings()

    assert settings.database_url == "sqlite://"
    assert settings.storage_base_url == "https://cdn.example.test/img"
    assert settings.run_detached is False
    assert settings.provider_timeout_s == 12.5
    assert settings.max_upload_bytes == config.Settings.max_upload_bytes
    assert settings.share_base_url == "https://app.example.test"
    assert settings.share_expiry_days == 7


def test_api_keys_resolved_at_call_time(monkeypatch) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("LLM_API_KEY", raising=False)
    with pytest.raises(RuntimeError, match="Missing OPENAI_API_KEY"):
        config.get_openai_api_key()

    monkeypatch.setenv("LLM_API_KEY", "local-key")
    assert config.get_openai_api_key() == "local-key"

    monkeypatch.setenv("ANTHROPIC_API_KEY", "a-key")
    assert config.get_anthropic_api_key() == "a-key"
