"""Tests for Settings: defaults, env loading and range validation."""

import pytest
from pydantic import ValidationError

from kaldi.config import Settings


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch, tmp_path):
    """Isolate from the developer's environment and any local .env file."""
    monkeypatch.chdir(tmp_path)
    for name in ("ANTHROPIC_API_KEY", "ANTHROPIC_AUTH_TOKEN", "OPENAI_API_KEY", "OPENROUTER_API_KEY"):
        monkeypatch.delenv(name, raising=False)


class TestSettings:
    def test_defaults(self):
        settings = Settings()
        assert settings.provider == "anthropic"
        assert settings.permission_mode == "safe"
        assert settings.max_turns == 50
        assert settings.max_parallel_tools == 4
        assert settings.subagent_max_concurrent == 3
        assert settings.subagent_timeout == 600.0
        assert settings.compaction_threshold == 0.8

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("KALDI_MAX_TURNS", "12")
        monkeypatch.setenv("KALDI_PERMISSION_MODE", "plan")
        monkeypatch.setenv("KALDI_PROVIDER", "ollama")
        settings = Settings()
        assert settings.max_turns == 12
        assert settings.permission_mode == "plan"
        assert settings.provider == "ollama"

    def test_provider_keys_use_conventional_names(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-test")
        monkeypatch.setenv("OPENAI_API_KEY", "sk-openai")
        settings = Settings()
        assert settings.anthropic_api_key == "sk-ant-test"
        assert settings.openai_api_key == "sk-openai"

    def test_summary_model_falls_back_to_main_model(self):
        assert Settings(model="big").summary_model == "big"
        assert Settings(model="big", background_model="small").summary_model == "small"

    def test_env_file(self, tmp_path):
        (tmp_path / ".env").write_text("KALDI_HOOK_TIMEOUT=5\n")
        assert Settings().hook_timeout == 5.0

    @pytest.mark.parametrize(
        "overrides",
        [
            {"compaction_threshold": 0.0},
            {"compaction_threshold": 1.5},
            {"max_parallel_tools": 0},
            {"subagent_max_concurrent": 0},
            {"subagent_timeout": 0},
            {"compaction_keep_recent": 1},
            {"permission_mode": "yolo"},
            {"provider": "carrier-pigeon"},
        ],
    )
    def test_invalid_values_rejected(self, overrides):
        with pytest.raises(ValidationError):
            Settings(**overrides)
