"""Tests for Settings defaults, env overrides and validation."""

import pytest
from pydantic import ValidationError

from maitre.config import Settings


class TestSettings:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        s = Settings(_env_file=None)
        assert s.token_budget == 1200
        assert s.max_round_trips == 10
        assert s.narration_enabled is True
        assert s.summarizer == "chunk"
        assert s.checkpoint_backend == "memory"
        assert s.model_max_retries == 3

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("MAITRE_TOKEN_BUDGET", "800")
        monkeypatch.setenv("MAITRE_NARRATION_ENABLED", "false")
        s = Settings(_env_file=None)
        assert s.token_budget == 800
        assert s.narration_enabled is False

    def test_unprefixed_secrets(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-test")
        monkeypatch.setenv("BACKEND_API_KEY", "be-test")
        s = Settings(_env_file=None)
        assert s.anthropic_api_key == "sk-test"
        assert s.backend_api_key == "be-test"

    def test_db_url(self, monkeypatch):
        monkeypatch.setenv("DB_HOST", "db")
        monkeypatch.setenv("DB_PORT", "6543")
        s = Settings(_env_file=None)
        assert s.db_url.startswith("postgresql+asyncpg://")
        assert s.db_url.endswith("@db:6543/maitre")

    @pytest.mark.parametrize(
        "field,value",
        [("token_budget", 0), ("max_round_trips", 0), ("model_max_retries", -1), ("summary_chunk_chars", 0)],
    )
    def test_rejects_bad_limits(self, field, value):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, **{field: value})

    def test_rejects_unknown_backend(self):
        with pytest.raises(ValidationError):
            Settings(_env_file=None, checkpoint_backend="redis")
