"""Tests for environment-driven settings."""

from __future__ import annotations

from collections.abc import Iterator

import pytest

from src.config import ConfigurationError, get_settings


@pytest.fixture
def fresh_settings() -> Iterator[None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


class TestSettings:
    def test_loads_from_environment(self, fresh_settings: None) -> None:
        settings = get_settings()
        assert settings.terra_signing_secret == "whsec_test_secret"
        assert settings.cors_origins == ["*"]

    def test_missing_variables_fail_fast(
        self, fresh_settings: None, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.delenv("TERRA_SIGNING_SECRET", raising=False)
        monkeypatch.delenv("SUPABASE_DB_URL", raising=False)

        with pytest.raises(ConfigurationError) as exc_info:
            get_settings()

        message = str(exc_info.value)
        assert "TERRA_SIGNING_SECRET" in message
        assert "SUPABASE_DB_URL" in message
