"""Tests for settings and the error hierarchy."""

import pytest
from pydantic import ValidationError

from storyloom.domain.errors import GenerationError, StorageQuotaError, SessionStoreError
from storyloom.infrastructure.config import Settings


class TestSettings:
    """Tests for Settings.from_env."""

    def test_defaults(self, monkeypatch):
        for name in ("SAVE_DIR", "SAVE_DEBOUNCE_SECONDS", "ENABLE_ILLUSTRATIONS"):
            monkeypatch.delenv(f"STORYLOOM_{name}", raising=False)

        settings = Settings.from_env()

        assert settings.save_dir is None
        assert settings.save_debounce_seconds == 1.0
        assert settings.save_max_attempts == 3
        assert settings.enable_illustrations is True
        assert settings.reasoning_open_tag == "<think>"

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("STORYLOOM_SAVE_DEBOUNCE_SECONDS", "0.25")
        monkeypatch.setenv("STORYLOOM_SAVE_MAX_ATTEMPTS", "5")
        monkeypatch.setenv("STORYLOOM_ENABLE_ILLUSTRATIONS", "false")
        monkeypatch.setenv("STORYLOOM_REASONING_OPEN_TAG", "<reason>")

        settings = Settings.from_env()

        assert settings.save_debounce_seconds == 0.25
        assert settings.save_max_attempts == 5
        assert settings.enable_illustrations is False
        assert settings.reasoning_open_tag == "<reason>"

    def test_invalid_value_rejected(self, monkeypatch):
        monkeypatch.setenv("STORYLOOM_SAVE_MAX_ATTEMPTS", "0")

        with pytest.raises(ValidationError):
            Settings.from_env()


class TestErrors:
    """Tests for error classification."""

    @pytest.mark.parametrize("status,code,retryable", [
        (401, "auth_error", False),
        (403, "auth_error", False),
        (404, "api_error", False),
        (429, "api_error", True),
        (503, "api_error", True),
    ])
    def test_from_status(self, status, code, retryable):
        error = GenerationError.from_status(status)

        assert error.code == code
        assert error.retryable is retryable
        assert error.status_code == status

    def test_unknown_code_rejected(self):
        with pytest.raises(ValueError):
            GenerationError("boom", code="mystery")

    def test_quota_error_is_retryable_store_error(self):
        error = StorageQuotaError()

        assert isinstance(error, SessionStoreError)
        assert error.retryable is True
