"""Settings parsing and validation."""

import os

import pytest
from pydantic import ValidationError

from icsession.config import DEFAULT_STEP_UP_POLICY, Settings, get_settings, reset_settings_cache
from icsession.logging import _redact_secrets


class TestSettingsParsing:
    def test_csv_lists(self, make_settings):
        settings = make_settings(trusted_applications=" mail, calendar ,,", trusted_issuers="")
        assert settings.trusted_applications == ["mail", "calendar"]
        assert settings.trusted_issuers == []

    def test_default_policy(self, make_settings):
        assert make_settings().step_up_policy == DEFAULT_STEP_UP_POLICY

    def test_policy_from_json(self, make_settings):
        settings = make_settings(step_up_policy='{"export_data": "MFA_VERIFIED"}')
        assert settings.step_up_policy == {"export_data": "mfa_verified"}

    @pytest.mark.parametrize("raw", ["not json", '["a"]', '{"x": "platinum"}'])
    def test_bad_policy(self, make_settings, raw):
        with pytest.raises(ValidationError):
            make_settings(step_up_policy=raw)

    def test_backoff_cap_below_base(self, make_settings):
        with pytest.raises(ValidationError):
            make_settings(backoff_base_ms=5000, backoff_cap_ms=1000)

    def test_short_jwt_secret(self, make_settings):
        with pytest.raises(ValidationError):
            make_settings(jwt_secret="too-short")

    def test_rate_limit_for(self, make_settings):
        settings = make_settings(rate_limit_refresh_per_window=7)
        assert settings.rate_limit_for("refresh") == 7
        with pytest.raises(ValueError):
            settings.rate_limit_for("upload")


class TestJwtSecretPersistence:
    def test_generated_secret_survives_restart(self, tmp_path):
        first = Settings(state_dir=str(tmp_path), jwt_secret=None)
        second = Settings(state_dir=str(tmp_path), jwt_secret=None)
        assert len(first.jwt_secret) >= 32
        assert first.jwt_secret == second.jwt_secret
        secret_file = tmp_path / ".jwt_secret"
        assert secret_file.read_text() == first.jwt_secret
        assert oct(secret_file.stat().st_mode & 0o777) == "0o600"


class TestFromEnv:
    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("TRUSTED_APPLICATIONS", "mail,calendar")
        monkeypatch.setenv("STEP_UP_POLICY", '{"link_identity": "basic"}')
        monkeypatch.setenv("SESSION_CACHE_TTL_MS", "250")
        settings = Settings.from_env()
        assert settings.trusted_applications == ["mail", "calendar"]
        assert settings.step_up_policy == {"link_identity": "basic"}
        assert settings.session_cache_ttl_ms == 250
        assert settings.jwt_secret == os.environ["JWT_SECRET"]

    def test_get_settings_is_cached(self, monkeypatch):
        reset_settings_cache()
        first = get_settings()
        monkeypatch.setenv("SESSION_CACHE_TTL_MS", "123")
        assert get_settings() is first
        reset_settings_cache()
        assert get_settings().session_cache_ttl_ms == 123
        reset_settings_cache()


class TestLogRedaction:
    def test_secret_fields_are_masked(self):
        event = _redact_secrets(
            None,
            "info",
            {
                "event": "login",
                "password": "correct-horse",
                "refresh_token": "abcdefgh",
                "code": "123",
                "error_code": "code_mismatch",
                "principal_id": "p-1",
            },
        )
        assert event["password"] == "co***se"
        assert event["refresh_token"] == "ab***gh"
        assert event["code"] == "***"
        assert event["error_code"] == "code_mismatch"
        assert event["principal_id"] == "p-1"
