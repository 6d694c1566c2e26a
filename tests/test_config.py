"""Tests for environment-driven settings."""

import pytest
from pydantic import ValidationError

from reliefgate.config import Settings
from reliefgate.service.attempts import AttemptPolicy


def test_from_env_reads_named_variables(monkeypatch):
    monkeypatch.setenv("OTP_SEND_LIMIT_PER_HOUR", "5")
    monkeypatch.setenv("LOCKOUT_DURATION_MINUTES", "15")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://ops.example.org, https://field.example.org")

    settings = Settings.from_env()

    assert settings.otp_send_limit_per_hour == 5
    assert settings.lockout_duration_minutes == 15
    assert settings.cors_allow_origins == ["https://ops.example.org", "https://field.example.org"]


def test_defaults_match_credential_policy():
    settings = Settings(jwt_secret="x" * 40)

    assert settings.otp_expiry_minutes == 5
    assert settings.otp_max_attempts == 3
    assert settings.backup_code_count == 8
    assert settings.reset_token_ttl_minutes == 60
    assert settings.refresh_token_ttl_days == 30


def test_policy_built_from_settings():
    settings = Settings(jwt_secret="x" * 40, ip_attempt_limit_per_hour=7, lockout_failed_attempts=2)

    policy = AttemptPolicy.from_settings(settings)

    assert policy.ip_limit == 7
    assert policy.lockout_threshold == 2
    assert policy.send_limit == 3


@pytest.mark.parametrize("field", ["otp_max_attempts", "lockout_failed_attempts", "backup_code_count"])
def test_limits_must_be_positive(field):
    with pytest.raises(ValidationError):
        Settings(jwt_secret="x" * 40, **{field: 0})


def test_missing_jwt_secret_is_generated_and_persisted(tmp_path, monkeypatch):
    monkeypatch.setenv("STATE_DIR", str(tmp_path))

    first = Settings()
    second = Settings()

    assert len(first.jwt_secret) >= 32
    assert first.jwt_secret == second.jwt_secret
    assert (tmp_path / ".jwt_secret").read_text() == first.jwt_secret
