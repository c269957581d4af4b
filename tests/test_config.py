import pytest
from pydantic import ValidationError

from personachat.config import Settings

ACCESS = "a" * 40
REFRESH = "r" * 40


def test_defaults(tmp_path):
    settings = Settings(data_dir=str(tmp_path), jwt_secret=ACCESS, jwt_refresh_secret=REFRESH)

    assert settings.access_token_ttl_seconds == 15 * 60
    assert settings.remember_me_access_token_ttl_seconds == 7 * 24 * 3600
    assert settings.refresh_token_ttl_seconds == 30 * 24 * 3600
    assert settings.password_reset_ttl_hours == 24
    assert settings.email_verification_ttl_days == 7
    assert settings.max_failed_login_attempts == 5
    assert settings.lockout_hours == 12
    assert settings.revoke_sessions_on_password_reset is False
    assert settings.db_path == tmp_path / "db.json"


def test_secrets_generated_once_and_persisted(tmp_path):
    first = Settings(data_dir=str(tmp_path))
    second = Settings(data_dir=str(tmp_path))

    assert len(first.jwt_secret) >= 32
    assert first.jwt_secret != first.jwt_refresh_secret
    assert (first.jwt_secret, first.jwt_refresh_secret) == (
        second.jwt_secret,
        second.jwt_refresh_secret,
    )
    assert (tmp_path / ".jwt_secret").read_text() == first.jwt_secret


def test_identical_secrets_rejected(tmp_path):
    with pytest.raises(ValidationError):
        Settings(data_dir=str(tmp_path), jwt_secret=ACCESS, jwt_refresh_secret=ACCESS)


def test_short_secret_rejected(tmp_path):
    with pytest.raises(ValidationError):
        Settings(data_dir=str(tmp_path), jwt_secret="short", jwt_refresh_secret=REFRESH)


def test_from_env(tmp_path, monkeypatch):
    monkeypatch.setenv("DATA_DIR", str(tmp_path))
    monkeypatch.setenv("JWT_SECRET", ACCESS)
    monkeypatch.setenv("JWT_REFRESH_SECRET", REFRESH)
    monkeypatch.setenv("MAX_FAILED_LOGIN_ATTEMPTS", "3")
    monkeypatch.setenv("REVOKE_SESSIONS_ON_PASSWORD_RESET", "true")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example.com, https://b.example.com")

    settings = Settings.from_env()

    assert settings.max_failed_login_attempts == 3
    assert settings.revoke_sessions_on_password_reset is True
    assert settings.cors_allow_origins == ["https://a.example.com", "https://b.example.com"]
