from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from personachat.logging import get_logger

logger = get_logger(__name__)

MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _load_or_create_secret(root: Path, name: str) -> str:
    """Return a signing secret persisted under ``root``, generating it once.

    Tokens have to stay valid across restarts, so the generated value is
    written atomically (temp file then rename) with owner-only permissions.
    """

    secret_path = root / name
    try:
        root.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(root))

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if len(persisted) >= MIN_SECRET_LENGTH:
                return persisted
        except OSError as exc:
            logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
        fd, tmp_path = tempfile.mkstemp(dir=str(root), prefix=f"{name}_", suffix=".tmp")
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.replace(tmp_path, secret_path)
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"Unable to persist {name}; set the secret env var or make DATA_DIR writable"
        ) from exc
    logger.warning("jwt_secret_generated", path=str(secret_path))
    return generated


class Settings(BaseModel):
    """Runtime settings for the PersonaChat API."""

    data_dir: str = env_field("./data", "DATA_DIR")
    db_filename: str = env_field("db.json", "DB_FILENAME")
    backup_dir: str = env_field("./backups", "BACKUP_DIR")
    redis_url: str | None = env_field(
        None, "REDIS_URL", description="Optional Redis for shared rate limiting"
    )

    jwt_secret: str | None = env_field(None, "JWT_SECRET")
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET")
    access_token_ttl_seconds: int = env_field(15 * 60, "ACCESS_TOKEN_TTL_SECONDS", gt=0)
    remember_me_access_token_ttl_seconds: int = env_field(
        7 * 24 * 3600, "REMEMBER_ME_ACCESS_TOKEN_TTL_SECONDS", gt=0
    )
    refresh_token_ttl_seconds: int = env_field(
        30 * 24 * 3600, "REFRESH_TOKEN_TTL_SECONDS", gt=0
    )
    password_reset_ttl_hours: int = env_field(24, "PASSWORD_RESET_TTL_HOURS", gt=0)
    email_verification_ttl_days: int = env_field(7, "EMAIL_VERIFICATION_TTL_DAYS", gt=0)
    revoke_sessions_on_password_reset: bool = env_field(
        False,
        "REVOKE_SESSIONS_ON_PASSWORD_RESET",
        description="Revoke every refresh token of a user when a reset token is redeemed",
    )

    max_failed_login_attempts: int = env_field(5, "MAX_FAILED_LOGIN_ATTEMPTS", ge=1)
    lockout_hours: int = env_field(12, "LOCKOUT_HOURS", ge=1)
    password_hash_time_cost: int = env_field(
        3,
        "PASSWORD_HASH_TIME_COST",
        ge=1,
        le=10,
        description="argon2 time cost; fixed for the lifetime of the process",
    )

    auth_rate_limit_per_window: int = env_field(5, "AUTH_RATE_LIMIT_PER_WINDOW", ge=1)
    auth_rate_limit_window_seconds: int = env_field(
        15 * 60, "AUTH_RATE_LIMIT_WINDOW_SECONDS", ge=1
    )
    token_cleanup_interval_seconds: int = env_field(
        3600, "TOKEN_CLEANUP_INTERVAL_SECONDS", ge=0
    )

    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("PersonaChat", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:3000", "APP_BASE_URL")

    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors; enables runtime resets",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("jwt_secret", "jwt_refresh_secret")
    @classmethod
    def _validate_secret_length(cls, value: str | None) -> str | None:
        if value is not None and len(value) < MIN_SECRET_LENGTH:
            raise ValueError(f"must be at least {MIN_SECRET_LENGTH} characters")
        return value

    @model_validator(mode="after")
    def _ensure_jwt_secrets(self) -> "Settings":
        root = Path(self.data_dir)
        if not self.jwt_secret:
            self.jwt_secret = _load_or_create_secret(root, ".jwt_secret")
        if not self.jwt_refresh_secret:
            self.jwt_refresh_secret = _load_or_create_secret(root, ".jwt_refresh_secret")
        if self.jwt_secret == self.jwt_refresh_secret:
            raise ValueError("JWT_SECRET and JWT_REFRESH_SECRET must differ")
        return self

    @property
    def db_path(self) -> Path:
        return Path(self.data_dir) / self.db_filename


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
