from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from notekeep.logging import get_logger

logger = get_logger(__name__)

DEFAULT_FS_ROOT = "/srv/notekeep"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the authentication core."""

    database_url: str = env_field(
        "postgresql://localhost:5432/notekeep", "DATABASE_URL"
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field(DEFAULT_FS_ROOT, "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Deterministic testing behaviors (sync redis client, resettable runtime)",
    )

    # Tokens
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("notekeep", "JWT_ISSUER")
    jwt_audience: str = env_field("notekeep-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", ge=1)
    refresh_token_ttl_days_short: int = env_field(
        1, "REFRESH_TOKEN_TTL_DAYS_SHORT", ge=1
    )
    refresh_token_ttl_days_long: int = env_field(
        30,
        "REFRESH_TOKEN_TTL_DAYS_LONG",
        ge=1,
        description="Refresh token lifetime when the user asks to be remembered",
    )

    # Lockout
    login_lockout_window_minutes: int = env_field(
        15, "LOGIN_LOCKOUT_WINDOW_MINUTES", ge=1
    )
    login_max_attempts_identifier: int = env_field(
        5, "LOGIN_MAX_ATTEMPTS_IDENTIFIER", ge=1
    )
    login_max_attempts_origin: int = env_field(20, "LOGIN_MAX_ATTEMPTS_ORIGIN", ge=1)
    login_attempt_retention_days: int = env_field(
        30, "LOGIN_ATTEMPT_RETENTION_DAYS", ge=1
    )

    # Second factor
    otp_ttl_minutes: int = env_field(10, "OTP_TTL_MINUTES", ge=1)
    otp_max_attempts: int = env_field(5, "OTP_MAX_ATTEMPTS", ge=1)
    otp_resend_interval_seconds: int = env_field(
        60, "OTP_RESEND_INTERVAL_SECONDS", ge=0
    )
    trusted_device_ttl_days: int = env_field(30, "TRUSTED_DEVICE_TTL_DAYS", ge=1)

    # Email ownership and password reset
    email_verification_ttl_hours: int = env_field(
        24, "EMAIL_VERIFICATION_TTL_HOURS", ge=1
    )
    password_reset_ttl_minutes: int = env_field(30, "PASSWORD_RESET_TTL_MINUTES", ge=1)
    password_reset_interval_seconds: int = env_field(
        300,
        "PASSWORD_RESET_INTERVAL_SECONDS",
        ge=0,
        description="Minimum spacing between reset emails for one account",
    )

    # Password hashing
    password_hash_workers: int = env_field(
        4,
        "PASSWORD_HASH_WORKERS",
        ge=1,
        description="Upper bound on concurrent argon2 hash/verify operations",
    )
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST", ge=1)
    argon2_memory_cost: int = env_field(65536, "ARGON2_MEMORY_COST", ge=8)
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM", ge=1)

    # Timeouts
    store_timeout_seconds: float = env_field(10.0, "STORE_TIMEOUT_SECONDS", gt=0)
    email_timeout_seconds: float = env_field(15.0, "EMAIL_TIMEOUT_SECONDS", gt=0)

    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str | None = env_field(None, "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Notekeep", "EMAIL_FROM_NAME")
    app_base_url: str = env_field("http://localhost:8000", "APP_BASE_URL")

    # Admin-managed defaults (stored settings row wins once present)
    auth_disabled: bool = env_field(
        False,
        "AUTH_DISABLED",
        description="Resolve every request to the system admin (overridable via admin settings)",
    )
    allow_registration: bool = env_field(
        True,
        "ALLOW_REGISTRATION",
        description="Allow new accounts (overridable via admin settings)",
    )

    # HTTP
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    cors_allow_origins: str = env_field(
        "",
        "CORS_ALLOW_ORIGINS",
        description="Comma separated list of allowed origins; empty disables CORS",
    )
    maintenance_interval_seconds: int = env_field(
        3600, "MAINTENANCE_INTERVAL_SECONDS", ge=1
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

    @property
    def cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_allow_origins.split(",") if o.strip()]

    @field_validator("refresh_token_ttl_days_long")
    @classmethod
    def _validate_long_ttl(cls, value: int, info: ValidationInfo) -> int:
        short = info.data.get("refresh_token_ttl_days_short")
        if short is not None and value < short:
            raise ValueError("REFRESH_TOKEN_TTL_DAYS_LONG must be >= REFRESH_TOKEN_TTL_DAYS_SHORT")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        # Persist a generated secret so issued tokens survive restarts
        fs_root = Path(os.getenv("SHARED_FS_ROOT", DEFAULT_FS_ROOT))
        secret_path = fs_root / ".jwt_secret"

        try:
            fs_root.mkdir(parents=True, exist_ok=True)
            os.chmod(fs_root, 0o700)
        except PermissionError:
            # Directory may be owned by another user inside a container
            pass
        except OSError as exc:
            logger.warning("jwt_secret_dir_setup", error=str(exc), path=str(fs_root))

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(fs_root), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
            ) from exc
        return generated


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
