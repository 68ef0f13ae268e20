from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any, List

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator, model_validator

from harmonia.logging import get_logger

logger = get_logger(__name__)

_MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _load_or_create_secret(name: str, shared_fs_root: str) -> str:
    """Return a persisted signing secret, generating it on first use.

    The secret lives at ``<shared_fs_root>/.<name>`` with 0600 permissions so
    tokens stay valid across restarts.
    """
    fs_root = Path(shared_fs_root)
    secret_path = fs_root / f".{name}"
    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may already exist with different ownership (e.g. in a container)
        pass

    if secret_path.exists() and not secret_path.is_symlink():
        try:
            persisted = secret_path.read_text().strip()
            if len(persisted) >= _MIN_SECRET_LENGTH:
                return persisted
        except OSError as exc:
            logger.error("jwt_secret_read_failed", error=str(exc), path=str(secret_path))

    generated = secrets.token_urlsafe(64)
    tmp_path = None
    try:
        # Write to a temp file then rename so readers never see a partial secret
        fd, tmp_path = tempfile.mkstemp(dir=str(fs_root), prefix=f".{name}_", suffix=".tmp")
        try:
            os.write(fd, generated.encode())
            os.fchmod(fd, 0o600)
        finally:
            os.close(fd)
        os.rename(tmp_path, str(secret_path))
    except OSError as exc:
        if tmp_path and os.path.exists(tmp_path):
            os.unlink(tmp_path)
        logger.error("jwt_secret_persist_failed", error=str(exc), path=str(secret_path))
        raise RuntimeError(
            f"Unable to persist {name}; set it explicitly or make SHARED_FS_ROOT writable"
        ) from exc
    logger.info("jwt_secret_generated", name=name, path=str(secret_path))
    return generated


class Settings(BaseModel):
    """Runtime settings for the auth service."""

    database_url: str = env_field("postgresql://localhost:5432/harmonia", "DATABASE_URL")
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    shared_fs_root: str = env_field("/srv/harmonia", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    use_memory_cache: bool = env_field(
        False,
        "USE_MEMORY_CACHE",
        description="Keep sessions and OTP codes in process memory instead of Redis (dev/test only)",
    )
    allow_signup: bool = env_field(True, "ALLOW_SIGNUP")

    # Token signing
    jwt_access_secret: str | None = env_field(None, "JWT_ACCESS_SECRET", validate_default=True)
    jwt_refresh_secret: str | None = env_field(None, "JWT_REFRESH_SECRET", validate_default=True)
    jwt_issuer: str = env_field("harmonia", "JWT_ISSUER")
    jwt_audience: str = env_field("harmonia-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", ge=1)
    refresh_token_ttl_minutes: int = env_field(7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES", ge=1)

    # One-time codes
    otp_ttl_seconds: int = env_field(120, "OTP_TTL_SECONDS", ge=1)
    otp_digits: int = env_field(6, "OTP_DIGITS", ge=4, le=10)

    # argon2id cost parameters
    password_hash_time_cost: int = env_field(3, "PASSWORD_HASH_TIME_COST", ge=1)
    password_hash_memory_cost: int = env_field(65536, "PASSWORD_HASH_MEMORY_COST", ge=8)
    password_hash_parallelism: int = env_field(4, "PASSWORD_HASH_PARALLELISM", ge=1)

    # Transport
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    access_cookie_name: str = env_field("Authentication", "ACCESS_COOKIE_NAME")
    refresh_cookie_name: str = env_field("Refresh", "REFRESH_COOKIE_NAME")
    cors_allow_origins: List[str] = env_field([], "CORS_ALLOW_ORIGINS")

    # Email
    smtp_host: str | None = env_field(None, "SMTP_HOST")
    smtp_port: int = env_field(587, "SMTP_PORT")
    smtp_user: str | None = env_field(None, "SMTP_USER")
    smtp_password: str | None = env_field(None, "SMTP_PASSWORD")
    smtp_use_tls: bool = env_field(True, "SMTP_USE_TLS")
    email_from_address: str = env_field("noreply@harmonia.local", "EMAIL_FROM_ADDRESS")
    email_from_name: str = env_field("Harmonia", "EMAIL_FROM_NAME")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, Any] = {}
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
    def access_token_ttl_seconds(self) -> int:
        return self.access_token_ttl_minutes * 60

    @property
    def refresh_token_ttl_seconds(self) -> int:
        return self.refresh_token_ttl_minutes * 60

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("jwt_access_secret", "jwt_refresh_secret")
    @classmethod
    def _check_secret_length(cls, value: str | None, info: ValidationInfo) -> str | None:
        if value and len(value) < _MIN_SECRET_LENGTH:
            raise ValueError(f"{info.field_name} must be at least {_MIN_SECRET_LENGTH} characters")
        return value or None

    @model_validator(mode="after")
    def _ensure_secrets(self) -> "Settings":
        # Missing secrets are generated under this instance's shared_fs_root
        if not self.jwt_access_secret:
            self.jwt_access_secret = _load_or_create_secret("jwt_access_secret", self.shared_fs_root)
        if not self.jwt_refresh_secret:
            self.jwt_refresh_secret = _load_or_create_secret("jwt_refresh_secret", self.shared_fs_root)
        if self.jwt_access_secret == self.jwt_refresh_secret:
            raise ValueError("access and refresh tokens must be signed with different secrets")
        return self


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
