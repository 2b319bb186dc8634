from __future__ import annotations

import os
import secrets
import tempfile
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from vaultsync.logging import get_logger

logger = get_logger(__name__)

_MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def _load_or_create_secret(name: str) -> str:
    """Return a persisted signing secret, generating it on first use.

    Secrets live under SHARED_FS_ROOT so tokens stay valid across restarts.
    """
    fs_root = Path(os.getenv("SHARED_FS_ROOT", "/srv/vaultsync"))
    secret_path = fs_root / f".{name}"

    try:
        fs_root.mkdir(parents=True, exist_ok=True)
        os.chmod(fs_root, 0o700)
    except PermissionError:
        # Directory may already exist with different permissions (e.g., in container)
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
            f"Unable to persist {name}; set it via env or make SHARED_FS_ROOT writable"
        ) from exc
    return generated


class Settings(BaseModel):
    """Runtime settings resolved from the environment and an optional .env file."""

    database_url: str = env_field(
        "postgresql://localhost:5432/vaultsync", "DATABASE_URL"
    )
    database_pool_timeout: float = env_field(10.0, "DATABASE_POOL_TIMEOUT", gt=0)
    database_statement_timeout_ms: int = env_field(
        5000, "DATABASE_STATEMENT_TIMEOUT_MS", ge=0
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_socket_timeout: float = env_field(5.0, "REDIS_SOCKET_TIMEOUT")
    shared_fs_root: str = env_field("/srv/vaultsync", "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors and allow runtime resets.",
    )
    build_sha: str = env_field("dev", "BUILD_SHA")
    cors_allow_origins: list[str] = env_field([], "CORS_ALLOW_ORIGINS")
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")

    jwt_access_secret: str = env_field(None, "JWT_ACCESS_SECRET", validate_default=True)
    jwt_refresh_secret: str = env_field(None, "JWT_REFRESH_SECRET", validate_default=True)
    jwt_issuer: str = env_field("vaultsync", "JWT_ISSUER")
    jwt_audience: str = env_field("vaultsync-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(15, "ACCESS_TOKEN_TTL_MINUTES", ge=1)
    refresh_token_ttl_minutes: int = env_field(
        7 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES", ge=1
    )
    clock_skew_leeway_seconds: int = env_field(120, "CLOCK_SKEW_LEEWAY_SECONDS", ge=0)

    lockout_threshold: int = env_field(
        5,
        "LOCKOUT_THRESHOLD",
        ge=1,
        description="Failed logins before an account is locked",
    )
    lockout_minutes: int = env_field(30, "LOCKOUT_MINUTES", ge=1)
    prelogin_cache_ttl_seconds: int = env_field(300, "PRELOGIN_CACHE_TTL_SECONDS", ge=1)
    audit_retention_days: int = env_field(90, "AUDIT_RETENTION_DAYS", ge=1)
    max_vault_blob_bytes: int = env_field(10 * 1024 * 1024, "MAX_VAULT_BLOB_BYTES")

    # Token-bucket limits; 0 disables a class
    rate_limit_window_seconds: int = env_field(15 * 60, "RATE_LIMIT_WINDOW_SECONDS")
    rate_limit_general_per_window: int = env_field(100, "RATE_LIMIT_GENERAL")
    rate_limit_auth_per_window: int = env_field(10, "RATE_LIMIT_AUTH")
    rate_limit_password_per_hour: int = env_field(3, "RATE_LIMIT_PASSWORD")

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

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("jwt_access_secret", mode="before")
    @classmethod
    def _ensure_access_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < _MIN_SECRET_LENGTH:
                raise ValueError("JWT_ACCESS_SECRET must be at least 32 characters")
            return value
        return _load_or_create_secret("jwt_access_secret")

    @field_validator("jwt_refresh_secret", mode="before")
    @classmethod
    def _ensure_refresh_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < _MIN_SECRET_LENGTH:
                raise ValueError("JWT_REFRESH_SECRET must be at least 32 characters")
            return value
        return _load_or_create_secret("jwt_refresh_secret")

    @model_validator(mode="after")
    def _distinct_secrets(self) -> "Settings":
        if self.jwt_access_secret == self.jwt_refresh_secret:
            raise ValueError("access and refresh tokens must use distinct secrets")
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
