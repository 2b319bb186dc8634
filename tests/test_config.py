import pytest
from pydantic import ValidationError

from vaultsync.config import Settings, get_settings, reset_settings_cache

A = "a" * 40
B = "b" * 40


def test_short_secret_rejected(tmp_path):
    with pytest.raises(ValidationError):
        Settings(shared_fs_root=str(tmp_path), jwt_access_secret="short", jwt_refresh_secret=B)


def test_identical_secrets_rejected(tmp_path):
    with pytest.raises(ValidationError):
        Settings(shared_fs_root=str(tmp_path), jwt_access_secret=A, jwt_refresh_secret=A)


def test_missing_secrets_are_generated_and_persisted(tmp_path, monkeypatch):
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))

    first = Settings(shared_fs_root=str(tmp_path))
    second = Settings(shared_fs_root=str(tmp_path))

    assert len(first.jwt_access_secret) >= 32
    assert first.jwt_access_secret != first.jwt_refresh_secret
    assert first.jwt_access_secret == second.jwt_access_secret
    assert (tmp_path / ".jwt_refresh_secret").exists()


def test_from_env_reads_overrides(monkeypatch):
    monkeypatch.setenv("LOCKOUT_THRESHOLD", "7")
    monkeypatch.setenv("CORS_ALLOW_ORIGINS", "https://a.example, https://b.example")
    monkeypatch.setenv("RATE_LIMIT_PASSWORD", "0")
    monkeypatch.setenv("DATABASE_STATEMENT_TIMEOUT_MS", "250")

    settings = Settings.from_env()

    assert settings.lockout_threshold == 7
    assert settings.cors_allow_origins == ["https://a.example", "https://b.example"]
    assert settings.rate_limit_password_per_hour == 0
    assert settings.database_statement_timeout_ms == 250


def test_get_settings_is_cached_until_reset(monkeypatch):
    first = get_settings()
    assert get_settings() is first

    monkeypatch.setenv("LOCKOUT_MINUTES", "45")
    reset_settings_cache()

    assert get_settings().lockout_minutes == 45
