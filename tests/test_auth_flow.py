"""Unit tests for registration, login, lockout and prelogin.

Tests for:
- Verifier hashing
- Login success and failure
- Account lockout and its expiry
- Prelogin parameters for known and unknown emails
- Password change and master password setup
"""

from datetime import timedelta

import pytest

from conftest import sample_device, sample_encryption
from vaultsync.service.auth import AuthContext, InitialVault
from vaultsync.service.credentials import fake_kdf
from vaultsync.service.errors import AccountLocked, AuthenticationError, ConflictError, ForbiddenError
from vaultsync.storage.models import KdfParams, utcnow
from vaultsync.storage.redis_cache import LocalCache


def _principal(runtime, registered) -> AuthContext:
    payload = runtime.codec.decode_access(registered["tokens"]["access_token"])
    return AuthContext(
        user_id=payload["sub"],
        email=payload["email"],
        session_id=payload["sid"],
        device_id=payload["did"],
    )


class TestVerifierHashing:
    def test_hash_is_argon2id_and_not_plaintext(self, runtime):
        hashed = runtime.credentials.hash_verifier("client-verifier")

        assert hashed != "client-verifier"
        assert hashed.startswith("$argon2id$")

    def test_same_verifier_hashes_differently(self, runtime):
        assert runtime.credentials.hash_verifier("v") != runtime.credentials.hash_verifier("v")

    def test_unknown_user_never_verifies(self, runtime):
        assert runtime.credentials.verify_verifier(None, "anything") is False


class TestRegister:
    async def test_register_returns_user_tokens_and_device(self, runtime, make_user):
        result = await make_user()

        assert result["user"]["has_master_password"] is True
        assert result["user"]["email_verified"] is False
        assert result["device"]["is_new"] is True
        assert runtime.codec.decode_access(result["tokens"]["access_token"])
        assert runtime.store.get_vault(result["user"]["id"]).version == 1

    async def test_email_is_normalized(self, runtime, make_user):
        result = await make_user("  Mixed.Case@Example.COM ")

        assert result["user"]["email"] == "mixed.case@example.com"

    async def test_duplicate_email_conflicts(self, make_user):
        await make_user("dup@example.com")

        with pytest.raises(ConflictError) as excinfo:
            await make_user("DUP@example.com")
        assert excinfo.value.message == "Email already registered"

    async def test_without_vault_has_no_master_password(self, runtime, make_user):
        result = await make_user(with_vault=False)

        assert result["user"]["has_master_password"] is False
        assert runtime.store.get_vault(result["user"]["id"]) is None

    async def test_failed_session_creation_rolls_back_registration(
        self, runtime, make_user, monkeypatch
    ):
        async def _broken_create(*args, **kwargs):
            raise RuntimeError("session store unavailable")

        original_create = runtime.sessions.create
        monkeypatch.setattr(runtime.sessions, "create", _broken_create)

        with pytest.raises(RuntimeError):
            await make_user("retry@example.com")

        assert runtime.store.get_user_by_email("retry@example.com") is None
        # The device.add entry written before the failure is kept but detached
        _, detached = runtime.store.list_audit_logs(None, action="device.add")
        assert detached == 1

        monkeypatch.setattr(runtime.sessions, "create", original_create)
        result = await make_user("retry@example.com")
        assert result["user"]["email"] == "retry@example.com"
        assert runtime.store.get_vault(result["user"]["id"]).version == 1


class TestLogin:
    async def test_login_returns_wrapped_key(self, runtime, make_user):
        registered = await make_user()

        result = await runtime.auth.login(registered["email"], "verifier-correct", sample_device())

        assert result["wrapped_vault_key"] == "wrapped-key-v1"
        assert result["user"]["id"] == registered["user"]["id"]
        assert result["tokens"]["refresh_token"] != registered["tokens"]["refresh_token"]

    async def test_known_device_is_reused(self, runtime, make_user):
        registered = await make_user()

        result = await runtime.auth.login(registered["email"], "verifier-correct", sample_device())

        assert result["device"]["id"] == registered["device"]["id"]
        assert len(runtime.store.list_devices(registered["user"]["id"])) == 1

    async def test_wrong_verifier_and_unknown_email_look_identical(self, runtime, make_user):
        registered = await make_user()

        with pytest.raises(AuthenticationError) as wrong:
            await runtime.auth.login(registered["email"], "verifier-wrong", sample_device())
        with pytest.raises(AuthenticationError) as unknown:
            await runtime.auth.login("nobody@example.com", "verifier-wrong", sample_device())

        assert wrong.value.message == unknown.value.message == "Invalid email or password"
        assert wrong.value.status_code == unknown.value.status_code == 401

    async def test_failed_login_is_audited(self, runtime, make_user):
        registered = await make_user()

        with pytest.raises(AuthenticationError):
            await runtime.auth.login(registered["email"], "verifier-wrong", sample_device())

        entries, _ = runtime.store.list_audit_logs(registered["user"]["id"], action="user.login.failed")
        assert entries and entries[0].status == "failure"
        assert entries[0].metadata == {"reason": "invalid_verifier"}

    async def test_success_resets_failure_counter(self, runtime, make_user):
        registered = await make_user()
        for _ in range(3):
            with pytest.raises(AuthenticationError):
                await runtime.auth.login(registered["email"], "verifier-wrong", sample_device())

        await runtime.auth.login(registered["email"], "verifier-correct", sample_device())

        user = runtime.store.get_user(registered["user"]["id"])
        assert user.failed_login_attempts == 0
        assert user.last_login_at is not None


class TestLockout:
    async def test_threshold_failures_lock_account(self, runtime, make_user):
        registered = await make_user()
        for _ in range(5):
            with pytest.raises(AuthenticationError):
                await runtime.auth.login(registered["email"], "verifier-wrong", sample_device())

        with pytest.raises(ForbiddenError) as excinfo:
            await runtime.auth.login(registered["email"], "verifier-correct", sample_device())

        assert excinfo.value.status_code == 403
        assert isinstance(excinfo.value, AccountLocked)
        assert excinfo.value.message == "Account is locked. Please try again later."
        assert excinfo.value.detail == {}
        user = runtime.store.get_user(registered["user"]["id"])
        assert user.status == "locked"
        assert user.lockout_until > utcnow()

    async def test_locked_attempt_does_not_extend_counter(self, runtime, make_user):
        registered = await make_user()
        for _ in range(5):
            with pytest.raises(AuthenticationError):
                await runtime.auth.login(registered["email"], "verifier-wrong", sample_device())

        with pytest.raises(ForbiddenError):
            await runtime.auth.login(registered["email"], "verifier-wrong", sample_device())

        assert runtime.store.get_user(registered["user"]["id"]).failed_login_attempts == 5

    async def test_lapsed_lock_allows_login(self, runtime, make_user):
        registered = await make_user()
        for _ in range(5):
            with pytest.raises(AuthenticationError):
                await runtime.auth.login(registered["email"], "verifier-wrong", sample_device())
        user = runtime.store.get_user(registered["user"]["id"])
        user.lockout_until = utcnow() - timedelta(seconds=1)

        result = await runtime.auth.login(registered["email"], "verifier-correct", sample_device())

        assert result["user"]["id"] == user.id
        refreshed = runtime.store.get_user(user.id)
        assert refreshed.failed_login_attempts == 0
        assert refreshed.status == "active"

    async def test_failure_after_lapse_relocks(self, runtime, make_user):
        registered = await make_user()
        for _ in range(5):
            with pytest.raises(AuthenticationError):
                await runtime.auth.login(registered["email"], "verifier-wrong", sample_device())
        user = runtime.store.get_user(registered["user"]["id"])
        user.lockout_until = utcnow() - timedelta(seconds=1)

        with pytest.raises(AuthenticationError):
            await runtime.auth.login(registered["email"], "verifier-wrong", sample_device())

        assert runtime.store.get_user(user.id).is_locked(utcnow())


class TestPrelogin:
    async def test_unknown_email_gets_stable_fake_params(self, runtime):
        first = await runtime.auth.prelogin("ghost@example.com")
        second = await runtime.auth.prelogin("Ghost@Example.com")

        assert first == second
        assert first["kdf"] == fake_kdf("ghost@example.com").to_dict()

    async def test_fake_params_differ_per_email(self, runtime):
        a = await runtime.auth.prelogin("ghost-a@example.com")
        b = await runtime.auth.prelogin("ghost-b@example.com")

        assert a["kdf"]["salt"] != b["kdf"]["salt"]
        assert a["kdf"]["algorithm"] == b["kdf"]["algorithm"] == "argon2id"

    async def test_known_email_returns_stored_params(self, runtime, make_user):
        registered = await make_user()

        result = await runtime.auth.prelogin(registered["email"])

        assert result["kdf"]["salt"] == "c2FsdC1mb3ItdGVzdHM="

    async def test_fake_answer_not_cached_for_later_signup(self, runtime, make_user):
        await runtime.auth.prelogin("later@example.com")
        await make_user("later@example.com")

        result = await runtime.auth.prelogin("later@example.com")

        assert result["kdf"]["salt"] == "c2FsdC1mb3ItdGVzdHM="

    async def test_cache_failure_falls_back_to_store(self, runtime, make_user):
        class BrokenCache(LocalCache):
            async def get_prelogin(self, email):
                raise ConnectionError("cache down")

            async def set_prelogin(self, email, payload, ttl_seconds):
                raise ConnectionError("cache down")

        registered = await make_user()
        runtime.auth.cache = BrokenCache()

        result = await runtime.auth.prelogin(registered["email"])

        assert result["kdf"]["salt"] == "c2FsdC1mb3ItdGVzdHM="


class TestChangePassword:
    async def test_change_revokes_other_sessions_and_swaps_verifier(self, runtime, make_user):
        registered = await make_user()
        other = await runtime.auth.login(
            registered["email"], "verifier-correct", sample_device("device-2", name="Phone", platform="ios")
        )
        principal = _principal(runtime, registered)

        result = await runtime.auth.change_password(
            principal, "verifier-correct", "verifier-new", "wrapped-key-v2"
        )

        assert result["revoked_sessions"] == 1
        with pytest.raises(AuthenticationError):
            await runtime.auth.authenticate(f"Bearer {other['tokens']['access_token']}")
        assert await runtime.auth.authenticate(f"Bearer {registered['tokens']['access_token']}")
        login = await runtime.auth.login(registered["email"], "verifier-new", sample_device())
        assert login["wrapped_vault_key"] == "wrapped-key-v2"

    async def test_wrong_current_verifier_rejected(self, runtime, make_user):
        registered = await make_user()

        with pytest.raises(AuthenticationError) as excinfo:
            await runtime.auth.change_password(
                _principal(runtime, registered), "verifier-wrong", "verifier-new", "wrapped-key-v2"
            )
        assert excinfo.value.message == "Current password is incorrect"

    async def test_new_kdf_invalidates_cached_prelogin(self, runtime, make_user):
        registered = await make_user()
        await runtime.auth.prelogin(registered["email"])

        await runtime.auth.change_password(
            _principal(runtime, registered),
            "verifier-correct",
            "verifier-new",
            "wrapped-key-v2",
            new_kdf=KdfParams(salt="bmV3LXNhbHQ=", iterations=4),
        )

        result = await runtime.auth.prelogin(registered["email"])
        assert result["kdf"]["salt"] == "bmV3LXNhbHQ="
        assert result["kdf"]["iterations"] == 4


class TestSetMasterPassword:
    async def test_sets_once(self, runtime, make_user):
        registered = await make_user(with_vault=False)
        principal = _principal(runtime, registered)
        initial = InitialVault(blob="Zmlyc3Q=", encryption=sample_encryption(), checksum="c1")

        result = await runtime.auth.set_master_password(principal, "wrapped", initial)

        assert result == {"success": True}
        assert runtime.store.get_user(principal.user_id).has_master_password
        assert runtime.store.get_vault(principal.user_id).version == 1

        with pytest.raises(ConflictError) as excinfo:
            await runtime.auth.set_master_password(principal, "wrapped-again", initial)
        assert excinfo.value.message == "Master Password is already set"
