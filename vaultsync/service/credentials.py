from __future__ import annotations

import hashlib
import secrets
from datetime import datetime
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from vaultsync.config import Settings
from vaultsync.logging import get_logger
from vaultsync.service.errors import AccountLocked
from vaultsync.storage.models import KdfParams, User, utcnow

logger = get_logger(__name__)


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def hash_token(token: str) -> str:
    """Digest stored in place of a refresh token."""
    return sha256_hex(token)


def fingerprint_hash(device_identifier: str) -> str:
    return sha256_hex(device_identifier)


def fake_kdf(email: str) -> KdfParams:
    """Deterministic KDF parameters for addresses with no account.

    Stable per email so repeated prelogin calls cannot be diffed to reveal
    account existence.
    """
    return KdfParams(salt=sha256_hex(email + "fake-salt")[:32])


class CredentialService:
    """Verifier hashing and the lockout policy applied around it."""

    def __init__(self, store, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self._hasher = PasswordHasher(type=Type.ID)
        # Verified against on unknown emails so a miss costs the same as a hit
        self._dummy_hash = self._hasher.hash(secrets.token_urlsafe(32))

    def hash_verifier(self, auth_verifier: str) -> str:
        return self._hasher.hash(auth_verifier)

    def verify_verifier(self, user: Optional[User], auth_verifier: str) -> bool:
        """Compare ``auth_verifier`` against the user's stored hash.

        Always performs one argon2 verification, even when ``user`` is None.
        """
        if user is None:
            try:
                self._hasher.verify(self._dummy_hash, auth_verifier)
            except VerificationError:
                pass
            return False
        if user.verifier_algorithm != "argon2id":
            logger.warning(
                "verifier_algo_mismatch", user_id=user.id, algo=user.verifier_algorithm
            )
            return False
        try:
            return self._hasher.verify(user.verifier_hash, auth_verifier)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def ensure_not_locked(self, user: User, now: Optional[datetime] = None) -> None:
        if user.is_locked(now or utcnow()):
            logger.info("login_rejected_locked", user_id=user.id)
            raise AccountLocked(user.lockout_until)

    def record_failure(self, user: User) -> Optional[User]:
        updated = self.store.record_failed_login(
            user.id,
            threshold=self.settings.lockout_threshold,
            lockout_minutes=self.settings.lockout_minutes,
        )
        if updated and updated.failed_login_attempts >= self.settings.lockout_threshold:
            logger.warning(
                "account_locked",
                user_id=user.id,
                attempts=updated.failed_login_attempts,
                lockout_until=updated.lockout_until.isoformat() if updated.lockout_until else None,
            )
        return updated

    def record_success(self, user: User) -> Optional[User]:
        return self.store.reset_failed_logins(user.id, login_at=utcnow())
