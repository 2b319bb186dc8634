from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from vaultsync.config import Settings
from vaultsync.logging import get_logger
from vaultsync.service.audit import AuditContext, AuditSink
from vaultsync.service.credentials import (
    CredentialService,
    fake_kdf,
    fingerprint_hash,
)
from vaultsync.service.devices import DeviceRegistry
from vaultsync.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
)
from vaultsync.service.sessions import SessionManager
from vaultsync.service.tokens import TokenCodec, extract_bearer
from vaultsync.service.vault import VaultSyncEngine
from vaultsync.storage.errors import ConstraintViolation
from vaultsync.storage.models import Device, KdfParams, User, VaultEncryption, utcnow

logger = get_logger(__name__)

INVALID_LOGIN = "Invalid email or password"


@dataclass
class AuthContext:
    user_id: str
    email: str
    session_id: str
    device_id: str


@dataclass
class DeviceInfo:
    name: str
    platform: str
    device_identifier: str


@dataclass
class InitialVault:
    blob: str
    encryption: VaultEncryption
    checksum: str
    blob_format_version: int = 1


def normalize_email(email: str) -> str:
    return email.strip().lower()


def user_summary(user: User) -> dict:
    return {
        "id": user.id,
        "email": user.email,
        "email_verified": user.email_verified,
        "has_master_password": user.has_master_password,
    }


def device_summary(device: Device, is_new: bool) -> dict:
    return {"id": device.id, "name": device.name, "is_new": is_new}


class AuthFlow:
    """Registration, zero-knowledge login, token refresh and bearer auth.

    The server only ever sees the client-derived auth verifier. Unknown
    emails get deterministic fake KDF parameters and a dummy hash check so
    neither prelogin nor login reveals whether an account exists.
    """

    def __init__(
        self,
        store,
        cache,
        settings: Settings,
        *,
        codec: TokenCodec,
        credentials: CredentialService,
        devices: DeviceRegistry,
        sessions: SessionManager,
        vault: VaultSyncEngine,
        audit: AuditSink,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.codec = codec
        self.credentials = credentials
        self.devices = devices
        self.sessions = sessions
        self.vault = vault
        self.audit = audit

    def _discard_partial_registration(self, user_id: str) -> None:
        """Remove whatever a failed registration wrote so the email can be reused."""
        logger.error("registration_rolled_back", user_id=user_id)
        self.store.delete_user_sessions(user_id)
        self.store.delete_user_devices(user_id)
        self.store.delete_vault(user_id)
        self.store.anonymize_audit_logs(user_id)
        self.store.delete_user(user_id)

    def _register_device(
        self, user_id: str, device: DeviceInfo, context: AuditContext
    ) -> Device:
        return self.devices.find_or_create(
            user_id,
            fingerprint_hash(device.device_identifier),
            device.name,
            device.platform,
            context=context,
        )

    async def register(
        self,
        email: str,
        auth_verifier: str,
        kdf: KdfParams,
        device: DeviceInfo,
        *,
        wrapped_vault_key: Optional[str] = None,
        initial_vault: Optional[InitialVault] = None,
        context: Optional[AuditContext] = None,
    ) -> dict:
        ctx = context or AuditContext()
        email = normalize_email(email)
        if self.store.get_user_by_email(email):
            raise ConflictError("Email already registered")
        has_master_password = bool(wrapped_vault_key and initial_vault)
        if initial_vault is not None:
            self.vault.check_size(initial_vault.blob)
        verifier_hash = self.credentials.hash_verifier(auth_verifier)
        try:
            user = self.store.create_user(
                email,
                verifier_hash,
                kdf,
                wrapped_vault_key=wrapped_vault_key if has_master_password else None,
                has_master_password=has_master_password,
            )
        except ConstraintViolation as exc:
            # Lost a race with a concurrent registration for the same address
            raise ConflictError("Email already registered") from exc

        try:
            if has_master_password:
                self.vault.create(
                    user.id,
                    initial_vault.blob,
                    initial_vault.encryption,
                    initial_vault.checksum,
                    blob_format_version=initial_vault.blob_format_version,
                )
            dev = self._register_device(user.id, device, ctx)
            is_new = dev.is_new
            sess, tokens = await self.sessions.create(user, dev, context=ctx)
        except Exception:
            self._discard_partial_registration(user.id)
            raise
        self.audit.log(
            "user.register", user_id=user.id, context=ctx.with_session(sess.id, dev.id)
        )
        logger.info("user_registered", user_id=user.id, has_master_password=has_master_password)
        return {
            "user": user_summary(user),
            "tokens": tokens.to_dict(),
            "device": device_summary(dev, is_new),
        }

    async def prelogin(self, email: str) -> dict:
        email = normalize_email(email)
        try:
            cached = await self.cache.get_prelogin(email)
        except Exception as exc:
            logger.warning("prelogin_cache_read_failed", error=str(exc))
            cached = None
        if cached:
            return cached

        user = self.store.get_user_by_email(email)
        if not user:
            # Never cached, so creating the account later takes effect at once
            return {"kdf": fake_kdf(email).to_dict()}

        result = {"kdf": user.kdf.to_dict()}
        try:
            await self.cache.set_prelogin(
                email, result, self.settings.prelogin_cache_ttl_seconds
            )
        except Exception as exc:
            logger.warning("prelogin_cache_write_failed", error=str(exc))
        return result

    async def invalidate_prelogin(self, email: str) -> None:
        try:
            await self.cache.delete_prelogin(email)
        except Exception as exc:
            logger.warning("prelogin_cache_delete_failed", error=str(exc))

    async def login(
        self,
        email: str,
        auth_verifier: str,
        device: DeviceInfo,
        *,
        context: Optional[AuditContext] = None,
    ) -> dict:
        ctx = context or AuditContext()
        email = normalize_email(email)
        user = self.store.get_user_by_email(email)
        if not user:
            self.credentials.verify_verifier(None, auth_verifier)
            raise AuthenticationError(INVALID_LOGIN)

        try:
            self.credentials.ensure_not_locked(user)
        except ForbiddenError:
            self.audit.log(
                "user.login.failed",
                status="failure",
                user_id=user.id,
                context=ctx,
                metadata={"reason": "account_locked"},
            )
            raise

        if not self.credentials.verify_verifier(user, auth_verifier):
            self.credentials.record_failure(user)
            self.audit.log(
                "user.login.failed",
                status="failure",
                user_id=user.id,
                context=ctx,
                metadata={"reason": "invalid_verifier"},
            )
            raise AuthenticationError(INVALID_LOGIN)

        user = self.credentials.record_success(user) or user
        dev = self._register_device(user.id, device, ctx)
        is_new = self.devices.is_new_on_login(dev, utcnow())
        sess, tokens = await self.sessions.create(user, dev, context=ctx)
        self.audit.log("user.login", user_id=user.id, context=ctx.with_session(sess.id, dev.id))
        return {
            "user": user_summary(user),
            "wrapped_vault_key": user.wrapped_vault_key,
            "tokens": tokens.to_dict(),
            "device": device_summary(dev, is_new),
        }

    async def refresh(
        self, refresh_token: str, *, context: Optional[AuditContext] = None
    ) -> dict:
        _, tokens = await self.sessions.rotate(refresh_token, context=context)
        return {"tokens": tokens.to_dict()}

    async def logout(self, auth: AuthContext, *, context: Optional[AuditContext] = None) -> None:
        await self.sessions.revoke(auth.session_id, "User logout")
        self.audit.log(
            "user.logout",
            user_id=auth.user_id,
            context=(context or AuditContext()).with_session(auth.session_id, auth.device_id),
        )

    async def change_password(
        self,
        auth: AuthContext,
        current_auth_verifier: str,
        new_auth_verifier: str,
        new_wrapped_vault_key: str,
        *,
        new_kdf: Optional[KdfParams] = None,
        context: Optional[AuditContext] = None,
    ) -> dict:
        user = self.store.get_user(auth.user_id)
        if not user:
            raise NotFoundError("User not found")
        if not self.credentials.verify_verifier(user, current_auth_verifier):
            raise AuthenticationError("Current password is incorrect")
        new_hash = self.credentials.hash_verifier(new_auth_verifier)
        self.store.set_verifier(user.id, new_hash, new_wrapped_vault_key, changed_at=utcnow())
        if new_kdf is not None:
            self.store.set_kdf(user.id, new_kdf)
            await self.invalidate_prelogin(user.email)
        revoked = await self.sessions.revoke_all_except(
            user.id, auth.session_id, "Password changed"
        )
        self.audit.log(
            "user.password.change",
            user_id=user.id,
            context=context,
            metadata={"revoked_sessions": revoked, "kdf_changed": new_kdf is not None},
        )
        return {"revoked_sessions": revoked}

    async def set_master_password(
        self,
        auth: AuthContext,
        wrapped_vault_key: str,
        initial_vault: InitialVault,
        *,
        context: Optional[AuditContext] = None,
    ) -> dict:
        user = self.store.get_user(auth.user_id)
        if not user:
            raise NotFoundError("User not found")
        if user.has_master_password:
            raise ConflictError("Master Password is already set")
        self.vault.check_size(initial_vault.blob)
        if self.store.set_master_password(user.id, wrapped_vault_key) is None:
            raise ConflictError("Master Password is already set")
        self.vault.create(
            user.id,
            initial_vault.blob,
            initial_vault.encryption,
            initial_vault.checksum,
            blob_format_version=initial_vault.blob_format_version,
        )
        self.audit.log(
            "user.password.change",
            user_id=user.id,
            context=context,
            metadata={"action": "master_password_set"},
        )
        return {"success": True}

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        """Resolve a bearer header to the caller, or raise 401.

        Revocation is checked in the cache first. A cache error rejects the
        request rather than risk accepting a revoked session.
        """
        token = extract_bearer(authorization)
        if not token:
            raise AuthenticationError("Missing authentication token")
        payload = self.codec.decode_access(token)
        if not payload or not payload.get("did"):
            raise AuthenticationError("Invalid token")
        session_id = payload["sid"]
        try:
            revoked = await self.cache.is_session_revoked(session_id)
        except Exception as exc:
            logger.error("revocation_check_failed", session_id=session_id, error=str(exc))
            raise AuthenticationError("Unable to verify session") from exc
        if revoked:
            raise AuthenticationError("Session has been revoked")
        sess = self.store.get_session(session_id)
        if not sess or sess.user_id != payload["sub"] or not sess.is_active(utcnow()):
            raise AuthenticationError("Session has been revoked")
        return AuthContext(
            user_id=payload["sub"],
            email=payload.get("email", ""),
            session_id=session_id,
            device_id=payload["did"],
        )


__all__ = [
    "AuthContext",
    "AuthFlow",
    "DeviceInfo",
    "InitialVault",
    "normalize_email",
]
