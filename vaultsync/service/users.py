from __future__ import annotations

from typing import Optional

from vaultsync.logging import get_logger
from vaultsync.service.audit import AuditContext, AuditSink
from vaultsync.service.credentials import CredentialService
from vaultsync.service.errors import AuthenticationError, NotFoundError
from vaultsync.service.sessions import SessionManager
from vaultsync.storage.models import AuditLogEntry, User

logger = get_logger(__name__)


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def audit_entry_payload(entry: AuditLogEntry) -> dict:
    return {
        "id": entry.id,
        "action": entry.action,
        "status": entry.status,
        "ip_address": entry.ip_address,
        "user_agent": entry.user_agent,
        "metadata": entry.metadata or {},
        "created_at": _iso(entry.created_at),
    }


class AccountService:
    """Profile, audit history and account deletion for the signed-in user."""

    def __init__(
        self,
        store,
        cache,
        *,
        credentials: CredentialService,
        sessions: SessionManager,
        audit: AuditSink,
    ) -> None:
        self.store = store
        self.cache = cache
        self.credentials = credentials
        self.sessions = sessions
        self.audit = audit

    def _user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    def profile(self, user_id: str) -> dict:
        user = self._user(user_id)
        return {
            "id": user.id,
            "email": user.email,
            "email_verified": user.email_verified,
            "has_master_password": user.has_master_password,
            "created_at": _iso(user.created_at),
            "last_login_at": _iso(user.last_login_at),
        }

    def audit_logs(
        self,
        user_id: str,
        *,
        page: int = 1,
        limit: int = 50,
        action: Optional[str] = None,
    ) -> dict:
        result = self.audit.list(user_id, page=page, limit=limit, action=action)
        result["items"] = [audit_entry_payload(e) for e in result["items"]]
        return result

    async def delete_account(
        self,
        user_id: str,
        auth_verifier: str,
        *,
        context: Optional[AuditContext] = None,
    ) -> None:
        user = self._user(user_id)
        if not self.credentials.verify_verifier(user, auth_verifier):
            raise AuthenticationError("Invalid auth verifier")

        for sess in self.store.list_sessions(user.id, include_revoked=True):
            try:
                await self.cache.blacklist_session(sess.id, self.sessions.blacklist_ttl)
            except Exception as exc:
                logger.error("session_blacklist_failed", session_id=sess.id, error=str(exc))
        sessions_deleted = self.store.delete_user_sessions(user.id)
        devices_deleted = self.store.delete_user_devices(user.id)
        self.store.delete_vault(user.id)
        anonymized = self.store.anonymize_audit_logs(user.id)
        self.store.delete_user(user.id)
        try:
            await self.cache.delete_prelogin(user.email)
        except Exception as exc:
            logger.warning("prelogin_cache_delete_failed", error=str(exc))

        ctx = context or AuditContext()
        self.audit.log(
            "user.delete",
            context=AuditContext(ip_address=ctx.ip_address, user_agent=ctx.user_agent),
            metadata={
                "sessions_deleted": sessions_deleted,
                "devices_deleted": devices_deleted,
                "audit_entries_anonymized": anonymized,
            },
        )
        logger.info("account_deleted", user_id=user.id)
