from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from vaultsync.logging import get_logger
from vaultsync.storage.models import AuditLogEntry, new_id, utcnow

logger = get_logger(__name__)

AUDIT_ACTIONS = (
    "user.register",
    "user.login",
    "user.login.failed",
    "user.logout",
    "user.password.change",
    "user.email.verify",
    "user.delete",
    "vault.sync",
    "vault.update",
    "session.create",
    "session.revoke",
    "device.add",
    "device.remove",
    "device.trust",
)

MAX_PAGE_SIZE = 100


@dataclass
class AuditContext:
    """Request attributes copied onto every audit entry."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    session_id: Optional[str] = None
    device_id: Optional[str] = None

    def with_session(self, session_id: Optional[str], device_id: Optional[str]) -> "AuditContext":
        return AuditContext(
            ip_address=self.ip_address,
            user_agent=self.user_agent,
            session_id=session_id,
            device_id=device_id,
        )


class AuditSink:
    """Append-only audit trail. Writes never fail the calling operation."""

    def __init__(
        self,
        store,
        *,
        retention_days: int = 90,
        purge_interval_minutes: int = 60,
    ) -> None:
        self.store = store
        self.retention = timedelta(days=retention_days)
        self.purge_interval = timedelta(minutes=purge_interval_minutes)
        self._last_purge = utcnow()

    def log(
        self,
        action: str,
        status: str = "success",
        user_id: Optional[str] = None,
        context: Optional[AuditContext] = None,
        metadata: Optional[dict] = None,
    ) -> Optional[AuditLogEntry]:
        ctx = context or AuditContext()
        entry = AuditLogEntry(
            id=new_id(),
            action=action,
            status=status,
            user_id=user_id,
            ip_address=ctx.ip_address,
            user_agent=ctx.user_agent,
            session_id=ctx.session_id,
            device_id=ctx.device_id,
            metadata=metadata,
        )
        try:
            self.store.append_audit_log(entry)
        except Exception as exc:
            logger.error("audit_log_failed", action=action, user_id=user_id, error=str(exc))
            return None
        self.maybe_purge()
        return entry

    def list(
        self,
        user_id: str,
        *,
        page: int = 1,
        limit: int = 50,
        action: Optional[str] = None,
    ) -> dict:
        page = max(1, page)
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        items, total = self.store.list_audit_logs(
            user_id, offset=(page - 1) * limit, limit=limit, action=action
        )
        return {
            "items": items,
            "total": total,
            "page": page,
            "limit": limit,
            "total_pages": math.ceil(total / limit) if total else 0,
        }

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        purged = self.store.purge_audit_logs(now - self.retention)
        self._last_purge = now
        if purged:
            logger.info("audit_logs_expired", purged=purged, retention_days=self.retention.days)
        return purged

    def maybe_purge(self) -> int:
        """Run the retention purge if the interval has elapsed since the last one."""
        now = utcnow()
        if now - self._last_purge < self.purge_interval:
            return 0
        try:
            return self.purge_expired(now)
        except Exception as exc:
            logger.warning("audit_purge_failed", error=str(exc))
            self._last_purge = now
            return 0
