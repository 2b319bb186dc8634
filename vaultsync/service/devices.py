from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from vaultsync.logging import get_logger
from vaultsync.service.audit import AuditContext, AuditSink
from vaultsync.service.errors import ForbiddenError, NotFoundError
from vaultsync.service.sessions import SessionManager
from vaultsync.storage.models import Device, utcnow

logger = get_logger(__name__)

DEVICE_REMOVED = "Device removed"
NEW_DEVICE_WINDOW = timedelta(seconds=60)


def _group_key(device: Device) -> Tuple[str, str]:
    return device.name.lower(), device.platform


def _newest_first(devices: List[Device]) -> List[Device]:
    return sorted(devices, key=lambda d: d.last_seen_at, reverse=True)


class DeviceRegistry:
    """Per-user device records keyed by a hashed client fingerprint."""

    def __init__(self, store, audit: AuditSink, sessions: SessionManager) -> None:
        self.store = store
        self.audit = audit
        self.sessions = sessions

    def find_or_create(
        self,
        user_id: str,
        fingerprint_hash: str,
        name: str,
        platform: str,
        *,
        context: Optional[AuditContext] = None,
    ) -> Device:
        ctx = context or AuditContext()
        device = self.store.upsert_device(
            user_id, fingerprint_hash, name, platform, ip_address=ctx.ip_address
        )
        if device.is_new:
            logger.info("device_added", user_id=user_id, device_id=device.id, platform=platform)
            self.audit.log(
                "device.add",
                user_id=user_id,
                context=ctx.with_session(ctx.session_id, device.id),
                metadata={"name": device.name, "platform": device.platform},
            )
        return device

    @staticmethod
    def is_new_on_login(device: Device, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return device.is_new or now - device.created_at <= NEW_DEVICE_WINDOW

    def _owned(self, user_id: str, device_id: str) -> Device:
        device = self.store.get_device(device_id)
        if not device or device.user_id != user_id:
            raise NotFoundError("Device not found")
        return device

    def list(self, user_id: str, current_device_id: Optional[str]) -> List[dict]:
        """Devices collapsed by (name, platform), keeping the most recently seen."""
        seen: Dict[Tuple[str, str], Device] = {}
        for device in _newest_first(self.store.list_devices(user_id)):
            seen.setdefault(_group_key(device), device)
        return [
            {
                "id": d.id,
                "name": d.name,
                "platform": d.platform,
                "trusted": d.trusted,
                "last_seen_at": d.last_seen_at.isoformat(),
                "last_ip_address": d.last_ip_address,
                "created_at": d.created_at.isoformat(),
                "is_current": d.id == current_device_id,
            }
            for d in seen.values()
        ]

    def rename(self, user_id: str, device_id: str, name: str) -> Device:
        self._owned(user_id, device_id)
        updated = self.store.rename_device(device_id, name)
        if not updated:
            raise NotFoundError("Device not found")
        return updated

    def trust(
        self, user_id: str, device_id: str, *, context: Optional[AuditContext] = None
    ) -> Device:
        self._owned(user_id, device_id)
        updated = self.store.set_device_trusted(device_id, True)
        if not updated:
            raise NotFoundError("Device not found")
        self.audit.log(
            "device.trust", user_id=user_id, context=context, metadata={"device_id": device_id}
        )
        return updated

    async def delete(
        self,
        user_id: str,
        device_id: str,
        current_device_id: Optional[str],
        *,
        context: Optional[AuditContext] = None,
    ) -> int:
        device = self._owned(user_id, device_id)
        if device.id == current_device_id:
            raise ForbiddenError("Cannot remove current device. Use logout instead.")
        revoked = await self.sessions.revoke_device_sessions(user_id, device.id, DEVICE_REMOVED)
        self.store.delete_device(device.id)
        self.audit.log(
            "device.remove",
            user_id=user_id,
            context=context,
            metadata={"device_id": device.id, "revoked_sessions": revoked},
        )
        return revoked

    async def cleanup_duplicates(
        self, user_id: str, *, context: Optional[AuditContext] = None
    ) -> dict:
        groups: Dict[Tuple[str, str], List[Device]] = defaultdict(list)
        for device in self.store.list_devices(user_id):
            groups[_group_key(device)].append(device)
        deleted = 0
        for members in groups.values():
            if len(members) < 2:
                continue
            for stale in _newest_first(members)[1:]:
                await self.sessions.revoke_device_sessions(user_id, stale.id, DEVICE_REMOVED)
                self.store.delete_device(stale.id)
                self.audit.log(
                    "device.remove",
                    user_id=user_id,
                    context=context,
                    metadata={"device_id": stale.id, "reason": "duplicate_cleanup"},
                )
                deleted += 1
        if deleted:
            logger.info("device_duplicates_removed", user_id=user_id, deleted=deleted)
        return {"deleted_count": deleted}
