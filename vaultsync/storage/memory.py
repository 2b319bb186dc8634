from __future__ import annotations

import json
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from vaultsync.logging import get_logger
from vaultsync.storage.errors import ConstraintViolation
from vaultsync.storage.models import (
    AuditLogEntry,
    Device,
    KdfParams,
    Session,
    User,
    Vault,
    VaultEncryption,
    new_id,
    utcnow,
)


class MemoryStore:
    """In-process backing store with JSON snapshots under ``fs_root``.

    Every operation runs under ``_data_lock``; the conditional writes
    (refresh-hash rotation, vault version bump, master password) compare and
    set inside the same critical section.
    """

    def __init__(self, fs_root: str = "/tmp/vaultsync") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.devices: Dict[str, Device] = {}
        self.sessions: Dict[str, Session] = {}
        self.vaults: Dict[str, Vault] = {}
        self.audit_logs: List[AuditLogEntry] = []
        # RLock so helpers can re-enter from within a locked operation
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def close(self) -> None:
        with self._data_lock:
            self._persist_state()

    # users
    def create_user(
        self,
        email: str,
        verifier_hash: str,
        kdf: KdfParams,
        *,
        wrapped_vault_key: Optional[str] = None,
        has_master_password: bool = False,
    ) -> User:
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=new_id(),
                email=email,
                verifier_hash=verifier_hash,
                kdf=kdf,
                wrapped_vault_key=wrapped_vault_key,
                has_master_password=has_master_password,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            for user in self.users.values():
                if user.email == email:
                    return user
            return None

    def record_failed_login(
        self,
        user_id: str,
        *,
        threshold: int,
        lockout_minutes: int,
        now: Optional[datetime] = None,
    ) -> Optional[User]:
        now = now or utcnow()
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.failed_login_attempts += 1
            if user.failed_login_attempts >= threshold:
                user.status = "locked"
                user.lockout_until = now + timedelta(minutes=lockout_minutes)
            user.updated_at = now
            self._persist_state()
            return user

    def reset_failed_logins(
        self, user_id: str, *, login_at: Optional[datetime] = None
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.failed_login_attempts = 0
            user.lockout_until = None
            if user.status == "locked":
                user.status = "active"
            if login_at is not None:
                user.last_login_at = login_at
            user.updated_at = utcnow()
            self._persist_state()
            return user

    def set_verifier(
        self,
        user_id: str,
        verifier_hash: str,
        wrapped_vault_key: str,
        *,
        changed_at: Optional[datetime] = None,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.verifier_hash = verifier_hash
            user.wrapped_vault_key = wrapped_vault_key
            user.password_changed_at = changed_at or utcnow()
            user.updated_at = user.password_changed_at
            self._persist_state()
            return user

    def set_kdf(self, user_id: str, kdf: KdfParams) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.kdf = kdf
            user.updated_at = utcnow()
            self._persist_state()
            return user

    def set_master_password(self, user_id: str, wrapped_vault_key: str) -> Optional[User]:
        """Set the wrapped key only if none is configured yet; ``None`` otherwise."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.has_master_password:
                return None
            user.wrapped_vault_key = wrapped_vault_key
            user.has_master_password = True
            user.updated_at = utcnow()
            self._persist_state()
            return user

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            removed = self.users.pop(user_id, None)
            if removed:
                self._persist_state()
            return removed is not None

    # devices
    def upsert_device(
        self,
        user_id: str,
        fingerprint_hash: str,
        name: str,
        platform: str,
        ip_address: Optional[str] = None,
    ) -> Device:
        now = utcnow()
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("device owner missing", {"user_id": user_id})
            for device in self.devices.values():
                if device.user_id == user_id and device.fingerprint_hash == fingerprint_hash:
                    device.name = name
                    device.platform = platform
                    device.last_seen_at = now
                    device.last_ip_address = ip_address
                    device.updated_at = now
                    self._persist_state()
                    return device
            device = Device(
                id=new_id(),
                user_id=user_id,
                fingerprint_hash=fingerprint_hash,
                name=name,
                platform=platform,
                last_seen_at=now,
                last_ip_address=ip_address,
                created_at=now,
                updated_at=now,
            )
            self.devices[device.id] = device
            self._persist_state()
            return device

    def get_device(self, device_id: str) -> Optional[Device]:
        with self._data_lock:
            return self.devices.get(device_id)

    def list_devices(self, user_id: str) -> List[Device]:
        with self._data_lock:
            return [d for d in self.devices.values() if d.user_id == user_id]

    def rename_device(self, device_id: str, name: str) -> Optional[Device]:
        with self._data_lock:
            device = self.devices.get(device_id)
            if not device:
                return None
            device.name = name
            device.updated_at = utcnow()
            self._persist_state()
            return device

    def set_device_trusted(self, device_id: str, trusted: bool = True) -> Optional[Device]:
        with self._data_lock:
            device = self.devices.get(device_id)
            if not device:
                return None
            device.trusted = trusted
            device.updated_at = utcnow()
            self._persist_state()
            return device

    def delete_device(self, device_id: str) -> bool:
        with self._data_lock:
            removed = self.devices.pop(device_id, None)
            if removed:
                self._persist_state()
            return removed is not None

    def delete_user_devices(self, user_id: str) -> int:
        with self._data_lock:
            stale = [did for did, d in self.devices.items() if d.user_id == user_id]
            for did in stale:
                self.devices.pop(did, None)
            if stale:
                self._persist_state()
            return len(stale)

    # sessions
    def create_session(
        self,
        user_id: str,
        device_id: str,
        *,
        family: str,
        refresh_token_hash: str,
        ttl_minutes: int,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            sess = Session.new(
                user_id,
                device_id,
                family=family,
                refresh_token_hash=refresh_token_hash,
                ttl_minutes=ttl_minutes,
                user_agent=user_agent,
                ip_address=ip_address,
            )
            self.sessions[sess.id] = sess
            self._persist_state()
            return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def rotate_refresh_hash(
        self,
        session_id: str,
        expected_hash: str,
        new_hash: str,
        *,
        now: Optional[datetime] = None,
    ) -> Optional[Session]:
        """Swap the refresh hash only if it still equals ``expected_hash``.

        Returns ``None`` when the session is gone, revoked, or was already
        rotated by another caller.
        """
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if (
                not sess
                or sess.revoked_at is not None
                or sess.refresh_token_hash != expected_hash
            ):
                return None
            sess.refresh_token_hash = new_hash
            sess.last_activity_at = now or utcnow()
            self._persist_state()
            return sess

    def revoke_session(
        self, session_id: str, reason: str, *, now: Optional[datetime] = None
    ) -> Optional[Session]:
        """Mark a live session revoked; ``None`` if it was missing or already revoked."""
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.revoked_at is not None:
                return None
            sess.revoked_at = now or utcnow()
            sess.revoked_reason = reason
            self._persist_state()
            return sess

    def list_sessions(
        self,
        user_id: str,
        *,
        device_id: Optional[str] = None,
        include_revoked: bool = False,
    ) -> List[Session]:
        with self._data_lock:
            return [
                s
                for s in self.sessions.values()
                if s.user_id == user_id
                and (device_id is None or s.device_id == device_id)
                and (include_revoked or s.revoked_at is None)
            ]

    def list_family_sessions(self, family: str) -> List[Session]:
        with self._data_lock:
            return [s for s in self.sessions.values() if s.family == family]

    def delete_user_sessions(self, user_id: str) -> int:
        with self._data_lock:
            stale = [sid for sid, s in self.sessions.items() if s.user_id == user_id]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # vault
    def create_vault(
        self,
        user_id: str,
        blob: str,
        encryption: VaultEncryption,
        checksum: str,
        *,
        blob_format_version: int = 1,
    ) -> Vault:
        with self._data_lock:
            if user_id in self.vaults:
                raise ConstraintViolation("vault already exists", {"field": "user_id"})
            now = utcnow()
            vault = Vault(
                id=new_id(),
                user_id=user_id,
                blob=blob,
                encryption=encryption,
                checksum=checksum,
                version=1,
                blob_format_version=blob_format_version,
                last_synced_at=now,
                created_at=now,
                updated_at=now,
            )
            self.vaults[user_id] = vault
            self._persist_state()
            return vault

    def get_vault(self, user_id: str) -> Optional[Vault]:
        with self._data_lock:
            return self.vaults.get(user_id)

    def update_vault_if_version(
        self,
        user_id: str,
        expected_version: int,
        *,
        blob: str,
        encryption: VaultEncryption,
        checksum: str,
        blob_format_version: int,
        now: Optional[datetime] = None,
    ) -> Optional[Vault]:
        with self._data_lock:
            vault = self.vaults.get(user_id)
            if not vault or vault.version != expected_version:
                return None
            now = now or utcnow()
            vault.blob = blob
            vault.encryption = encryption
            vault.checksum = checksum
            vault.blob_format_version = blob_format_version
            vault.version = expected_version + 1
            vault.last_synced_at = now
            vault.updated_at = now
            self._persist_state()
            return vault

    def delete_vault(self, user_id: str) -> bool:
        with self._data_lock:
            removed = self.vaults.pop(user_id, None)
            if removed:
                self._persist_state()
            return removed is not None

    # audit
    def append_audit_log(self, entry: AuditLogEntry) -> AuditLogEntry:
        with self._data_lock:
            self.audit_logs.append(entry)
            self._persist_state()
            return entry

    def list_audit_logs(
        self,
        user_id: str,
        *,
        offset: int = 0,
        limit: int = 50,
        action: Optional[str] = None,
    ) -> Tuple[List[AuditLogEntry], int]:
        with self._data_lock:
            matches = [
                e
                for e in self.audit_logs
                if e.user_id == user_id and (action is None or e.action == action)
            ]
        matches.sort(key=lambda e: e.created_at, reverse=True)
        return matches[offset : offset + limit], len(matches)

    def anonymize_audit_logs(self, user_id: str) -> int:
        with self._data_lock:
            count = 0
            for entry in self.audit_logs:
                if entry.user_id == user_id:
                    entry.user_id = None
                    count += 1
            if count:
                self._persist_state()
            return count

    def purge_audit_logs(self, older_than: datetime) -> int:
        with self._data_lock:
            before = len(self.audit_logs)
            self.audit_logs = [e for e in self.audit_logs if e.created_at >= older_than]
            purged = before - len(self.audit_logs)
            if purged:
                self._persist_state()
            return purged

    # persistence
    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "devices": [self._serialize_device(d) for d in self.devices.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "vaults": [self._serialize_vault(v) for v in self.vaults.values()],
            "audit_logs": [self._serialize_audit(e) for e in self.audit_logs],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.devices = {
            d["id"]: self._deserialize_device(d) for d in data.get("devices", [])
        }
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.vaults = {
            v["user_id"]: self._deserialize_vault(v) for v in data.get("vaults", [])
        }
        self.audit_logs = [self._deserialize_audit(e) for e in data.get("audit_logs", [])]
        self.logger.info(
            "memory_store_state_loaded",
            users=len(self.users),
            sessions=len(self.sessions),
        )
        return True

    @staticmethod
    def _dt(value: Optional[datetime]) -> Optional[str]:
        return value.isoformat() if value is not None else None

    @staticmethod
    def _parse_dt(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "verifier_hash": user.verifier_hash,
            "verifier_algorithm": user.verifier_algorithm,
            "verifier_version": user.verifier_version,
            "kdf": user.kdf.to_dict(),
            "email_verified": user.email_verified,
            "wrapped_vault_key": user.wrapped_vault_key,
            "has_master_password": user.has_master_password,
            "status": user.status,
            "failed_login_attempts": user.failed_login_attempts,
            "lockout_until": self._dt(user.lockout_until),
            "last_login_at": self._dt(user.last_login_at),
            "password_changed_at": self._dt(user.password_changed_at),
            "created_at": self._dt(user.created_at),
            "updated_at": self._dt(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=data["id"],
            email=data["email"],
            verifier_hash=data["verifier_hash"],
            verifier_algorithm=data.get("verifier_algorithm", "argon2id"),
            verifier_version=data.get("verifier_version", 1),
            kdf=KdfParams(**data["kdf"]),
            email_verified=data.get("email_verified", False),
            wrapped_vault_key=data.get("wrapped_vault_key"),
            has_master_password=data.get("has_master_password", False),
            status=data.get("status", "active"),
            failed_login_attempts=data.get("failed_login_attempts", 0),
            lockout_until=self._parse_dt(data.get("lockout_until")),
            last_login_at=self._parse_dt(data.get("last_login_at")),
            password_changed_at=self._parse_dt(data.get("password_changed_at")),
            created_at=self._parse_dt(data["created_at"]),
            updated_at=self._parse_dt(data["updated_at"]),
        )

    def _serialize_device(self, device: Device) -> dict:
        return {
            "id": device.id,
            "user_id": device.user_id,
            "fingerprint_hash": device.fingerprint_hash,
            "name": device.name,
            "platform": device.platform,
            "trusted": device.trusted,
            "last_seen_at": self._dt(device.last_seen_at),
            "last_ip_address": device.last_ip_address,
            "created_at": self._dt(device.created_at),
            "updated_at": self._dt(device.updated_at),
        }

    def _deserialize_device(self, data: dict) -> Device:
        return Device(
            id=data["id"],
            user_id=data["user_id"],
            fingerprint_hash=data["fingerprint_hash"],
            name=data["name"],
            platform=data["platform"],
            trusted=data.get("trusted", False),
            last_seen_at=self._parse_dt(data["last_seen_at"]),
            last_ip_address=data.get("last_ip_address"),
            created_at=self._parse_dt(data["created_at"]),
            updated_at=self._parse_dt(data["updated_at"]),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "device_id": session.device_id,
            "refresh_token_hash": session.refresh_token_hash,
            "family": session.family,
            "expires_at": self._dt(session.expires_at),
            "user_agent": session.user_agent,
            "ip_address": session.ip_address,
            "created_at": self._dt(session.created_at),
            "last_activity_at": self._dt(session.last_activity_at),
            "revoked_at": self._dt(session.revoked_at),
            "revoked_reason": session.revoked_reason,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            device_id=data["device_id"],
            refresh_token_hash=data["refresh_token_hash"],
            family=data["family"],
            expires_at=self._parse_dt(data["expires_at"]),
            user_agent=data.get("user_agent"),
            ip_address=data.get("ip_address"),
            created_at=self._parse_dt(data["created_at"]),
            last_activity_at=self._parse_dt(data["last_activity_at"]),
            revoked_at=self._parse_dt(data.get("revoked_at")),
            revoked_reason=data.get("revoked_reason"),
        )

    def _serialize_vault(self, vault: Vault) -> dict:
        return {
            "id": vault.id,
            "user_id": vault.user_id,
            "blob": vault.blob,
            "encryption": vault.encryption.to_dict(),
            "checksum": vault.checksum,
            "version": vault.version,
            "blob_format_version": vault.blob_format_version,
            "last_synced_at": self._dt(vault.last_synced_at),
            "created_at": self._dt(vault.created_at),
            "updated_at": self._dt(vault.updated_at),
        }

    def _deserialize_vault(self, data: dict) -> Vault:
        return Vault(
            id=data["id"],
            user_id=data["user_id"],
            blob=data["blob"],
            encryption=VaultEncryption(**data["encryption"]),
            checksum=data["checksum"],
            version=data["version"],
            blob_format_version=data.get("blob_format_version", 1),
            last_synced_at=self._parse_dt(data["last_synced_at"]),
            created_at=self._parse_dt(data["created_at"]),
            updated_at=self._parse_dt(data["updated_at"]),
        )

    def _serialize_audit(self, entry: AuditLogEntry) -> dict:
        return {
            "id": entry.id,
            "action": entry.action,
            "status": entry.status,
            "user_id": entry.user_id,
            "ip_address": entry.ip_address,
            "user_agent": entry.user_agent,
            "session_id": entry.session_id,
            "device_id": entry.device_id,
            "metadata": entry.metadata,
            "created_at": self._dt(entry.created_at),
        }

    def _deserialize_audit(self, data: dict) -> AuditLogEntry:
        return AuditLogEntry(
            id=data["id"],
            action=data["action"],
            status=data["status"],
            user_id=data.get("user_id"),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            session_id=data.get("session_id"),
            device_id=data.get("device_id"),
            metadata=data.get("metadata"),
            created_at=self._parse_dt(data["created_at"]),
        )
