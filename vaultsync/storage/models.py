from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

USER_STATUSES = ("active", "locked", "suspended")
KDF_ALGORITHMS = ("argon2id", "pbkdf2")
DEVICE_PLATFORMS = (
    "web",
    "desktop-windows",
    "desktop-macos",
    "desktop-linux",
    "ios",
    "android",
)
VAULT_ALGORITHMS = ("aes-256-gcm", "xchacha20-poly1305")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class KdfParams:
    salt: str
    algorithm: str = "argon2id"
    memory: int = 65536
    iterations: int = 3
    parallelism: int = 4

    def to_dict(self) -> Dict:
        return {
            "algorithm": self.algorithm,
            "salt": self.salt,
            "memory": self.memory,
            "iterations": self.iterations,
            "parallelism": self.parallelism,
        }


@dataclass
class User:
    id: str
    email: str
    verifier_hash: str
    kdf: KdfParams
    verifier_algorithm: str = "argon2id"
    verifier_version: int = 1
    email_verified: bool = False
    wrapped_vault_key: Optional[str] = None
    has_master_password: bool = False
    status: str = "active"
    failed_login_attempts: int = 0
    lockout_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    password_changed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def is_locked(self, now: Optional[datetime] = None) -> bool:
        """Whether login must be refused regardless of credentials.

        A ``locked`` status without ``lockout_until`` is an administrative lock.
        A timed lock stops applying once ``lockout_until`` has passed.
        """
        now = now or utcnow()
        if self.lockout_until is not None and self.lockout_until > now:
            return True
        return self.status == "locked" and self.lockout_until is None


@dataclass
class Device:
    id: str
    user_id: str
    fingerprint_hash: str
    name: str
    platform: str
    trusted: bool = False
    last_seen_at: datetime = field(default_factory=utcnow)
    last_ip_address: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_new(self) -> bool:
        return self.created_at == self.updated_at


@dataclass
class Session:
    id: str
    user_id: str
    device_id: str
    refresh_token_hash: str
    family: str
    expires_at: datetime
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    last_activity_at: datetime = field(default_factory=utcnow)
    revoked_at: Optional[datetime] = None
    revoked_reason: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        device_id: str,
        *,
        family: str,
        refresh_token_hash: str,
        ttl_minutes: int,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=new_id(),
            user_id=user_id,
            device_id=device_id,
            refresh_token_hash=refresh_token_hash,
            family=family,
            expires_at=now + timedelta(minutes=ttl_minutes),
            user_agent=user_agent[:500] if user_agent else None,
            ip_address=ip_address,
            created_at=now,
            last_activity_at=now,
        )

    def is_active(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return self.revoked_at is None and self.expires_at > now


@dataclass
class VaultEncryption:
    algorithm: str
    iv: str
    auth_tag: str

    def to_dict(self) -> Dict:
        return {"algorithm": self.algorithm, "iv": self.iv, "auth_tag": self.auth_tag}


@dataclass
class Vault:
    id: str
    user_id: str
    blob: str
    encryption: VaultEncryption
    checksum: str
    version: int = 1
    blob_format_version: int = 1
    last_synced_at: datetime = field(default_factory=utcnow)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class AuditLogEntry:
    id: str
    action: str
    status: str
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    session_id: Optional[str] = None
    device_id: Optional[str] = None
    metadata: Dict | None = None
    created_at: datetime = field(default_factory=utcnow)
