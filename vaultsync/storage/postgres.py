from __future__ import annotations

import json
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

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

_REQUIRED_TABLES = ("app_user", "device", "auth_session", "vault", "audit_log")


class PostgresStore:
    """Postgres-backed store.

    Conditional writes are single ``UPDATE ... WHERE <old value> RETURNING``
    statements so concurrent callers cannot both observe success.
    """

    def __init__(
        self,
        dsn: str,
        *,
        pool_timeout: float = 10.0,
        statement_timeout_ms: int = 5000,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            timeout=pool_timeout,
            kwargs=self._connection_kwargs(statement_timeout_ms),
        )
        self._verify_required_schema()

    @staticmethod
    def _connection_kwargs(statement_timeout_ms: int) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {"row_factory": dict_row, "autocommit": False}
        # Server-side cap per statement; 0 leaves Postgres unbounded
        if statement_timeout_ms > 0:
            kwargs["options"] = f"-c statement_timeout={int(statement_timeout_ms)}"
        return kwargs

    def _connect(self):
        return self.pool.connection()

    @staticmethod
    def _valid_id(value: str) -> bool:
        try:
            uuid.UUID(str(value))
        except ValueError:
            return False
        return True

    def close(self) -> None:
        self.pool.close()

    def ping(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    # row mapping
    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        kdf_raw = row["kdf"]
        if isinstance(kdf_raw, str):
            kdf_raw = json.loads(kdf_raw)
        return User(
            id=str(row["id"]),
            email=row["email"],
            verifier_hash=row["verifier_hash"],
            verifier_algorithm=row["verifier_algorithm"],
            verifier_version=row["verifier_version"],
            kdf=KdfParams(**kdf_raw),
            email_verified=row["email_verified"],
            wrapped_vault_key=row.get("wrapped_vault_key"),
            has_master_password=row["has_master_password"],
            status=row["status"],
            failed_login_attempts=row["failed_login_attempts"],
            lockout_until=row.get("lockout_until"),
            last_login_at=row.get("last_login_at"),
            password_changed_at=row.get("password_changed_at"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _device_from_row(row: Dict[str, Any]) -> Device:
        return Device(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            fingerprint_hash=row["fingerprint_hash"],
            name=row["name"],
            platform=row["platform"],
            trusted=row["trusted"],
            last_seen_at=row["last_seen_at"],
            last_ip_address=row.get("last_ip_address"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            device_id=str(row["device_id"]),
            refresh_token_hash=row["refresh_token_hash"],
            family=row["family"],
            expires_at=row["expires_at"],
            user_agent=row.get("user_agent"),
            ip_address=row.get("ip_address"),
            created_at=row["created_at"],
            last_activity_at=row["last_activity_at"],
            revoked_at=row.get("revoked_at"),
            revoked_reason=row.get("revoked_reason"),
        )

    @staticmethod
    def _vault_from_row(row: Dict[str, Any]) -> Vault:
        return Vault(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            blob=row["blob"],
            # stored as encryption_tag, exposed as auth_tag
            encryption=VaultEncryption(
                algorithm=row["encryption_algorithm"],
                iv=row["encryption_iv"],
                auth_tag=row["encryption_tag"],
            ),
            checksum=row["checksum"],
            version=row["version"],
            blob_format_version=row["blob_format_version"],
            last_synced_at=row["last_synced_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _audit_from_row(row: Dict[str, Any]) -> AuditLogEntry:
        meta = row.get("metadata")
        if isinstance(meta, str):
            meta = json.loads(meta)
        return AuditLogEntry(
            id=str(row["id"]),
            action=row["action"],
            status=row["status"],
            user_id=str(row["user_id"]) if row.get("user_id") else None,
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            session_id=row.get("session_id"),
            device_id=row.get("device_id"),
            metadata=meta,
            created_at=row["created_at"],
        )

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, verifier_hash, kdf, wrapped_vault_key, has_master_password)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        new_id(),
                        email,
                        verifier_hash,
                        json.dumps(kdf.to_dict()),
                        wrapped_vault_key,
                        has_master_password,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def record_failed_login(
        self,
        user_id: str,
        *,
        threshold: int,
        lockout_minutes: int,
        now: Optional[datetime] = None,
    ) -> Optional[User]:
        now = now or utcnow()
        lockout_until = now + timedelta(minutes=lockout_minutes)
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user SET
                    failed_login_attempts = failed_login_attempts + 1,
                    status = CASE WHEN failed_login_attempts + 1 >= %s THEN 'locked' ELSE status END,
                    lockout_until = CASE WHEN failed_login_attempts + 1 >= %s THEN %s ELSE lockout_until END,
                    updated_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (threshold, threshold, lockout_until, now, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def reset_failed_logins(
        self, user_id: str, *, login_at: Optional[datetime] = None
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user SET
                    failed_login_attempts = 0,
                    lockout_until = NULL,
                    status = CASE WHEN status = 'locked' THEN 'active' ELSE status END,
                    last_login_at = COALESCE(%s, last_login_at),
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (login_at, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def set_verifier(
        self,
        user_id: str,
        verifier_hash: str,
        wrapped_vault_key: str,
        *,
        changed_at: Optional[datetime] = None,
    ) -> Optional[User]:
        changed_at = changed_at or utcnow()
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET verifier_hash = %s, wrapped_vault_key = %s,
                    password_changed_at = %s, updated_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (verifier_hash, wrapped_vault_key, changed_at, changed_at, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def set_kdf(self, user_id: str, kdf: KdfParams) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET kdf = %s, updated_at = now() WHERE id = %s RETURNING *",
                (json.dumps(kdf.to_dict()), user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def set_master_password(self, user_id: str, wrapped_vault_key: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET wrapped_vault_key = %s, has_master_password = TRUE, updated_at = now()
                WHERE id = %s AND has_master_password = FALSE
                RETURNING *
                """,
                (wrapped_vault_key, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return cur.rowcount > 0

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO device (id, user_id, fingerprint_hash, name, platform,
                                        last_seen_at, last_ip_address, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (user_id, fingerprint_hash) DO UPDATE SET
                        name = EXCLUDED.name,
                        platform = EXCLUDED.platform,
                        last_seen_at = EXCLUDED.last_seen_at,
                        last_ip_address = EXCLUDED.last_ip_address,
                        updated_at = EXCLUDED.updated_at
                    RETURNING *
                    """,
                    (new_id(), user_id, fingerprint_hash, name, platform, now, ip_address, now, now),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("device owner missing", {"user_id": user_id})
        return self._device_from_row(row)

    def get_device(self, device_id: str) -> Optional[Device]:
        if not self._valid_id(device_id):
            return None
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM device WHERE id = %s", (device_id,)).fetchone()
        return self._device_from_row(row) if row else None

    def list_devices(self, user_id: str) -> List[Device]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM device WHERE user_id = %s", (user_id,)
            ).fetchall()
        return [self._device_from_row(r) for r in rows]

    def rename_device(self, device_id: str, name: str) -> Optional[Device]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE device SET name = %s, updated_at = now() WHERE id = %s RETURNING *",
                (name, device_id),
            ).fetchone()
        return self._device_from_row(row) if row else None

    def set_device_trusted(self, device_id: str, trusted: bool = True) -> Optional[Device]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE device SET trusted = %s, updated_at = now() WHERE id = %s RETURNING *",
                (trusted, device_id),
            ).fetchone()
        return self._device_from_row(row) if row else None

    def delete_device(self, device_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM device WHERE id = %s", (device_id,))
            return cur.rowcount > 0

    def delete_user_devices(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM device WHERE user_id = %s", (user_id,))
            return cur.rowcount

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
        sess = Session.new(
            user_id,
            device_id,
            family=family,
            refresh_token_hash=refresh_token_hash,
            ttl_minutes=ttl_minutes,
            user_agent=user_agent,
            ip_address=ip_address,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, device_id, refresh_token_hash, family,
                                              expires_at, user_agent, ip_address, created_at, last_activity_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        sess.id,
                        sess.user_id,
                        sess.device_id,
                        sess.refresh_token_hash,
                        sess.family,
                        sess.expires_at,
                        sess.user_agent,
                        sess.ip_address,
                        sess.created_at,
                        sess.last_activity_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user does not exist", {"user_id": user_id})
        return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        if not self._valid_id(session_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def rotate_refresh_hash(
        self,
        session_id: str,
        expected_hash: str,
        new_hash: str,
        *,
        now: Optional[datetime] = None,
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session
                SET refresh_token_hash = %s, last_activity_at = %s
                WHERE id = %s AND refresh_token_hash = %s AND revoked_at IS NULL
                RETURNING *
                """,
                (new_hash, now or utcnow(), session_id, expected_hash),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def revoke_session(
        self, session_id: str, reason: str, *, now: Optional[datetime] = None
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_session SET revoked_at = %s, revoked_reason = %s
                WHERE id = %s AND revoked_at IS NULL
                RETURNING *
                """,
                (now or utcnow(), reason, session_id),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def list_sessions(
        self,
        user_id: str,
        *,
        device_id: Optional[str] = None,
        include_revoked: bool = False,
    ) -> List[Session]:
        clauses = ["user_id = %s"]
        params: List[Any] = [user_id]
        if device_id is not None:
            clauses.append("device_id = %s")
            params.append(device_id)
        if not include_revoked:
            clauses.append("revoked_at IS NULL")
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM auth_session WHERE {' AND '.join(clauses)}", params
            ).fetchall()
        return [self._session_from_row(r) for r in rows]

    def list_family_sessions(self, family: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM auth_session WHERE family = %s", (family,)
            ).fetchall()
        return [self._session_from_row(r) for r in rows]

    def delete_user_sessions(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth_session WHERE user_id = %s", (user_id,))
            return cur.rowcount

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
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO vault (id, user_id, blob, encryption_algorithm, encryption_iv,
                                       encryption_tag, checksum, version, blob_format_version)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, 1, %s)
                    RETURNING *
                    """,
                    (
                        new_id(),
                        user_id,
                        blob,
                        encryption.algorithm,
                        encryption.iv,
                        encryption.auth_tag,
                        checksum,
                        blob_format_version,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("vault already exists", {"field": "user_id"})
        return self._vault_from_row(row)

    def get_vault(self, user_id: str) -> Optional[Vault]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM vault WHERE user_id = %s", (user_id,)
            ).fetchone()
        return self._vault_from_row(row) if row else None

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
        now = now or utcnow()
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE vault SET
                    blob = %s,
                    encryption_algorithm = %s,
                    encryption_iv = %s,
                    encryption_tag = %s,
                    checksum = %s,
                    blob_format_version = %s,
                    version = version + 1,
                    last_synced_at = %s,
                    updated_at = %s
                WHERE user_id = %s AND version = %s
                RETURNING *
                """,
                (
                    blob,
                    encryption.algorithm,
                    encryption.iv,
                    encryption.auth_tag,
                    checksum,
                    blob_format_version,
                    now,
                    now,
                    user_id,
                    expected_version,
                ),
            ).fetchone()
        return self._vault_from_row(row) if row else None

    def delete_vault(self, user_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM vault WHERE user_id = %s", (user_id,))
            return cur.rowcount > 0

    # audit
    def append_audit_log(self, entry: AuditLogEntry) -> AuditLogEntry:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_log (id, user_id, action, status, ip_address, user_agent,
                                       session_id, device_id, metadata, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.user_id,
                    entry.action,
                    entry.status,
                    entry.ip_address,
                    entry.user_agent,
                    entry.session_id,
                    entry.device_id,
                    json.dumps(entry.metadata) if entry.metadata else None,
                    entry.created_at,
                ),
            )
        return entry

    def list_audit_logs(
        self,
        user_id: str,
        *,
        offset: int = 0,
        limit: int = 50,
        action: Optional[str] = None,
    ) -> Tuple[List[AuditLogEntry], int]:
        where = "user_id = %s"
        params: List[Any] = [user_id]
        if action:
            where += " AND action = %s"
            params.append(action)
        with self._connect() as conn:
            total_row = conn.execute(
                f"SELECT COUNT(*) AS total FROM audit_log WHERE {where}", params
            ).fetchone()
            rows = conn.execute(
                f"SELECT * FROM audit_log WHERE {where} ORDER BY created_at DESC OFFSET %s LIMIT %s",
                [*params, offset, limit],
            ).fetchall()
        total = int(total_row["total"]) if total_row else 0
        return [self._audit_from_row(r) for r in rows], total

    def anonymize_audit_logs(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE audit_log SET user_id = NULL WHERE user_id = %s", (user_id,)
            )
            return cur.rowcount

    def purge_audit_logs(self, older_than: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM audit_log WHERE created_at < %s", (older_than,)
            )
            purged = cur.rowcount
        self.logger.info("audit_logs_purged", purged=purged, older_than=older_than.isoformat())
        return purged
