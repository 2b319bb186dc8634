from __future__ import annotations

from typing import Optional

from vaultsync.logging import get_logger
from vaultsync.service.audit import AuditContext, AuditSink
from vaultsync.service.errors import ConflictError, NotFoundError, ValidationError, VaultVersionConflict
from vaultsync.storage.errors import ConstraintViolation
from vaultsync.storage.models import Vault, VaultEncryption, utcnow

logger = get_logger(__name__)


def vault_payload(vault: Vault) -> dict:
    return {
        "blob": vault.blob,
        "encryption": vault.encryption.to_dict(),
        "version": vault.version,
        "checksum": vault.checksum,
        "blob_format_version": vault.blob_format_version,
        "last_synced_at": vault.last_synced_at.isoformat(),
    }


class VaultSyncEngine:
    """One opaque encrypted blob per user, guarded by a version counter.

    The server never merges. An update names the version it was based on and
    either wins the conditional write or gets a 409 carrying both versions.
    """

    def __init__(self, store, audit: AuditSink, *, max_blob_bytes: int = 10 * 1024 * 1024) -> None:
        self.store = store
        self.audit = audit
        self.max_blob_bytes = max_blob_bytes

    def check_size(self, blob: str) -> None:
        if len(blob.encode("utf-8")) > self.max_blob_bytes:
            raise ValidationError(
                "Vault blob exceeds maximum size",
                detail={"max_bytes": self.max_blob_bytes},
            )

    def create(
        self,
        user_id: str,
        blob: str,
        encryption: VaultEncryption,
        checksum: str,
        *,
        blob_format_version: int = 1,
    ) -> Vault:
        self.check_size(blob)
        try:
            return self.store.create_vault(
                user_id, blob, encryption, checksum, blob_format_version=blob_format_version
            )
        except ConstraintViolation as exc:
            raise ConflictError("Vault already exists") from exc

    def get(
        self,
        user_id: str,
        client_version: Optional[int] = None,
        *,
        context: Optional[AuditContext] = None,
    ) -> Optional[Vault]:
        """Return the vault, or None when the client already has this version."""
        vault = self.store.get_vault(user_id)
        if not vault:
            raise NotFoundError("Vault not found")
        self.audit.log("vault.sync", user_id=user_id, context=context)
        if client_version is not None and client_version >= vault.version:
            return None
        return vault

    def update(
        self,
        user_id: str,
        blob: str,
        encryption: VaultEncryption,
        expected_version: int,
        checksum: str,
        *,
        blob_format_version: int = 1,
        context: Optional[AuditContext] = None,
    ) -> dict:
        self.check_size(blob)
        current = self.store.get_vault(user_id)
        if not current:
            raise NotFoundError("Vault not found")
        updated = self.store.update_vault_if_version(
            user_id,
            expected_version,
            blob=blob,
            encryption=encryption,
            checksum=checksum,
            blob_format_version=blob_format_version,
            now=utcnow(),
        )
        if updated is None:
            latest = self.store.get_vault(user_id)
            current_version = latest.version if latest else current.version
            logger.info(
                "vault_version_conflict",
                user_id=user_id,
                expected_version=expected_version,
                current_version=current_version,
            )
            raise VaultVersionConflict(expected_version, current_version)
        self.audit.log(
            "vault.update",
            user_id=user_id,
            context=context,
            metadata={"previous_version": expected_version, "new_version": updated.version},
        )
        return {"version": updated.version, "last_synced_at": updated.last_synced_at.isoformat()}

    def sync_status(self, user_id: str) -> dict:
        vault = self.store.get_vault(user_id)
        if not vault:
            raise NotFoundError("Vault not found")
        return {
            "current_version": vault.version,
            "checksum": vault.checksum,
            "last_synced_at": vault.last_synced_at.isoformat(),
        }
