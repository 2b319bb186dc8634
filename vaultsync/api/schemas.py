from __future__ import annotations

import re
import unicodedata
from typing import Any, Iterable, List, Literal, Optional, Tuple, Type, TypeVar
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from vaultsync.storage.models import KdfParams, VaultEncryption

Platform = Literal["web", "desktop-windows", "desktop-macos", "desktop-linux", "ios", "android"]
VaultAlgorithm = Literal["aes-256-gcm", "xchacha20-poly1305"]


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then NFKC-normalize."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset(
    {
        "unauthorized",
        "forbidden",
        "not_found",
        "rate_limited",
        "validation_error",
        "conflict",
        "server_error",
    }
)


class ErrorBody(BaseModel):
    """Error envelope body with a stable code clients can switch on."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


class _Request(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)


class KdfParamsIn(_Request):
    algorithm: Literal["argon2id", "pbkdf2"]
    salt: str = Field(..., min_length=1, max_length=512)
    memory: int = Field(..., ge=0, le=1048576)
    iterations: int = Field(..., ge=1, le=1000000)
    parallelism: int = Field(..., ge=1, le=16)

    def to_model(self) -> KdfParams:
        return KdfParams(
            salt=self.salt,
            algorithm=self.algorithm,
            memory=self.memory,
            iterations=self.iterations,
            parallelism=self.parallelism,
        )


class EncryptionIn(_Request):
    algorithm: VaultAlgorithm
    iv: str = Field(..., min_length=1, max_length=512)
    auth_tag: str = Field(..., min_length=1, max_length=512)

    def to_model(self) -> VaultEncryption:
        return VaultEncryption(algorithm=self.algorithm, iv=self.iv, auth_tag=self.auth_tag)


class InitialVaultIn(_Request):
    blob: str = Field(..., min_length=1)
    encryption: EncryptionIn
    checksum: str = Field(..., min_length=1, max_length=256)
    blob_format_version: int = Field(default=1, ge=1)


class DeviceIn(_Request):
    name: str = Field(..., min_length=1, max_length=100)
    platform: Platform
    device_identifier: str = Field(..., min_length=1, max_length=256)


class RegisterRequest(_Request):
    email: str
    auth_verifier: str = Field(..., min_length=1, max_length=1024)
    kdf: KdfParamsIn
    wrapped_vault_key: Optional[str] = Field(default=None, min_length=1, max_length=4096)
    initial_vault: Optional[InitialVaultIn] = None
    device: DeviceIn

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)


class LoginRequest(_Request):
    email: str
    auth_verifier: str = Field(..., min_length=1, max_length=1024)
    device: DeviceIn

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return _validate_email(value)


class PreloginQuery(_Request):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_prelogin_email(cls, value: str) -> str:
        return _validate_email(value)


class TokenRefreshRequest(_Request):
    refresh_token: str = Field(..., min_length=1, max_length=4096)


class ChangePasswordRequest(_Request):
    current_auth_verifier: str = Field(..., min_length=1, max_length=1024)
    new_auth_verifier: str = Field(..., min_length=1, max_length=1024)
    new_wrapped_vault_key: str = Field(..., min_length=1, max_length=4096)
    new_kdf: Optional[KdfParamsIn] = None


class SetMasterPasswordRequest(_Request):
    wrapped_vault_key: str = Field(..., min_length=1, max_length=4096)
    initial_vault: InitialVaultIn


class VaultUpdateRequest(_Request):
    blob: str = Field(..., min_length=1)
    encryption: EncryptionIn
    expected_version: int = Field(..., ge=1)
    checksum: str = Field(..., min_length=1, max_length=256)
    blob_format_version: int = Field(default=1, ge=1)


class DeviceRenameRequest(_Request):
    name: str = Field(..., min_length=1, max_length=100)


class DeleteAccountRequest(_Request):
    auth_verifier: str = Field(..., min_length=1, max_length=1024)


def _field_path(loc: Iterable[Any]) -> str:
    parts = [str(p) for p in loc if p not in ("body", "query", "path")]
    return ".".join(parts) or "body"


def format_validation_errors(errors: Iterable[dict]) -> List[dict]:
    """Flatten pydantic error dicts into ``[{field, message}]``."""
    formatted = []
    for err in errors:
        message = err.get("msg", "invalid value")
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        formatted.append({"field": _field_path(err.get("loc", ())), "message": message})
    return formatted


M = TypeVar("M", bound=BaseModel)


def parse_request(model: Type[M], payload: Any) -> Tuple[Optional[M], List[dict]]:
    """Validate ``payload`` against ``model``.

    Returns ``(instance, [])`` on success or ``(None, errors)`` where each
    error is ``{"field": ..., "message": ...}``.
    """
    if not isinstance(payload, dict):
        return None, [{"field": "body", "message": "request body must be a JSON object"}]
    try:
        return model.model_validate(payload), []
    except PydanticValidationError as exc:
        return None, format_validation_errors(exc.errors())
