from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional

from vaultsync.config import Settings
from vaultsync.logging import get_logger

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "bearer"

    def to_dict(self) -> dict:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_in": self.expires_in,
            "token_type": self.token_type,
        }


class TokenCodec:
    """HS256 signing and verification of access and refresh tokens.

    Access and refresh tokens use distinct secrets so a leaked refresh secret
    cannot mint access tokens and vice versa. Verification never touches
    storage; callers decide what a valid claim set means.
    """

    def __init__(self, settings: Settings) -> None:
        self._secrets = {
            ACCESS: settings.jwt_access_secret.encode(),
            REFRESH: settings.jwt_refresh_secret.encode(),
        }
        self.issuer = settings.jwt_issuer
        self.audience = settings.jwt_audience
        self.access_ttl = timedelta(minutes=settings.access_token_ttl_minutes)
        self.refresh_ttl = timedelta(minutes=settings.refresh_token_ttl_minutes)
        # Allowance for small clock skew across nodes
        self.leeway = timedelta(seconds=settings.clock_skew_leeway_seconds)

    @property
    def access_ttl_seconds(self) -> int:
        return int(self.access_ttl.total_seconds())

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, kind: str, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secrets[kind], signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode(self, kind: str, claims: dict[str, Any], ttl: timedelta) -> str:
        now = int(time.time())
        payload = {
            **claims,
            "typ": kind,
            "iss": self.issuer,
            "aud": self.audience,
            "iat": now,
            "exp": now + int(ttl.total_seconds()),
            "jti": str(uuid.uuid4()),
        }
        header_enc = self._encode_segment(
            json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(kind, signing_input)}"

    def _decode(self, kind: str, token: str) -> Optional[dict[str, Any]]:
        # base64url segments are ASCII; anything else is forged or corrupted
        if not token or not token.isascii():
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        expected_sig = self._sign(kind, f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            logger.warning("jwt_signature_mismatch", kind=kind)
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("typ") != kind:
            return None
        if payload.get("iss") != self.issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.audience
        elif isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time() - self.leeway.total_seconds():
            return None
        if not payload.get("sub") or not payload.get("sid"):
            return None
        return payload

    def encode_access(self, user_id: str, email: str, session_id: str, device_id: str) -> str:
        return self._encode(
            ACCESS,
            {"sub": user_id, "email": email, "sid": session_id, "did": device_id},
            self.access_ttl,
        )

    def encode_refresh(self, user_id: str, session_id: str, family: str) -> str:
        return self._encode(
            REFRESH,
            {"sub": user_id, "sid": session_id, "family": family},
            self.refresh_ttl,
        )

    def decode_access(self, token: str) -> Optional[dict[str, Any]]:
        return self._decode(ACCESS, token)

    def decode_refresh(self, token: str) -> Optional[dict[str, Any]]:
        payload = self._decode(REFRESH, token)
        if payload is None or not payload.get("family"):
            return None
        return payload

    def issue_pair(
        self, user_id: str, email: str, session_id: str, device_id: str, family: str
    ) -> TokenPair:
        return TokenPair(
            access_token=self.encode_access(user_id, email, session_id, device_id),
            refresh_token=self.encode_refresh(user_id, session_id, family),
            expires_in=self.access_ttl_seconds,
        )


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    if not header.lower().startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None
