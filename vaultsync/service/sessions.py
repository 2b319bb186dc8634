from __future__ import annotations

import secrets
from typing import List, Optional, Tuple

from vaultsync.logging import get_logger
from vaultsync.service.audit import AuditContext, AuditSink
from vaultsync.service.credentials import hash_token
from vaultsync.service.errors import NotFoundError, RefreshTokenRejected, ServerError, ValidationError
from vaultsync.service.tokens import TokenCodec, TokenPair
from vaultsync.storage.models import Device, Session, User, utcnow

logger = get_logger(__name__)

REUSE_REASON = "Token reuse detected"


class SessionManager:
    """Session creation, refresh-token rotation and revocation.

    Sessions store only the SHA-256 of their current refresh token. Every
    rotation is a compare-and-swap on that hash, so of two callers presenting
    the same token exactly one wins and the other is treated as reuse.
    """

    def __init__(self, store, cache, codec: TokenCodec, audit: AuditSink, settings) -> None:
        self.store = store
        self.cache = cache
        self.codec = codec
        self.audit = audit
        self.settings = settings

    @property
    def blacklist_ttl(self) -> int:
        """Long enough to outlive any access token already issued for a session."""
        return self.codec.access_ttl_seconds + int(self.codec.leeway.total_seconds())

    async def create(
        self,
        user: User,
        device: Device,
        *,
        context: Optional[AuditContext] = None,
    ) -> Tuple[Session, TokenPair]:
        ctx = context or AuditContext()
        family = secrets.token_urlsafe(24)
        # Token must embed the session id, so insert first and swap the hash in after
        placeholder = hash_token(f"pending:{secrets.token_urlsafe(32)}")
        sess = self.store.create_session(
            user.id,
            device.id,
            family=family,
            refresh_token_hash=placeholder,
            ttl_minutes=self.settings.refresh_token_ttl_minutes,
            user_agent=ctx.user_agent,
            ip_address=ctx.ip_address,
        )
        pair = self.codec.issue_pair(user.id, user.email, sess.id, device.id, family)
        updated = self.store.rotate_refresh_hash(
            sess.id, placeholder, hash_token(pair.refresh_token)
        )
        if updated is None:
            logger.error("session_finalize_failed", session_id=sess.id, user_id=user.id)
            raise ServerError("failed to create session")
        self.audit.log(
            "session.create",
            user_id=user.id,
            context=ctx.with_session(sess.id, device.id),
        )
        return updated, pair

    async def rotate(
        self, refresh_token: str, *, context: Optional[AuditContext] = None
    ) -> Tuple[Session, TokenPair]:
        payload = self.codec.decode_refresh(refresh_token)
        if not payload:
            raise RefreshTokenRejected("malformed")
        sess = self.store.get_session(payload["sid"])
        if (
            not sess
            or sess.user_id != payload["sub"]
            or sess.family != payload["family"]
            or not sess.is_active(utcnow())
        ):
            raise RefreshTokenRejected("unknown_session")
        user = self.store.get_user(sess.user_id)
        if not user:
            raise RefreshTokenRejected("unknown_user")

        presented = hash_token(refresh_token)
        if presented != sess.refresh_token_hash:
            await self._handle_reuse(sess, context)
            raise RefreshTokenRejected("token_reuse")

        pair = self.codec.issue_pair(user.id, user.email, sess.id, sess.device_id, sess.family)
        rotated = self.store.rotate_refresh_hash(
            sess.id, presented, hash_token(pair.refresh_token), now=utcnow()
        )
        if rotated is None:
            # A concurrent rotation consumed the same token first
            await self._handle_reuse(sess, context)
            raise RefreshTokenRejected("token_reuse")
        return rotated, pair

    async def _handle_reuse(self, sess: Session, context: Optional[AuditContext]) -> int:
        logger.warning(
            "refresh_token_reuse_detected",
            family=sess.family,
            session_id=sess.id,
            user_id=sess.user_id,
        )
        revoked = await self.revoke_family(sess.family, REUSE_REASON)
        self.audit.log(
            "session.revoke",
            status="failure",
            user_id=sess.user_id,
            context=(context or AuditContext()).with_session(sess.id, sess.device_id),
            metadata={"reason": "token_reuse", "revoked_count": revoked},
        )
        return revoked

    async def _blacklist(self, session_id: str) -> None:
        try:
            await self.cache.blacklist_session(session_id, self.blacklist_ttl)
        except Exception as exc:
            # The store row is already revoked; authenticate() checks both
            logger.error("session_blacklist_failed", session_id=session_id, error=str(exc))

    async def revoke(self, session_id: str, reason: str) -> bool:
        """Revoke one session and blacklist it. False if it was already revoked."""
        revoked = self.store.revoke_session(session_id, reason, now=utcnow())
        if revoked is None:
            return False
        await self._blacklist(session_id)
        logger.info("session_revoked", session_id=session_id, reason=reason)
        return True

    async def revoke_family(self, family: str, reason: str) -> int:
        count = 0
        for sess in self.store.list_family_sessions(family):
            if await self.revoke(sess.id, reason):
                count += 1
            else:
                # Blacklist anyway; a revoked row may still have live access tokens
                await self._blacklist(sess.id)
        return count

    async def revoke_all_except(
        self, user_id: str, current_session_id: Optional[str], reason: str
    ) -> int:
        count = 0
        for sess in self.store.list_sessions(user_id):
            if sess.id == current_session_id:
                continue
            if await self.revoke(sess.id, reason):
                count += 1
        return count

    async def revoke_device_sessions(self, user_id: str, device_id: str, reason: str) -> int:
        count = 0
        for sess in self.store.list_sessions(user_id, device_id=device_id):
            if await self.revoke(sess.id, reason):
                count += 1
        return count

    async def revoke_other(
        self,
        user_id: str,
        session_id: str,
        current_session_id: str,
        *,
        context: Optional[AuditContext] = None,
    ) -> None:
        """Revoke one of the user's other sessions on their request."""
        sess = self.store.get_session(session_id)
        if not sess or sess.user_id != user_id:
            raise NotFoundError("Session not found")
        if session_id == current_session_id:
            raise ValidationError("Cannot revoke current session. Use logout instead.")
        await self.revoke(session_id, "Revoked by user")
        self.audit.log(
            "session.revoke",
            user_id=user_id,
            context=context,
            metadata={"revoked_session_id": session_id},
        )

    def list(self, user_id: str, current_session_id: Optional[str]) -> List[dict]:
        now = utcnow()
        active = [s for s in self.store.list_sessions(user_id) if s.is_active(now)]
        active.sort(key=lambda s: s.last_activity_at, reverse=True)
        results = []
        for sess in active:
            device = self.store.get_device(sess.device_id)
            results.append(
                {
                    "id": sess.id,
                    "device": {
                        "id": sess.device_id,
                        "name": device.name if device else None,
                        "platform": device.platform if device else None,
                    },
                    "ip_address": sess.ip_address,
                    "user_agent": sess.user_agent,
                    "created_at": sess.created_at.isoformat(),
                    "last_activity_at": sess.last_activity_at.isoformat(),
                    "is_current": sess.id == current_session_id,
                }
            )
        return results
