from __future__ import annotations

from typing import Optional, Tuple, Union
from urllib.parse import urlparse, urlunparse

from vaultsync.config import Settings, get_settings
from vaultsync.logging import get_logger
from vaultsync.service.audit import AuditSink
from vaultsync.service.auth import AuthFlow
from vaultsync.service.credentials import CredentialService
from vaultsync.service.devices import DeviceRegistry
from vaultsync.service.sessions import SessionManager
from vaultsync.service.tokens import TokenCodec
from vaultsync.service.users import AccountService
from vaultsync.service.vault import VaultSyncEngine
from vaultsync.storage.memory import MemoryStore
from vaultsync.storage.postgres import PostgresStore
from vaultsync.storage.redis_cache import LocalCache, RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        if parsed.username:
            netloc = f"{parsed.username}:***@{netloc}"
        else:
            netloc = f":***@{netloc}"
        return urlunparse(
            (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Owns the store, the cache and every service built on them.

    Constructed once by the application lifespan and closed at shutdown.
    Tests build their own instance from a Settings object.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store = (
                MemoryStore(fs_root=self.settings.shared_fs_root)
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    pool_timeout=self.settings.database_pool_timeout,
                    statement_timeout_ms=self.settings.database_statement_timeout_ms,
                )
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = self._build_cache()

        s = self.settings
        self.codec = TokenCodec(s)
        self.credentials = CredentialService(self.store, s)
        self.audit = AuditSink(self.store, retention_days=s.audit_retention_days)
        self.sessions = SessionManager(self.store, self.cache, self.codec, self.audit, s)
        self.devices = DeviceRegistry(self.store, self.audit, self.sessions)
        self.vault = VaultSyncEngine(
            self.store, self.audit, max_blob_bytes=s.max_vault_blob_bytes
        )
        self.auth = AuthFlow(
            self.store,
            self.cache,
            s,
            codec=self.codec,
            credentials=self.credentials,
            devices=self.devices,
            sessions=self.sessions,
            vault=self.vault,
            audit=self.audit,
        )
        self.accounts = AccountService(
            self.store,
            self.cache,
            credentials=self.credentials,
            sessions=self.sessions,
            audit=self.audit,
        )
        logger.info("runtime_init_completed", cache_type=type(self.cache).__name__)

    def _build_cache(self):
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode so per-test event loops never own the pool
                if self.settings.test_mode:
                    cache = SyncRedisCache(
                        self.settings.redis_url, socket_timeout=self.settings.redis_socket_timeout
                    )
                else:
                    cache = RedisCache(
                        self.settings.redis_url, socket_timeout=self.settings.redis_socket_timeout
                    )
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for session revocation and rate limits; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; revocations and rate limits "
                "are visible to this process only."
            ),
            mode=fallback_mode,
        )
        return LocalCache()

    async def close(self) -> None:
        try:
            await self.cache.close()
        except Exception as exc:
            logger.warning("runtime_cache_close_failed", error=str(exc))
        try:
            self.store.close()
        except Exception as exc:
            logger.warning("runtime_store_close_failed", error=str(exc))
        logger.info("runtime_closed")


async def check_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int,
    *,
    return_remaining: bool = False,
    cost: int = 1,
) -> Union[bool, Tuple[bool, int, int]]:
    """Consume ``cost`` tokens from the bucket named by ``key``.

    A limit of 0 or less disables the check.

    Returns:
        bool if return_remaining is False, else (allowed, remaining, reset_seconds)
    """
    if limit <= 0:
        return (True, limit, 0) if return_remaining else True
    if window_seconds <= 0:
        logger.warning("rate_limit_invalid_window", key=key, window_seconds=window_seconds)
        window_seconds = 60
    return await runtime.cache.check_rate_limit(
        key, limit, window_seconds, return_remaining=return_remaining, cost=cost
    )
