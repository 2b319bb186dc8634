from __future__ import annotations

import hashlib
import json
import threading
import time
from typing import Any, Dict, Optional, Tuple, Union

import redis.asyncio as aioredis
from redis import Redis

BLACKLIST_PREFIX = "blacklist:"
PRELOGIN_PREFIX = "prelogin:"
RATE_LIMIT_PREFIX = "rl:"

RateLimitResult = Union[bool, Tuple[bool, int, int]]


def _rate_key(key: str) -> str:
    """Hash rate-limit subjects so delimiters in emails or IPs cannot collide."""
    return f"{RATE_LIMIT_PREFIX}{hashlib.sha256(key.encode()).hexdigest()}"


def _rate_result(
    allowed: Any, tokens: Any, reset_after: Any, return_remaining: bool
) -> RateLimitResult:
    allowed_bool = bool(int(allowed))
    if return_remaining:
        return (allowed_bool, max(0, int(float(tokens))), int(reset_after) if reset_after else 0)
    return allowed_bool


class RedisCache:
    """Revocation blacklist, prelogin cache and rate limits backed by Redis."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic refill + consume
    _TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local data = redis.call('HMGET', key, 'tokens', 'ts')
local tokens = tonumber(data[1])
local last = tonumber(data[2])

if tokens == nil or last == nil then
  tokens = capacity
  last = now
end

local delta = math.max(0, now - last)
tokens = math.min(capacity, tokens + delta * refill_rate)

if tokens < cost then
  redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
  local reset_after = math.ceil((cost - tokens) / refill_rate)
  redis.call('EXPIRE', key, math.max(reset_after, 1))
  return {0, tostring(tokens), reset_after}
end

tokens = tokens - cost
redis.call('HMSET', key, 'tokens', tokens, 'ts', now)
local ttl = math.ceil(capacity / refill_rate)
redis.call('EXPIRE', key, math.max(ttl, 1))
return {1, tostring(tokens), 0}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self.client.register_script(self._TOKEN_BUCKET_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""
        # Short-lived sync client so the async pool is not bound to a temporary loop
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def blacklist_session(self, session_id: str, ttl_seconds: int) -> None:
        await self.client.set(f"{BLACKLIST_PREFIX}{session_id}", "1", ex=max(1, ttl_seconds))

    async def is_session_revoked(self, session_id: str) -> bool:
        return bool(await self.client.exists(f"{BLACKLIST_PREFIX}{session_id}"))

    async def get_prelogin(self, email: str) -> Optional[dict]:
        raw = await self.client.get(f"{PRELOGIN_PREFIX}{email}")
        return json.loads(raw) if raw else None

    async def set_prelogin(self, email: str, payload: dict, ttl_seconds: int) -> None:
        await self.client.set(f"{PRELOGIN_PREFIX}{email}", json.dumps(payload), ex=ttl_seconds)

    async def delete_prelogin(self, email: str) -> None:
        await self.client.delete(f"{PRELOGIN_PREFIX}{email}")

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> RateLimitResult:
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = await self._token_bucket(
            keys=[_rate_key(key)],
            args=[time.time(), refill_rate, limit, max(1, cost)],
        )
        return _rate_result(allowed, tokens, reset_after, return_remaining)

    async def ping(self) -> None:
        await self.client.ping()

    async def close(self) -> None:
        """Close the connection pool. Called from Runtime.close at shutdown."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a blocking client so pytest's per-test event loops never own the
    connection pool, but exposes the same awaitable surface as RedisCache.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = RedisCache.DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._token_bucket = self._sync_client.register_script(
            RedisCache._TOKEN_BUCKET_SCRIPT
        )

    def verify_connection(self) -> None:
        self._sync_client.ping()

    async def blacklist_session(self, session_id: str, ttl_seconds: int) -> None:
        self._sync_client.set(f"{BLACKLIST_PREFIX}{session_id}", "1", ex=max(1, ttl_seconds))

    async def is_session_revoked(self, session_id: str) -> bool:
        return bool(self._sync_client.exists(f"{BLACKLIST_PREFIX}{session_id}"))

    async def get_prelogin(self, email: str) -> Optional[dict]:
        raw = self._sync_client.get(f"{PRELOGIN_PREFIX}{email}")
        return json.loads(raw) if raw else None

    async def set_prelogin(self, email: str, payload: dict, ttl_seconds: int) -> None:
        self._sync_client.set(f"{PRELOGIN_PREFIX}{email}", json.dumps(payload), ex=ttl_seconds)

    async def delete_prelogin(self, email: str) -> None:
        self._sync_client.delete(f"{PRELOGIN_PREFIX}{email}")

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> RateLimitResult:
        refill_rate = float(limit) / float(window_seconds)
        allowed, tokens, reset_after = self._token_bucket(
            keys=[_rate_key(key)], args=[time.time(), refill_rate, limit, max(1, cost)]
        )
        return _rate_result(allowed, tokens, reset_after, return_remaining)

    async def ping(self) -> None:
        self._sync_client.ping()

    async def close(self) -> None:
        self._sync_client.close()


class LocalCache:
    """In-process stand-in used when Redis is unavailable under TEST_MODE or
    ALLOW_REDIS_FALLBACK_DEV.

    Entries expire by TTL like their Redis counterparts. Revocations are only
    visible to this process. Expired entries and fully refilled buckets are
    swept at most once per ``sweep_interval`` seconds, or immediately once
    either map passes ``max_entries``.
    """

    def __init__(self, *, sweep_interval: float = 60.0, max_entries: int = 10_000) -> None:
        self._entries: Dict[str, Tuple[str, float]] = {}
        # key -> (tokens, last refill, time at which the bucket is full again)
        self._buckets: Dict[str, Tuple[float, float, float]] = {}
        self._lock = threading.Lock()
        self.sweep_interval = sweep_interval
        self.max_entries = max_entries
        self._next_sweep = time.monotonic() + sweep_interval

    def verify_connection(self) -> None:
        return None

    def _maybe_sweep(self, now: float) -> None:
        # Caller holds the lock
        oversized = len(self._entries) > self.max_entries or len(self._buckets) > self.max_entries
        if now < self._next_sweep and not oversized:
            return
        self._next_sweep = now + self.sweep_interval
        for key in [k for k, (_, expires_at) in self._entries.items() if expires_at <= now]:
            del self._entries[key]
        # A full bucket is indistinguishable from a missing one
        for key in [k for k, (_, _, full_at) in self._buckets.items() if full_at <= now]:
            del self._buckets[key]

    def _get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(key)
            if not entry:
                return None
            value, expires_at = entry
            if expires_at <= time.monotonic():
                self._entries.pop(key, None)
                return None
            return value

    def _set(self, key: str, value: str, ttl_seconds: int) -> None:
        now = time.monotonic()
        with self._lock:
            self._entries[key] = (value, now + max(1, ttl_seconds))
            self._maybe_sweep(now)

    async def blacklist_session(self, session_id: str, ttl_seconds: int) -> None:
        self._set(f"{BLACKLIST_PREFIX}{session_id}", "1", ttl_seconds)

    async def is_session_revoked(self, session_id: str) -> bool:
        return self._get(f"{BLACKLIST_PREFIX}{session_id}") is not None

    async def get_prelogin(self, email: str) -> Optional[dict]:
        raw = self._get(f"{PRELOGIN_PREFIX}{email}")
        return json.loads(raw) if raw else None

    async def set_prelogin(self, email: str, payload: dict, ttl_seconds: int) -> None:
        self._set(f"{PRELOGIN_PREFIX}{email}", json.dumps(payload), ttl_seconds)

    async def delete_prelogin(self, email: str) -> None:
        with self._lock:
            self._entries.pop(f"{PRELOGIN_PREFIX}{email}", None)

    async def check_rate_limit(
        self,
        key: str,
        limit: int,
        window_seconds: int,
        *,
        return_remaining: bool = False,
        cost: int = 1,
    ) -> RateLimitResult:
        now = time.monotonic()
        refill_rate = float(limit) / float(window_seconds)
        cost = max(1, cost)
        with self._lock:
            tokens, last_ts, _ = self._buckets.get(key, (float(limit), now, now))
            tokens = min(float(limit), tokens + max(0.0, now - last_ts) * refill_rate)
            allowed = tokens >= cost
            if allowed:
                tokens -= cost
            self._buckets[key] = (tokens, now, now + (float(limit) - tokens) / refill_rate)
            self._maybe_sweep(now)
        reset_after = 0 if allowed else int((cost - tokens) / refill_rate) + 1
        return _rate_result(int(allowed), tokens, reset_after, return_remaining)

    async def ping(self) -> None:
        return None

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()
            self._buckets.clear()
