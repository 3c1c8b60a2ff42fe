from __future__ import annotations

import json
from typing import Optional

import redis.asyncio as aioredis
from redis import Redis

# Compare-and-delete so a lock is only released by the holder that set it
_RELEASE_LOCK_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""


def _session_key(handle: str) -> str:
    return f"auth:session:{handle}"


def _decode_claims(raw: Optional[str]) -> Optional[dict]:
    if not raw:
        return None
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        # Corrupted session payload - treat as absent
        return None
    return data if isinstance(data, dict) else None


class RedisCache:
    """Thin Redis wrapper for session claims and bootstrap locks."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._release_lock = self.client.register_script(_RELEASE_LOCK_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def set_session_claims(self, handle: str, claims: dict, ttl_seconds: int) -> None:
        await self.client.set(_session_key(handle), json.dumps(claims), ex=max(1, ttl_seconds))

    async def get_session_claims(self, handle: str) -> Optional[dict]:
        return _decode_claims(await self.client.get(_session_key(handle)))

    async def delete_session(self, handle: str) -> None:
        await self.client.delete(_session_key(handle))

    async def acquire_lock(self, key: str, token: str, ttl_seconds: int) -> bool:
        return bool(await self.client.set(key, token, nx=True, ex=max(1, ttl_seconds)))

    async def release_lock(self, key: str, token: str) -> None:
        await self._release_lock(keys=[key], args=[token])

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous client internally to avoid event loop binding issues
    in pytest, but exposes async methods so callers await it like RedisCache.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._release_lock = self.client.register_script(_RELEASE_LOCK_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self.client.ping()

    async def set_session_claims(self, handle: str, claims: dict, ttl_seconds: int) -> None:
        self.client.set(_session_key(handle), json.dumps(claims), ex=max(1, ttl_seconds))

    async def get_session_claims(self, handle: str) -> Optional[dict]:
        return _decode_claims(self.client.get(_session_key(handle)))

    async def delete_session(self, handle: str) -> None:
        self.client.delete(_session_key(handle))

    async def acquire_lock(self, key: str, token: str, ttl_seconds: int) -> bool:
        return bool(self.client.set(key, token, nx=True, ex=max(1, ttl_seconds)))

    async def release_lock(self, key: str, token: str) -> None:
        self._release_lock(keys=[key], args=[token])

    async def close(self) -> None:
        self.client.close()
