from __future__ import annotations

import secrets
import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple, Union

from chatgate.logging import get_logger
from chatgate.storage.models import Claims
from chatgate.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


class SessionManager:
    """Binds verified claims to an opaque session handle.

    Redis holds the claims when a cache is configured; otherwise a
    lock-guarded in-process dict with expiry timestamps is used (tests and
    local development only).
    """

    def __init__(
        self,
        cache: Optional[Union[RedisCache, SyncRedisCache]] = None,
        *,
        ttl_minutes: int = 60 * 24 * 7,
    ) -> None:
        self.cache = cache
        self.ttl_minutes = ttl_minutes
        self.logger = logger
        self._state_lock = threading.Lock()
        self._local: Dict[str, Tuple[dict, datetime]] = {}

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @property
    def ttl_seconds(self) -> int:
        return self.ttl_minutes * 60

    def new_handle(self) -> str:
        return secrets.token_urlsafe(32)

    async def set_claims(self, handle: Optional[str], claims: Optional[Claims]) -> None:
        """Store claims for ``handle``, or clear the session when ``claims`` is None."""
        if claims is None:
            await self.clear(handle)
            return
        if not handle:
            raise ValueError("session handle is required")
        payload = claims.to_dict()
        if self.cache:
            await self.cache.set_session_claims(handle, payload, self.ttl_seconds)
            return
        expires_at = self._now() + timedelta(minutes=self.ttl_minutes)
        with self._state_lock:
            self._local[handle] = (payload, expires_at)

    async def clear(self, handle: Optional[str]) -> None:
        if not handle:
            return
        if self.cache:
            await self.cache.delete_session(handle)
            return
        with self._state_lock:
            self._local.pop(handle, None)

    async def get_claims(self, handle: Optional[str]) -> Optional[Claims]:
        if not handle:
            return None
        if self.cache:
            payload = await self.cache.get_session_claims(handle)
        else:
            payload = self._get_local(handle)
        if payload is None:
            return None
        try:
            return Claims.from_dict(payload)
        except (KeyError, TypeError, ValueError) as exc:
            self.logger.warning("session_claims_corrupt", error=str(exc))
            return None

    async def has_valid_session(self, handle: Optional[str]) -> bool:
        return await self.get_claims(handle) is not None

    def _get_local(self, handle: str) -> Optional[dict]:
        with self._state_lock:
            entry = self._local.get(handle)
            if entry is None:
                return None
            payload, expires_at = entry
            if expires_at <= self._now():
                self._local.pop(handle, None)
                return None
            return payload

    def cleanup_expired(self) -> int:
        """Drop expired in-process sessions; returns the number removed."""
        now = self._now()
        with self._state_lock:
            expired = [h for h, (_, expires_at) in self._local.items() if expires_at <= now]
            for handle in expired:
                self._local.pop(handle, None)
        if expired:
            self.logger.debug("session_cleanup", cleaned=len(expired))
        return len(expired)
