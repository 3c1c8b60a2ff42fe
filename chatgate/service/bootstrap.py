from __future__ import annotations

import asyncio
import contextlib
import threading
import time
import uuid
from typing import AsyncIterator, Dict, List, Optional, Protocol, Union

from chatgate.logging import get_logger
from chatgate.service.enrichment import Describer, describe_ip, describe_user_agent
from chatgate.service.errors import NoDefaultStoreError, StorageError
from chatgate.storage.models import Conversation, Message, Principal, StoreConfig
from chatgate.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

_LOCK_POLL_SECONDS = 0.05


class _LocalLock:
    """In-process lock plus the number of callers currently using or awaiting it."""

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.holders = 0


class ChatStore(Protocol):
    def list_conversations_by_user(self, owner: str, user: str) -> List[Conversation]: ...

    def get_default_store(self, owner: str) -> Optional[StoreConfig]: ...

    def create_conversation(self, conversation: Conversation) -> Conversation: ...

    def create_message(self, message: Message) -> Message: ...


class ConversationBootstrapper:
    """Guarantees every principal owns a first conversation with a welcome message.

    The check-and-create sequence runs under a per-principal lock: a Redis
    ``SET NX`` key when a cache is configured, otherwise an in-process
    ``asyncio.Lock``. If the lock cannot be taken within ``lock_wait_seconds``
    the bootstrap runs unlocked; the worst case is a duplicate welcome
    conversation, never a duplicate identity.
    """

    def __init__(
        self,
        store: ChatStore,
        cache: Optional[Union[RedisCache, SyncRedisCache]] = None,
        *,
        ip_describer: Describer = describe_ip,
        user_agent_describer: Describer = describe_user_agent,
        lock_ttl_seconds: int = 10,
        lock_wait_seconds: float = 2.0,
    ) -> None:
        self.store = store
        self.cache = cache
        self.ip_describer = ip_describer
        self.user_agent_describer = user_agent_describer
        self.lock_ttl_seconds = lock_ttl_seconds
        self.lock_wait_seconds = lock_wait_seconds
        self.logger = logger
        self._local_locks: Dict[str, _LocalLock] = {}
        self._local_locks_guard = threading.Lock()

    async def ensure_initial_conversation(
        self,
        principal: Principal,
        *,
        tenant: str,
        client_ip: str = "",
        user_agent: str = "",
    ) -> Optional[Conversation]:
        """Create the principal's first conversation unless one already exists.

        Returns the new conversation, or ``None`` when the principal was
        already bootstrapped.

        Raises:
            NoDefaultStoreError: the tenant has no default store configured
            StorageError: a read or write against the store failed
        """
        lock_key = f"bootstrap:lock:{tenant}:{principal.name}"
        async with self._principal_lock(lock_key):
            return self._bootstrap(
                principal, tenant=tenant, client_ip=client_ip, user_agent=user_agent
            )

    def _bootstrap(
        self, principal: Principal, *, tenant: str, client_ip: str, user_agent: str
    ) -> Optional[Conversation]:
        try:
            existing = self.store.list_conversations_by_user(tenant, principal.name)
        except Exception as exc:
            self.logger.error(
                "bootstrap_lookup_failed", tenant=tenant, user=principal.name, error=str(exc)
            )
            raise StorageError(str(exc)) from exc
        if existing:
            return None

        try:
            store_config = self.store.get_default_store(tenant)
        except Exception as exc:
            self.logger.error("default_store_lookup_failed", tenant=tenant, error=str(exc))
            raise StorageError(str(exc)) from exc
        if store_config is None:
            self.logger.error("default_store_missing", tenant=tenant)
            raise NoDefaultStoreError(
                "The default store is not found", detail={"owner": tenant}
            )

        conversation = Conversation.new(
            tenant,
            principal,
            store_config,
            client_ip=client_ip,
            user_agent=user_agent,
            client_ip_desc=self.ip_describer(client_ip),
            user_agent_desc=self.user_agent_describer(user_agent),
        )
        try:
            self.store.create_conversation(conversation)
        except Exception as exc:
            self.logger.error(
                "bootstrap_conversation_create_failed",
                tenant=tenant,
                user=principal.name,
                error=str(exc),
            )
            raise StorageError(str(exc)) from exc

        seed = Message.seed_for(conversation)
        try:
            self.store.create_message(seed)
        except Exception as exc:
            # The conversation stays; the existence check treats it as bootstrapped
            self.logger.error(
                "bootstrap_seed_message_failed",
                tenant=tenant,
                user=principal.name,
                chat=conversation.name,
                error=str(exc),
            )
            raise StorageError(str(exc)) from exc

        self.logger.info(
            "initial_conversation_created",
            tenant=tenant,
            user=principal.name,
            chat=conversation.name,
            store=conversation.store,
        )
        return conversation

    @contextlib.asynccontextmanager
    async def _principal_lock(self, key: str) -> AsyncIterator[bool]:
        if self.cache is not None:
            async with self._redis_lock(key) as held:
                yield held
            return

        with self._local_locks_guard:
            entry = self._local_locks.get(key)
            if entry is None:
                entry = self._local_locks[key] = _LocalLock()
            entry.holders += 1
        acquired = False
        try:
            try:
                await asyncio.wait_for(entry.lock.acquire(), timeout=self.lock_wait_seconds)
                acquired = True
            except asyncio.TimeoutError:
                self.logger.warning("bootstrap_lock_timeout", key=key, backend="local")
            yield acquired
        finally:
            if acquired:
                entry.lock.release()
            with self._local_locks_guard:
                entry.holders -= 1
                # Entries live only while some caller holds or awaits the key
                if entry.holders == 0:
                    self._local_locks.pop(key, None)

    @contextlib.asynccontextmanager
    async def _redis_lock(self, key: str) -> AsyncIterator[bool]:
        token = uuid.uuid4().hex
        deadline = time.monotonic() + self.lock_wait_seconds
        acquired = False
        try:
            while True:
                acquired = await self.cache.acquire_lock(key, token, self.lock_ttl_seconds)
                if acquired or time.monotonic() >= deadline:
                    break
                await asyncio.sleep(_LOCK_POLL_SECONDS)
        except Exception as exc:
            # Lock backend unavailable: fall back to the unlocked sequence
            self.logger.warning("bootstrap_lock_unavailable", key=key, error=str(exc))
            acquired = False
        if not acquired:
            self.logger.warning("bootstrap_lock_timeout", key=key, backend="redis")
        try:
            yield acquired
        finally:
            if acquired:
                try:
                    await self.cache.release_lock(key, token)
                except Exception as exc:
                    # Key expires on its own after lock_ttl_seconds
                    self.logger.warning("bootstrap_lock_release_failed", key=key, error=str(exc))
