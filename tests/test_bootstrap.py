"""Tests for first-conversation bootstrap."""

import asyncio
from datetime import timedelta

import pytest

from chatgate.service.bootstrap import ConversationBootstrapper
from chatgate.service.errors import NoDefaultStoreError, StorageError
from chatgate.storage.memory import MemoryStore
from chatgate.storage.models import Principal, StoreConfig

TENANT = "admin"


@pytest.fixture
def store(tmp_path):
    memory = MemoryStore(fs_root=str(tmp_path))
    memory.create_store(StoreConfig.new(TENANT, "store-built-in", is_default=True))
    return memory


@pytest.fixture
def principal():
    return Principal(owner="built-in", name="alice", display_name="Alice", role="chat-user")


class _FailingMessageStore(MemoryStore):
    def create_message(self, message):
        raise RuntimeError("disk full")


class TestEnsureInitialConversation:
    async def test_creates_conversation_and_seed_message(self, store, principal):
        bootstrapper = ConversationBootstrapper(store)

        conversation = await bootstrapper.ensure_initial_conversation(
            principal, tenant=TENANT, client_ip="1.2.3.4", user_agent="TestAgent/1.0"
        )

        assert conversation is not None
        assert conversation.owner == TENANT
        assert conversation.name.startswith("chat_")
        assert conversation.display_name == "New Chat - 1"
        assert conversation.category == "Default Category"
        assert conversation.type == "AI"
        assert conversation.store == "admin/store-built-in"
        assert conversation.user == "alice"
        assert conversation.user1 == "built-in/alice"
        assert conversation.user2 == ""
        assert conversation.users == ["built-in/alice"]
        assert conversation.client_ip == "1.2.3.4"
        assert conversation.user_agent == "TestAgent/1.0"
        assert conversation.client_ip_desc == "Public IPv4"
        assert conversation.user_agent_desc == "TestAgent/1.0"
        assert conversation.message_count == 0

        messages = store.list_messages(TENANT, conversation.name)
        assert len(messages) == 1
        seed = messages[0]
        assert seed.name.startswith("message_")
        assert seed.reply_to == "Welcome"
        assert seed.author == "AI"
        assert seed.text == ""
        assert seed.vector_scores == []
        assert seed.user == "alice"
        assert seed.chat == conversation.name
        assert seed.created_time > conversation.created_time
        assert seed.created_time - conversation.created_time == timedelta(milliseconds=1)

    async def test_second_call_is_a_no_op(self, store, principal):
        bootstrapper = ConversationBootstrapper(store)

        first = await bootstrapper.ensure_initial_conversation(principal, tenant=TENANT)
        second = await bootstrapper.ensure_initial_conversation(principal, tenant=TENANT)

        assert first is not None
        assert second is None
        assert len(store.list_conversations_by_user(TENANT, "alice")) == 1
        assert len(store.messages) == 1

    async def test_concurrent_calls_create_one_conversation(self, store, principal):
        bootstrapper = ConversationBootstrapper(store)

        results = await asyncio.gather(
            *[bootstrapper.ensure_initial_conversation(principal, tenant=TENANT) for _ in range(5)]
        )

        assert sum(1 for r in results if r is not None) == 1
        assert len(store.list_conversations_by_user(TENANT, "alice")) == 1
        assert bootstrapper._local_locks == {}

    async def test_local_locks_are_dropped_after_use(self, store):
        bootstrapper = ConversationBootstrapper(store)

        for i in range(50):
            visitor = Principal(owner="built-in", name=f"u-{i}", role="anonymous-user")
            await bootstrapper.ensure_initial_conversation(visitor, tenant=TENANT)

        assert len(store.conversations) == 50
        assert bootstrapper._local_locks == {}

    async def test_local_lock_is_dropped_when_bootstrap_fails(self, tmp_path, principal):
        bootstrapper = ConversationBootstrapper(MemoryStore(fs_root=str(tmp_path / "empty")))

        with pytest.raises(NoDefaultStoreError):
            await bootstrapper.ensure_initial_conversation(principal, tenant=TENANT)

        assert bootstrapper._local_locks == {}


    async def test_missing_default_store_raises(self, tmp_path, principal):
        empty = MemoryStore(fs_root=str(tmp_path / "empty"))
        bootstrapper = ConversationBootstrapper(empty)

        with pytest.raises(NoDefaultStoreError) as exc_info:
            await bootstrapper.ensure_initial_conversation(principal, tenant=TENANT)

        assert exc_info.value.message == "The default store is not found"
        assert exc_info.value.error_code == "no_default_store"
        assert exc_info.value.detail == {"owner": TENANT}
        assert empty.conversations == {}

    async def test_non_default_store_does_not_count(self, tmp_path, principal):
        memory = MemoryStore(fs_root=str(tmp_path / "nondefault"))
        memory.create_store(StoreConfig.new(TENANT, "other", is_default=False))

        with pytest.raises(NoDefaultStoreError):
            await ConversationBootstrapper(memory).ensure_initial_conversation(
                principal, tenant=TENANT
            )

    async def test_seed_failure_leaves_conversation_without_rollback(self, tmp_path, principal):
        failing = _FailingMessageStore(fs_root=str(tmp_path / "failing"))
        failing.create_store(StoreConfig.new(TENANT, "store-built-in", is_default=True))
        bootstrapper = ConversationBootstrapper(failing)

        with pytest.raises(StorageError) as exc_info:
            await bootstrapper.ensure_initial_conversation(principal, tenant=TENANT)
        assert "disk full" in exc_info.value.message

        # The orphan conversation stays and counts as bootstrapped on retry
        assert len(failing.list_conversations_by_user(TENANT, "alice")) == 1
        assert await bootstrapper.ensure_initial_conversation(principal, tenant=TENANT) is None

    async def test_tenant_scopes_existence_check(self, store, principal):
        other_tenant = "org-b"
        store.create_store(StoreConfig.new(other_tenant, "store-b", is_default=True))
        bootstrapper = ConversationBootstrapper(store)

        await bootstrapper.ensure_initial_conversation(principal, tenant=TENANT)
        created = await bootstrapper.ensure_initial_conversation(principal, tenant=other_tenant)

        assert created is not None
        assert created.store == "org-b/store-b"

    async def test_describers_are_pluggable(self, store, principal):
        bootstrapper = ConversationBootstrapper(
            store,
            ip_describer=lambda ip: f"ip:{ip}",
            user_agent_describer=lambda ua: f"ua:{ua}",
        )
        conversation = await bootstrapper.ensure_initial_conversation(
            principal, tenant=TENANT, client_ip="10.0.0.1", user_agent="X"
        )
        assert conversation.client_ip_desc == "ip:10.0.0.1"
        assert conversation.user_agent_desc == "ua:X"


class _FakeLockCache:
    """Records lock calls; optionally refuses to grant the lock."""

    def __init__(self, grant=True):
        self.grant = grant
        self.acquired = []
        self.released = []

    async def acquire_lock(self, key, token, ttl_seconds):
        self.acquired.append((key, ttl_seconds))
        return self.grant

    async def release_lock(self, key, token):
        self.released.append(key)


async def test_redis_lock_is_taken_and_released(store, principal):
    cache = _FakeLockCache()
    bootstrapper = ConversationBootstrapper(store, cache, lock_ttl_seconds=7)

    await bootstrapper.ensure_initial_conversation(principal, tenant=TENANT)

    assert cache.acquired == [("bootstrap:lock:admin:alice", 7)]
    assert cache.released == ["bootstrap:lock:admin:alice"]


async def test_lock_timeout_runs_unlocked(store, principal):
    cache = _FakeLockCache(grant=False)
    bootstrapper = ConversationBootstrapper(store, cache, lock_wait_seconds=0.1)

    conversation = await bootstrapper.ensure_initial_conversation(principal, tenant=TENANT)

    assert conversation is not None
    assert len(cache.acquired) >= 1
    assert cache.released == []
