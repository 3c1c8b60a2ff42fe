from datetime import timedelta

import pytest

from chatgate.config import Settings
from chatgate.service.identity import IdentityVerifier
from chatgate.service.session import SessionManager
from chatgate.storage.models import Claims


def _claims(**overrides):
    base = dict(owner="built-in", name="alice", role="chat-user", access_token="tok")
    base.update(overrides)
    return Claims(**base)


async def test_set_and_get_round_trip():
    sessions = SessionManager()
    handle = sessions.new_handle()

    await sessions.set_claims(handle, _claims(display_name="Alice"))
    restored = await sessions.get_claims(handle)

    assert restored.owner == "built-in"
    assert restored.name == "alice"
    assert restored.display_name == "Alice"
    assert restored.access_token == "tok"
    assert await sessions.has_valid_session(handle) is True


async def test_set_claims_none_clears_session():
    sessions = SessionManager()
    handle = sessions.new_handle()
    await sessions.set_claims(handle, _claims())

    await sessions.set_claims(handle, None)

    assert await sessions.get_claims(handle) is None


async def test_clear_is_idempotent():
    sessions = SessionManager()
    await sessions.clear("never-existed")
    await sessions.clear(None)
    await sessions.set_claims(None, None)


async def test_missing_handle_has_no_session():
    sessions = SessionManager()
    assert await sessions.get_claims(None) is None
    assert await sessions.has_valid_session("") is False


async def test_claims_require_a_handle():
    with pytest.raises(ValueError):
        await SessionManager().set_claims("", _claims())


async def test_expired_session_is_dropped():
    sessions = SessionManager(ttl_minutes=5)
    handle = sessions.new_handle()
    await sessions.set_claims(handle, _claims())

    real_now = sessions._now()
    sessions._now = lambda: real_now + timedelta(minutes=10)

    assert await sessions.get_claims(handle) is None


async def test_cleanup_expired_counts_removed_entries():
    sessions = SessionManager(ttl_minutes=5)
    for _ in range(3):
        await sessions.set_claims(sessions.new_handle(), _claims())

    assert sessions.cleanup_expired() == 0
    real_now = sessions._now()
    sessions._now = lambda: real_now + timedelta(minutes=6)
    assert sessions.cleanup_expired() == 3


async def test_handles_are_unique():
    sessions = SessionManager()
    assert len({sessions.new_handle() for _ in range(50)}) == 50


class _DictCache:
    def __init__(self):
        self.data = {}
        self.ttls = {}

    async def set_session_claims(self, handle, claims, ttl_seconds):
        self.data[handle] = claims
        self.ttls[handle] = ttl_seconds

    async def get_session_claims(self, handle):
        return self.data.get(handle)

    async def delete_session(self, handle):
        self.data.pop(handle, None)


async def test_cache_backend_is_used_when_configured():
    cache = _DictCache()
    sessions = SessionManager(cache, ttl_minutes=2)

    await sessions.set_claims("h1", _claims())
    assert cache.ttls["h1"] == 120
    assert (await sessions.get_claims("h1")).name == "alice"

    await sessions.clear("h1")
    assert "h1" not in cache.data


async def test_corrupt_cached_payload_reads_as_no_session():
    cache = _DictCache()
    cache.data["h1"] = {"unexpected": True}
    sessions = SessionManager(cache)

    assert await sessions.get_claims("h1") is None


async def test_cached_payload_holds_only_claim_fields(signing_keys, make_token):
    verifier = IdentityVerifier(
        Settings(idp_client_id="chatgate-client", idp_jwt_public_key_path=""),
        public_key=signing_keys[1],
    )
    cache = _DictCache()
    sessions = SessionManager(cache)

    await sessions.set_claims("h1", verifier.verify_token(make_token()))

    cached = cache.data["h1"]
    assert "aud" not in cached
    assert "exp" not in cached
    assert "extra" not in cached
