import hashlib

from chatgate.service.trust import TrustPolicy, client_fingerprint, content_hash
from chatgate.storage.models import ANONYMOUS_ROLE, CHAT_USER_ROLE, Claims


def _claims(**overrides):
    base = dict(owner="built-in", name="alice", role="normal-user", is_admin=False)
    base.update(overrides)
    return Claims(**base)


def test_non_admin_is_downgraded_to_chat_user():
    policy = TrustPolicy()
    original = _claims(role="some-elevated-role")

    result = policy.assign_role(original)

    assert result.role == CHAT_USER_ROLE
    # input is not mutated
    assert original.role == "some-elevated-role"


def test_admin_keeps_issued_role():
    policy = TrustPolicy()
    result = policy.assign_role(_claims(is_admin=True, role="normal-user"))
    assert result.role == "normal-user"
    assert result.is_admin is True


def test_assign_role_never_grants_admin():
    result = TrustPolicy().assign_role(_claims(role="admin"))
    assert result.is_admin is False
    assert result.role == CHAT_USER_ROLE


def test_anonymous_identity_is_deterministic():
    policy = TrustPolicy(anonymous_avatar="https://cdn.example/user.png")
    fingerprint = client_fingerprint("1.2.3.4", "TestAgent/1.0")

    first = policy.derive_anonymous_identity(fingerprint, owner="built-in")
    second = policy.derive_anonymous_identity(fingerprint, owner="built-in")

    expected = "u-" + hashlib.sha256(b"1.2.3.4|TestAgent/1.0").hexdigest()
    assert first.name == second.name == expected
    assert first.owner == "built-in"
    assert first.role == ANONYMOUS_ROLE
    assert first.display_name == "User"
    assert first.is_admin is False
    assert first.avatar == "https://cdn.example/user.png"


def test_distinct_clients_get_distinct_identities():
    policy = TrustPolicy()
    a = policy.derive_anonymous_identity(client_fingerprint("1.2.3.4", "A"), owner="o")
    b = policy.derive_anonymous_identity(client_fingerprint("1.2.3.4", "B"), owner="o")
    assert a.name != b.name


def test_empty_fingerprint_parts_still_hash():
    assert client_fingerprint("", "") == "|"
    assert content_hash("|") == hashlib.sha256(b"|").hexdigest()
