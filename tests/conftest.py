import asyncio
import inspect
import os
import sys
import tempfile
import time
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="chatgate_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
# Sessions and locks stay process-local so tests never share state through Redis
os.environ["REDIS_URL"] = ""
os.environ["PUBLIC_DOMAIN"] = ""
os.environ.setdefault("IDP_ENDPOINT", "http://idp.test")
os.environ.setdefault("IDP_CLIENT_ID", "chatgate-client")
os.environ.setdefault("IDP_CLIENT_SECRET", "chatgate-secret")
os.environ.setdefault("IDP_JWT_PUBLIC_KEY_PATH", "")
os.environ.setdefault("SESSION_COOKIE_SECURE", "false")

import pytest  # noqa: E402
from cryptography.hazmat.primitives import serialization  # noqa: E402
from cryptography.hazmat.primitives.asymmetric import rsa  # noqa: E402
from jose import jwt  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from chatgate.service.runtime import reset_runtime_for_tests  # noqa: E402


def _generate_key_pair():
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()
    public_pem = key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    return private_pem, public_pem


_SIGNING_KEYS = _generate_key_pair()
_OTHER_KEYS = _generate_key_pair()


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path, monkeypatch):
    # Fresh state directory per test so the memory store starts empty
    monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path / "shared"))
    monkeypatch.setenv("IDP_JWT_PUBLIC_KEY", _SIGNING_KEYS[1])
    reset_runtime_for_tests()
    yield
    monkeypatch.undo()
    reset_runtime_for_tests()


@pytest.fixture
def signing_keys():
    """(private_pem, public_pem) trusted by the runtime's identity verifier."""
    return _SIGNING_KEYS


@pytest.fixture
def untrusted_keys():
    return _OTHER_KEYS


@pytest.fixture
def make_token(signing_keys):
    """Factory for RS256 tokens shaped like the identity provider's."""

    def _make(private_pem=None, **overrides):
        now = int(time.time())
        payload = {
            "owner": "built-in",
            "name": "alice",
            "displayName": "Alice",
            "email": "alice@example.com",
            "avatar": "https://example.com/alice.png",
            "isAdmin": False,
            "type": "normal-user",
            "id": "0c5e2f0e-alice",
            "createdTime": "2024-01-02T03:04:05Z",
            "aud": ["chatgate-client"],
            "iat": now,
            "exp": now + 3600,
        }
        for key, value in overrides.items():
            if value is None:
                payload.pop(key, None)
            else:
                payload[key] = value
        return jwt.encode(payload, private_pem or signing_keys[0], algorithm="RS256")

    return _make


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
