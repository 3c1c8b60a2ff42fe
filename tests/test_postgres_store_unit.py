import contextlib
from datetime import datetime, timezone

import pytest
from psycopg import errors

from chatgate.logging import get_logger
from chatgate.storage.errors import ConstraintViolation, StoreUnavailable
from chatgate.storage.models import Conversation, StoreConfig
from chatgate.storage.postgres import PostgresStore


class RaisingConnection:
    def __init__(self, exc):
        self.exc = exc

    def execute(self, query, params=None):
        raise self.exc


class DummyPool:
    def __init__(self, conn):
        self.conn = conn

    @contextlib.contextmanager
    def connection(self):
        yield self.conn


def _store_with(conn) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = DummyPool(conn)
    store.logger = get_logger("test")
    return store


@pytest.mark.parametrize(
    "db_error, expected",
    [
        (errors.UniqueViolation("duplicate key"), ConstraintViolation),
        (errors.ForeignKeyViolation("missing chat"), ConstraintViolation),
        (errors.OperationalError("server closed the connection"), StoreUnavailable),
    ],
)
def test_write_errors_are_mapped(db_error, expected):
    store = _store_with(RaisingConnection(db_error))
    with pytest.raises(expected):
        store.create_store(StoreConfig.new("admin", "s1", is_default=True))


def test_conversation_row_conversion_handles_json_text():
    created = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    row = {
        "owner": "admin",
        "name": "chat_1",
        "created_time": created,
        "updated_time": created,
        "display_name": "New Chat - 1",
        "store": "admin/store-built-in",
        "category": "Default Category",
        "type": "AI",
        "user": "alice",
        "user1": "built-in/alice",
        "user2": None,
        "users": '["built-in/alice"]',
        "client_ip": "1.2.3.4",
        "user_agent": None,
        "client_ip_desc": "Public IPv4",
        "user_agent_desc": None,
        "message_count": 0,
    }

    conversation = PostgresStore._conversation_from_row(row)

    assert isinstance(conversation, Conversation)
    assert conversation.users == ["built-in/alice"]
    assert conversation.user2 == ""
    assert conversation.created_time == created


def test_message_row_conversion_skips_malformed_scores():
    row = {
        "owner": "admin",
        "name": "message_1",
        "created_time": "2024-05-01T12:00:00.001Z",
        "user": "alice",
        "chat": "chat_1",
        "reply_to": "Welcome",
        "author": "AI",
        "text": "",
        "vector_scores": [{"vector": "v1", "score": 0.5}, "junk"],
    }

    message = PostgresStore._message_from_row(row)

    assert message.reply_to == "Welcome"
    assert [(vs.vector, vs.score) for vs in message.vector_scores] == [("v1", 0.5)]
    assert message.created_time.tzinfo is not None
