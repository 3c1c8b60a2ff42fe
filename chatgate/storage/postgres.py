from __future__ import annotations

import json
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from chatgate.logging import get_logger
from chatgate.storage.errors import ConstraintViolation, StoreUnavailable
from chatgate.storage.models import (
    Conversation,
    Message,
    StoreConfig,
    VectorScore,
    parse_timestamp,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS store_config (
        owner TEXT NOT NULL,
        name TEXT NOT NULL,
        display_name TEXT NOT NULL DEFAULT '',
        is_default BOOLEAN NOT NULL DEFAULT FALSE,
        created_time TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (owner, name)
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS store_config_one_default
        ON store_config (owner) WHERE is_default
    """,
    """
    CREATE TABLE IF NOT EXISTS chat (
        owner TEXT NOT NULL,
        name TEXT NOT NULL,
        created_time TIMESTAMPTZ NOT NULL,
        updated_time TIMESTAMPTZ NOT NULL,
        display_name TEXT NOT NULL DEFAULT '',
        store TEXT NOT NULL,
        category TEXT NOT NULL DEFAULT '',
        type TEXT NOT NULL DEFAULT '',
        "user" TEXT NOT NULL,
        user1 TEXT NOT NULL DEFAULT '',
        user2 TEXT NOT NULL DEFAULT '',
        users JSONB NOT NULL DEFAULT '[]'::jsonb,
        client_ip TEXT NOT NULL DEFAULT '',
        user_agent TEXT NOT NULL DEFAULT '',
        client_ip_desc TEXT NOT NULL DEFAULT '',
        user_agent_desc TEXT NOT NULL DEFAULT '',
        message_count INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (owner, name)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS chat_owner_user ON chat (owner, "user")
    """,
    """
    CREATE TABLE IF NOT EXISTS message (
        owner TEXT NOT NULL,
        name TEXT NOT NULL,
        created_time TIMESTAMPTZ NOT NULL,
        "user" TEXT NOT NULL DEFAULT '',
        chat TEXT NOT NULL,
        reply_to TEXT NOT NULL DEFAULT '',
        author TEXT NOT NULL,
        text TEXT NOT NULL DEFAULT '',
        vector_scores JSONB NOT NULL DEFAULT '[]'::jsonb,
        PRIMARY KEY (owner, name),
        FOREIGN KEY (owner, chat) REFERENCES chat (owner, name)
    )
    """,
)


def _load_json_list(raw: Any) -> list:
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            return []
    return list(raw) if isinstance(raw, list) else []


class PostgresStore:
    """Postgres-backed store for conversations, messages and store configs."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def _ensure_schema(self) -> None:
        """Create the tables this service owns if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready")

    def _execute_write(self, operation: str, query: str, params: tuple, detail: dict) -> None:
        try:
            with self._connect() as conn:
                conn.execute(query, params)
        except errors.UniqueViolation:
            raise ConstraintViolation(f"{operation}: record already exists", detail)
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(f"{operation}: referenced record missing", detail)
        except errors.OperationalError as exc:
            self.logger.error("postgres_write_failed", operation=operation, error=str(exc))
            raise StoreUnavailable(str(exc), operation=operation) from exc

    # stores
    def create_store(self, store: StoreConfig) -> StoreConfig:
        self._execute_write(
            "create_store",
            """
            INSERT INTO store_config (owner, name, display_name, is_default, created_time)
            VALUES (%s, %s, %s, %s, %s)
            """,
            (store.owner, store.name, store.display_name, store.is_default, store.created_time),
            {"owner": store.owner, "name": store.name},
        )
        return store

    def get_default_store(self, owner: str) -> Optional[StoreConfig]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM store_config WHERE owner = %s AND is_default LIMIT 1",
                (owner,),
            ).fetchone()
        return self._store_from_row(row) if row else None

    def list_stores(self, owner: str) -> List[StoreConfig]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM store_config WHERE owner = %s ORDER BY created_time",
                (owner,),
            ).fetchall()
        return [self._store_from_row(row) for row in rows]

    # chats
    def list_conversations_by_user(self, owner: str, user: str) -> List[Conversation]:
        with self._connect() as conn:
            rows = conn.execute(
                'SELECT * FROM chat WHERE owner = %s AND "user" = %s ORDER BY created_time',
                (owner, user),
            ).fetchall()
        return [self._conversation_from_row(row) for row in rows]

    def get_conversation(self, owner: str, name: str) -> Optional[Conversation]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM chat WHERE owner = %s AND name = %s", (owner, name)
            ).fetchone()
        return self._conversation_from_row(row) if row else None

    def create_conversation(self, conversation: Conversation) -> Conversation:
        self._execute_write(
            "create_conversation",
            """
            INSERT INTO chat (
                owner, name, created_time, updated_time, display_name, store, category,
                type, "user", user1, user2, users, client_ip, user_agent, client_ip_desc,
                user_agent_desc, message_count
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                conversation.owner,
                conversation.name,
                conversation.created_time,
                conversation.updated_time,
                conversation.display_name,
                conversation.store,
                conversation.category,
                conversation.type,
                conversation.user,
                conversation.user1,
                conversation.user2,
                json.dumps(conversation.users),
                conversation.client_ip,
                conversation.user_agent,
                conversation.client_ip_desc,
                conversation.user_agent_desc,
                conversation.message_count,
            ),
            {"owner": conversation.owner, "name": conversation.name},
        )
        return conversation

    def create_message(self, message: Message) -> Message:
        self._execute_write(
            "create_message",
            """
            INSERT INTO message (
                owner, name, created_time, "user", chat, reply_to, author, text, vector_scores
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                message.owner,
                message.name,
                message.created_time,
                message.user,
                message.chat,
                message.reply_to,
                message.author,
                message.text,
                json.dumps(
                    [{"vector": vs.vector, "score": vs.score} for vs in message.vector_scores]
                ),
            ),
            {"owner": message.owner, "name": message.name, "chat": message.chat},
        )
        return message

    def list_messages(self, owner: str, chat: str) -> List[Message]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM message WHERE owner = %s AND chat = %s ORDER BY created_time",
                (owner, chat),
            ).fetchall()
        return [self._message_from_row(row) for row in rows]

    @staticmethod
    def _store_from_row(row: dict) -> StoreConfig:
        return StoreConfig(
            owner=row["owner"],
            name=row["name"],
            display_name=row.get("display_name") or "",
            is_default=bool(row.get("is_default")),
            created_time=parse_timestamp(row.get("created_time")),
        )

    @staticmethod
    def _conversation_from_row(row: dict) -> Conversation:
        return Conversation(
            owner=row["owner"],
            name=row["name"],
            created_time=parse_timestamp(row.get("created_time")),
            updated_time=parse_timestamp(row.get("updated_time")),
            display_name=row.get("display_name") or "",
            store=row.get("store") or "",
            category=row.get("category") or "",
            type=row.get("type") or "",
            user=row.get("user") or "",
            user1=row.get("user1") or "",
            user2=row.get("user2") or "",
            users=[str(u) for u in _load_json_list(row.get("users"))],
            client_ip=row.get("client_ip") or "",
            user_agent=row.get("user_agent") or "",
            client_ip_desc=row.get("client_ip_desc") or "",
            user_agent_desc=row.get("user_agent_desc") or "",
            message_count=int(row.get("message_count") or 0),
        )

    @staticmethod
    def _message_from_row(row: dict) -> Message:
        return Message(
            owner=row["owner"],
            name=row["name"],
            created_time=parse_timestamp(row.get("created_time")),
            user=row.get("user") or "",
            chat=row.get("chat") or "",
            reply_to=row.get("reply_to") or "",
            author=row.get("author") or "",
            text=row.get("text") or "",
            vector_scores=[
                VectorScore(vector=str(vs.get("vector", "")), score=float(vs.get("score", 0.0)))
                for vs in _load_json_list(row.get("vector_scores"))
                if isinstance(vs, dict)
            ],
        )
