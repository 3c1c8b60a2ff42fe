from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from chatgate.logging import get_logger
from chatgate.storage.errors import ConstraintViolation
from chatgate.storage.models import (
    Conversation,
    Message,
    StoreConfig,
    VectorScore,
    format_timestamp,
    parse_timestamp,
)

_Key = Tuple[str, str]


class MemoryStore:
    """In-memory store for conversations, messages and store configs.

    State is mirrored to a JSON file under ``fs_root`` so a dev server keeps
    its conversations across restarts.
    """

    def __init__(self, fs_root: str = "/tmp/chatgate") -> None:
        self.logger = get_logger(__name__)
        self.stores: Dict[_Key, StoreConfig] = {}
        self.conversations: Dict[_Key, Conversation] = {}
        self.messages: Dict[_Key, Message] = {}
        # RLock so helpers can nest under a public method's lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    # stores
    def create_store(self, store: StoreConfig) -> StoreConfig:
        with self._data_lock:
            key = (store.owner, store.name)
            if key in self.stores:
                raise ConstraintViolation(
                    "store already exists", {"owner": store.owner, "name": store.name}
                )
            if store.is_default and self.get_default_store(store.owner):
                raise ConstraintViolation(
                    "default store already exists", {"owner": store.owner}
                )
            self.stores[key] = store
            self._persist_state()
            return store

    def get_default_store(self, owner: str) -> Optional[StoreConfig]:
        with self._data_lock:
            return next(
                (s for s in self.stores.values() if s.owner == owner and s.is_default),
                None,
            )

    def list_stores(self, owner: str) -> List[StoreConfig]:
        with self._data_lock:
            return sorted(
                (s for s in self.stores.values() if s.owner == owner),
                key=lambda s: s.created_time,
            )

    # chats
    def list_conversations_by_user(self, owner: str, user: str) -> List[Conversation]:
        with self._data_lock:
            results = [
                c
                for c in self.conversations.values()
                if c.owner == owner and c.user == user
            ]
            return sorted(results, key=lambda c: c.created_time)

    def get_conversation(self, owner: str, name: str) -> Optional[Conversation]:
        with self._data_lock:
            return self.conversations.get((owner, name))

    def create_conversation(self, conversation: Conversation) -> Conversation:
        with self._data_lock:
            key = (conversation.owner, conversation.name)
            if key in self.conversations:
                raise ConstraintViolation(
                    "conversation already exists",
                    {"owner": conversation.owner, "name": conversation.name},
                )
            self.conversations[key] = conversation
            self._persist_state()
            return conversation

    def create_message(self, message: Message) -> Message:
        with self._data_lock:
            key = (message.owner, message.name)
            if key in self.messages:
                raise ConstraintViolation(
                    "message already exists", {"owner": message.owner, "name": message.name}
                )
            if (message.owner, message.chat) not in self.conversations:
                raise ConstraintViolation(
                    "conversation not found", {"owner": message.owner, "chat": message.chat}
                )
            self.messages[key] = message
            self._persist_state()
            return message

    def list_messages(self, owner: str, chat: str) -> List[Message]:
        with self._data_lock:
            results = [
                m for m in self.messages.values() if m.owner == owner and m.chat == chat
            ]
            return sorted(results, key=lambda m: m.created_time)

    def _persist_state(self) -> None:
        state = {
            "stores": [self._serialize_store(s) for s in self.stores.values()],
            "conversations": [
                self._serialize_conversation(c) for c in self.conversations.values()
            ],
            "messages": [self._serialize_message(m) for m in self.messages.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except Exception as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        for raw in data.get("stores", []):
            store = self._deserialize_store(raw)
            self.stores[(store.owner, store.name)] = store
        for raw in data.get("conversations", []):
            conv = self._deserialize_conversation(raw)
            self.conversations[(conv.owner, conv.name)] = conv
        for raw in data.get("messages", []):
            msg = self._deserialize_message(raw)
            self.messages[(msg.owner, msg.name)] = msg
        self.logger.info(
            "memory_store_state_loaded",
            stores=len(self.stores),
            conversations=len(self.conversations),
            messages=len(self.messages),
        )
        return True

    def _serialize_store(self, store: StoreConfig) -> dict:
        return {
            "owner": store.owner,
            "name": store.name,
            "display_name": store.display_name,
            "is_default": store.is_default,
            "created_time": format_timestamp(store.created_time),
        }

    def _deserialize_store(self, data: dict) -> StoreConfig:
        return StoreConfig(
            owner=data["owner"],
            name=data["name"],
            display_name=data.get("display_name", ""),
            is_default=bool(data.get("is_default", False)),
            created_time=parse_timestamp(data.get("created_time")),
        )

    def _serialize_conversation(self, conversation: Conversation) -> dict:
        return {
            "owner": conversation.owner,
            "name": conversation.name,
            "created_time": format_timestamp(conversation.created_time),
            "updated_time": format_timestamp(conversation.updated_time),
            "display_name": conversation.display_name,
            "store": conversation.store,
            "category": conversation.category,
            "type": conversation.type,
            "user": conversation.user,
            "user1": conversation.user1,
            "user2": conversation.user2,
            "users": list(conversation.users),
            "client_ip": conversation.client_ip,
            "user_agent": conversation.user_agent,
            "client_ip_desc": conversation.client_ip_desc,
            "user_agent_desc": conversation.user_agent_desc,
            "message_count": conversation.message_count,
        }

    def _deserialize_conversation(self, data: dict) -> Conversation:
        return Conversation(
            owner=data["owner"],
            name=data["name"],
            created_time=parse_timestamp(data.get("created_time")),
            updated_time=parse_timestamp(data.get("updated_time")),
            display_name=data.get("display_name", ""),
            store=data.get("store", ""),
            category=data.get("category", ""),
            type=data.get("type", ""),
            user=data.get("user", ""),
            user1=data.get("user1", ""),
            user2=data.get("user2", ""),
            users=list(data.get("users") or []),
            client_ip=data.get("client_ip", ""),
            user_agent=data.get("user_agent", ""),
            client_ip_desc=data.get("client_ip_desc", ""),
            user_agent_desc=data.get("user_agent_desc", ""),
            message_count=int(data.get("message_count", 0)),
        )

    def _serialize_message(self, message: Message) -> dict:
        return {
            "owner": message.owner,
            "name": message.name,
            "created_time": format_timestamp(message.created_time),
            "user": message.user,
            "chat": message.chat,
            "reply_to": message.reply_to,
            "author": message.author,
            "text": message.text,
            "vector_scores": [
                {"vector": vs.vector, "score": vs.score} for vs in message.vector_scores
            ],
        }

    def _deserialize_message(self, data: dict) -> Message:
        return Message(
            owner=data["owner"],
            name=data["name"],
            created_time=parse_timestamp(data.get("created_time")),
            user=data.get("user", ""),
            chat=data.get("chat", ""),
            reply_to=data.get("reply_to", ""),
            author=data.get("author", ""),
            text=data.get("text", ""),
            vector_scores=[
                VectorScore(vector=vs.get("vector", ""), score=float(vs.get("score", 0.0)))
                for vs in data.get("vector_scores") or []
            ],
        )
