from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional

ANONYMOUS_ROLE = "anonymous-user"
CHAT_USER_ROLE = "chat-user"
AI_AUTHOR = "AI"
WELCOME_REPLY_TO = "Welcome"


def utcnow() -> datetime:
    """Timezone-aware UTC helper to avoid naive datetime usage."""

    return datetime.now(timezone.utc)


def random_name() -> str:
    return uuid.uuid4().hex


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds")


def parse_timestamp(raw: Any) -> datetime:
    if isinstance(raw, datetime):
        parsed = raw
    elif isinstance(raw, str) and raw:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    else:
        return utcnow()
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _require(value: str, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{field_name} is required")
    return value


@dataclass
class Principal:
    owner: str
    name: str
    display_name: str = ""
    is_admin: bool = False
    role: str = ""
    created_time: datetime = field(default_factory=utcnow)
    id: str = ""
    email: str = ""
    avatar: str = ""

    @property
    def id_string(self) -> str:
        return f"{self.owner}/{self.name}"

    @classmethod
    def anonymous(cls, owner: str, name: str, *, avatar: str = "") -> "Principal":
        _require(owner, "owner")
        _require(name, "name")
        return cls(
            owner=owner,
            name=name,
            display_name="User",
            is_admin=False,
            role=ANONYMOUS_ROLE,
            id=name,
            avatar=avatar,
        )


@dataclass
class Claims:
    """Verified or derived attributes of a principal for one session."""

    owner: str
    name: str
    display_name: str = ""
    email: str = ""
    avatar: str = ""
    is_admin: bool = False
    role: str = ""
    id: str = ""
    created_time: datetime = field(default_factory=utcnow)
    access_token: str = ""
    anonymous: bool = False

    @property
    def principal(self) -> Principal:
        return Principal(
            owner=self.owner,
            name=self.name,
            display_name=self.display_name,
            is_admin=self.is_admin,
            role=self.role,
            created_time=self.created_time,
            id=self.id,
            email=self.email,
            avatar=self.avatar,
        )

    @classmethod
    def from_principal(
        cls, principal: Principal, *, access_token: str = "", anonymous: bool = False
    ) -> "Claims":
        return cls(
            owner=principal.owner,
            name=principal.name,
            display_name=principal.display_name,
            email=principal.email,
            avatar=principal.avatar,
            is_admin=principal.is_admin,
            role=principal.role,
            id=principal.id,
            created_time=principal.created_time,
            access_token=access_token,
            anonymous=anonymous,
        )

    def to_dict(self) -> dict:
        return {
            "owner": self.owner,
            "name": self.name,
            "display_name": self.display_name,
            "email": self.email,
            "avatar": self.avatar,
            "is_admin": self.is_admin,
            "role": self.role,
            "id": self.id,
            "created_time": format_timestamp(self.created_time),
            "access_token": self.access_token,
            "anonymous": self.anonymous,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Claims":
        return cls(
            owner=data["owner"],
            name=data["name"],
            display_name=data.get("display_name", ""),
            email=data.get("email", ""),
            avatar=data.get("avatar", ""),
            is_admin=bool(data.get("is_admin", False)),
            role=data.get("role", ""),
            id=data.get("id", ""),
            created_time=parse_timestamp(data.get("created_time")),
            access_token=data.get("access_token", ""),
            anonymous=bool(data.get("anonymous", False)),
        )


@dataclass
class StoreConfig:
    owner: str
    name: str
    display_name: str = ""
    is_default: bool = False
    created_time: datetime = field(default_factory=utcnow)

    @property
    def id_string(self) -> str:
        return f"{self.owner}/{self.name}"

    @classmethod
    def new(
        cls,
        owner: str,
        name: str,
        *,
        display_name: Optional[str] = None,
        is_default: bool = False,
    ) -> "StoreConfig":
        _require(owner, "owner")
        _require(name, "name")
        return cls(
            owner=owner,
            name=name,
            display_name=display_name or name,
            is_default=is_default,
        )


@dataclass
class VectorScore:
    vector: str
    score: float


@dataclass
class Conversation:
    owner: str
    name: str
    created_time: datetime
    updated_time: datetime
    display_name: str
    store: str
    category: str
    type: str
    user: str
    user1: str = ""
    user2: str = ""
    users: List[str] = field(default_factory=list)
    client_ip: str = ""
    user_agent: str = ""
    client_ip_desc: str = ""
    user_agent_desc: str = ""
    message_count: int = 0

    @property
    def id_string(self) -> str:
        return f"{self.owner}/{self.name}"

    @classmethod
    def new(
        cls,
        owner: str,
        principal: Principal,
        store: StoreConfig,
        *,
        client_ip: str = "",
        user_agent: str = "",
        client_ip_desc: str = "",
        user_agent_desc: str = "",
        display_name: str = "New Chat - 1",
    ) -> "Conversation":
        """Build a fresh conversation for ``principal`` with a random unique name."""
        _require(owner, "owner")
        _require(principal.name, "principal name")
        now = utcnow()
        member = principal.id_string
        return cls(
            owner=owner,
            name=f"chat_{random_name()}",
            created_time=now,
            updated_time=now,
            display_name=display_name,
            store=store.id_string,
            category="Default Category",
            type="AI",
            user=principal.name,
            user1=member,
            user2="",
            users=[member],
            client_ip=client_ip,
            user_agent=user_agent,
            client_ip_desc=client_ip_desc,
            user_agent_desc=user_agent_desc,
            message_count=0,
        )


@dataclass
class Message:
    owner: str
    name: str
    created_time: datetime
    user: str
    chat: str
    reply_to: str
    author: str
    text: str
    vector_scores: List[VectorScore] = field(default_factory=list)

    @classmethod
    def seed_for(cls, conversation: Conversation) -> "Message":
        """Empty welcome message from the AI, ordered just after the conversation."""
        _require(conversation.name, "chat")
        return cls(
            owner=conversation.owner,
            name=f"message_{random_name()}",
            created_time=conversation.created_time + timedelta(milliseconds=1),
            user=conversation.user,
            chat=conversation.name,
            reply_to=WELCOME_REPLY_TO,
            author=AI_AUTHOR,
            text="",
            vector_scores=[],
        )
