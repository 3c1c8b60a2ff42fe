from __future__ import annotations

import dataclasses
import hashlib

from chatgate.logging import get_logger
from chatgate.storage.models import CHAT_USER_ROLE, Claims, Principal

logger = get_logger(__name__)

ANONYMOUS_NAME_PREFIX = "u-"


def client_fingerprint(client_ip: str, user_agent: str) -> str:
    return f"{client_ip}|{user_agent}"


def content_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


class TrustPolicy:
    """Effective role assignment and pseudonymous identities for visitors."""

    def __init__(self, *, anonymous_avatar: str = "") -> None:
        self.anonymous_avatar = anonymous_avatar

    def assign_role(self, claims: Claims) -> Claims:
        """Downgrade non-administrators to ``chat-user``.

        Administrators keep whatever role the provider issued; this layer
        never upgrades a role. The input claims are left untouched.
        """
        if claims.is_admin:
            return dataclasses.replace(claims)
        if claims.role != CHAT_USER_ROLE:
            logger.debug(
                "role_downgraded", owner=claims.owner, name=claims.name, from_role=claims.role
            )
        return dataclasses.replace(claims, role=CHAT_USER_ROLE)

    def derive_anonymous_identity(self, fingerprint: str, *, owner: str) -> Principal:
        """Stable pseudonymous principal for a client fingerprint.

        The name is a one-way hash, so the same client maps to the same
        principal on return visits without storing its IP or user agent.
        """
        name = f"{ANONYMOUS_NAME_PREFIX}{content_hash(fingerprint)}"
        return Principal.anonymous(owner, name, avatar=self.anonymous_avatar)
