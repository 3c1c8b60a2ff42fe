from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from chatgate.storage.models import Claims

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "token_invalid",
    "exchange_failed",
    "not_found",
    "validation_error",
    "conflict",
    "no_default_store",
    "storage_error",
    "service_unavailable",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class AccountResponse(BaseModel):
    """Claims as returned to the browser; the provider access token is never included."""

    owner: str
    name: str
    display_name: str = ""
    email: str = ""
    avatar: str = ""
    is_admin: bool = False
    role: str
    id: str = ""
    created_time: datetime
    anonymous: bool = False

    @classmethod
    def from_claims(cls, claims: Claims) -> "AccountResponse":
        return cls(
            owner=claims.owner,
            name=claims.name,
            display_name=claims.display_name,
            email=claims.email,
            avatar=claims.avatar,
            is_admin=claims.is_admin,
            role=claims.role,
            id=claims.id,
            created_time=claims.created_time,
            anonymous=claims.anonymous,
        )


class SignOutResponse(BaseModel):
    signed_out: bool = True
