from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that the API layer puts into the error envelope. The message is always
    the underlying cause so callers see why sign-in or bootstrap failed.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class MustSignInError(AuthenticationError):
    """Gated deployment and no valid session; the user has to sign in."""
    pass


class ExchangeFailedError(ServiceError):
    """Authorization code could not be traded for a token.

    Not retried: the code is single-use, so the user has to restart sign-in.
    """
    status_code = 400
    error_code = "exchange_failed"


class TokenInvalidError(AuthenticationError):
    """Token signature, expiry or payload could not be verified."""
    error_code = "token_invalid"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class NoDefaultStoreError(ServerError):
    """Tenant has no default store configuration; requires administrator action."""
    error_code = "no_default_store"


class StorageError(ServerError):
    """Persistence failure while reading or writing conversations."""
    error_code = "storage_error"


__all__ = [
    "ServiceError",
    "AuthenticationError",
    "MustSignInError",
    "ExchangeFailedError",
    "TokenInvalidError",
    "ServerError",
    "NoDefaultStoreError",
    "StorageError",
]
