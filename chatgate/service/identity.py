from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import httpx
from jose import ExpiredSignatureError, JWTError, jwt

from chatgate.config import Settings
from chatgate.logging import get_logger
from chatgate.service.errors import ExchangeFailedError, TokenInvalidError
from chatgate.storage.models import Claims, parse_timestamp

logger = get_logger(__name__)

TOKEN_PATH = "/api/login/oauth/access_token"
# Provider reports some failures as a 200 with the message in the token field
_ERROR_TOKEN_PREFIX = "error:"


@dataclass
class OAuthToken:
    access_token: str
    token_type: str = "Bearer"
    refresh_token: str = ""
    id_token: str = ""
    expires_in: int = 0
    scope: str = ""


class IdentityVerifier:
    """Authorization-code exchange and token verification against the identity provider."""

    def __init__(
        self,
        settings: Settings,
        *,
        public_key: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings
        self.transport = transport
        self.logger = logger
        self._public_key = public_key or self._load_public_key()
        if not self._public_key:
            self.logger.warning(
                "idp_public_key_missing",
                path=settings.idp_jwt_public_key_path,
                message="token verification will reject every token",
            )

    @property
    def token_url(self) -> str:
        return f"{self.settings.idp_endpoint}{TOKEN_PATH}"

    def _load_public_key(self) -> Optional[str]:
        if self.settings.idp_jwt_public_key:
            return self.settings.idp_jwt_public_key
        key_path = self.settings.idp_jwt_public_key_path
        if not key_path:
            return None
        try:
            return Path(key_path).read_text().strip() or None
        except FileNotFoundError:
            return None
        except OSError as exc:
            self.logger.error("idp_public_key_read_failed", path=key_path, error=str(exc))
            return None

    async def exchange_code(self, code: str, state: str) -> OAuthToken:
        """Trade a one-time authorization code for an access token.

        Every failure is an ``ExchangeFailedError`` carrying the provider's
        message. There is no retry since the provider burns the code on first use.
        """
        if not code:
            raise ExchangeFailedError("missing authorization code")
        if not state:
            raise ExchangeFailedError("missing state")
        expected_state = self.settings.idp_expected_state
        if expected_state and state != expected_state:
            self.logger.warning("oauth_state_mismatch")
            raise ExchangeFailedError("state mismatch")

        form = {
            "grant_type": "authorization_code",
            "client_id": self.settings.idp_client_id,
            "client_secret": self.settings.idp_client_secret,
            "code": code,
            "state": state,
        }
        try:
            async with httpx.AsyncClient(
                timeout=self.settings.idp_timeout_seconds,
                follow_redirects=False,
                transport=self.transport,
            ) as client:
                response = await client.post(
                    self.token_url, data=form, headers={"Accept": "application/json"}
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            message = self._provider_message(exc.response) or str(exc)
            self.logger.error(
                "oauth_exchange_http_error",
                status_code=exc.response.status_code,
                error=message,
            )
            raise ExchangeFailedError(message) from exc
        except httpx.HTTPError as exc:
            self.logger.error("oauth_exchange_transport_error", error=str(exc))
            raise ExchangeFailedError(f"identity provider unreachable: {exc}") from exc

        try:
            body = response.json()
        except ValueError as exc:
            self.logger.error("oauth_token_parse_error", error=str(exc))
            raise ExchangeFailedError("identity provider returned an unreadable token response") from exc
        if not isinstance(body, dict):
            raise ExchangeFailedError("identity provider returned an unreadable token response")

        if body.get("error"):
            message = body.get("error_description") or body.get("error")
            self.logger.warning("oauth_exchange_rejected", error=message)
            raise ExchangeFailedError(str(message))

        access_token = body.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            self.logger.error("oauth_no_access_token")
            raise ExchangeFailedError("identity provider returned no access token")
        if access_token.startswith(_ERROR_TOKEN_PREFIX):
            message = access_token[len(_ERROR_TOKEN_PREFIX):].strip()
            self.logger.warning("oauth_exchange_rejected", error=message)
            raise ExchangeFailedError(message or "authorization code rejected")

        self.logger.info("oauth_exchange_success")
        return OAuthToken(
            access_token=access_token,
            token_type=str(body.get("token_type") or "Bearer"),
            refresh_token=str(body.get("refresh_token") or ""),
            id_token=str(body.get("id_token") or ""),
            expires_in=int(body.get("expires_in") or 0),
            scope=str(body.get("scope") or ""),
        )

    @staticmethod
    def _provider_message(response: httpx.Response) -> Optional[str]:
        try:
            body = response.json()
        except ValueError:
            return response.text or None
        if isinstance(body, dict):
            return body.get("error_description") or body.get("error") or body.get("msg")
        return None

    def verify_token(self, token: str) -> Claims:
        """Verify the RS256 signature and decode identity fields.

        Fails closed: any signature, expiry, audience or payload problem
        raises ``TokenInvalidError`` and nothing from the token is trusted.
        """
        if not self._public_key:
            raise TokenInvalidError("token verification key is not configured")
        if not token or token.count(".") != 2:
            raise TokenInvalidError("malformed token")

        client_id = self.settings.idp_client_id
        try:
            payload = jwt.decode(
                token,
                self._public_key,
                algorithms=["RS256"],
                audience=client_id or None,
                options={"verify_aud": bool(client_id), "require_exp": True},
            )
        except ExpiredSignatureError as exc:
            self.logger.info("token_expired")
            raise TokenInvalidError("token has expired") from exc
        except JWTError as exc:
            self.logger.warning("token_verification_failed", error=str(exc))
            raise TokenInvalidError(f"token verification failed: {exc}") from exc

        return self._claims_from_payload(payload)

    @staticmethod
    def _claims_from_payload(payload: dict[str, Any]) -> Claims:
        owner = payload.get("owner")
        name = payload.get("name")
        if not isinstance(owner, str) or not owner or not isinstance(name, str) or not name:
            raise TokenInvalidError("token payload is missing owner or name")
        try:
            created_time = parse_timestamp(payload.get("createdTime"))
        except ValueError as exc:
            raise TokenInvalidError("token payload has an invalid createdTime") from exc
        return Claims(
            owner=owner,
            name=name,
            display_name=str(payload.get("displayName") or ""),
            email=str(payload.get("email") or ""),
            avatar=str(payload.get("avatar") or ""),
            is_admin=payload.get("isAdmin") is True,
            role=str(payload.get("type") or ""),
            id=str(payload.get("id") or payload.get("sub") or ""),
            created_time=created_time,
        )
