from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from chatgate.config import Settings
from chatgate.logging import get_logger
from chatgate.service.bootstrap import ConversationBootstrapper
from chatgate.service.errors import MustSignInError
from chatgate.service.identity import IdentityVerifier
from chatgate.service.session import SessionManager
from chatgate.service.trust import TrustPolicy, client_fingerprint
from chatgate.storage.models import Claims

logger = get_logger(__name__)


@dataclass
class GateResult:
    handle: str
    claims: Claims
    anonymous: bool = False
    created_session: bool = False


class AccessGate:
    """Decides per request between requiring sign-in, reusing a session, or an anonymous session.

    A deployment is *public* for requests whose host matches the configured
    ``public_domain``; every other request is *gated* and needs a session.
    """

    def __init__(
        self,
        settings: Settings,
        verifier: IdentityVerifier,
        trust: TrustPolicy,
        bootstrapper: ConversationBootstrapper,
        sessions: SessionManager,
    ) -> None:
        self.settings = settings
        self.verifier = verifier
        self.trust = trust
        self.bootstrapper = bootstrapper
        self.sessions = sessions
        self.logger = logger

    @property
    def tenant(self) -> str:
        return self.settings.default_owner

    def is_public_host(self, host: Optional[str]) -> bool:
        public_domain = self.settings.public_domain
        if not public_domain or not host:
            return False
        normalized = host.strip().lower()
        # Port is ignored unless the configured domain pins one
        if ":" not in public_domain and not normalized.endswith("]"):
            normalized = normalized.rsplit(":", 1)[0]
        return normalized == public_domain

    async def get_account(
        self,
        *,
        host: Optional[str],
        handle: Optional[str],
        client_ip: str = "",
        user_agent: str = "",
    ) -> GateResult:
        public = self.is_public_host(host)
        claims = await self.sessions.get_claims(handle)
        # Anonymous sessions are only honoured on the public host
        if claims is not None and (public or not claims.anonymous):
            return GateResult(handle=handle, claims=claims, anonymous=claims.anonymous)

        if not public:
            self.logger.info(
                "sign_in_required",
                host=host,
                has_handle=bool(handle),
                anonymous_session=claims is not None,
            )
            raise MustSignInError("Please sign in first")

        return await self._anonymous_sign_in(client_ip=client_ip, user_agent=user_agent)

    async def _anonymous_sign_in(self, *, client_ip: str, user_agent: str) -> GateResult:
        fingerprint = client_fingerprint(client_ip, user_agent)
        principal = self.trust.derive_anonymous_identity(
            fingerprint, owner=self.settings.idp_organization
        )
        await self.bootstrapper.ensure_initial_conversation(
            principal, tenant=self.tenant, client_ip=client_ip, user_agent=user_agent
        )
        # Session-only identity: never written back to the identity provider
        claims = Claims.from_principal(principal, anonymous=True)
        # Server-issued handle only; an unknown client-supplied handle is never adopted
        session_handle = self.sessions.new_handle()
        await self.sessions.set_claims(session_handle, claims)
        self.logger.info("anonymous_session_established", name=principal.name)
        return GateResult(
            handle=session_handle, claims=claims, anonymous=True, created_session=True
        )

    async def sign_in(
        self,
        code: str,
        state: str,
        *,
        handle: Optional[str] = None,
        client_ip: str = "",
        user_agent: str = "",
    ) -> GateResult:
        """Exchange the code, verify the token, seed the principal and persist the session."""
        token = await self.verifier.exchange_code(code, state)
        claims = self.verifier.verify_token(token.access_token)
        claims = self.trust.assign_role(claims)
        await self.bootstrapper.ensure_initial_conversation(
            claims.principal, tenant=self.tenant, client_ip=client_ip, user_agent=user_agent
        )
        claims.access_token = token.access_token

        # Fresh handle on every sign-in so a pre-auth handle is never promoted
        if handle:
            await self.sessions.clear(handle)
        session_handle = self.sessions.new_handle()
        await self.sessions.set_claims(session_handle, claims)
        self.logger.info(
            "sign_in_succeeded", owner=claims.owner, name=claims.name, role=claims.role
        )
        return GateResult(handle=session_handle, claims=claims, created_session=True)

    async def sign_out(self, handle: Optional[str]) -> None:
        await self.sessions.set_claims(handle, None)
        self.logger.info("signed_out", had_session=bool(handle))
