from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Cookie, Header, Query, Request, Response

from chatgate.api.schemas import AccountResponse, Envelope, SignOutResponse
from chatgate.config import get_settings
from chatgate.logging import get_logger
from chatgate.service.gate import GateResult
from chatgate.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/api")

SESSION_COOKIE = "session_id"


def _client_ip(request: Request) -> str:
    """First X-Forwarded-For hop, then X-Real-IP, then the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip and real_ip.strip():
        return real_ip.strip()
    return request.client.host if request.client else ""


def _resolve_handle(cookie_value: Optional[str], header_value: Optional[str]) -> Optional[str]:
    return cookie_value or header_value or None


def _apply_session_cookie(response: Response, handle: str) -> None:
    settings = get_settings()
    response.set_cookie(
        SESSION_COOKIE,
        handle,
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite="lax",
        max_age=settings.session_ttl_minutes * 60,
        path="/",
    )


def _account_envelope(result: GateResult) -> Envelope:
    return Envelope(
        status="ok", data=AccountResponse.from_claims(result.claims).model_dump(mode="json")
    )


@router.post("/signin", response_model=Envelope, tags=["account"])
async def signin(
    request: Request,
    response: Response,
    code: str = Query(""),
    state: str = Query(""),
    session_cookie: Optional[str] = Cookie(None, alias=SESSION_COOKIE),
    session_header: Optional[str] = Header(None, alias="session_id", convert_underscores=False),
    user_agent: str = Header("", alias="User-Agent"),
):
    """Complete sign-in with the authorization code returned by the identity provider.

    Raises:
        400: the code could not be exchanged
        401: the returned token failed verification
        500: the default store is missing or bootstrap storage failed
    """
    runtime = get_runtime()
    result = await runtime.gate.sign_in(
        code,
        state,
        handle=_resolve_handle(session_cookie, session_header),
        client_ip=_client_ip(request),
        user_agent=user_agent,
    )
    _apply_session_cookie(response, result.handle)
    return _account_envelope(result)


@router.post("/signout", response_model=Envelope, tags=["account"])
async def signout(
    response: Response,
    session_cookie: Optional[str] = Cookie(None, alias=SESSION_COOKIE),
    session_header: Optional[str] = Header(None, alias="session_id", convert_underscores=False),
):
    runtime = get_runtime()
    await runtime.gate.sign_out(_resolve_handle(session_cookie, session_header))
    settings = get_settings()
    response.delete_cookie(
        SESSION_COOKIE, path="/", secure=settings.session_cookie_secure, samesite="lax"
    )
    return Envelope(status="ok", data=SignOutResponse().model_dump())


@router.get("/get-account", response_model=Envelope, tags=["account"])
async def get_account(
    request: Request,
    response: Response,
    session_cookie: Optional[str] = Cookie(None, alias=SESSION_COOKIE),
    session_header: Optional[str] = Header(None, alias="session_id", convert_underscores=False),
    user_agent: str = Header("", alias="User-Agent"),
):
    """Return the signed-in account, or an anonymous one on the public domain."""
    runtime = get_runtime()
    handle = _resolve_handle(session_cookie, session_header)
    result = await runtime.gate.get_account(
        host=request.headers.get("host"),
        handle=handle,
        client_ip=_client_ip(request),
        user_agent=user_agent,
    )
    if result.handle != handle or result.created_session:
        _apply_session_cookie(response, result.handle)
    return _account_envelope(result)
