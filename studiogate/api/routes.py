from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request, Response

from studiogate.api.schemas import (
    Envelope,
    IssueCodeResponse,
    MessageResponse,
    RevokeSessionRequest,
    SessionSnapshotResponse,
    SessionStatusResponse,
    StoragePresenceResponse,
    VerifyCodeRequest,
    VerifyCodeResponse,
)
from studiogate.service.errors import (
    AuthenticationError,
    NotFoundError,
    RateLimitedError,
    error_for_code,
)
from studiogate.service.runtime import get_runtime
from studiogate.service.sessions import SessionContext
from studiogate.service.transport import (
    ClientInfo,
    apply_session_cookie,
    clear_session_cookie,
    client_info,
    resolve_token,
)
from studiogate.storage.models import Account, isoformat

router = APIRouter(prefix="/v1")


def _client(request: Request) -> ClientInfo:
    return client_info(
        request.headers,
        request.client.host if request.client else None,
        get_runtime().settings.trusted_proxies,
    )


def _presented_token(request: Request, authorization: Optional[str]) -> Optional[str]:
    settings = get_runtime().settings
    return resolve_token(
        authorization,
        request.cookies.get(settings.session_cookie_name),
        secret=settings.session_cookie_secret,
    )


async def get_session_context(
    request: Request, authorization: Optional[str] = Header(None)
) -> SessionContext:
    runtime = get_runtime()
    token = _presented_token(request, authorization)
    result = await runtime.sessions.check_session(token)
    if not result.authenticated or not result.account_id:
        raise AuthenticationError(result.message)
    return SessionContext(
        session_token=result.session_token or token,
        account_id=result.account_id,
        email=result.email or "",
    )


async def get_authenticated_account(
    ctx: SessionContext = Depends(get_session_context),
) -> Account:
    """Resolve the signed-in owner account for owner-only routes."""
    account = get_runtime().store.get_account_by_id(ctx.account_id)
    if account is None:
        raise AuthenticationError("Session account not found")
    return account


@router.post("/auth/otp/request", response_model=Envelope, tags=["auth"])
async def request_code(request: Request):
    """Email a one-time access code to the owner account.

    Raises:
        429: too many requests from this address in the current window
        404: no owner account exists
        409: the owner account has no email address
        502: the email could not be sent
    """
    runtime = get_runtime()
    result = await runtime.otp.issue_code(_client(request).ip)
    if not result.success:
        if result.error_code == RateLimitedError.error_code:
            detail = {"reset_at": isoformat(result.reset_at)} if result.reset_at else None
            raise RateLimitedError(
                result.message,
                retry_after_seconds=result.retry_after_seconds or 1,
                detail=detail,
            )
        raise error_for_code(result.error_code, result.message)
    data = IssueCodeResponse(
        message=result.message, remaining_attempts=result.remaining_attempts or 0
    )
    return Envelope(status="ok", data=data.model_dump(mode="json"))


@router.post("/auth/otp/verify", response_model=Envelope, tags=["auth"])
async def verify_code(body: VerifyCodeRequest, request: Request, response: Response):
    """Exchange an access code for a session; sets the session cookie."""
    runtime = get_runtime()
    result = await runtime.otp.verify_code(body.code, _client(request))
    if not result.success or not result.session_token or not result.expires_at:
        raise error_for_code(result.error_code, result.message)
    apply_session_cookie(response, result.session_token, runtime.settings)
    data = VerifyCodeResponse(
        message=result.message,
        session_token=result.session_token,
        expires_at=result.expires_at,
    )
    return Envelope(status="ok", data=data.model_dump(mode="json"))


@router.get("/auth/session", response_model=Envelope, tags=["auth"])
async def session_status(request: Request, authorization: Optional[str] = Header(None)):
    """Report whether the presented token is a live session.

    Always 200; the ``authenticated`` flag carries the answer.
    """
    runtime = get_runtime()
    result = await runtime.sessions.check_session(_presented_token(request, authorization))
    data = SessionStatusResponse(
        authenticated=result.authenticated,
        message=result.message,
        email=result.email,
        session_token=result.session_token,
        expires_in_seconds=result.expires_in_seconds,
    )
    return Envelope(status="ok", data=data.model_dump(mode="json"))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request, response: Response, authorization: Optional[str] = Header(None)
):
    runtime = get_runtime()
    result = await runtime.sessions.sign_out(_presented_token(request, authorization))
    if not result.success:
        raise error_for_code(result.error_code, result.message)
    clear_session_cookie(response, runtime.settings)
    return Envelope(status="ok", data=MessageResponse(message=result.message).model_dump())


@router.post("/auth/sessions/revoke", response_model=Envelope, tags=["auth"])
async def revoke_session(
    body: RevokeSessionRequest,
    response: Response,
    ctx: SessionContext = Depends(get_session_context),
):
    """Revoke a session by token. Revoking an unknown token still succeeds."""
    runtime = get_runtime()
    result = await runtime.sessions.revoke_session(body.token)
    if not result.success:
        raise error_for_code(result.error_code, result.message)
    if body.token == ctx.session_token:
        clear_session_cookie(response, runtime.settings)
    return Envelope(status="ok", data=MessageResponse(message=result.message).model_dump())


@router.get("/auth/session/snapshot", response_model=Envelope, tags=["auth"])
async def session_snapshot(ctx: SessionContext = Depends(get_session_context)):
    runtime = get_runtime()
    snapshot = await runtime.sessions.get_session_snapshot(ctx.session_token)
    if snapshot is None:
        raise NotFoundError("session snapshot not found")
    data = SessionSnapshotResponse(
        account_id=snapshot.account_id,
        email=snapshot.email,
        first_name=snapshot.first_name,
        last_name=snapshot.last_name,
        bio=snapshot.bio,
        avatar=snapshot.avatar,
        session_expires=snapshot.session_expires,
        ip=snapshot.ip,
        user_agent=snapshot.user_agent,
        created_at=snapshot.created_at,
        last_accessed=snapshot.last_accessed,
        refreshed_at=snapshot.refreshed_at,
    )
    return Envelope(status="ok", data=data.model_dump(mode="json"))


@router.get("/auth/session/storage", response_model=Envelope, tags=["diagnostics"])
async def session_storage(request: Request, authorization: Optional[str] = Header(None)):
    """Diagnostic: is the presented token's cache entry present? Does not refresh it."""
    runtime = get_runtime()
    token = _presented_token(request, authorization)
    data = StoragePresenceResponse(
        present=await runtime.sessions.verify_storage_presence(token),
        cache_reachable=await runtime.sessions.test_cache_connection(),
    )
    return Envelope(status="ok", data=data.model_dump())


@router.get("/account", response_model=Envelope, tags=["account"])
async def account_profile(account: Account = Depends(get_authenticated_account)):
    return Envelope(
        status="ok",
        data={
            "id": account.id,
            "email": account.email,
            "first_name": account.first_name,
            "last_name": account.last_name,
            "bio": account.bio,
            "avatar": account.avatar,
            "last_login": isoformat(account.last_login) if account.last_login else None,
        },
    )
