from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, Query, Request, Response

from harmonia.api.schemas import (
    AccountIdsRequest,
    AccountListResponse,
    AccountResponse,
    AccountUpdateResponse,
    AuthResponse,
    ChangePasswordRequest,
    Envelope,
    LoginRequest,
    MessageResponse,
    RegisterRequest,
    RegisterResponse,
    SendOtpRequest,
    TokenRefreshRequest,
    TokenResponse,
    UpdateRolesRequest,
    VerifyOtpRequest,
)
from harmonia.logging import get_correlation_id, get_logger
from harmonia.service.access import (
    AuthMode,
    Credentials,
    Principal,
    Public,
    RequireAuth,
    RequireRole,
    TokenChannel,
)
from harmonia.service.auth import AccountUpdateResult, AuthResult
from harmonia.service.runtime import Runtime
from harmonia.storage.models import Role

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def _ok(data: Any) -> Envelope:
    envelope = Envelope(status="ok", data=data)
    cid = get_correlation_id()
    if cid:
        envelope.request_id = cid
    return envelope


def _extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _credentials(
    request: Request,
    authorization: Optional[str] = None,
    refresh_override: Optional[str] = None,
) -> Credentials:
    settings = get_runtime(request).settings
    return Credentials(
        access_token=request.cookies.get(settings.access_cookie_name) or _extract_bearer(authorization),
        refresh_token=refresh_override or request.cookies.get(settings.refresh_cookie_name),
    )


def guard(mode: AuthMode, channel: TokenChannel = TokenChannel.ACCESS):
    """Build a dependency running the access pipeline for one endpoint."""

    async def dependency(
        request: Request, authorization: Optional[str] = Header(None)
    ) -> Optional[Principal]:
        runtime = get_runtime(request)
        return await runtime.access.authenticate(
            mode, _credentials(request, authorization), channel=channel
        )

    return dependency


current_principal = guard(RequireAuth())
admin_principal = guard(RequireRole.of(Role.ADMIN))


def _set_auth_cookies(response: Response, runtime: Runtime, result: AuthResult) -> None:
    settings = runtime.settings
    response.set_cookie(
        settings.access_cookie_name,
        result.tokens.access_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        max_age=settings.access_token_ttl_seconds,
        path="/",
    )
    response.set_cookie(
        settings.refresh_cookie_name,
        result.tokens.refresh_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        max_age=settings.refresh_token_ttl_seconds,
        path="/",
    )


def _clear_auth_cookies(response: Response, runtime: Runtime) -> None:
    settings = runtime.settings
    for name in (settings.access_cookie_name, settings.refresh_cookie_name):
        response.delete_cookie(name, path="/", secure=settings.cookie_secure, httponly=True, samesite="lax")


def _auth_payload(result: AuthResult) -> AuthResponse:
    tokens = result.tokens
    return AuthResponse(
        account=AccountResponse.from_account(result.account),
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
        access_expires_at=tokens.access_expires_at,
        refresh_expires_at=tokens.refresh_expires_at,
    )


def _update_payload(result: AccountUpdateResult) -> AccountUpdateResponse:
    return AccountUpdateResponse(
        updated=[AccountResponse.from_account(a) for a in result.updated],
        missing=result.missing,
    )


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, runtime: Runtime = Depends(get_runtime)):
    """Create an unverified account and mail its activation code.

    Raises:
        400: weak password, malformed fields, or signup disabled
        409: email already registered
    """
    account_id = await runtime.auth.register(
        body.email,
        body.password,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    return _ok(RegisterResponse(account_id=account_id))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response, runtime: Runtime = Depends(get_runtime)):
    """Exchange email and password for an access/refresh token pair.

    Both tokens are returned in the body and set as httponly cookies.

    Raises:
        401: unknown email or wrong password (indistinguishable)
        403: account email not verified
    """
    result = await runtime.auth.login(body.email, body.password)
    _set_auth_cookies(response, runtime, result)
    return _ok(_auth_payload(result))


@router.post("/auth/refresh-token", response_model=Envelope, tags=["auth"])
async def refresh_token(
    request: Request,
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
    runtime: Runtime = Depends(get_runtime),
):
    """Rotate the refresh token; the presented one becomes unusable."""
    credentials = _credentials(request, refresh_override=body.refresh_token if body else None)
    await runtime.access.authenticate(RequireAuth(), credentials, channel=TokenChannel.REFRESH)
    result = await runtime.auth.refresh(credentials.refresh_token)
    _set_auth_cookies(response, runtime, result)
    tokens = result.tokens
    return _ok(
        TokenResponse(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_type=tokens.token_type,
            access_expires_at=tokens.access_expires_at,
            refresh_expires_at=tokens.refresh_expires_at,
        )
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
):
    # Always succeeds so clients can clear their state with stale tokens
    _clear_auth_cookies(response, runtime)
    credentials = _credentials(
        request, authorization, refresh_override=body.refresh_token if body else None
    )
    principal = await runtime.access.authenticate(Public(), credentials, channel=TokenChannel.LOGOUT)
    if not principal:
        return _ok(MessageResponse(message="No account found to log out or token is invalid"))
    await runtime.auth.logout(principal.account_id, credentials.refresh_token)
    return _ok(MessageResponse(message="Logged out"))


@router.post("/auth/verify-otp", response_model=Envelope, tags=["auth"])
async def verify_otp(body: VerifyOtpRequest, runtime: Runtime = Depends(get_runtime)):
    account = await runtime.auth.verify_otp(body.email, body.code)
    return _ok(AccountResponse.from_account(account))


@router.post("/auth/send-otp", response_model=Envelope, tags=["auth"])
async def send_otp(body: SendOtpRequest, runtime: Runtime = Depends(get_runtime)):
    """Mail a fresh verification code. Responds identically for unknown emails."""
    await runtime.auth.resend_otp(body.email)
    return _ok(MessageResponse(message="If the account exists, a new code has been sent"))


@router.get("/auth/profile", response_model=Envelope, tags=["auth"])
async def profile(
    principal: Principal = Depends(current_principal),
    runtime: Runtime = Depends(get_runtime),
):
    return _ok(AccountResponse.from_account(runtime.auth.profile(principal.account_id)))


@router.put("/auth/accounts/password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: ChangePasswordRequest,
    principal: Principal = Depends(current_principal),
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.auth.change_password(principal.account_id, body.old_password, body.new_password)
    return _ok(MessageResponse(message="Password updated"))


@router.get("/auth/accounts", response_model=Envelope, tags=["admin"])
async def list_accounts(
    limit: int = Query(10, ge=1, le=100),
    offset: int = Query(0, ge=0),
    principal: Principal = Depends(admin_principal),
    runtime: Runtime = Depends(get_runtime),
):
    accounts, total = runtime.auth.list_accounts(limit=limit, offset=offset)
    return _ok(
        AccountListResponse(
            items=[AccountResponse.from_account(a) for a in accounts],
            total=total,
            limit=limit,
            offset=offset,
        )
    )


@router.get("/auth/accounts/{account_id}", response_model=Envelope, tags=["admin"])
async def get_account(
    account_id: str,
    principal: Principal = Depends(admin_principal),
    runtime: Runtime = Depends(get_runtime),
):
    return _ok(AccountResponse.from_account(runtime.auth.get_account(account_id)))


@router.put("/auth/accounts/roles", response_model=Envelope, tags=["admin"])
async def update_roles(
    body: UpdateRolesRequest,
    principal: Principal = Depends(admin_principal),
    runtime: Runtime = Depends(get_runtime),
):
    result = runtime.auth.update_roles(body.account_ids, body.roles)
    logger.info("admin_roles_updated", admin_id=principal.account_id, updated=len(result.updated))
    return _ok(_update_payload(result))


@router.put("/auth/accounts/activation", response_model=Envelope, tags=["admin"])
async def activate_accounts(
    body: AccountIdsRequest,
    principal: Principal = Depends(admin_principal),
    runtime: Runtime = Depends(get_runtime),
):
    return _ok(_update_payload(runtime.auth.set_verified(body.account_ids, True)))


@router.put("/auth/accounts/deactivation", response_model=Envelope, tags=["admin"])
async def deactivate_accounts(
    body: AccountIdsRequest,
    principal: Principal = Depends(admin_principal),
    runtime: Runtime = Depends(get_runtime),
):
    return _ok(_update_payload(runtime.auth.set_verified(body.account_ids, False)))
