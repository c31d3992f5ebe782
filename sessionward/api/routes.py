from __future__ import annotations

from typing import Optional, Tuple

from fastapi import APIRouter, Depends, Header, Path, Query, Request, Response
from fastapi.responses import RedirectResponse

from sessionward.api.schemas import (
    AuthResponse,
    CsrfResponse,
    Envelope,
    LoginRequest,
    LogoutRequest,
    PrincipalResponse,
    TokenRefreshRequest,
)
from sessionward.config import Settings
from sessionward.logging import get_logger
from sessionward.service.auth import AuthContext, LoginResult
from sessionward.service.errors import SessionNotFound
from sessionward.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1/auth", tags=["auth"])


def _client_meta(request: Request) -> Tuple[Optional[str], Optional[str]]:
    user_agent = request.headers.get("user-agent")
    ip_addr = request.client.host if request.client else None
    return user_agent, ip_addr


def _session_cookie(request: Request, settings: Settings) -> Optional[str]:
    return request.cookies.get(settings.session_cookie_name)


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _apply_session_cookie(
    response: Response, session_id: str, settings: Settings, *, samesite: str = "strict"
) -> None:
    response.set_cookie(
        settings.session_cookie_name,
        session_id,
        httponly=True,
        secure=settings.cookie_secure,
        samesite=samesite,
        max_age=settings.session_absolute_timeout_minutes * 60,
        path="/",
    )


def _clear_session_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        settings.session_cookie_name,
        path="/",
        secure=settings.cookie_secure,
        httponly=True,
        samesite="strict",
    )


def _auth_response(result: LoginResult) -> AuthResponse:
    if result.tokens is not None:
        tokens = result.tokens
        return AuthResponse(
            subject=result.identity.subject,
            mode="token",
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_type=tokens.token_type,
            expires_at=tokens.access_expires_at,
            refresh_expires_at=tokens.refresh_expires_at,
            role=result.identity.role,
        )
    return AuthResponse(
        subject=result.identity.subject,
        mode="session",
        csrf_token=result.csrf_token,
        role=result.identity.role,
    )


async def get_principal(
    request: Request, authorization: Optional[str] = Header(None)
) -> AuthContext:
    runtime = get_runtime()
    user_agent, ip_addr = _client_meta(request)
    return await runtime.auth.authenticate(
        authorization=authorization,
        session_id=_session_cookie(request, runtime.settings),
        user_agent=user_agent,
        ip_addr=ip_addr,
    )


async def require_csrf(
    request: Request,
    authorization: Optional[str] = Header(None),
    x_csrf_token: Optional[str] = Header(None, alias="X-CSRF-Token"),
) -> None:
    # Bearer requests carry no ambient credential and need no CSRF token
    if authorization:
        return
    runtime = get_runtime()
    session_id = _session_cookie(request, runtime.settings)
    if not session_id:
        return
    await runtime.auth.csrf.require(request.method, session_id, x_csrf_token)


@router.post("/login", response_model=Envelope)
async def login(body: LoginRequest, request: Request, response: Response):
    """Verify credentials and start a token pair or a cookie session."""
    runtime = get_runtime()
    user_agent, ip_addr = _client_meta(request)
    result = await runtime.auth.login(
        body.login,
        body.password,
        mode=body.mode,
        suggested_session_id=_session_cookie(request, runtime.settings),
        user_agent=user_agent,
        ip_addr=ip_addr,
    )
    if result.session is not None:
        _apply_session_cookie(response, result.session.id, runtime.settings)
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/refresh", response_model=Envelope)
async def refresh(body: TokenRefreshRequest):
    runtime = get_runtime()
    tokens = await runtime.auth.refresh(body.refresh_token)
    return Envelope(status="ok", data=tokens.as_response())


@router.post("/logout", response_model=Envelope, dependencies=[Depends(require_csrf)])
async def logout(
    request: Request,
    response: Response,
    body: Optional[LogoutRequest] = None,
    authorization: Optional[str] = Header(None),
):
    runtime = get_runtime()
    await runtime.auth.logout(
        access_token=_bearer_token(authorization),
        refresh_token=body.refresh_token if body else None,
        session_id=_session_cookie(request, runtime.settings),
    )
    _clear_session_cookie(response, runtime.settings)
    return Envelope(status="ok", data={"message": "logged out"})


@router.post("/logout/all", response_model=Envelope, dependencies=[Depends(require_csrf)])
async def logout_everywhere(response: Response, principal: AuthContext = Depends(get_principal)):
    runtime = get_runtime()
    counts = await runtime.auth.logout_everywhere(principal.subject)
    _clear_session_cookie(response, runtime.settings)
    return Envelope(status="ok", data=counts)


@router.get("/oauth/{provider}/authorize")
async def oauth_authorize(
    provider: str = Path(..., max_length=64),
    redirect_uri: Optional[str] = Query(None, max_length=2048),
):
    """Redirect the browser to the provider with a fresh state and PKCE challenge."""
    runtime = get_runtime()
    start = await runtime.auth.start_oauth(provider, redirect_uri=redirect_uri)
    return RedirectResponse(start.authorization_url, status_code=302)


@router.get("/oauth/{provider}/callback", response_model=Envelope)
async def oauth_callback(
    request: Request,
    response: Response,
    provider: str = Path(..., max_length=64),
    state: Optional[str] = Query(None, max_length=512),
    code: Optional[str] = Query(None, max_length=2048),
    mode: str = Query("token", pattern="^(token|session)$"),
):
    runtime = get_runtime()
    user_agent, ip_addr = _client_meta(request)
    result = await runtime.auth.complete_oauth(
        provider,
        state,
        code,
        mode=mode,
        suggested_session_id=_session_cookie(request, runtime.settings),
        user_agent=user_agent,
        ip_addr=ip_addr,
    )
    if result.session is not None:
        # Lax: the callback arrives as a top-level cross-site navigation
        _apply_session_cookie(response, result.session.id, runtime.settings, samesite="lax")
    return Envelope(status="ok", data=_auth_response(result))


@router.get("/csrf", response_model=Envelope)
async def csrf_token(request: Request):
    runtime = get_runtime()
    session_id = _session_cookie(request, runtime.settings)
    if not session_id:
        raise SessionNotFound("missing_session_cookie")
    user_agent, ip_addr = _client_meta(request)
    session = await runtime.auth.sessions.get(
        session_id, user_agent=user_agent, ip_addr=ip_addr
    )
    token = await runtime.auth.csrf.issue(session.id)
    return Envelope(status="ok", data=CsrfResponse(csrf_token=token.value))


@router.get("/me", response_model=Envelope)
async def me(principal: AuthContext = Depends(get_principal)):
    return Envelope(
        status="ok",
        data=PrincipalResponse(
            subject=principal.subject,
            via=principal.via,
            role=principal.role,
            claims=principal.claims,
        ),
    )
