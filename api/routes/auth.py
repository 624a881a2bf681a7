"""
api/routes/auth.py -- Authentication REST endpoints.

Routes:
  POST /api/auth/login               -- password login; sets session cookie
  POST /api/auth/register            -- create a password account; sets session cookie
  POST /api/auth/logout              -- clears session_token and auth-token
  GET  /api/auth/me                  -- current session claims (requires auth)
  GET  /api/auth/dashboards          -- dashboards the caller may open (requires auth)
  POST /api/auth/magic-link          -- email a one-time sign-in link
  GET  /api/auth/verify-magic-link   -- redeem the link; 302 with cookie
  POST /api/auth/forgot-password     -- email a reset link (constant response)
  POST /api/auth/reset-password      -- redeem a reset token
  GET  /api/auth/providers           -- enabled OAuth providers (public)
  GET  /api/auth/oauth/{provider}    -- redirect to the provider
  GET  /api/auth/callback/{provider} -- provider callback; 302 with cookie

Every handler that issues a session picks its destination through
auth.redirects.post_login_redirect(), so a caller-supplied redirect is
validated the same way everywhere.

Handlers are sync (def) unless they await authlib: FastAPI runs them in its
threadpool, which keeps blocking store and mail calls off the event loop.

Security:
  Login, register, magic-link and forgot-password are rate-limited per IP.
  authenticate_user() provides timing equalization -- use it, never inline.
  Cache-Control: no-store on every response that sets or clears a session.
"""

import logging
from urllib.parse import urlencode

from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Depends, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, RedirectResponse

from api.limiter import limiter
from api.models import (
    DashboardLink,
    ErrorDetail,
    ErrorResponse,
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    MagicLinkRequest,
    MeResponse,
    MessageResponse,
    OAuthProviderInfo,
    RegisterRequest,
    ResetPasswordRequest,
    UserResponse,
)
from auth.dependencies import get_current_claims
from auth.flows import CredentialVerifier
from auth.models import SessionClaims, User
from auth.oauth import get_enabled_providers, get_oauth_user_info
from auth.redirects import LOGIN_PATH, accessible_dashboards, default_dashboard, post_login_redirect
from auth.results import AuthError, AuthErrorCode, Err
from auth.session import clear_session_cookies, create_and_set_session
from core.config import get_settings

logger = logging.getLogger("ticketgate.api.auth")

router = APIRouter()

# One HTTP status per error code. Token errors are the caller's fault (400);
# a missing mail sender or failed delivery is ours (500).
_STATUS_BY_CODE: dict[AuthErrorCode, int] = {
    AuthErrorCode.VALIDATION_ERROR: 400,
    AuthErrorCode.INVALID_TOKEN: 400,
    AuthErrorCode.EXPIRED_TOKEN: 400,
    AuthErrorCode.BAD_CREDENTIALS: 401,
    AuthErrorCode.CONFLICT: 409,
    AuthErrorCode.MISCONFIGURED: 500,
    AuthErrorCode.DELIVERY_FAILED: 500,
}

_OAUTH_REDIRECT_KEY = "oauth_redirect"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _verifier(request: Request) -> CredentialVerifier:
    return request.app.state.verifier


def _base_url(request: Request) -> str:
    """Origin for emailed links: BASE_URL when configured, else the request's own."""
    return get_settings().base_url or str(request.base_url).rstrip("/")


def _error_response(error: AuthError) -> JSONResponse:
    resp = JSONResponse(
        status_code=_STATUS_BY_CODE[error.code],
        content=ErrorResponse(
            error=ErrorDetail(code=error.code.value, message=error.message, field=error.field)
        ).model_dump(exclude_none=True),
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _login_error_redirect(code: str) -> RedirectResponse:
    resp = RedirectResponse(f"{LOGIN_PATH}?{urlencode({'error': code})}", status_code=302)
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _session_response(request: Request, user: User, intended: str | None, status_code: int = 200) -> JSONResponse:
    redirect_url = post_login_redirect(user.role, user.staff_roles, intended)
    resp = JSONResponse(
        status_code=status_code,
        content=LoginResponse(redirect_url=redirect_url, user=UserResponse.from_user(user)).model_dump(),
    )
    create_and_set_session(resp, user, request)
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _session_redirect(request: Request, user: User, intended: str | None) -> RedirectResponse:
    resp = RedirectResponse(post_login_redirect(user.role, user.staff_roles, intended), status_code=302)
    create_and_set_session(resp, user, request)
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Password
# ---------------------------------------------------------------------------


@router.post("/auth/login", response_model=LoginResponse)
@limiter.limit(lambda: get_settings().login_rate_limit)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; set the session cookie.

    Wrong email and wrong password return the same bad_credentials error.
    """
    result = _verifier(request).password_login(body.email, body.password)
    if isinstance(result, Err):
        return _error_response(result.error)
    return _session_response(request, result.value, body.redirect)


@router.post("/auth/register", response_model=LoginResponse, status_code=201)
@limiter.limit(lambda: get_settings().login_rate_limit)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create a password account and sign it in."""
    result = _verifier(request).register(body.email, body.password, body.name)
    if isinstance(result, Err):
        return _error_response(result.error)
    logger.info("Account registered (user_id=%d)", result.value.id)
    return _session_response(request, result.value, body.redirect, status_code=201)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request) -> JSONResponse:
    """Clear both session cookie names. Needs no prior auth."""
    resp = JSONResponse(content=MessageResponse(message="Logged out.").model_dump())
    clear_session_cookies(resp, request)
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Session introspection
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
def me(claims: SessionClaims = Depends(get_current_claims)) -> MeResponse:
    """Return the claims carried by the caller's session."""
    return MeResponse.from_claims(claims, default_dashboard(claims.role, claims.staff_roles))


@router.get("/auth/dashboards", response_model=list[DashboardLink])
def dashboards(claims: SessionClaims = Depends(get_current_claims)) -> list[DashboardLink]:
    return [
        DashboardLink(role=d.role, path=d.path, label=d.label)
        for d in accessible_dashboards(claims.role, claims.staff_roles)
    ]


# ---------------------------------------------------------------------------
# Magic link
# ---------------------------------------------------------------------------


@router.post("/auth/magic-link", response_model=MessageResponse)
@limiter.limit(lambda: get_settings().magic_link_rate_limit)
def request_magic_link(request: Request, body: MagicLinkRequest) -> JSONResponse:
    result = _verifier(request).request_magic_link(body.email, _base_url(request), body.callback_url)
    if isinstance(result, Err):
        return _error_response(result.error)
    return JSONResponse(content=MessageResponse(message=result.value).model_dump())


@router.get("/auth/verify-magic-link")
def verify_magic_link(
    request: Request,
    token: str = "",
    callback_url: str | None = Query(default=None, alias="callbackUrl"),
) -> RedirectResponse:
    """Redeem a magic link and redirect into the app with a fresh session.

    Failures redirect to /login?error=<code> instead of rendering JSON: the
    caller is a browser that followed a link from an email.
    """
    result = _verifier(request).verify_magic_link(token)
    if isinstance(result, Err):
        return _login_error_redirect(result.error.code.value)
    return _session_redirect(request, result.value, callback_url)


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


@router.post("/auth/forgot-password", response_model=MessageResponse)
@limiter.limit(lambda: get_settings().magic_link_rate_limit)
def forgot_password(request: Request, body: ForgotPasswordRequest) -> JSONResponse:
    """Send a reset link. The success body is identical whether or not the email exists."""
    result = _verifier(request).request_password_reset(body.email, _base_url(request))
    if isinstance(result, Err):
        return _error_response(result.error)
    return JSONResponse(content=MessageResponse(message=result.value).model_dump())


@router.post("/auth/reset-password", response_model=MessageResponse)
def reset_password(request: Request, body: ResetPasswordRequest) -> JSONResponse:
    result = _verifier(request).reset_password(body.token, body.new_password)
    if isinstance(result, Err):
        return _error_response(result.error)
    resp = JSONResponse(
        content=MessageResponse(message="Your password has been reset. You can now sign in.").model_dump()
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# OAuth
# ---------------------------------------------------------------------------


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
def list_providers() -> list[OAuthProviderInfo]:
    """Return the configured OAuth providers; empty when none are set up."""
    return [OAuthProviderInfo(**p) for p in get_enabled_providers()]


@router.get("/auth/oauth/{provider}")
async def oauth_redirect(request: Request, provider: str, redirect: str | None = None):
    """Redirect the browser to the provider's authorization page.

    The provider name is checked against the enabled list first, so a
    spoofed name cannot reach create_client(). redirect= is held in the
    signed Starlette session until the callback.
    """
    enabled = {p["name"] for p in get_enabled_providers()}
    if provider not in enabled:
        return _login_error_redirect("oauth_failed")

    if redirect:
        request.session[_OAUTH_REDIRECT_KEY] = redirect
    client = request.app.state.oauth.create_client(provider)
    redirect_uri = str(request.url_for("oauth_callback", provider=provider))
    return await client.authorize_redirect(request, redirect_uri)


@router.get("/auth/callback/{provider}", name="oauth_callback")
async def oauth_callback(request: Request, provider: str) -> RedirectResponse:
    """Handle the provider callback and issue a session.

    Flow:
      1. Exchange the authorization code (authlib checks state from the session).
      2. Extract the verified email and subject; unverified emails are refused.
      3. CredentialVerifier.oauth_login() resolves or creates the account.
      4. Set the session cookie and redirect through post_login_redirect().
    """
    enabled = {p["name"] for p in get_enabled_providers()}
    if provider not in enabled:
        return _login_error_redirect("oauth_failed")

    client = request.app.state.oauth.create_client(provider)
    try:
        token = await client.authorize_access_token(request)
    except OAuthError:
        logger.exception("OAuth token exchange failed for provider %r", provider)
        return _login_error_redirect("oauth_failed")

    try:
        email, subject, name = get_oauth_user_info(provider, token)
    except ValueError:
        logger.warning("OAuth login rejected: unverified or missing email from %r", provider)
        return _login_error_redirect("oauth_failed")

    result = await run_in_threadpool(_verifier(request).oauth_login, provider, email, subject, name)
    if isinstance(result, Err):
        return _login_error_redirect(result.error.code.value)

    intended = request.session.pop(_OAUTH_REDIRECT_KEY, None)
    return _session_redirect(request, result.value, intended)
