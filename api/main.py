"""
api/main.py -- FastAPI application entry point for ticketgate.

Run with:  uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  2. SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  3. SessionMiddleware     -- signed cookie holding OAuth state between redirects
  4. log_requests          -- one access-log line per request
  5. access_gate           -- route policy; redirects before any handler runs

Lifespan builds the credential store, mailer and CredentialVerifier once and
stores them on app.state; tests replace them wholesale.
"""

from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.auth import router as auth_router
from auth.codec import get_secret
from auth.flows import CredentialVerifier
from auth.gate import evaluate
from auth.mail import build_mailer
from auth.oauth import oauth as oauth_client
from auth.session import clear_session_cookies, read_session_token
from auth.store import UserStore
from core.config import get_settings

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("ticketgate.api")

# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the shared store, mailer and verifier; close them on shutdown."""
    settings = get_settings()
    logger.info("ticketgate API starting up")
    get_secret()  # resolve (and warn about) the signing secret before the first request
    app.state.user_store = UserStore(settings.database_url) if settings.database_url else UserStore()
    app.state.mailer = build_mailer(settings)
    app.state.verifier = CredentialVerifier(app.state.user_store, app.state.mailer, settings)
    app.state.oauth = oauth_client
    logger.info("Auth initialized (users=%d)", app.state.user_store.count_users())

    yield

    close_mailer = getattr(app.state.mailer, "close", None)
    if close_mailer is not None:
        close_mailer()
    app.state.user_store.close()
    logger.info("ticketgate API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="ticketgate",
    description="Authentication, sessions and role-based route access for the events platform.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Access gate
#
# Runs before routing for every request. Public and unlisted paths pass
# without a token lookup; protected paths need a session whose claims satisfy
# auth.gate.ROUTE_POLICY. evaluate() may call the store (capability flags), so
# it runs in the threadpool.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def access_gate(request: Request, call_next):
    store: UserStore = request.app.state.user_store
    decision = await run_in_threadpool(
        evaluate,
        request.url.path,
        read_session_token(request),
        None,
        store.get_capability_flags,
    )
    if decision.allowed:
        return await call_next(request)
    resp = RedirectResponse(decision.location, status_code=302)
    if decision.clear_cookies:
        clear_session_cookies(resp, request)
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Request logging middleware
#
# Registered after access_gate, so it wraps it and also logs gate redirects.
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() wraps the current stack, so the LAST class registered is
# the OUTERMOST. @app.middleware("http") registers the same way, so the two
# function middlewares above end up innermost.
# ---------------------------------------------------------------------------

# SessionMiddleware is required by authlib to store the OAuth state value
# between the authorization redirect and the callback. It shares the session
# JWT secret through auth.codec.get_secret().
app.add_middleware(SessionMiddleware, secret_key=get_secret(), same_site="lax", https_only=False)
app.add_middleware(SlowAPIMiddleware)
app.add_middleware(TrustedHostMiddleware, allowed_hosts=get_settings().allowed_host_list)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api", tags=["Auth"])

# ---------------------------------------------------------------------------
# Exception handlers
#
# Every failure leaves as {"error": {"code", "message", ...}}, the same
# envelope api/routes/auth.py uses for AuthError results.
# ---------------------------------------------------------------------------


def _envelope(status_code: int, code: str, message: str, detail: str | None = None) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail))
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """429 with Retry-After. Sign-in endpoints are the only limited routes."""
    logger.warning("Rate limit hit on %s from %s", request.url.path, request.client.host if request.client else "?")
    resp = _envelope(429, "rate_limited", "Too many attempts. Please wait and try again.", str(exc))
    resp.headers["Retry-After"] = str(int(getattr(exc, "retry_after", 60)))
    return resp


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _envelope(422, "validation_error", "Request validation failed.", str(exc.errors()))


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Pass dict details (auth dependencies raise these) through as the error object."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=exc.headers)
    return _envelope(exc.status_code, f"http_{exc.status_code}", str(exc.detail))


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return _envelope(500, "internal_error", "Something went wrong. Please try again.")


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py so it is always reachable regardless of router
# registration state. No rate limit applied.
# ---------------------------------------------------------------------------


@app.get("/api/health", tags=["Health"])
def health(request: Request) -> JSONResponse:
    """Return liveness, version and database reachability (503 when the store is down)."""
    store: UserStore = request.app.state.user_store
    db_ok = store.ping()
    body = HealthResponse(
        status="healthy" if db_ok else "degraded",
        version=VERSION,
        components={"app": "ok", "database": "ok" if db_ok else "error"},
    )
    return JSONResponse(status_code=200 if db_ok else 503, content=body.model_dump())
