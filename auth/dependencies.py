"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

The session token is read in priority order:
  1. "session_token" cookie -- set by every login flow.
  2. "auth-token" cookie -- legacy name, still honoured until it expires.
  3. Authorization: Bearer <token> header -- API clients.

All three converge on SessionClaims after signature and expiry checks. No
store lookup happens here: sessions are stateless.

try_get_current_claims() is the soft variant (returns None on failure).
get_current_claims() wraps it and raises HTTP 401 if unauthenticated.
require_role() builds a dependency that also raises HTTP 403 when the caller
holds none of the given roles (admin always passes).

Layer rule: auth/dependencies.py may import from fastapi (for HTTPException/
Request) because this module is part of the FastAPI dependency injection
system. It does not import from api/.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import HTTPException, Request

from auth.gate import is_authorized
from auth.models import SessionClaims
from auth.session import read_session_token
from auth.tokens import decode_session_token


def try_get_current_claims(request: Request) -> SessionClaims | None:
    """Return the verified session claims for the request, or None. Never raises."""
    token = read_session_token(request)
    if not token:
        return None
    return decode_session_token(token)


def get_current_claims(request: Request) -> SessionClaims:
    """Require authentication. Raises HTTP 401 if the request carries no valid session.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(claims: SessionClaims = Depends(get_current_claims)): ...
    """
    claims = try_get_current_claims(request)
    if claims is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return claims


def require_role(*roles: str) -> Callable[[Request], SessionClaims]:
    """Build a dependency requiring one of roles (primary or staff role).

        @router.get("/organizer-only")
        def route(claims: SessionClaims = Depends(require_role("organizer"))): ...
    """
    required = frozenset(roles)

    def dependency(request: Request) -> SessionClaims:
        claims = get_current_claims(request)
        if not is_authorized(claims, required):
            raise HTTPException(
                status_code=403,
                detail={"code": "forbidden", "message": "You do not have access to this resource."},
            )
        return claims

    return dependency
