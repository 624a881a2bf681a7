"""
auth/gate.py -- Request-time access control.

evaluate() classifies a path, verifies the session token, and authorizes the
caller against ROUTE_POLICY. It returns a GateDecision; the HTTP middleware in
api/main.py turns that into either "call the handler" or a redirect.

States and outcomes:

  PUBLIC                      path is public or not in the policy table -> forward
  UNAUTHENTICATED             protected path, no token        -> /login?redirect=<path>
  INVALID_TOKEN               protected path, token fails     -> clear cookies, /login?redirect=<path>
  AUTHORIZED                  token valid, role satisfies     -> forward
  UNAUTHORIZED                token valid, role insufficient  -> caller's own dashboard

An under-privileged but authenticated caller is never sent to /login: they
would log in again and land in the same place. They go to their own landing
page instead.

Unmatched paths are public. ROUTE_POLICY is the exhaustive list of protected
areas; anything else (marketing pages, the auth API, webhooks) passes.

evaluate() keeps no state between calls. Vendor and restaurateur flags are
not session claims, so a vendor/restaurateur requirement that the role alone
does not satisfy is resolved through the injected capability lookup. A lookup
that raises fails closed as UNAUTHENTICATED; one that finds no user means the
account is gone, which is handled like an invalid token.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from urllib.parse import urlencode

from auth.models import (
    ASSOCIATES,
    CAP_RESTAURATEUR,
    CAP_VENDOR,
    ROLE_ADMIN,
    ROLE_ORGANIZER,
    STAFF,
    TEAM_MEMBERS,
    CapabilityFlags,
    SessionClaims,
)
from auth.redirects import LOGIN_PATH, default_dashboard
from auth.tokens import decode_session_token

logger = logging.getLogger("ticketgate.auth.gate")

# Marker requirement: any verified session passes.
ANY_AUTHENTICATED: frozenset[str] = frozenset({"*"})


@dataclass(frozen=True)
class RouteRule:
    prefix: str
    required: frozenset[str]


# First match wins. Longer prefixes that share a first segment with a shorter
# one must come first.
ROUTE_POLICY: tuple[RouteRule, ...] = (
    RouteRule("/admin", frozenset({ROLE_ADMIN})),
    RouteRule("/organizer", frozenset({ROLE_ORGANIZER})),
    RouteRule("/staff", frozenset({STAFF})),
    RouteRule("/team-member", frozenset({TEAM_MEMBERS})),
    RouteRule("/team", frozenset({TEAM_MEMBERS})),
    RouteRule("/associate", frozenset({ASSOCIATES})),
    RouteRule("/vendor/dashboard", frozenset({CAP_VENDOR})),
    RouteRule("/restaurateur/dashboard", frozenset({CAP_RESTAURATEUR})),
    RouteRule("/user", ANY_AUTHENTICATED),
)

# "/" is public only as an exact match; every other entry is a prefix.
PUBLIC_EXACT: frozenset[str] = frozenset({"/"})
PUBLIC_PREFIXES: tuple[str, ...] = (
    "/events",
    "/marketplace",
    "/restaurants",
    "/classes",
    "/services",
    "/magazine",
    "/login",
    "/register",
    "/forgot-password",
    "/reset-password",
    "/api/auth",
    "/api/webhooks",
    "/api/public",
    "/api/health",
    "/vendor/apply",
    "/restaurateur/apply",
    "/_next",
    "/static",
    "/favicon.ico",
    "/manifest.json",
    "/icons",
    "/logos",
)


class GateState(str, Enum):
    PUBLIC = "public"
    UNAUTHENTICATED = "unauthenticated"
    INVALID_TOKEN = "invalid_token"
    AUTHORIZED = "authorized"
    UNAUTHORIZED = "unauthorized"


@dataclass(frozen=True)
class GateDecision:
    state: GateState
    location: str | None = None  # redirect target; None means forward
    clear_cookies: bool = False
    claims: SessionClaims | None = None

    @property
    def allowed(self) -> bool:
        return self.location is None


CapabilityLookup = Callable[[int], "CapabilityFlags | None"]


def _matches(path: str, prefix: str) -> bool:
    """Segment-aware prefix match: /team matches /team and /team/x, not /teams."""
    return path == prefix or path.startswith(prefix + "/")


def is_public_path(path: str) -> bool:
    return path in PUBLIC_EXACT or any(_matches(path, p) for p in PUBLIC_PREFIXES)


def find_rule(path: str, policy: tuple[RouteRule, ...] = ROUTE_POLICY) -> RouteRule | None:
    for rule in policy:
        if _matches(path, rule.prefix):
            return rule
    return None


def login_redirect(path: str) -> str:
    return f"{LOGIN_PATH}?{urlencode({'redirect': path})}"


def is_authorized(
    claims: SessionClaims,
    required: frozenset[str],
    capabilities: Callable[[], CapabilityFlags | None] | None = None,
) -> bool:
    """Decide whether claims satisfy required.

    Order: admin, any-authenticated marker, primary role, staff roles, then
    vendor/restaurateur flags. capabilities is only called when the flags are
    the last thing that could grant access.
    """
    if claims.role == ROLE_ADMIN:
        return True
    if required == ANY_AUTHENTICATED:
        return True
    if claims.role in required:
        return True
    if required.intersection(claims.staff_roles):
        return True
    if (CAP_VENDOR in required or CAP_RESTAURATEUR in required) and capabilities is not None:
        flags = capabilities()
        if flags is None:
            return False
        if CAP_VENDOR in required and flags.is_vendor:
            return True
        if CAP_RESTAURATEUR in required and flags.is_restaurateur:
            return True
    return False


class _LookupFailed(Exception):
    pass


class _UserGone(Exception):
    pass


def evaluate(
    path: str,
    token: str | None,
    now: datetime | None = None,
    capability_lookup: CapabilityLookup | None = None,
    policy: tuple[RouteRule, ...] = ROUTE_POLICY,
) -> GateDecision:
    """Run one gate evaluation for a request path and its session token."""
    if is_public_path(path):
        return GateDecision(GateState.PUBLIC)

    rule = find_rule(path, policy)
    if rule is None:
        return GateDecision(GateState.PUBLIC)

    if not token:
        return GateDecision(GateState.UNAUTHENTICATED, location=login_redirect(path))

    claims = decode_session_token(token, now=now)
    if claims is None:
        return GateDecision(GateState.INVALID_TOKEN, location=login_redirect(path), clear_cookies=True)

    def capabilities() -> CapabilityFlags | None:
        if capability_lookup is None:
            return None
        try:
            flags = capability_lookup(claims.user_id)
        except Exception as exc:
            logger.error("Capability lookup failed for user_id=%d: %s", claims.user_id, exc)
            raise _LookupFailed from exc
        if flags is None:
            raise _UserGone
        return flags

    try:
        authorized = is_authorized(claims, rule.required, capabilities)
    except _LookupFailed:
        return GateDecision(GateState.UNAUTHENTICATED, location=login_redirect(path))
    except _UserGone:
        return GateDecision(GateState.INVALID_TOKEN, location=login_redirect(path), clear_cookies=True)

    if authorized:
        return GateDecision(GateState.AUTHORIZED, claims=claims)
    landing = default_dashboard(claims.role, claims.staff_roles)
    logger.info("Denied %s for user_id=%d (role=%s); sent to %s", path, claims.user_id, claims.role, landing)
    return GateDecision(GateState.UNAUTHORIZED, location=landing, claims=claims)
