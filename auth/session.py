"""
auth/session.py -- Session cookie issue, read and clear.

Cookie attributes:
  httponly=True: JS cannot read the cookie (XSS mitigation).
  samesite="lax": sent on top-level navigations, not on cross-site POST.
  secure: on everywhere except localhost, where dev servers speak plain HTTP.
  path="/": one session for every route.
  domain: unset on localhost (host-only cookie); otherwise the shared root
      domain, so a login on events.example.com is valid on shop.example.com.

Logout clears both the current cookie name and the legacy "auth-token" name
used by the previous login scheme. A browser holding either one is logged out.

Layer rule: no imports from api/. Starlette Request/Response types are used
only for annotations; any object with .url.hostname and set_cookie/
delete_cookie works.
"""

from __future__ import annotations

import ipaddress
import logging
from typing import TYPE_CHECKING

from auth.models import SessionClaims
from auth.tokens import create_session_token
from core.config import get_settings

if TYPE_CHECKING:
    from starlette.requests import Request
    from starlette.responses import Response

    from auth.models import User

logger = logging.getLogger("ticketgate.auth.session")

SESSION_COOKIE = "session_token"
LEGACY_SESSION_COOKIE = "auth-token"
_ALL_SESSION_COOKIES = (SESSION_COOKIE, LEGACY_SESSION_COOKIE)

_LOCAL_HOSTNAMES = frozenset({"localhost", "127.0.0.1", "::1", "0.0.0.0"})


def _request_host(request: Request) -> str:
    return (request.url.hostname or "").lower()


def is_localhost(host: str) -> bool:
    return host in _LOCAL_HOSTNAMES or host.endswith(".localhost")


def _is_ip_address(host: str) -> bool:
    try:
        ipaddress.ip_address(host)
    except ValueError:
        return False
    return True


# Second-level labels that belong to the public suffix under a two-letter
# country code (example.co.uk, shop.example.com.au). Other multi-label
# suffixes are not recognised; deployments on them must set COOKIE_DOMAIN.
_CC_SECOND_LEVEL = frozenset({"ac", "co", "com", "edu", "gov", "ne", "net", "or", "org"})


def cookie_domain_for(host: str) -> str | None:
    """Return the Domain attribute for a cookie set on a response to host.

    None means a host-only cookie: localhost, bare IPs, single-label hosts
    and hosts that are themselves a public suffix ("co.uk"). An explicit
    COOKIE_DOMAIN wins over the derived root domain, which is the last two
    labels of the host (events.example.com -> .example.com), or three under
    a country-code second level (events.example.co.uk -> .example.co.uk).
    """
    host = host.lower()
    if not host or is_localhost(host) or _is_ip_address(host):
        return None
    configured = get_settings().cookie_domain
    if configured:
        return configured
    labels = host.split(".")
    if len(labels) < 2:
        return None
    keep = 2
    if len(labels[-1]) == 2 and labels[-2] in _CC_SECOND_LEVEL:
        if len(labels) < 3:
            return None
        keep = 3
    return "." + ".".join(labels[-keep:])


def set_session_cookie(response: Response, token: str, request: Request, max_age: int | None = None) -> None:
    """Write the session JWT as an httpOnly cookie on the response.

    Args:
        response: Starlette response under construction.
        token:    Encoded session JWT.
        request:  The request being answered; its host picks domain/secure.
        max_age:  Cookie lifetime in seconds. Defaults to the session
                  lifetime so cookie and token expire together.
    """
    host = _request_host(request)
    response.set_cookie(
        SESSION_COOKIE,
        value=token,
        max_age=max_age if max_age is not None else get_settings().session_max_age_seconds,
        path="/",
        domain=cookie_domain_for(host),
        secure=not is_localhost(host),
        httponly=True,
        samesite="lax",
    )


def clear_session_cookies(response: Response, request: Request) -> None:
    """Expire the current and legacy session cookies (max-age 0)."""
    host = _request_host(request)
    domain = cookie_domain_for(host)
    for name in _ALL_SESSION_COOKIES:
        response.delete_cookie(
            name,
            path="/",
            domain=domain,
            secure=not is_localhost(host),
            httponly=True,
            samesite="lax",
        )


def create_and_set_session(response: Response, user: User, request: Request) -> str:
    """Sign a session for user, set it on response, and return the raw token."""
    token = create_session_token(SessionClaims.from_user(user))
    set_session_cookie(response, token, request)
    return token


def read_session_token(request: Request) -> str | None:
    """Return the session token from cookie, legacy cookie, or Bearer header."""
    token = request.cookies.get(SESSION_COOKIE) or request.cookies.get(LEGACY_SESSION_COOKIE)
    if token:
        return token
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None
