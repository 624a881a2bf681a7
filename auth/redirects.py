"""
auth/redirects.py -- Landing pages and post-login redirect validation.

post_login_redirect() is the only function login entry points may use to pick
where a freshly authenticated user goes. Password login, registration,
magic-link acceptance and the OAuth callback all call it, so the open-redirect
rules cannot drift between flows.

Layer rule: pure functions, no I/O, no imports from api/.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from urllib.parse import urlencode

from auth.models import ASSOCIATES, ROLE_ADMIN, ROLE_ORGANIZER, ROLE_USER, STAFF, TEAM_MEMBERS

ADMIN_HOME = "/admin"
ORGANIZER_HOME = "/organizer/dashboard"
TEAM_HOME = "/team/dashboard"
ASSOCIATE_HOME = "/associate/dashboard"
STAFF_HOME = "/staff/dashboard"
USER_HOME = "/user/dashboard"
LOGIN_PATH = "/login"

# Checked in order; the first staff role the user holds wins.
_STAFF_PRIORITY: tuple[tuple[str, str], ...] = (
    (TEAM_MEMBERS, TEAM_HOME),
    (ASSOCIATES, ASSOCIATE_HOME),
    (STAFF, STAFF_HOME),
)

_AUTH_PAGES = ("/login", "/register")


@dataclass(frozen=True)
class Dashboard:
    role: str
    path: str
    label: str


def default_dashboard(role: str | None, staff_roles: Iterable[str] | None = None) -> str:
    """Return the landing page for a (role, staff_roles) combination.

    Total over all inputs: unknown roles and empty staff sets fall through to
    the user dashboard.
    """
    if role == ROLE_ADMIN:
        return ADMIN_HOME
    if role == ROLE_ORGANIZER:
        return ORGANIZER_HOME
    held = set(staff_roles or ())
    for staff_role, home in _STAFF_PRIORITY:
        if staff_role in held:
            return home
    return USER_HOME


def is_valid_redirect_path(path: str | None) -> bool:
    """Return True only for same-site, non-auth-page relative paths.

    Rejects:
      - anything not starting with "/" (absolute URLs, "javascript:", "")
      - "//host" protocol-relative URLs
      - any backslash, whitespace or ASCII control character: browsers read
        "\\" as "/" and drop tab/CR/LF, so "/\\evil.com" and "/\\t/evil.com"
        both become "//evil.com"
      - any value containing "://"
      - the login and register pages, including anything under them
    """
    if not path or not path.startswith("/"):
        return False
    if path.startswith("//"):
        return False
    if any(ch == "\\" or ch.isspace() or ord(ch) < 0x20 or ord(ch) == 0x7F for ch in path):
        return False
    if "://" in path:
        return False
    if path.startswith(_AUTH_PAGES):
        return False
    return True


def post_login_redirect(role: str | None, staff_roles: Iterable[str] | None, intended: str | None = None) -> str:
    """Return intended when it is a valid redirect target, else the role default."""
    if intended and is_valid_redirect_path(intended):
        return intended
    return default_dashboard(role, staff_roles)


def redirect_from_query(params: Mapping[str, str]) -> str | None:
    """Extract and validate the redirect= parameter, or None."""
    value = params.get("redirect")
    if value and is_valid_redirect_path(value):
        return value
    return None


def build_login_url(current_path: str | None) -> str:
    """Return /login, carrying current_path as redirect= when it is worth returning to."""
    if current_path and current_path != "/" and is_valid_redirect_path(current_path):
        return f"{LOGIN_PATH}?{urlencode({'redirect': current_path})}"
    return LOGIN_PATH


def accessible_dashboards(role: str | None, staff_roles: Iterable[str] | None = None) -> list[Dashboard]:
    """List every dashboard a (possibly multi-role) user may open, most privileged first."""
    if role == ROLE_ADMIN:
        return [
            Dashboard(ROLE_ADMIN, ADMIN_HOME, "Administrator"),
            Dashboard(ROLE_ORGANIZER, ORGANIZER_HOME, "Event Organizer"),
            Dashboard(STAFF, STAFF_HOME, "Event Staff"),
            Dashboard(TEAM_MEMBERS, TEAM_HOME, "Team Member"),
            Dashboard(ASSOCIATES, ASSOCIATE_HOME, "Associate"),
            Dashboard(ROLE_USER, USER_HOME, "Customer"),
        ]
    dashboards: list[Dashboard] = []
    if role == ROLE_ORGANIZER:
        dashboards.append(Dashboard(ROLE_ORGANIZER, ORGANIZER_HOME, "Event Organizer"))
    held = set(staff_roles or ())
    if TEAM_MEMBERS in held:
        dashboards.append(Dashboard(TEAM_MEMBERS, TEAM_HOME, "Team Member"))
    if ASSOCIATES in held:
        dashboards.append(Dashboard(ASSOCIATES, ASSOCIATE_HOME, "Associate"))
    if STAFF in held:
        dashboards.append(Dashboard(STAFF, STAFF_HOME, "Event Staff"))
    dashboards.append(Dashboard(ROLE_USER, USER_HOME, "Customer"))
    return dashboards


def should_redirect_from_page(current_path: str, authenticated: bool, landing: str = USER_HOME) -> str | None:
    """Return where to send an authenticated user who opened a login/register page, else None."""
    if not authenticated:
        return None
    for page in _AUTH_PAGES:
        if current_path == page or current_path.startswith(page + "/"):
            return landing
    return None
