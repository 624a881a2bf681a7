"""
auth/models.py -- Domain dataclasses and role constants for authentication.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; stores, flows and routes do the work.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------

ROLE_ADMIN = "admin"
ROLE_ORGANIZER = "organizer"
ROLE_USER = "user"
PRIMARY_ROLES: frozenset[str] = frozenset({ROLE_ADMIN, ROLE_ORGANIZER, ROLE_USER})

# Staff roles are event-scoped capability tags layered on top of the primary
# role. A user may hold several at once.
STAFF = "STAFF"
TEAM_MEMBERS = "TEAM_MEMBERS"
ASSOCIATES = "ASSOCIATES"
STAFF_ROLES: frozenset[str] = frozenset({STAFF, TEAM_MEMBERS, ASSOCIATES})

# Capability flags that route policy can require. They live on the user
# record, not in session claims.
CAP_VENDOR = "vendor"
CAP_RESTAURATEUR = "restaurateur"


@dataclass
class User:
    """A platform identity as stored in the credential store.

    email is always stored lower-cased; the store enforces uniqueness on it.
    password_hash is None for magic-link-only and OAuth-only accounts.

    Each one-time token is a (hash, expires_at) pair. The store writes and
    clears both halves in a single UPDATE so they never diverge.
    """

    email: str
    role: str = ROLE_USER
    id: int | None = None
    name: str | None = None
    password_hash: str | None = None
    staff_roles: list[str] = field(default_factory=list)
    is_vendor: bool = False
    is_restaurateur: bool = False
    email_verified: bool = False
    auth_provider: str | None = None  # "password", "magic_link", "google"
    google_id: str | None = None
    magic_link_token_hash: str | None = None
    magic_link_expires_at: str | None = None  # ISO 8601 UTC
    password_reset_token_hash: str | None = None
    password_reset_expires_at: str | None = None  # ISO 8601 UTC
    created_at: str | None = None
    updated_at: str | None = None
    last_login: str | None = None


@dataclass(frozen=True)
class SessionClaims:
    """The complete, immutable payload carried by a signed session token."""

    user_id: int
    email: str
    role: str
    name: str | None = None
    staff_roles: tuple[str, ...] = ()

    @classmethod
    def from_user(cls, user: User) -> SessionClaims:
        return cls(
            user_id=user.id,
            email=user.email,
            name=user.name,
            role=user.role,
            staff_roles=tuple(sorted(user.staff_roles)),
        )


@dataclass(frozen=True)
class CapabilityFlags:
    """Vendor/restaurateur flags fetched on demand by the access gate."""

    is_vendor: bool = False
    is_restaurateur: bool = False


@dataclass
class OrganizerCredits:
    """Starting ticket-credit balance granted to organizer and admin accounts."""

    organizer_id: int
    credits_total: int
    credits_used: int = 0
    first_event_free_used: bool = False
    id: int | None = None
    created_at: str | None = None

    @property
    def credits_remaining(self) -> int:
        return self.credits_total - self.credits_used


class TokenKind(str, Enum):
    """Which single-use token column pair an operation targets."""

    MAGIC_LINK = "magic_link"
    PASSWORD_RESET = "password_reset"


class ConsumeOutcome(str, Enum):
    """Result of a compare-and-clear consume against the store."""

    CONSUMED = "consumed"
    EXPIRED = "expired"
    NOT_FOUND = "not_found"
