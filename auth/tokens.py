"""
auth/tokens.py -- Session JWTs, password hashing, and one-time token utilities.

Security design decisions:
  JWT: python-jose with HS256. Tokens carry SessionClaims plus iat/exp and are
       signed with the key from auth.codec.encode_secret(). The lifetime is
       fixed at Settings.session_max_age_seconds (30 days). Verification
       returns None on any failure -- the gate turns that into a login bounce,
       API dependencies into a 401.

       Expiry is checked explicitly against a caller-supplied clock rather
       than by python-jose, so the gate and tests evaluate "now" the same way.
       A token is valid while now <= exp and invalid strictly after.

  Passwords: bcrypt directly (no passlib wrapper). The _DUMMY_HASH constant
       enables timing equalization in authenticate_user() so response time
       does not reveal whether an email is registered.

  One-time tokens (magic link, password reset): secrets.token_urlsafe(32)
       gives 256 bits of entropy. Only SHA-256(raw) is persisted; a stolen DB
       row cannot be replayed as a link. A plain digest (not bcrypt) is right
       here because the input is already high-entropy and lookup is by hash.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from auth.codec import encode_secret
from auth.models import PRIMARY_ROLES, SessionClaims
from core.config import get_settings

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("ticketgate.auth")

_ALGORITHM = "HS256"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


# bcrypt rejects (5.x) or silently truncates (4.x) input past this many bytes.
MAX_PASSWORD_BYTES = 72


def password_length_error(plain: str | None, min_length: int) -> str | None:
    """Return a user-facing message if plain cannot be used as a password, else None.

    The upper bound is in UTF-8 bytes, not characters: 40 accented letters
    are 80 bytes.
    """
    plain = plain or ""
    if len(plain) < min_length:
        return f"Password must be at least {min_length} characters."
    if len(plain.encode("utf-8")) > MAX_PASSWORD_BYTES:
        return (
            f"Password must be at most {MAX_PASSWORD_BYTES} bytes. "
            "Accented and non-Latin characters take more than one byte each."
        )
    return None


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Callers validate with password_length_error() first; bcrypt raises
    ValueError for input over MAX_PASSWORD_BYTES.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except Exception:
        return False


# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("ticketgate_timing_dummy")


def authenticate_user(store: UserStore, email: str, password: str) -> User | None:
    """Authenticate an email/password login with timing equalization.

    Always runs bcrypt whether or not the user exists:
    - Unknown email or password-less account: bcrypt against _DUMMY_HASH
    - Wrong password: bcrypt against the real hash

    Returns the User on success, None on any failure.
    """
    user = store.get_by_email(email)
    if user is None or user.password_hash is None:
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.password_hash):
        return None
    return user


# ---------------------------------------------------------------------------
# Session JWT encode / decode
# ---------------------------------------------------------------------------


def create_session_token(claims: SessionClaims, issued_at: datetime | None = None) -> str:
    """Sign SessionClaims into a compact JWT with a fixed lifetime.

    Args:
        claims:    Identity to embed. Never contains secrets or hashes.
        issued_at: Override for the iat claim (tests, token minting tools).
                   Defaults to now. exp is always iat + session lifetime.
    """
    iat = issued_at or datetime.now(timezone.utc)
    exp = iat + timedelta(seconds=get_settings().session_max_age_seconds)
    payload = {
        "sub": str(claims.user_id),
        "user_id": claims.user_id,
        "email": claims.email,
        "name": claims.name,
        "role": claims.role,
        "staff_roles": list(claims.staff_roles),
        "iat": int(iat.timestamp()),
        "exp": int(exp.timestamp()),
    }
    return jwt.encode(payload, encode_secret(), algorithm=_ALGORITHM)


def decode_session_token(token: str, now: datetime | None = None) -> SessionClaims | None:
    """Verify a session JWT. Returns SessionClaims, or None on any failure.

    Returning None (rather than raising) keeps the caller fail-closed: a bad
    signature, a malformed payload, a missing or unparseable exp, and an
    expired token all look the same -- unauthenticated.
    """
    if not token:
        return None
    try:
        payload = jwt.decode(
            token,
            encode_secret(),
            algorithms=[_ALGORITHM],
            options={"verify_exp": False},
        )
    except JWTError:
        return None

    exp = payload.get("exp")
    if not isinstance(exp, int):
        return None
    current = now or datetime.now(timezone.utc)
    if current.timestamp() > exp:
        return None

    user_id = payload.get("user_id")
    role = payload.get("role")
    email = payload.get("email")
    staff_roles = payload.get("staff_roles") or []
    if not isinstance(user_id, int) or role not in PRIMARY_ROLES or not isinstance(email, str):
        return None
    if not isinstance(staff_roles, list) or not all(isinstance(r, str) for r in staff_roles):
        return None
    return SessionClaims(
        user_id=user_id,
        email=email,
        name=payload.get("name"),
        role=role,
        staff_roles=tuple(staff_roles),
    )


# ---------------------------------------------------------------------------
# One-time tokens (magic link, password reset)
# ---------------------------------------------------------------------------


def generate_one_time_token() -> str:
    """Return a URL-safe random token with 256 bits of entropy."""
    return secrets.token_urlsafe(32)


def hash_one_time_token(raw_token: str) -> str:
    """Return the SHA-256 hex digest stored in place of a raw one-time token."""
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()
