"""
auth/codec.py -- The one place the process obtains its signing secret.

Resolution order:
  1. JWT_SECRET
  2. AUTH_SECRET
  3. A fixed development fallback

Every signer and verifier (session JWTs in auth/tokens.py, the OAuth state
SessionMiddleware in api/main.py) must call get_secret()/encode_secret().
A second secret source would let tokens signed by one component fail
verification in another, or worse, verify under a weaker key.

The fallback is a constant, not a random value, so sessions survive a dev
server reload. Outside DEBUG mode it is logged at ERROR level on first use,
as is any secret that looks weak.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from functools import lru_cache

from core.config import get_settings

logger = logging.getLogger("ticketgate.auth.codec")

DEV_FALLBACK_SECRET = "ticketgate-development-secret-do-not-use-in-production"

_MIN_SECRET_LENGTH = 32
_PLACEHOLDER_SECRETS = frozenset(
    {
        "secret",
        "changeme",
        "change-me",
        "your-secret-key",
        "your-jwt-secret",
        "development",
        "test",
    }
)


def is_weak_secret(secret: str) -> bool:
    """Return True for secrets too short or too well-known to sign sessions."""
    return len(secret) < _MIN_SECRET_LENGTH or secret.strip().lower() in _PLACEHOLDER_SECRETS


@lru_cache
def get_secret() -> str:
    """Resolve the signing secret once per process.

    Cached so the warning fires once and every caller sees the same value.
    Tests that change JWT_SECRET/AUTH_SECRET must call get_secret.cache_clear()
    alongside get_settings.cache_clear().
    """
    settings = get_settings()
    if settings.jwt_secret:
        secret, source = settings.jwt_secret, "JWT_SECRET"
    elif settings.auth_secret:
        secret, source = settings.auth_secret, "AUTH_SECRET"
    else:
        secret, source = DEV_FALLBACK_SECRET, "development fallback"

    if not settings.debug:
        if secret == DEV_FALLBACK_SECRET:
            logger.error(
                "SECURITY: no JWT_SECRET or AUTH_SECRET configured; signing sessions with the "
                "public development fallback. Anyone can forge sessions. Set JWT_SECRET now."
            )
        elif is_weak_secret(secret):
            logger.error(
                "SECURITY: %s is weak (under %d chars or a placeholder value). Rotate it.",
                source,
                _MIN_SECRET_LENGTH,
            )
    elif secret == DEV_FALLBACK_SECRET:
        logger.warning("Using the development fallback signing secret (DEBUG=true).")
    return secret


def encode_secret() -> bytes:
    """Return the key material HS256 signing and verification operate on."""
    return get_secret().encode("utf-8")
