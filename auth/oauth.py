"""
auth/oauth.py -- Google sign-in through authlib.

Google is registered on the shared OAuth registry only when both
GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET are set. get_enabled_providers()
is what GET /api/auth/providers returns, so the login page never offers a
button that cannot work.

The OAuth state round-trip lives in the Starlette session cookie, signed with
auth.codec.get_secret() like everything else.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging

from authlib.integrations.starlette_client import OAuth

from core.config import get_settings

logger = logging.getLogger("ticketgate.auth.oauth")

GOOGLE_DISCOVERY_URL = "https://accounts.google.com/.well-known/openid-configuration"

_PROVIDER_LABELS = {"google": "Google"}

oauth = OAuth()


def _google_configured() -> bool:
    settings = get_settings()
    return bool(settings.google_client_id and settings.google_client_secret)


if _google_configured():
    oauth.register(
        name="google",
        client_id=get_settings().google_client_id,
        client_secret=get_settings().google_client_secret,
        server_metadata_url=GOOGLE_DISCOVERY_URL,
        client_kwargs={"scope": "openid email profile"},
    )
    logger.info("Google sign-in enabled")


def get_enabled_providers() -> list[dict]:
    return [{"name": "google", "label": _PROVIDER_LABELS["google"]}] if _google_configured() else []


def get_oauth_user_info(provider: str, token: dict) -> tuple[str, str, str | None]:
    """Pull (email, subject, name) out of an authorize_access_token() result.

    Only an email Google marks as verified is accepted; a missing
    email_verified claim counts as unverified. Anything unusable raises
    ValueError and the callback sends the browser to /login?error=oauth_failed.
    """
    if provider not in _PROVIDER_LABELS:
        raise ValueError(f"Unsupported OAuth provider: {provider!r}")

    claims = token.get("userinfo") or {}
    if not claims:
        raise ValueError(f"{provider}: token response carried no userinfo")
    if claims.get("email_verified") is not True:
        raise ValueError(f"{provider}: email address is not verified")

    email, subject = claims.get("email"), claims.get("sub")
    if not (email and subject):
        raise ValueError(f"{provider}: userinfo lacks email or sub")
    return email, str(subject), claims.get("name")
