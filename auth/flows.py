"""
auth/flows.py -- Credential verification flows.

CredentialVerifier owns every way a caller proves who they are:

  password_login()           email + password -> User
  register()                 new email + password -> User
  request_magic_link()       email -> emailed one-time sign-in link
  verify_magic_link()        raw link token -> User
  request_password_reset()   email -> emailed one-time reset link
  reset_password()           raw reset token + new password -> User
  oauth_login()              verified provider identity -> User

Every method returns Ok(value) or Err(AuthError); none raise for expected
failures. Issuing the session for a returned User is the caller's job
(auth.session.create_and_set_session), so these flows are usable outside
an HTTP request.

The one-time token pattern is the same for both link flows:
  1. generate a 256-bit random token
  2. persist only SHA-256(token) and an expiry
  3. consume with compare-and-clear (UserStore.consume_token); success and
     expiry detection both clear the stored pair, so a token never works twice

The verifier is built once at startup (api/main.py lifespan) with the store,
mailer and settings injected. The clock is injectable for expiry tests.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from urllib.parse import urlencode

from sqlalchemy.exc import IntegrityError

from auth.mail import MailConfigError, Mailer, MailError, magic_link_message, password_reset_message
from auth.models import ROLE_ADMIN, ROLE_ORGANIZER, ROLE_USER, ConsumeOutcome, TokenKind, User
from auth.redirects import is_valid_redirect_path
from auth.results import (
    AuthError,
    AuthErrorCode,
    Err,
    Ok,
    Result,
    expired_token,
    invalid_token,
    validation_error,
)
from auth.store import UserStore, normalize_email
from auth.tokens import (
    authenticate_user,
    generate_one_time_token,
    hash_one_time_token,
    hash_password,
    password_length_error,
)
from core.config import Settings

logger = logging.getLogger("ticketgate.auth.flows")

# Deliberately loose: one "@", no whitespace, a dot in the domain. Real
# validation is the emailed link itself.
_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_MAX_EMAIL_LENGTH = 320

MAGIC_LINK_PATH = "/api/auth/verify-magic-link"
RESET_PASSWORD_PATH = "/reset-password"

_MAGIC_LINK_SENT = "Check your email for a sign-in link."
_RESET_SENT = "If an account exists for that email, a password reset link has been sent."


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_valid_email(email: str) -> bool:
    return len(email) <= _MAX_EMAIL_LENGTH and bool(_EMAIL_RE.match(email))


def _misconfigured(message: str) -> Err:
    return Err(AuthError(AuthErrorCode.MISCONFIGURED, message))


def _delivery_failed() -> Err:
    return Err(AuthError(AuthErrorCode.DELIVERY_FAILED, "We could not send the email. Please try again."))


class CredentialVerifier:
    """Password, magic-link, password-reset and OAuth sign-in flows."""

    def __init__(
        self,
        store: UserStore,
        mailer: Mailer,
        settings: Settings,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.mailer = mailer
        self.settings = settings
        self.clock = clock

    # ------------------------------------------------------------------
    # Password
    # ------------------------------------------------------------------

    def password_login(self, email: str, password: str) -> Result[User]:
        """Check email + password. Unknown email and wrong password fail identically."""
        normalized = normalize_email(email)
        if not normalized or not password:
            return validation_error("Email and password are required.")
        user = authenticate_user(self.store, normalized, password)
        if user is None:
            return Err(AuthError(AuthErrorCode.BAD_CREDENTIALS, "Invalid email or password."))
        self.store.update_last_login(user.id)
        return Ok(user)

    def register(self, email: str, password: str, name: str | None = None) -> Result[User]:
        """Create a password account with the user role (admin for configured admin emails)."""
        normalized = normalize_email(email)
        if not is_valid_email(normalized):
            return validation_error("Please enter a valid email address.", "email")
        password_error = password_length_error(password, self.settings.password_min_length)
        if password_error:
            return validation_error(password_error, "password")
        if name is not None and len(name.strip()) < 2:
            return validation_error("Name must be at least 2 characters.", "name")

        role = ROLE_ADMIN if normalized in self.settings.admin_email_set else ROLE_USER
        new_user = User(
            email=normalized,
            name=name.strip() if name else None,
            role=role,
            password_hash=hash_password(password),
            auth_provider="password",
        )
        try:
            user_id = self.store.create_user(new_user)
        except IntegrityError:
            return Err(AuthError(AuthErrorCode.CONFLICT, "An account with this email already exists.", "email"))
        if role == ROLE_ADMIN:
            logger.warning("Admin account self-registered from ADMIN_EMAILS list (user_id=%d)", user_id)
            self._grant_starting_credits(user_id)
        self.store.update_last_login(user_id)
        return Ok(self.store.get_by_id(user_id))

    # ------------------------------------------------------------------
    # Magic link
    # ------------------------------------------------------------------

    def request_magic_link(self, email: str, base_url: str, callback_url: str | None = None) -> Result[str]:
        """Create-if-absent the account for email and send it a one-time sign-in link.

        callback_url is carried through the link and honoured after
        verification only if it passes the redirect validator; an invalid one
        is dropped here rather than rejected.
        """
        normalized = normalize_email(email)
        if not normalized or not is_valid_email(normalized):
            return validation_error("Please enter a valid email address.", "email")
        if not self.mailer.is_configured():
            logger.error("Magic link requested but no mail sender is configured")
            return _misconfigured("Email sign-in is not available right now.")

        raw = generate_one_time_token()
        expires_at = self.clock() + timedelta(minutes=self.settings.magic_link_ttl_minutes)
        user, created = self.store.upsert_magic_link_token(normalized, hash_one_time_token(raw), expires_at)
        if created:
            logger.info("Account created from magic-link request (user_id=%d)", user.id)

        params = {"token": raw}
        if callback_url and is_valid_redirect_path(callback_url):
            params["callbackUrl"] = callback_url
        url = f"{base_url.rstrip('/')}{MAGIC_LINK_PATH}?{urlencode(params)}"
        try:
            self.mailer.send(magic_link_message(normalized, url, self.settings.magic_link_ttl_minutes))
        except MailConfigError:
            return _misconfigured("Email sign-in is not available right now.")
        except MailError:
            return _delivery_failed()
        return Ok(_MAGIC_LINK_SENT)

    def verify_magic_link(self, raw_token: str) -> Result[User]:
        """Redeem a magic-link token. Marks the email verified on success."""
        if not raw_token:
            return invalid_token()
        outcome, user = self.store.consume_token(
            TokenKind.MAGIC_LINK,
            hash_one_time_token(raw_token),
            self.clock(),
            email_verified=True,
        )
        if outcome is ConsumeOutcome.NOT_FOUND:
            return invalid_token()
        if outcome is ConsumeOutcome.EXPIRED:
            logger.info("Expired magic link presented (user_id=%d); token cleared", user.id)
            return expired_token()
        if user.role in (ROLE_ORGANIZER, ROLE_ADMIN):
            self._grant_starting_credits(user.id)
        self.store.update_last_login(user.id)
        return Ok(user)

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def request_password_reset(self, email: str, base_url: str) -> Result[str]:
        """Email a reset link if the account exists. The Ok message is the same either way.

        Misconfiguration is checked before the lookup so a missing mail
        sender fails every request alike instead of only those for real
        accounts.
        """
        normalized = normalize_email(email)
        if not normalized or not is_valid_email(normalized):
            return validation_error("Please enter a valid email address.", "email")
        if not self.mailer.is_configured():
            logger.error("Password reset requested but no mail sender is configured")
            return _misconfigured("Password reset is not available right now.")

        user = self.store.get_by_email(normalized)
        if user is None:
            return Ok(_RESET_SENT)

        raw = generate_one_time_token()
        expires_at = self.clock() + timedelta(minutes=self.settings.password_reset_ttl_minutes)
        self.store.store_token(user.id, TokenKind.PASSWORD_RESET, hash_one_time_token(raw), expires_at)
        url = f"{base_url.rstrip('/')}{RESET_PASSWORD_PATH}?{urlencode({'token': raw})}"
        try:
            self.mailer.send(password_reset_message(normalized, url, self.settings.password_reset_ttl_minutes))
        except MailConfigError:
            return _misconfigured("Password reset is not available right now.")
        except MailError:
            return _delivery_failed()
        return Ok(_RESET_SENT)

    def reset_password(self, raw_token: str, new_password: str) -> Result[User]:
        """Redeem a reset token and replace the password.

        The password is validated before the token is touched, so a password
        of the wrong length does not burn a valid link.
        """
        password_error = password_length_error(new_password, self.settings.password_min_length)
        if password_error:
            return validation_error(password_error, "newPassword")
        if not raw_token:
            return invalid_token("This reset link is invalid or has already been used.")
        outcome, user = self.store.consume_token(
            TokenKind.PASSWORD_RESET,
            hash_one_time_token(raw_token),
            self.clock(),
            password_hash=hash_password(new_password),
            email_verified=True,
        )
        if outcome is ConsumeOutcome.NOT_FOUND:
            return invalid_token("This reset link is invalid or has already been used.")
        if outcome is ConsumeOutcome.EXPIRED:
            logger.info("Expired reset token presented (user_id=%d); token cleared", user.id)
            return expired_token("This reset link has expired. Please request a new one.")
        logger.info("Password reset completed (user_id=%d)", user.id)
        return Ok(user)

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    def oauth_login(self, provider: str, email: str, subject: str, name: str | None = None) -> Result[User]:
        """Resolve a provider-verified identity to an account, creating one if needed.

        Lookup order: linked subject, then email (link the subject now), then
        create a user-role account. The provider has already confirmed the
        email, so new and newly linked accounts are marked verified.
        """
        if provider != "google":
            return validation_error(f"Unsupported OAuth provider: {provider}", "provider")
        normalized = normalize_email(email)
        if not is_valid_email(normalized) or not subject:
            return validation_error("The provider did not return a usable identity.")

        user = self.store.get_by_google_id(subject)
        if user is None:
            user = self.store.get_by_email(normalized)
            if user is not None:
                if user.google_id and user.google_id != subject:
                    logger.warning("OAuth subject mismatch for user_id=%d; refusing to relink", user.id)
                    return Err(AuthError(AuthErrorCode.CONFLICT, "This email is linked to a different account."))
                self.store.link_google(user.id, subject)
            else:
                try:
                    user_id = self.store.create_user(
                        User(
                            email=normalized,
                            name=name,
                            role=ROLE_USER,
                            email_verified=True,
                            auth_provider="google",
                            google_id=subject,
                        )
                    )
                except IntegrityError:
                    return Err(AuthError(AuthErrorCode.CONFLICT, "An account with this email already exists."))
                user = self.store.get_by_id(user_id)
                logger.info("Account created from %s sign-in (user_id=%d)", provider, user_id)
            user = self.store.get_by_id(user.id)
        self.store.update_last_login(user.id)
        return Ok(user)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _grant_starting_credits(self, user_id: int) -> None:
        if self.store.ensure_organizer_credits(user_id, self.settings.organizer_starting_credits):
            logger.info(
                "Granted %d starting credits to user_id=%d", self.settings.organizer_starting_credits, user_id
            )
