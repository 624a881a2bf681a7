"""
auth/mail.py -- Outbound mail for magic links and password resets.

Two senders share the Mailer protocol:
  ResendMailer -- POSTs to the Resend HTTP API (production).
  LogMailer    -- logs the message, token values redacted, instead of sending
                  it (DEBUG only, when no RESEND_API_KEY is configured).

send() either delivers or raises MailError. Callers must treat a raised error
as a failed flow: the user cannot finish signing in without the email.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from html import escape
from typing import Protocol

import requests

from core.config import Settings

logger = logging.getLogger("ticketgate.auth.mail")

RESEND_API = "https://api.resend.com/emails"


class MailError(Exception):
    """Delivery failed after the message was handed to the transport."""


class MailConfigError(MailError):
    """The sender is missing credentials and cannot attempt delivery."""


@dataclass(frozen=True)
class MailMessage:
    to: str
    subject: str
    text: str
    html: str


class Mailer(Protocol):
    def is_configured(self) -> bool: ...

    def send(self, message: MailMessage) -> None: ...


class ResendMailer:
    """Deliver mail through the Resend REST API.

    Holds its own requests.Session for connection pooling. max_redirects is
    lowered from the requests default of 30: the API never redirects.
    """

    def __init__(self, api_key: str, sender: str, timeout: float = 10.0) -> None:
        self._api_key = api_key
        self._sender = sender
        self._timeout = timeout
        self._session = requests.Session()
        self._session.max_redirects = 3

    def is_configured(self) -> bool:
        return bool(self._api_key and self._sender)

    def send(self, message: MailMessage) -> None:
        if not self.is_configured():
            raise MailConfigError("RESEND_API_KEY and MAIL_FROM must be set to send mail.")
        try:
            resp = self._session.post(
                RESEND_API,
                json={
                    "from": self._sender,
                    "to": [message.to],
                    "subject": message.subject,
                    "text": message.text,
                    "html": message.html,
                },
                headers={"Authorization": f"Bearer {self._api_key}"},
                timeout=self._timeout,
            )
            resp.raise_for_status()
        except requests.RequestException as exc:
            logger.error("Mail delivery failed (%s): %s", message.subject, exc)
            raise MailError(f"Mail delivery failed: {exc}") from exc
        logger.info("Mail sent: %s", message.subject)

    def close(self) -> None:
        self._session.close()


_TOKEN_PARAM = re.compile(r"(token=)[^&\s\"'<>]+")


def redact_tokens(text: str) -> str:
    """Replace every token=<value> query parameter in text with token=[redacted]."""
    return _TOKEN_PARAM.sub(r"\1[redacted]", text)


class LogMailer:
    """Development sender: writes the message to the log with link tokens redacted.

    Shows that a flow reached the send step. It cannot be used to sign in;
    set RESEND_API_KEY for working links.
    """

    def is_configured(self) -> bool:
        return True

    def send(self, message: MailMessage) -> None:
        logger.warning("DEV MAIL to %s -- %s\n%s", message.to, message.subject, redact_tokens(message.text))

    def close(self) -> None:
        pass


def build_mailer(settings: Settings) -> Mailer:
    """Pick the sender for this process.

    With RESEND_API_KEY set: ResendMailer. Without it: LogMailer in DEBUG,
    otherwise an unconfigured ResendMailer, which makes every flow that needs
    mail fail with a misconfiguration error instead of pretending to succeed.
    """
    if settings.resend_api_key:
        return ResendMailer(settings.resend_api_key, settings.mail_from, settings.mail_timeout_seconds)
    if settings.debug:
        logger.warning("RESEND_API_KEY not set -- emails will be logged, not sent (DEBUG=true).")
        return LogMailer()
    logger.error("RESEND_API_KEY not set -- magic-link and password-reset emails cannot be sent.")
    return ResendMailer("", settings.mail_from, settings.mail_timeout_seconds)


# ---------------------------------------------------------------------------
# Message builders
# ---------------------------------------------------------------------------


def magic_link_message(to: str, url: str, ttl_minutes: int) -> MailMessage:
    return MailMessage(
        to=to,
        subject="Your sign-in link",
        text=(
            f"Click the link below to sign in. It expires in {ttl_minutes} minutes "
            f"and can be used once.\n\n{url}\n\n"
            "If you did not request this, you can ignore this email."
        ),
        html=(
            f"<p>Click the link below to sign in. It expires in {ttl_minutes} minutes and can be used once.</p>"
            f'<p><a href="{escape(url)}">Sign in</a></p>'
            "<p>If you did not request this, you can ignore this email.</p>"
        ),
    )


def password_reset_message(to: str, url: str, ttl_minutes: int) -> MailMessage:
    return MailMessage(
        to=to,
        subject="Reset your password",
        text=(
            f"Use the link below to choose a new password. It expires in {ttl_minutes} minutes.\n\n"
            f"{url}\n\nIf you did not request a reset, your password has not changed."
        ),
        html=(
            f"<p>Use the link below to choose a new password. It expires in {ttl_minutes} minutes.</p>"
            f'<p><a href="{escape(url)}">Reset password</a></p>'
            "<p>If you did not request a reset, your password has not changed.</p>"
        ),
    )
