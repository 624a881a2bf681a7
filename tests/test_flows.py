"""
tests/test_flows.py -- CredentialVerifier flows against a real in-memory store.

The verifier fixture runs on a FakeClock, so link expiry is tested by moving
the clock rather than by waiting. Emailed links are read back from the
RecordingMailer.
"""

from __future__ import annotations

from urllib.parse import parse_qs, urlparse

import pytest

from auth.flows import CredentialVerifier, is_valid_email
from auth.results import AuthErrorCode, Err, Ok
from auth.tokens import hash_one_time_token, verify_password
from core.config import get_settings
from tests.fakes import RecordingMailer, link_token, message_url

BASE = "https://events.example.com"


def _code(result) -> AuthErrorCode:
    assert isinstance(result, Err), f"expected Err, got {result!r}"
    return result.error.code


class TestEmailFormat:
    @pytest.mark.parametrize("email", ["a@b.co", "first.last+tag@sub.example.org"])
    def test_valid(self, email: str) -> None:
        assert is_valid_email(email)

    @pytest.mark.parametrize("email", ["", "plain", "a@b", "a b@c.com", "@example.com", "a@@b.com"])
    def test_invalid(self, email: str) -> None:
        assert not is_valid_email(email)


class TestPasswordLogin:
    def test_success_updates_last_login(self, verifier, make_user, store) -> None:
        user = make_user("ana@example.com", password="correct-horse")
        result = verifier.password_login("  ANA@example.com ", "correct-horse")
        assert isinstance(result, Ok)
        assert result.value.id == user.id
        assert store.get_by_id(user.id).last_login is not None

    def test_wrong_password_and_unknown_email_look_the_same(self, verifier, make_user) -> None:
        make_user("ana@example.com", password="correct-horse")
        wrong = verifier.password_login("ana@example.com", "wrong-horse")
        unknown = verifier.password_login("ghost@example.com", "correct-horse")
        assert _code(wrong) is _code(unknown) is AuthErrorCode.BAD_CREDENTIALS
        assert wrong.error.message == unknown.error.message

    def test_missing_fields(self, verifier) -> None:
        assert _code(verifier.password_login("", "x")) is AuthErrorCode.VALIDATION_ERROR


class TestRegister:
    def test_creates_user_role_account(self, verifier, store) -> None:
        result = verifier.register("New@Example.com", "long-enough", "New Person")
        assert isinstance(result, Ok)
        user = result.value
        assert user.email == "new@example.com"
        assert user.role == "user"
        assert user.auth_provider == "password"
        assert verify_password("long-enough", user.password_hash)
        assert store.get_organizer_credits(user.id) is None

    def test_admin_email_gets_admin_role_and_credits(self, verifier, store) -> None:
        result = verifier.register("boss@example.com", "long-enough")
        assert result.value.role == "admin"
        assert store.get_organizer_credits(result.value.id).credits_total == 300

    def test_duplicate_email_conflicts(self, verifier) -> None:
        verifier.register("dup@example.com", "long-enough")
        result = verifier.register("DUP@example.com", "another-one")
        assert _code(result) is AuthErrorCode.CONFLICT
        assert result.error.field == "email"

    @pytest.mark.parametrize(
        "email, password, name, field",
        [
            ("not-an-email", "long-enough", None, "email"),
            ("a@example.com", "short", None, "password"),
            ("a@example.com", "p" * 100, None, "password"),
            ("a@example.com", "é" * 40, None, "password"),
            ("a@example.com", "long-enough", "x", "name"),
        ],
    )
    def test_validation(self, verifier, email, password, name, field) -> None:
        result = verifier.register(email, password, name)
        assert _code(result) is AuthErrorCode.VALIDATION_ERROR
        assert result.error.field == field


class TestMagicLink:
    def test_new_email_creates_unverified_user_then_verifies(self, verifier, mailer, store) -> None:
        """Scenario: magic link for an unknown email, then redeem it."""
        assert isinstance(verifier.request_magic_link("fresh@example.com", BASE, "/events/9"), Ok)

        user = store.get_by_email("fresh@example.com")
        assert user.role == "user"
        assert user.email_verified is False
        assert user.auth_provider == "magic_link"
        assert user.magic_link_token_hash is not None

        url = message_url(mailer.last)
        assert url.startswith(f"{BASE}/api/auth/verify-magic-link?")
        params = parse_qs(urlparse(url).query)
        assert params["callbackUrl"] == ["/events/9"]
        raw = params["token"][0]
        assert user.magic_link_token_hash == hash_one_time_token(raw)
        assert raw not in (user.magic_link_token_hash or "")

        result = verifier.verify_magic_link(raw)
        assert isinstance(result, Ok)
        after = store.get_by_id(user.id)
        assert after.email_verified is True
        assert after.magic_link_token_hash is None
        assert after.magic_link_expires_at is None

    def test_link_works_only_once(self, verifier, mailer) -> None:
        verifier.request_magic_link("once@example.com", BASE)
        raw = link_token(message_url(mailer.last))
        assert isinstance(verifier.verify_magic_link(raw), Ok)
        assert _code(verifier.verify_magic_link(raw)) is AuthErrorCode.INVALID_TOKEN

    def test_expired_link_is_cleared(self, verifier, mailer, clock, store) -> None:
        verifier.request_magic_link("late@example.com", BASE)
        raw = link_token(message_url(mailer.last))
        clock.advance(minutes=15, seconds=1)
        assert _code(verifier.verify_magic_link(raw)) is AuthErrorCode.EXPIRED_TOKEN
        assert store.get_by_email("late@example.com").magic_link_token_hash is None
        assert _code(verifier.verify_magic_link(raw)) is AuthErrorCode.INVALID_TOKEN

    def test_link_valid_at_exact_expiry(self, verifier, mailer, clock) -> None:
        verifier.request_magic_link("edge@example.com", BASE)
        raw = link_token(message_url(mailer.last))
        clock.advance(minutes=15)
        assert isinstance(verifier.verify_magic_link(raw), Ok)

    def test_new_request_replaces_old_link(self, verifier, mailer) -> None:
        verifier.request_magic_link("twice@example.com", BASE)
        first = link_token(message_url(mailer.last))
        verifier.request_magic_link("twice@example.com", BASE)
        second = link_token(message_url(mailer.last))
        assert _code(verifier.verify_magic_link(first)) is AuthErrorCode.INVALID_TOKEN
        assert isinstance(verifier.verify_magic_link(second), Ok)

    def test_unsafe_callback_is_dropped(self, verifier, mailer) -> None:
        verifier.request_magic_link("cb@example.com", BASE, "https://evil.com")
        assert "callbackUrl" not in parse_qs(urlparse(message_url(mailer.last)).query)

    def test_existing_user_keeps_role(self, verifier, mailer, make_user, store) -> None:
        user = make_user("host@example.com", role="organizer")
        verifier.request_magic_link("host@example.com", BASE)
        result = verifier.verify_magic_link(link_token(message_url(mailer.last)))
        assert result.value.role == "organizer"
        assert store.get_organizer_credits(user.id).credits_total == 300

    def test_credits_granted_once(self, verifier, mailer, make_user, store) -> None:
        user = make_user("host@example.com", role="organizer")
        for _ in range(2):
            verifier.request_magic_link("host@example.com", BASE)
            verifier.verify_magic_link(link_token(message_url(mailer.last)))
        credits = store.get_organizer_credits(user.id)
        assert credits.credits_total == 300
        assert credits.credits_remaining == 300

    def test_bad_email(self, verifier, mailer) -> None:
        assert _code(verifier.request_magic_link("nope", BASE)) is AuthErrorCode.VALIDATION_ERROR
        assert mailer.sent == []

    def test_unconfigured_mailer(self, store, clock) -> None:
        verifier = CredentialVerifier(store, RecordingMailer(configured=False), get_settings(), clock=clock)
        assert _code(verifier.request_magic_link("a@example.com", BASE)) is AuthErrorCode.MISCONFIGURED
        assert store.get_by_email("a@example.com") is None

    def test_delivery_failure(self, store, clock) -> None:
        verifier = CredentialVerifier(store, RecordingMailer(fail=True), get_settings(), clock=clock)
        assert _code(verifier.request_magic_link("a@example.com", BASE)) is AuthErrorCode.DELIVERY_FAILED

    @pytest.mark.parametrize("raw", ["", "never-issued"])
    def test_unknown_token(self, verifier, raw: str) -> None:
        assert _code(verifier.verify_magic_link(raw)) is AuthErrorCode.INVALID_TOKEN


class TestPasswordReset:
    def test_reset_flow(self, verifier, mailer, make_user, store) -> None:
        user = make_user("ana@example.com", password="old-password")
        result = verifier.request_password_reset("ana@example.com", BASE)
        assert isinstance(result, Ok)

        url = message_url(mailer.last)
        assert url.startswith(f"{BASE}/reset-password?token=")
        assert isinstance(verifier.reset_password(link_token(url), "new-password"), Ok)

        after = store.get_by_id(user.id)
        assert verify_password("new-password", after.password_hash)
        assert after.password_reset_token_hash is None
        assert after.email_verified is True
        assert isinstance(verifier.password_login("ana@example.com", "new-password"), Ok)
        assert _code(verifier.password_login("ana@example.com", "old-password")) is AuthErrorCode.BAD_CREDENTIALS

    def test_same_response_for_unknown_email(self, verifier, mailer, make_user) -> None:
        make_user("ana@example.com", password="old-password")
        known = verifier.request_password_reset("ana@example.com", BASE)
        unknown = verifier.request_password_reset("ghost@example.com", BASE)
        assert isinstance(known, Ok) and isinstance(unknown, Ok)
        assert known.value == unknown.value
        assert len(mailer.sent) == 1

    def test_expired_token_fails_twice(self, verifier, mailer, make_user, clock, store) -> None:
        """Scenario: reset token used after 60 minutes, then retried."""
        user = make_user("ana@example.com", password="old-password")
        verifier.request_password_reset("ana@example.com", BASE)
        raw = link_token(message_url(mailer.last))
        clock.advance(minutes=61)

        assert _code(verifier.reset_password(raw, "new-password")) is AuthErrorCode.EXPIRED_TOKEN
        assert _code(verifier.reset_password(raw, "new-password")) is AuthErrorCode.INVALID_TOKEN
        after = store.get_by_id(user.id)
        assert verify_password("old-password", after.password_hash)
        assert after.password_reset_token_hash is None

    def test_token_single_use(self, verifier, mailer, make_user) -> None:
        make_user("ana@example.com", password="old-password")
        verifier.request_password_reset("ana@example.com", BASE)
        raw = link_token(message_url(mailer.last))
        assert isinstance(verifier.reset_password(raw, "new-password"), Ok)
        assert _code(verifier.reset_password(raw, "newer-password")) is AuthErrorCode.INVALID_TOKEN

    def test_short_password_does_not_burn_token(self, verifier, mailer, make_user) -> None:
        make_user("ana@example.com", password="old-password")
        verifier.request_password_reset("ana@example.com", BASE)
        raw = link_token(message_url(mailer.last))
        result = verifier.reset_password(raw, "short")
        assert _code(result) is AuthErrorCode.VALIDATION_ERROR
        assert result.error.field == "newPassword"
        assert isinstance(verifier.reset_password(raw, "long-enough"), Ok)

    def test_oversized_password_does_not_burn_token(self, verifier, mailer, make_user) -> None:
        make_user("ana@example.com", password="old-password")
        verifier.request_password_reset("ana@example.com", BASE)
        raw = link_token(message_url(mailer.last))
        result = verifier.reset_password(raw, "é" * 40)
        assert _code(result) is AuthErrorCode.VALIDATION_ERROR
        assert result.error.field == "newPassword"
        assert "72 bytes" in result.error.message
        assert isinstance(verifier.reset_password(raw, "é" * 36), Ok)

    def test_magic_link_token_is_not_a_reset_token(self, verifier, mailer, make_user) -> None:
        make_user("ana@example.com", password="old-password")
        verifier.request_magic_link("ana@example.com", BASE)
        raw = link_token(message_url(mailer.last))
        assert _code(verifier.reset_password(raw, "new-password")) is AuthErrorCode.INVALID_TOKEN

    def test_unconfigured_mailer_fails_for_every_email(self, store, clock, make_user) -> None:
        make_user("ana@example.com", password="old-password")
        verifier = CredentialVerifier(store, RecordingMailer(configured=False), get_settings(), clock=clock)
        for email in ("ana@example.com", "ghost@example.com"):
            assert _code(verifier.request_password_reset(email, BASE)) is AuthErrorCode.MISCONFIGURED


class TestOAuthLogin:
    def test_creates_verified_account(self, verifier, store) -> None:
        result = verifier.oauth_login("google", "New@Example.com", "g-123", "New Person")
        user = result.value
        assert user.email == "new@example.com"
        assert user.role == "user"
        assert user.email_verified is True
        assert user.google_id == "g-123"
        assert user.auth_provider == "google"

    def test_links_existing_email(self, verifier, make_user) -> None:
        existing = make_user("ana@example.com", role="organizer", password="old-password")
        result = verifier.oauth_login("google", "ana@example.com", "g-ana")
        assert result.value.id == existing.id
        assert result.value.role == "organizer"
        assert result.value.google_id == "g-ana"
        assert result.value.email_verified is True

    def test_returning_user_found_by_subject(self, verifier) -> None:
        first = verifier.oauth_login("google", "ana@example.com", "g-ana").value
        again = verifier.oauth_login("google", "ana.renamed@example.com", "g-ana").value
        assert again.id == first.id

    def test_subject_mismatch_conflicts(self, verifier) -> None:
        verifier.oauth_login("google", "ana@example.com", "g-ana")
        assert _code(verifier.oauth_login("google", "ana@example.com", "g-other")) is AuthErrorCode.CONFLICT

    def test_unsupported_provider(self, verifier) -> None:
        assert _code(verifier.oauth_login("github", "ana@example.com", "1")) is AuthErrorCode.VALIDATION_ERROR
