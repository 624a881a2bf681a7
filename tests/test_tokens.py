"""
tests/test_tokens.py -- Signing secret resolution, session JWTs and one-time tokens.

Covers:
  - JWT_SECRET -> AUTH_SECRET -> development fallback precedence
  - Weak-secret and fallback warnings depend on DEBUG
  - Session tokens verify until exp and fail one second after
  - Tampered, foreign-key and malformed tokens decode to None
  - One-time tokens are random and only their SHA-256 is stored
  - Password hashing and timing-equalized authenticate_user
"""

from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt

from auth import codec
from auth.models import SessionClaims
from auth.tokens import (
    authenticate_user,
    create_session_token,
    decode_session_token,
    generate_one_time_token,
    hash_one_time_token,
    hash_password,
    password_length_error,
    verify_password,
)
from core.config import get_settings

ISSUED = datetime(2026, 1, 1, 9, 0, tzinfo=timezone.utc)
CLAIMS = SessionClaims(user_id=7, email="ana@example.com", role="organizer", name="Ana", staff_roles=("STAFF",))


@pytest.fixture
def fresh_secret(monkeypatch):
    """Clear cached settings/secret around a test that changes secret env vars."""
    get_settings.cache_clear()
    codec.get_secret.cache_clear()
    yield monkeypatch
    get_settings.cache_clear()
    codec.get_secret.cache_clear()


class TestSecretResolution:
    def test_jwt_secret_wins(self, fresh_secret) -> None:
        fresh_secret.setenv("JWT_SECRET", "j" * 40)
        fresh_secret.setenv("AUTH_SECRET", "a" * 40)
        assert codec.get_secret() == "j" * 40

    def test_auth_secret_used_when_jwt_secret_missing(self, fresh_secret) -> None:
        fresh_secret.setenv("JWT_SECRET", "")
        fresh_secret.setenv("AUTH_SECRET", "a" * 40)
        assert codec.get_secret() == "a" * 40

    def test_fallback_when_neither_set(self, fresh_secret) -> None:
        fresh_secret.setenv("JWT_SECRET", "")
        fresh_secret.setenv("AUTH_SECRET", "")
        assert codec.get_secret() == codec.DEV_FALLBACK_SECRET
        assert codec.encode_secret() == codec.DEV_FALLBACK_SECRET.encode("utf-8")

    def test_fallback_outside_debug_logs_error(self, fresh_secret, caplog) -> None:
        fresh_secret.setenv("DEBUG", "false")
        fresh_secret.setenv("JWT_SECRET", "")
        fresh_secret.setenv("AUTH_SECRET", "")
        with caplog.at_level(logging.ERROR, logger="ticketgate.auth.codec"):
            codec.get_secret()
        assert "development fallback" in caplog.text

    def test_weak_secret_outside_debug_logs_error(self, fresh_secret, caplog) -> None:
        fresh_secret.setenv("DEBUG", "false")
        fresh_secret.setenv("JWT_SECRET", "changeme")
        with caplog.at_level(logging.ERROR, logger="ticketgate.auth.codec"):
            assert codec.get_secret() == "changeme"
        assert "JWT_SECRET is weak" in caplog.text

    @pytest.mark.parametrize(
        "secret, weak",
        [("short", True), ("secret", True), ("x" * 31, True), ("x" * 32, False)],
    )
    def test_is_weak_secret(self, secret: str, weak: bool) -> None:
        assert codec.is_weak_secret(secret) is weak


class TestSessionTokens:
    def test_round_trip_preserves_claims(self) -> None:
        token = create_session_token(CLAIMS, issued_at=ISSUED)
        assert decode_session_token(token, now=ISSUED + timedelta(days=1)) == CLAIMS

    def test_payload_carries_iat_and_thirty_day_exp(self) -> None:
        token = create_session_token(CLAIMS, issued_at=ISSUED)
        payload = jwt.get_unverified_claims(token)
        assert payload["iat"] == int(ISSUED.timestamp())
        assert payload["exp"] - payload["iat"] == 30 * 24 * 60 * 60
        assert payload["sub"] == "7"
        assert "password" not in str(payload)

    def test_valid_at_exact_expiry_and_invalid_one_second_later(self) -> None:
        token = create_session_token(CLAIMS, issued_at=ISSUED)
        exp = ISSUED + timedelta(days=30)
        assert decode_session_token(token, now=exp) is not None
        assert decode_session_token(token, now=exp + timedelta(seconds=1)) is None

    def test_token_signed_with_another_key_is_rejected(self) -> None:
        forged = jwt.encode(
            {"user_id": 1, "email": "x@example.com", "role": "admin", "exp": 4_000_000_000},
            "some-other-secret-entirely-0123456789",
            algorithm="HS256",
        )
        assert decode_session_token(forged) is None

    def test_tampered_payload_is_rejected(self) -> None:
        header, _payload, signature = create_session_token(CLAIMS).split(".")
        other = create_session_token(SessionClaims(user_id=7, email="ana@example.com", role="admin"))
        assert decode_session_token(".".join([header, other.split(".")[1], signature])) is None

    def test_unknown_role_is_rejected(self) -> None:
        token = jwt.encode(
            {"user_id": 1, "email": "x@example.com", "role": "superuser", "exp": 4_000_000_000},
            codec.encode_secret(),
            algorithm="HS256",
        )
        assert decode_session_token(token) is None

    def test_missing_exp_is_rejected(self) -> None:
        token = jwt.encode({"user_id": 1, "email": "x@example.com", "role": "user"}, codec.encode_secret())
        assert decode_session_token(token) is None

    @pytest.mark.parametrize("garbage", ["", "not-a-jwt", "a.b.c"])
    def test_garbage_is_rejected(self, garbage: str) -> None:
        assert decode_session_token(garbage) is None


class TestOneTimeTokens:
    def test_tokens_are_unique_and_url_safe(self) -> None:
        tokens = {generate_one_time_token() for _ in range(50)}
        assert len(tokens) == 50
        assert all(len(t) >= 43 and "/" not in t and "+" not in t for t in tokens)

    def test_hash_is_sha256_hex(self) -> None:
        assert hash_one_time_token("abc") == hashlib.sha256(b"abc").hexdigest()


class TestPasswords:
    def test_hash_and_verify(self) -> None:
        hashed = hash_password("correct horse")
        assert hashed != "correct horse"
        assert verify_password("correct horse", hashed)
        assert not verify_password("wrong horse", hashed)

    def test_verify_against_malformed_hash_is_false(self) -> None:
        assert verify_password("anything", "not-a-bcrypt-hash") is False

    @pytest.mark.parametrize(
        "password, ok",
        [
            ("seven77", False),
            ("eight888", True),
            ("p" * 72, True),
            ("p" * 73, False),
            ("é" * 36, True),
            ("é" * 37, False),
        ],
    )
    def test_password_length_bounds(self, password: str, ok: bool) -> None:
        assert (password_length_error(password, 8) is None) is ok

    def test_oversized_login_attempt_is_a_plain_failure(self, make_user, store) -> None:
        make_user("ana@example.com", password="s3cret-pass")
        assert authenticate_user(store, "ana@example.com", "p" * 100) is None
        assert authenticate_user(store, "ghost@example.com", "p" * 100) is None

    def test_authenticate_user(self, make_user, store) -> None:
        make_user("Ana@Example.com", password="s3cret-pass")
        assert authenticate_user(store, "ana@example.com", "s3cret-pass").email == "ana@example.com"
        assert authenticate_user(store, "ana@example.com", "nope-nope") is None
        assert authenticate_user(store, "ghost@example.com", "s3cret-pass") is None

    def test_passwordless_account_cannot_password_login(self, make_user, store) -> None:
        make_user("link-only@example.com")
        assert authenticate_user(store, "link-only@example.com", "") is None
