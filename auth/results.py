"""
auth/results.py -- Typed results for credential and token flows.

Flows in auth/flows.py return Ok(value) or Err(AuthError) instead of raising.
A caller has to branch on the result type to get at the value, so a failed
verification cannot fall through as if it had succeeded:

    result = verifier.verify_magic_link(raw)
    if isinstance(result, Err):
        return _error_response(result.error)
    user = result.value

Error codes map one-to-one onto HTTP statuses in api/routes/auth.py.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar, Union

T = TypeVar("T")


class AuthErrorCode(str, Enum):
    VALIDATION_ERROR = "validation_error"
    INVALID_TOKEN = "invalid_token"
    EXPIRED_TOKEN = "expired_token"
    BAD_CREDENTIALS = "bad_credentials"
    CONFLICT = "conflict"
    MISCONFIGURED = "misconfigured"
    DELIVERY_FAILED = "delivery_failed"


@dataclass(frozen=True)
class AuthError:
    """Machine-readable failure. field names the offending input, if any."""

    code: AuthErrorCode
    message: str
    field: str | None = None


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    error: AuthError

    @property
    def ok(self) -> bool:
        return False


Result = Union[Ok[T], Err]


def validation_error(message: str, field: str | None = None) -> Err:
    return Err(AuthError(AuthErrorCode.VALIDATION_ERROR, message, field))


def invalid_token(message: str = "This link is invalid or has already been used.") -> Err:
    return Err(AuthError(AuthErrorCode.INVALID_TOKEN, message, "token"))


def expired_token(message: str = "This link has expired. Please request a new one.") -> Err:
    return Err(AuthError(AuthErrorCode.EXPIRED_TOKEN, message, "token"))
