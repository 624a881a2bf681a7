"""
API request and response models for ticketgate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Field aliases (callbackUrl, newPassword) match the JSON names the browser
client already sends; populate_by_name lets Python callers use either.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import SessionClaims, User

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/auth/login."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=1, max_length=320)
    password: str = Field(min_length=1, max_length=1024)
    redirect: Optional[str] = Field(default=None, max_length=2048)


class RegisterRequest(BaseModel):
    """Request body for POST /api/auth/register.

    Length and format rules live in CredentialVerifier.register() so the API
    and the CLI reject the same inputs with the same messages.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(max_length=320)
    password: str = Field(max_length=1024)
    name: Optional[str] = Field(default=None, max_length=200)
    redirect: Optional[str] = Field(default=None, max_length=2048)


class MagicLinkRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True)

    email: str = Field(max_length=320)
    callback_url: Optional[str] = Field(default=None, alias="callbackUrl", max_length=2048)


class ForgotPasswordRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(max_length=320)


class ResetPasswordRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    token: str = Field(max_length=512)
    new_password: str = Field(alias="newPassword", max_length=1024)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public view of an account. Never carries hashes or token columns."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    name: Optional[str] = None
    role: str
    staff_roles: list[str] = Field(default_factory=list)
    email_verified: bool = False
    is_vendor: bool = False
    is_restaurateur: bool = False

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            email=user.email,
            name=user.name,
            role=user.role,
            staff_roles=list(user.staff_roles),
            email_verified=user.email_verified,
            is_vendor=user.is_vendor,
            is_restaurateur=user.is_restaurateur,
        )


class LoginResponse(BaseModel):
    """Body returned by POST /api/auth/login and POST /api/auth/register."""

    model_config = ConfigDict(frozen=True)

    success: bool = True
    redirect_url: str
    user: UserResponse


class MessageResponse(BaseModel):
    """Constant-shape body for link requests, reset and logout."""

    model_config = ConfigDict(frozen=True)

    success: bool = True
    message: str


class MeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: int
    email: str
    name: Optional[str] = None
    role: str
    staff_roles: list[str] = Field(default_factory=list)
    default_dashboard: str

    @classmethod
    def from_claims(cls, claims: SessionClaims, default_dashboard: str) -> "MeResponse":
        return cls(
            user_id=claims.user_id,
            email=claims.email,
            name=claims.name,
            role=claims.role,
            staff_roles=list(claims.staff_roles),
            default_dashboard=default_dashboard,
        )


class DashboardLink(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: str
    path: str
    label: str


class OAuthProviderInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    label: str


class ErrorDetail(BaseModel):
    """Structured error payload. field names the offending input, when there is one."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    field: Optional[str] = None
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope: {"error": {...}}."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Liveness plus per-component status ("ok" or "error")."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
