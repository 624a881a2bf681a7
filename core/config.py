"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for ticketgate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. jwt_secret -> JWT_SECRET). Type coercion and validation are built in.

  @model_validator(mode="after"): Normalizes list-valued and email-valued
      fields after all fields are resolved from the environment.

Signing secrets are deliberately NOT validated here. auth/codec.py owns the
layered JWT_SECRET -> AUTH_SECRET -> development fallback resolution and is
the only module allowed to read those two fields.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("ticketgate.config")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.

    Environment variable name mapping: field names are uppercased automatically.
    E.g. `jwt_secret` reads from JWT_SECRET, `debug` reads from DEBUG.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Public origin used to build emailed links. Empty means "derive from
    # the incoming request" (fine for local dev, set explicitly in production).
    base_url: str = ""
    database_url: str = ""
    # Comma-separated Host header allow-list for TrustedHostMiddleware.
    allowed_hosts: str = "*"

    # ------------------------------------------------------------------
    # Signing secrets -- read only through auth.codec.get_secret()
    # ------------------------------------------------------------------

    jwt_secret: str = ""
    auth_secret: str = ""

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    # 30 days. Token exp and cookie max-age are both derived from this.
    session_max_age_seconds: int = 30 * 24 * 60 * 60
    # Explicit shared root domain (".example.com"). Empty means derive it from
    # the request host; set it for hosts under multi-label public suffixes
    # other than <cc>.co/.com/.org style ones (e.g. *.github.io, *.k12.ca.us).
    cookie_domain: str = ""

    # ------------------------------------------------------------------
    # One-time tokens
    # ------------------------------------------------------------------

    magic_link_ttl_minutes: int = 15
    password_reset_ttl_minutes: int = 60
    password_min_length: int = 8

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    # Comma-separated. Self-registration with one of these emails yields the
    # admin role instead of user.
    admin_emails: str = ""
    organizer_starting_credits: int = 300

    # ------------------------------------------------------------------
    # Mail (Resend HTTP API)
    # ------------------------------------------------------------------

    resend_api_key: str = ""
    mail_from: str = "no-reply@localhost"
    mail_timeout_seconds: float = 10.0

    # ------------------------------------------------------------------
    # OAuth providers (optional -- empty string means provider is disabled)
    # ------------------------------------------------------------------

    google_client_id: str = ""
    google_client_secret: str = ""

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    magic_link_rate_limit: str = "5/minute"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def normalize_fields(self) -> "Settings":
        """Strip and lower-case list fields; drop a trailing slash from base_url.

        admin_emails is compared against normalized (lower-case) user emails,
        so it is normalized once here rather than at every comparison.
        """
        self.base_url = self.base_url.strip().rstrip("/")
        self.admin_emails = ",".join(e.strip().lower() for e in self.admin_emails.split(",") if e.strip())
        self.cookie_domain = self.cookie_domain.strip().lower()
        return self

    @property
    def admin_email_set(self) -> frozenset[str]:
        return frozenset(e for e in self.admin_emails.split(",") if e)

    @property
    def allowed_host_list(self) -> list[str]:
        return [h.strip() for h in self.allowed_hosts.split(",") if h.strip()] or ["*"]


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    This is the official FastAPI pattern for config (see FastAPI docs /advanced/settings/).
    All modules should call get_settings() rather than constructing Settings() directly.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
