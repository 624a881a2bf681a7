"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper.
UserStore is the repository; _row_to_user / _row_to_credits are the mappers.
Flow, gate and route code never touches SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Emails are normalized (strip + lower) on every write and lookup, and the
  UNIQUE constraint sits on the normalized column, so "A@x.com" and
  "a@x.com" cannot become two accounts.

  Single-use tokens are consumed with compare-and-clear: inside one
  transaction the row is located by hash, then cleared with
  UPDATE ... WHERE id = :id AND <hash column> = :hash. If a concurrent
  request consumed the same token first, that UPDATE matches zero rows and
  the loser is told NOT_FOUND. A token can therefore be redeemed once.

  Each token hash and its expiry are written and cleared by the same UPDATE.

DB path: auth/ticketgate_auth.db unless DATABASE_URL is set.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, create_engine, event, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.models import (
    CapabilityFlags,
    ConsumeOutcome,
    OrganizerCredits,
    TokenKind,
    User,
)

logger = logging.getLogger("ticketgate.auth.store")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'ticketgate_auth.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(320), nullable=False, unique=True),  # normalized lower-case
    Column("name", String(255)),
    Column("password_hash", Text),  # NULL for magic-link / OAuth-only users
    Column("role", String(20), nullable=False, server_default="user"),
    Column("staff_roles", Text, nullable=False, server_default="[]"),  # JSON list
    Column("is_vendor", Integer, nullable=False, server_default="0"),
    Column("is_restaurateur", Integer, nullable=False, server_default="0"),
    Column("email_verified", Integer, nullable=False, server_default="0"),
    Column("auth_provider", String(20)),
    Column("google_id", String(255), unique=True),
    Column("magic_link_token_hash", String(64), unique=True),
    Column("magic_link_expires_at", String(32)),
    Column("password_reset_token_hash", String(64), unique=True),
    Column("password_reset_expires_at", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("last_login", String(32)),
)

_organizer_credits = Table(
    "organizer_credits",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("organizer_id", Integer, nullable=False, unique=True),
    Column("credits_total", Integer, nullable=False),
    Column("credits_used", Integer, nullable=False, server_default="0"),
    Column("first_event_free_used", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
)

# Column pairs per token kind: (hash column, expiry column).
_TOKEN_COLUMNS = {
    TokenKind.MAGIC_LINK: ("magic_link_token_hash", "magic_link_expires_at"),
    TokenKind.PASSWORD_RESET: ("password_reset_token_hash", "password_reset_expires_at"),
}

# Fields update_user() accepts. Token columns are excluded -- they change only
# through store_token() and consume_token().
_UPDATABLE_FIELDS = frozenset(
    {
        "name",
        "password_hash",
        "role",
        "staff_roles",
        "is_vendor",
        "is_restaurateur",
        "email_verified",
        "auth_provider",
    }
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def _is_past(expires_at: str | None, now: datetime) -> bool:
    """Return True if expires_at is before now. Unparseable or missing counts as expired."""
    if not expires_at:
        return True
    try:
        deadline = datetime.fromisoformat(expires_at)
    except ValueError:
        return True
    if deadline.tzinfo is None:
        deadline = deadline.replace(tzinfo=timezone.utc)
    return now > deadline


def _encode_fields(fields: dict) -> dict:
    values = dict(fields)
    if "staff_roles" in values:
        values["staff_roles"] = json.dumps(sorted(set(values["staff_roles"] or [])))
    for flag in ("is_vendor", "is_restaurateur", "email_verified"):
        if flag in values:
            values[flag] = 1 if values[flag] else 0
    return values


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User and OrganizerCredits entities.

    Usage:
        store = UserStore()
        uid = store.create_user(User(email="a@example.com", role="organizer"))
        user = store.get_by_email("A@Example.com")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite") and ":memory:" not in db_url and "mode=memory" not in db_url:
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                return conn.execute(select(1)).scalar() == 1
        except SQLAlchemyError as exc:
            logger.error("Credential store ping failed: %s", exc)
            return False

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        Callers translate that into a conflict.
        """
        now = _now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=normalize_email(user.email),
                    name=user.name,
                    password_hash=user.password_hash,
                    role=user.role,
                    staff_roles=json.dumps(sorted(set(user.staff_roles))),
                    is_vendor=1 if user.is_vendor else 0,
                    is_restaurateur=1 if user.is_restaurateur else 0,
                    email_verified=1 if user.email_verified else 0,
                    auth_provider=user.auth_provider,
                    google_id=user.google_id,
                    created_at=now,
                    updated_at=now,
                )
            )
            return result.inserted_primary_key[0]

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by email, case-insensitively. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == normalize_email(email))).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_id(self, user_id: int) -> User | None:
        """Look up a user by primary key. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_google_id(self, google_id: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.google_id == google_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_capability_flags(self, user_id: int) -> CapabilityFlags | None:
        """Return the vendor/restaurateur flags for a user, or None if the user is gone."""
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_users.c.is_vendor, _users.c.is_restaurateur).where(_users.c.id == user_id)
            ).fetchone()
        if row is None:
            return None
        return CapabilityFlags(is_vendor=bool(row.is_vendor), is_restaurateur=bool(row.is_restaurateur))

    def link_google(self, user_id: int, google_id: str) -> None:
        """Attach a Google subject to an existing account and mark its email verified."""
        with self.engine.begin() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values(google_id=google_id, email_verified=1, updated_at=_now_iso())
            )

    def list_users(self) -> list[User]:
        """Return all users ordered by email."""
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.email)).fetchall()
        return [_row_to_user(r) for r in rows]

    def count_users(self) -> int:
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(_users)).scalar() or 0

    def update_user(self, user_id: int, **fields) -> bool:
        """Update mutable fields on an existing user.

        Accepted fields: name, password_hash, role, staff_roles, is_vendor,
        is_restaurateur, email_verified, auth_provider. Unknown fields raise
        ValueError rather than being silently ignored.

        Returns True if a row was updated, False if user_id was not found.
        """
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {sorted(unknown)!r}")
        values = _encode_fields(fields)
        values["updated_at"] = _now_iso()
        with self.engine.begin() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**values))
        return result.rowcount > 0

    def update_last_login(self, user_id: int) -> None:
        """Stamp the current UTC timestamp as last_login for the given user."""
        with self.engine.begin() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=_now_iso()))

    # ------------------------------------------------------------------
    # Single-use tokens
    # ------------------------------------------------------------------

    def store_token(self, user_id: int, kind: TokenKind, token_hash: str, expires_at: datetime) -> None:
        """Set the (hash, expiry) pair for kind, replacing any outstanding token."""
        hash_col, exp_col = _TOKEN_COLUMNS[kind]
        with self.engine.begin() as conn:
            conn.execute(
                _users.update()
                .where(_users.c.id == user_id)
                .values({hash_col: token_hash, exp_col: expires_at.isoformat(), "updated_at": _now_iso()})
            )

    def upsert_magic_link_token(self, email: str, token_hash: str, expires_at: datetime) -> tuple[User, bool]:
        """Store a magic-link token for email, creating the account if absent.

        Returns (user, created). New accounts get role "user", unverified
        email, and auth_provider "magic_link".

        Two first-time requests for the same email can both miss the lookup.
        The second INSERT then hits the UNIQUE constraint and falls back to
        replacing the token on the row the first one created.
        """
        normalized = normalize_email(email)
        now = _now_iso()
        token_values = {
            "magic_link_token_hash": token_hash,
            "magic_link_expires_at": expires_at.isoformat(),
            "updated_at": now,
        }
        created = False
        if self.get_by_email(normalized) is None:
            try:
                with self.engine.begin() as conn:
                    conn.execute(
                        _users.insert().values(
                            email=normalized,
                            role="user",
                            staff_roles="[]",
                            email_verified=0,
                            auth_provider="magic_link",
                            created_at=now,
                            **token_values,
                        )
                    )
                created = True
            except IntegrityError:
                logger.info("Magic-link account already created by a concurrent request")
        if not created:
            with self.engine.begin() as conn:
                conn.execute(_users.update().where(_users.c.email == normalized).values(token_values))
        return self.get_by_email(normalized), created

    def consume_token(
        self,
        kind: TokenKind,
        token_hash: str,
        now: datetime,
        **on_success,
    ) -> tuple[ConsumeOutcome, User | None]:
        """Redeem a single-use token by hash. The token is cleared in every found case.

        Args:
            kind:        MAGIC_LINK or PASSWORD_RESET.
            token_hash:  SHA-256 of the raw token from the link.
            now:         Wall-clock instant to test expiry against.
            on_success:  Extra user fields to write in the same UPDATE when
                         the token is valid (e.g. email_verified=True,
                         password_hash=...). Same whitelist as update_user().

        Returns:
            (CONSUMED, user-after-update), (EXPIRED, user-after-clear), or
            (NOT_FOUND, None). NOT_FOUND also covers losing a race against a
            concurrent consumer of the same token.
        """
        unknown = set(on_success) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {sorted(unknown)!r}")
        hash_col, exp_col = _TOKEN_COLUMNS[kind]
        hash_column = _users.c[hash_col]
        cleared = {hash_col: None, exp_col: None, "updated_at": _now_iso()}

        with self.engine.begin() as conn:
            row = conn.execute(_users.select().where(hash_column == token_hash)).first()
            if row is None:
                return ConsumeOutcome.NOT_FOUND, None

            expired = _is_past(getattr(row, exp_col), now)
            values = dict(cleared)
            if not expired:
                values.update(_encode_fields(on_success))
            result = conn.execute(
                _users.update().where((_users.c.id == row.id) & (hash_column == token_hash)).values(values)
            )
            if result.rowcount == 0:
                return ConsumeOutcome.NOT_FOUND, None
            fresh = conn.execute(_users.select().where(_users.c.id == row.id)).fetchone()

        outcome = ConsumeOutcome.EXPIRED if expired else ConsumeOutcome.CONSUMED
        return outcome, _row_to_user(fresh)

    # ------------------------------------------------------------------
    # Organizer credits
    # ------------------------------------------------------------------

    def ensure_organizer_credits(self, organizer_id: int, amount: int) -> bool:
        """Create the starting credit balance if none exists. Returns True if created."""
        with self.engine.begin() as conn:
            existing = conn.execute(
                select(_organizer_credits.c.id).where(_organizer_credits.c.organizer_id == organizer_id)
            ).fetchone()
            if existing is not None:
                return False
            conn.execute(
                _organizer_credits.insert().values(
                    organizer_id=organizer_id,
                    credits_total=amount,
                    credits_used=0,
                    first_event_free_used=0,
                    created_at=_now_iso(),
                )
            )
        return True

    def get_organizer_credits(self, organizer_id: int) -> OrganizerCredits | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _organizer_credits.select().where(_organizer_credits.c.organizer_id == organizer_id)
            ).fetchone()
        return _row_to_credits(row) if row is not None else None

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    try:
        staff_roles = json.loads(row.staff_roles or "[]")
    except ValueError:
        staff_roles = []
    return User(
        id=row.id,
        email=row.email,
        name=row.name,
        password_hash=row.password_hash,
        role=row.role,
        staff_roles=list(staff_roles),
        is_vendor=bool(row.is_vendor),
        is_restaurateur=bool(row.is_restaurateur),
        email_verified=bool(row.email_verified),
        auth_provider=row.auth_provider,
        google_id=row.google_id,
        magic_link_token_hash=row.magic_link_token_hash,
        magic_link_expires_at=row.magic_link_expires_at,
        password_reset_token_hash=row.password_reset_token_hash,
        password_reset_expires_at=row.password_reset_expires_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
        last_login=row.last_login,
    )


def _row_to_credits(row) -> OrganizerCredits:
    return OrganizerCredits(
        id=row.id,
        organizer_id=row.organizer_id,
        credits_total=row.credits_total,
        credits_used=row.credits_used,
        first_event_free_used=bool(row.first_event_free_used),
        created_at=row.created_at,
    )
