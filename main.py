#!/usr/bin/env python3
"""
ticketgate -- operator commands for the credential store.

Usage:
  python main.py create-user ops@example.com --role admin --password 'long-secret'
  python main.py create-user crew@example.com --staff STAFF --staff TEAM_MEMBERS
  python main.py create-user chef@example.com --restaurateur
  python main.py set-roles crew@example.com --role organizer --staff ASSOCIATES
  python main.py set-roles crew@example.com --clear-staff --vendor
  python main.py issue-token ops@example.com
  python main.py list-users --role organizer

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the credential store (default: local SQLite file).
  JWT_SECRET    Signing secret; issue-token output only verifies against the same value.
"""

import argparse
import sys
from typing import Optional

from sqlalchemy.exc import IntegrityError

from auth.models import PRIMARY_ROLES, ROLE_ADMIN, ROLE_ORGANIZER, ROLE_USER, STAFF_ROLES, SessionClaims, User
from auth.store import UserStore, normalize_email
from auth.tokens import create_session_token, hash_password, password_length_error
from core.config import get_settings


def _open_store() -> UserStore:
    database_url = get_settings().database_url
    return UserStore(database_url) if database_url else UserStore()


def _check_password(password: Optional[str]) -> Optional[str]:
    if password is None:
        return None
    return password_length_error(password, get_settings().password_min_length)


def cmd_create_user(args: argparse.Namespace, store: UserStore) -> int:
    error = _check_password(args.password)
    if error:
        print(f"  [!] {error}")
        return 2
    user = User(
        email=normalize_email(args.email),
        name=args.name,
        role=args.role,
        password_hash=hash_password(args.password) if args.password else None,
        staff_roles=sorted(set(args.staff or [])),
        is_vendor=args.vendor,
        is_restaurateur=args.restaurateur,
        email_verified=True,
        auth_provider="password" if args.password else "magic_link",
    )
    try:
        user_id = store.create_user(user)
    except IntegrityError:
        print(f"  [!] An account for {user.email} already exists.")
        return 1
    if args.role in (ROLE_ORGANIZER, ROLE_ADMIN):
        store.ensure_organizer_credits(user_id, get_settings().organizer_starting_credits)
    print(f"  Created user {user.email} (id={user_id}, role={args.role}).")
    return 0


def cmd_set_roles(args: argparse.Namespace, store: UserStore) -> int:
    user = store.get_by_email(args.email)
    if user is None:
        print(f"  [!] No account for {normalize_email(args.email)}.")
        return 1

    updates: dict = {}
    if args.role is not None:
        updates["role"] = args.role
    if args.clear_staff or args.staff:
        staff = set() if args.clear_staff else set(user.staff_roles)
        staff.update(args.staff or [])
        updates["staff_roles"] = sorted(staff)
    if args.vendor is not None:
        updates["is_vendor"] = args.vendor
    if args.restaurateur is not None:
        updates["is_restaurateur"] = args.restaurateur

    if not updates:
        print("  [!] Nothing to change.")
        return 2

    store.update_user(user.id, **updates)
    if updates.get("role") in (ROLE_ORGANIZER, ROLE_ADMIN):
        store.ensure_organizer_credits(user.id, get_settings().organizer_starting_credits)
    updated = store.get_by_id(user.id)
    staff_label = ", ".join(updated.staff_roles) or "none"
    print(
        f"  Updated {updated.email}: role={updated.role}, staff={staff_label}, "
        f"vendor={updated.is_vendor}, restaurateur={updated.is_restaurateur}"
    )
    print("  Existing sessions keep their old claims until they expire or the user signs in again.")
    return 0


def cmd_issue_token(args: argparse.Namespace, store: UserStore) -> int:
    user = store.get_by_email(args.email)
    if user is None:
        print(f"  [!] No account for {normalize_email(args.email)}.")
        return 1
    print(create_session_token(SessionClaims.from_user(user)))
    return 0


def cmd_list_users(args: argparse.Namespace, store: UserStore) -> int:
    users = store.list_users()
    if args.role:
        users = [u for u in users if u.role == args.role]
    for user in users:
        flags = [name for name, on in (("vendor", user.is_vendor), ("restaurateur", user.is_restaurateur)) if on]
        print(
            f"  {user.id:>5}  {user.email:<40} {user.role:<10} "
            f"staff={','.join(user.staff_roles) or '-'} flags={','.join(flags) or '-'}"
        )
    print(f"  {len(users)} account(s).")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ticketgate",
        description="Manage accounts and roles in the ticketgate credential store.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    create = sub.add_parser("create-user", help="Create an account")
    create.add_argument("email")
    create.add_argument("--name", default=None)
    create.add_argument("--role", choices=sorted(PRIMARY_ROLES), default=ROLE_USER)
    create.add_argument("--password", default=None, help="Omit for a magic-link-only account")
    create.add_argument(
        "--staff", action="append", choices=sorted(STAFF_ROLES), metavar="STAFF_ROLE",
        help="Staff role to grant (repeatable): " + ", ".join(sorted(STAFF_ROLES)),
    )
    create.add_argument("--vendor", action="store_true")
    create.add_argument("--restaurateur", action="store_true")
    create.set_defaults(func=cmd_create_user)

    roles = sub.add_parser("set-roles", help="Change role, staff roles or capability flags")
    roles.add_argument("email")
    roles.add_argument("--role", choices=sorted(PRIMARY_ROLES), default=None)
    roles.add_argument("--staff", action="append", choices=sorted(STAFF_ROLES), metavar="STAFF_ROLE")
    roles.add_argument("--clear-staff", action="store_true", help="Drop existing staff roles first")
    roles.add_argument("--vendor", dest="vendor", action="store_true", default=None)
    roles.add_argument("--no-vendor", dest="vendor", action="store_false")
    roles.add_argument("--restaurateur", dest="restaurateur", action="store_true", default=None)
    roles.add_argument("--no-restaurateur", dest="restaurateur", action="store_false")
    roles.set_defaults(func=cmd_set_roles)

    listing = sub.add_parser("list-users", help="List accounts with their roles and flags")
    listing.add_argument("--role", choices=sorted(PRIMARY_ROLES), default=None)
    listing.set_defaults(func=cmd_list_users)

    issue = sub.add_parser("issue-token", help="Print a session token for an existing account")
    issue.add_argument("email")
    issue.set_defaults(func=cmd_issue_token)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 2
    store = _open_store()
    try:
        return args.func(args, store)
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
