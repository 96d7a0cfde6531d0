#!/usr/bin/env python3
"""
Pecal operator CLI -- back-office account chores that must not go through HTTP.

Usage:
  python main.py create-admin alice --name "Alice Kim" --email alice@example.com
  python main.py create-admin root --role super_admin
  python main.py unlock alice 203.0.113.7

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the Pecal database (default: sqlite pecal.db)
  SECRET_KEY    Not needed by these commands, but Settings validates it;
                set DEBUG=true for local use.
"""

import argparse
import getpass
import sys
from typing import Optional

from sqlalchemy.exc import IntegrityError

from auth.guard import normalize_account
from auth.models import AdminAccount
from auth.store import AuthStore
from auth.tokens import hash_password
from core.config import get_settings

_MIN_PASSWORD_LENGTH = 12
_MAX_PASSWORD_LENGTH = 128


def _read_password() -> Optional[str]:
    """Prompt twice without echo. Returns None (after printing why) on mismatch or bad length."""
    first = getpass.getpass("  Password: ")
    second = getpass.getpass("  Repeat:   ")
    if first != second:
        print("  [!] Passwords do not match.")
        return None
    if not _MIN_PASSWORD_LENGTH <= len(first) <= _MAX_PASSWORD_LENGTH:
        print(f"  [!] Password must be {_MIN_PASSWORD_LENGTH}-{_MAX_PASSWORD_LENGTH} characters.")
        return None
    return first


def create_admin(
    store: AuthStore,
    username: str,
    password: str,
    name: Optional[str] = None,
    email: Optional[str] = None,
    role: str = "admin",
) -> int:
    """Create an admin account with a normalized username. Returns the new admin id.

    Raises sqlalchemy.exc.IntegrityError if the username is taken.
    """
    admin = AdminAccount(
        username=normalize_account(username),
        hashed_password=hash_password(password),
        name=name,
        email=email,
        role=role,
    )
    return store.create_admin(admin)


def unlock(store: AuthStore, username: str, ip_address: str) -> bool:
    """Delete the failure counter for (username, ip_address). Returns False if none existed."""
    return store.delete_login_attempt(normalize_account(username), ip_address)


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="pecal",
        description="Pecal operator commands.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-admin alice --name "Alice Kim"
  python main.py unlock alice 203.0.113.7
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p_create = sub.add_parser("create-admin", help="Create a back-office admin account (prompts for password)")
    p_create.add_argument("username", help="Login name; stored trimmed and lower-cased")
    p_create.add_argument("--name", default=None, help="Display name")
    p_create.add_argument("--email", default=None, help="Contact email")
    p_create.add_argument(
        "--role",
        choices=["admin", "super_admin"],
        default="admin",
        help="Account role (default: admin). super_admin may lift lockouts over HTTP.",
    )

    p_unlock = sub.add_parser("unlock", help="Lift a login lockout for one (username, address) pair")
    p_unlock.add_argument("username", help="Admin username as typed at login")
    p_unlock.add_argument("ip_address", help="Client address the lockout was recorded for")

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    store = AuthStore(get_settings().database_url)
    try:
        if args.command == "create-admin":
            password = _read_password()
            if password is None:
                return 1
            try:
                admin_id = create_admin(store, args.username, password, args.name, args.email, args.role)
            except IntegrityError:
                print(f"  [!] Admin '{normalize_account(args.username)}' already exists.")
                return 1
            print(f"  Created {args.role} '{normalize_account(args.username)}' (id={admin_id}).")
            return 0

        if unlock(store, args.username, args.ip_address):
            print(f"  Lockout cleared for '{normalize_account(args.username)}' from {args.ip_address}.")
        else:
            print("  No failure record found; nothing to clear.")
        return 0
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
