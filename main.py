#!/usr/bin/env python3
"""
CertGuard -- administration CLI.

Usage:
  python main.py create-admin root@example.edu
  python main.py create-admin root@example.edu --password 'S3cure!Passw0rd' --role registrar
  python main.py check-password 'Password123!'
  python main.py check-password 'hunter2' --json

Environment variables:
  DATABASE_URL   SQLAlchemy URL of the user database (default: auth/certguard_auth.db)
  PASSWORD_MIN_LENGTH, REQUIRE_STRONG_PASSWORD   Same policy knobs the API uses.
  SECRET_KEY / REFRESH_SECRET_KEY (or DEBUG=true) are required because the
  settings object is shared with the API.
"""

import argparse
import getpass
import json
import sys

from sqlalchemy.exc import IntegrityError

from auth.errors import PolicyViolation
from auth.models import User
from auth.password_policy import PasswordPolicyEngine
from auth.store import UserStore
from auth.tokens import hash_password
from core.config import get_settings


def _policy() -> PasswordPolicyEngine:
    settings = get_settings()
    return PasswordPolicyEngine(
        min_length=settings.password_min_length,
        enforce_strength=settings.require_strong_password,
    )


def _open_store() -> UserStore:
    settings = get_settings()
    return UserStore(settings.database_url) if settings.database_url else UserStore()


def cmd_create_admin(args: argparse.Namespace) -> int:
    password = args.password
    if password is None:
        password = getpass.getpass("Password: ")
        if password != getpass.getpass("Confirm password: "):
            print("  [!] Passwords do not match.")
            return 1

    try:
        _policy().enforce(password)
    except PolicyViolation as exc:
        print(f"  [!] {exc.message}")
        for error in exc.errors:
            print(f"      - {error}")
        return 1

    store = _open_store()
    try:
        hashed = hash_password(password)
        user_id = store.create_user(
            User(email=args.email, role=args.role, hashed_password=hashed, password_history=[hashed])
        )
    except IntegrityError:
        print(f"  [!] A user with email '{args.email}' already exists.")
        return 1
    finally:
        store.close()

    print(f"  Created {args.role} {args.email.lower()} (id={user_id})")
    return 0


def cmd_check_password(args: argparse.Namespace) -> int:
    result = _policy().score(args.password)
    if args.json:
        print(json.dumps({"score": result.score, "level": result.level, "valid": result.valid, "errors": result.errors}))
    else:
        print(f"  Score: {result.score}/100 ({result.level})")
        for error in result.errors:
            print(f"  [!] {error}")
        if result.valid:
            print("  Meets policy.")
    return 0 if result.valid else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="certguard", description="CertGuard administration CLI")
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create-admin", help="Create an administrative account")
    create.add_argument("email")
    create.add_argument("--password", help="Password (prompted when omitted)")
    create.add_argument("--role", choices=["admin", "registrar"], default="admin")
    create.set_defaults(func=cmd_create_admin)

    check = sub.add_parser("check-password", help="Score a password against the policy")
    check.add_argument("password")
    check.add_argument("--json", action="store_true", help="Machine-readable output")
    check.set_defaults(func=cmd_check_password)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
