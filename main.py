#!/usr/bin/env python3
"""
authkeeper -- Operator CLI for the credential store.

Runs AuthService directly against DATABASE_URL. Every command here is
privileged internal tooling: there is no login, and rate limiting is reported
instead of hidden.

Usage:
  python main.py create-account admin@example.com --role admin
  python main.py create-account john@example.com --name "John" --pending
  python main.py reset-link john@example.com
  python main.py ban john@example.com
  python main.py ban john@example.com --undo
  python main.py sweep

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the auth database (default: SQLite next to auth/store.py)
  SECRET_KEY    Must match the API's key, or generated links will not verify
  APP_URL       Base URL used to build reset links
"""

import argparse
import getpass
import logging
import sys
from typing import Optional
from urllib.parse import urlencode

from auth.credentials import password_policy_errors
from auth.email import build_email_sender
from auth.errors import AuthError
from auth.models import AccountStatus, Role
from auth.service import AuthService
from auth.store import AuthStore
from core.config import Settings, get_settings


def _read_password(given: Optional[str]) -> Optional[str]:
    """Return the password from the flag, or prompt twice for it."""
    if given:
        return given
    first = getpass.getpass("  Password: ")
    second = getpass.getpass("  Confirm:  ")
    if first != second:
        print("  [!] Passwords do not match.")
        return None
    return first


def _cmd_create_account(service: AuthService, settings: Settings, args: argparse.Namespace) -> int:
    password = _read_password(args.password)
    if password is None:
        return 1
    problems = password_policy_errors(password)
    if problems:
        for problem in problems:
            print(f"  [!] {problem}")
        return 1
    status = AccountStatus.PENDING if args.pending else AccountStatus.ACTIVE
    account = service.create_account(args.email, password, args.name, role=Role(args.role), status=status)
    print(f"  Created account {account.id}: {account.email} ({account.role.value}, {account.status.value})")
    return 0


def _cmd_reset_link(service: AuthService, settings: Settings, args: argparse.Namespace) -> int:
    result = service.request_password_reset(args.email, privileged=True)
    link = f"{settings.app_url.rstrip('/')}/reset-password?{urlencode({'token': result['token']})}"
    print(f"  Reset link for {args.email} (single use):")
    print(f"  {link}")
    return 0


def _cmd_ban(service: AuthService, settings: Settings, args: argparse.Namespace) -> int:
    account = service.store.get_by_email(args.email)
    if account is None:
        print(f"  [!] No account for {args.email}.")
        return 1
    status = AccountStatus.ACTIVE if args.undo else AccountStatus.BANNED
    account = service.apply_account_status(account.id, status)
    print(f"  Account {account.id} is now {account.status.value}.")
    return 0


def _cmd_sweep(service: AuthService, settings: Settings, args: argparse.Namespace) -> int:
    result = service.run_sweep()
    print(f"  Removed {result['recovery_tokens']} expired recovery token(s) and {result['sessions']} session(s).")
    return 0


_COMMANDS = {
    "create-account": _cmd_create_account,
    "reset-link": _cmd_reset_link,
    "ban": _cmd_ban,
    "sweep": _cmd_sweep,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="authkeeper",
        description="Operator tooling for the authkeeper credential store.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py create-account admin@example.com --role admin
  python main.py reset-link john@example.com
  python main.py ban john@example.com
  python main.py sweep
        """,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    create = sub.add_parser("create-account", help="Create an account (active and verified unless --pending)")
    create.add_argument("email")
    create.add_argument("--name", default="", help="Display name")
    create.add_argument(
        "--role",
        choices=[r.value for r in Role],
        default=Role.USER.value,
        help="Account role (default: user)",
    )
    create.add_argument("--password", default=None, help="Password (prompted when omitted)")
    create.add_argument("--pending", action="store_true", help="Leave the account unverified")

    reset = sub.add_parser("reset-link", help="Issue a password reset token and print the link")
    reset.add_argument("email")

    ban = sub.add_parser("ban", help="Ban an account and revoke its sessions")
    ban.add_argument("email")
    ban.add_argument("--undo", action="store_true", help="Reactivate a banned account instead")

    sub.add_parser("sweep", help="Delete expired recovery tokens and sessions")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1

    logging.basicConfig(level=logging.WARNING, format="%(levelname)-5s %(name)s %(message)s")
    settings = get_settings()
    store = AuthStore(settings.database_url)
    service = AuthService(store, settings, email_sender=build_email_sender(settings))
    try:
        return _COMMANDS[args.command](service, settings, args)
    except AuthError as exc:
        print(f"  [!] {exc.message}")
        return 1
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
