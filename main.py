#!/usr/bin/env python3
"""
FieldTrack -- account administration from the command line.

There is no admin UI for roles. The first admin (and any later role change)
is made here, directly against DATABASE_URL.

Usage:
  python main.py create-account --full-name "Ram Thapa" --email ram@snowfun.com.np --role admin
  python main.py create-account --full-name "Sita Rai" --phone 9841234567
  python main.py set-role ram@snowfun.com.np psr
  python main.py list-accounts

Environment variables:
  DATABASE_URL  SQLAlchemy URL of the account database (default sqlite:///fieldtrack_auth.db)
  SECRET_KEY    Required unless DEBUG=true (settings are validated on load)
"""

import argparse
import getpass
import sys
from typing import Optional

from sqlalchemy.exc import IntegrityError

from auth.models import Account, Role
from auth.phone import normalize_phone
from auth.service import password_policy_errors
from auth.store import AccountStore
from auth.tokens import hash_password
from core.config import get_settings


def _find(store: AccountStore, identifier: str) -> Optional[Account]:
    """Resolve an email, phone number or account id to an account."""
    if "@" in identifier:
        return store.find_by_email(identifier)
    try:
        return store.find_by_phone(normalize_phone(identifier))
    except ValueError:
        return store.find_by_id(identifier)


def cmd_create_account(store: AccountStore, args: argparse.Namespace) -> int:
    full_name = args.full_name.strip()
    if not 2 <= len(full_name) <= 100:
        print("Full name must be between 2 and 100 characters.", file=sys.stderr)
        return 1
    if not args.email and not args.phone:
        print("Provide --email, --phone, or both.", file=sys.stderr)
        return 1

    phone = None
    if args.phone:
        try:
            phone = normalize_phone(args.phone)
        except ValueError as e:
            print(str(e), file=sys.stderr)
            return 1

    password_hash = None
    if args.email:
        password = args.password or getpass.getpass("Password: ")
        errors = password_policy_errors(password)
        if errors:
            for err in errors:
                print(err.message, file=sys.stderr)
            return 1
        password_hash = hash_password(password)

    try:
        account = store.create(
            Account(
                full_name=full_name,
                email=args.email,
                phone=phone,
                role=Role(args.role),
                password_hash=password_hash,
            )
        )
    except IntegrityError:
        print("An account with this email or phone already exists.", file=sys.stderr)
        return 1
    print(f"Created account {account.id} ({account.email or account.phone}) with role '{account.role.value}'.")
    return 0


def cmd_set_role(store: AccountStore, args: argparse.Namespace) -> int:
    account = _find(store, args.account)
    if account is None:
        print(f"No account matches '{args.account}'.", file=sys.stderr)
        return 1
    account.role = Role(args.role)
    store.save(account)
    # Takes effect on the next login or token refresh; issued access tokens
    # keep the old role until they expire.
    print(f"Account {account.id} now has role '{account.role.value}'.")
    return 0


def cmd_list_accounts(store: AccountStore, args: argparse.Namespace) -> int:
    accounts = store.list_accounts()
    if not accounts:
        print("No accounts.")
        return 0
    print(f"{'ID':<36}  {'ROLE':<5}  {'ACTIVE':<6}  {'EMAIL':<30}  {'PHONE':<14}  NAME")
    for a in accounts:
        print(
            f"{a.id:<36}  {a.role.value:<5}  {'yes' if a.is_active else 'no':<6}  "
            f"{a.email or '-':<30}  {a.phone or '-':<14}  {a.full_name}"
        )
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="fieldtrack",
        description="FieldTrack account administration.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create-account", help="Create an account (e.g. the first admin)")
    create.add_argument("--full-name", required=True, help="Display name (2-100 chars)")
    create.add_argument("--email", help="Login email; requires a password")
    create.add_argument("--phone", help="Nepali mobile number for OTP login")
    create.add_argument("--password", help="Password (prompted when omitted and --email is given)")
    create.add_argument("--role", choices=[r.value for r in Role], default=Role.PSR.value)
    create.set_defaults(func=cmd_create_account)

    set_role = sub.add_parser("set-role", help="Change an account's role")
    set_role.add_argument("account", help="Email, phone or account id")
    set_role.add_argument("role", choices=[r.value for r in Role])
    set_role.set_defaults(func=cmd_set_role)

    listing = sub.add_parser("list-accounts", help="Print every account")
    listing.set_defaults(func=cmd_list_accounts)

    args = parser.parse_args(argv)
    store = AccountStore(get_settings().database_url)
    try:
        return args.func(store, args)
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
