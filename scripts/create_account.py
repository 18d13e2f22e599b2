from __future__ import annotations

import argparse
import asyncio
import getpass
import sys

from cero.services.auth.passwords import hash_password


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Create an account with its first user and a free subscription")
    parser.add_argument("--name", help="Account name")
    parser.add_argument("--email", help="Login email of the first user")
    parser.add_argument("--role", default="user", help="Role: user|admin")
    parser.add_argument(
        "--print-hash",
        action="store_true",
        help="Only print a bcrypt hash of the prompted password (for ADMIN_PASSWORD_HASH)",
    )
    return parser


def _prompt_password() -> str:
    password = getpass.getpass("Password: ")
    if password != getpass.getpass("Repeat password: "):
        raise ValueError("Passwords do not match")
    if not password:
        raise ValueError("Password must not be empty")
    return password


async def _create_account(args: argparse.Namespace, password: str) -> int:
    from cero.persistence.db import SessionLocal
    from cero.services.accounts import provision_account

    async with SessionLocal() as session:
        account, user = await provision_account(
            session,
            name=args.name,
            email=args.email,
            password=password,
            role=args.role,
        )
    print("Account created:")
    print(f"  account_id: {account.id}")
    print(f"  user_id: {user.id}")
    print(f"  role: {user.role}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        password = _prompt_password()
        if args.print_hash:
            print(hash_password(password))
            return 0
        if not args.name or not args.email:
            parser.error("--name and --email are required")
        return asyncio.run(_create_account(args, password))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"create_account failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
