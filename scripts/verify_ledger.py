from __future__ import annotations

import argparse
import asyncio
import sys

from sqlalchemy import select

from cero.domain.models import Account
from cero.persistence.db import SessionLocal
from cero.services.billing import verify_ledger


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Replay billing ledgers and compare them to stored subscriptions")
    parser.add_argument("--account-id", type=int, default=None, help="Check one account instead of all")
    return parser


async def _verify(args: argparse.Namespace) -> int:
    mismatches = 0
    async with SessionLocal() as session:
        if args.account_id is not None:
            account_ids = [args.account_id]
        else:
            result = await session.execute(select(Account.id).order_by(Account.id))
            account_ids = list(result.scalars().all())
        for account_id in account_ids:
            check = await verify_ledger(session, account_id=account_id)
            if check.consistent:
                continue
            mismatches += 1
            print(
                f"account_id={account_id} events={check.event_count} "
                f"replayed={check.replayed} stored={check.stored} chain_error={check.chain_error}"
            )
    print(f"checked_accounts={len(account_ids)} mismatches={mismatches}")
    return 1 if mismatches else 0


def main() -> int:
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_verify(args))
    except Exception as exc:  # noqa: BLE001 - surface store failures clearly
        print(f"verify_ledger failed: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
