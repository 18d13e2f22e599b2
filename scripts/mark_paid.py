from __future__ import annotations

import argparse
import asyncio
import sys

from cero.persistence.db import SessionLocal
from cero.services.audit import record_event
from cero.services.subscriptions import mark_paid


def _build_parser() -> argparse.ArgumentParser:
    # Operator fallback for recording a manual payment without the admin UI.
    parser = argparse.ArgumentParser(description="Record a confirmed manual payment for an account")
    parser.add_argument("--account-id", type=int, required=True, help="Account receiving the plan")
    parser.add_argument("--plan", required=True, help="Plan: free|pro|enterprise")
    parser.add_argument("--days", type=int, required=True, help="Length of the paid period in days")
    parser.add_argument("--amount-cents", type=int, required=True, help="Amount received in minor units")
    parser.add_argument("--currency", default="USD")
    parser.add_argument("--method", default="manual", help="Payment method label")
    parser.add_argument("--reference", default="", help="Invoice or receipt reference")
    parser.add_argument("--notes", default=None)
    return parser


async def _mark_paid(args: argparse.Namespace) -> int:
    async with SessionLocal() as session:
        billing_event = await mark_paid(
            session,
            account_id=args.account_id,
            plan=args.plan,
            duration_days=args.days,
            amount_cents=args.amount_cents,
            currency=args.currency,
            payment_method=args.method,
            reference=args.reference,
            admin_id=None,
            notes=args.notes,
        )
        await record_event(
            session=session,
            account_id=args.account_id,
            user_id=None,
            action="payment",
            outcome="success",
            resource_type="billing_event",
            resource_id=billing_event.id,
            details={"plan": args.plan, "duration_days": args.days, "source": "mark_paid_script"},
            commit=True,
            best_effort=False,
        )
    print(f"billing_event_id={billing_event.id} plan={billing_event.new_plan} status={billing_event.new_status}")
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_mark_paid(args))
    except Exception as exc:  # noqa: BLE001 - surface billing failures clearly
        print(f"mark_paid failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
