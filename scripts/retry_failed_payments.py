#!/usr/bin/env python3
"""
Retry Failed Payments Script

Lists payment records left in `failed` (or `needs_manual_review`) state and,
with --retry, re-runs the grant for each one through the normal engine.
Already-granted payments are reported as already processed, so re-running the
script is harmless.

Usage:
    python scripts/retry_failed_payments.py
    python scripts/retry_failed_payments.py --state needs_manual_review
    python scripts/retry_failed_payments.py --retry --limit 20
"""

import argparse
import asyncio
import os
import sys

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from benefit_grant.config import settings
from benefit_grant.db.session import close_engine, get_session_factory
from benefit_grant.models.api import GrantStatus, PaymentState, TriggerChannel
from benefit_grant.models.domain import PaymentData
from benefit_grant.observability.logging import get_logger, setup_logging
from benefit_grant.services.catalog import get_catalog
from benefit_grant.services.grant_engine import GrantEngine
from benefit_grant.services.ledger import SqlEntitlementLedger

logger = get_logger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="List and retry failed payment grants")
    parser.add_argument(
        "--state",
        choices=[PaymentState.FAILED.value, PaymentState.NEEDS_MANUAL_REVIEW.value],
        default=PaymentState.FAILED.value,
        help="Payment state to select (default: failed)",
    )
    parser.add_argument("--limit", type=int, default=100, help="Maximum records to process")
    parser.add_argument(
        "--retry",
        action="store_true",
        help="Re-run the grant for each record (default: list only)",
    )
    return parser.parse_args(argv)


def describe(payment: PaymentData) -> str:
    """One line per payment for the operator."""
    return (
        f"{payment.payment_ref}  account={payment.account_id}  amount={payment.amount}  "
        f"attempts={payment.attempts}  error={payment.last_error or '-'}"
    )


async def retry_payments(
    engine: GrantEngine, payments: list[PaymentData]
) -> dict[GrantStatus, int]:
    """Re-run the grant for each payment, returning a tally by outcome."""
    tally: dict[GrantStatus, int] = {}
    for payment in payments:
        outcome = await engine.grant_benefit(
            account_id=payment.account_id,
            email=payment.email,
            amount_paid=payment.amount,
            source_channel=TriggerChannel.MANUAL,
            payment_ref=payment.payment_ref,
        )
        tally[outcome.status] = tally.get(outcome.status, 0) + 1
        logger.info(
            "payment_retried",
            payment_ref=payment.payment_ref,
            grant_status=outcome.status.value,
            detail=outcome.detail,
        )
    return tally


async def run(args: argparse.Namespace) -> int:
    ledger = SqlEntitlementLedger(get_session_factory())
    try:
        payments = await ledger.list_payments(PaymentState(args.state), limit=args.limit)
        print(f"{len(payments)} payment(s) in state {args.state}")
        for payment in payments:
            print("  " + describe(payment))

        if not args.retry or not payments:
            return 0

        # Receipts are not re-issued for manual retries
        async with GrantEngine(
            ledger=ledger,
            catalog=get_catalog(),
            lock_wait_timeout=settings.lock_wait_timeout_seconds,
            courtesy_credits=settings.courtesy_credits,
            unrecognized_amount_policy=settings.unrecognized_amount_policy,
        ) as engine:
            tally = await retry_payments(engine, payments)

        for grant_status, count in sorted(tally.items(), key=lambda item: item[0].value):
            print(f"{grant_status.value}: {count}")
        return 1 if tally.get(GrantStatus.ERROR) else 0
    finally:
        await close_engine()


def main() -> None:
    """Main entry point."""
    setup_logging()
    args = parse_args()
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
