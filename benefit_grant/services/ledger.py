"""
Entitlement Ledger - Durable payment state and account entitlements.

The ledger is the source of truth for idempotency. The grant transaction
locks the payment row and the account row (SELECT FOR UPDATE) and re-checks
`processed` inside the same transaction, so two processes that both pass the
pre-transaction check still commit at most one grant.
"""

from collections.abc import Callable
from datetime import datetime
from decimal import Decimal
from typing import Protocol

from sqlalchemy import and_, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from structlog import get_logger

from benefit_grant.db.models import Account, PaymentRecord, utc_now
from benefit_grant.exceptions import (
    AccountNotFoundError,
    LedgerError,
    PaymentAccountMismatchError,
    PaymentFinalizedError,
    PaymentUnderReviewError,
    WriteVerificationError,
)
from benefit_grant.models.api import PaymentState, PlanKind, TriggerChannel
from benefit_grant.models.domain import AccountEntitlement, GrantResult, PaymentData
from benefit_grant.services.entitlement_merge import MergeResult

logger = get_logger(__name__)

MergeFn = Callable[[AccountEntitlement, datetime], MergeResult]

_MAX_ERROR_LENGTH = 1000


class EntitlementLedger(Protocol):
    """
    Ledger protocol used by the grant engine.

    Any store must provide keyed reads, a merge-only "processing" upsert and
    one atomic read-modify-write for the grant itself.
    """

    async def get_payment(self, payment_ref: str) -> PaymentData | None:
        """Read a payment record by reference."""
        ...

    async def mark_processing(
        self,
        payment_ref: str,
        account_id: str,
        email: str | None,
        amount: Decimal,
        source_channel: TriggerChannel,
    ) -> None:
        """
        Upsert the record as `processing`.

        Merge-only: leaves unrelated fields alone. Never touches a processed
        record, a record registered to another account, or (outside the
        manual channel) a record parked for manual review.
        """
        ...

    async def apply_grant(
        self,
        payment_ref: str,
        account_id: str,
        amount: Decimal,
        merge: MergeFn,
        review_unrecognized: bool = False,
    ) -> GrantResult:
        """
        Atomically apply the grant and finalize the payment.

        Raises:
            PaymentFinalizedError: Payment was processed by someone else
            PaymentAccountMismatchError: Record belongs to another account
            PaymentUnderReviewError: Record is parked for manual review
            AccountNotFoundError: Account doesn't exist (nothing written)
        """
        ...

    async def mark_failed(self, payment_ref: str, error: str) -> None:
        """Mark an unprocessed payment as failed (manual review is left alone)."""
        ...

    async def attach_receipt_url(self, payment_ref: str, receipt_url: str) -> None:
        """Store the receipt URL (the only field writable after processing)."""
        ...

    async def find_account_id_by_email(self, email: str) -> str | None:
        """Resolve an account by email."""
        ...

    async def get_entitlement(self, account_id: str) -> AccountEntitlement | None:
        """Read an account's current entitlement."""
        ...


class SqlEntitlementLedger:
    """
    PostgreSQL ledger.

    Each operation runs in its own session from the factory and commits
    before returning. Write operations follow the pattern:
    1. Lock rows
    2. Write
    3. Flush and verify
    4. Commit
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    async def get_payment(self, payment_ref: str) -> PaymentData | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(PaymentRecord).where(PaymentRecord.payment_ref == payment_ref)
            )
            record = result.scalar_one_or_none()
            return _payment_to_domain(record) if record else None

    async def mark_processing(
        self,
        payment_ref: str,
        account_id: str,
        email: str | None,
        amount: Decimal,
        source_channel: TriggerChannel,
    ) -> None:
        now = self._clock()
        insert_stmt = pg_insert(PaymentRecord).values(
            payment_ref=payment_ref,
            account_id=account_id,
            email=email,
            amount=amount,
            source_channel=source_channel,
            state=PaymentState.PROCESSING,
            processed=False,
            attempts=1,
            registered_at=now,
            processing_at=now,
            updated_at=now,
        )
        reopen = and_(
            PaymentRecord.processed.is_(False),
            PaymentRecord.account_id == account_id,
        )
        if source_channel != TriggerChannel.MANUAL:
            # Only an operator retry takes a payment out of manual review
            reopen = and_(reopen, PaymentRecord.state != PaymentState.NEEDS_MANUAL_REVIEW)

        stmt = insert_stmt.on_conflict_do_update(
            index_elements=[PaymentRecord.payment_ref],
            set_={
                "state": PaymentState.PROCESSING,
                "processed": False,
                "source_channel": source_channel,
                "amount": insert_stmt.excluded.amount,
                "email": func.coalesce(insert_stmt.excluded.email, PaymentRecord.email),
                "attempts": PaymentRecord.attempts + 1,
                "processing_at": now,
                "updated_at": now,
            },
            where=reopen,
        )
        async with self._session_factory() as session:
            await session.execute(stmt)
            await session.commit()

        logger.debug(
            "payment_marked_processing",
            payment_ref=payment_ref,
            account_id=account_id,
            source_channel=source_channel.value,
        )

    async def apply_grant(
        self,
        payment_ref: str,
        account_id: str,
        amount: Decimal,
        merge: MergeFn,
        review_unrecognized: bool = False,
    ) -> GrantResult:
        async with self._session_factory() as session:
            try:
                result = await self._apply_grant(
                    session, payment_ref, account_id, amount, merge, review_unrecognized
                )
            except BaseException:
                await session.rollback()
                raise
            await session.commit()
            return result

    async def mark_failed(self, payment_ref: str, error: str) -> None:
        now = self._clock()
        stmt = (
            update(PaymentRecord)
            .where(
                PaymentRecord.payment_ref == payment_ref,
                PaymentRecord.processed.is_(False),
                PaymentRecord.state != PaymentState.NEEDS_MANUAL_REVIEW,
            )
            .values(
                state=PaymentState.FAILED,
                failed_at=now,
                last_error=error[:_MAX_ERROR_LENGTH],
                updated_at=now,
            )
        )
        async with self._session_factory() as session:
            await session.execute(stmt)
            await session.commit()

    async def attach_receipt_url(self, payment_ref: str, receipt_url: str) -> None:
        stmt = (
            update(PaymentRecord)
            .where(PaymentRecord.payment_ref == payment_ref)
            .values(receipt_url=receipt_url, updated_at=self._clock())
        )
        async with self._session_factory() as session:
            await session.execute(stmt)
            await session.commit()

    async def find_account_id_by_email(self, email: str) -> str | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Account.account_id)
                .where(Account.email == email)
                .order_by(Account.created_at)
                .limit(1)
            )
            return result.scalars().first()

    async def get_entitlement(self, account_id: str) -> AccountEntitlement | None:
        async with self._session_factory() as session:
            account = await session.get(Account, account_id)
            return _account_to_domain(account) if account else None

    async def list_payments(self, state: PaymentState, limit: int = 100) -> list[PaymentData]:
        """List payment records in a given state, oldest first."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(PaymentRecord)
                .where(PaymentRecord.state == state)
                .order_by(PaymentRecord.registered_at)
                .limit(limit)
            )
            return [_payment_to_domain(r) for r in result.scalars().all()]

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _apply_grant(
        self,
        session: AsyncSession,
        payment_ref: str,
        account_id: str,
        amount: Decimal,
        merge: MergeFn,
        review_unrecognized: bool,
    ) -> GrantResult:
        payment = await self._lock_payment(session, payment_ref)
        if payment is None:
            raise LedgerError(f"Payment {payment_ref} was not registered before grant")

        # Re-verified under the row lock; the pre-transaction read is advisory
        if payment.processed:
            raise PaymentFinalizedError(payment_ref)
        if payment.account_id != account_id:
            raise PaymentAccountMismatchError(payment_ref, payment.account_id, account_id)
        if payment.state == PaymentState.NEEDS_MANUAL_REVIEW:
            raise PaymentUnderReviewError(payment_ref)

        account = await self._lock_account(session, account_id)
        if account is None:
            raise AccountNotFoundError(account_id)

        now = self._clock()
        before = _account_to_domain(account)
        merged = merge(before, now)
        after = merged.entitlement
        grant = merged.grant

        if merged.changed:
            account.credit_balance = after.credit_balance
            account.plan_kind = after.plan_kind
            account.unlimited_total_days = after.unlimited_total_days
            account.unlimited_activated_at = after.unlimited_activated_at
            account.unlimited_expires_at = after.unlimited_expires_at
            account.last_purchase_amount = amount
            account.last_purchase_credits = grant.credits_granted
            account.updated_at = now

        if grant.recognized or not review_unrecognized:
            payment.state = PaymentState.APPROVED
            payment.processed = True
            payment.processed_at = now
        else:
            payment.state = PaymentState.NEEDS_MANUAL_REVIEW
            payment.processed = False

        payment.credits_granted = grant.credits_granted
        payment.plan_granted = grant.plan_granted
        payment.days_granted = grant.days_granted
        payment.description = grant.description
        payment.credits_before = before.credit_balance
        payment.credits_after = after.credit_balance
        payment.plan_before = before.plan_kind
        payment.plan_after = after.plan_kind
        payment.unlimited_days_before = before.unlimited_total_days
        payment.unlimited_days_after = after.unlimited_total_days
        payment.expires_before = before.unlimited_expires_at
        payment.expires_after = after.unlimited_expires_at
        payment.last_error = None
        payment.updated_at = now

        await session.flush()

        # Verify account was updated
        if grant.recognized:
            verified_account = await session.get(Account, account_id)
            if verified_account is None:
                raise WriteVerificationError(f"Account {account_id} disappeared after update")
            if verified_account.credit_balance != after.credit_balance:
                raise WriteVerificationError(
                    f"Credit balance mismatch: expected {after.credit_balance}, "
                    f"got {verified_account.credit_balance}"
                )

        return GrantResult(
            payment=_payment_to_domain(payment),
            before=before,
            after=after,
            grant=grant,
        )

    async def _lock_payment(self, session: AsyncSession, payment_ref: str) -> PaymentRecord | None:
        """Lock payment row for update (SELECT FOR UPDATE)."""
        stmt = (
            select(PaymentRecord)
            .where(PaymentRecord.payment_ref == payment_ref)
            .with_for_update()
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def _lock_account(self, session: AsyncSession, account_id: str) -> Account | None:
        """Lock account row for update (SELECT FOR UPDATE)."""
        stmt = select(Account).where(Account.account_id == account_id).with_for_update()
        result = await session.execute(stmt)
        return result.scalar_one_or_none()


def _account_to_domain(account: Account) -> AccountEntitlement:
    """Convert ORM account to domain model (expiry is derived, not read)."""
    return AccountEntitlement(
        account_id=account.account_id,
        credit_balance=account.credit_balance,
        plan_kind=PlanKind(account.plan_kind),
        unlimited_total_days=account.unlimited_total_days,
        unlimited_activated_at=account.unlimited_activated_at,
    )


def _payment_to_domain(record: PaymentRecord) -> PaymentData:
    """Convert ORM payment record to domain model."""
    return PaymentData(
        payment_ref=record.payment_ref,
        account_id=record.account_id,
        email=record.email,
        amount=record.amount,
        source_channel=TriggerChannel(record.source_channel),
        state=PaymentState(record.state),
        processed=record.processed,
        credits_granted=record.credits_granted,
        plan_granted=PlanKind(record.plan_granted) if record.plan_granted else None,
        days_granted=record.days_granted,
        description=record.description,
        receipt_url=record.receipt_url,
        last_error=record.last_error,
        attempts=record.attempts,
        registered_at=record.registered_at,
        processed_at=record.processed_at,
        failed_at=record.failed_at,
    )
