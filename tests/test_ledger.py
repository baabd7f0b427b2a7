"""
Tests for SqlEntitlementLedger.

Unit tests with a mocked AsyncSession; statements are compiled against the
PostgreSQL dialect where their shape matters.
"""

from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.dialects import postgresql

from benefit_grant.db.models import Account, PaymentRecord
from benefit_grant.exceptions import (
    AccountNotFoundError,
    LedgerError,
    PaymentAccountMismatchError,
    PaymentFinalizedError,
    PaymentUnderReviewError,
    WriteVerificationError,
)
from benefit_grant.models.api import PaymentState, PlanKind, TriggerChannel
from benefit_grant.services.entitlement_merge import merge_entitlement
from benefit_grant.services.ledger import SqlEntitlementLedger

CREATED_AT = datetime(2026, 3, 1, 12, 0, 0, tzinfo=UTC)


def create_mock_account(
    account_id: str = "acct-1",
    email: str | None = "user@example.com",
    credit_balance: int = 0,
    plan_kind: PlanKind = PlanKind.CREDITS,
    unlimited_total_days: int = 0,
    unlimited_activated_at: datetime | None = None,
) -> MagicMock:
    """Factory function to create mock Account objects."""
    account = MagicMock(spec=Account)
    account.account_id = account_id
    account.email = email
    account.credit_balance = credit_balance
    account.plan_kind = plan_kind
    account.unlimited_total_days = unlimited_total_days
    account.unlimited_activated_at = unlimited_activated_at
    account.unlimited_expires_at = None
    account.last_purchase_amount = None
    account.last_purchase_credits = 0
    account.created_at = CREATED_AT
    account.updated_at = CREATED_AT
    return account


def create_mock_payment(
    payment_ref: str = "pay-1",
    account_id: str = "acct-1",
    amount: Decimal = Decimal("20.00"),
    state: PaymentState = PaymentState.PROCESSING,
    processed: bool = False,
    source_channel: TriggerChannel = TriggerChannel.NOTIFICATION,
) -> MagicMock:
    """Factory function to create mock PaymentRecord objects."""
    payment = MagicMock(spec=PaymentRecord)
    payment.payment_ref = payment_ref
    payment.account_id = account_id
    payment.email = "user@example.com"
    payment.amount = amount
    payment.source_channel = source_channel
    payment.state = state
    payment.processed = processed
    payment.attempts = 1
    payment.credits_granted = 0
    payment.plan_granted = None
    payment.days_granted = 0
    payment.description = None
    payment.receipt_url = None
    payment.last_error = None
    payment.registered_at = CREATED_AT
    payment.processed_at = None
    payment.failed_at = None
    return payment


def execute_results(*values: object) -> list[MagicMock]:
    """Build execute() results whose scalar_one_or_none returns each value in turn."""
    results = []
    for value in values:
        result = MagicMock()
        result.scalar_one_or_none = MagicMock(return_value=value)
        results.append(result)
    return results


def merge_for(amount: str):
    return lambda current, now: merge_entitlement(current, Decimal(amount), now)


def compiled(stmt) -> str:
    return str(stmt.compile(dialect=postgresql.dialect()))


@pytest.fixture
def ledger(session_factory: MagicMock, fixed_now) -> SqlEntitlementLedger:
    return SqlEntitlementLedger(session_factory, clock=lambda: fixed_now)


class TestReads:
    """Tests for keyed reads."""

    async def test_get_payment_found(
        self, ledger: SqlEntitlementLedger, db_session: AsyncMock
    ) -> None:
        db_session.execute = AsyncMock(side_effect=execute_results(create_mock_payment()))

        payment = await ledger.get_payment("pay-1")

        assert payment is not None
        assert payment.payment_ref == "pay-1"
        assert payment.state == PaymentState.PROCESSING
        assert payment.source_channel == TriggerChannel.NOTIFICATION
        assert not payment.is_finalized

    async def test_get_payment_missing(self, ledger: SqlEntitlementLedger) -> None:
        assert await ledger.get_payment("pay-unknown") is None

    async def test_find_account_id_by_email(
        self, ledger: SqlEntitlementLedger, db_session: AsyncMock
    ) -> None:
        result = MagicMock()
        result.scalars = MagicMock(return_value=MagicMock(first=MagicMock(return_value="acct-1")))
        db_session.execute = AsyncMock(return_value=result)

        assert await ledger.find_account_id_by_email("user@example.com") == "acct-1"

    async def test_find_account_id_by_unknown_email(self, ledger: SqlEntitlementLedger) -> None:
        assert await ledger.find_account_id_by_email("nobody@example.com") is None

    async def test_get_entitlement(
        self, ledger: SqlEntitlementLedger, db_session: AsyncMock
    ) -> None:
        db_session.get = AsyncMock(return_value=create_mock_account(credit_balance=40))

        entitlement = await ledger.get_entitlement("acct-1")

        assert entitlement is not None
        assert entitlement.credit_balance == 40
        assert entitlement.plan_kind == PlanKind.CREDITS

    async def test_list_payments(
        self, ledger: SqlEntitlementLedger, db_session: AsyncMock
    ) -> None:
        failed = create_mock_payment(state=PaymentState.FAILED)
        result = MagicMock()
        result.scalars = MagicMock(return_value=MagicMock(all=MagicMock(return_value=[failed])))
        db_session.execute = AsyncMock(return_value=result)

        payments = await ledger.list_payments(PaymentState.FAILED, limit=10)

        assert [p.payment_ref for p in payments] == ["pay-1"]
        assert "LIMIT" in compiled(db_session.execute.call_args.args[0])


class TestMarkProcessing:
    """Tests for the merge-only processing upsert."""

    async def test_upsert_never_touches_processed_rows(
        self, ledger: SqlEntitlementLedger, db_session: AsyncMock
    ) -> None:
        await ledger.mark_processing(
            "pay-1", "acct-1", "user@example.com", Decimal("20"), TriggerChannel.NOTIFICATION
        )

        sql = compiled(db_session.execute.call_args.args[0])
        assert "ON CONFLICT (payment_ref) DO UPDATE" in sql
        assert "WHERE payment_records.processed IS false" in sql
        db_session.commit.assert_awaited_once()

    async def test_upsert_reopens_only_rows_of_the_same_account(
        self, ledger: SqlEntitlementLedger, db_session: AsyncMock
    ) -> None:
        await ledger.mark_processing(
            "pay-1", "acct-1", "user@example.com", Decimal("20"), TriggerChannel.NOTIFICATION
        )

        sql = compiled(db_session.execute.call_args.args[0])
        assert "payment_records.account_id = " in sql
        assert "excluded.amount" in sql
        assert "coalesce(excluded.email, payment_records.email)" in sql

    async def test_automatic_channels_skip_manual_review_rows(
        self, ledger: SqlEntitlementLedger, db_session: AsyncMock
    ) -> None:
        await ledger.mark_processing(
            "pay-1", "acct-1", None, Decimal("37"), TriggerChannel.PAYMENT_CREATED
        )

        assert "payment_records.state != " in compiled(db_session.execute.call_args.args[0])

    async def test_manual_channel_reopens_manual_review_rows(
        self, ledger: SqlEntitlementLedger, db_session: AsyncMock
    ) -> None:
        await ledger.mark_processing("pay-1", "acct-1", None, Decimal("37"), TriggerChannel.MANUAL)

        assert "payment_records.state != " not in compiled(db_session.execute.call_args.args[0])


class TestApplyGrant:
    """Tests for the atomic grant transaction."""

    async def test_grant_updates_account_and_finalizes_payment(
        self, ledger: SqlEntitlementLedger, db_session: AsyncMock, fixed_now
    ) -> None:
        account = create_mock_account(credit_balance=20)
        payment = create_mock_payment()
        db_session.execute = AsyncMock(side_effect=execute_results(payment, account))
        db_session.get = AsyncMock(return_value=account)

        result = await ledger.apply_grant("pay-1", "acct-1", Decimal("20"), merge_for("20"))

        assert account.credit_balance == 145
        assert account.plan_kind == PlanKind.CREDITS
        assert account.last_purchase_amount == Decimal("20")
        assert account.last_purchase_credits == 125
        assert payment.state == PaymentState.APPROVED
        assert payment.processed is True
        assert payment.processed_at == fixed_now
        assert payment.credits_before == 20
        assert payment.credits_after == 145
        assert result.before.credit_balance == 20
        assert result.after.credit_balance == 145
        assert result.payment.is_finalized
        db_session.flush.assert_awaited_once()
        db_session.commit.assert_awaited_once()

    async def test_unlimited_grant_stores_derived_expiry(
        self, ledger: SqlEntitlementLedger, db_session: AsyncMock, fixed_now
    ) -> None:
        account = create_mock_account(credit_balance=50)
        db_session.execute = AsyncMock(
            side_effect=execute_results(create_mock_payment(amount=Decimal("60")), account)
        )
        db_session.get = AsyncMock(return_value=account)

        result = await ledger.apply_grant("pay-1", "acct-1", Decimal("60"), merge_for("60"))

        assert account.plan_kind == PlanKind.UNLIMITED
        assert account.credit_balance == 0
        assert account.unlimited_activated_at == fixed_now
        assert account.unlimited_expires_at == result.after.unlimited_expires_at

    async def test_processed_payment_rejected(
        self, ledger: SqlEntitlementLedger, db_session: AsyncMock
    ) -> None:
        payment = create_mock_payment(state=PaymentState.APPROVED, processed=True)
        db_session.execute = AsyncMock(side_effect=execute_results(payment))

        with pytest.raises(PaymentFinalizedError):
            await ledger.apply_grant("pay-1", "acct-1", Decimal("20"), merge_for("20"))

        db_session.rollback.assert_awaited_once()
        db_session.commit.assert_not_awaited()

    async def test_payment_of_another_account_rejected(
        self, ledger: SqlEntitlementLedger, db_session: AsyncMock
    ) -> None:
        payment = create_mock_payment(account_id="acct-1", state=PaymentState.FAILED)
        db_session.execute = AsyncMock(side_effect=execute_results(payment))

        with pytest.raises(PaymentAccountMismatchError) as exc_info:
            await ledger.apply_grant("pay-1", "acct-2", Decimal("20"), merge_for("20"))

        assert exc_info.value.recorded_account_id == "acct-1"
        assert exc_info.value.account_id == "acct-2"
        assert payment.processed is False
        assert payment.state == PaymentState.FAILED
        assert db_session.execute.await_count == 1
        db_session.rollback.assert_awaited_once()
        db_session.commit.assert_not_awaited()

    async def test_payment_under_review_rejected(
        self, ledger: SqlEntitlementLedger, db_session: AsyncMock
    ) -> None:
        payment = create_mock_payment(
            amount=Decimal("37"), state=PaymentState.NEEDS_MANUAL_REVIEW
        )
        db_session.execute = AsyncMock(side_effect=execute_results(payment))

        with pytest.raises(PaymentUnderReviewError):
            await ledger.apply_grant("pay-1", "acct-1", Decimal("37"), merge_for("37"))

        assert payment.state == PaymentState.NEEDS_MANUAL_REVIEW
        db_session.commit.assert_not_awaited()

    async def test_missing_account(
        self, ledger: SqlEntitlementLedger, db_session: AsyncMock
    ) -> None:
        db_session.execute = AsyncMock(side_effect=execute_results(create_mock_payment(), None))

        with pytest.raises(AccountNotFoundError) as exc_info:
            await ledger.apply_grant("pay-1", "acct-1", Decimal("20"), merge_for("20"))

        assert exc_info.value.account_id == "acct-1"
        db_session.commit.assert_not_awaited()

    async def test_unregistered_payment(
        self, ledger: SqlEntitlementLedger, db_session: AsyncMock
    ) -> None:
        db_session.execute = AsyncMock(side_effect=execute_results(None))

        with pytest.raises(LedgerError, match="not registered"):
            await ledger.apply_grant("pay-1", "acct-1", Decimal("20"), merge_for("20"))

    async def test_unrecognized_amount_sent_to_review(
        self, ledger: SqlEntitlementLedger, db_session: AsyncMock
    ) -> None:
        account = create_mock_account(credit_balance=20)
        payment = create_mock_payment(amount=Decimal("37"))
        db_session.execute = AsyncMock(side_effect=execute_results(payment, account))

        result = await ledger.apply_grant(
            "pay-1", "acct-1", Decimal("37"), merge_for("37"), review_unrecognized=True
        )

        assert account.credit_balance == 20
        assert payment.state == PaymentState.NEEDS_MANUAL_REVIEW
        assert payment.processed is False
        assert not result.grant.recognized
        db_session.get.assert_not_awaited()

    async def test_unrecognized_amount_approved_without_review(
        self, ledger: SqlEntitlementLedger, db_session: AsyncMock
    ) -> None:
        account = create_mock_account(credit_balance=20)
        payment = create_mock_payment(amount=Decimal("37"))
        db_session.execute = AsyncMock(side_effect=execute_results(payment, account))

        await ledger.apply_grant("pay-1", "acct-1", Decimal("37"), merge_for("37"))

        assert account.credit_balance == 20
        assert payment.state == PaymentState.APPROVED
        assert payment.processed is True

    async def test_write_verification_failure_rolls_back(
        self, ledger: SqlEntitlementLedger, db_session: AsyncMock
    ) -> None:
        account = create_mock_account(credit_balance=0)
        db_session.execute = AsyncMock(
            side_effect=execute_results(create_mock_payment(), account)
        )
        db_session.get = AsyncMock(return_value=create_mock_account(credit_balance=999))

        with pytest.raises(WriteVerificationError, match="Credit balance mismatch"):
            await ledger.apply_grant("pay-1", "acct-1", Decimal("20"), merge_for("20"))

        db_session.rollback.assert_awaited_once()
        db_session.commit.assert_not_awaited()


class TestMarkFailed:
    """Tests for failure bookkeeping."""

    async def test_mark_failed_truncates_error(
        self, ledger: SqlEntitlementLedger, db_session: AsyncMock
    ) -> None:
        await ledger.mark_failed("pay-1", "x" * 5000)

        stmt = db_session.execute.call_args.args[0]
        params = stmt.compile(dialect=postgresql.dialect()).params
        assert len(params["last_error"]) == 1000
        assert params["state"] == PaymentState.FAILED
        assert "processed IS false" in compiled(stmt)
        assert "payment_records.state != " in compiled(stmt)
        db_session.commit.assert_awaited_once()

    async def test_attach_receipt_url(
        self, ledger: SqlEntitlementLedger, db_session: AsyncMock
    ) -> None:
        await ledger.attach_receipt_url("pay-1", "https://receipts.example.com/r.pdf")

        params = db_session.execute.call_args.args[0].compile().params
        assert params["receipt_url"] == "https://receipts.example.com/r.pdf"
        db_session.commit.assert_awaited_once()
