"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from benefit_grant.models.api import PaymentState, PlanKind, TriggerChannel


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def _enum(enum_cls: type, name: str, length: int) -> SQLEnum:
    return SQLEnum(
        enum_cls,
        name=name,
        native_enum=False,
        length=length,
        values_callable=lambda x: [e.value for e in x],
    )


class Account(Base):
    """
    ORM model for accounts table.

    One row per account holding its current entitlement.
    """

    __tablename__ = "accounts"

    # Primary Key
    account_id: Mapped[str] = mapped_column(String(255), primary_key=True)

    # Contact information
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Consumable credits
    credit_balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Plan
    plan_kind: Mapped[PlanKind] = mapped_column(
        _enum(PlanKind, "plan_kind", 20), nullable=False, default=PlanKind.CREDITS
    )

    # Unlimited window (expires_at is recomputed from the other two on every write)
    unlimited_total_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unlimited_activated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    unlimited_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Last purchase
    last_purchase_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    last_purchase_credits: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Audit timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("credit_balance >= 0", name="ck_credit_balance_non_negative"),
        CheckConstraint("unlimited_total_days >= 0", name="ck_unlimited_days_non_negative"),
        CheckConstraint(
            "plan_kind <> 'unlimited' OR credit_balance = 0",
            name="ck_unlimited_has_no_credits",
        ),
        Index("idx_accounts_email", "email", postgresql_where=text("email IS NOT NULL")),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<Account(account_id={self.account_id}, plan={self.plan_kind}, "
            f"credits={self.credit_balance}, days={self.unlimited_total_days})>"
        )


class PaymentRecord(Base):
    """
    ORM model for payment_records table.

    One row per payment reference. Immutable once processed, except for
    receipt_url.
    """

    __tablename__ = "payment_records"

    # Primary Key - shared by every trigger channel for one real payment
    payment_ref: Mapped[str] = mapped_column(String(255), primary_key=True)

    # Target
    account_id: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    source_channel: Mapped[TriggerChannel] = mapped_column(
        _enum(TriggerChannel, "trigger_channel", 20), nullable=False
    )

    # State machine
    state: Mapped[PaymentState] = mapped_column(
        _enum(PaymentState, "payment_state", 30), nullable=False, default=PaymentState.UNSEEN
    )
    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Grant
    credits_granted: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    plan_granted: Mapped[PlanKind | None] = mapped_column(
        _enum(PlanKind, "plan_kind", 20), nullable=True
    )
    days_granted: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Entitlement snapshots (denormalized for auditing)
    credits_before: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    credits_after: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    plan_before: Mapped[PlanKind | None] = mapped_column(
        _enum(PlanKind, "plan_kind", 20), nullable=True
    )
    plan_after: Mapped[PlanKind | None] = mapped_column(
        _enum(PlanKind, "plan_kind", 20), nullable=True
    )
    unlimited_days_before: Mapped[int | None] = mapped_column(Integer, nullable=True)
    unlimited_days_after: Mapped[int | None] = mapped_column(Integer, nullable=True)
    expires_before: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    expires_after: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Side effects and diagnostics
    receipt_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Timestamps
    registered_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    processing_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payment_amount_positive"),
        CheckConstraint(
            "processed = false OR state = 'approved'",
            name="ck_processed_only_when_approved",
        ),
        Index("idx_payment_records_account_id", "account_id"),
        Index("idx_payment_records_state", "state"),
        Index("idx_payment_records_registered_at", "registered_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<PaymentRecord(payment_ref={self.payment_ref}, account_id={self.account_id}, "
            f"state={self.state}, processed={self.processed})>"
        )
