"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal

from benefit_grant.models.api import GrantStatus, PaymentState, PlanKind, TriggerChannel


@dataclass(frozen=True)
class AccountEntitlement:
    """Immutable snapshot of an account's current entitlement."""

    account_id: str
    credit_balance: int = 0
    plan_kind: PlanKind = PlanKind.CREDITS
    unlimited_total_days: int = 0
    unlimited_activated_at: datetime | None = None

    def __post_init__(self) -> None:
        """Validate entitlement invariants."""
        if not self.account_id:
            raise ValueError("account_id cannot be empty")
        if self.credit_balance < 0:
            raise ValueError(f"Credit balance cannot be negative: {self.credit_balance}")
        if self.unlimited_total_days < 0:
            raise ValueError(f"Unlimited days cannot be negative: {self.unlimited_total_days}")
        if self.plan_kind == PlanKind.UNLIMITED and self.credit_balance != 0:
            raise ValueError("Unlimited plan must carry a zero credit balance")

    @property
    def unlimited_expires_at(self) -> datetime | None:
        """Expiry is always derived from activation + total days."""
        if self.unlimited_activated_at is None:
            return None
        return self.unlimited_activated_at + timedelta(days=self.unlimited_total_days)

    def has_active_window(self, now: datetime) -> bool:
        """A window expiring exactly at `now` is not active."""
        expires_at = self.unlimited_expires_at
        return (
            self.plan_kind == PlanKind.UNLIMITED
            and expires_at is not None
            and expires_at > now
        )


@dataclass(frozen=True)
class GrantDetails:
    """What a single payment granted."""

    credits_granted: int
    plan_granted: PlanKind | None
    days_granted: int
    description: str
    recognized: bool = True


@dataclass(frozen=True)
class PaymentData:
    """Immutable payment record snapshot."""

    payment_ref: str
    account_id: str
    email: str | None
    amount: Decimal
    source_channel: TriggerChannel
    state: PaymentState
    processed: bool
    credits_granted: int = 0
    plan_granted: PlanKind | None = None
    days_granted: int = 0
    description: str | None = None
    receipt_url: str | None = None
    last_error: str | None = None
    attempts: int = 0
    registered_at: datetime | None = None
    processed_at: datetime | None = None
    failed_at: datetime | None = None

    @property
    def is_finalized(self) -> bool:
        """True once the entitlement write has committed."""
        return self.processed and self.state == PaymentState.APPROVED

    def to_grant(self) -> GrantDetails:
        """Rebuild the original grant from the persisted record."""
        return GrantDetails(
            credits_granted=self.credits_granted,
            plan_granted=self.plan_granted,
            days_granted=self.days_granted,
            description=self.description or "",
            recognized=self.credits_granted > 0 or self.plan_granted is not None,
        )


@dataclass(frozen=True)
class GrantResult:
    """Result of the atomic entitlement transaction."""

    payment: PaymentData
    before: AccountEntitlement
    after: AccountEntitlement
    grant: GrantDetails


@dataclass(frozen=True)
class GrantOutcome:
    """Outcome of one grant_benefit call."""

    status: GrantStatus
    payment_ref: str
    account_id: str | None = None
    source_channel: TriggerChannel | None = None
    grant: GrantDetails | None = None
    receipt_url: str | None = None
    receipt_error: str | None = None
    error_type: str | None = None
    detail: str | None = None

    @property
    def benefits_applied(self) -> bool:
        """True when the account holds the benefit for this payment."""
        return self.status in (GrantStatus.SUCCESS, GrantStatus.ALREADY_PROCESSED)


@dataclass(frozen=True)
class CacheEntry:
    """Process-local memory of a finalized payment reference."""

    account_id: str
    finalized_at: datetime
    source_channel: TriggerChannel
    outcome: GrantStatus
    grant: GrantDetails | None = None
    receipt_url: str | None = None
    expires_at_monotonic: float = field(default=0.0, compare=False)
