"""
API Models - Pydantic models for request/response validation.

NO DICTIONARIES - All data structures are strongly typed.
"""

from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator


class PaymentState(str, Enum):
    """Lifecycle of a payment record."""

    UNSEEN = "unseen"
    PROCESSING = "processing"
    APPROVED = "approved"
    FAILED = "failed"
    NEEDS_MANUAL_REVIEW = "needs_manual_review"


class PlanKind(str, Enum):
    """Kind of entitlement an account currently holds."""

    CREDITS = "credits"
    UNLIMITED = "unlimited"


class TriggerChannel(str, Enum):
    """Which trigger delivered the payment confirmation."""

    PAYMENT_CREATED = "payment_created"
    NOTIFICATION = "notification"
    MANUAL = "manual"


class GrantStatus(str, Enum):
    """Outcome of a grant attempt."""

    SUCCESS = "success"
    ALREADY_PROCESSED = "already_processed"
    LOCK_TIMEOUT = "lock_timeout"
    NEEDS_MANUAL_REVIEW = "needs_manual_review"
    ERROR = "error"


# ============================================================================
# Trigger Models
# ============================================================================


class PaymentConfirmationRequest(BaseModel):
    """Payment confirmation delivered by either trigger channel."""

    payment_ref: str = Field(..., min_length=1, max_length=255)
    account_id: str | None = Field(None, min_length=1, max_length=255)
    email: str | None = Field(None, min_length=1, max_length=255)
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    status: str = Field(..., min_length=1, max_length=50)

    @model_validator(mode="after")
    def require_account_or_email(self) -> "PaymentConfirmationRequest":
        """At least one of account_id or email identifies the account."""
        if not self.account_id and not self.email:
            raise ValueError("account_id or email is required")
        return self


class GrantOutcomeResponse(BaseModel):
    """Structured grant outcome returned to trigger callers."""

    status: GrantStatus
    payment_ref: str
    account_id: str | None = None
    source_channel: TriggerChannel | None = None
    credits_granted: int = 0
    plan_granted: PlanKind | None = None
    days_granted: int = 0
    description: str | None = None
    unrecognized_amount: bool = False
    receipt_url: str | None = None
    receipt_error: str | None = None
    error_type: str | None = None
    detail: str | None = None


class NotificationAck(BaseModel):
    """Acknowledgement without a grant result (accepted or ignored)."""

    model_config = ConfigDict(extra="forbid")

    status: str
    payment_ref: str


class HealthResponse(BaseModel):
    """GET / response."""

    status: str
    service: str
    version: str
    database: str
