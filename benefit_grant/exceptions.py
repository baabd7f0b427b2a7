"""
Exception Classes - Strongly typed exception hierarchy.

NO DICTIONARIES - All exceptions have typed attributes.
"""


class GrantError(Exception):
    """Base exception for all benefit grant errors."""

    pass


class AccountNotFoundError(GrantError):
    """Raised when the target account doesn't exist."""

    def __init__(self, account_id: str) -> None:
        self.account_id = account_id
        super().__init__(f"Account not found: {account_id}")


class LockTimeoutError(GrantError):
    """Raised when a payment lock could not be acquired in time."""

    def __init__(self, payment_ref: str, timeout: float) -> None:
        self.payment_ref = payment_ref
        self.timeout = timeout
        super().__init__(f"Timed out after {timeout:.2f}s waiting for payment lock {payment_ref}")


class LedgerError(GrantError):
    """Raised when a ledger read or write fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Ledger error: {message}")


class WriteVerificationError(GrantError):
    """Raised when database write verification fails."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(f"Write verification failed: {message}")


class PaymentFinalizedError(GrantError):
    """Raised when a write targets a payment that already committed its grant."""

    def __init__(self, payment_ref: str) -> None:
        self.payment_ref = payment_ref
        super().__init__(f"Payment {payment_ref} is already processed")


class PaymentUnderReviewError(GrantError):
    """Raised when a payment parked for manual review is re-triggered automatically."""

    def __init__(self, payment_ref: str) -> None:
        self.payment_ref = payment_ref
        super().__init__(f"Payment {payment_ref} is awaiting manual review")


class PaymentAccountMismatchError(GrantError):
    """Raised when a trigger names a different account than the payment record."""

    def __init__(self, payment_ref: str, recorded_account_id: str, account_id: str) -> None:
        self.payment_ref = payment_ref
        self.recorded_account_id = recorded_account_id
        self.account_id = account_id
        super().__init__(
            f"Payment {payment_ref} belongs to account {recorded_account_id}, not {account_id}"
        )


class ReceiptHookError(GrantError):
    """Raised when generating or storing a receipt fails."""

    def __init__(self, payment_ref: str, message: str) -> None:
        self.payment_ref = payment_ref
        self.message = message
        super().__init__(f"Receipt hook failed for {payment_ref}: {message}")
