"""
Payment Lock Table.

Keyed mutual exclusion for payment references inside one process. Each
reference gets its own asyncio.Lock, created on first use and dropped as soon
as nobody holds or waits for it, so the table only ever contains contended or
in-flight references.

This does NOT coordinate across processes - the ledger's row-locked
transaction covers that case.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime

from structlog import get_logger

from benefit_grant.exceptions import LockTimeoutError

logger = get_logger(__name__)


@dataclass
class _KeyedLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0  # holder + waiters
    acquired_at: datetime | None = None


class PaymentLockTable:
    """
    Registry of per-payment locks with bounded waits.

    Usage:
        locks = PaymentLockTable()

        async with locks.hold("pay_123", timeout=10.0):
            ...  # only one task per payment_ref runs here

    Raises LockTimeoutError from `hold` when the wait exceeds `timeout`.
    """

    def __init__(self) -> None:
        self._locks: dict[str, _KeyedLock] = {}

    async def acquire(self, payment_ref: str, timeout: float) -> bool:
        """
        Wait up to `timeout` seconds for the lock on `payment_ref`.

        Returns:
            True if acquired, False if the wait timed out
        """
        entry = self._locks.get(payment_ref)
        if entry is None:
            entry = _KeyedLock()
            self._locks[payment_ref] = entry
        entry.users += 1

        try:
            await asyncio.wait_for(entry.lock.acquire(), timeout=timeout)
        except TimeoutError:
            self._leave(payment_ref, entry)
            logger.info("payment_lock_timeout", payment_ref=payment_ref, timeout=timeout)
            return False
        except asyncio.CancelledError:
            self._leave(payment_ref, entry)
            raise

        entry.acquired_at = datetime.now(UTC)
        return True

    def release(self, payment_ref: str) -> None:
        """
        Release a held lock.

        Raises:
            RuntimeError: If the lock is not held
        """
        entry = self._locks.get(payment_ref)
        if entry is None or not entry.lock.locked():
            raise RuntimeError(f"Payment lock {payment_ref} is not held")
        entry.acquired_at = None
        entry.lock.release()
        self._leave(payment_ref, entry)

    @asynccontextmanager
    async def hold(self, payment_ref: str, timeout: float) -> AsyncIterator[None]:
        """Hold the lock for the duration of the block."""
        if not await self.acquire(payment_ref, timeout):
            raise LockTimeoutError(payment_ref, timeout)
        try:
            yield
        finally:
            self.release(payment_ref)

    def acquired_at(self, payment_ref: str) -> datetime | None:
        """When the current holder acquired the lock, if held."""
        entry = self._locks.get(payment_ref)
        return entry.acquired_at if entry else None

    def _leave(self, payment_ref: str, entry: _KeyedLock) -> None:
        entry.users -= 1
        if entry.users == 0 and self._locks.get(payment_ref) is entry:
            del self._locks[payment_ref]

    def __len__(self) -> int:
        return len(self._locks)
