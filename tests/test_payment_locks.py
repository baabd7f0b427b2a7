"""
Tests for the per-payment lock table.
"""

import asyncio

import pytest

from benefit_grant.exceptions import LockTimeoutError
from benefit_grant.services.payment_locks import PaymentLockTable


@pytest.fixture
def locks() -> PaymentLockTable:
    return PaymentLockTable()


class TestPaymentLockTable:
    """Tests for acquire/release semantics."""

    async def test_acquire_and_release(self, locks: PaymentLockTable) -> None:
        assert await locks.acquire("pay-1", timeout=1.0)
        assert len(locks) == 1
        assert locks.acquired_at("pay-1") is not None

        locks.release("pay-1")

        assert len(locks) == 0
        assert locks.acquired_at("pay-1") is None

    async def test_second_acquire_times_out(self, locks: PaymentLockTable) -> None:
        await locks.acquire("pay-1", timeout=1.0)

        acquired = await locks.acquire("pay-1", timeout=0.05)

        assert acquired is False
        assert len(locks) == 1
        # Timed-out waiter no longer counts as a user
        locks.release("pay-1")
        assert len(locks) == 0

    async def test_different_references_do_not_block(self, locks: PaymentLockTable) -> None:
        await locks.acquire("pay-1", timeout=1.0)

        assert await locks.acquire("pay-2", timeout=0.05)

        locks.release("pay-1")
        locks.release("pay-2")

    async def test_waiter_gets_lock_after_release(self, locks: PaymentLockTable) -> None:
        await locks.acquire("pay-1", timeout=1.0)
        waiter = asyncio.create_task(locks.acquire("pay-1", timeout=1.0))
        await asyncio.sleep(0)

        locks.release("pay-1")

        assert await waiter is True
        assert len(locks) == 1
        locks.release("pay-1")
        assert len(locks) == 0

    async def test_mutual_exclusion(self, locks: PaymentLockTable) -> None:
        inside = 0
        max_inside = 0

        async def worker() -> None:
            nonlocal inside, max_inside
            async with locks.hold("pay-1", timeout=1.0):
                inside += 1
                max_inside = max(max_inside, inside)
                await asyncio.sleep(0.001)
                inside -= 1

        await asyncio.gather(*(worker() for _ in range(10)))

        assert max_inside == 1
        assert len(locks) == 0

    async def test_hold_raises_on_timeout(self, locks: PaymentLockTable) -> None:
        await locks.acquire("pay-1", timeout=1.0)

        with pytest.raises(LockTimeoutError) as exc_info:
            async with locks.hold("pay-1", timeout=0.01):
                pass

        assert exc_info.value.payment_ref == "pay-1"
        locks.release("pay-1")

    async def test_hold_releases_on_error(self, locks: PaymentLockTable) -> None:
        with pytest.raises(RuntimeError, match="boom"):
            async with locks.hold("pay-1", timeout=1.0):
                raise RuntimeError("boom")

        assert len(locks) == 0

    async def test_cancelled_waiter_leaves_table(self, locks: PaymentLockTable) -> None:
        await locks.acquire("pay-1", timeout=1.0)
        waiter = asyncio.create_task(locks.acquire("pay-1", timeout=5.0))
        await asyncio.sleep(0)

        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter

        locks.release("pay-1")
        assert len(locks) == 0

    def test_release_unheld_lock_raises(self, locks: PaymentLockTable) -> None:
        with pytest.raises(RuntimeError, match="not held"):
            locks.release("pay-1")
