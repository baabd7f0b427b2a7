"""
Benefit Grant Engine - Applies a purchased benefit exactly once per payment.

Payment confirmations arrive from two racing trigger channels (the inline
"payment created" response and the gateway notification, which may be
redelivered). Both call `grant_benefit` with the same payment_ref.

Protocol per call:
1. Idempotency cache hit -> ALREADY_PROCESSED
2. Acquire the payment lock (bounded wait) -> LOCK_TIMEOUT on expiry
3. Durable check against the ledger -> ALREADY_PROCESSED if finalized,
   NEEDS_MANUAL_REVIEW if parked for review (unless retried manually),
   ERROR if the record belongs to another account
4. Mark the payment `processing`
5. Atomic entitlement transaction (re-checks `processed` under row lock)
6. Best-effort receipt hook
7. Populate cache, release lock -> SUCCESS

Any failure in 4-5 marks the payment `failed` (retryable) and returns ERROR.
"""

import asyncio
import time
from collections.abc import Callable
from datetime import datetime
from decimal import Decimal
from typing import Literal

from benefit_grant.db.models import utc_now
from benefit_grant.exceptions import (
    AccountNotFoundError,
    LockTimeoutError,
    PaymentAccountMismatchError,
    PaymentFinalizedError,
    PaymentUnderReviewError,
)
from benefit_grant.models.api import GrantStatus, PaymentState, TriggerChannel
from benefit_grant.models.domain import (
    AccountEntitlement,
    CacheEntry,
    GrantDetails,
    GrantOutcome,
    PaymentData,
)
from benefit_grant.observability.logging import get_logger, log_context
from benefit_grant.observability.metrics import metrics
from benefit_grant.observability.tracing import add_span_attributes, get_tracer
from benefit_grant.services.catalog import DEFAULT_CATALOG, Catalog, normalize_amount
from benefit_grant.services.entitlement_merge import MergeResult, merge_entitlement
from benefit_grant.services.idempotency_cache import IdempotencyCache
from benefit_grant.services.ledger import EntitlementLedger
from benefit_grant.services.payment_locks import PaymentLockTable
from benefit_grant.services.receipt_hook import ReceiptHook

logger = get_logger(__name__)
tracer = get_tracer(__name__)

UnrecognizedAmountPolicy = Literal["approve", "manual_review"]


class GrantEngine:
    """
    Long-lived orchestrator owning the lock table and idempotency cache.

    One instance per process. Create it at startup, `await start()` to run
    the cache sweep, and `await close()` on shutdown.

    Usage:
        engine = GrantEngine(ledger=SqlEntitlementLedger(factory))
        await engine.start()
        outcome = await engine.grant_benefit(
            account_id="uid-1",
            email="user@example.com",
            amount_paid=Decimal("20"),
            source_channel=TriggerChannel.NOTIFICATION,
            payment_ref="pay_123",
        )
    """

    def __init__(
        self,
        ledger: EntitlementLedger,
        receipt_hook: ReceiptHook | None = None,
        catalog: Catalog = DEFAULT_CATALOG,
        lock_table: PaymentLockTable | None = None,
        cache: IdempotencyCache | None = None,
        lock_wait_timeout: float = 10.0,
        cache_ttl_seconds: float = 3 * 60 * 60,
        cache_sweep_interval: float = 300.0,
        courtesy_credits: int = 0,
        unrecognized_amount_policy: UnrecognizedAmountPolicy = "approve",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if lock_wait_timeout <= 0:
            raise ValueError(f"lock_wait_timeout must be positive: {lock_wait_timeout}")
        self.ledger = ledger
        self.receipt_hook = receipt_hook
        self.catalog = catalog
        self.locks = lock_table if lock_table is not None else PaymentLockTable()
        self.cache = cache if cache is not None else IdempotencyCache(cache_ttl_seconds)
        self.lock_wait_timeout = lock_wait_timeout
        self.cache_sweep_interval = cache_sweep_interval
        self.courtesy_credits = courtesy_credits
        self.unrecognized_amount_policy = unrecognized_amount_policy
        self._clock = clock
        self._sweep_task: asyncio.Task[None] | None = None

    # ========================================================================
    # Lifecycle
    # ========================================================================

    async def start(self) -> None:
        """Start the background cache sweep."""
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_cache())
            logger.info(
                "grant_engine_started",
                lock_wait_timeout=self.lock_wait_timeout,
                cache_ttl_seconds=self.cache.ttl_seconds,
            )

    async def close(self) -> None:
        """Stop the sweep and release the receipt hook's resources."""
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

        aclose = getattr(self.receipt_hook, "aclose", None)
        if aclose is not None:
            await aclose()

        self.cache.clear()
        logger.info("grant_engine_closed")

    async def __aenter__(self) -> "GrantEngine":
        await self.start()
        return self

    async def __aexit__(self, exc_type: object, exc_val: object, exc_tb: object) -> None:
        await self.close()

    # ========================================================================
    # Public API
    # ========================================================================

    async def grant_benefit(
        self,
        account_id: str,
        email: str | None,
        amount_paid: Decimal | int | str,
        source_channel: TriggerChannel,
        payment_ref: str,
    ) -> GrantOutcome:
        """
        Grant the benefit bought by `payment_ref`, at most once.

        Raises:
            ValueError: Missing account_id / payment_ref or invalid amount
                (raised before any side effect)
        """
        if not account_id:
            raise ValueError("account_id cannot be empty")
        if not payment_ref:
            raise ValueError("payment_ref cannot be empty")
        amount = normalize_amount(amount_paid)

        start_time = time.perf_counter()
        with log_context(payment_ref=payment_ref, source_channel=source_channel.value):
            with tracer.start_as_current_span("grant_benefit") as span:
                add_span_attributes(
                    span,
                    payment_ref=payment_ref,
                    account_id=account_id,
                    source_channel=source_channel.value,
                    amount=str(amount),
                )
                outcome = await self._grant(account_id, email, amount, source_channel, payment_ref)
                add_span_attributes(span, grant_status=outcome.status.value)

        metrics.record_grant(
            outcome.status.value, source_channel.value, time.perf_counter() - start_time
        )
        return outcome

    # ========================================================================
    # Protocol
    # ========================================================================

    async def _grant(
        self,
        account_id: str,
        email: str | None,
        amount: Decimal,
        source_channel: TriggerChannel,
        payment_ref: str,
    ) -> GrantOutcome:
        cached = self.cache.get(payment_ref)
        if cached is not None:
            metrics.record_cache_lookup(hit=True)
            logger.info("grant_already_processed_cached", account_id=cached.account_id)
            return GrantOutcome(
                status=GrantStatus.ALREADY_PROCESSED,
                payment_ref=payment_ref,
                account_id=cached.account_id,
                source_channel=cached.source_channel,
                grant=cached.grant,
                receipt_url=cached.receipt_url,
            )
        metrics.record_cache_lookup(hit=False)

        wait_start = time.perf_counter()
        try:
            async with self.locks.hold(payment_ref, self.lock_wait_timeout):
                metrics.record_lock_wait(time.perf_counter() - wait_start, acquired=True)
                return await self._grant_locked(
                    account_id, email, amount, source_channel, payment_ref
                )
        except LockTimeoutError as e:
            metrics.record_lock_wait(time.perf_counter() - wait_start, acquired=False)
            held_since = self.locks.acquired_at(payment_ref)
            logger.warning(
                "grant_lock_timeout",
                timeout=e.timeout,
                held_since=held_since.isoformat() if held_since else None,
                lock_table_size=len(self.locks),
            )
            return GrantOutcome(
                status=GrantStatus.LOCK_TIMEOUT,
                payment_ref=payment_ref,
                account_id=account_id,
                source_channel=source_channel,
                detail=f"Payment is being processed; retry after {e.timeout}s",
            )

    async def _grant_locked(
        self,
        account_id: str,
        email: str | None,
        amount: Decimal,
        source_channel: TriggerChannel,
        payment_ref: str,
    ) -> GrantOutcome:
        try:
            existing = await self.ledger.get_payment(payment_ref)
        except Exception as e:
            logger.error("grant_ledger_read_failed", error=str(e), exc_info=True)
            metrics.record_error(type(e).__name__, "ledger_read")
            return self._error_outcome(payment_ref, account_id, source_channel, e)

        if existing is not None and existing.is_finalized:
            return self._already_processed(existing)

        if existing is not None and existing.account_id != account_id:
            return self._account_mismatch(
                PaymentAccountMismatchError(payment_ref, existing.account_id, account_id),
                source_channel,
            )

        if (
            existing is not None
            and existing.state == PaymentState.NEEDS_MANUAL_REVIEW
            and source_channel != TriggerChannel.MANUAL
        ):
            return self._under_review(payment_ref, account_id, source_channel, existing.description)

        try:
            await self.ledger.mark_processing(
                payment_ref, account_id, email, amount, source_channel
            )
            result = await self.ledger.apply_grant(
                payment_ref,
                account_id,
                amount,
                self._merge_for(amount),
                review_unrecognized=self.unrecognized_amount_policy == "manual_review",
            )
        except PaymentFinalizedError:
            return await self._already_processed_from_ledger(payment_ref, account_id)
        except PaymentAccountMismatchError as e:
            return self._account_mismatch(e, source_channel)
        except PaymentUnderReviewError:
            return self._under_review(payment_ref, account_id, source_channel, None)
        except AccountNotFoundError as e:
            # Provisioning bug - needs an operator, not an automatic retry loop
            logger.error("grant_account_not_found", account_id=account_id)
            metrics.record_error(type(e).__name__, "grant")
            await self._mark_failed(payment_ref, e)
            return self._error_outcome(payment_ref, account_id, source_channel, e)
        except asyncio.CancelledError:
            await self._mark_failed(payment_ref, "cancelled")
            raise
        except Exception as e:
            logger.error("grant_transaction_failed", error=str(e), exc_info=True)
            metrics.record_error(type(e).__name__, "grant")
            await self._mark_failed(payment_ref, e)
            return self._error_outcome(payment_ref, account_id, source_channel, e)

        grant = result.grant

        if result.payment.state == PaymentState.NEEDS_MANUAL_REVIEW:
            logger.warning(
                "grant_needs_manual_review",
                account_id=account_id,
                amount=str(amount),
                description=grant.description,
            )
            return GrantOutcome(
                status=GrantStatus.NEEDS_MANUAL_REVIEW,
                payment_ref=payment_ref,
                account_id=account_id,
                source_channel=source_channel,
                grant=grant,
                detail=grant.description,
            )

        if not grant.recognized:
            logger.warning(
                "grant_unrecognized_amount_approved",
                account_id=account_id,
                amount=str(amount),
            )

        logger.info(
            "grant_committed",
            account_id=account_id,
            credits_granted=grant.credits_granted,
            plan_granted=grant.plan_granted.value if grant.plan_granted else None,
            days_granted=grant.days_granted,
            credits_before=result.before.credit_balance,
            credits_after=result.after.credit_balance,
            expires_after=(
                result.after.unlimited_expires_at.isoformat()
                if result.after.unlimited_expires_at
                else None
            ),
        )

        receipt_url, receipt_error = await self._issue_receipt(payment_ref, email, amount, grant)

        self.cache.put(
            payment_ref,
            CacheEntry(
                account_id=account_id,
                finalized_at=self._clock(),
                source_channel=source_channel,
                outcome=GrantStatus.SUCCESS,
                grant=grant,
                receipt_url=receipt_url,
            ),
        )

        return GrantOutcome(
            status=GrantStatus.SUCCESS,
            payment_ref=payment_ref,
            account_id=account_id,
            source_channel=source_channel,
            grant=grant,
            receipt_url=receipt_url,
            receipt_error=receipt_error,
        )

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    def _merge_for(self, amount: Decimal) -> Callable[[AccountEntitlement, datetime], MergeResult]:
        def _merge(current: AccountEntitlement, now: datetime) -> MergeResult:
            return merge_entitlement(
                current,
                amount,
                now,
                catalog=self.catalog,
                courtesy_credits=self.courtesy_credits,
            )

        return _merge

    async def _issue_receipt(
        self,
        payment_ref: str,
        email: str | None,
        amount: Decimal,
        grant: GrantDetails,
    ) -> tuple[str | None, str | None]:
        """Run the receipt hook. Failures are reported, never raised."""
        if self.receipt_hook is None:
            return None, None

        try:
            url = await self.receipt_hook.generate_and_store_receipt(
                payment_ref=payment_ref,
                account_email=email,
                amount=amount,
                credits_granted=grant.credits_granted,
                description=grant.description,
            )
            await self.ledger.attach_receipt_url(payment_ref, url)
        except Exception as e:
            logger.warning("receipt_hook_failed", error=str(e), error_type=type(e).__name__)
            metrics.record_receipt(success=False)
            return None, str(e)

        metrics.record_receipt(success=True)
        logger.info("receipt_stored", receipt_url=url)
        return url, None

    async def _mark_failed(self, payment_ref: str, error: Exception | str) -> None:
        """Best-effort transition to `failed`; a second failure is only logged."""
        message = f"{type(error).__name__}: {error}" if isinstance(error, Exception) else error
        try:
            await self.ledger.mark_failed(payment_ref, message)
        except Exception as e:
            logger.error("payment_mark_failed_error", error=str(e), original_error=message)
            metrics.record_error(type(e).__name__, "mark_failed")

    def _already_processed(self, payment: PaymentData) -> GrantOutcome:
        grant = payment.to_grant()
        self.cache.put(
            payment.payment_ref,
            CacheEntry(
                account_id=payment.account_id,
                finalized_at=payment.processed_at or self._clock(),
                source_channel=payment.source_channel,
                outcome=GrantStatus.SUCCESS,
                grant=grant,
                receipt_url=payment.receipt_url,
            ),
        )
        logger.info("grant_already_processed", account_id=payment.account_id)
        return GrantOutcome(
            status=GrantStatus.ALREADY_PROCESSED,
            payment_ref=payment.payment_ref,
            account_id=payment.account_id,
            source_channel=payment.source_channel,
            grant=grant,
            receipt_url=payment.receipt_url,
        )

    async def _already_processed_from_ledger(
        self, payment_ref: str, account_id: str
    ) -> GrantOutcome:
        """Another process committed first; report its grant."""
        logger.info("grant_lost_race_to_other_process")
        try:
            payment = await self.ledger.get_payment(payment_ref)
        except Exception as e:
            logger.warning("grant_finalized_reread_failed", error=str(e))
            payment = None
        if payment is None or not payment.is_finalized:
            return GrantOutcome(
                status=GrantStatus.ALREADY_PROCESSED,
                payment_ref=payment_ref,
                account_id=account_id,
            )
        return self._already_processed(payment)

    def _account_mismatch(
        self, error: PaymentAccountMismatchError, source_channel: TriggerChannel
    ) -> GrantOutcome:
        """A trigger named another account; nothing is written."""
        logger.error(
            "grant_account_mismatch",
            recorded_account_id=error.recorded_account_id,
            account_id=error.account_id,
        )
        metrics.record_error(type(error).__name__, "grant")
        return self._error_outcome(error.payment_ref, error.account_id, source_channel, error)

    def _under_review(
        self,
        payment_ref: str,
        account_id: str,
        source_channel: TriggerChannel,
        description: str | None,
    ) -> GrantOutcome:
        logger.info("grant_awaiting_manual_review", account_id=account_id)
        return GrantOutcome(
            status=GrantStatus.NEEDS_MANUAL_REVIEW,
            payment_ref=payment_ref,
            account_id=account_id,
            source_channel=source_channel,
            detail=description or "Payment is awaiting manual review",
        )

    def _error_outcome(
        self,
        payment_ref: str,
        account_id: str,
        source_channel: TriggerChannel,
        error: Exception,
    ) -> GrantOutcome:
        return GrantOutcome(
            status=GrantStatus.ERROR,
            payment_ref=payment_ref,
            account_id=account_id,
            source_channel=source_channel,
            error_type=type(error).__name__,
            detail=str(error),
        )

    async def _sweep_cache(self) -> None:
        while True:
            await asyncio.sleep(self.cache_sweep_interval)
            removed = self.cache.purge_expired()
            if removed:
                logger.info("idempotency_cache_swept", removed=removed, size=len(self.cache))
