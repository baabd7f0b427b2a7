"""
API Routes - Payment trigger channels and health.

Two channels deliver the same confirmation and race each other:
- /v1/payments/confirmations: the inline "payment created" response,
  graded synchronously
- /v1/payments/notifications: the gateway notification, acknowledged
  immediately and granted in the background

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status
from sqlalchemy import text

from benefit_grant.api.dependencies import get_grant_engine
from benefit_grant.config import settings
from benefit_grant.db.session import get_session
from benefit_grant.models.api import (
    GrantOutcomeResponse,
    GrantStatus,
    HealthResponse,
    NotificationAck,
    PaymentConfirmationRequest,
    TriggerChannel,
)
from benefit_grant.models.domain import GrantOutcome
from benefit_grant.observability.logging import get_logger
from benefit_grant.services.grant_engine import GrantEngine

logger = get_logger(__name__)

router = APIRouter()


@router.post(
    "/v1/payments/confirmations",
    response_model=GrantOutcomeResponse | NotificationAck,
)
async def confirm_payment(
    request: PaymentConfirmationRequest,
    engine: GrantEngine = Depends(get_grant_engine),
) -> GrantOutcomeResponse | NotificationAck:
    """
    Grant the benefit for a confirmed payment and report the outcome.

    Repeated confirmations for the same payment_ref return ALREADY_PROCESSED.
    LOCK_TIMEOUT maps to 503 (retry later), ERROR to 500.
    """
    if not is_approved_status(request.status):
        logger.info(
            "payment_confirmation_ignored",
            payment_ref=request.payment_ref,
            payment_status=request.status,
        )
        return NotificationAck(status="ignored", payment_ref=request.payment_ref)

    account_id = await resolve_account_id(engine, request)
    if account_id is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Account not found",
        )

    outcome = await engine.grant_benefit(
        account_id=account_id,
        email=request.email,
        amount_paid=request.amount,
        source_channel=TriggerChannel.PAYMENT_CREATED,
        payment_ref=request.payment_ref,
    )
    response = _to_response(outcome)

    if outcome.status == GrantStatus.LOCK_TIMEOUT:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=response.model_dump(mode="json"),
            headers={"Retry-After": str(int(engine.lock_wait_timeout))},
        )
    if outcome.status == GrantStatus.ERROR:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=response.model_dump(mode="json"),
        )

    return response


@router.post(
    "/v1/payments/notifications",
    response_model=NotificationAck,
    status_code=status.HTTP_202_ACCEPTED,
)
async def receive_notification(
    request: PaymentConfirmationRequest,
    background_tasks: BackgroundTasks,
    engine: GrantEngine = Depends(get_grant_engine),
) -> NotificationAck:
    """
    Acknowledge a gateway notification and grant in the background.

    The gateway redelivers notifications; redeliveries are harmless.
    """
    if not is_approved_status(request.status):
        logger.info(
            "payment_notification_ignored",
            payment_ref=request.payment_ref,
            payment_status=request.status,
        )
        return NotificationAck(status="ignored", payment_ref=request.payment_ref)

    background_tasks.add_task(process_notification, engine, request)
    return NotificationAck(status="accepted", payment_ref=request.payment_ref)


@router.get("/", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """
    Health check for load balancer.

    Verifies database connectivity.
    """
    try:
        async with get_session() as session:
            await session.execute(text("SELECT 1"))
    except Exception as exc:
        logger.warning("health_check_database_unreachable", error=str(exc))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(exc),
            },
        ) from exc

    return HealthResponse(
        status="healthy",
        service=settings.api_title,
        version=settings.api_version,
        database="connected",
    )


# =============================================================================
# Helpers
# =============================================================================


def is_approved_status(payment_status: str) -> bool:
    """Only confirmed payments grant benefits."""
    approved = {s.lower() for s in settings.approved_payment_statuses}
    return payment_status.strip().lower() in approved


async def resolve_account_id(
    engine: GrantEngine, request: PaymentConfirmationRequest
) -> str | None:
    """Use the explicit account_id, falling back to an email lookup."""
    if request.account_id:
        return request.account_id
    if request.email is None:
        return None

    account_id = await engine.ledger.find_account_id_by_email(request.email)
    if account_id is None:
        logger.warning("payment_account_unresolved", payment_ref=request.payment_ref)
    return account_id


async def process_notification(engine: GrantEngine, request: PaymentConfirmationRequest) -> None:
    """Background half of the notification channel."""
    try:
        account_id = await resolve_account_id(engine, request)
    except Exception as e:
        logger.error(
            "notification_account_lookup_failed",
            payment_ref=request.payment_ref,
            error=str(e),
            exc_info=True,
        )
        return

    if account_id is None:
        return

    outcome = await engine.grant_benefit(
        account_id=account_id,
        email=request.email,
        amount_paid=request.amount,
        source_channel=TriggerChannel.NOTIFICATION,
        payment_ref=request.payment_ref,
    )
    logger.info(
        "notification_processed",
        payment_ref=request.payment_ref,
        grant_status=outcome.status.value,
    )


def _to_response(outcome: GrantOutcome) -> GrantOutcomeResponse:
    """Convert domain outcome to API response."""
    grant = outcome.grant
    return GrantOutcomeResponse(
        status=outcome.status,
        payment_ref=outcome.payment_ref,
        account_id=outcome.account_id,
        source_channel=outcome.source_channel,
        credits_granted=grant.credits_granted if grant else 0,
        plan_granted=grant.plan_granted if grant else None,
        days_granted=grant.days_granted if grant else 0,
        description=grant.description if grant else None,
        unrecognized_amount=grant is not None and not grant.recognized,
        receipt_url=outcome.receipt_url,
        receipt_error=outcome.receipt_error,
        error_type=outcome.error_type,
        detail=outcome.detail,
    )
