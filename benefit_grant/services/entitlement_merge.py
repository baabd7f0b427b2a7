"""
Entitlement Merge - Pure decision function for applying a purchase.

Credit packages accumulate onto the balance. Unlimited plans either extend
an active window from its original anchor or start a fresh one.
"""

from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal

from benefit_grant.models.api import PlanKind
from benefit_grant.models.domain import AccountEntitlement, GrantDetails
from benefit_grant.services.catalog import DEFAULT_CATALOG, Catalog, normalize_amount


@dataclass(frozen=True)
class MergeResult:
    """New entitlement plus a description of what was granted."""

    entitlement: AccountEntitlement
    grant: GrantDetails

    @property
    def changed(self) -> bool:
        """Whether the purchase mutated the entitlement."""
        return self.grant.recognized


def merge_entitlement(
    current: AccountEntitlement,
    amount_paid: Decimal | int | str,
    now: datetime,
    catalog: Catalog = DEFAULT_CATALOG,
    courtesy_credits: int = 0,
) -> MergeResult:
    """
    Compute the entitlement that results from paying `amount_paid`.

    Args:
        current: Entitlement read inside the grant transaction
        amount_paid: Amount confirmed by the payment gateway
        now: Transaction instant (timezone-aware)
        catalog: Price tables to match the amount against
        courtesy_credits: Bonus credits added to every credit package

    Returns:
        MergeResult with the new entitlement and the grant description.
        Unrecognized amounts return the current entitlement unchanged.
    """
    amount = normalize_amount(amount_paid)

    package = catalog.credit_package(amount)
    if package is not None:
        credits = package.credits + courtesy_credits
        entitlement = replace(
            current,
            credit_balance=current.credit_balance + credits,
            plan_kind=PlanKind.CREDITS,
            unlimited_total_days=0,
            unlimited_activated_at=None,
        )
        return MergeResult(
            entitlement=entitlement,
            grant=GrantDetails(
                credits_granted=credits,
                plan_granted=PlanKind.CREDITS,
                days_granted=0,
                description=f"Credits granted: {credits}",
            ),
        )

    plan = catalog.unlimited_plan(amount)
    if plan is not None:
        if current.has_active_window(now):
            total_days = current.unlimited_total_days + plan.days
            entitlement = replace(
                current,
                credit_balance=0,
                plan_kind=PlanKind.UNLIMITED,
                unlimited_total_days=total_days,
            )
            description = (
                f"Unlimited plan extended by {plan.days} days ({total_days} days total)"
            )
        else:
            entitlement = replace(
                current,
                credit_balance=0,
                plan_kind=PlanKind.UNLIMITED,
                unlimited_total_days=plan.days,
                unlimited_activated_at=now,
            )
            description = f"Unlimited plan activated for {plan.days} days"
        return MergeResult(
            entitlement=entitlement,
            grant=GrantDetails(
                credits_granted=0,
                plan_granted=PlanKind.UNLIMITED,
                days_granted=plan.days,
                description=description,
            ),
        )

    return MergeResult(
        entitlement=current,
        grant=GrantDetails(
            credits_granted=0,
            plan_granted=None,
            days_granted=0,
            description=f"Unrecognized amount {amount} - manual review",
            recognized=False,
        ),
    )
