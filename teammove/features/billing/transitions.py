"""
Subscription state transitions.

The single place where subscription records change shape. The webhook
reconciler, the synchronous verify call, cancellation, free-plan activation
and the expiry sweep all go through these functions; none of them writes
subscription fields on its own.

Every transition is absolute ("set to"), never relative ("add to"), so
re-running one against the state it produced yields the same state.
"""
from datetime import datetime
from typing import Optional

from dateutil.relativedelta import relativedelta

from teammove.features.plans.catalog import is_free, is_pack
from teammove.models.plan import PlanDefinition
from teammove.models.subscription import OrganizationSubscription, SubscriptionStatus


RECURRING_PERIOD = relativedelta(months=1)


def activate_plan(
    sub: OrganizationSubscription,
    plan: PlanDefinition,
    now: datetime,
    *,
    subscription_ref: Optional[str] = None,
    customer_ref: Optional[str] = None,
    current_period_end: Optional[datetime] = None,
) -> OrganizationSubscription:
    """Activate a purchased plan (checkout completed)."""
    if is_free(plan):
        return downgrade_to_free(sub, plan, status=SubscriptionStatus.ACTIVE)

    update = {
        "plan_id": plan.plan_id,
        "status": SubscriptionStatus.ACTIVE,
        "external_customer_ref": customer_ref or sub.external_customer_ref,
    }

    if is_pack(plan):
        update.update(
            external_subscription_ref=None,
            current_period_end=None,
            package_expiry=now + relativedelta(months=plan.validity_months) if plan.validity_months else None,
            remaining_pack_units=plan.max_events,
        )
    else:
        update.update(
            external_subscription_ref=subscription_ref,
            current_period_end=current_period_end or now + RECURRING_PERIOD,
            package_expiry=None,
            remaining_pack_units=None,
        )

    return sub.model_copy(update=update)


def refresh_subscription(
    sub: OrganizationSubscription,
    status: Optional[SubscriptionStatus],
    current_period_end: Optional[datetime],
) -> OrganizationSubscription:
    """Take status and period end from the gateway; the plan is left alone."""
    update = {}
    if status is not None:
        update["status"] = status
    if current_period_end is not None:
        update["current_period_end"] = current_period_end
    return sub.model_copy(update=update)


def downgrade_to_free(
    sub: OrganizationSubscription,
    free_plan: PlanDefinition,
    status: SubscriptionStatus = SubscriptionStatus.CANCELLED,
) -> OrganizationSubscription:
    """Move to the free plan and drop every paid-plan field."""
    return sub.model_copy(
        update={
            "plan_id": free_plan.plan_id,
            "status": status,
            "external_subscription_ref": None,
            "current_period_end": None,
            "package_expiry": None,
            "remaining_pack_units": None,
        }
    )


def mark_past_due(sub: OrganizationSubscription) -> OrganizationSubscription:
    """Payment failed: keep the plan, degrade the status."""
    return sub.model_copy(update={"status": SubscriptionStatus.PAST_DUE})
