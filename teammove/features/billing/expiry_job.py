"""
Scheduled expiry sweep.

Downgrades organizations whose paid entitlement has lapsed:
- packs once package_expiry has passed,
- recurring plans that are past_due, pending or cancelled once
  current_period_end + grace has passed.

Active recurring plans with a stale period are only reported: the gateway
is the authority on renewals and a later subscription.updated fixes them.
"""
from datetime import datetime, timedelta
from typing import Any, Dict

from teammove.core.logging import log_event
from teammove.features.billing.lifecycle import SubscriptionLifecycle
from teammove.features.billing.notifications import NotificationKind
from teammove.features.plans.catalog import is_free, is_pack
from teammove.models.subscription import OrganizationSubscription, SubscriptionStatus, as_utc


def expiry_key(sub: OrganizationSubscription) -> str:
    expiry = as_utc(sub.expiry)
    return f"expiry:{sub.organization_id}:{expiry.isoformat() if expiry else 'none'}"


def _lapsed(sub: OrganizationSubscription, pack: bool, now: datetime, grace: timedelta) -> bool:
    if pack:
        expiry = as_utc(sub.package_expiry)
        return expiry is not None and expiry <= now
    period_end = as_utc(sub.current_period_end)
    if period_end is None or period_end + grace > now:
        return False
    return sub.status != SubscriptionStatus.ACTIVE


def run_expiry_sweep(
    lifecycle: SubscriptionLifecycle,
    now: datetime,
    grace_days: int = 7,
    limit: int = 100,
) -> Dict[str, Any]:
    catalog = lifecycle.catalog
    store = lifecycle.store
    grace = timedelta(days=grace_days)
    paid_plan_ids = [plan.plan_id for plan in catalog.all() if not is_free(plan)]

    downgraded = 0
    stale = 0
    candidates = store.list_expirable(paid_plan_ids, now, grace, limit=limit)

    for sub in candidates:
        plan = catalog.get(sub.plan_id)
        pack = is_pack(plan)
        if not _lapsed(sub, pack, now, grace):
            if not pack and sub.status == SubscriptionStatus.ACTIVE:
                stale += 1
                log_event(
                    "warning",
                    "billing.expiry.stale_period",
                    organization_id=sub.organization_id,
                    extra={"plan_id": sub.plan_id, "current_period_end": sub.current_period_end},
                )
            continue

        result = lifecycle.downgrade_to_free(
            sub.organization_id,
            expiry_key(sub),
            event_type="plan.expired",
            source="expiry_sweep",
            status=SubscriptionStatus.CANCELLED,
            only_if=lambda current, pack=pack, plan_id=sub.plan_id: current.plan_id == plan_id and _lapsed(current, pack, now, grace),
            notification=NotificationKind.EXPIRED,
        )
        if result.applied:
            downgraded += 1

    stats = {
        "candidates": len(candidates),
        "downgraded": downgraded,
        "stale_periods": stale,
        "timestamp": now.isoformat(),
    }
    log_event("info", "billing.expiry.sweep_finished", extra=stats)
    return stats
