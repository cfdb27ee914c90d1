"""
teammove/features/entitlements/service.py

Entitlement evaluation.

Pure functions over an OrganizationSubscription and its PlanDefinition:
- validity of the current entitlement (expiry, exhausted packs, payment state)
- days until expiry
- per-action gates (create event, send invitations, advanced features)

No I/O happens here. Callers pass `plan=None` when the stored plan id is not
in the catalog; that is reported as invalid without a renewal hint.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from teammove.features.plans.catalog import is_free, is_pack, is_recurring
from teammove.models.plan import PlanDefinition
from teammove.models.subscription import OrganizationSubscription, SubscriptionStatus, as_utc


logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400


class EntitlementReason(str, Enum):
    PACK_EXPIRED = "pack_expired"
    PACK_EXHAUSTED = "pack_exhausted"
    SUBSCRIPTION_INACTIVE = "subscription_inactive"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    UNKNOWN_PLAN = "unknown_plan"
    LIMIT_REACHED = "limit_reached"
    FEATURE_NOT_INCLUDED = "feature_not_included"


@dataclass(frozen=True)
class EntitlementCheck:
    valid: bool
    reason: Optional[EntitlementReason] = None
    needs_renewal: bool = False


@dataclass(frozen=True)
class PermissionResult:
    allowed: bool
    reason: Optional[EntitlementReason] = None
    remaining: Optional[int] = None  # None = unlimited
    needs_renewal: bool = False


def _normalize_now(now: Optional[datetime]) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now


def _is_past(moment: Optional[datetime], now: datetime) -> bool:
    moment = as_utc(moment)
    return moment is not None and moment <= now


def is_entitlement_valid(
    sub: OrganizationSubscription,
    plan: Optional[PlanDefinition],
    now: Optional[datetime] = None,
) -> EntitlementCheck:
    """Decide whether the organization's current plan still grants access."""
    current = _normalize_now(now)

    if plan is None:
        logger.warning(
            "[entitlement] unknown plan on subscription record",
            extra={"organization_id": sub.organization_id, "plan_id": sub.plan_id},
        )
        return EntitlementCheck(valid=False, reason=EntitlementReason.UNKNOWN_PLAN)

    if is_free(plan):
        return EntitlementCheck(valid=True)

    if is_pack(plan):
        if _is_past(sub.package_expiry, current):
            return EntitlementCheck(valid=False, reason=EntitlementReason.PACK_EXPIRED, needs_renewal=True)
        if (sub.remaining_pack_units or 0) <= 0:
            return EntitlementCheck(valid=False, reason=EntitlementReason.PACK_EXHAUSTED, needs_renewal=True)
        return EntitlementCheck(valid=True)

    if is_recurring(plan):
        if _is_past(sub.current_period_end, current):
            return EntitlementCheck(valid=False, reason=EntitlementReason.SUBSCRIPTION_EXPIRED, needs_renewal=True)
        if sub.status != SubscriptionStatus.ACTIVE:
            return EntitlementCheck(valid=False, reason=EntitlementReason.SUBSCRIPTION_INACTIVE, needs_renewal=True)
        return EntitlementCheck(valid=True)

    return EntitlementCheck(valid=False, reason=EntitlementReason.UNKNOWN_PLAN)


def days_until_expiry(
    sub: OrganizationSubscription,
    plan: Optional[PlanDefinition],
    now: Optional[datetime] = None,
) -> Optional[int]:
    """
    Whole days left before the plan expires, rounded up.

    Something expiring later today reports 1. Returns None for plans with no
    expiry (free, packs without validity window, unknown plans).
    """
    if plan is None or is_free(plan):
        return None

    if is_pack(plan):
        if plan.validity_months is None:
            return None
        expiry = as_utc(sub.package_expiry)
    else:
        expiry = as_utc(sub.current_period_end)

    if expiry is None:
        return None

    delta = (expiry - _normalize_now(now)).total_seconds()
    return math.ceil(delta / SECONDS_PER_DAY)


def can_consume_unit(
    sub: OrganizationSubscription,
    plan: Optional[PlanDefinition],
    now: Optional[datetime] = None,
) -> bool:
    check = is_entitlement_valid(sub, plan, now)
    if not check.valid:
        return False
    if is_pack(plan):
        return (sub.remaining_pack_units or 0) > 0
    return True


def can_create_event(
    sub: OrganizationSubscription,
    plan: Optional[PlanDefinition],
    events_created: int = 0,
    now: Optional[datetime] = None,
) -> PermissionResult:
    """Gate event creation: free-plan cap, pack units, or an active subscription."""
    check = is_entitlement_valid(sub, plan, now)
    if not check.valid:
        return PermissionResult(allowed=False, reason=check.reason, remaining=0, needs_renewal=check.needs_renewal)

    if is_pack(plan):
        return PermissionResult(allowed=True, remaining=sub.remaining_pack_units)

    if plan.max_events is None:
        return PermissionResult(allowed=True)

    remaining = plan.max_events - events_created
    if remaining <= 0:
        return PermissionResult(allowed=False, reason=EntitlementReason.LIMIT_REACHED, remaining=0)
    return PermissionResult(allowed=True, remaining=remaining)


def can_send_invitations(
    sub: OrganizationSubscription,
    plan: Optional[PlanDefinition],
    invitations_sent: int = 0,
    count: int = 1,
    now: Optional[datetime] = None,
) -> PermissionResult:
    check = is_entitlement_valid(sub, plan, now)
    if not check.valid:
        return PermissionResult(allowed=False, reason=check.reason, remaining=0, needs_renewal=check.needs_renewal)

    if plan.max_invitations is None:
        return PermissionResult(allowed=True)

    remaining = plan.max_invitations - invitations_sent
    if remaining < count:
        return PermissionResult(allowed=False, reason=EntitlementReason.LIMIT_REACHED, remaining=max(0, remaining))
    return PermissionResult(allowed=True, remaining=remaining)


def can_use_advanced_features(
    sub: OrganizationSubscription,
    plan: Optional[PlanDefinition],
    now: Optional[datetime] = None,
) -> PermissionResult:
    check = is_entitlement_valid(sub, plan, now)
    if not check.valid:
        return PermissionResult(allowed=False, reason=check.reason, needs_renewal=check.needs_renewal)
    if not plan.advanced_features:
        return PermissionResult(allowed=False, reason=EntitlementReason.FEATURE_NOT_INCLUDED)
    return PermissionResult(allowed=True)
