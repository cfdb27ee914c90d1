"""
Test entitlement evaluation.

Pure functions: no database, fixed clock values.
"""
from datetime import datetime, timedelta, timezone

import pytest

from teammove.features.entitlements.service import (
    EntitlementReason,
    can_consume_unit,
    can_create_event,
    can_send_invitations,
    can_use_advanced_features,
    days_until_expiry,
    is_entitlement_valid,
)
from teammove.models.subscription import OrganizationSubscription, SubscriptionStatus


NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def _sub(**kwargs):
    values = {"organization_id": "org_a", "plan_id": "decouverte"}
    values.update(kwargs)
    return OrganizationSubscription(**values)


def test_free_plan_always_valid(catalog):
    check = is_entitlement_valid(_sub(status=SubscriptionStatus.CANCELLED), catalog.resolve("decouverte"), NOW)
    assert check.valid
    assert not check.needs_renewal


def test_pack_valid_until_expiry(catalog):
    plan = catalog.resolve("evenementielle-pack10")
    sub = _sub(plan_id=plan.plan_id, package_expiry=NOW + timedelta(days=30), remaining_pack_units=3)
    assert is_entitlement_valid(sub, plan, NOW).valid

    check = is_entitlement_valid(sub, plan, NOW + timedelta(days=31))
    assert not check.valid
    assert check.reason == EntitlementReason.PACK_EXPIRED
    assert check.needs_renewal


def test_exhausted_pack_is_invalid(catalog):
    plan = catalog.resolve("evenementielle-single")
    sub = _sub(plan_id=plan.plan_id, package_expiry=NOW + timedelta(days=300), remaining_pack_units=0)
    check = is_entitlement_valid(sub, plan, NOW)
    assert not check.valid
    assert check.reason == EntitlementReason.PACK_EXHAUSTED
    assert check.needs_renewal


def test_recurring_requires_active_status(catalog):
    plan = catalog.resolve("pro_pme")
    end = NOW + timedelta(days=20)
    assert is_entitlement_valid(_sub(plan_id="pro_pme", current_period_end=end), plan, NOW).valid

    check = is_entitlement_valid(
        _sub(plan_id="pro_pme", current_period_end=end, status=SubscriptionStatus.PAST_DUE), plan, NOW
    )
    assert not check.valid
    assert check.reason == EntitlementReason.SUBSCRIPTION_INACTIVE
    assert check.needs_renewal


def test_recurring_period_end_passed(catalog):
    plan = catalog.resolve("pro_club")
    sub = _sub(plan_id="pro_club", current_period_end=NOW - timedelta(seconds=1))
    check = is_entitlement_valid(sub, plan, NOW)
    assert check.reason == EntitlementReason.SUBSCRIPTION_EXPIRED


def test_unknown_plan_is_invalid_without_renewal_hint():
    check = is_entitlement_valid(_sub(plan_id="platinum"), None, NOW)
    assert not check.valid
    assert check.reason == EntitlementReason.UNKNOWN_PLAN
    assert not check.needs_renewal


def test_validity_is_monotonic_in_time(catalog):
    plan = catalog.resolve("evenementielle-pack10")
    sub = _sub(plan_id=plan.plan_id, package_expiry=NOW + timedelta(days=2), remaining_pack_units=5)
    results = [is_entitlement_valid(sub, plan, NOW + timedelta(hours=h)).valid for h in range(0, 96, 6)]
    # Once invalid, never valid again
    first_invalid = results.index(False)
    assert all(not r for r in results[first_invalid:])


@pytest.mark.parametrize(
    "delta, expected",
    [
        (timedelta(days=30), 30),
        (timedelta(hours=3), 1),
        (timedelta(days=1, seconds=1), 2),
        (timedelta(days=-2), -2),
    ],
)
def test_days_until_expiry_rounds_up(catalog, delta, expected):
    plan = catalog.resolve("pro_club")
    sub = _sub(plan_id="pro_club", current_period_end=NOW + delta)
    assert days_until_expiry(sub, plan, NOW) == expected


def test_days_until_expiry_none_without_expiry(catalog):
    assert days_until_expiry(_sub(), catalog.resolve("decouverte"), NOW) is None
    assert days_until_expiry(_sub(plan_id="pro_pme"), catalog.resolve("pro_pme"), NOW) is None
    assert days_until_expiry(_sub(plan_id="platinum"), None, NOW) is None


def test_free_plan_event_cap(catalog):
    plan = catalog.resolve("decouverte")
    assert can_create_event(_sub(), plan, events_created=0, now=NOW).allowed

    result = can_create_event(_sub(), plan, events_created=1, now=NOW)
    assert not result.allowed
    assert result.reason == EntitlementReason.LIMIT_REACHED


def test_pack_event_creation_reports_remaining_units(catalog):
    plan = catalog.resolve("evenementielle-pack10")
    sub = _sub(plan_id=plan.plan_id, package_expiry=NOW + timedelta(days=5), remaining_pack_units=4)
    result = can_create_event(sub, plan, now=NOW)
    assert result.allowed
    assert result.remaining == 4
    assert can_consume_unit(sub, plan, NOW)

    empty = sub.model_copy(update={"remaining_pack_units": 0})
    assert not can_consume_unit(empty, plan, NOW)
    assert can_create_event(empty, plan, now=NOW).needs_renewal


def test_recurring_plan_has_unlimited_events(catalog):
    sub = _sub(plan_id="pro_entreprise", current_period_end=NOW + timedelta(days=3))
    result = can_create_event(sub, catalog.resolve("pro_entreprise"), events_created=500, now=NOW)
    assert result.allowed
    assert result.remaining is None


def test_free_plan_invitation_limit(catalog):
    plan = catalog.resolve("decouverte")
    assert can_send_invitations(_sub(), plan, invitations_sent=15, count=5, now=NOW).allowed

    result = can_send_invitations(_sub(), plan, invitations_sent=15, count=6, now=NOW)
    assert not result.allowed
    assert result.remaining == 5


def test_advanced_features(catalog):
    assert not can_use_advanced_features(_sub(), catalog.resolve("decouverte"), NOW).allowed

    sub = _sub(plan_id="pro_club", current_period_end=NOW + timedelta(days=3))
    assert can_use_advanced_features(sub, catalog.resolve("pro_club"), NOW).allowed

    lapsed = sub.model_copy(update={"status": SubscriptionStatus.CANCELLED})
    result = can_use_advanced_features(lapsed, catalog.resolve("pro_club"), NOW)
    assert not result.allowed
    assert result.needs_renewal
