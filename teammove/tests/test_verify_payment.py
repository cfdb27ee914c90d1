"""
Test synchronous payment verification and its convergence with the webhook.
"""
import pytest

from teammove.core.errors import (
    GatewayUnavailableError,
    PaymentNotConfirmedError,
    SessionNotAuthorizedError,
    SessionNotFoundError,
)
from teammove.models.subscription import SubscriptionStatus


SUCCESS = "https://app.teammove.test/billing/success"
CANCEL = "https://app.teammove.test/billing"


def _paid_checkout(billing, provider, org, plan, subscription_ref=None):
    start = billing.service.start_checkout(org, plan, SUCCESS, CANCEL)
    provider.complete(start.session_id, subscription_ref=subscription_ref)
    return start.session_id


def _without_org(snapshot):
    return snapshot.model_dump(exclude={"organization_id"})


def test_verify_activates_pack(billing, provider, store, notifier):
    session_id = _paid_checkout(billing, provider, "org_a", "evenementielle-pack10")

    snapshot = billing.service.verify_payment(session_id, "org_a")
    assert snapshot.plan_id == "evenementielle-pack10"
    assert snapshot.status == SubscriptionStatus.ACTIVE
    assert snapshot.remaining_pack_units == 10
    assert store.get_checkout_session(session_id).consumed_by == "verify"
    assert notifier.sent == [("activated", "org_a", "evenementielle-pack10")]


def test_verify_twice_is_idempotent(billing, provider, store, notifier):
    session_id = _paid_checkout(billing, provider, "org_a", "evenementielle-pack10")
    first = billing.service.verify_payment(session_id, "org_a")
    billing.service.consume_unit("org_a")

    second = billing.service.verify_payment(session_id, "org_a")
    # Replaying the same checkout does not refill the pack
    assert second.remaining_pack_units == 9
    assert first.plan_id == second.plan_id
    assert len(notifier.sent) == 1


def test_verify_unpaid_session(billing, store):
    start = billing.service.start_checkout("org_a", "evenementielle-single", SUCCESS, CANCEL)
    with pytest.raises(PaymentNotConfirmedError) as exc:
        billing.service.verify_payment(start.session_id, "org_a")
    assert exc.value.status_code == 402
    assert store.get("org_a").plan_id == "decouverte"


def test_verify_unknown_session(billing):
    with pytest.raises(SessionNotFoundError):
        billing.service.verify_payment("cs_missing", "org_a")


def test_verify_for_other_organization_fails(billing, provider, store):
    session_id = _paid_checkout(billing, provider, "org_a", "pro_pme", subscription_ref="sub_1")

    with pytest.raises(SessionNotAuthorizedError) as exc:
        billing.service.verify_payment(session_id, "org_b")
    assert exc.value.status_code == 403
    assert store.get("org_b") is None
    assert store.get("org_a").plan_id == "decouverte"


def test_verify_gateway_timeout_leaves_state(billing, provider, store):
    session_id = _paid_checkout(billing, provider, "org_a", "pro_club", subscription_ref="sub_1")
    provider.error = GatewayUnavailableError("Stripe timed out")

    with pytest.raises(GatewayUnavailableError):
        billing.service.verify_payment(session_id, "org_a")
    assert store.get("org_a").plan_id == "decouverte"

    provider.error = None
    assert billing.service.verify_payment(session_id, "org_a").plan_id == "pro_club"


@pytest.mark.parametrize("plan, subscription_ref", [("evenementielle-pack10", None), ("pro_pme", "sub_1")])
def test_verify_and_webhook_commute(billing, provider, deliver, events, store, plan, subscription_ref):
    # org_a: verify lands first, org_b: webhook lands first
    session_a = _paid_checkout(billing, provider, "org_a", plan, subscription_ref)
    session_b = _paid_checkout(billing, provider, "org_b", plan, subscription_ref)

    billing.service.verify_payment(session_a, "org_a")
    webhook_a = deliver(events.checkout_completed(session_a, "org_a", plan, subscription=subscription_ref))

    webhook_b = deliver(events.checkout_completed(session_b, "org_b", plan, subscription=subscription_ref))
    billing.service.verify_payment(session_b, "org_b")

    assert webhook_a.duplicate
    assert webhook_b.applied
    assert _without_org(store.get("org_a").snapshot()) == _without_org(store.get("org_b").snapshot())
    assert store.get_checkout_session(session_a).consumed_by == "verify"
    assert store.get_checkout_session(session_b).consumed_by == "webhook"
