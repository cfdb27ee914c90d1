"""
Test billing HTTP routes.

The app is built around the test billing components (fake gateway,
in-memory SQLite) and driven through FastAPI's TestClient.
"""
import json
from datetime import datetime, timedelta, timezone

import jwt
import pytest
from fastapi.testclient import TestClient

from teammove.core.config import settings
from teammove.core.errors import GatewayUnavailableError
from teammove.features.billing.wiring import build_billing
from teammove.main import create_app


ORG_A = {"X-Organization-Id": "org_a"}
ORG_B = {"X-Organization-Id": "org_b"}
CHECKOUT = {
    "plan_id": "evenementielle-pack10",
    "success_url": "https://app.teammove.test/billing/success",
    "cancel_url": "https://app.teammove.test/billing",
}


@pytest.fixture
def client(billing):
    app = create_app(billing_components=billing, create_tables=False)
    return TestClient(app)


def _post_webhook(client, signer, event):
    body = json.dumps(event)
    return client.post(
        "/api/billing/webhook",
        content=body,
        headers={"stripe-signature": signer(body), "content-type": "application/json"},
    )


def test_healthz(client):
    res = client.get("/healthz")
    assert res.status_code == 200
    assert res.json() == {"status": "ok"}


def test_readyz(client):
    res = client.get("/readyz")
    assert res.status_code == 200
    assert res.json() == {"status": "ok", "billing_gateway": "configured"}


def test_request_id_is_echoed(client):
    res = client.get("/healthz", headers={"x-request-id": "rid-123"})
    assert res.headers["x-request-id"] == "rid-123"


def test_plans_hide_price_refs(client):
    res = client.get("/api/billing/plans")
    assert res.status_code == 200
    plans = {p["plan_id"]: p for p in res.json()}
    assert len(plans) == 6
    assert plans["pro_pme"]["billing_kind"] == "recurring_monthly"
    assert "external_price_ref" not in plans["pro_pme"]


def test_status_defaults_to_free_plan(client):
    res = client.get("/api/billing/status", headers=ORG_A)
    assert res.status_code == 200
    body = res.json()
    assert body["plan_id"] == "decouverte"
    assert body["is_valid"] is True
    assert body["max_invitations"] == 20


def test_requires_organization(client):
    res = client.get("/api/billing/status")
    assert res.status_code == 401


def test_checkout_flow_with_verify(client, provider):
    res = client.post("/api/billing/checkout", json=CHECKOUT, headers=ORG_A)
    assert res.status_code == 200
    session_id = res.json()["session_id"]
    assert res.json()["redirect_url"].endswith(session_id)

    pending = client.post("/api/billing/verify", json={"session_id": session_id}, headers=ORG_A)
    assert pending.status_code == 402
    assert pending.json()["error"]["code"] == "payment_not_confirmed"

    provider.complete(session_id)
    res = client.post("/api/billing/verify", json={"session_id": session_id}, headers=ORG_A)
    assert res.status_code == 200
    assert res.json()["plan_id"] == "evenementielle-pack10"
    assert res.json()["remaining_pack_units"] == 10


def test_verify_for_other_organization_is_forbidden(client, provider):
    session_id = client.post("/api/billing/checkout", json=CHECKOUT, headers=ORG_A).json()["session_id"]
    provider.complete(session_id)

    res = client.post("/api/billing/verify", json={"session_id": session_id}, headers=ORG_B)
    assert res.status_code == 403
    assert res.json()["error"]["code"] == "session_not_authorized"


def test_checkout_errors_use_error_envelope(client):
    res = client.post("/api/billing/checkout", json=dict(CHECKOUT, plan_id="platinum"), headers=ORG_A)
    assert res.status_code == 404
    error = res.json()["error"]
    assert error["code"] == "plan_not_found"
    assert error["retryable"] is False
    assert error["request_id"]

    res = client.post("/api/billing/checkout", json=dict(CHECKOUT, plan_id="decouverte"), headers=ORG_A)
    assert res.status_code == 400
    assert res.json()["error"]["code"] == "no_payment_required"


def test_gateway_outage_is_retryable(client, provider):
    provider.error = GatewayUnavailableError("Stripe timed out")
    res = client.post("/api/billing/checkout", json=CHECKOUT, headers=ORG_A)
    assert res.status_code == 503
    assert res.json()["error"]["retryable"] is True
    assert res.headers["retry-after"] == "5"


def test_webhook_roundtrip(client, signer, events):
    event = events.checkout_completed("cs_1", "org_a", "pro_club", subscription="sub_1", event_id="evt_1")

    res = _post_webhook(client, signer, event)
    assert res.status_code == 200
    assert res.json() == {"received": True, "event_id": "evt_1", "duplicate": False}

    again = _post_webhook(client, signer, event)
    assert again.status_code == 200
    assert again.json()["duplicate"] is True

    status = client.get("/api/billing/status", headers=ORG_A).json()
    assert status["plan_id"] == "pro_club"
    assert status["advanced_features"] is True


def test_webhook_with_bad_signature(client, signer, events, store):
    body = json.dumps(events.checkout_completed("cs_1", "org_a", "pro_club", subscription="sub_1"))
    res = client.post(
        "/api/billing/webhook",
        content=body.replace("pro_club", "pro_entreprise"),
        headers={"stripe-signature": signer(body)},
    )
    assert res.status_code == 400
    assert res.json()["error"]["code"] == "invalid_signature"
    assert store.get("org_a") is None


def test_ignored_webhook_is_still_acknowledged(client, signer, events):
    res = _post_webhook(client, signer, events.checkout_completed("cs_1", None, "pro_club"))
    assert res.status_code == 200
    assert res.json()["received"] is True


def test_cancel_and_free(client, signer, events, provider):
    _post_webhook(client, signer, events.checkout_completed("cs_1", "org_a", "pro_pme", subscription="sub_1"))

    res = client.post("/api/billing/cancel", headers=ORG_A)
    assert res.status_code == 200
    assert res.json()["plan_id"] == "decouverte"
    assert res.json()["status"] == "cancelled"
    assert provider.cancelled == ["sub_1"]

    res = client.post("/api/billing/free", headers=ORG_A)
    assert res.status_code == 200
    assert res.json()["status"] == "active"


def test_consume_units_until_exhausted(client, signer, events):
    _post_webhook(client, signer, events.checkout_completed("cs_1", "org_a", "evenementielle-single"))

    res = client.post("/api/billing/units/consume", headers=ORG_A)
    assert res.status_code == 200
    assert res.json()["remaining_pack_units"] == 0

    res = client.post("/api/billing/units/consume", headers=ORG_A)
    assert res.status_code == 403
    assert res.json()["error"]["code"] == "pack_exhausted"

    status = client.get("/api/billing/status", headers=ORG_A).json()
    assert status["is_valid"] is False
    assert status["needs_renewal"] is True


def test_clerk_token_selects_organization(client, monkeypatch):
    secret = "clerk-test-secret-with-enough-length-for-hs256"
    monkeypatch.setattr(settings, "CLERK_SECRET_KEY", secret)
    token = jwt.encode(
        {"sub": "user_1", "org_id": "org_jwt", "exp": datetime.now(timezone.utc) + timedelta(minutes=5)},
        secret,
        algorithm="HS256",
    )
    res = client.get("/api/billing/status", headers={"Authorization": f"Bearer {token}"})
    assert res.status_code == 200
    assert res.json()["organization_id"] == "org_jwt"

    no_org = jwt.encode({"sub": "user_1"}, secret, algorithm="HS256")
    res = client.get("/api/billing/status", headers={"Authorization": f"Bearer {no_org}"})
    assert res.status_code == 401


def test_header_fallback_disabled_in_production(client, monkeypatch):
    monkeypatch.setattr(settings, "ENV", "production")
    res = client.get("/api/billing/status", headers=ORG_A)
    assert res.status_code == 401


def test_features_on_free_plan(client):
    res = client.get("/api/billing/features", headers=ORG_A)
    assert res.status_code == 200
    body = res.json()
    assert body["plan_id"] == "decouverte"
    assert body["can_create_events"] == {
        "allowed": True, "reason": None, "remaining": 1, "needs_renewal": False,
    }
    assert body["can_send_invitations"]["remaining"] == 20
    assert body["can_use_advanced_features"]["allowed"] is False
    assert body["can_use_advanced_features"]["reason"] == "feature_not_included"

    res = client.get("/api/billing/features?events_created=1&invitations_sent=20", headers=ORG_A)
    body = res.json()
    assert body["can_create_events"]["allowed"] is False
    assert body["can_create_events"]["reason"] == "limit_reached"
    assert body["can_send_invitations"]["allowed"] is False


def test_features_follow_the_paid_plan(client, signer, events):
    _post_webhook(client, signer, events.checkout_completed("cs_1", "org_a", "pro_club", subscription="sub_1"))

    body = client.get("/api/billing/features?events_created=50", headers=ORG_A).json()
    assert body["plan_id"] == "pro_club"
    assert body["can_use_advanced_features"]["allowed"] is True
    assert body["can_create_events"]["allowed"] is True


def test_features_reject_negative_usage(client):
    res = client.get("/api/billing/features?events_created=-1", headers=ORG_A)
    assert res.status_code == 422


def test_portal_uses_the_organization_customer(client, provider, store):
    res = client.post(
        "/api/billing/portal",
        json={"return_url": "https://app.teammove.test/billing"},
        headers=ORG_A,
    )
    assert res.status_code == 200
    assert res.json() == {"url": "https://billing.stripe.test/cus_org_a"}
    assert provider.portals == [{"customer_id": "cus_org_a", "return_url": "https://app.teammove.test/billing"}]
    assert store.get_customer_ref("org_a") == "cus_org_a"


def test_portal_gateway_outage_is_retryable(client, provider):
    provider.error = GatewayUnavailableError("Stripe timed out")
    res = client.post("/api/billing/portal", json={"return_url": "https://a.test/"}, headers=ORG_A)
    assert res.status_code == 503
    assert res.json()["error"]["retryable"] is True


def test_portal_when_billing_is_disabled(test_settings, catalog, notifier, clock):
    disabled = build_billing(test_settings, catalog=catalog, provider=None, notifier=notifier, clock=clock)
    client = TestClient(create_app(billing_components=disabled, create_tables=False))

    res = client.post("/api/billing/portal", json={"return_url": "https://a.test/"}, headers=ORG_A)
    assert res.status_code == 503
    assert res.json()["error"]["code"] == "billing_disabled"
