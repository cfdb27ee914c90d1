# teammove/conftest.py
import hashlib
import hmac
import itertools
import json
import time
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest

from teammove.core.config import Settings
from teammove.core.database import init_engine, create_all_tables, drop_all_tables
from teammove.core.errors import SessionNotFoundError
from teammove.features.billing.provider import CheckoutSessionInfo
from teammove.features.billing.stripe_provider import StripeProvider
from teammove.features.billing.wiring import build_billing
from teammove.features.plans.catalog import build_catalog


WEBHOOK_SECRET = "whsec_test_secret"

PRICE_SETTINGS = {
    "STRIPE_PRICE_EVENEMENTIELLE_SINGLE": "price_single",
    "STRIPE_PRICE_EVENEMENTIELLE_PACK10": "price_pack10",
    "STRIPE_PRICE_PRO_CLUB": "price_pro_club",
    "STRIPE_PRICE_PRO_PME": "price_pro_pme",
    "STRIPE_PRICE_PRO_ENTREPRISE": "price_pro_entreprise",
}


class FixedClock:
    """Injectable clock; tests move time with advance()."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    def notify(self, kind, organization_id, plan_id=None):
        self.sent.append((kind.value, organization_id, plan_id))


class FakeProvider:
    """
    In-memory gateway double.

    Checkout sessions live in self.sessions; tests flip them to paid with
    complete(). Webhook parsing is the real Stripe signature check and parser.
    """

    def __init__(self):
        self.sessions: Dict[str, CheckoutSessionInfo] = {}
        self.customers: Dict[str, str] = {}
        self.cancelled: List[str] = []
        self.created: List[dict] = []
        self.portals: List[dict] = []
        self.error: Optional[Exception] = None
        self.cancel_error: Optional[Exception] = None
        self._ids = itertools.count(1)
        self._parser = StripeProvider(secret_key="sk_test_dummy", webhook_secret=WEBHOOK_SECRET)

    def ensure_customer(self, organization_id, email=None, name=None):
        if self.error:
            raise self.error
        return self.customers.setdefault(organization_id, f"cus_{organization_id}")

    def create_checkout_session(self, customer_id, price_id, mode, success_url, cancel_url, metadata, expires_at=None):
        if self.error:
            raise self.error
        session_id = f"cs_test_{next(self._ids)}"
        self.created.append(
            {
                "session_id": session_id,
                "customer_id": customer_id,
                "price_id": price_id,
                "mode": mode,
                "success_url": success_url,
                "cancel_url": cancel_url,
                "metadata": dict(metadata),
                "expires_at": expires_at,
            }
        )
        info = CheckoutSessionInfo(
            session_id=session_id,
            url=f"https://checkout.stripe.test/{session_id}",
            payment_completed=False,
            organization_id=metadata.get("organization_id"),
            plan_id=metadata.get("plan_id"),
            customer_ref=customer_id,
            expires_at=expires_at,
        )
        self.sessions[session_id] = info
        return info

    def complete(self, session_id, subscription_ref=None, current_period_end=None):
        info = self.sessions[session_id]
        info.payment_completed = True
        info.subscription_ref = subscription_ref
        info.current_period_end = current_period_end
        return info

    def retrieve_checkout_session(self, session_id):
        if self.error:
            raise self.error
        if session_id not in self.sessions:
            raise SessionNotFoundError(f"Checkout session not found: {session_id}")
        return self.sessions[session_id]

    def create_portal_session(self, customer_id, return_url):
        if self.error:
            raise self.error
        self.portals.append({"customer_id": customer_id, "return_url": return_url})
        return f"https://billing.stripe.test/{customer_id}"

    def cancel_subscription(self, subscription_ref):
        if self.cancel_error:
            raise self.cancel_error
        self.cancelled.append(subscription_ref)

    def parse_webhook(self, body, signature_header):
        return self._parser.parse_webhook(body, signature_header)


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a Stripe-Signature header for payload."""
    ts = timestamp if timestamp is not None else int(time.time())
    signature = hmac.new(secret.encode("utf-8"), f"{ts}.{payload}".encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={ts},v1={signature}"


def _ts(value: Optional[datetime]) -> Optional[int]:
    return int(value.timestamp()) if value else None


class StripeEvents:
    """Builders for Stripe event payloads as the webhook endpoint receives them."""

    def __init__(self):
        self._ids = itertools.count(1)

    def _event(self, event_type, obj, event_id=None, created=None):
        return {
            "id": event_id or f"evt_{next(self._ids)}",
            "object": "event",
            "type": event_type,
            "created": _ts(created) or int(time.time()),
            "data": {"object": obj},
        }

    def checkout_completed(self, session_id, organization_id, plan_id, *, subscription=None,
                           paid=True, customer="cus_test", event_id=None, created=None,
                           event_type="checkout.session.completed"):
        metadata = {"plan_id": plan_id}
        if organization_id:
            metadata["organization_id"] = organization_id
        return self._event(
            event_type,
            {
                "id": session_id,
                "object": "checkout.session",
                "status": "complete",
                "payment_status": "paid" if paid else "unpaid",
                "customer": customer,
                "subscription": subscription,
                "metadata": metadata,
            },
            event_id=event_id,
            created=created,
        )

    def subscription(self, event_type, subscription_id, organization_id, plan_id, *,
                     status="active", current_period_end=None, event_id=None, created=None):
        return self._event(
            f"customer.subscription.{event_type}",
            {
                "id": subscription_id,
                "object": "subscription",
                "status": status,
                "customer": "cus_test",
                "current_period_end": _ts(current_period_end),
                "metadata": {"organization_id": organization_id, "plan_id": plan_id},
            },
            event_id=event_id,
            created=created,
        )

    def payment_intent_failed(self, organization_id, plan_id=None, *, event_id=None, created=None):
        metadata = {"organization_id": organization_id}
        if plan_id:
            metadata["plan_id"] = plan_id
        return self._event(
            "payment_intent.payment_failed",
            {"id": "pi_test", "object": "payment_intent", "customer": "cus_test", "metadata": metadata},
            event_id=event_id,
            created=created,
        )

    def invoice_failed(self, subscription_id, organization_id, plan_id, *, event_id=None, created=None):
        return self._event(
            "invoice.payment_failed",
            {
                "id": "in_test",
                "object": "invoice",
                "customer": "cus_test",
                "subscription": subscription_id,
                "subscription_details": {
                    "metadata": {"organization_id": organization_id, "plan_id": plan_id},
                },
            },
            event_id=event_id,
            created=created,
        )


@pytest.fixture(autouse=True)
def db():
    """Fresh in-memory SQLite schema per test."""
    init_engine("sqlite://")
    create_all_tables()
    yield
    drop_all_tables()


@pytest.fixture
def test_settings():
    return Settings(
        ENV="test",
        DATABASE_URL="sqlite://",
        STRIPE_SECRET_KEY="sk_test_dummy",
        STRIPE_WEBHOOK_SECRET=WEBHOOK_SECRET,
        CHECKOUT_SESSION_TTL_MINUTES=60,
        PAST_DUE_GRACE_DAYS=7,
        NOTIFICATIONS_ENABLED=False,
        **PRICE_SETTINGS,
    )


@pytest.fixture
def catalog(test_settings):
    return build_catalog(test_settings)


@pytest.fixture
def clock():
    return FixedClock(datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def billing(test_settings, catalog, provider, notifier, clock):
    return build_billing(test_settings, catalog=catalog, provider=provider, notifier=notifier, clock=clock)


@pytest.fixture
def store(billing):
    return billing.store


@pytest.fixture
def events():
    return StripeEvents()


@pytest.fixture
def deliver(billing):
    """Sign an event and push it through the reconciler, as the webhook route does."""

    def _deliver(event: dict, secret: str = WEBHOOK_SECRET):
        body = json.dumps(event)
        return billing.reconciler.handle(body.encode("utf-8"), sign_payload(body, secret))

    return _deliver


@pytest.fixture
def signer():
    return sign_payload
