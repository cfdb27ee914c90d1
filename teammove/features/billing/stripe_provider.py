"""
Stripe billing provider implementation.

Implements the BillingProvider protocol using the Stripe API.
Handles webhook signature verification and event parsing.

Every API call is bounded by STRIPE_TIMEOUT_SECONDS and retried once by the
Stripe client (max_network_retries) before surfacing GatewayUnavailableError.
"""
import json
from datetime import datetime, timezone
from typing import Dict, Any, Optional

import stripe

from teammove.core.config import settings
from teammove.core.errors import GatewayUnavailableError, SessionNotFoundError, WebhookSignatureError
from teammove.features.billing.provider import (
    BillingProviderError,
    CheckoutMode,
    CheckoutSessionInfo,
    GatewayEvent,
    GatewayEventType,
    map_gateway_status,
)


# Stripe event types mapped onto the reconciler's vocabulary
STRIPE_EVENT_TYPES = {
    "checkout.session.completed": GatewayEventType.CHECKOUT_COMPLETED,
    "checkout.session.async_payment_succeeded": GatewayEventType.CHECKOUT_COMPLETED,
    "customer.subscription.created": GatewayEventType.SUBSCRIPTION_UPDATED,
    "customer.subscription.updated": GatewayEventType.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": GatewayEventType.SUBSCRIPTION_DELETED,
    "payment_intent.payment_failed": GatewayEventType.PAYMENT_FAILED,
    "invoice.payment_failed": GatewayEventType.PAYMENT_FAILED,
}

SIGNATURE_TOLERANCE_SECONDS = 300


def _from_timestamp(value: Optional[int]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _ref(value: Any) -> Optional[str]:
    """Stripe fields are either an id string or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return value.get("id")


def _period_end(subscription: Any) -> Optional[datetime]:
    if not subscription or isinstance(subscription, str):
        return None
    ts = subscription.get("current_period_end")
    if not ts:
        # Newer API versions report the period on subscription items
        items = (subscription.get("items") or {}).get("data") or []
        if items:
            ts = items[0].get("current_period_end")
    return _from_timestamp(ts)


def _session_paid(session: Any) -> bool:
    return session.get("status") == "complete" and session.get("payment_status") in ("paid", "no_payment_required")


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        max_network_retries: Optional[int] = None,
    ):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY setting)
            webhook_secret: Stripe webhook secret (defaults to STRIPE_WEBHOOK_SECRET setting)
            timeout_seconds: Per-request timeout (defaults to STRIPE_TIMEOUT_SECONDS)
            max_network_retries: Automatic retries (defaults to STRIPE_MAX_NETWORK_RETRIES)
        """
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET

        if not self.secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")

        timeout = timeout_seconds if timeout_seconds is not None else settings.STRIPE_TIMEOUT_SECONDS
        retries = max_network_retries if max_network_retries is not None else settings.STRIPE_MAX_NETWORK_RETRIES

        stripe.api_key = self.secret_key
        stripe.max_network_retries = retries
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)

    def _call(self, what: str, fn, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as e:
            raise GatewayUnavailableError(f"Stripe {what} unavailable: {e}")
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe {what} failed: {e}")

    def ensure_customer(self, organization_id: str, email: Optional[str] = None, name: Optional[str] = None) -> str:
        """Find the Stripe customer tagged with organization_id, or create it."""
        found = self._call(
            "customer search",
            stripe.Customer.search,
            query=f"metadata['organization_id']:'{organization_id}'",
            limit=1,
        )
        if found.data:
            return found.data[0].id

        customer_data: Dict[str, Any] = {
            "metadata": {"organization_id": organization_id}
        }
        if email:
            customer_data["email"] = email
        if name:
            customer_data["name"] = name

        # Stable key: a retried create returns the first customer instead of a duplicate
        customer = self._call(
            "customer creation",
            stripe.Customer.create,
            idempotency_key=f"customer-{organization_id}",
            **customer_data,
        )
        return customer.id

    def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        mode: CheckoutMode,
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
        expires_at: Optional[datetime] = None,
    ) -> CheckoutSessionInfo:
        """Create Stripe checkout session."""
        params: Dict[str, Any] = {
            "customer": customer_id,
            "line_items": [{"price": price_id, "quantity": 1}],
            "mode": mode.value,
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
            "client_reference_id": metadata.get("organization_id"),
        }
        # Echo the correlation metadata on the objects later events are about
        if mode == CheckoutMode.SUBSCRIPTION:
            params["subscription_data"] = {"metadata": metadata}
        else:
            params["payment_intent_data"] = {"metadata": metadata}
        if expires_at is not None:
            params["expires_at"] = int(expires_at.timestamp())

        session = self._call("checkout session creation", stripe.checkout.Session.create, **params)
        return CheckoutSessionInfo(
            session_id=session.id,
            url=session.url,
            payment_completed=False,
            organization_id=metadata.get("organization_id"),
            plan_id=metadata.get("plan_id"),
            customer_ref=customer_id,
            expires_at=_from_timestamp(session.get("expires_at")),
        )

    def retrieve_checkout_session(self, session_id: str) -> CheckoutSessionInfo:
        try:
            session = stripe.checkout.Session.retrieve(session_id, expand=["subscription"])
        except stripe.InvalidRequestError as e:
            if getattr(e, "code", None) == "resource_missing":
                raise SessionNotFoundError(f"Unknown checkout session: {session_id}")
            raise BillingProviderError(f"Stripe checkout session lookup failed: {e}")
        except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as e:
            raise GatewayUnavailableError(f"Stripe checkout session lookup unavailable: {e}")
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe checkout session lookup failed: {e}")

        metadata = session.get("metadata") or {}
        subscription = session.get("subscription")
        return CheckoutSessionInfo(
            session_id=session.id,
            url=session.get("url"),
            payment_completed=_session_paid(session),
            organization_id=metadata.get("organization_id") or session.get("client_reference_id"),
            plan_id=metadata.get("plan_id"),
            customer_ref=_ref(session.get("customer")),
            subscription_ref=_ref(subscription),
            current_period_end=_period_end(subscription),
            expires_at=_from_timestamp(session.get("expires_at")),
        )

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """Create Stripe billing portal session."""
        session = self._call(
            "portal session creation",
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=return_url,
        )
        if not session.url:
            raise BillingProviderError("Stripe returned a portal session without a URL")
        return session.url

    def cancel_subscription(self, subscription_ref: str) -> None:
        try:
            stripe.Subscription.cancel(subscription_ref)
        except stripe.InvalidRequestError as e:
            # Already gone on Stripe's side: the cancellation goal is met
            if getattr(e, "code", None) == "resource_missing":
                return
            raise BillingProviderError(f"Stripe subscription cancellation failed: {e}")
        except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as e:
            raise GatewayUnavailableError(f"Stripe subscription cancellation unavailable: {e}")
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription cancellation failed: {e}")

    def parse_webhook(self, body: bytes, signature_header: Optional[str]) -> GatewayEvent:
        """Verify Stripe webhook signature and parse event."""
        if not self.webhook_secret:
            raise WebhookSignatureError("STRIPE_WEBHOOK_SECRET not configured")
        if not signature_header:
            raise WebhookSignatureError("Missing stripe-signature header")

        try:
            payload = body.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                payload, signature_header, self.webhook_secret, SIGNATURE_TOLERANCE_SECONDS
            )
            event = json.loads(payload)
        except UnicodeDecodeError as e:
            raise WebhookSignatureError(f"Invalid payload encoding: {e}")
        except stripe.SignatureVerificationError as e:
            raise WebhookSignatureError(f"Invalid signature: {e}")
        except ValueError as e:
            raise WebhookSignatureError(f"Invalid payload: {e}")

        return self._parse_event(event)

    def _parse_event(self, event: Dict[str, Any]) -> GatewayEvent:
        """Parse Stripe event into a normalized GatewayEvent."""
        raw_type = event.get("type", "")
        data = (event.get("data") or {}).get("object") or {}
        metadata = dict(data.get("metadata") or {})

        result = GatewayEvent(
            event_id=event.get("id", ""),
            raw_type=raw_type,
            event_type=STRIPE_EVENT_TYPES.get(raw_type),
            created_at=_from_timestamp(event.get("created")),
            customer_ref=_ref(data.get("customer")),
            payload=data,
        )

        if result.event_type == GatewayEventType.CHECKOUT_COMPLETED:
            result.session_id = data.get("id")
            result.subscription_ref = _ref(data.get("subscription"))
            result.current_period_end = _period_end(data.get("subscription"))
            result.payment_completed = _session_paid(data)
            metadata.setdefault("organization_id", data.get("client_reference_id"))

        elif result.event_type in (GatewayEventType.SUBSCRIPTION_UPDATED, GatewayEventType.SUBSCRIPTION_DELETED):
            result.subscription_ref = data.get("id")
            result.status = map_gateway_status(data.get("status"))
            result.current_period_end = _period_end(data)

        elif raw_type == "invoice.payment_failed":
            details = data.get("subscription_details") or (data.get("parent") or {}).get("subscription_details") or {}
            result.subscription_ref = _ref(data.get("subscription")) or _ref(details.get("subscription"))
            for key, value in (details.get("metadata") or {}).items():
                metadata.setdefault(key, value)

        result.organization_id = metadata.get("organization_id")
        result.plan_id = metadata.get("plan_id")
        return result
