"""
Billing provider protocol.

Defines the interface for payment gateways (Stripe today) and the normalized
shapes the rest of billing works with, so business logic never touches raw
gateway payloads.
"""
from typing import Protocol, Dict, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from teammove.core.errors import AppError
from teammove.models.subscription import SubscriptionStatus


class GatewayEventType(str, Enum):
    """Internal event vocabulary the reconciler dispatches on."""
    CHECKOUT_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_DELETED = "subscription.deleted"
    PAYMENT_FAILED = "payment_intent.payment_failed"


class CheckoutMode(str, Enum):
    PAYMENT = "payment"
    SUBSCRIPTION = "subscription"


# Gateway subscription statuses mapped onto local ones
GATEWAY_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "incomplete": SubscriptionStatus.PENDING,
    "paused": SubscriptionStatus.PENDING,
    "canceled": SubscriptionStatus.CANCELLED,
    "incomplete_expired": SubscriptionStatus.CANCELLED,
}


def map_gateway_status(raw_status: Optional[str]) -> Optional[SubscriptionStatus]:
    if not raw_status:
        return None
    return GATEWAY_STATUS_MAP.get(raw_status)


@dataclass
class CheckoutSessionInfo:
    """Normalized view of a gateway checkout session."""
    session_id: str
    url: Optional[str]
    payment_completed: bool
    organization_id: Optional[str] = None
    plan_id: Optional[str] = None
    customer_ref: Optional[str] = None
    subscription_ref: Optional[str] = None
    current_period_end: Optional[datetime] = None
    expires_at: Optional[datetime] = None


@dataclass
class GatewayEvent:
    """A verified, parsed gateway notification."""
    event_id: str
    raw_type: str
    event_type: Optional[GatewayEventType]  # None when we do not handle this type
    created_at: Optional[datetime]
    organization_id: Optional[str] = None
    plan_id: Optional[str] = None
    session_id: Optional[str] = None
    customer_ref: Optional[str] = None
    subscription_ref: Optional[str] = None
    status: Optional[SubscriptionStatus] = None
    current_period_end: Optional[datetime] = None
    payment_completed: bool = False
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def idempotency_key(self) -> str:
        # Checkout completion shares its key with the synchronous verify path
        if self.event_type == GatewayEventType.CHECKOUT_COMPLETED and self.session_id:
            return checkout_key(self.session_id)
        return self.event_id


def checkout_key(session_id: str) -> str:
    return f"checkout:{session_id}"


class BillingProvider(Protocol):
    """
    Protocol for billing providers.

    Implementations must handle:
    - Customer resolution (idempotent)
    - Checkout session creation and retrieval
    - Subscription cancellation
    - Webhook signature verification and parsing
    """

    def ensure_customer(self, organization_id: str, email: Optional[str] = None, name: Optional[str] = None) -> str:
        """
        Return the gateway customer for the organization, creating it if needed.

        Raises:
            GatewayUnavailableError: On timeout or gateway 5xx
            BillingProviderError: On other gateway failures
        """
        ...

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
        """
        Open a hosted checkout session tagged with correlation metadata.

        Raises:
            GatewayUnavailableError: On timeout or gateway 5xx
            BillingProviderError: On other gateway failures
        """
        ...

    def retrieve_checkout_session(self, session_id: str) -> CheckoutSessionInfo:
        """
        Fetch a checkout session (bounded by the client timeout).

        Raises:
            SessionNotFoundError: If the gateway does not know the session
            GatewayUnavailableError: On timeout or gateway 5xx
        """
        ...

    def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """
        Open a customer portal session (payment methods, invoices) and return its URL.

        Raises:
            GatewayUnavailableError: On timeout or gateway 5xx
            BillingProviderError: On other gateway failures
        """
        ...

    def cancel_subscription(self, subscription_ref: str) -> None:
        """
        Cancel a recurring subscription immediately. Already-cancelled
        subscriptions are treated as success.
        """
        ...

    def parse_webhook(self, body: bytes, signature_header: Optional[str]) -> GatewayEvent:
        """
        Verify the signature over the raw body and parse the event.

        Raises:
            WebhookSignatureError: If the signature or payload is invalid
        """
        ...


class BillingProviderError(AppError):
    """Non-transient gateway failure."""
    code = "billing_provider_error"
    status_code = 502
