"""
Billing service orchestrator.

Coordinates:
- Customer resolution and the customer portal
- Checkout start and synchronous payment verification
- Cancellation and free-plan activation
- Entitlement-aware status reads, feature gates and pack-unit consumption

All Stripe-specific code is in stripe_provider.py; every subscription write
goes through SubscriptionLifecycle.
"""
from dataclasses import asdict
from datetime import datetime, timedelta
from typing import Callable, Optional
from urllib.parse import urlsplit, urlunsplit

from pydantic import BaseModel

from teammove.core.config import Settings, settings as default_settings
from teammove.core.errors import (
    BillingDisabledError,
    CatalogIntegrityError,
    ConflictError,
    NoPaymentRequiredError,
    PaymentNotConfirmedError,
    QuotaExceededError,
    SessionNotAuthorizedError,
)
from teammove.core.logging import log_event
from teammove.features.billing.lifecycle import SubscriptionLifecycle
from teammove.features.billing.notifications import NotificationKind, Notifier
from teammove.features.billing.provider import (
    BillingProvider,
    BillingProviderError,
    CheckoutMode,
)
from teammove.features.billing.stripe_provider import StripeProvider
from teammove.features.billing.store import SubscriptionStore
from teammove.features.entitlements.service import (
    EntitlementReason,
    PermissionResult,
    can_create_event,
    can_send_invitations,
    can_use_advanced_features,
    can_consume_unit,
    days_until_expiry,
    is_entitlement_valid,
)
from teammove.features.plans.catalog import PlanCatalog, is_free, is_pack
from teammove.models.plan import PlanDefinition
from teammove.models.subscription import (
    CheckoutSessionRecord,
    CheckoutStart,
    OrganizationSubscription,
    SubscriptionSnapshot,
    SubscriptionStatus,
    utc_now,
)


SESSION_ID_PLACEHOLDER = "{CHECKOUT_SESSION_ID}"


def billing_enabled(settings_obj: Optional[Settings] = None) -> bool:
    """Check if billing is enabled (Stripe configured)."""
    cfg = settings_obj or default_settings
    return bool(cfg.STRIPE_SECRET_KEY)


def get_provider(settings_obj: Optional[Settings] = None) -> Optional[BillingProvider]:
    """Get billing provider if billing is enabled."""
    cfg = settings_obj or default_settings
    if not billing_enabled(cfg):
        return None
    try:
        return StripeProvider(
            secret_key=cfg.STRIPE_SECRET_KEY,
            webhook_secret=cfg.STRIPE_WEBHOOK_SECRET,
            timeout_seconds=cfg.STRIPE_TIMEOUT_SECONDS,
            max_network_retries=cfg.STRIPE_MAX_NETWORK_RETRIES,
        )
    except BillingProviderError:
        return None


def with_session_placeholder(success_url: str) -> str:
    """Append the gateway's session-id placeholder so the return page can call verify."""
    if SESSION_ID_PLACEHOLDER in success_url:
        return success_url
    parts = urlsplit(success_url)
    query = f"{parts.query}&session_id={SESSION_ID_PLACEHOLDER}" if parts.query else f"session_id={SESSION_ID_PLACEHOLDER}"
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))


class SubscriptionInfo(BaseModel):
    """Status view returned to the organization's UI."""
    organization_id: str
    plan_id: str
    plan_name: str
    status: SubscriptionStatus
    is_valid: bool
    reason: Optional[EntitlementReason] = None
    needs_renewal: bool = False
    expiry: Optional[datetime] = None
    days_until_expiry: Optional[int] = None
    remaining_pack_units: Optional[int] = None
    max_events: Optional[int] = None
    max_invitations: Optional[int] = None
    advanced_features: bool = False


class FeatureGate(BaseModel):
    allowed: bool
    reason: Optional[EntitlementReason] = None
    remaining: Optional[int] = None  # None = unlimited
    needs_renewal: bool = False

    @classmethod
    def from_result(cls, result: PermissionResult) -> "FeatureGate":
        return cls(**asdict(result))


class FeatureAccess(BaseModel):
    """What the organization may do right now, given its usage so far."""
    organization_id: str
    plan_id: str
    can_create_events: FeatureGate
    can_send_invitations: FeatureGate
    can_use_advanced_features: FeatureGate


class BillingService:
    def __init__(
        self,
        catalog: PlanCatalog,
        store: SubscriptionStore,
        provider: Optional[BillingProvider],
        notifier: Notifier,
        settings_obj: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
        lifecycle: Optional[SubscriptionLifecycle] = None,
    ):
        self.catalog = catalog
        self.store = store
        self.provider = provider
        self.notifier = notifier
        self.settings = settings_obj or default_settings
        self.clock = clock
        self.lifecycle = lifecycle or SubscriptionLifecycle(store, catalog, notifier, clock=clock, provider=provider)

    def _require_provider(self) -> BillingProvider:
        if self.provider is None:
            raise BillingDisabledError("Billing is not configured")
        return self.provider

    def _plan_for(self, sub: OrganizationSubscription) -> PlanDefinition:
        plan = self.catalog.get(sub.plan_id)
        if plan is None:
            log_event(
                "error",
                "billing.catalog.unknown_plan",
                organization_id=sub.organization_id,
                error_code=CatalogIntegrityError.code,
                extra={"plan_id": sub.plan_id},
            )
            raise CatalogIntegrityError(f"Stored plan {sub.plan_id!r} is not in the catalog")
        return plan

    def ensure_customer(self, organization_id: str) -> str:
        """Return the gateway customer for the organization (created once)."""
        existing = self.store.get_customer_ref(organization_id)
        if existing:
            return existing
        customer_ref = self._require_provider().ensure_customer(organization_id)
        return self.store.save_customer_ref(organization_id, customer_ref)

    def start_checkout(
        self,
        organization_id: str,
        plan_id: str,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutStart:
        """
        Start a hosted checkout for a paid plan.

        Raises:
            PlanNotFoundError: Unknown plan id
            NoPaymentRequiredError: The free plan was requested
            ConflictError: The organization still holds a recurring subscription
            GatewayUnavailableError / BillingProviderError: Gateway failures
        """
        plan = self.catalog.resolve(plan_id)
        if is_free(plan):
            raise NoPaymentRequiredError(f"Plan {plan.plan_id} does not require payment")

        provider = self._require_provider()
        if not plan.external_price_ref:
            raise CatalogIntegrityError(f"No Stripe price configured for plan: {plan.plan_id}")

        current = self.store.get_or_create(organization_id)
        if current.external_subscription_ref and current.status in (
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.PAST_DUE,
        ):
            raise ConflictError(
                "Cancel the current subscription before purchasing another plan",
                code="active_subscription_exists",
            )

        customer_ref = self.ensure_customer(organization_id)
        now = self.clock()
        expires_at = now + timedelta(minutes=self.settings.CHECKOUT_SESSION_TTL_MINUTES)
        mode = CheckoutMode.PAYMENT if is_pack(plan) else CheckoutMode.SUBSCRIPTION

        info = provider.create_checkout_session(
            customer_id=customer_ref,
            price_id=plan.external_price_ref,
            mode=mode,
            success_url=with_session_placeholder(success_url),
            cancel_url=cancel_url,
            metadata={"organization_id": organization_id, "plan_id": plan.plan_id},
            expires_at=expires_at,
        )
        if not info.url:
            raise BillingProviderError("Gateway returned a checkout session without a redirect URL")

        self.store.record_checkout_session(
            CheckoutSessionRecord(
                session_id=info.session_id,
                organization_id=organization_id,
                plan_id=plan.plan_id,
                created_at=now,
                expires_at=info.expires_at or expires_at,
            )
        )
        log_event(
            "info",
            "billing.checkout.started",
            organization_id=organization_id,
            extra={"plan_id": plan.plan_id, "session_id": info.session_id, "mode": mode.value},
        )
        return CheckoutStart(session_id=info.session_id, redirect_url=info.url)

    def start_portal(self, organization_id: str, return_url: str) -> str:
        """
        Open the gateway's customer portal for payment methods and invoices.

        Raises:
            BillingDisabledError: Billing is not configured
            GatewayUnavailableError / BillingProviderError: Gateway failures
        """
        provider = self._require_provider()
        customer_ref = self.ensure_customer(organization_id)
        url = provider.create_portal_session(customer_ref, return_url)
        log_event("info", "billing.portal.started", organization_id=organization_id)
        return url

    def verify_payment(self, session_id: str, organization_id: str) -> SubscriptionSnapshot:
        """
        Confirm a checkout synchronously and activate the plan.

        Applies under the same key as the checkout.session.completed webhook,
        so whichever of the two lands second is a no-op.

        Raises:
            SessionNotFoundError: Unknown session
            SessionNotAuthorizedError: Session belongs to another organization
            PaymentNotConfirmedError: Payment not complete yet
            GatewayUnavailableError: Gateway slow or down; safe to retry
        """
        provider = self._require_provider()
        info = provider.retrieve_checkout_session(session_id)
        record = self.store.get_checkout_session(session_id)

        owner = info.organization_id or (record.organization_id if record else None)
        if owner != organization_id:
            log_event(
                "warning",
                "billing.verify.organization_mismatch",
                organization_id=organization_id,
                error_code=SessionNotAuthorizedError.code,
                extra={"session_id": session_id},
            )
            raise SessionNotAuthorizedError("Checkout session belongs to another organization")

        if not info.payment_completed:
            raise PaymentNotConfirmedError("Payment has not been confirmed yet")

        plan_id = info.plan_id or (record.plan_id if record else None)
        # The webhook only carries the subscription id, so both paths start the
        # period from activation time; subscription events then correct it.
        result = self.lifecycle.complete_checkout(
            organization_id,
            plan_id,
            session_id,
            source="verify",
            subscription_ref=info.subscription_ref,
            customer_ref=info.customer_ref,
        )
        return result.subscription.snapshot()

    def cancel_subscription(self, organization_id: str) -> SubscriptionSnapshot:
        """
        Cancel the organization's paid plan and fall back to the free plan.

        The gateway is told first; if that fails nothing changes locally and
        the error propagates. The later subscription.deleted webhook finds no
        matching subscription and is recorded as an ignored confirmation.
        """
        current = self.store.get_or_create(organization_id)
        plan = self.catalog.get(current.plan_id)
        if plan is not None and is_free(plan) and not current.external_subscription_ref:
            return current.snapshot()

        ref = current.external_subscription_ref
        if ref:
            self._require_provider().cancel_subscription(ref)
            key = f"cancel:{ref}"
        else:
            key = f"cancel:local:{current.version}"

        result = self.lifecycle.downgrade_to_free(
            organization_id,
            key,
            event_type="subscription.cancel_requested",
            source="cancel",
            status=SubscriptionStatus.CANCELLED,
        )
        return result.subscription.snapshot()

    def activate_free_plan(self, organization_id: str) -> SubscriptionSnapshot:
        """Switch to the free plan; a recurring subscription is cancelled at the gateway first."""
        current = self.store.get_or_create(organization_id)
        plan = self.catalog.get(current.plan_id)
        already_free = plan is not None and is_free(plan) and current.status == SubscriptionStatus.ACTIVE
        if already_free and not current.external_subscription_ref:
            return current.snapshot()

        if current.external_subscription_ref:
            self._require_provider().cancel_subscription(current.external_subscription_ref)

        result = self.lifecycle.downgrade_to_free(
            organization_id,
            f"free:{current.version}",
            event_type="plan.free_activated",
            source="free",
            status=SubscriptionStatus.ACTIVE,
            notification=NotificationKind.CANCELLED,
        )
        return result.subscription.snapshot()

    def get_subscription_info(self, organization_id: str) -> SubscriptionInfo:
        sub = self.store.get_or_create(organization_id)
        plan = self._plan_for(sub)
        now = self.clock()
        check = is_entitlement_valid(sub, plan, now)
        return SubscriptionInfo(
            organization_id=organization_id,
            plan_id=plan.plan_id,
            plan_name=plan.name,
            status=sub.status,
            is_valid=check.valid,
            reason=check.reason,
            needs_renewal=check.needs_renewal,
            expiry=sub.expiry,
            days_until_expiry=days_until_expiry(sub, plan, now),
            remaining_pack_units=sub.remaining_pack_units,
            max_events=plan.max_events,
            max_invitations=plan.max_invitations,
            advanced_features=plan.advanced_features,
        )

    def get_feature_access(
        self,
        organization_id: str,
        events_created: int = 0,
        invitations_sent: int = 0,
    ) -> FeatureAccess:
        """
        Feature gates for the organization's UI.

        Usage counts belong to the events service and are passed in by the
        caller; the plan limits and entitlement come from here.
        """
        sub = self.store.get_or_create(organization_id)
        plan = self._plan_for(sub)
        now = self.clock()
        return FeatureAccess(
            organization_id=organization_id,
            plan_id=plan.plan_id,
            can_create_events=FeatureGate.from_result(can_create_event(sub, plan, events_created, now)),
            can_send_invitations=FeatureGate.from_result(
                can_send_invitations(sub, plan, invitations_sent, now=now)
            ),
            can_use_advanced_features=FeatureGate.from_result(can_use_advanced_features(sub, plan, now)),
        )

    def consume_unit(self, organization_id: str) -> Optional[int]:
        """
        Take one event unit from a pack.

        Returns the units left, or None for plans that are not unit-based.

        Raises:
            QuotaExceededError: The pack is expired or exhausted
        """
        sub = self.store.get_or_create(organization_id)
        plan = self._plan_for(sub)
        if not is_pack(plan):
            return None
        if not can_consume_unit(sub, plan, self.clock()):
            raise QuotaExceededError("No event units left on the current pack", code="pack_exhausted")

        remaining = self.store.consume_unit(organization_id)
        if remaining is None:
            raise QuotaExceededError("No event units left on the current pack", code="pack_exhausted")
        log_event(
            "info",
            "billing.pack.unit_consumed",
            organization_id=organization_id,
            extra={"plan_id": plan.plan_id, "remaining": remaining},
        )
        return remaining
