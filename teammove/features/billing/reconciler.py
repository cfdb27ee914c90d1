"""
Webhook reconciler.

Turns verified gateway notifications into subscription transitions.

Contract with the gateway:
- signature failures are the only rejection (400); the gateway retries those,
- everything else is acknowledged, including events we ignore or fail to apply,
- redelivered events are detected by idempotency key and acknowledged unchanged.
"""
from dataclasses import dataclass
from typing import Optional

from teammove.core.errors import BillingDisabledError, WebhookSignatureError
from teammove.core.logging import log_event
from teammove.features.billing.lifecycle import SubscriptionLifecycle
from teammove.features.billing.provider import BillingProvider, GatewayEvent, GatewayEventType
from teammove.features.billing.store import ApplyResult, SubscriptionStore, payload_hash
from teammove.features.plans.catalog import PlanCatalog


@dataclass(frozen=True)
class WebhookAck:
    received: bool = True
    event_id: Optional[str] = None
    duplicate: bool = False
    applied: bool = False
    ignored_reason: Optional[str] = None


class WebhookReconciler:
    def __init__(
        self,
        provider: Optional[BillingProvider],
        store: SubscriptionStore,
        catalog: PlanCatalog,
        lifecycle: SubscriptionLifecycle,
    ):
        self.provider = provider
        self.store = store
        self.catalog = catalog
        self.lifecycle = lifecycle

    def handle(self, body: bytes, signature_header: Optional[str]) -> WebhookAck:
        """
        Verify, dedupe and apply one gateway notification.

        Raises:
            WebhookSignatureError: Signature missing, invalid or stale
            BillingDisabledError: Billing not configured
        """
        if self.provider is None:
            raise BillingDisabledError("Billing is not configured")

        try:
            event = self.provider.parse_webhook(body, signature_header)
        except WebhookSignatureError as e:
            log_event(
                "warning",
                "billing.webhook.signature_rejected",
                error_code=e.code,
                extra={"reason": e.message},
            )
            raise

        log_event(
            "info",
            "billing.webhook.received",
            organization_id=event.organization_id,
            event_type=event.raw_type,
            event_id=event.event_id,
        )

        try:
            return self._reconcile(event, payload_hash(body))
        except Exception as e:
            # Still acknowledged; only signature failures are rejected
            log_event(
                "error",
                "billing.webhook.processing_failed",
                organization_id=event.organization_id,
                event_type=event.raw_type,
                event_id=event.event_id,
                error_code=getattr(e, "code", "internal_error"),
                extra={"error": e},
                exc_info=True,
            )
            return WebhookAck(event_id=event.event_id, ignored_reason="processing_failed")

    def _ignore(self, event: GatewayEvent, reason: str, level: str = "info") -> WebhookAck:
        log_event(
            level,
            "billing.webhook.ignored",
            organization_id=event.organization_id,
            event_type=event.raw_type,
            event_id=event.event_id,
            extra={"reason": reason},
        )
        return WebhookAck(event_id=event.event_id, ignored_reason=reason)

    def _reconcile(self, event: GatewayEvent, body_hash: str) -> WebhookAck:
        if event.event_type is None:
            return self._ignore(event, "unhandled_event_type")

        organization_id = event.organization_id
        if not organization_id:
            return self._ignore(event, "missing_correlation", level="warning")

        plan_id = event.plan_id
        if event.event_type == GatewayEventType.CHECKOUT_COMPLETED:
            if not event.session_id:
                return self._ignore(event, "missing_session", level="warning")
            if not event.payment_completed:
                # Delayed payment methods follow up with async_payment_succeeded
                return self._ignore(event, "payment_pending")
            record = self.store.get_checkout_session(event.session_id)
            if record and record.organization_id != organization_id:
                return self._ignore(event, "correlation_mismatch", level="error")
            plan_id = plan_id or (record.plan_id if record else None)
            if self.catalog.get(plan_id) is None:
                return self._ignore(event, "unknown_plan", level="error")
        elif self.store.get(organization_id) is None:
            return self._ignore(event, "unknown_organization", level="warning")

        key = event.idempotency_key
        if self.store.is_applied(organization_id, key):
            log_event(
                "info",
                "billing.webhook.duplicate",
                organization_id=organization_id,
                event_type=event.raw_type,
                event_id=event.event_id,
            )
            return WebhookAck(event_id=event.event_id, duplicate=True)

        result = self._dispatch(event, key, plan_id, body_hash)
        if result.duplicate:
            return WebhookAck(event_id=event.event_id, duplicate=True)
        if not result.applied:
            return WebhookAck(event_id=event.event_id, ignored_reason="no_matching_subscription")
        return WebhookAck(event_id=event.event_id, applied=True)

    def _dispatch(self, event: GatewayEvent, key: str, plan_id: Optional[str], body_hash: str) -> ApplyResult:
        organization_id = event.organization_id

        if event.event_type == GatewayEventType.CHECKOUT_COMPLETED:
            return self.lifecycle.complete_checkout(
                organization_id,
                plan_id,
                event.session_id,
                source="webhook",
                subscription_ref=event.subscription_ref,
                customer_ref=event.customer_ref,
                event_at=event.created_at,
                body_hash=body_hash,
            )

        if event.event_type == GatewayEventType.SUBSCRIPTION_UPDATED:
            return self.lifecycle.refresh_subscription(
                organization_id,
                key,
                subscription_ref=event.subscription_ref,
                status=event.status,
                current_period_end=event.current_period_end,
                event_at=event.created_at,
                body_hash=body_hash,
            )

        if event.event_type == GatewayEventType.SUBSCRIPTION_DELETED:
            return self.lifecycle.downgrade_to_free(
                organization_id,
                key,
                event_type=GatewayEventType.SUBSCRIPTION_DELETED.value,
                source="webhook",
                expected_subscription_ref=event.subscription_ref,
                require_subscription_match=True,
                event_at=event.created_at,
                body_hash=body_hash,
            )

        return self.lifecycle.mark_past_due(
            organization_id,
            key,
            subscription_ref=event.subscription_ref,
            plan_id=plan_id,
            event_at=event.created_at,
            body_hash=body_hash,
        )
