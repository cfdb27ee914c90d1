"""
Subscription lifecycle operations.

Binds the pure transitions to the store's apply-once primitive. Every writer
(webhook reconciler, verify call, cancellation, free-plan activation, expiry
sweep) calls one of these methods, so two writers racing on the same change
converge on the same idempotency key and only one of them applies it.

Guards that make out-of-order delivery safe live in the transition closures:
- events for a subscription other than the stored one are ignored,
- subscription updates older than the newest applied gateway event are ignored.
"""
from datetime import datetime
from typing import Callable, Optional

from teammove.core.logging import log_event
from teammove.features.billing.notifications import NotificationKind, Notifier, notify_safely
from teammove.features.billing.provider import BillingProvider, GatewayEventType, checkout_key
from teammove.features.billing.store import ApplyResult, SubscriptionStore
from teammove.features.billing import transitions
from teammove.features.plans.catalog import PlanCatalog, is_free
from teammove.core.errors import AppError, PlanNotFoundError
from teammove.models.subscription import OrganizationSubscription, SubscriptionStatus, as_utc, utc_now


class SubscriptionLifecycle:
    def __init__(
        self,
        store: SubscriptionStore,
        catalog: PlanCatalog,
        notifier: Notifier,
        clock: Callable[[], datetime] = utc_now,
        provider: Optional[BillingProvider] = None,
    ):
        self.store = store
        self.catalog = catalog
        self.notifier = notifier
        self.clock = clock
        self.provider = provider

    def _finish(
        self,
        result: ApplyResult,
        kind: NotificationKind,
        *,
        key: str,
        event_type: str,
        source: str,
        notify: bool = True,
    ) -> ApplyResult:
        sub = result.subscription
        if result.applied:
            log_event(
                "info",
                "billing.transition.applied",
                organization_id=sub.organization_id,
                event_type=event_type,
                event_id=key,
                extra={"source": source, "plan_id": sub.plan_id, "status": sub.status.value},
            )
            if notify:
                notify_safely(self.notifier, kind, sub.organization_id, sub.plan_id)
        elif result.duplicate:
            log_event(
                "info",
                "billing.transition.duplicate",
                organization_id=sub.organization_id,
                event_type=event_type,
                event_id=key,
                extra={"source": source},
            )
        else:
            log_event(
                "info",
                "billing.transition.ignored",
                organization_id=sub.organization_id,
                event_type=event_type,
                event_id=key,
                extra={"source": source},
            )
        return result

    def complete_checkout(
        self,
        organization_id: str,
        plan_id: str,
        session_id: str,
        *,
        source: str,
        subscription_ref: Optional[str] = None,
        customer_ref: Optional[str] = None,
        event_at: Optional[datetime] = None,
        body_hash: Optional[str] = None,
    ) -> ApplyResult:
        """Activate the purchased plan; keyed by session so verify and webhook converge."""
        plan = self.catalog.get(plan_id)
        if plan is None:
            raise PlanNotFoundError(f"Unknown plan in checkout session {session_id}: {plan_id}")
        now = self.clock()
        key = checkout_key(session_id)

        def transition(current: OrganizationSubscription) -> OrganizationSubscription:
            return transitions.activate_plan(
                current,
                plan,
                now,
                subscription_ref=subscription_ref,
                customer_ref=customer_ref,
            )

        event_type = GatewayEventType.CHECKOUT_COMPLETED.value
        result = self.store.apply_transition(
            organization_id,
            key,
            transition,
            event_type=event_type,
            source=source,
            event_at=event_at,
            body_hash=body_hash,
            checkout_session_id=session_id,
        )
        self._finish(result, NotificationKind.ACTIVATED, key=key, event_type=event_type, source=source)
        if result.applied:
            self._retire_superseded_subscription(result, source=source)
        return result

    def _retire_superseded_subscription(self, result: ApplyResult, *, source: str) -> None:
        """
        Cancel the gateway subscription a completed checkout replaced.

        Two checkouts started before either completes both pass the
        start-time conflict check; the second one to complete would leave
        the first subscription billing with nothing pointing at it. The
        cancellation is recorded under cancel:<ref>, so verify and webhook
        completing the same checkout cancel it once.
        """
        previous = result.previous
        if previous is None or previous.status == SubscriptionStatus.CANCELLED:
            return
        old_ref = previous.external_subscription_ref
        if not old_ref or old_ref == result.subscription.external_subscription_ref:
            return

        organization_id = previous.organization_id
        key = f"cancel:{old_ref}"
        if self.store.is_applied(organization_id, key):
            return

        fields = {"subscription_ref": old_ref, "plan_id": previous.plan_id, "new_plan_id": result.subscription.plan_id}
        if self.provider is None:
            log_event(
                "error",
                "billing.checkout.superseded_subscription_orphaned",
                organization_id=organization_id,
                error_code="billing_disabled",
                extra=fields,
            )
            return
        try:
            self.provider.cancel_subscription(old_ref)
        except AppError as e:
            log_event(
                "error",
                "billing.checkout.superseded_cancel_failed",
                organization_id=organization_id,
                error_code=e.code,
                extra=fields,
                exc_info=True,
            )
            return

        self.store.apply_transition(
            organization_id,
            key,
            lambda current: None,
            event_type="subscription.superseded",
            source=source,
        )
        log_event(
            "warning",
            "billing.checkout.superseded_subscription_cancelled",
            organization_id=organization_id,
            extra=fields,
        )

    def refresh_subscription(
        self,
        organization_id: str,
        key: str,
        *,
        subscription_ref: Optional[str],
        status: Optional[SubscriptionStatus],
        current_period_end: Optional[datetime],
        event_at: Optional[datetime] = None,
        body_hash: Optional[str] = None,
        source: str = "webhook",
    ) -> ApplyResult:
        event_at = as_utc(event_at)

        def transition(current: OrganizationSubscription) -> Optional[OrganizationSubscription]:
            if not subscription_ref or current.external_subscription_ref != subscription_ref:
                return None
            if event_at and current.last_event_at and event_at < current.last_event_at:
                return None
            return transitions.refresh_subscription(current, status, current_period_end)

        event_type = GatewayEventType.SUBSCRIPTION_UPDATED.value
        result = self.store.apply_transition(
            organization_id, key, transition,
            event_type=event_type, source=source, event_at=event_at, body_hash=body_hash,
        )
        kind = NotificationKind.PAYMENT_FAILED if status == SubscriptionStatus.PAST_DUE else NotificationKind.ACTIVATED
        # Period roll-over with no status change: nothing to tell the organization
        status_changed = bool(result.previous) and result.previous.status != result.subscription.status
        return self._finish(
            result, kind, key=key, event_type=event_type, source=source, notify=status_changed,
        )

    def downgrade_to_free(
        self,
        organization_id: str,
        key: str,
        *,
        event_type: str,
        source: str,
        status: SubscriptionStatus = SubscriptionStatus.CANCELLED,
        expected_subscription_ref: Optional[str] = None,
        require_subscription_match: bool = False,
        only_if: Optional[Callable[[OrganizationSubscription], bool]] = None,
        notification: NotificationKind = NotificationKind.CANCELLED,
        event_at: Optional[datetime] = None,
        body_hash: Optional[str] = None,
    ) -> ApplyResult:
        """
        Move the organization to the free plan.

        With require_subscription_match the change only applies while the
        stored subscription ref equals expected_subscription_ref; a
        subscription.deleted arriving after a local cancellation is thereby
        recorded as an ignored confirmation. only_if re-checks a caller's
        precondition against the state read inside the transaction.
        """
        free_plan = self.catalog.default_plan

        def transition(current: OrganizationSubscription) -> Optional[OrganizationSubscription]:
            if require_subscription_match and current.external_subscription_ref != expected_subscription_ref:
                return None
            if only_if is not None and not only_if(current):
                return None
            return transitions.downgrade_to_free(current, free_plan, status=status)

        result = self.store.apply_transition(
            organization_id, key, transition,
            event_type=event_type, source=source, event_at=event_at, body_hash=body_hash,
        )
        return self._finish(result, notification, key=key, event_type=event_type, source=source)

    def mark_past_due(
        self,
        organization_id: str,
        key: str,
        *,
        subscription_ref: Optional[str] = None,
        plan_id: Optional[str] = None,
        event_at: Optional[datetime] = None,
        body_hash: Optional[str] = None,
        source: str = "webhook",
    ) -> ApplyResult:
        failed_plan = self.catalog.canonical_id(plan_id)

        def transition(current: OrganizationSubscription) -> Optional[OrganizationSubscription]:
            plan = self.catalog.get(current.plan_id)
            if plan is None or is_free(plan):
                return None
            if subscription_ref and current.external_subscription_ref != subscription_ref:
                return None
            if failed_plan and failed_plan != current.plan_id:
                # A failed purchase of some other plan leaves the current one intact
                return None
            return transitions.mark_past_due(current)

        event_type = GatewayEventType.PAYMENT_FAILED.value
        result = self.store.apply_transition(
            organization_id, key, transition,
            event_type=event_type, source=source, event_at=event_at, body_hash=body_hash,
        )
        return self._finish(result, NotificationKind.PAYMENT_FAILED, key=key, event_type=event_type, source=source)
