"""
Builds the billing object graph once per process.

The API (app.state.billing) and the workers share this so that every entry
point works against the same catalog, store and lifecycle.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from teammove.core.config import Settings, settings as default_settings
from teammove.features.billing.lifecycle import SubscriptionLifecycle
from teammove.features.billing.notifications import Notifier, build_notifier
from teammove.features.billing.provider import BillingProvider
from teammove.features.billing.reconciler import WebhookReconciler
from teammove.features.billing.service import BillingService, get_provider
from teammove.features.billing.store import SubscriptionStore
from teammove.features.plans.catalog import PlanCatalog, build_catalog
from teammove.models.subscription import utc_now


@dataclass
class BillingComponents:
    catalog: PlanCatalog
    store: SubscriptionStore
    provider: Optional[BillingProvider]
    notifier: Notifier
    lifecycle: SubscriptionLifecycle
    service: BillingService
    reconciler: WebhookReconciler


_UNSET = object()


def build_billing(
    settings_obj: Optional[Settings] = None,
    *,
    catalog: Optional[PlanCatalog] = None,
    provider=_UNSET,
    notifier: Optional[Notifier] = None,
    clock: Callable[[], datetime] = utc_now,
) -> BillingComponents:
    cfg = settings_obj or default_settings
    catalog = catalog or build_catalog(cfg)
    if provider is _UNSET:
        provider = get_provider(cfg)
    notifier = notifier or build_notifier(cfg)

    store = SubscriptionStore(default_plan_id=catalog.default_plan.plan_id)
    lifecycle = SubscriptionLifecycle(store, catalog, notifier, clock=clock, provider=provider)
    service = BillingService(
        catalog, store, provider, notifier, settings_obj=cfg, clock=clock, lifecycle=lifecycle,
    )
    reconciler = WebhookReconciler(provider, store, catalog, lifecycle)
    return BillingComponents(
        catalog=catalog,
        store=store,
        provider=provider,
        notifier=notifier,
        lifecycle=lifecycle,
        service=service,
        reconciler=reconciler,
    )
