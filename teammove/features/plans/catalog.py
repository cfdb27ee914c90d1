"""
teammove/features/plans/catalog.py

Plan catalog.

Handles:
- Default plan definitions (free, event packs, pro subscriptions)
- Legacy plan-id aliases
- Read-only lookup and billing-kind predicates

The catalog is built once at startup (build_catalog) and passed to the
services that need it. Nothing mutates it afterwards.
"""

from types import MappingProxyType
from typing import Dict, Iterable, Mapping, Optional, Tuple

from teammove.core.config import Settings, settings as default_settings
from teammove.core.errors import PlanNotFoundError
from teammove.models.plan import BillingKind, PlanDefinition


FREE_PLAN_ID = "decouverte"

# Default plan configurations; price references are filled from settings
DEFAULT_PLANS = {
    "decouverte": {
        "name": "Découverte",
        "price_minor_units": 0,
        "billing_kind": BillingKind.FREE,
        "max_events": 1,
        "max_invitations": 20,
        "price_setting": None,
    },
    "evenementielle-single": {
        "name": "Pack Événement",
        "price_minor_units": 1500,
        "billing_kind": BillingKind.ONE_TIME_PACK,
        "max_events": 1,
        "max_invitations": None,
        "validity_months": 12,
        "price_setting": "STRIPE_PRICE_EVENEMENTIELLE_SINGLE",
    },
    "evenementielle-pack10": {
        "name": "Pack 10 Événements",
        "price_minor_units": 15000,
        "billing_kind": BillingKind.ONE_TIME_PACK,
        "max_events": 10,
        "max_invitations": None,
        "validity_months": 12,
        "price_setting": "STRIPE_PRICE_EVENEMENTIELLE_PACK10",
    },
    "pro_club": {
        "name": "Clubs & Associations",
        "price_minor_units": 1999,
        "billing_kind": BillingKind.RECURRING_MONTHLY,
        "advanced_features": True,
        "price_setting": "STRIPE_PRICE_PRO_CLUB",
    },
    "pro_pme": {
        "name": "PME",
        "price_minor_units": 4900,
        "billing_kind": BillingKind.RECURRING_MONTHLY,
        "advanced_features": True,
        "price_setting": "STRIPE_PRICE_PRO_PME",
    },
    "pro_entreprise": {
        "name": "Grandes Entreprises",
        "price_minor_units": 9900,
        "billing_kind": BillingKind.RECURRING_MONTHLY,
        "advanced_features": True,
        "price_setting": "STRIPE_PRICE_PRO_ENTREPRISE",
    },
}

# Older clients and stored records use these ids
PLAN_ALIASES = {
    "free": "decouverte",
    "discovery": "decouverte",
    "evenement_single": "evenementielle-single",
    "evenementielle_single": "evenementielle-single",
    "evenement_pack10": "evenementielle-pack10",
    "evenementielle_pack10": "evenementielle-pack10",
    "pro-club": "pro_club",
    "pro-pme": "pro_pme",
    "pro-entreprise": "pro_entreprise",
}


def is_free(plan: PlanDefinition) -> bool:
    return plan.billing_kind == BillingKind.FREE


def is_pack(plan: PlanDefinition) -> bool:
    return plan.billing_kind == BillingKind.ONE_TIME_PACK


def is_recurring(plan: PlanDefinition) -> bool:
    return plan.billing_kind == BillingKind.RECURRING_MONTHLY


class PlanCatalog:
    """Immutable registry of plan definitions keyed by canonical id."""

    def __init__(
        self,
        plans: Iterable[PlanDefinition],
        aliases: Optional[Mapping[str, str]] = None,
        free_plan_id: str = FREE_PLAN_ID,
    ):
        by_id: Dict[str, PlanDefinition] = {}
        for plan in plans:
            if plan.plan_id in by_id:
                raise ValueError(f"Duplicate plan id in catalog: {plan.plan_id}")
            by_id[plan.plan_id] = plan
        if free_plan_id not in by_id or not is_free(by_id[free_plan_id]):
            raise ValueError(f"Catalog must contain free plan {free_plan_id!r}")

        alias_map = dict(aliases or {})
        for alias, target in alias_map.items():
            if target not in by_id:
                raise ValueError(f"Alias {alias!r} points to unknown plan {target!r}")

        self._plans = MappingProxyType(by_id)
        self._aliases = MappingProxyType(alias_map)
        self._free_plan_id = free_plan_id

    @property
    def default_plan(self) -> PlanDefinition:
        return self._plans[self._free_plan_id]

    def canonical_id(self, plan_id: Optional[str]) -> Optional[str]:
        """Map a canonical or legacy id onto its canonical id, or None."""
        if not plan_id:
            return None
        key = plan_id.strip()
        if key in self._plans:
            return key
        return self._aliases.get(key) or self._aliases.get(key.lower())

    def get(self, plan_id: Optional[str]) -> Optional[PlanDefinition]:
        canonical = self.canonical_id(plan_id)
        if canonical is None:
            return None
        return self._plans[canonical]

    def resolve(self, plan_id: Optional[str]) -> PlanDefinition:
        plan = self.get(plan_id)
        if plan is None:
            raise PlanNotFoundError(f"Unknown plan: {plan_id}")
        return plan

    def all(self) -> Tuple[PlanDefinition, ...]:
        return tuple(self._plans.values())

    def __contains__(self, plan_id: object) -> bool:
        return isinstance(plan_id, str) and self.canonical_id(plan_id) is not None

    def __len__(self) -> int:
        return len(self._plans)


def build_catalog(settings_obj: Optional[Settings] = None) -> PlanCatalog:
    """Build the catalog from DEFAULT_PLANS, reading Stripe price ids from settings."""
    cfg = settings_obj or default_settings
    plans = []
    for plan_id, config in DEFAULT_PLANS.items():
        values = {k: v for k, v in config.items() if k != "price_setting"}
        price_setting = config.get("price_setting")
        price_ref = getattr(cfg, price_setting, None) if price_setting else None
        plans.append(PlanDefinition(plan_id=plan_id, external_price_ref=price_ref, **values))
    return PlanCatalog(plans, aliases=PLAN_ALIASES)
