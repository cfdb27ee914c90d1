"""
teammove/models/plan.py

Plan definitions for the catalog.

A plan is a priced tier: billing cadence, feature limits and the Stripe
price it is sold under. Plans are frozen; a price change means a new plan_id.
"""

from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class BillingKind(str, Enum):
    FREE = "free"
    ONE_TIME_PACK = "one_time_pack"
    RECURRING_MONTHLY = "recurring_monthly"


class PlanDefinition(BaseModel):
    """
    Immutable catalog entry.

    Limits use None for "unbounded"; validity_months uses None for
    "no expiry" and only matters for one-time packs.
    """
    model_config = ConfigDict(frozen=True)

    plan_id: str
    name: str
    price_minor_units: int
    currency: str = "eur"
    billing_kind: BillingKind
    max_events: Optional[int] = None
    max_invitations: Optional[int] = None
    validity_months: Optional[int] = None
    advanced_features: bool = False
    external_price_ref: Optional[str] = None
