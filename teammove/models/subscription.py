"""
Subscription models.

OrganizationSubscription mirrors one organization_subscriptions row.
Transitions never mutate it in place; they return an updated copy.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


def utc_now() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes (SQLite) as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PENDING = "pending"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"


class OrganizationSubscription(BaseModel):
    model_config = ConfigDict(frozen=True)

    organization_id: str
    plan_id: str
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    external_customer_ref: Optional[str] = None
    external_subscription_ref: Optional[str] = None
    current_period_end: Optional[datetime] = None
    package_expiry: Optional[datetime] = None
    remaining_pack_units: Optional[int] = None
    last_applied_event_id: Optional[str] = None
    last_event_at: Optional[datetime] = None
    version: int = 0

    @property
    def expiry(self) -> Optional[datetime]:
        return self.package_expiry or self.current_period_end

    def snapshot(self) -> "SubscriptionSnapshot":
        return SubscriptionSnapshot(
            organization_id=self.organization_id,
            plan_id=self.plan_id,
            status=self.status,
            expiry=self.expiry,
            remaining_pack_units=self.remaining_pack_units,
        )


class SubscriptionSnapshot(BaseModel):
    """What callers of verify/cancel/status get back."""
    model_config = ConfigDict(frozen=True)

    organization_id: str
    plan_id: str
    status: SubscriptionStatus
    expiry: Optional[datetime] = None
    remaining_pack_units: Optional[int] = None


class CheckoutSessionRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    session_id: str
    organization_id: str
    plan_id: str
    created_at: datetime
    expires_at: Optional[datetime] = None
    consumed_at: Optional[datetime] = None
    consumed_by: Optional[str] = None


class CheckoutStart(BaseModel):
    model_config = ConfigDict(frozen=True)

    session_id: str
    redirect_url: str
