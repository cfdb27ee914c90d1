"""
Subscription store.

Persists one subscription record per organization and offers the only write
path for it: apply_transition, an atomic "apply if not already applied"
update keyed by (organization_id, idempotency_key).

Inside one transaction apply_transition
1. reads the record (and its version),
2. inserts the billing_events row; the unique constraint on
   (organization_id, idempotency_key) rejects a second application,
3. updates the record guarded by `version = :read_version`.
A unique violation means another writer already applied the key; a version
mismatch means another key won the race, so the transaction is retried
against fresh state.
"""
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional

from sqlalchemy import select, insert, update, and_, or_, case
from sqlalchemy.exc import IntegrityError

from teammove.core.database import (
    get_db_session,
    organization_subscriptions,
    checkout_sessions,
    billing_customers,
    billing_events,
)
from teammove.core.errors import ConcurrentUpdateError
from teammove.models.subscription import (
    CheckoutSessionRecord,
    OrganizationSubscription,
    SubscriptionStatus,
    as_utc,
    utc_now,
)


logger = logging.getLogger(__name__)

MAX_APPLY_ATTEMPTS = 5

# Fields a transition is allowed to change
_STATE_FIELDS = (
    "plan_id",
    "status",
    "external_customer_ref",
    "external_subscription_ref",
    "current_period_end",
    "package_expiry",
    "remaining_pack_units",
)

Transition = Callable[[OrganizationSubscription], Optional[OrganizationSubscription]]


class _VersionConflict(Exception):
    pass


@dataclass(frozen=True)
class ApplyResult:
    subscription: OrganizationSubscription
    applied: bool  # state changed
    duplicate: bool  # key was already applied; nothing done
    previous: Optional[OrganizationSubscription] = None


def payload_hash(body: bytes) -> str:
    return hashlib.sha256(body).hexdigest()


def _row_to_subscription(row) -> OrganizationSubscription:
    return OrganizationSubscription(
        organization_id=row.organization_id,
        plan_id=row.plan_id,
        status=SubscriptionStatus(row.status),
        external_customer_ref=row.external_customer_ref,
        external_subscription_ref=row.external_subscription_ref,
        current_period_end=as_utc(row.current_period_end),
        package_expiry=as_utc(row.package_expiry),
        remaining_pack_units=row.remaining_pack_units,
        last_applied_event_id=row.last_applied_event_id,
        last_event_at=as_utc(row.last_event_at),
        version=row.version or 0,
    )


def _row_to_checkout(row) -> CheckoutSessionRecord:
    return CheckoutSessionRecord(
        session_id=row.session_id,
        organization_id=row.organization_id,
        plan_id=row.plan_id,
        created_at=as_utc(row.created_at),
        expires_at=as_utc(row.expires_at),
        consumed_at=as_utc(row.consumed_at),
        consumed_by=row.consumed_by,
    )


class SubscriptionStore:
    """Keyed record store with compare-and-update semantics."""

    def __init__(self, default_plan_id: str):
        self.default_plan_id = default_plan_id

    # Reads

    def get(self, organization_id: str) -> Optional[OrganizationSubscription]:
        with get_db_session() as session:
            row = session.execute(
                select(organization_subscriptions).where(
                    organization_subscriptions.c.organization_id == organization_id
                )
            ).fetchone()
        return _row_to_subscription(row) if row else None

    def get_or_create(self, organization_id: str) -> OrganizationSubscription:
        """Return the record, creating it on the free plan the first time."""
        existing = self.get(organization_id)
        if existing:
            return existing
        try:
            with get_db_session() as session:
                session.execute(
                    insert(organization_subscriptions).values(
                        organization_id=organization_id,
                        plan_id=self.default_plan_id,
                        status=SubscriptionStatus.ACTIVE.value,
                        version=0,
                    )
                )
        except IntegrityError:
            # Created concurrently
            pass
        return self.get(organization_id)

    def is_applied(self, organization_id: str, idempotency_key: str) -> bool:
        with get_db_session() as session:
            row = session.execute(
                select(billing_events.c.id).where(
                    and_(
                        billing_events.c.organization_id == organization_id,
                        billing_events.c.idempotency_key == idempotency_key,
                    )
                )
            ).fetchone()
        return row is not None

    def applied_events(self, organization_id: str) -> List[dict]:
        """Audit trail of applied/ignored keys, oldest first."""
        with get_db_session() as session:
            rows = session.execute(
                select(billing_events)
                .where(billing_events.c.organization_id == organization_id)
                .order_by(billing_events.c.id)
            ).fetchall()
        return [dict(row._mapping) for row in rows]

    def list_expirable(
        self,
        plan_ids: Iterable[str],
        now: datetime,
        grace: timedelta,
        limit: int = 100,
    ) -> List[OrganizationSubscription]:
        """Paid subscriptions whose pack expired or whose period ended more than `grace` ago."""
        with get_db_session() as session:
            rows = session.execute(
                select(organization_subscriptions)
                .where(organization_subscriptions.c.plan_id.in_(list(plan_ids)))
                .where(
                    or_(
                        organization_subscriptions.c.package_expiry <= now,
                        organization_subscriptions.c.current_period_end <= now - grace,
                    )
                )
                # Lapsed records first so stale active ones cannot fill the batch
                .order_by(
                    case(
                        (
                            and_(
                                organization_subscriptions.c.status == SubscriptionStatus.ACTIVE.value,
                                or_(
                                    organization_subscriptions.c.package_expiry.is_(None),
                                    organization_subscriptions.c.package_expiry > now,
                                ),
                            ),
                            1,
                        ),
                        else_=0,
                    ),
                    organization_subscriptions.c.organization_id,
                )
                .limit(limit)
            ).fetchall()
        return [_row_to_subscription(row) for row in rows]

    # The write path

    def apply_transition(
        self,
        organization_id: str,
        idempotency_key: str,
        transition: Transition,
        *,
        event_type: str,
        source: str,
        event_at: Optional[datetime] = None,
        body_hash: Optional[str] = None,
        checkout_session_id: Optional[str] = None,
    ) -> ApplyResult:
        """
        Apply `transition` exactly once per (organization_id, idempotency_key).

        The transition gets the current record and returns the new one, or
        None to record the key as seen without changing state ("ignored").
        """
        self.get_or_create(organization_id)

        for attempt in range(MAX_APPLY_ATTEMPTS):
            try:
                return self._apply_once(
                    organization_id,
                    idempotency_key,
                    transition,
                    event_type=event_type,
                    source=source,
                    event_at=event_at,
                    body_hash=body_hash,
                    checkout_session_id=checkout_session_id,
                )
            except IntegrityError:
                # Another writer recorded the same key first
                return ApplyResult(subscription=self.get(organization_id), applied=False, duplicate=True)
            except _VersionConflict:
                logger.info(
                    "[billing] concurrent update, retrying",
                    extra={"organization_id": organization_id, "attempt": attempt + 1},
                )

        raise ConcurrentUpdateError(
            f"Could not apply {idempotency_key} for {organization_id} after {MAX_APPLY_ATTEMPTS} attempts"
        )

    def _apply_once(
        self,
        organization_id: str,
        idempotency_key: str,
        transition: Transition,
        *,
        event_type: str,
        source: str,
        event_at: Optional[datetime],
        body_hash: Optional[str],
        checkout_session_id: Optional[str],
    ) -> ApplyResult:
        with get_db_session() as session:
            row = session.execute(
                select(organization_subscriptions).where(
                    organization_subscriptions.c.organization_id == organization_id
                )
            ).fetchone()
            current = _row_to_subscription(row)

            seen = session.execute(
                select(billing_events.c.id).where(
                    and_(
                        billing_events.c.organization_id == organization_id,
                        billing_events.c.idempotency_key == idempotency_key,
                    )
                )
            ).fetchone()
            if seen:
                return ApplyResult(subscription=current, applied=False, duplicate=True)

            new_state = transition(current)

            session.execute(
                insert(billing_events).values(
                    organization_id=organization_id,
                    idempotency_key=idempotency_key,
                    event_type=event_type,
                    source=source,
                    outcome="applied" if new_state is not None else "ignored",
                    payload_hash=body_hash,
                    applied_at=utc_now(),
                )
            )

            if new_state is None:
                return ApplyResult(subscription=current, applied=False, duplicate=False, previous=current)

            values = {name: getattr(new_state, name) for name in _STATE_FIELDS}
            values["status"] = new_state.status.value
            values["last_applied_event_id"] = idempotency_key
            values["version"] = current.version + 1
            values["updated_at"] = utc_now()
            event_at = as_utc(event_at)
            if event_at is not None and (current.last_event_at is None or event_at > current.last_event_at):
                values["last_event_at"] = event_at

            result = session.execute(
                update(organization_subscriptions)
                .where(organization_subscriptions.c.organization_id == organization_id)
                .where(organization_subscriptions.c.version == current.version)
                .values(**values)
            )
            if result.rowcount != 1:
                raise _VersionConflict()

            if checkout_session_id:
                session.execute(
                    update(checkout_sessions)
                    .where(checkout_sessions.c.session_id == checkout_session_id)
                    .where(checkout_sessions.c.consumed_at.is_(None))
                    .values(consumed_at=utc_now(), consumed_by=source)
                )

        stored = new_state.model_copy(
            update={
                "last_applied_event_id": idempotency_key,
                "version": current.version + 1,
                "last_event_at": values.get("last_event_at", current.last_event_at),
            }
        )
        return ApplyResult(subscription=stored, applied=True, duplicate=False, previous=current)

    def consume_unit(self, organization_id: str) -> Optional[int]:
        """
        Atomically take one unit from a pack.

        Returns the units left, or None when nothing could be taken
        (not a pack, or already exhausted).
        """
        with get_db_session() as session:
            result = session.execute(
                update(organization_subscriptions)
                .where(organization_subscriptions.c.organization_id == organization_id)
                .where(organization_subscriptions.c.remaining_pack_units > 0)
                .values(
                    remaining_pack_units=organization_subscriptions.c.remaining_pack_units - 1,
                    version=organization_subscriptions.c.version + 1,
                    updated_at=utc_now(),
                )
            )
            if result.rowcount != 1:
                return None
            remaining = session.execute(
                select(organization_subscriptions.c.remaining_pack_units).where(
                    organization_subscriptions.c.organization_id == organization_id
                )
            ).scalar_one()
        return remaining

    # Checkout correlation records

    def record_checkout_session(self, record: CheckoutSessionRecord) -> None:
        with get_db_session() as session:
            session.execute(
                insert(checkout_sessions).values(
                    session_id=record.session_id,
                    organization_id=record.organization_id,
                    plan_id=record.plan_id,
                    created_at=record.created_at,
                    expires_at=record.expires_at,
                )
            )

    def get_checkout_session(self, session_id: str) -> Optional[CheckoutSessionRecord]:
        with get_db_session() as session:
            row = session.execute(
                select(checkout_sessions).where(checkout_sessions.c.session_id == session_id)
            ).fetchone()
        return _row_to_checkout(row) if row else None

    # Gateway customers

    def get_customer_ref(self, organization_id: str) -> Optional[str]:
        with get_db_session() as session:
            row = session.execute(
                select(billing_customers.c.stripe_customer_id).where(
                    billing_customers.c.organization_id == organization_id
                )
            ).fetchone()
        return row[0] if row else None

    def save_customer_ref(self, organization_id: str, customer_ref: str) -> str:
        """Store the mapping; if another request stored one first, keep theirs."""
        try:
            with get_db_session() as session:
                session.execute(
                    insert(billing_customers).values(
                        organization_id=organization_id,
                        stripe_customer_id=customer_ref,
                    )
                )
        except IntegrityError:
            existing = self.get_customer_ref(organization_id)
            if existing:
                return existing
            raise
        return customer_ref
