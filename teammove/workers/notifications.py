# teammove/workers/notifications.py
"""
Subscription notification jobs, executed by an RQ worker.

Usage:
    python -m teammove.workers.notifications

Email delivery itself belongs to the messaging service; this job resolves
the template and hands it off through the log pipeline.
"""
import logging
import os
from typing import Optional

from redis import Redis
from rq import Queue, Worker

from teammove.core.logging import configure_logging
from teammove.features.plans.catalog import build_catalog, is_pack


logger = logging.getLogger("teammove")

TEMPLATES = {
    "activated": "plan-upgrade-confirmation",
    "activated_pack": "registration-paid-confirmation",
    "cancelled": "subscription-cancelled",
    "payment_failed": "payment-failed",
    "expired": "plan-expired",
}

# Only plan kinds are read here; price refs may be unset
CATALOG = build_catalog()


def template_for(kind: str, plan_id: Optional[str] = None) -> str:
    plan = CATALOG.get(plan_id)
    if kind == "activated" and plan is not None and is_pack(plan):
        return TEMPLATES["activated_pack"]
    try:
        return TEMPLATES[kind]
    except KeyError:
        raise ValueError(f"Unknown notification kind: {kind}")


def send_subscription_notification(kind: str, organization_id: str, plan_id: Optional[str] = None) -> dict:
    """Resolve the template for a subscription change and dispatch it."""
    template = template_for(kind, plan_id)
    logger.info(
        "billing.notification.sent",
        extra={
            "organization_id": organization_id,
            "event_type": kind,
            "plan_id": plan_id,
            "template": template,
        },
    )
    return {"organization_id": organization_id, "template": template}


def main() -> None:
    configure_logging(os.getenv("ENV", "development"))
    redis_url = os.environ.get("REDIS_URL", "redis://localhost:6379/0")
    conn = Redis.from_url(redis_url)
    worker = Worker([Queue("notifications", connection=conn)], connection=conn)
    worker.work()


if __name__ == "__main__":
    main()
