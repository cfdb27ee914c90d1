"""
Subscription notifications (fire-and-forget).

Billing never waits on a notification and never fails because of one. The
queue-backed notifier hands jobs to the RQ worker (teammove.workers.notifications);
enqueue failures are logged and dropped.
"""
from enum import Enum
from typing import Optional, Protocol

from redis import Redis
from rq import Queue

from teammove.core.config import Settings, settings as default_settings
from teammove.core.logging import log_event


NOTIFICATION_JOB = "teammove.workers.notifications.send_subscription_notification"
REDIS_TIMEOUT_SECONDS = 2


class NotificationKind(str, Enum):
    ACTIVATED = "activated"
    CANCELLED = "cancelled"
    PAYMENT_FAILED = "payment_failed"
    EXPIRED = "expired"


class Notifier(Protocol):
    def notify(self, kind: NotificationKind, organization_id: str, plan_id: Optional[str] = None) -> None:
        ...


class LogNotifier:
    """Used when notifications are disabled: records intent in the logs only."""

    def notify(self, kind: NotificationKind, organization_id: str, plan_id: Optional[str] = None) -> None:
        log_event(
            "info",
            "billing.notification.skipped",
            organization_id=organization_id,
            event_type=kind.value,
            extra={"plan_id": plan_id},
        )


class QueueNotifier:
    """Enqueues notification jobs on RQ."""

    def __init__(self, queue: Optional[Queue] = None, redis_url: Optional[str] = None):
        self._queue = queue
        self._redis_url = redis_url or default_settings.REDIS_URL

    @property
    def queue(self) -> Queue:
        if self._queue is None:
            conn = Redis.from_url(
                self._redis_url,
                socket_connect_timeout=REDIS_TIMEOUT_SECONDS,
                socket_timeout=REDIS_TIMEOUT_SECONDS,
            )
            self._queue = Queue("notifications", connection=conn)
        return self._queue

    def notify(self, kind: NotificationKind, organization_id: str, plan_id: Optional[str] = None) -> None:
        self.queue.enqueue(
            NOTIFICATION_JOB,
            kind.value,
            organization_id,
            plan_id,
            job_timeout="2m",
            result_ttl=3600,
        )


def build_notifier(settings_obj: Optional[Settings] = None) -> Notifier:
    cfg = settings_obj or default_settings
    if cfg.NOTIFICATIONS_ENABLED:
        return QueueNotifier(redis_url=cfg.REDIS_URL)
    return LogNotifier()


def notify_safely(notifier: Notifier, kind: NotificationKind, organization_id: str, plan_id: Optional[str] = None) -> None:
    """Dispatch without letting a notification failure reach the caller."""
    try:
        notifier.notify(kind, organization_id, plan_id)
    except Exception as e:
        log_event(
            "warning",
            "billing.notification.failed",
            organization_id=organization_id,
            event_type=kind.value,
            error_code="notification_failed",
            extra={"error": e},
        )
