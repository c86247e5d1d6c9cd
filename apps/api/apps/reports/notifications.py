"""
Notification collaborator.

The workflow only knows notify(actor_id, event, payload). Delivery is
fire-and-forget: it happens after the workflow transaction commits and a
failing notifier is logged and counted, never raised into the workflow.
"""
from django.conf import settings
from django.db import transaction
from django.utils.module_loading import import_string

from apps.core.observability import get_sanitized_logger, metrics

logger = get_sanitized_logger(__name__)


class NotificationEvent:
    CREATED = 'amendment.created'
    APPROVED = 'amendment.approved'
    REJECTED = 'amendment.rejected'
    APPLIED = 'amendment.applied'
    SUPERSEDED = 'amendment.superseded'


class Notifier:
    """Interface for notification delivery."""

    def notify(self, actor_id, event, payload):
        raise NotImplementedError


class CeleryNotifier(Notifier):
    """Enqueues delivery on the Celery worker."""

    def notify(self, actor_id, event, payload):
        from .tasks import deliver_amendment_notification

        deliver_amendment_notification.delay(actor_id=actor_id, event=event, payload=payload)


class LoggingNotifier(Notifier):
    """Writes notifications to the log only. For local development."""

    def notify(self, actor_id, event, payload):
        logger.info(
            'Amendment notification',
            extra={'notification_event': event, 'recipient_id': actor_id, 'payload': payload}
        )


def get_notifier():
    """Instantiate the notifier configured in REPORTS_NOTIFIER_CLASS."""
    notifier_class = import_string(
        getattr(settings, 'REPORTS_NOTIFIER_CLASS', 'apps.reports.notifications.CeleryNotifier')
    )
    return notifier_class()


def dispatch(notifier, actor_id, event, payload):
    """
    Deliver one notification, swallowing and logging any failure.

    Returns:
        True when the notifier accepted the notification
    """
    if not actor_id:
        return False

    try:
        notifier.notify(actor_id, event, payload)
    except Exception as e:
        metrics.report_notifications_total.labels(event=event, result='failure').inc()
        logger.exception(
            'Amendment notification failed',
            extra={
                'event': 'amendment_notification_failed',
                'notification_event': event,
                'recipient_id': actor_id,
                'error_type': e.__class__.__name__,
            }
        )
        return False

    metrics.report_notifications_total.labels(event=event, result='success').inc()
    return True


def notify_on_commit(notifier, actor_id, event, payload):
    """Schedule dispatch() for after the current transaction commits."""
    transaction.on_commit(lambda: dispatch(notifier, actor_id, event, payload))
