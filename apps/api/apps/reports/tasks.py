"""
Celery tasks for amendment notifications.
"""
from celery import shared_task

from apps.core.observability import get_sanitized_logger, log_domain_event

from .signals import amendment_notification

logger = get_sanitized_logger(__name__)


@shared_task(name='apps.reports.tasks.deliver_amendment_notification')
def deliver_amendment_notification(actor_id, event, payload):
    """
    Hand a notification to every connected delivery integration.

    A failing receiver does not stop the others; failures are logged.

    Returns:
        Number of receivers that accepted the notification
    """
    from .models import AmendmentRequest

    responses = amendment_notification.send_robust(
        sender=AmendmentRequest,
        actor_id=actor_id,
        event=event,
        payload=payload,
    )

    delivered = 0
    for receiver, response in responses:
        if isinstance(response, Exception):
            logger.error(
                'Amendment notification receiver failed',
                exc_info=(type(response), response, response.__traceback__),
                extra={
                    'event': 'amendment_notification_receiver_failed',
                    'notification_event': event,
                    'receiver': getattr(receiver, '__qualname__', repr(receiver)),
                }
            )
        else:
            delivered += 1

    log_domain_event(
        'amendment_notification_delivered',
        entity_type='AmendmentRequest',
        entity_id=payload.get('amendment_id'),
        result='success' if delivered == len(responses) else 'partial',
        notification_event=event,
        recipient_id=actor_id,
        receivers=len(responses),
        delivered=delivered,
    )
    return delivered
