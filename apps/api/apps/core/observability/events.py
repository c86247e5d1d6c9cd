"""
Domain events logging helpers.

Every amendment transition is logged as a structured event carrying who,
what, when and the from/to states. Payloads pass through sanitize_dict.
"""
from typing import Dict, Any, Optional

from .logging import get_sanitized_logger, sanitize_dict

logger = get_sanitized_logger(__name__)


def log_domain_event(
    event_name: str,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    entity_ids: Optional[Dict[str, str]] = None,
    result: str = 'success',
    **extra_fields: Any
):
    """
    Log a domain event with structured data.

    Args:
        event_name: Name of the event (e.g., 'amendment_transition')
        entity_type: Type of entity (e.g., 'AmendmentRequest')
        entity_id: ID of primary entity
        entity_ids: Dictionary of related entity IDs
        result: Result of operation (success, conflict, invalid_state, ...)
        **extra_fields: Additional fields to log (will be sanitized)

    Example:
        log_domain_event(
            'report_version_created',
            entity_type='PatientReport',
            entity_id=str(report.id),
            version_number=2
        )
    """
    event_data = {
        'event': event_name,
        'result': result,
    }

    if entity_type:
        event_data['entity_type'] = entity_type

    if entity_id:
        event_data['entity_id'] = entity_id

    if entity_ids:
        event_data.update(entity_ids)

    event_data.update(sanitize_dict(extra_fields))

    if result in ('failure', 'error', 'unavailable'):
        logger.error(f'Domain event: {event_name}', extra=event_data)
    elif result != 'success':
        logger.warning(f'Domain event: {event_name}', extra=event_data)
    else:
        logger.info(f'Domain event: {event_name}', extra=event_data)


def log_amendment_transition(
    amendment_id,
    report_id,
    from_status,
    to_status,
    actor=None,
    result='success',
    **extra
):
    """Log an amendment request status transition (or a refused one)."""
    if actor is not None:
        extra.setdefault('actor_id', actor.actor_id)
        extra.setdefault('actor_role', actor.role)

    log_domain_event(
        'amendment_transition',
        entity_type='AmendmentRequest',
        entity_id=str(amendment_id) if amendment_id else None,
        entity_ids={'report_id': str(report_id)} if report_id else None,
        result=result,
        from_status=from_status or 'none',
        to_status=to_status,
        **extra
    )


def log_version_created(report_id, version_number, actor, amendment_id=None, changed_fields=None):
    """Log a new report version."""
    log_domain_event(
        'report_version_created',
        entity_type='PatientReport',
        entity_id=str(report_id),
        entity_ids={'amendment_id': str(amendment_id)} if amendment_id else None,
        version_number=version_number,
        actor_id=actor.actor_id,
        actor_role=actor.role,
        changed_fields=list(changed_fields or []),
    )


def log_report_conflict(report_id, reason, **extra):
    """Log a refused write caused by concurrent modification or stale data."""
    log_domain_event(
        'report_conflict',
        entity_type='PatientReport',
        entity_id=str(report_id),
        result='conflict',
        reason_code=reason,
        **extra
    )
