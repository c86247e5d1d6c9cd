"""
Structured logging with PHI protection.

Report content (complaints, histories, diagnoses, notes), amendment
reasons and review comments are medical free text and never reach a log
line. Field names and version numbers are safe to log.
"""
import json
import logging
from datetime import datetime, timezone

from .correlation import get_request_id, get_trace_id, get_actor_id, get_actor_role


# Keys whose values are redacted wherever they appear
SENSITIVE_FIELDS = {
    'password',
    'token',
    'secret',
    'authorization',
    # Identity
    'patient_name',
    'doctor_name',
    'email',
    'phone',
    # Report content
    'patient_complaint',
    'history_present',
    'history_past',
    'diagnosis',
    'primary',
    'secondary',
    'additional_notes',
    'follow_up_instructions',
    'snapshot',
    # Amendment content
    'reason',
    'comments',
    'review_comments',
    'proposed_changes',
    'changes',
    'from',
    'to',
}

# Attributes every LogRecord carries; not part of the structured payload
RESERVED_ATTRS = {
    'name', 'msg', 'args', 'created', 'filename', 'funcName', 'levelname',
    'levelno', 'lineno', 'module', 'msecs', 'pathname', 'process',
    'processName', 'relativeCreated', 'thread', 'threadName', 'exc_info',
    'exc_text', 'stack_info', 'taskName', 'message', 'asctime',
}


class CorrelationFilter(logging.Filter):
    """Injects request and actor context into every record."""

    def filter(self, record):
        record.request_id = get_request_id() or '-'
        record.trace_id = get_trace_id() or '-'
        if not getattr(record, 'actor_id', None):
            record.actor_id = get_actor_id() or '-'
        if not getattr(record, 'actor_role', None):
            record.actor_role = get_actor_role() or '-'
        return True


class SanitizedJSONFormatter(logging.Formatter):
    """One JSON object per line; sensitive keys are redacted at any depth."""

    def format(self, record):
        log_data = {
            'timestamp': datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'request_id': getattr(record, 'request_id', '-'),
            'trace_id': getattr(record, 'trace_id', '-'),
            'actor_id': getattr(record, 'actor_id', '-'),
            'actor_role': getattr(record, 'actor_role', '-'),
        }

        for key, value in record.__dict__.items():
            if key in log_data or key in RESERVED_ATTRS or key.startswith('_'):
                continue
            if key.lower() in SENSITIVE_FIELDS:
                log_data[key] = '[REDACTED]'
            else:
                log_data[key] = _sanitize_value(value)

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def _sanitize_value(value):
    if isinstance(value, dict):
        return sanitize_dict(value)
    if isinstance(value, (list, tuple)):
        return [_sanitize_value(v) for v in value]
    return value


def get_sanitized_logger(name):
    """
    Get a logger with the correlation filter applied.

    Usage:
        logger = get_sanitized_logger(__name__)
        logger.info('Amendment approved', extra={'amendment_id': str(amendment.id)})
    """
    logger = logging.getLogger(name)

    if not any(isinstance(f, CorrelationFilter) for f in logger.filters):
        logger.addFilter(CorrelationFilter())

    return logger


def sanitize_dict(data):
    """
    Redacted copy of a dictionary.

    Non-dict input is returned unchanged.
    """
    if not isinstance(data, dict):
        return data

    sanitized = {}
    for key, value in data.items():
        if str(key).lower() in SENSITIVE_FIELDS:
            sanitized[key] = '[REDACTED]'
        else:
            sanitized[key] = _sanitize_value(value)

    return sanitized
