"""
Observability for the report amendment service.

Structured logging with PHI redaction, domain events, Prometheus metrics,
OpenTelemetry spans and request correlation.
"""
from .metrics import metrics
from .events import log_domain_event
from .logging import get_sanitized_logger
from .tracing import trace_span

__all__ = ['metrics', 'log_domain_event', 'get_sanitized_logger', 'trace_span']
