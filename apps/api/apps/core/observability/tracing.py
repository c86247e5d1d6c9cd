"""
Manual OpenTelemetry spans.

Only the OpenTelemetry API is required here. Without an SDK configured the
global tracer is a no-op, so spans cost nothing in tests and local runs.
"""
from contextlib import contextmanager
from typing import Optional, Dict, Any

from opentelemetry import trace
from opentelemetry.trace import SpanKind, Status, StatusCode

tracer = trace.get_tracer('apps.reports')

SPAN_KINDS = {
    'server': SpanKind.SERVER,
    'client': SpanKind.CLIENT,
    'internal': SpanKind.INTERNAL,
}


@contextmanager
def trace_span(
    name: str,
    kind: Optional[str] = None,
    attributes: Optional[Dict[str, Any]] = None
):
    """
    Open a span around a block of work.

    Attributes must not carry PHI: ids, statuses and version numbers only.

    Usage:
        with trace_span('report.apply_amendment', attributes={'report_id': str(report.id)}):
            ...
    """
    span_kind = SPAN_KINDS.get(kind, SpanKind.INTERNAL)

    with tracer.start_as_current_span(name, kind=span_kind) as span:
        for key, value in (attributes or {}).items():
            if value is not None:
                span.set_attribute(key, value)

        try:
            yield span
        except Exception as e:
            span.set_attribute('error.type', e.__class__.__name__)
            # Report errors carry a machine-readable code
            code = getattr(e, 'code', None)
            if code:
                span.set_attribute('error.code', code)
            span.set_status(Status(StatusCode.ERROR, e.__class__.__name__))
            raise


def add_span_attribute(key: str, value: Any):
    """Add an attribute to the current span if it is recording."""
    span = trace.get_current_span()
    if span.is_recording():
        span.set_attribute(key, value)
