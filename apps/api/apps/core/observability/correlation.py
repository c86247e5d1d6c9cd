"""
Request correlation middleware.

Generates or propagates X-Request-ID, records who is acting for the log
lines of the request and counts HTTP requests.
"""
import logging
import time
import uuid
from threading import local

from django.utils.deprecation import MiddlewareMixin

from apps.reports.actors import Actor

from .metrics import metrics

# Thread-local storage for request context
_request_context = local()

logger = logging.getLogger(__name__)

CONTEXT_ATTRS = ('request_id', 'trace_id', 'span_id', 'actor_id', 'actor_role')


def get_request_id():
    return getattr(_request_context, 'request_id', None)


def get_trace_id():
    return getattr(_request_context, 'trace_id', None)


def get_actor_id():
    return getattr(_request_context, 'actor_id', None)


def get_actor_role():
    return getattr(_request_context, 'actor_role', None)


def bind_actor(actor_id, actor_role):
    """
    Record the acting user for subsequent log lines.

    Used by the middleware and by code running outside a request
    (Celery tasks, management commands).
    """
    _request_context.actor_id = actor_id
    _request_context.actor_role = actor_role


class RequestCorrelationMiddleware(MiddlewareMixin):
    """
    - Generates/propagates X-Request-ID
    - Extracts trace context from headers
    - Stores context in thread-local for logging
    - Adds correlation headers to response
    - Logs and counts completed requests
    """

    REQUEST_ID_HEADER = 'HTTP_X_REQUEST_ID'
    TRACE_ID_HEADER = 'HTTP_X_TRACE_ID'
    SPAN_ID_HEADER = 'HTTP_X_SPAN_ID'

    def process_request(self, request):
        request_id = request.META.get(self.REQUEST_ID_HEADER) or str(uuid.uuid4())
        trace_id = request.META.get(self.TRACE_ID_HEADER)
        span_id = request.META.get(self.SPAN_ID_HEADER)

        request.request_id = request_id
        request.trace_id = trace_id
        request.span_id = span_id
        request.start_time = time.time()

        _request_context.request_id = request_id
        _request_context.trace_id = trace_id
        _request_context.span_id = span_id

        # JWT users are only resolved inside DRF views; session users are known here
        user = getattr(request, 'user', None)
        if user is not None and user.is_authenticated:
            actor = Actor.from_user(user)
            bind_actor(str(user.pk), actor.role if actor else None)
        else:
            bind_actor(None, None)

    def process_response(self, request, response):
        if hasattr(request, 'request_id'):
            response['X-Request-ID'] = request.request_id

        if getattr(request, 'trace_id', None):
            response['X-Trace-ID'] = request.trace_id

        if hasattr(request, 'start_time'):
            duration = time.time() - request.start_time

            metrics.http_requests_total.labels(
                method=request.method,
                status=str(response.status_code)
            ).inc()
            metrics.http_request_duration_seconds.labels(method=request.method).observe(duration)

            logger.info(
                'Request completed',
                extra={
                    'event': 'http_request_completed',
                    'path': request.path,
                    'method': request.method,
                    'status_code': response.status_code,
                    'duration_ms': round(duration * 1000, 2),
                }
            )

        clear_request_context()
        return response

    def process_exception(self, request, exception):
        duration_ms = 0
        if hasattr(request, 'start_time'):
            duration_ms = (time.time() - request.start_time) * 1000

        metrics.exceptions_total.labels(
            exception_type=exception.__class__.__name__,
            location='http'
        ).inc()

        logger.error(
            f'Request failed: {exception.__class__.__name__}',
            exc_info=True,
            extra={
                'event': 'http_request_exception',
                'path': request.path,
                'method': request.method,
                'exception_type': exception.__class__.__name__,
                'duration_ms': round(duration_ms, 2),
            }
        )


def clear_request_context():
    """Clear thread-local request context."""
    for attr in CONTEXT_ATTRS:
        if hasattr(_request_context, attr):
            delattr(_request_context, attr)
