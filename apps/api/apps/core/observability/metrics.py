"""
Prometheus metrics for the report amendment service.

All metrics live on one registry object so that tests can read sample
values without touching the global default registry directly.
"""
import time
from functools import wraps

from prometheus_client import CollectorRegistry, Counter, Histogram, REGISTRY


class MetricsRegistry:
    """
    Central metrics registry.

    Label values must be bounded: statuses, result codes and event names.
    Never report or patient ids.
    """

    def __init__(self, registry: CollectorRegistry = REGISTRY):
        self.registry = registry
        self._setup_metrics()

    def _create_counter(self, name, description, labels=None):
        return Counter(name, description, labels or [], registry=self.registry)

    def _create_histogram(self, name, description, labels=None, buckets=None):
        if buckets:
            return Histogram(name, description, labels or [], buckets=buckets, registry=self.registry)
        return Histogram(name, description, labels or [], registry=self.registry)

    def _setup_metrics(self):
        # ===================================================================
        # HTTP Metrics
        # ===================================================================
        self.http_requests_total = self._create_counter(
            'http_requests_total',
            'Total HTTP requests',
            ['method', 'status']
        )

        self.http_request_duration_seconds = self._create_histogram(
            'http_request_duration_seconds',
            'HTTP request duration in seconds',
            ['method'],
            buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
        )

        self.exceptions_total = self._create_counter(
            'exceptions_total',
            'Total unhandled exceptions',
            ['exception_type', 'location']
        )

        # ===================================================================
        # Amendment Workflow Metrics
        # ===================================================================
        self.report_amendment_transitions_total = self._create_counter(
            'report_amendment_transitions_total',
            'Amendment request status transitions',
            ['from_status', 'to_status', 'result']
        )

        self.report_amendment_conflicts_total = self._create_counter(
            'report_amendment_conflicts_total',
            'Amendment operations rejected with a conflict',
            ['reason']  # duplicate_pending, stale_amendment, version_race, stale_report
        )

        self.report_amendment_apply_duration_seconds = self._create_histogram(
            'report_amendment_apply_duration_seconds',
            'Duration of applying an approved amendment',
            buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5]
        )

        self.report_store_unavailable_total = self._create_counter(
            'report_store_unavailable_total',
            'Store transactions aborted by timeouts or database errors'
        )

        # ===================================================================
        # Report Lifecycle Metrics
        # ===================================================================
        self.report_versions_created_total = self._create_counter(
            'report_versions_created_total',
            'Report versions written',
            ['kind']  # baseline, amendment
        )

        self.report_lifecycle_total = self._create_counter(
            'report_lifecycle_total',
            'Report lifecycle operations',
            ['operation', 'result']  # operation: draft_update, finalize, ready_for_submission
        )

        # ===================================================================
        # Notification Metrics
        # ===================================================================
        self.report_notifications_total = self._create_counter(
            'report_notifications_total',
            'Amendment notifications dispatched',
            ['event', 'result']
        )

    def sample(self, name, labels=None):
        """Current value of a sample (0.0 when never observed)."""
        value = self.registry.get_sample_value(name, labels or {})
        return value or 0.0

    def track_duration(self, histogram_metric):
        """
        Decorator to track function duration.

        Usage:
            @metrics.track_duration(metrics.report_amendment_apply_duration_seconds)
            def apply_amendment(...):
                ...
        """
        def decorator(func):
            @wraps(func)
            def wrapper(*args, **kwargs):
                start_time = time.time()
                try:
                    return func(*args, **kwargs)
                finally:
                    histogram_metric.observe(time.time() - start_time)
            return wrapper
        return decorator


# Global metrics instance
metrics = MetricsRegistry()
