"""
Database-backed stores for reports, amendment requests and versions.

Every write runs inside store_transaction(): one atomic unit with a
caller-supplied timeout. Database errors raised inside it (lock timeouts,
lost connections, "database is locked") surface as UnavailableError after
the transaction has been rolled back, so nothing is partially written.

Lock order is always report row first, then amendment row.
"""
from collections.abc import Mapping
from contextlib import contextmanager
from typing import Iterable, List, Optional, Union

from django.conf import settings
from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import IntegrityError, OperationalError, connection, transaction
from django.db.models import F
from django.utils import timezone

from apps.core.observability import get_sanitized_logger, metrics
from apps.core.observability.events import log_report_conflict

from .actors import Actor
from .diff import FieldChange, changes_from_dict, changes_to_dict, snapshot as take_snapshot
from .exceptions import ConflictError, InvalidStateError, NotFoundError, UnavailableError, ValidationError
from .models import (
    AmendmentRequest,
    AmendmentStatusChoices,
    PatientReport,
    ReportAmendmentStatusChoices,
    ReportVersion,
)

logger = get_sanitized_logger(__name__)

Changes = Union[Iterable[FieldChange], Mapping]

# Report columns written by save_report()
REPORT_SAVE_FIELDS = (
    'status',
    'priority',
    'patient_complaint',
    'history_present',
    'history_past',
    'diagnosis',
    'additional_notes',
    'follow_up_instructions',
    'current_version',
    'amendment_status',
    'finalized_at',
)

# Review decisions accepted by resolve()
DECISIONS = {
    'approve': AmendmentStatusChoices.APPROVED,
    'approved': AmendmentStatusChoices.APPROVED,
    'reject': AmendmentStatusChoices.REJECTED,
    'rejected': AmendmentStatusChoices.REJECTED,
}


def default_timeout_ms():
    return getattr(settings, 'REPORTS_STORE_TIMEOUT_MS', 5000)


@contextmanager
def store_transaction(timeout_ms: Optional[int] = None):
    """
    Atomic block bounded by a timeout.

    On PostgreSQL the timeout becomes lock_timeout and statement_timeout
    for the transaction. Other backends rely on their own busy timeout.
    Nested calls become savepoints of the outer transaction.
    """
    timeout_ms = default_timeout_ms() if timeout_ms is None else timeout_ms
    try:
        with transaction.atomic():
            if timeout_ms and connection.vendor == 'postgresql':
                with connection.cursor() as cursor:
                    value = f'{int(timeout_ms)}ms'
                    cursor.execute("SELECT set_config('lock_timeout', %s, true)", [value])
                    cursor.execute("SELECT set_config('statement_timeout', %s, true)", [value])
            yield
    except OperationalError as e:
        metrics.report_store_unavailable_total.inc()
        logger.error(
            'Report store transaction aborted',
            extra={
                'event': 'report_store_unavailable',
                'timeout_ms': timeout_ms,
                'error_type': e.__class__.__name__,
            }
        )
        raise UnavailableError(
            'Report store is unavailable, retry later',
            details={'timeout_ms': timeout_ms}
        ) from e


def _as_changes(changes: Changes) -> List[FieldChange]:
    if isinstance(changes, Mapping):
        return changes_from_dict(changes)
    return list(changes)


def _conflict(report_id, reason, message, **details):
    metrics.report_amendment_conflicts_total.labels(reason=reason).inc()
    log_report_conflict(report_id, reason, **details)
    return ConflictError(message, details={'report_id': str(report_id), 'reason': reason, **details})


def _lock_report(report_id) -> PatientReport:
    try:
        return PatientReport.objects.select_for_update().get(pk=report_id)
    except (PatientReport.DoesNotExist, DjangoValidationError, ValueError):
        raise NotFoundError(f'Report {report_id} not found', details={'report_id': str(report_id)})


# ============================================================================
# Report storage
# ============================================================================

class ReportRepository:
    """
    load_report / save_report over the patient_report table.

    save_report is a compare-and-swap: it only writes when the stored
    current_version equals expected_version and row_version still matches
    the loaded instance, then bumps row_version.
    """

    def __init__(self, timeout_ms: Optional[int] = None):
        self.timeout_ms = timeout_ms

    def load_report(self, report_id, for_update: bool = False) -> PatientReport:
        """
        Raises:
            NotFoundError: unknown or malformed id
        """
        if for_update:
            # select_for_update needs an open transaction
            with store_transaction(self.timeout_ms):
                return _lock_report(report_id)
        try:
            return PatientReport.objects.get(pk=report_id)
        except (PatientReport.DoesNotExist, DjangoValidationError, ValueError):
            raise NotFoundError(f'Report {report_id} not found', details={'report_id': str(report_id)})
        except OperationalError as e:
            raise UnavailableError('Report store is unavailable, retry later') from e

    def save_report(self, report: PatientReport, expected_version: int) -> None:
        """
        Raises:
            ConflictError: stored version or row_version differs
        """
        now = timezone.now()
        values = {field: getattr(report, field) for field in REPORT_SAVE_FIELDS}

        with store_transaction(self.timeout_ms):
            updated = PatientReport.objects.filter(
                pk=report.pk,
                current_version=expected_version,
                row_version=report.row_version,
            ).update(row_version=F('row_version') + 1, updated_at=now, **values)

            if not updated:
                if not PatientReport.objects.filter(pk=report.pk).exists():
                    raise NotFoundError(f'Report {report.pk} not found', details={'report_id': str(report.pk)})
                raise _conflict(
                    report.pk,
                    'stale_report',
                    'Report was modified concurrently, reload and retry',
                    expected_version=expected_version,
                )

        report.row_version += 1
        report.updated_at = now


# ============================================================================
# Amendment requests
# ============================================================================

class AmendmentRequestStore:
    """Durable amendment requests with their status transitions."""

    def __init__(self, timeout_ms: Optional[int] = None):
        self.timeout_ms = timeout_ms

    def create(self, report_id, reason: str, changes: Changes, requested_by: Actor, deadline=None):
        """
        Persist a new pending request and mark the report as having one.

        Returns:
            id of the new request

        Raises:
            ValidationError: blank reason or empty change set
            NotFoundError: unknown report
            ConflictError: a pending request already exists for the report
        """
        if not reason or not reason.strip():
            raise ValidationError('A reason is required', details={'field': 'reason'})

        change_list = _as_changes(changes)
        if not change_list:
            raise ValidationError('no changes to submit')

        with store_transaction(self.timeout_ms):
            report = _lock_report(report_id)

            pending = self.pending_for_report(report.pk)
            if pending is not None:
                raise _conflict(
                    report.pk,
                    'duplicate_pending',
                    'A pending amendment already exists for this report',
                    pending_amendment_id=str(pending.pk),
                )

            try:
                with transaction.atomic():
                    amendment = AmendmentRequest.objects.create(
                        report=report,
                        reason=reason.strip(),
                        proposed_changes=changes_to_dict(change_list),
                        status=AmendmentStatusChoices.PENDING,
                        requested_by=requested_by.actor_id,
                        requested_by_role=requested_by.role,
                        deadline=deadline,
                    )
            except IntegrityError:
                # Partial unique index on (report) where status = pending
                raise _conflict(
                    report.pk,
                    'duplicate_pending',
                    'A pending amendment already exists for this report',
                )

            PatientReport.objects.filter(pk=report.pk).update(
                amendment_status=ReportAmendmentStatusChoices.PENDING,
                row_version=F('row_version') + 1,
                updated_at=timezone.now(),
            )

        logger.info(
            'Amendment request created',
            extra={
                'amendment_id': str(amendment.pk),
                'report_id': str(report.pk),
                'changed_fields': [change.field for change in change_list],
            }
        )
        return amendment.pk

    def resolve(self, amendment_id, decision: str, comments: Optional[str], reviewed_by: Actor) -> AmendmentRequest:
        """
        Approve or reject a pending request and mirror the outcome on the report.

        Returns:
            The resolved request

        Raises:
            ValidationError: decision is not approve/reject
            NotFoundError: unknown request
            InvalidStateError: request is not pending
        """
        status = DECISIONS.get(str(decision).lower())
        if status is None:
            raise ValidationError(
                f"Unknown decision '{decision}'",
                details={'field': 'decision', 'allowed': ['approve', 'reject']}
            )

        with store_transaction(self.timeout_ms):
            report_id = self.get(amendment_id).report_id
            _lock_report(report_id)
            amendment = self.get_for_update(amendment_id)

            if amendment.status != AmendmentStatusChoices.PENDING:
                raise InvalidStateError(
                    f'Amendment is {amendment.status}; only pending amendments can be reviewed',
                    details={'amendment_id': str(amendment.pk), 'status': amendment.status}
                )

            amendment.status = status
            amendment.reviewed_by = reviewed_by.actor_id
            amendment.reviewed_by_role = reviewed_by.role
            amendment.review_date = timezone.now()
            amendment.review_comments = (comments or '').strip() or None
            amendment.save(update_fields=[
                'status', 'reviewed_by', 'reviewed_by_role', 'review_date', 'review_comments'
            ])

            PatientReport.objects.filter(pk=report_id).update(
                amendment_status=status,
                row_version=F('row_version') + 1,
                updated_at=timezone.now(),
            )

        return amendment

    def mark_applied(self, amendment_id, applied_by: Actor, version_number: int) -> AmendmentRequest:
        """
        Close an approved request.

        Raises:
            NotFoundError: unknown request
            InvalidStateError: request is not approved (applied ones included)
        """
        with store_transaction(self.timeout_ms):
            amendment = self.get_for_update(amendment_id)

            if amendment.status == AmendmentStatusChoices.APPLIED:
                raise InvalidStateError(
                    'Amendment already applied',
                    details={'amendment_id': str(amendment.pk), 'applied_version': amendment.applied_version}
                )
            if amendment.status != AmendmentStatusChoices.APPROVED:
                raise InvalidStateError(
                    f'Amendment is {amendment.status}; only approved amendments can be applied',
                    details={'amendment_id': str(amendment.pk), 'status': amendment.status}
                )

            amendment.status = AmendmentStatusChoices.APPLIED
            amendment.applied_by = applied_by.actor_id
            amendment.applied_at = timezone.now()
            amendment.applied_version = version_number
            amendment.save(update_fields=['status', 'applied_by', 'applied_at', 'applied_version'])

        return amendment

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, amendment_id) -> AmendmentRequest:
        try:
            return AmendmentRequest.objects.get(pk=amendment_id)
        except (AmendmentRequest.DoesNotExist, DjangoValidationError, ValueError):
            raise NotFoundError(
                f'Amendment {amendment_id} not found',
                details={'amendment_id': str(amendment_id)}
            )

    def get_for_update(self, amendment_id) -> AmendmentRequest:
        """Must be called inside store_transaction()."""
        try:
            return AmendmentRequest.objects.select_for_update().get(pk=amendment_id)
        except (AmendmentRequest.DoesNotExist, DjangoValidationError, ValueError):
            raise NotFoundError(
                f'Amendment {amendment_id} not found',
                details={'amendment_id': str(amendment_id)}
            )

    def list_by_report(self, report_id) -> List[AmendmentRequest]:
        return list(AmendmentRequest.objects.filter(report_id=report_id).order_by('request_date'))

    def list_pending(self, overdue_only: bool = False) -> List[AmendmentRequest]:
        queryset = AmendmentRequest.objects.filter(status=AmendmentStatusChoices.PENDING)
        if overdue_only:
            queryset = queryset.filter(deadline__lt=timezone.now())
        return list(queryset.select_related('report').order_by('deadline', 'request_date'))

    def pending_for_report(self, report_id) -> Optional[AmendmentRequest]:
        return AmendmentRequest.objects.filter(
            report_id=report_id,
            status=AmendmentStatusChoices.PENDING
        ).first()


# ============================================================================
# Versions
# ============================================================================

class VersionStore:
    """
    Append-only report versions.

    Version numbers per report are gapless from 1 and exactly one version
    is active. Appends for the same report are serialized by the report
    row lock and by a compare-and-swap on current_version.
    """

    def __init__(self, timeout_ms: Optional[int] = None):
        self.timeout_ms = timeout_ms

    def create_baseline(self, report: PatientReport, created_by: Actor, reason: str = 'Report finalized') -> ReportVersion:
        """
        Write version 1 from the report's present content.

        Returns the active version unchanged when the report already has
        versions.

        Raises:
            InvalidStateError: no versions exist but the report is past version 1
        """
        with store_transaction(self.timeout_ms):
            existing = self.active_version(report.pk)
            if existing is not None:
                return existing

            if report.current_version != 1:
                raise InvalidStateError(
                    'Report has no version history to extend',
                    details={'report_id': str(report.pk), 'current_version': report.current_version}
                )

            version = ReportVersion.objects.create(
                report=report,
                version_number=report.current_version,
                created_by=created_by.actor_id,
                created_by_role=created_by.role,
                reason=reason,
                changes={},
                snapshot=take_snapshot(report),
                is_active=True,
            )

        metrics.report_versions_created_total.labels(kind='baseline').inc()
        return version

    def append_version(
        self,
        report_id,
        changes: Changes,
        created_by: Actor,
        reason: str,
        expected_version: Optional[int] = None,
        amendment: Optional[AmendmentRequest] = None,
        snapshot: Optional[dict] = None,
    ) -> int:
        """
        Write the next version and make it the active one.

        Args:
            report_id: Report to version
            changes: FieldChange list or persisted {field: {from, to}} mapping
            created_by: Actor applying the change
            reason: Copied from the originating amendment
            expected_version: current_version the caller based its change on
            amendment: Originating request, if any
            snapshot: Editable field values after the change

        Returns:
            The new version number

        Raises:
            NotFoundError: unknown report
            ConflictError: current_version moved (expected_version or the
                compare-and-swap did not match)
            InvalidStateError: report has no versions but is past version 1
        """
        change_list = _as_changes(changes)

        with store_transaction(self.timeout_ms):
            report = _lock_report(report_id)
            current = report.current_version

            if expected_version is not None and current != expected_version:
                raise _conflict(
                    report.pk,
                    'version_race',
                    'Report version changed, reload and retry',
                    expected_version=expected_version,
                    current_version=current,
                )

            parent = self.active_version(report.pk)
            if parent is None:
                parent = self.create_baseline(report, created_by, reason='Baseline before first amendment')

            new_number = current + 1
            swapped = PatientReport.objects.filter(
                pk=report.pk,
                current_version=current
            ).update(current_version=new_number, updated_at=timezone.now())
            if not swapped:
                raise _conflict(
                    report.pk,
                    'version_race',
                    'Report version changed, reload and retry',
                    expected_version=current,
                )

            ReportVersion.objects.filter(report_id=report.pk, is_active=True).update(is_active=False)
            ReportVersion.objects.create(
                report_id=report.pk,
                version_number=new_number,
                created_by=created_by.actor_id,
                created_by_role=created_by.role,
                reason=reason,
                changes=changes_to_dict(change_list),
                snapshot=snapshot or {},
                is_active=True,
                parent_version=parent,
                amendment=amendment,
            )

        metrics.report_versions_created_total.labels(kind='amendment').inc()
        return new_number

    def list_versions(self, report_id) -> List[ReportVersion]:
        """Oldest first."""
        return list(ReportVersion.objects.filter(report_id=report_id).order_by('version_number'))

    def active_version(self, report_id) -> Optional[ReportVersion]:
        return ReportVersion.objects.filter(report_id=report_id, is_active=True).first()
