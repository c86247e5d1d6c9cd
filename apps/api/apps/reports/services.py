"""
Amendment workflow for finalized patient reports.

Owns the amendment state machine:

    pending -> approved -> applied
    pending -> rejected

and the two report lifecycle operations that come before it (draft edits
and finalization). Every transition runs in one store transaction, writes
a ReportAuditLog row, logs a domain event and updates metrics. Store
errors pass through unchanged; nothing is retried here.
"""
import logging
from contextlib import contextmanager
from typing import Any, Dict, List, Mapping, Optional

from django.conf import settings
from django.utils import timezone

from apps.core.observability import metrics, trace_span
from apps.core.observability.events import log_amendment_transition, log_domain_event, log_version_created
from apps.core.observability.tracing import add_span_attribute

from .actors import Actor
from .diff import (
    EDITABLE_FIELDS,
    FieldChange,
    FieldKind,
    apply_changes,
    changes_from_dict,
    compute_changes,
    find_stale_fields,
    get_field,
    normalize,
    read_field,
    snapshot,
)
from .exceptions import ConflictError, InvalidStateError, ReportError, ValidationError
from .models import (
    AmendmentRequest,
    AmendmentStatusChoices,
    PatientReport,
    ReportAmendmentStatusChoices,
    ReportAuditActionChoices,
    ReportStatusChoices,
    log_report_audit,
)
from .notifications import NotificationEvent, get_notifier, notify_on_commit
from .stores import DECISIONS, AmendmentRequestStore, ReportRepository, VersionStore, store_transaction

logger = logging.getLogger(__name__)

SUPERSEDED_COMMENT = 'Superseded by a newer amendment request'

# Fields a report must have before it can be signed
REQUIRED_FOR_FINALIZATION = ('patient_complaint', 'history_present', 'diagnosis.primary')

MAX_TEXT_LENGTH = 5000

DEFAULT_AMENDABLE_STATUSES = (
    ReportStatusChoices.FINAL,
    ReportStatusChoices.READY_FOR_SUBMISSION,
)


def amendable_statuses():
    configured = getattr(settings, 'REPORTS_AMENDABLE_STATUSES', DEFAULT_AMENDABLE_STATUSES)
    return tuple(status.strip() for status in configured if status.strip())


def validate_for_finalization(report: PatientReport) -> None:
    """
    Raise ValidationError unless the report is complete enough to sign.

    Required fields must be non-blank and no text field may exceed
    MAX_TEXT_LENGTH characters.
    """
    missing = [
        path for path in REQUIRED_FOR_FINALIZATION
        if not normalize(get_field(path), read_field(report, path))
    ]
    too_long = [
        field.path for field in EDITABLE_FIELDS
        if field.kind is FieldKind.TEXT
        and len(normalize(field, read_field(report, field.path))) > MAX_TEXT_LENGTH
    ]
    if missing or too_long:
        raise ValidationError(
            'Report is incomplete and cannot be finalized',
            details={
                'missing_fields': missing,
                'too_long_fields': too_long,
                'max_length': MAX_TEXT_LENGTH,
            }
        )


def _notification_payload(amendment: AmendmentRequest, **extra) -> Dict[str, Any]:
    payload = {
        'report_id': str(amendment.report_id),
        'amendment_id': str(amendment.pk),
        'status': amendment.status,
    }
    payload.update(extra)
    return payload


class AmendmentWorkflow:
    """
    Amendment workflow controller.

    Collaborators are injectable; by default they are the database stores
    and the notifier named in REPORTS_NOTIFIER_CLASS.
    """

    def __init__(
        self,
        reports: Optional[ReportRepository] = None,
        amendments: Optional[AmendmentRequestStore] = None,
        versions: Optional[VersionStore] = None,
        notifier=None,
        timeout_ms: Optional[int] = None,
    ):
        self.timeout_ms = timeout_ms
        self.reports = reports or ReportRepository(timeout_ms)
        self.amendments = amendments or AmendmentRequestStore(timeout_ms)
        self.versions = versions or VersionStore(timeout_ms)
        self.notifier = notifier if notifier is not None else get_notifier()

    @contextmanager
    def _transition(self, from_status, to_status, report_id=None, amendment_id=None, actor=None):
        """Count and log a refused transition, then re-raise."""
        try:
            yield
        except ReportError as e:
            result = e.code.lower()
            metrics.report_amendment_transitions_total.labels(
                from_status=from_status or 'none',
                to_status=to_status,
                result=result
            ).inc()
            log_amendment_transition(
                amendment_id, report_id, from_status, to_status,
                actor=actor, result=result, error_code=e.code
            )
            raise

    def _record_transition(self, amendment, from_status, to_status, actor, **extra):
        metrics.report_amendment_transitions_total.labels(
            from_status=from_status or 'none',
            to_status=to_status,
            result='success'
        ).inc()
        log_amendment_transition(amendment.pk, amendment.report_id, from_status, to_status, actor=actor, **extra)

    # ------------------------------------------------------------------
    # Amendments
    # ------------------------------------------------------------------

    def create_amendment(
        self,
        report_id,
        reason: str,
        field_values: Mapping[str, Any],
        actor: Actor,
        deadline=None,
        supersede: bool = False,
    ) -> AmendmentRequest:
        """
        Open an amendment request against a finalized report.

        Args:
            report_id: Target report
            reason: Why the report must change (required)
            field_values: Proposed values keyed by editable field path
            actor: Requester
            deadline: Optional review deadline
            supersede: Reject the current pending request first instead of
                failing with ConflictError

        Returns:
            The pending AmendmentRequest

        Raises:
            NotFoundError: unknown report
            InvalidStateError: report is not finalized
            ValidationError: blank reason, unknown field or no changes
            ConflictError: another request is pending and supersede is False
        """
        with trace_span('report.create_amendment', attributes={'report_id': str(report_id)}), \
                self._transition(None, AmendmentStatusChoices.PENDING, report_id=report_id, actor=actor):
            with store_transaction(self.timeout_ms):
                report = self.reports.load_report(report_id, for_update=True)

                if report.status not in amendable_statuses():
                    raise InvalidStateError(
                        'amendments only allowed on finalized reports',
                        details={'report_id': str(report.pk), 'status': report.status}
                    )

                changes = compute_changes(report, field_values or {})
                if not reason or not reason.strip():
                    raise ValidationError('A reason is required', details={'field': 'reason'})
                if not changes:
                    raise ValidationError('no changes to submit')

                if supersede:
                    self._supersede_pending(report, actor)

                amendment_id = self.amendments.create(report.pk, reason, changes, actor, deadline=deadline)
                amendment = self.amendments.get(amendment_id)

                changed_fields = [change.field for change in changes]
                log_report_audit(
                    actor,
                    report,
                    ReportAuditActionChoices.AMENDMENT_CREATED,
                    amendment=amendment,
                    to_state=AmendmentStatusChoices.PENDING,
                    changed_fields=changed_fields,
                )
                self._record_transition(
                    amendment, None, AmendmentStatusChoices.PENDING, actor, changed_fields=changed_fields
                )
                notify_on_commit(
                    self.notifier,
                    report.doctor_id,
                    NotificationEvent.CREATED,
                    _notification_payload(amendment, changed_fields=changed_fields),
                )

        return amendment

    def _supersede_pending(self, report: PatientReport, actor: Actor) -> Optional[AmendmentRequest]:
        pending = self.amendments.pending_for_report(report.pk)
        if pending is None:
            return None

        superseded = self.amendments.resolve(
            pending.pk, AmendmentStatusChoices.REJECTED, SUPERSEDED_COMMENT, actor
        )
        log_report_audit(
            actor,
            report,
            ReportAuditActionChoices.AMENDMENT_SUPERSEDED,
            amendment=superseded,
            from_state=AmendmentStatusChoices.PENDING,
            to_state=AmendmentStatusChoices.REJECTED,
        )
        self._record_transition(
            superseded, AmendmentStatusChoices.PENDING, AmendmentStatusChoices.REJECTED, actor, superseded=True
        )
        notify_on_commit(
            self.notifier,
            superseded.requested_by,
            NotificationEvent.SUPERSEDED,
            _notification_payload(superseded),
        )
        return superseded

    def review_amendment(self, amendment_id, decision: str, comments: Optional[str], actor: Actor) -> AmendmentRequest:
        """
        Approve or reject a pending request and notify the requester.

        The report's medical content is not touched.

        Raises:
            NotFoundError: unknown request
            InvalidStateError: request is not pending
            ValidationError: decision is not approve/reject
        """
        target = DECISIONS.get(str(decision).lower(), 'unknown')

        with trace_span('report.review_amendment', attributes={'amendment_id': str(amendment_id)}), \
                self._transition(AmendmentStatusChoices.PENDING, target, amendment_id=amendment_id, actor=actor):
            with store_transaction(self.timeout_ms):
                amendment = self.amendments.resolve(amendment_id, decision, comments, actor)

                action = (
                    ReportAuditActionChoices.AMENDMENT_APPROVED
                    if amendment.status == AmendmentStatusChoices.APPROVED
                    else ReportAuditActionChoices.AMENDMENT_REJECTED
                )
                log_report_audit(
                    actor,
                    amendment.report_id,
                    action,
                    amendment=amendment,
                    from_state=AmendmentStatusChoices.PENDING,
                    to_state=amendment.status,
                )
                self._record_transition(amendment, AmendmentStatusChoices.PENDING, amendment.status, actor)

                event = (
                    NotificationEvent.APPROVED
                    if amendment.status == AmendmentStatusChoices.APPROVED
                    else NotificationEvent.REJECTED
                )
                notify_on_commit(self.notifier, amendment.requested_by, event, _notification_payload(amendment))

        return amendment

    @metrics.track_duration(metrics.report_amendment_apply_duration_seconds)
    def apply_amendment(self, report_id, amendment_id, actor: Actor) -> PatientReport:
        """
        Apply an approved amendment, producing the next report version.

        The recorded "from" values must still match the report, otherwise
        the amendment is stale. Version append, report update and closing
        the amendment commit together or not at all.

        Returns:
            The updated report

        Raises:
            NotFoundError: unknown report or amendment
            ValidationError: amendment belongs to another report
            InvalidStateError: amendment not approved (or already applied)
            ConflictError: stale amendment or concurrent version change
            UnavailableError: store timeout
        """
        attributes = {'report_id': str(report_id), 'amendment_id': str(amendment_id)}

        with trace_span('report.apply_amendment', attributes=attributes), \
                self._transition(
                    AmendmentStatusChoices.APPROVED,
                    AmendmentStatusChoices.APPLIED,
                    report_id=report_id,
                    amendment_id=amendment_id,
                    actor=actor,
                ):
            with store_transaction(self.timeout_ms):
                report = self.reports.load_report(report_id, for_update=True)
                amendment = self.amendments.get_for_update(amendment_id)

                if amendment.report_id != report.pk:
                    raise ValidationError(
                        'Amendment does not belong to this report',
                        details={'report_id': str(report.pk), 'amendment_id': str(amendment.pk)}
                    )
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

                changes = changes_from_dict(amendment.proposed_changes)
                stale_fields = find_stale_fields(report, changes)
                if stale_fields:
                    metrics.report_amendment_conflicts_total.labels(reason='stale_amendment').inc()
                    raise ConflictError(
                        'report has changed since amendment was approved',
                        details={'fields': stale_fields, 'amendment_id': str(amendment.pk)}
                    )

                base_version = report.current_version
                apply_changes(report, changes)

                new_version = self.versions.append_version(
                    report.pk,
                    changes,
                    actor,
                    amendment.reason,
                    expected_version=base_version,
                    amendment=amendment,
                    snapshot=snapshot(report),
                )
                add_span_attribute('report.version', new_version)

                report.current_version = new_version
                queued = self.amendments.pending_for_report(report.pk)
                report.amendment_status = (
                    ReportAmendmentStatusChoices.PENDING if queued else ReportAmendmentStatusChoices.NONE
                )
                self.reports.save_report(report, expected_version=new_version)

                amendment = self.amendments.mark_applied(amendment.pk, actor, new_version)

                changed_fields = [change.field for change in changes]
                log_report_audit(
                    actor,
                    report,
                    ReportAuditActionChoices.AMENDMENT_APPLIED,
                    amendment=amendment,
                    from_state=AmendmentStatusChoices.APPROVED,
                    to_state=AmendmentStatusChoices.APPLIED,
                    changed_fields=changed_fields,
                    from_version=base_version,
                    to_version=new_version,
                )
                self._record_transition(
                    amendment,
                    AmendmentStatusChoices.APPROVED,
                    AmendmentStatusChoices.APPLIED,
                    actor,
                    version_number=new_version,
                )
                log_version_created(report.pk, new_version, actor, amendment.pk, changed_fields)
                notify_on_commit(
                    self.notifier,
                    amendment.requested_by,
                    NotificationEvent.APPLIED,
                    _notification_payload(amendment, version_number=new_version),
                )

        return report

    # ------------------------------------------------------------------
    # Report lifecycle
    # ------------------------------------------------------------------

    def update_draft(self, report_id, field_values: Mapping[str, Any], actor: Actor) -> List[FieldChange]:
        """
        Edit a draft report in place. No version is written.

        Returns:
            The applied changes (empty when nothing differed)

        Raises:
            InvalidStateError: report is finalized; use an amendment
            ValidationError: unknown field
        """
        with trace_span('report.update_draft', attributes={'report_id': str(report_id)}):
            with store_transaction(self.timeout_ms):
                report = self.reports.load_report(report_id, for_update=True)

                if report.status != ReportStatusChoices.DRAFT:
                    metrics.report_lifecycle_total.labels(operation='draft_update', result='invalid_state').inc()
                    raise InvalidStateError(
                        'Finalized reports can only be changed through an amendment',
                        details={'report_id': str(report.pk), 'status': report.status}
                    )

                changes = compute_changes(report, field_values or {})
                if not changes:
                    return []

                apply_changes(report, changes)
                self.reports.save_report(report, expected_version=report.current_version)

                changed_fields = [change.field for change in changes]
                log_report_audit(
                    actor,
                    report,
                    ReportAuditActionChoices.DRAFT_UPDATED,
                    from_state=report.status,
                    to_state=report.status,
                    changed_fields=changed_fields,
                )

        metrics.report_lifecycle_total.labels(operation='draft_update', result='success').inc()
        log_domain_event(
            'report_draft_updated',
            entity_type='PatientReport',
            entity_id=str(report.pk),
            actor_id=actor.actor_id,
            changed_fields=changed_fields,
        )
        return changes

    def finalize_report(self, report_id, actor: Actor) -> PatientReport:
        """
        Sign a draft report: draft -> final, and write baseline version 1.

        Raises:
            InvalidStateError: report is not a draft
            ValidationError: required field blank or text too long
        """
        with trace_span('report.finalize', attributes={'report_id': str(report_id)}):
            with store_transaction(self.timeout_ms):
                report = self.reports.load_report(report_id, for_update=True)

                if report.status != ReportStatusChoices.DRAFT:
                    metrics.report_lifecycle_total.labels(operation='finalize', result='invalid_state').inc()
                    raise InvalidStateError(
                        'Only draft reports can be finalized',
                        details={'report_id': str(report.pk), 'status': report.status}
                    )

                try:
                    validate_for_finalization(report)
                except ValidationError:
                    metrics.report_lifecycle_total.labels(operation='finalize', result='validation_error').inc()
                    raise

                report.status = ReportStatusChoices.FINAL
                report.finalized_at = timezone.now()
                self.reports.save_report(report, expected_version=report.current_version)

                baseline = self.versions.create_baseline(report, actor)
                log_report_audit(
                    actor,
                    report,
                    ReportAuditActionChoices.REPORT_FINALIZED,
                    from_state=ReportStatusChoices.DRAFT,
                    to_state=ReportStatusChoices.FINAL,
                    version_number=baseline.version_number,
                )

        metrics.report_lifecycle_total.labels(operation='finalize', result='success').inc()
        log_version_created(report.pk, baseline.version_number, actor)
        logger.info(
            'Report finalized',
            extra={'report_id': str(report.pk), 'version_number': baseline.version_number}
        )
        return report

    def mark_ready_for_submission(self, report_id, actor: Actor) -> PatientReport:
        """
        Queue a signed report for submission: final -> ready_for_submission.

        The report stays amendable and keeps its version history.

        Raises:
            InvalidStateError: report is not final
        """
        with trace_span('report.ready_for_submission', attributes={'report_id': str(report_id)}):
            with store_transaction(self.timeout_ms):
                report = self.reports.load_report(report_id, for_update=True)

                if report.status != ReportStatusChoices.FINAL:
                    metrics.report_lifecycle_total.labels(
                        operation='ready_for_submission', result='invalid_state'
                    ).inc()
                    raise InvalidStateError(
                        'Only final reports can be marked ready for submission',
                        details={'report_id': str(report.pk), 'status': report.status}
                    )

                report.status = ReportStatusChoices.READY_FOR_SUBMISSION
                self.reports.save_report(report, expected_version=report.current_version)

                log_report_audit(
                    actor,
                    report,
                    ReportAuditActionChoices.REPORT_READY,
                    from_state=ReportStatusChoices.FINAL,
                    to_state=ReportStatusChoices.READY_FOR_SUBMISSION,
                    version_number=report.current_version,
                )

        metrics.report_lifecycle_total.labels(operation='ready_for_submission', result='success').inc()
        log_domain_event(
            'report_ready_for_submission',
            entity_type='PatientReport',
            entity_id=str(report.pk),
            actor_id=actor.actor_id,
            version_number=report.current_version,
        )
        return report
