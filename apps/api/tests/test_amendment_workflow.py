"""
Tests for the amendment workflow: create -> review -> apply.

Covers the state machine, version bookkeeping, stale and concurrent
applies, store timeouts, audit trail and post-commit notifications.
"""
from unittest.mock import ANY, patch

import pytest
from django.db import OperationalError

from apps.core.observability import metrics
from apps.reports.diff import snapshot
from apps.reports.exceptions import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    UnavailableError,
    ValidationError,
)
from apps.reports.models import (
    AmendmentRequest,
    AmendmentStatusChoices,
    PatientReport,
    ReportAmendmentStatusChoices,
    ReportAuditActionChoices,
    ReportAuditLog,
    ReportVersion,
)
from apps.reports.services import SUPERSEDED_COMMENT, AmendmentWorkflow


def _active_versions(report):
    return ReportVersion.objects.filter(report_id=report.pk, is_active=True)


@pytest.mark.django_db
class TestCreateAmendment:

    def test_creates_pending_request_with_diff(self, workflow, final_report, nurse):
        amendment = workflow.create_amendment(
            final_report.pk, 'corrected diagnosis', {'diagnosis.primary': 'Pneumonia'}, nurse
        )

        assert amendment.status == AmendmentStatusChoices.PENDING
        assert amendment.reason == 'corrected diagnosis'
        assert amendment.proposed_changes == {'diagnosis.primary': {'from': 'Flu', 'to': 'Pneumonia'}}
        final_report.refresh_from_db()
        assert final_report.amendment_status == ReportAmendmentStatusChoices.PENDING
        # Content is untouched until the amendment is applied
        assert final_report.diagnosis['primary'] == 'Flu'

    def test_draft_report_is_rejected(self, workflow, draft_report, nurse):
        with pytest.raises(InvalidStateError) as exc_info:
            workflow.create_amendment(draft_report.pk, 'fix', {'diagnosis.primary': 'Pneumonia'}, nurse)

        assert exc_info.value.message == 'amendments only allowed on finalized reports'
        assert not AmendmentRequest.objects.exists()

    def test_ready_for_submission_report_is_accepted(self, workflow, make_report, nurse):
        report = make_report(status='ready_for_submission')

        amendment = workflow.create_amendment(report.pk, 'fix', {'diagnosis.primary': 'Pneumonia'}, nurse)

        assert amendment.status == AmendmentStatusChoices.PENDING

    def test_case_only_list_correction_is_accepted(self, workflow, final_report, nurse):
        amendment = workflow.create_amendment(
            final_report.pk, 'capitalization', {'diagnosis.secondary': ['cough', 'fever']}, nurse
        )

        assert amendment.proposed_changes == {
            'diagnosis.secondary': {'from': 'Cough, Fever', 'to': 'cough, fever'}
        }

    def test_submitted_report_is_rejected(self, workflow, make_report, nurse):
        report = make_report(status='submitted')

        with pytest.raises(InvalidStateError):
            workflow.create_amendment(report.pk, 'fix', {'diagnosis.primary': 'Pneumonia'}, nurse)

    def test_empty_diff_is_rejected(self, workflow, final_report, nurse):
        with pytest.raises(ValidationError) as exc_info:
            workflow.create_amendment(final_report.pk, 'fix', {'diagnosis.primary': ' Flu '}, nurse)

        assert exc_info.value.message == 'no changes to submit'

    def test_blank_reason_is_rejected(self, workflow, final_report, nurse):
        with pytest.raises(ValidationError):
            workflow.create_amendment(final_report.pk, '  ', {'diagnosis.primary': 'Pneumonia'}, nurse)

    def test_unknown_report(self, workflow, nurse):
        with pytest.raises(NotFoundError):
            workflow.create_amendment(
                '00000000-0000-0000-0000-000000000000', 'fix', {'diagnosis.primary': 'x'}, nurse
            )

    def test_second_pending_request_conflicts(self, workflow, final_report, nurse):
        workflow.create_amendment(final_report.pk, 'first', {'diagnosis.primary': 'Pneumonia'}, nurse)

        with pytest.raises(ConflictError):
            workflow.create_amendment(final_report.pk, 'second', {'diagnosis.primary': 'Bronchitis'}, nurse)

        assert AmendmentRequest.objects.filter(report=final_report, status='pending').count() == 1

    def test_supersede_rejects_existing_pending_request(self, workflow, final_report, nurse, doctor):
        first = workflow.create_amendment(final_report.pk, 'first', {'diagnosis.primary': 'Pneumonia'}, nurse)

        second = workflow.create_amendment(
            final_report.pk, 'second', {'diagnosis.primary': 'Bronchitis'}, doctor, supersede=True
        )

        first.refresh_from_db()
        assert first.status == AmendmentStatusChoices.REJECTED
        assert first.review_comments == SUPERSEDED_COMMENT
        assert first.reviewed_by == 'doctor-1'
        assert second.status == AmendmentStatusChoices.PENDING
        assert ReportAuditLog.objects.filter(
            amendment=first, action=ReportAuditActionChoices.AMENDMENT_SUPERSEDED
        ).exists()

    def test_supersede_without_pending_request_just_creates(self, workflow, final_report, nurse):
        amendment = workflow.create_amendment(
            final_report.pk, 'fix', {'diagnosis.primary': 'Pneumonia'}, nurse, supersede=True
        )

        assert AmendmentRequest.objects.filter(report=final_report).count() == 1
        assert amendment.status == AmendmentStatusChoices.PENDING


@pytest.mark.django_db
class TestReviewAmendment:

    def test_approve_does_not_touch_report_content(self, workflow, final_report, nurse, doctor):
        amendment = workflow.create_amendment(final_report.pk, 'fix', {'diagnosis.primary': 'Pneumonia'}, nurse)

        reviewed = workflow.review_amendment(amendment.pk, 'approve', 'ok', doctor)

        assert reviewed.status == AmendmentStatusChoices.APPROVED
        report = PatientReport.objects.get(pk=final_report.pk)
        assert report.diagnosis['primary'] == 'Flu'
        assert report.current_version == 1
        assert report.amendment_status == ReportAmendmentStatusChoices.APPROVED

    def test_reject(self, workflow, final_report, nurse, doctor):
        amendment = workflow.create_amendment(final_report.pk, 'fix', {'diagnosis.primary': 'Pneumonia'}, nurse)

        reviewed = workflow.review_amendment(amendment.pk, 'reject', 'Not supported by labs', doctor)

        assert reviewed.status == AmendmentStatusChoices.REJECTED
        assert PatientReport.objects.get(pk=final_report.pk).amendment_status == 'rejected'

    def test_review_resolved_request_raises_invalid_state(self, workflow, approved_amendment, doctor):
        with pytest.raises(InvalidStateError):
            workflow.review_amendment(approved_amendment.pk, 'reject', '', doctor)

    def test_review_unknown_request(self, workflow, doctor):
        with pytest.raises(NotFoundError):
            workflow.review_amendment('00000000-0000-0000-0000-000000000000', 'approve', '', doctor)

    def test_requester_is_notified_after_commit(
        self, workflow, notifier, final_report, nurse, doctor, django_capture_on_commit_callbacks
    ):
        amendment = workflow.create_amendment(final_report.pk, 'fix', {'diagnosis.primary': 'Pneumonia'}, nurse)

        with django_capture_on_commit_callbacks(execute=True) as callbacks:
            workflow.review_amendment(amendment.pk, 'approve', 'ok', doctor)
            notifier.notify.assert_not_called()

        assert len(callbacks) == 1
        notifier.notify.assert_called_once_with(
            'nurse-1',
            'amendment.approved',
            {'report_id': str(final_report.pk), 'amendment_id': str(amendment.pk), 'status': 'approved'},
        )


@pytest.mark.django_db
class TestApplyAmendment:

    def test_diagnosis_correction_end_to_end(
        self, workflow, notifier, final_report, nurse, doctor, django_capture_on_commit_callbacks
    ):
        """Flu -> Pneumonia: create, approve, apply."""
        with django_capture_on_commit_callbacks(execute=True):
            amendment = workflow.create_amendment(
                final_report.pk, 'corrected diagnosis', {'diagnosis.primary': 'Pneumonia'}, nurse
            )
            assert amendment.status == 'pending'

            amendment = workflow.review_amendment(amendment.pk, 'approve', '', doctor)
            assert amendment.status == 'approved'

            report = workflow.apply_amendment(final_report.pk, amendment.pk, doctor)

        report = PatientReport.objects.get(pk=report.pk)
        assert report.diagnosis['primary'] == 'Pneumonia'
        assert report.diagnosis['secondary'] == ['Cough', 'Fever']
        assert report.current_version == 2
        assert report.amendment_status == ReportAmendmentStatusChoices.NONE

        version = ReportVersion.objects.get(report=report, version_number=2)
        assert version.changes == {'diagnosis.primary': {'from': 'Flu', 'to': 'Pneumonia'}}
        assert version.is_active
        assert version.reason == 'corrected diagnosis'
        assert version.amendment_id == amendment.pk
        assert version.created_by == 'doctor-1'

        amendment.refresh_from_db()
        assert amendment.status == AmendmentStatusChoices.APPLIED
        assert amendment.applied_version == 2
        assert amendment.applied_by == 'doctor-1'

        events = [c.args[1] for c in notifier.notify.call_args_list]
        assert events == ['amendment.created', 'amendment.approved', 'amendment.applied']
        notifier.notify.assert_any_call('doctor-1', 'amendment.created', ANY)
        notifier.notify.assert_any_call('nurse-1', 'amendment.applied', ANY)

    def test_version_increments_with_single_active_version(self, workflow, final_report, approved_amendment, doctor):
        before = PatientReport.objects.get(pk=final_report.pk).current_version

        workflow.apply_amendment(final_report.pk, approved_amendment.pk, doctor)

        after = PatientReport.objects.get(pk=final_report.pk)
        assert after.current_version == before + 1
        assert _active_versions(after).count() == 1
        assert _active_versions(after).get().version_number == after.current_version

    def test_reversing_amendment_restores_original_content(self, workflow, final_report, approved_amendment, nurse, doctor):
        original = snapshot(PatientReport.objects.get(pk=final_report.pk))
        workflow.apply_amendment(final_report.pk, approved_amendment.pk, doctor)

        reverse = workflow.create_amendment(final_report.pk, 'revert', {'diagnosis.primary': 'Flu'}, nurse)
        workflow.review_amendment(reverse.pk, 'approve', '', doctor)
        workflow.apply_amendment(final_report.pk, reverse.pk, doctor)

        report = PatientReport.objects.get(pk=final_report.pk)
        assert snapshot(report) == original
        assert report.current_version == 3
        assert [v.version_number for v in ReportVersion.objects.filter(report=report)] == [1, 2, 3]

    def test_applying_twice_raises_invalid_state(self, workflow, final_report, approved_amendment, doctor):
        workflow.apply_amendment(final_report.pk, approved_amendment.pk, doctor)

        with pytest.raises(InvalidStateError) as exc_info:
            workflow.apply_amendment(final_report.pk, approved_amendment.pk, doctor)

        assert exc_info.value.message == 'Amendment already applied'
        assert ReportVersion.objects.filter(report_id=final_report.pk).count() == 2
        assert PatientReport.objects.get(pk=final_report.pk).current_version == 2

    def test_pending_request_cannot_be_applied(self, workflow, final_report, nurse, doctor):
        amendment = workflow.create_amendment(final_report.pk, 'fix', {'diagnosis.primary': 'Pneumonia'}, nurse)

        with pytest.raises(InvalidStateError):
            workflow.apply_amendment(final_report.pk, amendment.pk, doctor)

    def test_rejected_request_cannot_be_applied(self, workflow, final_report, nurse, doctor):
        amendment = workflow.create_amendment(final_report.pk, 'fix', {'diagnosis.primary': 'Pneumonia'}, nurse)
        workflow.review_amendment(amendment.pk, 'reject', '', doctor)

        with pytest.raises(InvalidStateError):
            workflow.apply_amendment(final_report.pk, amendment.pk, doctor)

    def test_amendment_of_another_report(self, workflow, make_report, approved_amendment, doctor):
        other = workflow.finalize_report(make_report(patient_id='patient-002').pk, doctor)

        with pytest.raises(ValidationError):
            workflow.apply_amendment(other.pk, approved_amendment.pk, doctor)

    def test_stale_amendment_conflicts(self, workflow, final_report, approved_amendment, doctor):
        """The report changed through another path after approval."""
        PatientReport.objects.filter(pk=final_report.pk).update(
            diagnosis={'primary': 'Bronchitis', 'secondary': []}
        )

        with pytest.raises(ConflictError) as exc_info:
            workflow.apply_amendment(final_report.pk, approved_amendment.pk, doctor)

        assert exc_info.value.message == 'report has changed since amendment was approved'
        assert exc_info.value.details['fields'] == ['diagnosis.primary']
        approved_amendment.refresh_from_db()
        assert approved_amendment.status == AmendmentStatusChoices.APPROVED
        assert PatientReport.objects.get(pk=final_report.pk).current_version == 1

    def test_earlier_apply_makes_second_approved_amendment_stale(
        self, workflow, final_report, approved_amendment, nurse, doctor
    ):
        competing = workflow.create_amendment(final_report.pk, 'other', {'diagnosis.primary': 'Bronchitis'}, nurse)
        workflow.review_amendment(competing.pk, 'approve', '', doctor)
        workflow.apply_amendment(final_report.pk, competing.pk, doctor)

        with pytest.raises(ConflictError):
            workflow.apply_amendment(final_report.pk, approved_amendment.pk, doctor)

    def test_concurrent_apply_loser_gets_conflict(self, workflow, notifier, final_report, approved_amendment, doctor):
        """
        Two applies of the same amendment that both read version 1: the
        second writer loses the compare-and-swap.
        """
        stale_report = PatientReport.objects.get(pk=final_report.pk)
        stale_amendment = AmendmentRequest.objects.get(pk=approved_amendment.pk)

        workflow.apply_amendment(final_report.pk, approved_amendment.pk, doctor)

        loser = AmendmentWorkflow(notifier=notifier)
        with patch.object(loser.reports, 'load_report', return_value=stale_report), \
                patch.object(loser.amendments, 'get_for_update', return_value=stale_amendment):
            with pytest.raises(ConflictError):
                loser.apply_amendment(final_report.pk, approved_amendment.pk, doctor)

        report = PatientReport.objects.get(pk=final_report.pk)
        assert report.current_version == 2
        assert ReportVersion.objects.filter(report=report).count() == 2
        assert _active_versions(report).count() == 1

    def test_queued_request_keeps_report_pending(self, workflow, final_report, approved_amendment, nurse, doctor):
        queued = workflow.create_amendment(final_report.pk, 'notes', {'additional_notes': 'Allergic to penicillin'}, nurse)

        workflow.apply_amendment(final_report.pk, approved_amendment.pk, doctor)

        report = PatientReport.objects.get(pk=final_report.pk)
        assert report.amendment_status == ReportAmendmentStatusChoices.PENDING
        queued.refresh_from_db()
        assert queued.status == AmendmentStatusChoices.PENDING

    def test_store_timeout_surfaces_as_unavailable(self, workflow, final_report, approved_amendment, doctor):
        with patch.object(
            PatientReport.objects, 'select_for_update',
            side_effect=OperationalError('canceling statement due to lock timeout')
        ):
            with pytest.raises(UnavailableError) as exc_info:
                workflow.apply_amendment(final_report.pk, approved_amendment.pk, doctor)

        assert exc_info.value.retryable is True
        approved_amendment.refresh_from_db()
        assert approved_amendment.status == AmendmentStatusChoices.APPROVED
        assert PatientReport.objects.get(pk=final_report.pk).current_version == 1

    def test_notification_failure_does_not_break_apply(
        self, workflow, notifier, final_report, approved_amendment, doctor, django_capture_on_commit_callbacks
    ):
        notifier.notify.side_effect = RuntimeError('SMTP relay down')
        failures = metrics.sample(
            'report_notifications_total', {'event': 'amendment.applied', 'result': 'failure'}
        )

        with django_capture_on_commit_callbacks(execute=True):
            report = workflow.apply_amendment(final_report.pk, approved_amendment.pk, doctor)

        assert report.current_version == 2
        notifier.notify.assert_called_once_with(
            'nurse-1',
            'amendment.applied',
            {
                'report_id': str(final_report.pk),
                'amendment_id': str(approved_amendment.pk),
                'status': 'applied',
                'version_number': 2,
            },
        )
        assert metrics.sample(
            'report_notifications_total', {'event': 'amendment.applied', 'result': 'failure'}
        ) == failures + 1

    def test_nothing_is_notified_when_apply_fails(
        self, workflow, notifier, final_report, nurse, doctor, django_capture_on_commit_callbacks
    ):
        amendment = workflow.create_amendment(final_report.pk, 'fix', {'diagnosis.primary': 'Pneumonia'}, nurse)

        with django_capture_on_commit_callbacks(execute=True) as callbacks:
            with pytest.raises(InvalidStateError):
                workflow.apply_amendment(final_report.pk, amendment.pk, doctor)

        assert callbacks == []


@pytest.mark.django_db
class TestAuditTrail:

    def test_every_transition_is_audited(self, workflow, final_report, approved_amendment, doctor):
        workflow.apply_amendment(final_report.pk, approved_amendment.pk, doctor)

        actions = list(
            ReportAuditLog.objects.filter(report_id=final_report.pk)
            .order_by('created_at')
            .values_list('action', flat=True)
        )
        assert actions == [
            'report_finalized',
            'amendment_created',
            'amendment_approved',
            'amendment_applied',
        ]

        applied = ReportAuditLog.objects.get(report_id=final_report.pk, action='amendment_applied')
        assert applied.actor_id == 'doctor-1'
        assert applied.actor_role == 'doctor'
        assert applied.from_state == 'approved'
        assert applied.to_state == 'applied'
        assert applied.metadata == {
            'changed_fields': ['diagnosis.primary'],
            'from_version': 1,
            'to_version': 2,
        }

    def test_audit_metadata_holds_no_medical_content(self, workflow, final_report, nurse):
        workflow.create_amendment(final_report.pk, 'Secret reason', {'diagnosis.primary': 'Pneumonia'}, nurse)

        created = ReportAuditLog.objects.get(report_id=final_report.pk, action='amendment_created')
        assert 'Pneumonia' not in str(created.metadata)
        assert 'Secret reason' not in str(created.metadata)

    def test_transitions_are_counted(self, workflow, final_report, approved_amendment, doctor):
        labels = {'from_status': 'approved', 'to_status': 'applied', 'result': 'success'}
        before = metrics.sample('report_amendment_transitions_total', labels)

        workflow.apply_amendment(final_report.pk, approved_amendment.pk, doctor)

        assert metrics.sample('report_amendment_transitions_total', labels) == before + 1

    def test_refused_transitions_are_counted(self, workflow, final_report, nurse):
        labels = {'from_status': 'none', 'to_status': 'pending', 'result': 'validation_error'}
        before = metrics.sample('report_amendment_transitions_total', labels)

        with pytest.raises(ValidationError):
            workflow.create_amendment(final_report.pk, 'fix', {'diagnosis.primary': 'Flu'}, nurse)

        assert metrics.sample('report_amendment_transitions_total', labels) == before + 1
