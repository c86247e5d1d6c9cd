"""
Report models: patient_report, amendment_request, report_version, report_audit_log.

A finalized report is only changed through an approved amendment. Every
applied amendment produces an immutable ReportVersion.
"""
import uuid

from django.db import models
from django.db.models import Q
from django.utils import timezone

from .actors import ActorRoleChoices


# ============================================================================
# Enums
# ============================================================================

class ReportStatusChoices(models.TextChoices):
    """Report lifecycle status"""
    DRAFT = 'draft', 'Draft'
    FINAL = 'final', 'Final'
    ARCHIVED = 'archived', 'Archived'
    UNDER_REVIEW = 'under_review', 'Under Review'
    READY_FOR_SUBMISSION = 'ready_for_submission', 'Ready for Submission'
    SUBMITTED = 'submitted', 'Submitted'


class ReportPriorityChoices(models.TextChoices):
    LOW = 'low', 'Low'
    NORMAL = 'normal', 'Normal'
    HIGH = 'high', 'High'
    URGENT = 'urgent', 'Urgent'


class ReportAmendmentStatusChoices(models.TextChoices):
    """Amendment status mirrored on the report"""
    NONE = 'none', 'None'
    PENDING = 'pending', 'Pending'
    APPROVED = 'approved', 'Approved'
    REJECTED = 'rejected', 'Rejected'


class AmendmentStatusChoices(models.TextChoices):
    """
    Amendment request status with allowed transitions:
    - pending -> approved | rejected
    - approved -> applied
    - rejected, applied are terminal states
    """
    PENDING = 'pending', 'Pending'
    APPROVED = 'approved', 'Approved'
    REJECTED = 'rejected', 'Rejected'
    APPLIED = 'applied', 'Applied'


class ReportAuditActionChoices(models.TextChoices):
    """Report audit log action types"""
    REPORT_FINALIZED = 'report_finalized', 'Report Finalized'
    REPORT_READY = 'report_ready_for_submission', 'Report Ready for Submission'
    DRAFT_UPDATED = 'draft_updated', 'Draft Updated'
    AMENDMENT_CREATED = 'amendment_created', 'Amendment Created'
    AMENDMENT_APPROVED = 'amendment_approved', 'Amendment Approved'
    AMENDMENT_REJECTED = 'amendment_rejected', 'Amendment Rejected'
    AMENDMENT_SUPERSEDED = 'amendment_superseded', 'Amendment Superseded'
    AMENDMENT_APPLIED = 'amendment_applied', 'Amendment Applied'


def empty_diagnosis():
    return {'primary': '', 'secondary': []}


# ============================================================================
# Models
# ============================================================================

class PatientReport(models.Model):
    """
    Current projection of a patient consultation report.

    - current_version: number of the active ReportVersion (starts at 1)
    - amendment_status: status of the latest amendment request
    - row_version: optimistic locking token, bumped on every save
    - diagnosis: {"primary": str, "secondary": [str], "confidence"?, "notes"?}
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    appointment_id = models.CharField(max_length=64, blank=True, null=True)
    patient_id = models.CharField(max_length=128)
    patient_name = models.CharField(max_length=255)
    doctor_id = models.CharField(max_length=128)
    doctor_name = models.CharField(max_length=255, blank=True, default='')

    status = models.CharField(
        max_length=30,
        choices=ReportStatusChoices.choices,
        default=ReportStatusChoices.DRAFT
    )
    priority = models.CharField(
        max_length=10,
        choices=ReportPriorityChoices.choices,
        default=ReportPriorityChoices.NORMAL
    )

    # Editable medical content
    patient_complaint = models.TextField(blank=True, default='')
    history_present = models.TextField(blank=True, default='')
    history_past = models.TextField(blank=True, null=True)
    diagnosis = models.JSONField(default=empty_diagnosis)
    additional_notes = models.TextField(blank=True, null=True)
    follow_up_instructions = models.TextField(blank=True, null=True)

    # Versioning & amendments
    current_version = models.PositiveIntegerField(default=1)
    amendment_status = models.CharField(
        max_length=10,
        choices=ReportAmendmentStatusChoices.choices,
        default=ReportAmendmentStatusChoices.NONE
    )

    # Concurrency control
    row_version = models.PositiveIntegerField(default=1)

    finalized_at = models.DateTimeField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'patient_report'
        verbose_name = 'Patient Report'
        verbose_name_plural = 'Patient Reports'
        indexes = [
            models.Index(fields=['patient_id'], name='idx_report_patient'),
            models.Index(fields=['doctor_id'], name='idx_report_doctor'),
            models.Index(fields=['status'], name='idx_report_status'),
            models.Index(fields=['amendment_status'], name='idx_report_amendment_status'),
        ]

    def __str__(self):
        return f"Report {str(self.id)[:8]} - {self.patient_name} (v{self.current_version})"

    @property
    def is_finalized(self):
        return self.status != ReportStatusChoices.DRAFT


class AmendmentRequest(models.Model):
    """
    Proposal to change one or more editable fields of a finalized report.

    proposed_changes: {"<field path>": {"from": <value>, "to": <value>}}
    Never edited once approved, rejected or applied.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    report = models.ForeignKey(
        'PatientReport',
        on_delete=models.PROTECT,
        related_name='amendment_requests'
    )
    reason = models.TextField()
    proposed_changes = models.JSONField(default=dict)
    status = models.CharField(
        max_length=10,
        choices=AmendmentStatusChoices.choices,
        default=AmendmentStatusChoices.PENDING
    )

    requested_by = models.CharField(max_length=128)
    requested_by_role = models.CharField(max_length=10, choices=ActorRoleChoices.choices)
    request_date = models.DateTimeField(default=timezone.now)
    deadline = models.DateTimeField(blank=True, null=True)

    reviewed_by = models.CharField(max_length=128, blank=True, null=True)
    reviewed_by_role = models.CharField(
        max_length=10,
        choices=ActorRoleChoices.choices,
        blank=True,
        null=True
    )
    review_date = models.DateTimeField(blank=True, null=True)
    review_comments = models.TextField(blank=True, null=True)

    applied_by = models.CharField(max_length=128, blank=True, null=True)
    applied_at = models.DateTimeField(blank=True, null=True)
    applied_version = models.PositiveIntegerField(blank=True, null=True)

    class Meta:
        db_table = 'report_amendment_request'
        verbose_name = 'Amendment Request'
        verbose_name_plural = 'Amendment Requests'
        ordering = ['request_date']
        indexes = [
            models.Index(fields=['report', 'status'], name='idx_amendment_report_status'),
            models.Index(fields=['status'], name='idx_amendment_status'),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=['report'],
                condition=Q(status='pending'),
                name='uniq_pending_amendment_per_report'
            ),
        ]

    def __str__(self):
        return f"Amendment {str(self.id)[:8]} on report {str(self.report_id)[:8]} ({self.status})"

    @property
    def is_resolved(self):
        return self.status != AmendmentStatusChoices.PENDING

    @property
    def is_overdue(self):
        return (
            self.status == AmendmentStatusChoices.PENDING
            and self.deadline is not None
            and self.deadline < timezone.now()
        )


class ReportVersion(models.Model):
    """
    Immutable snapshot of one report state transition.

    Version 1 is the baseline written at finalization (empty changes).
    Exactly one version per report has is_active=True.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    report = models.ForeignKey(
        'PatientReport',
        on_delete=models.PROTECT,
        related_name='versions'
    )
    version_number = models.PositiveIntegerField()
    timestamp = models.DateTimeField(default=timezone.now)
    created_by = models.CharField(max_length=128)
    created_by_role = models.CharField(max_length=10, choices=ActorRoleChoices.choices)
    reason = models.TextField()
    changes = models.JSONField(default=dict)
    snapshot = models.JSONField(default=dict)
    is_active = models.BooleanField(default=True)
    parent_version = models.ForeignKey(
        'self',
        on_delete=models.PROTECT,
        blank=True,
        null=True,
        related_name='child_versions'
    )
    amendment = models.OneToOneField(
        'AmendmentRequest',
        on_delete=models.PROTECT,
        blank=True,
        null=True,
        related_name='produced_version'
    )

    class Meta:
        db_table = 'report_version'
        verbose_name = 'Report Version'
        verbose_name_plural = 'Report Versions'
        ordering = ['report', 'version_number']
        constraints = [
            models.UniqueConstraint(
                fields=['report', 'version_number'],
                name='uniq_report_version_number'
            ),
            models.UniqueConstraint(
                fields=['report'],
                condition=Q(is_active=True),
                name='uniq_active_version_per_report'
            ),
        ]

    def __str__(self):
        active = ' active' if self.is_active else ''
        return f"Report {str(self.report_id)[:8]} v{self.version_number}{active}"


class ReportAuditLog(models.Model):
    """
    Audit trail of workflow transitions, independent of the version history.

    metadata holds field names, version numbers and decision details.
    Never free-text medical content.
    """
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    created_at = models.DateTimeField(auto_now_add=True)
    actor_id = models.CharField(max_length=128)
    actor_role = models.CharField(max_length=10, choices=ActorRoleChoices.choices)
    action = models.CharField(max_length=30, choices=ReportAuditActionChoices.choices)
    report = models.ForeignKey(
        'PatientReport',
        on_delete=models.CASCADE,
        related_name='audit_logs'
    )
    amendment = models.ForeignKey(
        'AmendmentRequest',
        on_delete=models.SET_NULL,
        blank=True,
        null=True,
        related_name='audit_logs'
    )
    from_state = models.CharField(max_length=30, blank=True, default='')
    to_state = models.CharField(max_length=30, blank=True, default='')
    metadata = models.JSONField(default=dict)

    class Meta:
        db_table = 'report_audit_log'
        verbose_name = 'Report Audit Log'
        verbose_name_plural = 'Report Audit Logs'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['created_at'], name='idx_report_audit_created_at'),
            models.Index(fields=['actor_id'], name='idx_report_audit_actor'),
            models.Index(fields=['action'], name='idx_report_audit_action'),
        ]

    def __str__(self):
        return f"{self.action} on report[{str(self.report_id)[:8]}] by {self.actor_id}"


# ============================================================================
# Audit Helper Functions
# ============================================================================

def log_report_audit(
    actor,
    report,
    action,
    amendment=None,
    from_state='',
    to_state='',
    changed_fields=None,
    **metadata
):
    """
    Create a report audit log entry.

    Args:
        actor: Actor performing the action
        report: PatientReport (or its id)
        action: ReportAuditActionChoices value
        amendment: AmendmentRequest involved, if any
        from_state: State before the transition
        to_state: State after the transition
        changed_fields: List of field paths touched
        **metadata: Extra non-PHI details (version numbers, decision, ...)

    Returns:
        ReportAuditLog instance
    """
    if changed_fields:
        metadata['changed_fields'] = list(changed_fields)

    report_id = report.pk if isinstance(report, PatientReport) else report

    return ReportAuditLog.objects.create(
        actor_id=actor.actor_id,
        actor_role=actor.role,
        action=action,
        report_id=report_id,
        amendment=amendment,
        from_state=from_state or '',
        to_state=to_state or '',
        metadata=metadata
    )
