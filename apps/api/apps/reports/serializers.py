"""Reports serializers."""
from rest_framework import serializers

from .diff import changes_from_dict
from .models import AmendmentRequest, PatientReport, ReportVersion


def _change_list(mapping):
    """Persisted {field: {from, to}} as labelled entries in field order."""
    return [change.as_dict() for change in changes_from_dict(mapping or {})]


class PatientReportSerializer(serializers.ModelSerializer):
    class Meta:
        model = PatientReport
        fields = [
            'id', 'appointment_id', 'patient_id', 'patient_name', 'doctor_id', 'doctor_name',
            'status', 'priority',
            'patient_complaint', 'history_present', 'history_past', 'diagnosis',
            'additional_notes', 'follow_up_instructions',
            'current_version', 'amendment_status', 'row_version',
            'finalized_at', 'created_at', 'updated_at',
        ]
        read_only_fields = fields


class AmendmentRequestSerializer(serializers.ModelSerializer):
    """
    Amendment request with its change set.

    `changes` is the labelled list form of `proposed_changes`, in editable
    field order.
    """
    report_id = serializers.UUIDField(read_only=True)
    changes = serializers.SerializerMethodField()
    is_overdue = serializers.BooleanField(read_only=True)

    class Meta:
        model = AmendmentRequest
        fields = [
            'id', 'report_id', 'reason', 'proposed_changes', 'changes', 'status',
            'requested_by', 'requested_by_role', 'request_date', 'deadline', 'is_overdue',
            'reviewed_by', 'reviewed_by_role', 'review_date', 'review_comments',
            'applied_by', 'applied_at', 'applied_version',
        ]
        read_only_fields = fields

    def get_changes(self, obj):
        return _change_list(obj.proposed_changes)


class ReportVersionSerializer(serializers.ModelSerializer):
    amendment_id = serializers.UUIDField(read_only=True, allow_null=True)
    parent_version_number = serializers.SerializerMethodField()
    change_list = serializers.SerializerMethodField()

    class Meta:
        model = ReportVersion
        fields = [
            'id', 'version_number', 'timestamp', 'created_by', 'created_by_role', 'reason',
            'changes', 'change_list', 'snapshot', 'is_active', 'parent_version_number', 'amendment_id',
        ]
        read_only_fields = fields

    def get_parent_version_number(self, obj):
        return obj.parent_version.version_number if obj.parent_version_id else None

    def get_change_list(self, obj):
        return _change_list(obj.changes)


class FieldValuesField(serializers.DictField):
    """Proposed values keyed by editable field path (e.g. 'diagnosis.primary')."""

    def __init__(self, **kwargs):
        super().__init__(child=serializers.JSONField(), **kwargs)


class AmendmentCreateSerializer(serializers.Serializer):
    """
    Input for POST /reports/{id}/amendments/.

    Blank reasons and unknown fields pass through so that the workflow
    reports them with its own error codes.
    """
    reason = serializers.CharField(allow_blank=True)
    changes = FieldValuesField()
    deadline = serializers.DateTimeField(required=False, allow_null=True)
    supersede = serializers.BooleanField(required=False, default=False)


class AmendmentReviewSerializer(serializers.Serializer):
    decision = serializers.ChoiceField(choices=['approve', 'reject'])
    comments = serializers.CharField(required=False, allow_blank=True, allow_null=True)


class DraftUpdateSerializer(serializers.Serializer):
    changes = FieldValuesField()
