from django.contrib import admin

from .models import AmendmentRequest, PatientReport, ReportAuditLog, ReportVersion


class ReadOnlyAdminMixin:
    """History tables are written by the workflow only."""

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(PatientReport)
class PatientReportAdmin(admin.ModelAdmin):
    list_display = ['id', 'patient_name', 'doctor_name', 'status', 'current_version', 'amendment_status', 'updated_at']
    list_filter = ['status', 'amendment_status', 'priority']
    search_fields = ['patient_name', 'patient_id', 'doctor_id', 'appointment_id']
    readonly_fields = [
        'id', 'current_version', 'amendment_status', 'row_version',
        'finalized_at', 'created_at', 'updated_at'
    ]

    fieldsets = (
        ('Identification', {
            'fields': ('id', 'appointment_id', 'patient_id', 'patient_name', 'doctor_id', 'doctor_name')
        }),
        ('Status', {
            'fields': ('status', 'priority', 'current_version', 'amendment_status', 'finalized_at')
        }),
        ('Medical Content', {
            'fields': (
                'patient_complaint', 'history_present', 'history_past', 'diagnosis',
                'additional_notes', 'follow_up_instructions'
            )
        }),
        ('Audit', {
            'fields': ('row_version', 'created_at', 'updated_at')
        }),
    )

    def get_readonly_fields(self, request, obj=None):
        # Finalized content only changes through amendments
        readonly = list(super().get_readonly_fields(request, obj))
        if obj is not None and obj.is_finalized:
            readonly += [
                'status', 'patient_complaint', 'history_present', 'history_past', 'diagnosis',
                'additional_notes', 'follow_up_instructions'
            ]
        return readonly


@admin.register(AmendmentRequest)
class AmendmentRequestAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = ['id', 'report', 'status', 'requested_by', 'request_date', 'deadline', 'applied_version']
    list_filter = ['status', 'requested_by_role']
    search_fields = ['report__id', 'requested_by', 'reviewed_by']
    date_hierarchy = 'request_date'


@admin.register(ReportVersion)
class ReportVersionAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = ['report', 'version_number', 'is_active', 'created_by', 'created_by_role', 'timestamp']
    list_filter = ['is_active', 'created_by_role']
    search_fields = ['report__id', 'created_by']


@admin.register(ReportAuditLog)
class ReportAuditLogAdmin(ReadOnlyAdminMixin, admin.ModelAdmin):
    list_display = ['created_at', 'action', 'report', 'actor_id', 'actor_role', 'from_state', 'to_state']
    list_filter = ['action', 'actor_role']
    search_fields = ['report__id', 'actor_id']
    date_hierarchy = 'created_at'
