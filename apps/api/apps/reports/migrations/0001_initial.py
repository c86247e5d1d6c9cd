# Generated migration for reports app: patient reports, amendments, versions, audit

import uuid

import django.db.models.deletion
import django.utils.timezone
from django.db import migrations, models

import apps.reports.models


ROLE_CHOICES = [('doctor', 'Doctor'), ('nurse', 'Nurse'), ('admin', 'Admin')]


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        # PatientReport
        migrations.CreateModel(
            name='PatientReport',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('appointment_id', models.CharField(blank=True, max_length=64, null=True)),
                ('patient_id', models.CharField(max_length=128)),
                ('patient_name', models.CharField(max_length=255)),
                ('doctor_id', models.CharField(max_length=128)),
                ('doctor_name', models.CharField(blank=True, default='', max_length=255)),
                ('status', models.CharField(
                    choices=[
                        ('draft', 'Draft'),
                        ('final', 'Final'),
                        ('archived', 'Archived'),
                        ('under_review', 'Under Review'),
                        ('ready_for_submission', 'Ready for Submission'),
                        ('submitted', 'Submitted'),
                    ],
                    default='draft',
                    max_length=30,
                )),
                ('priority', models.CharField(
                    choices=[('low', 'Low'), ('normal', 'Normal'), ('high', 'High'), ('urgent', 'Urgent')],
                    default='normal',
                    max_length=10,
                )),
                ('patient_complaint', models.TextField(blank=True, default='')),
                ('history_present', models.TextField(blank=True, default='')),
                ('history_past', models.TextField(blank=True, null=True)),
                ('diagnosis', models.JSONField(default=apps.reports.models.empty_diagnosis)),
                ('additional_notes', models.TextField(blank=True, null=True)),
                ('follow_up_instructions', models.TextField(blank=True, null=True)),
                ('current_version', models.PositiveIntegerField(default=1)),
                ('amendment_status', models.CharField(
                    choices=[('none', 'None'), ('pending', 'Pending'), ('approved', 'Approved'), ('rejected', 'Rejected')],
                    default='none',
                    max_length=10,
                )),
                ('row_version', models.PositiveIntegerField(default=1)),
                ('finalized_at', models.DateTimeField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'verbose_name': 'Patient Report',
                'verbose_name_plural': 'Patient Reports',
                'db_table': 'patient_report',
                'indexes': [
                    models.Index(fields=['patient_id'], name='idx_report_patient'),
                    models.Index(fields=['doctor_id'], name='idx_report_doctor'),
                    models.Index(fields=['status'], name='idx_report_status'),
                    models.Index(fields=['amendment_status'], name='idx_report_amendment_status'),
                ],
            },
        ),

        # AmendmentRequest
        migrations.CreateModel(
            name='AmendmentRequest',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('reason', models.TextField()),
                ('proposed_changes', models.JSONField(default=dict)),
                ('status', models.CharField(
                    choices=[('pending', 'Pending'), ('approved', 'Approved'), ('rejected', 'Rejected'), ('applied', 'Applied')],
                    default='pending',
                    max_length=10,
                )),
                ('requested_by', models.CharField(max_length=128)),
                ('requested_by_role', models.CharField(choices=ROLE_CHOICES, max_length=10)),
                ('request_date', models.DateTimeField(default=django.utils.timezone.now)),
                ('deadline', models.DateTimeField(blank=True, null=True)),
                ('reviewed_by', models.CharField(blank=True, max_length=128, null=True)),
                ('reviewed_by_role', models.CharField(blank=True, choices=ROLE_CHOICES, max_length=10, null=True)),
                ('review_date', models.DateTimeField(blank=True, null=True)),
                ('review_comments', models.TextField(blank=True, null=True)),
                ('applied_by', models.CharField(blank=True, max_length=128, null=True)),
                ('applied_at', models.DateTimeField(blank=True, null=True)),
                ('applied_version', models.PositiveIntegerField(blank=True, null=True)),
                ('report', models.ForeignKey(
                    on_delete=django.db.models.deletion.PROTECT,
                    related_name='amendment_requests',
                    to='reports.patientreport',
                )),
            ],
            options={
                'verbose_name': 'Amendment Request',
                'verbose_name_plural': 'Amendment Requests',
                'db_table': 'report_amendment_request',
                'ordering': ['request_date'],
                'indexes': [
                    models.Index(fields=['report', 'status'], name='idx_amendment_report_status'),
                    models.Index(fields=['status'], name='idx_amendment_status'),
                ],
                'constraints': [
                    models.UniqueConstraint(
                        condition=models.Q(status='pending'),
                        fields=('report',),
                        name='uniq_pending_amendment_per_report',
                    ),
                ],
            },
        ),

        # ReportVersion
        migrations.CreateModel(
            name='ReportVersion',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('version_number', models.PositiveIntegerField()),
                ('timestamp', models.DateTimeField(default=django.utils.timezone.now)),
                ('created_by', models.CharField(max_length=128)),
                ('created_by_role', models.CharField(choices=ROLE_CHOICES, max_length=10)),
                ('reason', models.TextField()),
                ('changes', models.JSONField(default=dict)),
                ('snapshot', models.JSONField(default=dict)),
                ('is_active', models.BooleanField(default=True)),
                ('amendment', models.OneToOneField(
                    blank=True,
                    null=True,
                    on_delete=django.db.models.deletion.PROTECT,
                    related_name='produced_version',
                    to='reports.amendmentrequest',
                )),
                ('parent_version', models.ForeignKey(
                    blank=True,
                    null=True,
                    on_delete=django.db.models.deletion.PROTECT,
                    related_name='child_versions',
                    to='reports.reportversion',
                )),
                ('report', models.ForeignKey(
                    on_delete=django.db.models.deletion.PROTECT,
                    related_name='versions',
                    to='reports.patientreport',
                )),
            ],
            options={
                'verbose_name': 'Report Version',
                'verbose_name_plural': 'Report Versions',
                'db_table': 'report_version',
                'ordering': ['report', 'version_number'],
                'constraints': [
                    models.UniqueConstraint(fields=('report', 'version_number'), name='uniq_report_version_number'),
                    models.UniqueConstraint(
                        condition=models.Q(is_active=True),
                        fields=('report',),
                        name='uniq_active_version_per_report',
                    ),
                ],
            },
        ),

        # ReportAuditLog
        migrations.CreateModel(
            name='ReportAuditLog',
            fields=[
                ('id', models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('actor_id', models.CharField(max_length=128)),
                ('actor_role', models.CharField(choices=ROLE_CHOICES, max_length=10)),
                ('action', models.CharField(
                    choices=[
                        ('report_finalized', 'Report Finalized'),
                        ('report_ready_for_submission', 'Report Ready for Submission'),
                        ('draft_updated', 'Draft Updated'),
                        ('amendment_created', 'Amendment Created'),
                        ('amendment_approved', 'Amendment Approved'),
                        ('amendment_rejected', 'Amendment Rejected'),
                        ('amendment_superseded', 'Amendment Superseded'),
                        ('amendment_applied', 'Amendment Applied'),
                    ],
                    max_length=30,
                )),
                ('from_state', models.CharField(blank=True, default='', max_length=30)),
                ('to_state', models.CharField(blank=True, default='', max_length=30)),
                ('metadata', models.JSONField(default=dict)),
                ('amendment', models.ForeignKey(
                    blank=True,
                    null=True,
                    on_delete=django.db.models.deletion.SET_NULL,
                    related_name='audit_logs',
                    to='reports.amendmentrequest',
                )),
                ('report', models.ForeignKey(
                    on_delete=django.db.models.deletion.CASCADE,
                    related_name='audit_logs',
                    to='reports.patientreport',
                )),
            ],
            options={
                'verbose_name': 'Report Audit Log',
                'verbose_name_plural': 'Report Audit Logs',
                'db_table': 'report_audit_log',
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['created_at'], name='idx_report_audit_created_at'),
                    models.Index(fields=['actor_id'], name='idx_report_audit_actor'),
                    models.Index(fields=['action'], name='idx_report_audit_action'),
                ],
            },
        ),
    ]
