"""
Report facade: the single entry point for views, tasks and other apps.

Delegates to the workflow and the stores. The only logic here is turning
a missing report or amendment into NotFoundError before delegating.
"""
from typing import Any, List, Mapping, Optional

from .actors import Actor
from .diff import FieldChange
from .models import AmendmentRequest, PatientReport, ReportVersion
from .services import AmendmentWorkflow


class ReportFacade:

    def __init__(self, workflow: Optional[AmendmentWorkflow] = None):
        self.workflow = workflow or AmendmentWorkflow()

    @property
    def reports(self):
        return self.workflow.reports

    @property
    def amendments(self):
        return self.workflow.amendments

    @property
    def versions(self):
        return self.workflow.versions

    # Reads

    def get_report(self, report_id) -> PatientReport:
        return self.reports.load_report(report_id)

    def get_amendment(self, amendment_id) -> AmendmentRequest:
        return self.amendments.get(amendment_id)

    def get_version_history(self, report_id) -> List[ReportVersion]:
        report = self.reports.load_report(report_id)
        return self.versions.list_versions(report.pk)

    def get_pending_amendment(self, report_id) -> Optional[AmendmentRequest]:
        report = self.reports.load_report(report_id)
        return self.amendments.pending_for_report(report.pk)

    def list_amendments(self, report_id) -> List[AmendmentRequest]:
        report = self.reports.load_report(report_id)
        return self.amendments.list_by_report(report.pk)

    def list_pending_amendments(self, overdue_only: bool = False) -> List[AmendmentRequest]:
        return self.amendments.list_pending(overdue_only=overdue_only)

    # Writes

    def create_amendment(
        self,
        report_id,
        reason: str,
        field_values: Mapping[str, Any],
        actor: Actor,
        deadline=None,
        supersede: bool = False,
    ) -> AmendmentRequest:
        return self.workflow.create_amendment(
            report_id, reason, field_values, actor, deadline=deadline, supersede=supersede
        )

    def review_amendment(self, amendment_id, decision: str, comments: Optional[str], actor: Actor) -> AmendmentRequest:
        return self.workflow.review_amendment(amendment_id, decision, comments, actor)

    def apply_amendment(self, report_id, amendment_id, actor: Actor) -> PatientReport:
        self.reports.load_report(report_id)
        self.amendments.get(amendment_id)
        return self.workflow.apply_amendment(report_id, amendment_id, actor)

    def update_draft(self, report_id, field_values: Mapping[str, Any], actor: Actor) -> List[FieldChange]:
        return self.workflow.update_draft(report_id, field_values, actor)

    def finalize_report(self, report_id, actor: Actor) -> PatientReport:
        return self.workflow.finalize_report(report_id, actor)

    def mark_ready_for_submission(self, report_id, actor: Actor) -> PatientReport:
        return self.workflow.mark_ready_for_submission(report_id, actor)
