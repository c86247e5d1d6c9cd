"""
Global test fixtures for pytest.

Provides reusable fixtures for report amendment tests:
- Users and authenticated API clients by clinical role
- Actors, an injectable notifier and the workflow/facade under test
- Draft and finalized reports
"""
from unittest.mock import Mock

import pytest
from django.contrib.auth.models import Group, User
from rest_framework.test import APIClient

from apps.reports.actors import Actor
from apps.reports.facade import ReportFacade
from apps.reports.models import PatientReport
from apps.reports.notifications import Notifier
from apps.reports.services import AmendmentWorkflow


def _create_user(username, group_name=None):
    user = User.objects.create_user(
        username=username,
        email=f'{username}@test.com',
        password='testpass123',
        is_active=True
    )
    if group_name:
        group, _ = Group.objects.get_or_create(name=group_name)
        user.groups.add(group)
    return user


# ============================================================================
# Users & API Clients
# ============================================================================

@pytest.fixture
def api_client():
    """Unauthenticated DRF API client."""
    return APIClient()


@pytest.fixture
def doctor_user(db):
    return _create_user('dr_house', 'doctor')


@pytest.fixture
def nurse_user(db):
    return _create_user('nurse_joy', 'nurse')


@pytest.fixture
def no_role_user(db):
    """Authenticated user without a clinical group."""
    return _create_user('receptionist')


@pytest.fixture
def doctor_client(doctor_user):
    client = APIClient()
    client.force_authenticate(user=doctor_user)
    return client


@pytest.fixture
def nurse_client(nurse_user):
    client = APIClient()
    client.force_authenticate(user=nurse_user)
    return client


@pytest.fixture
def no_role_client(no_role_user):
    client = APIClient()
    client.force_authenticate(user=no_role_user)
    return client


# ============================================================================
# Workflow
# ============================================================================

@pytest.fixture
def doctor():
    return Actor(actor_id='doctor-1', role='doctor')


@pytest.fixture
def nurse():
    return Actor(actor_id='nurse-1', role='nurse')


@pytest.fixture
def notifier():
    """Notifier double; calls only happen once the transaction commits."""
    return Mock(spec=Notifier)


@pytest.fixture
def workflow(notifier):
    return AmendmentWorkflow(notifier=notifier)


@pytest.fixture
def facade(workflow):
    return ReportFacade(workflow=workflow)


# ============================================================================
# Reports
# ============================================================================

@pytest.fixture
def make_report(db):
    """Factory for draft reports with realistic content."""
    def _make(**overrides):
        values = {
            'patient_id': 'patient-001',
            'patient_name': 'Ana Popescu',
            'doctor_id': 'doctor-1',
            'doctor_name': 'Dr. Ionescu',
            'patient_complaint': 'Fever and cough for three days',
            'history_present': 'Onset after travel',
            'diagnosis': {'primary': 'Flu', 'secondary': ['Cough', 'Fever']},
            'follow_up_instructions': 'Rest and fluids',
        }
        values.update(overrides)
        return PatientReport.objects.create(**values)
    return _make


@pytest.fixture
def draft_report(make_report):
    return make_report()


@pytest.fixture
def final_report(draft_report, workflow, doctor):
    """Finalized report with baseline version 1."""
    return workflow.finalize_report(draft_report.pk, doctor)


@pytest.fixture
def approved_amendment(final_report, workflow, doctor, nurse):
    """Approved request changing diagnosis.primary from Flu to Pneumonia."""
    amendment = workflow.create_amendment(
        final_report.pk,
        'Corrected diagnosis after X-ray',
        {'diagnosis.primary': 'Pneumonia'},
        nurse,
    )
    return workflow.review_amendment(amendment.pk, 'approve', 'Confirmed by imaging', doctor)
