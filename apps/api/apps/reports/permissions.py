"""
DRF permission classes for patient reports.

Identity comes from authentication; the clinical role is the user's Django
group (doctor, nurse or admin). Users without one of these groups cannot
use the reports API.
"""
from rest_framework import permissions

from apps.core.observability.correlation import bind_actor

from .actors import Actor


class HasClinicalRole(permissions.BasePermission):
    """
    Allow users holding a doctor, nurse or admin group.

    Resolves the Actor once and stores it on the request as `request.actor`.
    """

    message = 'Access to patient reports requires a doctor, nurse or admin role.'

    def has_permission(self, request, view):
        if not request.user or not request.user.is_authenticated:
            return False

        actor = Actor.from_user(request.user)
        if actor is None:
            return False

        request.actor = actor
        bind_actor(actor.actor_id, actor.role)
        return True
