"""
Caller identity for workflow operations.

Identity and role are resolved upstream; the workflow only records them.
"""
from dataclasses import dataclass

from django.db import models


class ActorRoleChoices(models.TextChoices):
    """Roles allowed to act on patient reports"""
    DOCTOR = 'doctor', 'Doctor'
    NURSE = 'nurse', 'Nurse'
    ADMIN = 'admin', 'Admin'


@dataclass(frozen=True)
class Actor:
    actor_id: str
    role: str = ActorRoleChoices.DOCTOR

    def __post_init__(self):
        if self.role not in ActorRoleChoices.values:
            raise ValueError(f"Unknown actor role '{self.role}'")

    @classmethod
    def from_user(cls, user):
        """
        Build an Actor from an authenticated Django user.

        The role is the first of the user's groups that matches a known
        role, checked in ActorRoleChoices order. Returns None when the user
        holds no clinical role.
        """
        if user is None or not user.is_authenticated:
            return None
        group_names = set(user.groups.values_list('name', flat=True))
        for role in ActorRoleChoices.values:
            if role in group_names:
                return cls(actor_id=str(user.pk), role=role)
        return None
