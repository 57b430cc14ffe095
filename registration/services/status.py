"""
Registration status derived from task state.

``SubjectProfile.registration_status`` is only a cached hint.  Whether a
subject is fully registered is always re-derived here from the task
rows, so a stale or prematurely written flag can never report
completion while work is still outstanding.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, Optional

from django.conf import settings
from django.utils import timezone

from ..models import CareTeamAssignment, RegistrationTask, SubjectProfile, User
from .tasks import PATIENT_TASKS, PROFESSIONAL_TASKS, tasks_for_subject

PAYMENT_PENDING = 'payment_pending'
PAYMENT_COMPLETE = 'payment_complete'
CARE_TEAM_ASSIGNED = 'care_team_assigned'
FULLY_REGISTERED = 'fully_registered'


@dataclass
class RegistrationStatusView:
    subject_id: int
    registration_status: str
    tasks: list = field(default_factory=list)
    stuck_tasks: list = field(default_factory=list)
    stored_status: Optional[str] = None

    @property
    def is_complete(self) -> bool:
        return self.registration_status == FULLY_REGISTERED

    def to_dict(self) -> dict:
        return {
            'subjectId': self.subject_id,
            'registrationStatus': self.registration_status,
            'isComplete': self.is_complete,
            'storedStatus': self.stored_status,
            'tasks': [t.to_dict() for t in self.tasks],
            'stuckTasks': [t.task_type for t in self.stuck_tasks],
        }


def required_task_types(subject: User) -> frozenset:
    tasks = PROFESSIONAL_TASKS if subject.is_professional else PATIENT_TASKS
    return frozenset(task_type for task_type, _ in tasks)


def derive_registration_status(
    task_statuses: Mapping[str, str],
    *,
    required: frozenset,
    payment_complete: bool,
    has_nutritionist: bool = True,
    require_nutritionist: bool = False,
) -> str:
    done = {t for t, s in task_statuses.items() if s == RegistrationTask.STATUS_COMPLETED}
    care_team_done = RegistrationTask.TYPE_ASSIGN_CARE_TEAM in done
    nutritionist_ok = has_nutritionist or not require_nutritionist
    if required and required <= done and (nutritionist_ok or not care_team_done):
        return FULLY_REGISTERED
    if care_team_done:
        return CARE_TEAM_ASSIGNED
    if payment_complete or task_statuses:
        return PAYMENT_COMPLETE
    return PAYMENT_PENDING


def get_registration_status(subject_id: int) -> RegistrationStatusView:
    subject = User.objects.get(id=subject_id)
    tasks = list(tasks_for_subject(subject_id))
    profile = SubjectProfile.objects.filter(user_id=subject_id).first()
    assignment = CareTeamAssignment.objects.filter(subject_id=subject_id).first()
    status = derive_registration_status(
        {t.task_type: t.status for t in tasks},
        required=required_task_types(subject),
        payment_complete=bool(profile and profile.payment_status == SubjectProfile.PAYMENT_COMPLETED),
        has_nutritionist=bool(assignment and assignment.nutritionist_id),
        require_nutritionist=bool(settings.REGISTRATION.get('REQUIRE_NUTRITIONIST')),
    )
    return RegistrationStatusView(
        subject_id=subject_id,
        registration_status=status,
        tasks=tasks,
        stuck_tasks=[t for t in tasks if t.status == RegistrationTask.STATUS_FAILED],
        stored_status=profile.registration_status if profile else None,
    )


def refresh_stored_status(subject_id: int) -> RegistrationStatusView:
    """Overwrite the cached status hint with the derived status."""
    view = get_registration_status(subject_id)
    profile, _ = SubjectProfile.objects.get_or_create(user_id=subject_id)
    fields = []
    if profile.registration_status != view.registration_status:
        profile.registration_status = view.registration_status
        fields.append('registration_status')
    completed_at = timezone.now() if view.is_complete else None
    if bool(profile.registration_completed_at) != view.is_complete:
        profile.registration_completed_at = completed_at
        fields.append('registration_completed_at')
    if fields:
        profile.save(update_fields=fields + ['updated_at'])
    view.stored_status = profile.registration_status
    return view
