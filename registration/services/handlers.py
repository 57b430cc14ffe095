"""
Task type to handler mapping.

A handler takes the subject :class:`User` and returns a JSON-serialisable
result stored on the task.  Handlers must be idempotent: the processor
may run one again after a crash or a duplicate trigger.
"""
from __future__ import annotations

import functools
from typing import Callable, Dict, Optional

from ..exceptions import InvalidSubjectError
from ..models import ProfessionalProfile, RegistrationTask, User
from .care_team import assign_care_team, create_chat_room
from .notifications import Notifier, send_welcome_notification

Handler = Callable[[User], dict]


def setup_professional_profile(subject: User) -> dict:
    if not subject.is_professional:
        raise InvalidSubjectError(f'subject {subject.id} with role {subject.role!r} is not a professional')
    profile, created = ProfessionalProfile.objects.get_or_create(user=subject)
    return {'profile_setup': True, 'role': subject.role, 'created': created, 'profile_id': profile.id}


def default_handlers(notifier: Optional[Notifier] = None) -> Dict[str, Handler]:
    return {
        RegistrationTask.TYPE_ASSIGN_CARE_TEAM: assign_care_team,
        RegistrationTask.TYPE_CREATE_CHAT_ROOM: create_chat_room,
        RegistrationTask.TYPE_SEND_WELCOME_NOTIFICATION: functools.partial(
            send_welcome_notification, notifier=notifier
        ),
        RegistrationTask.TYPE_SETUP_PROFESSIONAL_PROFILE: setup_professional_profile,
    }
