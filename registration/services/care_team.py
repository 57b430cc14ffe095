"""
Care team assignment and care-team chat room provisioning.

Both operations are safe to repeat and to run concurrently for the same
subject.  Uniqueness is enforced by database constraints; losing an
insert race is treated as "the other writer already did it".
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from django.db import IntegrityError, transaction

from ..exceptions import DependencyNotReadyError, InvalidSubjectError, NoDefaultCareTeamError
from ..models import CareTeamAssignment, ChatRoom, ChatRoomMember, DefaultCareTeam, User

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DefaultTeam:
    doctor_id: int
    nutritionist_id: Optional[int]


@dataclass(frozen=True)
class RoomSync:
    room_id: int
    created: bool
    added_members: int

    @property
    def changed(self) -> bool:
        return self.created or self.added_members > 0


def get_active_default_care_team() -> DefaultTeam:
    teams = list(DefaultCareTeam.objects.filter(is_active=True).order_by('-created_at', '-id')[:2])
    if not teams:
        raise NoDefaultCareTeamError()
    if len(teams) > 1:
        logger.warning('more than one active default care team; using #%s', teams[0].id)
    return DefaultTeam(doctor_id=teams[0].doctor_id, nutritionist_id=teams[0].nutritionist_id)


def assign_care_team(subject: User) -> dict:
    if subject.is_professional:
        return {'skipped': True, 'reason': 'Not applicable for professionals'}
    existing = CareTeamAssignment.objects.filter(subject=subject).first()
    if existing:
        return {'care_team_assigned': True, 'assignment_id': existing.id, 'created': False}

    team = get_active_default_care_team()
    try:
        with transaction.atomic():
            assignment = CareTeamAssignment.objects.create(
                subject=subject,
                doctor_id=team.doctor_id,
                nutritionist_id=team.nutritionist_id,
            )
    except IntegrityError:
        assignment = CareTeamAssignment.objects.get(subject=subject)
        return {'care_team_assigned': True, 'assignment_id': assignment.id, 'created': False}
    logger.info('care team assigned to subject %s: doctor=%s nutritionist=%s',
                subject.id, team.doctor_id, team.nutritionist_id)
    return {'care_team_assigned': True, 'assignment_id': assignment.id, 'created': True}


def _get_or_create_room(subject_id: int) -> tuple[ChatRoom, bool]:
    room = ChatRoom.objects.filter(subject_id=subject_id, room_type=ChatRoom.TYPE_CARE_TEAM).first()
    if room:
        return room, False
    try:
        with transaction.atomic():
            room = ChatRoom.objects.create(
                subject_id=subject_id,
                room_type=ChatRoom.TYPE_CARE_TEAM,
                name=f'Care team #{subject_id}',
            )
        return room, True
    except IntegrityError:
        return ChatRoom.objects.get(subject_id=subject_id, room_type=ChatRoom.TYPE_CARE_TEAM), False


def upsert_care_team_room(subject_id: int, doctor_id: Optional[int], nutritionist_id: Optional[int] = None) -> RoomSync:
    """Ensure the subject's care-team room exists with the expected members.

    Missing members are added; members that other flows added are kept.
    """
    room, created = _get_or_create_room(subject_id)
    expected = {subject_id: User.ROLE_PATIENT}
    if doctor_id:
        expected[doctor_id] = User.ROLE_DOCTOR
    if nutritionist_id:
        expected[nutritionist_id] = User.ROLE_NUTRITIONIST

    current = set(ChatRoomMember.objects.filter(room=room).values_list('user_id', flat=True))
    missing = [
        ChatRoomMember(room=room, user_id=user_id, role=role)
        for user_id, role in expected.items() if user_id not in current
    ]
    if missing:
        ChatRoomMember.objects.bulk_create(missing, ignore_conflicts=True)
    if created or missing:
        logger.info('care team room %s for subject %s: created=%s added=%d',
                    room.id, subject_id, created, len(missing))
    return RoomSync(room_id=room.id, created=created, added_members=len(missing))


def create_chat_room(subject: User) -> dict:
    if subject.is_professional:
        return {'skipped': True, 'reason': 'Not applicable for professionals'}
    assignment = CareTeamAssignment.objects.filter(subject=subject).first()
    if assignment is None:
        raise DependencyNotReadyError(f'care team not assigned yet for subject {subject.id}')
    if not assignment.doctor_id:
        raise InvalidSubjectError(f'care team of subject {subject.id} has no doctor')
    sync = upsert_care_team_room(subject.id, assignment.doctor_id, assignment.nutritionist_id)
    return {'room_id': sync.room_id, 'created': sync.created, 'added_members': sync.added_members}
