"""
Periodic sweep that repairs care-team chat rooms.

Every assignment with a doctor gets its room upserted.  Rooms confirmed
by the sweep also close out a matching ``create_chat_room`` task that is
still open, so the status aggregator stops waiting on it.
"""
from __future__ import annotations

import logging

from ..models import CareTeamAssignment, RegistrationTask
from .care_team import upsert_care_team_room
from .tasks import complete_if_open

logger = logging.getLogger(__name__)


def run_room_sync_reconciliation() -> dict:
    tally = {'created': 0, 'updated': 0, 'skipped': 0, 'error': 0}
    for assignment in CareTeamAssignment.objects.order_by('id').iterator():
        if not assignment.doctor_id:
            tally['skipped'] += 1
            continue
        try:
            sync = upsert_care_team_room(assignment.subject_id, assignment.doctor_id, assignment.nutritionist_id)
        except Exception:
            logger.exception('room sync failed for subject %s', assignment.subject_id)
            tally['error'] += 1
            continue
        if sync.created:
            tally['created'] += 1
        elif sync.added_members:
            tally['updated'] += 1
        else:
            tally['skipped'] += 1
        if complete_if_open(assignment.subject_id, RegistrationTask.TYPE_CREATE_CHAT_ROOM,
                            {'room_id': sync.room_id, 'reconciled': True}):
            logger.info('closed create_chat_room task for subject %s via reconciliation', assignment.subject_id)
    logger.info('room sync reconciliation: %s', tally)
    return tally
