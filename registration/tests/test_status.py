import pytest

from registration.models import CareTeamAssignment, SubjectProfile
from registration.services import tasks as task_store
from registration.services.status import (
    PATIENT_TASKS,
    derive_registration_status,
    get_registration_status,
    refresh_stored_status,
)

REQUIRED = frozenset(t for t, _ in PATIENT_TASKS)


@pytest.mark.parametrize('statuses, payment, expected', [
    ({}, False, 'payment_pending'),
    ({}, True, 'payment_complete'),
    ({'assign_care_team': 'pending'}, False, 'payment_complete'),
    ({'assign_care_team': 'completed', 'create_chat_room': 'failed'}, True, 'care_team_assigned'),
    ({t: 'completed' for t in REQUIRED}, True, 'fully_registered'),
])
def test_derive_registration_status(statuses, payment, expected):
    assert derive_registration_status(statuses, required=REQUIRED, payment_complete=payment) == expected


def test_nutritionist_requirement():
    done = {t: 'completed' for t in REQUIRED}
    assert derive_registration_status(
        done, required=REQUIRED, payment_complete=True, has_nutritionist=False, require_nutritionist=False,
    ) == 'fully_registered'
    assert derive_registration_status(
        done, required=REQUIRED, payment_complete=True, has_nutritionist=False, require_nutritionist=True,
    ) == 'care_team_assigned'


@pytest.mark.django_db
def test_stored_flag_alone_is_not_completion(patient):
    SubjectProfile.objects.filter(user=patient).update(registration_status='fully_registered')
    task_store.enqueue_registration_tasks(patient.id)
    view = get_registration_status(patient.id)
    assert view.registration_status == 'payment_complete'
    assert view.stored_status == 'fully_registered'
    assert view.is_complete is False

    refreshed = refresh_stored_status(patient.id)
    assert refreshed.stored_status == 'payment_complete'


@pytest.mark.django_db
def test_pending_welcome_blocks_completion_despite_legacy_flag(patient, doctor):
    CareTeamAssignment.objects.create(subject=patient, doctor=doctor)
    SubjectProfile.objects.filter(user=patient).update(registration_status='fully_registered')
    tasks = {t.task_type: t for t in task_store.enqueue_registration_tasks(patient.id)}
    task_store.mark_completed(tasks['assign_care_team'].id)
    task_store.mark_completed(tasks['create_chat_room'].id)

    view = get_registration_status(patient.id)
    assert view.registration_status == 'care_team_assigned'
    assert view.to_dict()['isComplete'] is False


@pytest.mark.django_db
def test_failed_tasks_are_reported_as_stuck(patient):
    task = task_store.upsert_task(patient.id, 'assign_care_team')
    task_store.mark_failed(task.id, False, RuntimeError('no default care team'))
    view = get_registration_status(patient.id)
    assert [t.task_type for t in view.stuck_tasks] == ['assign_care_team']
    assert view.to_dict()['stuckTasks'] == ['assign_care_team']


@pytest.mark.django_db
def test_require_nutritionist_setting(patient, doctor, settings):
    CareTeamAssignment.objects.create(subject=patient, doctor=doctor)
    for task_type, priority in PATIENT_TASKS:
        task = task_store.upsert_task(patient.id, task_type, priority)
        task_store.mark_completed(task.id)

    assert get_registration_status(patient.id).registration_status == 'fully_registered'
    settings.REGISTRATION = {**settings.REGISTRATION, 'REQUIRE_NUTRITIONIST': True}
    assert get_registration_status(patient.id).registration_status == 'care_team_assigned'
