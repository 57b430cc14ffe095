import pytest

from registration.models import CareTeamAssignment, ChatRoom, ChatRoomMember, RegistrationTask
from registration.services import tasks as task_store
from registration.services.reconcile import run_room_sync_reconciliation

pytestmark = pytest.mark.django_db


def test_reconciliation_creates_then_is_idempotent(make_user, doctor, nutritionist):
    a = make_user()
    b = make_user()
    CareTeamAssignment.objects.create(subject=a, doctor=doctor, nutritionist=nutritionist)
    CareTeamAssignment.objects.create(subject=b, doctor=doctor)

    assert run_room_sync_reconciliation() == {'created': 2, 'updated': 0, 'skipped': 0, 'error': 0}
    assert run_room_sync_reconciliation() == {'created': 0, 'updated': 0, 'skipped': 2, 'error': 0}
    assert ChatRoom.objects.count() == 2
    assert ChatRoomMember.objects.filter(room__subject=a).count() == 3


def test_reconciliation_adds_missing_members(patient, doctor, nutritionist):
    CareTeamAssignment.objects.create(subject=patient, doctor=doctor)
    run_room_sync_reconciliation()
    CareTeamAssignment.objects.filter(subject=patient).update(nutritionist=nutritionist)
    assert run_room_sync_reconciliation()['updated'] == 1
    assert ChatRoomMember.objects.filter(room__subject=patient, user=nutritionist).exists()


def test_assignment_without_doctor_is_skipped(patient):
    CareTeamAssignment.objects.create(subject=patient)
    assert run_room_sync_reconciliation()['skipped'] == 1
    assert not ChatRoom.objects.exists()


def test_reconciliation_closes_open_room_task(patient, doctor):
    CareTeamAssignment.objects.create(subject=patient, doctor=doctor)
    task = task_store.upsert_task(patient.id, 'create_chat_room', 2)
    task_store.mark_failed(task.id, False, RuntimeError('x'))

    run_room_sync_reconciliation()
    task.refresh_from_db()
    assert task.status == RegistrationTask.STATUS_COMPLETED
    assert task.result_payload['reconciled'] is True
    assert task.result_payload['room_id'] == ChatRoom.objects.get(subject=patient).id


def test_error_on_one_assignment_does_not_stop_sweep(make_user, doctor, monkeypatch):
    a = make_user()
    b = make_user()
    CareTeamAssignment.objects.create(subject=a, doctor=doctor)
    CareTeamAssignment.objects.create(subject=b, doctor=doctor)

    from registration.services import reconcile
    real = reconcile.upsert_care_team_room

    def flaky(subject_id, *args):
        if subject_id == a.id:
            raise RuntimeError('db hiccup')
        return real(subject_id, *args)

    monkeypatch.setattr(reconcile, 'upsert_care_team_room', flaky)
    assert run_room_sync_reconciliation() == {'created': 1, 'updated': 0, 'skipped': 0, 'error': 1}
