from datetime import timedelta

import pytest
from django.db import IntegrityError
from django.utils import timezone

from registration.exceptions import ErrorKind
from registration.models import RegistrationTask
from registration.services import tasks as task_store

pytestmark = pytest.mark.django_db


def test_enqueue_is_idempotent(patient):
    first = task_store.enqueue_registration_tasks(patient.id)
    second = task_store.enqueue_registration_tasks(patient.id)
    assert [t.id for t in first] == [t.id for t in second]
    assert RegistrationTask.objects.filter(subject=patient).count() == 3
    assert sorted((t.task_type, t.priority) for t in first) == [
        ('assign_care_team', 1),
        ('create_chat_room', 2),
        ('send_welcome_notification', 3),
    ]


def test_professional_gets_professional_task_set(doctor):
    types = {t.task_type for t in task_store.enqueue_registration_tasks(doctor.id)}
    assert types == {'setup_professional_profile', 'send_welcome_notification'}


def test_upsert_leaves_completed_task_alone(patient):
    task = task_store.upsert_task(patient.id, 'assign_care_team')
    task_store.mark_completed(task.id, {'care_team_assigned': True})
    again = task_store.upsert_task(patient.id, 'assign_care_team', retry_failed=True)
    assert again.status == 'completed'
    assert again.result_payload == {'care_team_assigned': True}


def test_claim_is_at_most_once(patient):
    task_store.enqueue_registration_tasks(patient.id)
    claimed = task_store.claim_next_pending(patient.id)
    assert claimed.task_type == 'assign_care_team'
    assert claimed.status == 'in_progress'
    # a second worker racing for the same row loses the compare-and-swap
    assert task_store._try_claim(claimed.id, timezone.now()) is False
    nxt = task_store.claim_next_pending(patient.id)
    assert nxt.task_type == 'create_chat_room'


def test_claim_race_loser_moves_to_next_candidate(patient, monkeypatch):
    task_store.enqueue_registration_tasks(patient.id)
    real_try_claim = task_store._try_claim
    taken = []

    def contended(task_id, now):
        if not taken:
            # another worker updates the row between our read and our update
            taken.append(task_id)
            assert real_try_claim(task_id, now) is True
        return real_try_claim(task_id, now)

    monkeypatch.setattr(task_store, '_try_claim', contended)
    claimed = task_store.claim_next_pending(patient.id)
    assert claimed.task_type == 'create_chat_room'
    lost = RegistrationTask.objects.get(id=taken[0])
    assert lost.task_type == 'assign_care_team'
    assert lost.status == 'in_progress'
    assert RegistrationTask.objects.filter(subject=patient, status='in_progress').count() == 2


def test_upsert_insert_race_returns_existing_row(patient, monkeypatch):
    existing = RegistrationTask.objects.create(subject=patient, task_type='assign_care_team', priority=1)

    def conflicting_insert(**kwargs):
        raise IntegrityError('UNIQUE constraint failed: subject_id, task_type')

    monkeypatch.setattr(RegistrationTask.objects, 'get_or_create', conflicting_insert)
    task = task_store.upsert_task(patient.id, 'assign_care_team')
    assert task.id == existing.id
    assert task.status == 'pending'
    assert RegistrationTask.objects.filter(subject=patient).count() == 1


def test_claim_skips_tasks_not_yet_due(patient):
    task = task_store.upsert_task(patient.id, 'assign_care_team')
    RegistrationTask.objects.filter(id=task.id).update(next_retry_at=timezone.now() + timedelta(minutes=5))
    assert task_store.claim_next_pending(patient.id) is None
    later = timezone.now() + timedelta(minutes=6)
    assert task_store.claim_next_pending(patient.id, now=later).id == task.id


def test_global_claim_takes_oldest_first(make_user):
    a = make_user()
    b = make_user()
    older = task_store.upsert_task(b.id, 'create_chat_room', 2)
    task_store.upsert_task(a.id, 'assign_care_team', 1)
    RegistrationTask.objects.filter(id=older.id).update(created_at=timezone.now() - timedelta(minutes=1))
    first = task_store.claim_next_pending()
    assert first.subject_id == b.id


def test_mark_failed_retryable_reschedules_with_backoff(patient, settings):
    settings.REGISTRATION = {**settings.REGISTRATION, 'TASK_RETRY': {'base_delay': 300, 'max_delay': 3600}}
    task = task_store.upsert_task(patient.id, 'create_chat_room', 2)
    before = timezone.now()
    updated = task_store.mark_failed(task.id, True, RuntimeError('boom'), ErrorKind.TRANSIENT)
    assert updated.status == 'pending'
    assert updated.retry_count == 1
    assert updated.next_retry_at >= before + timedelta(seconds=300)
    assert updated.error_details['kind'] == 'transient'
    assert updated.error_details['error'] == 'boom'

    updated = task_store.mark_failed(task.id, True, RuntimeError('boom'), ErrorKind.TRANSIENT)
    assert updated.next_retry_at >= before + timedelta(seconds=600)


def test_mark_failed_becomes_terminal_at_max_retries(patient, settings):
    settings.REGISTRATION = {**settings.REGISTRATION, 'TASK_MAX_RETRIES': 2}
    task = task_store.upsert_task(patient.id, 'create_chat_room', 2)
    assert task_store.mark_failed(task.id, True).status == 'pending'
    assert task_store.mark_failed(task.id, True).status == 'failed'


def test_mark_failed_permanent_is_terminal(patient):
    task = task_store.upsert_task(patient.id, 'assign_care_team')
    updated = task_store.mark_failed(task.id, False, RuntimeError('no team'), ErrorKind.PERMANENT)
    assert updated.status == 'failed'
    assert updated.retry_count == 1


def test_reset_stuck_tasks(patient):
    task_store.enqueue_registration_tasks(patient.id)
    claimed = task_store.claim_next_pending(patient.id)
    assert task_store.reset_stuck_tasks(patient.id, older_than=timedelta(hours=1)) == 0
    assert task_store.reset_stuck_tasks(patient.id) == 1
    claimed.refresh_from_db()
    assert claimed.status == 'pending'
    assert claimed.retry_count == 0


def test_retry_failed_tasks_requeues(patient):
    task = task_store.upsert_task(patient.id, 'assign_care_team')
    task_store.mark_failed(task.id, False, RuntimeError('x'))
    requeued = task_store.retry_failed_tasks(patient.id)
    assert [t.status for t in requeued] == ['pending']
    assert requeued[0].retry_count == 0
    assert requeued[0].error_details is None


def test_complete_if_open(patient):
    task = task_store.upsert_task(patient.id, 'create_chat_room', 2)
    assert task_store.complete_if_open(patient.id, 'create_chat_room', {'room_id': 1}) is True
    assert task_store.complete_if_open(patient.id, 'create_chat_room', {'room_id': 1}) is False
    task.refresh_from_db()
    assert task.status == 'completed'
