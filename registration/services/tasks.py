"""
Durable store of registration tasks.

Tasks are keyed by ``(subject, task_type)`` and written with upserts, so
a repeated payment webhook never duplicates work.  Claiming is a
compare-and-swap ``UPDATE ... WHERE status='pending'``: whichever caller
updates the row owns the task, no matter how many workers race for it.
"""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Optional

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import Q
from django.utils import timezone

from ..exceptions import ErrorKind
from ..models import RegistrationTask, User
from .resilience import RetryConfig, compute_next_delay

logger = logging.getLogger(__name__)

PATIENT_TASKS = (
    (RegistrationTask.TYPE_ASSIGN_CARE_TEAM, 1),
    (RegistrationTask.TYPE_CREATE_CHAT_ROOM, 2),
    (RegistrationTask.TYPE_SEND_WELCOME_NOTIFICATION, 3),
)
PROFESSIONAL_TASKS = (
    (RegistrationTask.TYPE_SETUP_PROFESSIONAL_PROFILE, 1),
    (RegistrationTask.TYPE_SEND_WELCOME_NOTIFICATION, 2),
)

# Candidates inspected per claim before giving up to racing workers
CLAIM_BATCH = 10


def _task_retry_config() -> RetryConfig:
    return RetryConfig.from_dict(settings.REGISTRATION.get('TASK_RETRY'))


def _task_max_retries() -> int:
    return int(settings.REGISTRATION.get('TASK_MAX_RETRIES', 5))


def task_set_for(subject: User) -> tuple:
    return PROFESSIONAL_TASKS if subject.is_professional else PATIENT_TASKS


def upsert_task(subject_id: int, task_type: str, priority: int = 1, *, retry_failed: bool = False) -> RegistrationTask:
    """Insert the task if missing; otherwise leave it alone.

    A permanently failed task is put back to ``pending`` only when the
    caller passes ``retry_failed=True``.
    """
    try:
        with transaction.atomic():
            task, created = RegistrationTask.objects.get_or_create(
                subject_id=subject_id,
                task_type=task_type,
                defaults={'priority': priority},
            )
    except IntegrityError:
        # a concurrent inserter won; its row is the task
        task = RegistrationTask.objects.get(subject_id=subject_id, task_type=task_type)
        created = False
    if created:
        logger.info('enqueued %s for subject %s', task_type, subject_id)
        return task
    if retry_failed and task.status == RegistrationTask.STATUS_FAILED:
        now = timezone.now()
        updated = RegistrationTask.objects.filter(
            id=task.id, status=RegistrationTask.STATUS_FAILED
        ).update(
            status=RegistrationTask.STATUS_PENDING,
            retry_count=0,
            next_retry_at=now,
            error_details=None,
            updated_at=now,
        )
        if updated:
            logger.info('re-queued failed %s for subject %s', task_type, subject_id)
        task.refresh_from_db()
    return task


def enqueue_registration_tasks(subject_id: int) -> list[RegistrationTask]:
    """Upsert the role-appropriate task set for a subject."""
    subject = User.objects.get(id=subject_id)
    return [upsert_task(subject.id, task_type, priority) for task_type, priority in task_set_for(subject)]


def _try_claim(task_id: int, now) -> bool:
    return RegistrationTask.objects.filter(
        id=task_id, status=RegistrationTask.STATUS_PENDING
    ).update(status=RegistrationTask.STATUS_IN_PROGRESS, updated_at=now) == 1


def claim_next_pending(subject_id: Optional[int] = None, *, now=None) -> Optional[RegistrationTask]:
    """Atomically move one due pending task to ``in_progress`` and return it.

    With ``subject_id`` the subject's tasks are taken in priority order;
    without it the oldest due task across all subjects is taken.
    """
    now = now or timezone.now()
    qs = RegistrationTask.objects.filter(status=RegistrationTask.STATUS_PENDING, next_retry_at__lte=now)
    if subject_id is not None:
        qs = qs.filter(subject_id=subject_id).order_by('priority', 'created_at', 'id')
    else:
        qs = qs.order_by('created_at', 'priority', 'id')
    for task_id in list(qs.values_list('id', flat=True)[:CLAIM_BATCH]):
        if _try_claim(task_id, now):
            return RegistrationTask.objects.select_related('subject').get(id=task_id)
    return None


def mark_completed(task_id: int, result: Optional[dict] = None) -> None:
    RegistrationTask.objects.filter(id=task_id).update(
        status=RegistrationTask.STATUS_COMPLETED,
        result_payload=result,
        error_details=None,
        updated_at=timezone.now(),
    )


def mark_failed(task_id: int, retryable: bool, error: Optional[BaseException] = None,
                kind: Optional[ErrorKind] = None) -> RegistrationTask:
    """Reschedule a retryable failure, or fail the task for good.

    Retryable failures are pushed back with exponential backoff until
    ``TASK_MAX_RETRIES`` is reached, after which they become terminal.
    """
    now = timezone.now()
    task = RegistrationTask.objects.get(id=task_id)
    details = {
        'error': str(error) if error is not None else None,
        'kind': (kind.value if kind else None),
        'timestamp': now.isoformat(),
    }
    retry_count = task.retry_count + 1
    if retryable and retry_count < _task_max_retries():
        delay = compute_next_delay(retry_count - 1, _task_retry_config())
        task.status = RegistrationTask.STATUS_PENDING
        task.next_retry_at = now + timedelta(seconds=delay)
        logger.info('task %s (%s) rescheduled in %.0fs, retry %d',
                    task.id, task.task_type, delay, retry_count)
    else:
        task.status = RegistrationTask.STATUS_FAILED
        logger.error('task %s (%s) failed permanently: %s', task.id, task.task_type, details['error'])
    task.retry_count = retry_count
    task.error_details = details
    task.save(update_fields=['status', 'retry_count', 'next_retry_at', 'error_details', 'updated_at'])
    return task


def reset_stuck_tasks(subject_id: Optional[int] = None, *, older_than: Optional[timedelta] = None) -> int:
    """Return ``in_progress`` tasks abandoned by a dead worker to ``pending``."""
    now = timezone.now()
    qs = RegistrationTask.objects.filter(status=RegistrationTask.STATUS_IN_PROGRESS)
    if subject_id is not None:
        qs = qs.filter(subject_id=subject_id)
    if older_than is not None:
        qs = qs.filter(updated_at__lte=now - older_than)
    count = qs.update(
        status=RegistrationTask.STATUS_PENDING,
        retry_count=0,
        error_details=None,
        next_retry_at=now,
        updated_at=now,
    )
    logger.info('reset %d stuck tasks (subject=%s)', count, subject_id)
    return count


def retry_failed_tasks(subject_id: int) -> list[RegistrationTask]:
    failed = RegistrationTask.objects.filter(subject_id=subject_id, status=RegistrationTask.STATUS_FAILED)
    return [upsert_task(t.subject_id, t.task_type, t.priority, retry_failed=True) for t in failed]


def tasks_for_subject(subject_id: int):
    return RegistrationTask.objects.filter(subject_id=subject_id).order_by('priority', 'created_at')


def complete_if_open(subject_id: int, task_type: str, result: dict) -> bool:
    """Mark a task completed unless it is already completed or being worked on."""
    return RegistrationTask.objects.filter(
        Q(status=RegistrationTask.STATUS_PENDING) | Q(status=RegistrationTask.STATUS_FAILED),
        subject_id=subject_id,
        task_type=task_type,
    ).update(
        status=RegistrationTask.STATUS_COMPLETED,
        result_payload=result,
        error_details=None,
        updated_at=timezone.now(),
    ) == 1
