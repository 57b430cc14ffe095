"""
Task processor for the registration pipeline.

:class:`RegistrationPipeline` claims tasks from the task store, runs the
matching handler through :func:`execute_with_retry` and persists the
outcome.  Handler errors are classified and recorded on the task; they
never propagate out of :meth:`RegistrationPipeline.execute`.
"""
from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer
from django.conf import settings
from prometheus_client import Counter

from ..exceptions import PermanentError, classify_error
from ..models import RegistrationTask
from . import tasks as task_store
from .handlers import Handler, default_handlers
from .notifications import Notifier
from .resilience import CircuitBreakerRegistry, RetryConfig, execute_with_retry
from .status import refresh_stored_status

logger = logging.getLogger(__name__)

TASK_OUTCOMES = Counter(
    'registration_task_outcomes_total',
    'Registration task executions by outcome',
    ['task_type', 'outcome'],
)


@dataclass
class TaskOutcome:
    task_id: int
    subject_id: int
    task_type: str
    status: str
    result: Optional[dict] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'taskId': self.task_id,
            'subjectId': self.subject_id,
            'taskType': self.task_type,
            'status': self.status,
            'result': self.result,
            'error': self.error,
            'errorKind': self.error_kind,
        }


@dataclass
class ProcessingReport:
    subject_id: int
    outcomes: list = field(default_factory=list)
    registration_status: Optional[str] = None

    @property
    def processed(self) -> int:
        return sum(1 for o in self.outcomes if o.status == RegistrationTask.STATUS_COMPLETED)

    def to_dict(self) -> dict:
        return {
            'subjectId': self.subject_id,
            'processed': self.processed,
            'total': len(self.outcomes),
            'registrationStatus': self.registration_status,
            'results': [o.to_dict() for o in self.outcomes],
        }


def operation_name(task_type: str) -> str:
    return f'registration.{task_type}'


def broadcast_status(subject_id: int, payload: dict) -> None:
    channel_layer = get_channel_layer()
    if channel_layer is None:
        return
    async_to_sync(channel_layer.group_send)(
        f'registration.{subject_id}',
        {'type': 'registration.status', 'payload': payload},
    )


class RegistrationPipeline:
    def __init__(self, *, handlers: Dict[str, Handler], breakers: CircuitBreakerRegistry,
                 retry_config: RetryConfig, sleep: Callable[[float], None] = time.sleep,
                 rand: Callable[[], float] = random.random):
        self.handlers = handlers
        self.breakers = breakers
        self.retry_config = retry_config
        self.sleep = sleep
        self.rand = rand

    def execute(self, task: RegistrationTask, retry_config: Optional[RetryConfig] = None) -> TaskOutcome:
        """Run a claimed task and record completion or failure."""
        handler = self.handlers.get(task.task_type)
        subject = task.subject
        try:
            if handler is None:
                raise PermanentError(f'no handler registered for task type {task.task_type!r}')
            result = execute_with_retry(
                lambda: handler(subject),
                operation_name(task.task_type),
                retry_config or self.retry_config,
                breakers=self.breakers,
                sleep=self.sleep,
                rand=self.rand,
            )
        except Exception as exc:
            kind = classify_error(exc)
            updated = task_store.mark_failed(task.id, kind.retryable, exc, kind)
            TASK_OUTCOMES.labels(task_type=task.task_type, outcome=kind.value).inc()
            logger.warning('task %s (%s) for subject %s failed [%s]: %s',
                           task.id, task.task_type, task.subject_id, kind.value, exc)
            return TaskOutcome(task.id, task.subject_id, task.task_type, updated.status,
                               error=str(exc), error_kind=kind.value)
        task_store.mark_completed(task.id, result)
        TASK_OUTCOMES.labels(task_type=task.task_type, outcome='completed').inc()
        logger.info('task %s (%s) for subject %s completed', task.id, task.task_type, task.subject_id)
        return TaskOutcome(task.id, task.subject_id, task.task_type,
                           RegistrationTask.STATUS_COMPLETED, result=result)

    def _finish_subject(self, subject_id: int) -> str:
        view = refresh_stored_status(subject_id)
        try:
            broadcast_status(subject_id, view.to_dict())
        except Exception:
            logger.exception('failed to broadcast registration status for subject %s', subject_id)
        return view.registration_status

    def process_tasks_for_subject(self, subject_id: int,
                                  retry_config: Optional[RetryConfig] = None) -> ProcessingReport:
        """Claim and run every due pending task of one subject, by priority.

        ``retry_config`` overrides the in-call retries for this run only;
        the payment webhook passes :func:`inline_retry_config` so a slow
        provider reschedules the task instead of holding the request.
        """
        report = ProcessingReport(subject_id=subject_id)
        while True:
            task = task_store.claim_next_pending(subject_id)
            if task is None:
                break
            report.outcomes.append(self.execute(task, retry_config))
        report.registration_status = self._finish_subject(subject_id)
        logger.info('processed %d/%d tasks for subject %s -> %s',
                    report.processed, len(report.outcomes), subject_id, report.registration_status)
        return report

    def process_next_global_task(self) -> Optional[TaskOutcome]:
        """Claim and run the oldest due task across all subjects."""
        task = task_store.claim_next_pending()
        if task is None:
            return None
        outcome = self.execute(task)
        self._finish_subject(task.subject_id)
        return outcome


def inline_retry_config() -> RetryConfig:
    conf = settings.REGISTRATION
    return RetryConfig.from_dict({**(conf.get('RETRY') or {}), **(conf.get('INLINE_RETRY') or {})})


def build_pipeline(*, notifier: Optional[Notifier] = None, handlers: Optional[Dict[str, Handler]] = None,
                   sleep: Callable[[float], None] = time.sleep, clock: Callable[[], float] = time.monotonic,
                   retry_config: Optional[RetryConfig] = None) -> RegistrationPipeline:
    conf = settings.REGISTRATION
    breakers = CircuitBreakerRegistry(
        failure_threshold=conf.get('CIRCUIT_FAILURE_THRESHOLD', 5),
        reset_timeout=conf.get('CIRCUIT_RESET_TIMEOUT', 60.0),
        clock=clock,
    )
    return RegistrationPipeline(
        handlers=handlers or default_handlers(notifier),
        breakers=breakers,
        retry_config=retry_config or RetryConfig.from_dict(conf.get('RETRY')),
        sleep=sleep,
    )
