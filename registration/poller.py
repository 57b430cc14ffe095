"""
Adaptive polling for callers waiting on registration to finish.

:class:`AdaptivePoller` polls immediately, then backs off while polls
fail and returns to the initial interval after a success.  A hard
``max_duration`` bounds the whole run: waits are clipped to the time
left and a poll still in flight at the deadline is cancelled.

:class:`RegistrationStatusClient` wraps the status endpoint for scripts
and services that want to block until a subject is registered.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

import requests
from asgiref.sync import async_to_sync, sync_to_async

logger = logging.getLogger(__name__)


class PollingTimeoutError(Exception):
    def __init__(self, max_duration: float, attempts: int, last_error: Optional[BaseException] = None):
        self.max_duration = max_duration
        self.attempts = attempts
        self.last_error = last_error
        message = f'polling timed out after {max_duration}s ({attempts} attempts)'
        if last_error is not None:
            message += f'; last error: {last_error}'
        super().__init__(message)


@dataclass(frozen=True)
class PollingConfig:
    initial_interval: float = 5.0
    max_interval: float = 60.0
    backoff_multiplier: float = 1.5
    max_duration: float = 300.0
    success_reset_interval: bool = True

    def next_interval(self, current: float, success: bool) -> float:
        if success:
            return self.initial_interval if self.success_reset_interval else current
        return min(current * self.backoff_multiplier, self.max_interval)


class AdaptivePoller:
    def __init__(self, poll: Callable[[], Any], should_continue: Callable[[Any], bool],
                 config: Optional[PollingConfig] = None, *,
                 clock: Callable[[], float] = time.monotonic, sleep=asyncio.sleep):
        self.config = config or PollingConfig()
        self._poll = poll if inspect.iscoroutinefunction(poll) else sync_to_async(poll, thread_sensitive=False)
        self._should_continue = should_continue
        self._clock = clock
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self._clear()

    def _clear(self):
        self._result = None
        self._error: Optional[BaseException] = None
        self._interval = self.config.initial_interval
        self._attempts = 0

    @property
    def result(self):
        return self._result

    @property
    def error(self) -> Optional[BaseException]:
        return self._error

    @property
    def is_polling(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def current_interval(self) -> float:
        return self._interval

    @property
    def attempt_count(self) -> int:
        return self._attempts

    def start(self) -> asyncio.Task:
        """Start polling on the running loop; returns the polling task."""
        if self.is_polling:
            logger.debug('poller already running, ignoring start')
            return self._task
        self._clear()
        self._task = asyncio.ensure_future(self._run())
        return self._task

    def stop(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()

    def reset(self) -> None:
        self.stop()
        self._task = None
        self._clear()

    async def wait(self):
        """Wait for the current run; returns the last poll result."""
        if self._task is None:
            return self._result
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        return self._result

    def _timed_out(self) -> PollingTimeoutError:
        last = self._error
        self._error = PollingTimeoutError(self.config.max_duration, self._attempts, last)
        logger.warning('%s', self._error)
        return self._error

    async def _run(self) -> None:
        deadline = self._clock() + self.config.max_duration
        while True:
            remaining = deadline - self._clock()
            if remaining <= 0:
                self._timed_out()
                return
            try:
                result = await asyncio.wait_for(self._poll(), timeout=remaining)
            except asyncio.TimeoutError:
                self._attempts += 1
                self._timed_out()
                return
            except Exception as exc:
                self._attempts += 1
                self._error = exc
                self._interval = self.config.next_interval(self._interval, success=False)
                logger.debug('poll %d failed: %s; next in %.1fs', self._attempts, exc, self._interval)
            else:
                self._attempts += 1
                self._result = result
                self._error = None
                self._interval = self.config.next_interval(self._interval, success=True)
                if not self._should_continue(result):
                    logger.debug('polling finished after %d attempts', self._attempts)
                    return
            remaining = deadline - self._clock()
            if remaining <= 0:
                self._timed_out()
                return
            await self._sleep(min(self._interval, remaining))


class RegistrationStatusClient:
    def __init__(self, base_url: str, token: Optional[str] = None, *,
                 session: Optional[requests.Session] = None, timeout: float = 10):
        self.base_url = base_url.rstrip('/')
        self.token = token
        self.session = session or requests.Session()
        self.timeout = timeout

    def get_status(self, subject_id: int) -> dict:
        headers = {'Accept': 'application/json'}
        if self.token:
            headers['Authorization'] = f'Token {self.token}'
        r = self.session.get(
            f'{self.base_url}/api/registration/status',
            params={'subjectId': subject_id},
            headers=headers,
            timeout=self.timeout,
        )
        r.raise_for_status()
        return r.json()

    @staticmethod
    def is_terminal(status: dict) -> bool:
        return bool(status.get('isComplete') or status.get('stuckTasks'))

    def wait_for_registration(self, subject_id: int, config: Optional[PollingConfig] = None) -> dict:
        """Block until the subject is fully registered or has a stuck task.

        Raises :class:`PollingTimeoutError` when neither happens in time.
        """
        poller = AdaptivePoller(
            lambda: self.get_status(subject_id),
            lambda status: not self.is_terminal(status),
            config,
        )

        async def run():
            poller.start()
            return await poller.wait()

        status = async_to_sync(run)()
        if isinstance(poller.error, PollingTimeoutError):
            raise poller.error
        return status
