"""
Retry-with-backoff and per-operation circuit breakers.

Every provisioning handler call goes through :func:`execute_with_retry`.
Delays come from :func:`compute_next_delay`, a pure function, and are
slept through an injected ``sleep`` so tests never wait on real timers.

Breaker state machine::

    closed --(failure_threshold consecutive failures)--> open
    open   --(reset_timeout elapsed)-------------------> half_open
    half_open --(trial succeeds)-----------------------> closed
    half_open --(trial fails)--------------------------> open

Breakers live in a :class:`CircuitBreakerRegistry` owned by the
registration pipeline.  State is in memory only and is lost on restart.
"""
from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, TypeVar

from prometheus_client import Counter, Gauge

from ..exceptions import CircuitOpenError, DependencyNotReadyError, PermanentError, RetryExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar('T')

CLOSED = 'closed'
OPEN = 'open'
HALF_OPEN = 'half_open'

_STATE_VALUES = {CLOSED: 0, OPEN: 1, HALF_OPEN: 2}

CIRCUIT_STATE = Gauge(
    'registration_circuit_state',
    'Circuit breaker state (0=closed, 1=open, 2=half_open)',
    ['operation'],
)
CIRCUIT_TRIPS = Counter(
    'registration_circuit_trips_total',
    'Number of times a circuit breaker opened',
    ['operation'],
)
RETRY_ATTEMPTS = Counter(
    'registration_retry_attempts_total',
    'Failed attempts that were followed by a retry',
    ['operation'],
)


@dataclass(frozen=True)
class RetryConfig:
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    jitter_ratio: float = 0.1

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'RetryConfig':
        data = data or {}
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


def compute_next_delay(attempt: int, config: RetryConfig) -> float:
    """Delay in seconds before retry number ``attempt + 1`` (no jitter)."""
    delay = config.base_delay * (config.backoff_multiplier ** attempt)
    return min(delay, config.max_delay)


def add_jitter(delay: float, config: RetryConfig, rand: Callable[[], float] = random.random) -> float:
    return min(delay + rand() * config.jitter_ratio * delay, config.max_delay)


class CircuitBreaker:
    """Consecutive-failure breaker for one named operation."""

    def __init__(self, name: str, *, failure_threshold: int = 5, reset_timeout: float = 60.0,
                 clock: Callable[[], float] = time.monotonic):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._lock = threading.Lock()
        self.state = CLOSED
        self.consecutive_failures = 0
        self.last_failure_time: Optional[float] = None
        self._trial_in_flight = False
        CIRCUIT_STATE.labels(operation=name).set(_STATE_VALUES[CLOSED])

    def _set_state(self, state: str) -> None:
        if state != self.state:
            logger.info('circuit %s: %s -> %s', self.name, self.state, state)
        self.state = state
        CIRCUIT_STATE.labels(operation=self.name).set(_STATE_VALUES[state])

    def before_call(self) -> None:
        """Admit a call or raise :class:`CircuitOpenError`."""
        with self._lock:
            if self.state == CLOSED:
                return
            now = self._clock()
            if self.state == OPEN:
                elapsed = now - (self.last_failure_time or now)
                if elapsed < self.reset_timeout:
                    raise CircuitOpenError(self.name, retry_after=self.reset_timeout - elapsed)
                self._set_state(HALF_OPEN)
                self._trial_in_flight = False
            # half open: exactly one trial at a time
            if self._trial_in_flight:
                raise CircuitOpenError(self.name)
            self._trial_in_flight = True

    def record_success(self) -> None:
        with self._lock:
            self.consecutive_failures = 0
            self._trial_in_flight = False
            self._set_state(CLOSED)

    def record_failure(self) -> bool:
        """Count a failure; returns True when this failure opened the circuit."""
        with self._lock:
            self.consecutive_failures += 1
            self.last_failure_time = self._clock()
            if self.state == HALF_OPEN:
                self._trial_in_flight = False
            elif self.state == CLOSED and self.consecutive_failures >= self.failure_threshold:
                logger.warning('circuit %s opened after %d consecutive failures',
                               self.name, self.consecutive_failures)
            else:
                return False
            self._set_state(OPEN)
            CIRCUIT_TRIPS.labels(operation=self.name).inc()
            return True

    def release(self) -> None:
        """Give back a half-open trial slot without recording an outcome."""
        with self._lock:
            self._trial_in_flight = False

    def reset(self) -> None:
        with self._lock:
            self.consecutive_failures = 0
            self.last_failure_time = None
            self._trial_in_flight = False
            self._set_state(CLOSED)

    def snapshot(self) -> dict:
        with self._lock:
            return {
                'state': self.state,
                'consecutiveFailures': self.consecutive_failures,
                'lastFailureTime': self.last_failure_time,
            }


class CircuitBreakerRegistry:
    """Process-wide breakers keyed by operation name, created lazily."""

    def __init__(self, *, failure_threshold: int = 5, reset_timeout: float = 60.0,
                 clock: Callable[[], float] = time.monotonic):
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._lock = threading.Lock()
        self._breakers: Dict[str, CircuitBreaker] = {}

    def get(self, name: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                breaker = CircuitBreaker(
                    name,
                    failure_threshold=self.failure_threshold,
                    reset_timeout=self.reset_timeout,
                    clock=self._clock,
                )
                self._breakers[name] = breaker
            return breaker

    def reset(self, name: Optional[str] = None) -> list[str]:
        """Reset one breaker, or all of them when ``name`` is None."""
        with self._lock:
            targets = [self._breakers[name]] if name in self._breakers else []
            if name is None:
                targets = list(self._breakers.values())
        for breaker in targets:
            breaker.reset()
        logger.info('circuit breakers reset: %s', [b.name for b in targets])
        return [b.name for b in targets]

    def snapshot(self) -> Dict[str, dict]:
        with self._lock:
            breakers = list(self._breakers.values())
        return {b.name: b.snapshot() for b in breakers}


def execute_with_retry(
    operation: Callable[[], T],
    operation_name: str,
    config: Optional[RetryConfig] = None,
    *,
    breakers: CircuitBreakerRegistry,
    sleep: Callable[[float], None] = time.sleep,
    rand: Callable[[], float] = random.random,
) -> T:
    """Run ``operation`` with backoff retries behind its circuit breaker.

    Makes at most ``config.max_retries + 1`` attempts.  An open circuit
    raises :class:`CircuitOpenError` before any attempt is made.  A
    :class:`PermanentError` or :class:`DependencyNotReadyError` is
    re-raised at once and does not count as a breaker failure.  When
    attempts run out, or this call's failure opens the circuit, the last
    error is wrapped in :class:`RetryExhaustedError`.
    """
    config = config or RetryConfig()
    breaker = breakers.get(operation_name)
    last_error: Optional[BaseException] = None
    attempts = config.max_retries + 1
    made = 0

    for attempt in range(attempts):
        breaker.before_call()
        made = attempt + 1
        try:
            result = operation()
        except (PermanentError, DependencyNotReadyError):
            breaker.release()
            raise
        except Exception as exc:
            last_error = exc
            tripped = breaker.record_failure()
            logger.warning('attempt %d/%d failed for %s: %s', made, attempts, operation_name, exc)
            if tripped:
                break
            if attempt < config.max_retries:
                delay = add_jitter(compute_next_delay(attempt, config), config, rand)
                RETRY_ATTEMPTS.labels(operation=operation_name).inc()
                logger.info('retrying %s in %.2fs', operation_name, delay)
                sleep(delay)
            continue
        breaker.record_success()
        return result

    raise RetryExhaustedError(operation_name, made, last_error) from last_error
