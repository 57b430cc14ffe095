"""
Error taxonomy for the registration pipeline and the API error envelope.

Handlers raise :class:`TransientError` for failures worth retrying and
:class:`PermanentError` for failures that need an administrator.  The
task processor runs every exception through :func:`classify_error` to
decide whether the task is rescheduled or marked failed.
"""
from __future__ import annotations

import enum

import requests
from django.db import DatabaseError
from rest_framework.response import Response
from rest_framework.views import exception_handler as drf_exception_handler


class ErrorKind(str, enum.Enum):
    TRANSIENT = 'transient'
    CIRCUIT_OPEN = 'circuit_open'
    PERMANENT = 'permanent'
    UNKNOWN = 'unknown'

    @property
    def retryable(self) -> bool:
        return self is not ErrorKind.PERMANENT


class RegistrationError(Exception):
    """Base class for pipeline errors."""
    code = 'registration_error'


class TransientError(RegistrationError):
    code = 'transient'


class PermanentError(RegistrationError):
    code = 'permanent'


class NoDefaultCareTeamError(PermanentError):
    code = 'no_default_care_team'

    def __init__(self, message: str = 'No active default care team configured'):
        super().__init__(message)


class InvalidRecipientError(PermanentError):
    code = 'invalid_recipient'


class InvalidSubjectError(PermanentError):
    code = 'invalid_subject'


class NotificationTransportError(TransientError):
    code = 'notification_transport'


class DependencyNotReadyError(TransientError):
    """A prerequisite task has not run yet; nothing downstream failed."""
    code = 'dependency_not_ready'


class CircuitOpenError(RegistrationError):
    """Raised without calling the operation while its breaker is open."""
    code = 'circuit_open'

    def __init__(self, operation_name: str, retry_after: float | None = None):
        self.operation_name = operation_name
        self.retry_after = retry_after
        super().__init__(f'{operation_name} is temporarily unavailable (circuit open)')


class RetryExhaustedError(RegistrationError):
    """All attempts of an operation failed; wraps the last error."""
    code = 'retry_exhausted'

    def __init__(self, operation_name: str, attempts: int, last_error: BaseException):
        self.operation_name = operation_name
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f'Operation {operation_name} failed after {attempts} attempts. Last error: {last_error}'
        )


_TRANSIENT_TYPES = (
    TransientError,
    requests.ConnectionError,
    requests.Timeout,
    DatabaseError,
    TimeoutError,
    ConnectionError,
)


def classify_error(exc: BaseException) -> ErrorKind:
    if isinstance(exc, RetryExhaustedError):
        exc = exc.last_error
    if isinstance(exc, CircuitOpenError):
        return ErrorKind.CIRCUIT_OPEN
    if isinstance(exc, PermanentError):
        return ErrorKind.PERMANENT
    if isinstance(exc, _TRANSIENT_TYPES):
        return ErrorKind.TRANSIENT
    if isinstance(exc, requests.HTTPError):
        status = getattr(exc.response, 'status_code', None) or 0
        return ErrorKind.TRANSIENT if status >= 500 or status == 429 else ErrorKind.PERMANENT
    return ErrorKind.UNKNOWN


def api_exception_handler(exc, context):
    if isinstance(exc, CircuitOpenError):
        return Response(
            {'ok': False, 'error': {'code': exc.code, 'message': str(exc)}},
            status=503,
        )
    if isinstance(exc, RegistrationError):
        return Response(
            {'ok': False, 'error': {'code': exc.code, 'message': str(exc)}},
            status=400 if isinstance(exc, PermanentError) else 502,
        )
    resp = drf_exception_handler(exc, context)
    if resp is None:
        return Response({'ok': False, 'error': {'code': 'server_error', 'message': str(exc)}}, status=500)
    if isinstance(resp.data, dict):
        detail = resp.data.get('detail') or resp.data
    else:
        detail = str(resp.data)
    return Response({'ok': False, 'error': {'code': 'api_error', 'message': detail}}, status=resp.status_code)
