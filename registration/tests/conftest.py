import itertools

import pytest
from django.apps import apps
from django.core.cache import cache

from registration.models import DefaultCareTeam, SubjectProfile, User
from registration.services.notifications import NotificationResult, Notifier

_seq = itertools.count(1)


class RecordingNotifier(Notifier):
    """Records dispatches; optionally raises ``error`` on every call."""

    def __init__(self, error=None):
        self.sent = []
        self.error = error

    def dispatch(self, subject_id, channel, payload):
        if self.error is not None:
            raise self.error
        self.sent.append((subject_id, channel, payload))
        return NotificationResult(success=True, provider_message_id=f'msg-{len(self.sent)}')


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture(autouse=True)
def _clear_throttles():
    cache.clear()


@pytest.fixture(autouse=True)
def pipeline(notifier, clock, sleeps):
    config = apps.get_app_config('registration')
    yield config.rebuild_pipeline(notifier=notifier, clock=clock, sleep=sleeps.append)
    config.rebuild_pipeline()


@pytest.fixture
def make_user(db):
    def _make(role=User.ROLE_PATIENT, phone='', **kwargs):
        n = next(_seq)
        kwargs.setdefault('username', f'{role}{n}')
        kwargs.setdefault('email', f'{role}{n}@example.com')
        user = User.objects.create_user(password='P@ssw0rd1', role=role, **kwargs)
        if role == User.ROLE_PATIENT or phone:
            SubjectProfile.objects.create(user=user, phone=phone)
        return user
    return _make


@pytest.fixture
def doctor(make_user):
    return make_user(User.ROLE_DOCTOR)


@pytest.fixture
def nutritionist(make_user):
    return make_user(User.ROLE_NUTRITIONIST)


@pytest.fixture
def care_team(doctor, nutritionist):
    return DefaultCareTeam.objects.create(doctor=doctor, nutritionist=nutritionist)


@pytest.fixture
def patient(make_user):
    return make_user(User.ROLE_PATIENT, phone='+15550001111')


@pytest.fixture
def admin_user(make_user):
    return make_user(User.ROLE_ADMIN)
