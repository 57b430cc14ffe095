import pytest
import requests
from django.db.models.query import QuerySet

from registration.exceptions import (
    DependencyNotReadyError,
    InvalidRecipientError,
    InvalidSubjectError,
    NoDefaultCareTeamError,
    NotificationTransportError,
)
from registration.models import AuditEvent, CareTeamAssignment, ChatRoom, ChatRoomMember, ProfessionalProfile, User
from registration.services.care_team import (
    assign_care_team,
    create_chat_room,
    get_active_default_care_team,
    upsert_care_team_room,
)
from registration.services.handlers import setup_professional_profile
from registration.services.notifications import HttpNotifier, send_welcome_notification


pytestmark = pytest.mark.django_db


def test_no_default_care_team_is_permanent(patient):
    with pytest.raises(NoDefaultCareTeamError):
        get_active_default_care_team()
    with pytest.raises(NoDefaultCareTeamError):
        assign_care_team(patient)


def test_assign_care_team_is_idempotent(patient, care_team):
    first = assign_care_team(patient)
    second = assign_care_team(patient)
    assert first['created'] is True
    assert second['created'] is False
    assert first['assignment_id'] == second['assignment_id']
    assignment = CareTeamAssignment.objects.get(subject=patient)
    assert assignment.doctor_id == care_team.doctor_id
    assert assignment.nutritionist_id == care_team.nutritionist_id


def test_assign_care_team_skips_professionals(doctor, care_team):
    assert assign_care_team(doctor)['skipped'] is True
    assert not CareTeamAssignment.objects.exists()


def test_create_chat_room_needs_assignment(patient):
    with pytest.raises(DependencyNotReadyError):
        create_chat_room(patient)


def test_assign_care_team_insert_race_keeps_existing_row(patient, care_team, make_user, monkeypatch):
    other_doctor = make_user(User.ROLE_DOCTOR)
    existing = CareTeamAssignment.objects.create(subject=patient, doctor=other_doctor)
    # the lookup misses the row a concurrent writer just inserted
    monkeypatch.setattr(QuerySet, 'first', lambda self: None)

    result = assign_care_team(patient)
    assert result == {'care_team_assigned': True, 'assignment_id': existing.id, 'created': False}
    assert CareTeamAssignment.objects.filter(subject=patient).count() == 1
    assert CareTeamAssignment.objects.get(subject=patient).doctor_id == other_doctor.id


def test_create_chat_room_is_idempotent(patient, care_team):
    assign_care_team(patient)
    first = create_chat_room(patient)
    second = create_chat_room(patient)
    assert first['created'] is True and first['added_members'] == 3
    assert second == {'room_id': first['room_id'], 'created': False, 'added_members': 0}
    assert ChatRoom.objects.filter(subject=patient).count() == 1
    roles = dict(ChatRoomMember.objects.filter(room_id=first['room_id']).values_list('user_id', 'role'))
    assert roles == {
        patient.id: User.ROLE_PATIENT,
        care_team.doctor_id: User.ROLE_DOCTOR,
        care_team.nutritionist_id: User.ROLE_NUTRITIONIST,
    }


def test_upsert_room_adds_missing_members_and_keeps_extras(patient, doctor, nutritionist, make_user):
    sync = upsert_care_team_room(patient.id, doctor.id)
    extra = make_user(User.ROLE_DOCTOR)
    ChatRoomMember.objects.create(room_id=sync.room_id, user=extra, role=User.ROLE_DOCTOR)

    again = upsert_care_team_room(patient.id, doctor.id, nutritionist.id)
    assert again.created is False
    assert again.added_members == 1
    members = set(ChatRoomMember.objects.filter(room_id=sync.room_id).values_list('user_id', flat=True))
    assert members == {patient.id, doctor.id, nutritionist.id, extra.id}


def test_room_insert_race_resolves_to_existing_room(patient, doctor, monkeypatch):
    existing = ChatRoom.objects.create(subject=patient, room_type=ChatRoom.TYPE_CARE_TEAM, name='Care team')
    monkeypatch.setattr(QuerySet, 'first', lambda self: None)

    sync = upsert_care_team_room(patient.id, doctor.id)
    assert sync.room_id == existing.id
    assert sync.created is False
    assert sync.added_members == 2
    assert ChatRoom.objects.filter(subject=patient).count() == 1


def test_create_chat_room_without_doctor_is_invalid(patient):
    CareTeamAssignment.objects.create(subject=patient)
    with pytest.raises(InvalidSubjectError):
        create_chat_room(patient)


def test_setup_professional_profile(doctor, patient):
    result = setup_professional_profile(doctor)
    assert result['created'] is True
    assert setup_professional_profile(doctor)['created'] is False
    assert ProfessionalProfile.objects.filter(user=doctor).count() == 1
    with pytest.raises(InvalidSubjectError):
        setup_professional_profile(patient)


def test_welcome_notification_dispatches_each_channel(patient, notifier):
    result = send_welcome_notification(patient, notifier)
    assert result['notification_sent'] is True
    assert set(result['channels']) == {'email', 'sms'}
    sent = {channel: payload['to'] for _, channel, payload in notifier.sent}
    assert sent == {'email': patient.email, 'sms': '+15550001111'}
    assert AuditEvent.objects.filter(action='welcome_notification_sent', object_id=patient.id).exists()


def test_welcome_notification_cleans_name(make_user, notifier):
    subject = make_user(first_name='<b>Ana</b>', last_name='Lee')
    send_welcome_notification(subject, notifier)
    assert notifier.sent[0][2]['name'] == 'Ana Lee'


def test_welcome_notification_without_contact_is_permanent(make_user, notifier):
    subject = make_user(email='')
    with pytest.raises(InvalidRecipientError):
        send_welcome_notification(subject, notifier)
    assert notifier.sent == []
    assert AuditEvent.objects.filter(action='welcome_notification_failed', object_id=subject.id).exists()


def test_welcome_notification_transport_error_is_audited(patient, notifier):
    notifier.error = NotificationTransportError('provider down')
    with pytest.raises(NotificationTransportError):
        send_welcome_notification(patient, notifier)
    event = AuditEvent.objects.get(action='welcome_notification_failed', object_id=patient.id)
    assert 'provider down' in event.detail['error']


class FakeResponse:
    def __init__(self, status_code, data=None):
        self.status_code = status_code
        self._data = data
        self.content = b'{}' if data is not None else b''
        self.text = str(data or '')

    def json(self):
        return self._data

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(response=self)


class FakeSession:
    def __init__(self, response=None, exc=None):
        self.response = response
        self.exc = exc
        self.calls = []

    def post(self, url, **kwargs):
        self.calls.append((url, kwargs))
        if self.exc is not None:
            raise self.exc
        return self.response


def _notifier(session):
    return HttpNotifier(url='https://notify.test/send', token='t0k', timeout=2, session=session)


def test_http_notifier_success():
    session = FakeSession(FakeResponse(200, {'id': 'abc'}))
    result = _notifier(session).dispatch(7, 'email', {'to': 'a@b.c'})
    assert result.success is True
    assert result.provider_message_id == 'abc'
    url, kwargs = session.calls[0]
    assert url == 'https://notify.test/send'
    assert kwargs['json'] == {'subject_id': 7, 'channel': 'email', 'payload': {'to': 'a@b.c'}}
    assert kwargs['headers']['Authorization'] == 'Bearer t0k'


@pytest.mark.parametrize('status_code, exc', [
    (422, InvalidRecipientError),
    (503, NotificationTransportError),
    (429, NotificationTransportError),
])
def test_http_notifier_maps_status_codes(status_code, exc):
    with pytest.raises(exc):
        _notifier(FakeSession(FakeResponse(status_code))).dispatch(1, 'sms', {})


def test_http_notifier_timeout_is_transient():
    with pytest.raises(NotificationTransportError):
        _notifier(FakeSession(exc=requests.Timeout('slow'))).dispatch(1, 'sms', {})
