"""
Welcome notifications through a pluggable notifier backend.

The backend is chosen by ``REGISTRATION['NOTIFIER_BACKEND']`` (a dotted
path).  :class:`LogNotifier` only logs and is meant for development;
:class:`HttpNotifier` posts to an external notification service.
Backends raise :class:`InvalidRecipientError` when the provider rejects
the recipient and :class:`NotificationTransportError` when the provider
cannot be reached.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Optional

import bleach
import requests
from django.conf import settings
from django.utils.module_loading import import_string

from ..exceptions import InvalidRecipientError, NotificationTransportError
from ..models import SubjectProfile, User
from .audit import log_action

logger = logging.getLogger(__name__)


@dataclass
class NotificationResult:
    success: bool
    provider_message_id: Optional[str] = None


class Notifier:
    def dispatch(self, subject_id: int, channel: str, payload: dict) -> NotificationResult:
        raise NotImplementedError


class LogNotifier(Notifier):
    def dispatch(self, subject_id: int, channel: str, payload: dict) -> NotificationResult:
        message_id = uuid.uuid4().hex
        logger.info('[notify:%s] subject=%s to=%s id=%s', channel, subject_id, payload.get('to'), message_id)
        return NotificationResult(success=True, provider_message_id=message_id)


class HttpNotifier(Notifier):
    """Posts ``{subject_id, channel, payload}`` as JSON to ``NOTIFIER_URL``."""

    INVALID_RECIPIENT_STATUSES = {400, 404, 410, 422}

    def __init__(self, url: Optional[str] = None, token: Optional[str] = None,
                 timeout: Optional[int] = None, session: Optional[requests.Session] = None):
        conf = settings.REGISTRATION
        self.url = url or conf.get('NOTIFIER_URL')
        self.token = token if token is not None else conf.get('NOTIFIER_TOKEN')
        self.timeout = timeout or conf.get('NOTIFIER_TIMEOUT', 5)
        self.session = session or requests.Session()
        if not self.url:
            raise RuntimeError('NOTIFIER_URL must be set to use HttpNotifier')

    def dispatch(self, subject_id: int, channel: str, payload: dict) -> NotificationResult:
        headers = {'Content-Type': 'application/json'}
        if self.token:
            headers['Authorization'] = f'Bearer {self.token}'
        try:
            r = self.session.post(
                self.url,
                json={'subject_id': subject_id, 'channel': channel, 'payload': payload},
                headers=headers,
                timeout=self.timeout,
            )
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise NotificationTransportError(f'{channel} provider unreachable: {exc}') from exc
        if r.status_code in self.INVALID_RECIPIENT_STATUSES:
            raise InvalidRecipientError(f'{channel} recipient rejected ({r.status_code}): {r.text[:200]}')
        if r.status_code >= 500 or r.status_code == 429:
            raise NotificationTransportError(f'{channel} provider error {r.status_code}')
        r.raise_for_status()
        data = r.json() if r.content else {}
        return NotificationResult(
            success=bool(data.get('success', True)),
            provider_message_id=data.get('provider_message_id') or data.get('id'),
        )


def get_notifier() -> Notifier:
    return import_string(settings.REGISTRATION['NOTIFIER_BACKEND'])()


def _recipients(subject: User) -> dict:
    profile = SubjectProfile.objects.filter(user=subject).first()
    return {
        'email': (subject.email or '').strip(),
        'sms': (profile.phone if profile else '').strip(),
        'whatsapp': (profile.phone if profile else '').strip(),
    }


def build_welcome_payload(subject: User) -> dict:
    name = bleach.clean(f'{subject.first_name} {subject.last_name}'.strip() or subject.username, strip=True)
    return {
        'template': 'welcome',
        'name': name,
        'role': subject.role,
        'registration_type': 'professional' if subject.is_professional else 'patient',
    }


def send_welcome_notification(subject: User, notifier: Optional[Notifier] = None) -> dict:
    notifier = notifier or get_notifier()
    recipients = _recipients(subject)
    base = build_welcome_payload(subject)
    channels = [c for c in settings.REGISTRATION.get('WELCOME_CHANNELS', ['email']) if recipients.get(c)]
    if not channels:
        log_action(user=None, action='welcome_notification_failed', object_type='user', object_id=subject.id,
                   detail={'reason': 'no deliverable channel'})
        raise InvalidRecipientError(f'subject {subject.id} has no deliverable contact for welcome notification')

    sent = {}
    try:
        for channel in channels:
            result = notifier.dispatch(subject.id, channel, {**base, 'to': recipients[channel]})
            if not result.success:
                raise NotificationTransportError(f'{channel} provider reported failure')
            sent[channel] = result.provider_message_id
    except Exception as exc:
        logger.warning('welcome notification for subject %s failed: %s', subject.id, exc)
        log_action(user=None, action='welcome_notification_failed', object_type='user', object_id=subject.id,
                   detail={'error': str(exc), 'sent': sent})
        raise
    logger.info('welcome notification sent to subject %s via %s', subject.id, ', '.join(sent))
    log_action(user=None, action='welcome_notification_sent', object_type='user', object_id=subject.id,
               detail={'channels': sent})
    return {'notification_sent': True, 'channels': sent}
