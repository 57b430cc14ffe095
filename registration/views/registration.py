"""
Registration pipeline endpoints.

The payment provider calls ``payments/registration-complete`` once a
subject has paid.  The call records the payment, upserts the subject's
task set and, unless ``process`` is false, runs the tasks inline.  The
call is safe to repeat: tasks are upserted and handlers are idempotent.

Administrators drive the pipeline by hand through the ``tasks/*``,
``care-team/rooms/sync`` and ``admin/circuit-breakers`` endpoints when
a task is stuck or a downstream provider has recovered.
"""
from __future__ import annotations

import logging
from datetime import timedelta

from django.shortcuts import get_object_or_404
from django.utils import timezone
from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from ..apps import get_pipeline
from ..models import SubjectProfile, User
from ..permissions import HasWebhookSecret, IsAdminRole, is_admin
from ..serializers.registration import (
    CircuitResetSerializer,
    PaymentCompleteSerializer,
    ResetStuckSerializer,
    SubjectSerializer,
)
from ..services import tasks as task_store
from ..services.audit import log_action
from ..services.processor import inline_retry_config
from ..services.reconcile import run_room_sync_reconciliation
from ..services.status import get_registration_status

logger = logging.getLogger(__name__)


def _forbidden():
    return Response({'ok': False, 'error': {'code': 'forbidden', 'message': 'not allowed for this subject'}},
                    status=status.HTTP_403_FORBIDDEN)


@api_view(['POST'])
@permission_classes([HasWebhookSecret | IsAdminRole])
def payment_registration_complete(request):
    ser = PaymentCompleteSerializer(data=request.data)
    ser.is_valid(raise_exception=True)
    data = ser.validated_data
    subject = get_object_or_404(User, id=data['subjectId'])

    profile, _ = SubjectProfile.objects.get_or_create(user=subject)
    profile.payment_status = SubjectProfile.PAYMENT_COMPLETED
    if data.get('paymentReference'):
        profile.payment_reference = data['paymentReference']
    profile.save(update_fields=['payment_status', 'payment_reference', 'updated_at'])

    tasks = task_store.enqueue_registration_tasks(subject.id)
    log_action(user=request.user, action='payment_registration_complete', object_type='user',
               object_id=subject.id, detail={'reference': profile.payment_reference})
    logger.info('payment recorded for subject %s, %d tasks queued', subject.id, len(tasks))

    body = {'ok': True, 'subjectId': subject.id, 'tasks': [t.to_dict() for t in tasks]}
    if data.get('process', True):
        body['processing'] = get_pipeline().process_tasks_for_subject(
            subject.id, retry_config=inline_retry_config(),
        ).to_dict()
    return Response(body)


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def registration_status(request):
    """Derived registration status; subjects may only read their own."""
    subject_id = request.query_params.get('subjectId')
    if subject_id in (None, ''):
        subject_id = request.user.id
    ser = SubjectSerializer(data={'subjectId': subject_id})
    ser.is_valid(raise_exception=True)
    subject_id = ser.validated_data['subjectId']
    if subject_id != request.user.id and not is_admin(request.user):
        return _forbidden()
    try:
        view = get_registration_status(subject_id)
    except User.DoesNotExist:
        return Response({'ok': False, 'error': {'code': 'not_found', 'message': 'subject not found'}},
                        status=status.HTTP_404_NOT_FOUND)
    return Response({'ok': True, **view.to_dict()})


@api_view(['POST'])
@permission_classes([IsAdminRole])
def enqueue_tasks(request):
    ser = SubjectSerializer(data=request.data)
    ser.is_valid(raise_exception=True)
    subject = get_object_or_404(User, id=ser.validated_data['subjectId'])
    tasks = task_store.enqueue_registration_tasks(subject.id)
    log_action(user=request.user, action='enqueue_registration_tasks', object_type='user', object_id=subject.id)
    return Response({'ok': True, 'tasks': [t.to_dict() for t in tasks]})


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def process_tasks(request):
    ser = SubjectSerializer(data=request.data)
    ser.is_valid(raise_exception=True)
    subject = get_object_or_404(User, id=ser.validated_data['subjectId'])
    if subject.id != request.user.id and not is_admin(request.user):
        return _forbidden()
    report = get_pipeline().process_tasks_for_subject(subject.id)
    return Response({'ok': True, **report.to_dict()})


@api_view(['POST'])
@permission_classes([IsAdminRole])
def process_next_task(request):
    outcome = get_pipeline().process_next_global_task()
    return Response({'ok': True, 'task': outcome.to_dict() if outcome else None})


@api_view(['POST'])
@permission_classes([IsAdminRole])
def reset_stuck(request):
    ser = ResetStuckSerializer(data=request.data)
    ser.is_valid(raise_exception=True)
    data = ser.validated_data
    minutes = data.get('olderThanMinutes')
    count = task_store.reset_stuck_tasks(
        data.get('subjectId'),
        older_than=timedelta(minutes=minutes) if minutes is not None else None,
    )
    log_action(user=request.user, action='reset_stuck_tasks', object_type='user',
               object_id=data.get('subjectId'), detail={'count': count})
    return Response({'ok': True, 'reset': count})


@api_view(['POST'])
@permission_classes([IsAdminRole])
def retry_failed(request):
    ser = SubjectSerializer(data=request.data)
    ser.is_valid(raise_exception=True)
    subject = get_object_or_404(User, id=ser.validated_data['subjectId'])
    tasks = task_store.retry_failed_tasks(subject.id)
    log_action(user=request.user, action='retry_failed_tasks', object_type='user', object_id=subject.id,
               detail={'tasks': [t.task_type for t in tasks]})
    return Response({'ok': True, 'tasks': [t.to_dict() for t in tasks]})


@api_view(['POST'])
@permission_classes([IsAdminRole])
def sync_care_team_rooms(request):
    tally = run_room_sync_reconciliation()
    log_action(user=request.user, action='sync_care_team_rooms', object_type='chat_room', detail=tally)
    return Response({'ok': True, **tally})


@api_view(['GET'])
@permission_classes([IsAdminRole])
def circuit_breakers(request):
    return Response({'ok': True, 'breakers': get_pipeline().breakers.snapshot(), 'ts': timezone.now().isoformat()})


@api_view(['POST'])
@permission_classes([IsAdminRole])
def reset_circuit_breakers(request):
    ser = CircuitResetSerializer(data=request.data)
    ser.is_valid(raise_exception=True)
    names = get_pipeline().breakers.reset(ser.validated_data.get('operation') or None)
    log_action(user=request.user, action='reset_circuit_breakers', object_type='circuit_breaker',
               detail={'reset': names})
    return Response({'ok': True, 'reset': names})
