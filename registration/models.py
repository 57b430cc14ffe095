"""
Database models for the registration completion pipeline.

A subject (patient or professional) finishes payment, after which a
small set of :class:`RegistrationTask` rows drive the provisioning of a
care team, a care-team chat room and a welcome notification.  The
models here are deliberately narrow: only what the pipeline reads or
writes is modelled.
"""
from __future__ import annotations

from django.contrib.auth.models import AbstractUser
from django.db import models
from django.utils import timezone


class User(AbstractUser):
    """Custom user model carrying the portal role.

    Patients are the subjects of care-team provisioning; doctors and
    nutritionists are professionals who complete their own, shorter
    registration.  ``admin`` and ``super`` operate the pipeline.
    """
    ROLE_PATIENT = 'patient'
    ROLE_DOCTOR = 'doctor'
    ROLE_NUTRITIONIST = 'nutritionist'
    ROLE_ADMIN = 'admin'
    ROLE_SUPER = 'super'
    ROLE_CHOICES = [
        (ROLE_PATIENT, 'Patient'),
        (ROLE_DOCTOR, 'Doctor'),
        (ROLE_NUTRITIONIST, 'Nutritionist'),
        (ROLE_ADMIN, 'Administrator'),
        (ROLE_SUPER, 'Super Administrator'),
    ]
    PROFESSIONAL_ROLES = (ROLE_DOCTOR, ROLE_NUTRITIONIST)

    role = models.CharField(max_length=16, choices=ROLE_CHOICES, default=ROLE_PATIENT, db_index=True)

    @property
    def is_professional(self) -> bool:
        return self.role in self.PROFESSIONAL_ROLES

    def __str__(self) -> str:
        return f"{self.username} ({self.role})"


class SubjectProfile(models.Model):
    """Contact and payment details of a registering subject.

    ``registration_status`` is a cached hint for list screens.  It is
    rewritten from task state after every processing run and must never
    be used to decide completion; see ``services.status``.
    """
    PAYMENT_PENDING = 'pending'
    PAYMENT_COMPLETED = 'completed'
    PAYMENT_CHOICES = [
        (PAYMENT_PENDING, 'Pending'),
        (PAYMENT_COMPLETED, 'Completed'),
    ]

    user = models.OneToOneField(User, on_delete=models.CASCADE, related_name='subject_profile')
    phone = models.CharField(max_length=20, blank=True)
    payment_status = models.CharField(max_length=16, choices=PAYMENT_CHOICES, default=PAYMENT_PENDING)
    payment_reference = models.CharField(max_length=128, blank=True)
    registration_status = models.CharField(max_length=32, default='payment_pending', db_index=True)
    registration_completed_at = models.DateTimeField(null=True, blank=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self) -> str:
        return f"{self.user.username} [{self.registration_status}]"


class ProfessionalProfile(models.Model):
    """Professional details created by the ``setup_professional_profile`` task."""
    user = models.OneToOneField(User, on_delete=models.CASCADE, related_name='professional_profile')
    specialty = models.CharField(max_length=128, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self) -> str:
        return f"professional {self.user_id}"


class DefaultCareTeam(models.Model):
    """The doctor/nutritionist pair new patients are assigned to.

    Only the most recent active row is used.  Installing a new team
    through the ``setup_default_care_team`` command deactivates others.
    """
    doctor = models.ForeignKey(User, on_delete=models.PROTECT, related_name='+')
    nutritionist = models.ForeignKey(User, null=True, blank=True, on_delete=models.PROTECT, related_name='+')
    is_active = models.BooleanField(default=True, db_index=True)
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self) -> str:
        return f"default team d={self.doctor_id} n={self.nutritionist_id} active={self.is_active}"


class RegistrationTask(models.Model):
    """One unit of post-payment provisioning work for a subject.

    ``(subject, task_type)`` is unique: tasks are upserted, claimed by a
    compare-and-swap on ``status`` and never deleted.
    """
    TYPE_ASSIGN_CARE_TEAM = 'assign_care_team'
    TYPE_CREATE_CHAT_ROOM = 'create_chat_room'
    TYPE_SEND_WELCOME_NOTIFICATION = 'send_welcome_notification'
    TYPE_SETUP_PROFESSIONAL_PROFILE = 'setup_professional_profile'
    TYPE_CHOICES = [
        (TYPE_ASSIGN_CARE_TEAM, 'Assign care team'),
        (TYPE_CREATE_CHAT_ROOM, 'Create chat room'),
        (TYPE_SEND_WELCOME_NOTIFICATION, 'Send welcome notification'),
        (TYPE_SETUP_PROFESSIONAL_PROFILE, 'Set up professional profile'),
    ]

    STATUS_PENDING = 'pending'
    STATUS_IN_PROGRESS = 'in_progress'
    STATUS_COMPLETED = 'completed'
    STATUS_FAILED = 'failed'
    STATUS_CHOICES = [
        (STATUS_PENDING, 'Pending'),
        (STATUS_IN_PROGRESS, 'In progress'),
        (STATUS_COMPLETED, 'Completed'),
        (STATUS_FAILED, 'Failed'),
    ]

    subject = models.ForeignKey(User, on_delete=models.CASCADE, related_name='registration_tasks')
    task_type = models.CharField(max_length=32, choices=TYPE_CHOICES)
    status = models.CharField(max_length=16, choices=STATUS_CHOICES, default=STATUS_PENDING)
    priority = models.PositiveSmallIntegerField(default=1)
    retry_count = models.PositiveIntegerField(default=0)
    next_retry_at = models.DateTimeField(default=timezone.now)
    result_payload = models.JSONField(null=True, blank=True)
    error_details = models.JSONField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=['subject', 'task_type'], name='uniq_registration_task_per_subject'),
        ]
        indexes = [
            models.Index(fields=['status', 'next_retry_at', 'created_at'], name='regtask_claim_idx'),
            models.Index(fields=['subject', 'status', 'priority'], name='regtask_subject_idx'),
        ]

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'subjectId': self.subject_id,
            'taskType': self.task_type,
            'status': self.status,
            'priority': self.priority,
            'retryCount': self.retry_count,
            'nextRetryAt': self.next_retry_at.isoformat() if self.next_retry_at else None,
            'result': self.result_payload,
            'error': self.error_details,
            'createdAt': self.created_at.isoformat() if self.created_at else None,
            'updatedAt': self.updated_at.isoformat() if self.updated_at else None,
        }

    def __str__(self) -> str:
        return f"{self.task_type}:{self.subject_id} [{self.status}]"


class CareTeamAssignment(models.Model):
    """The doctor (and optional nutritionist) looking after a patient."""
    subject = models.OneToOneField(User, on_delete=models.CASCADE, related_name='care_team')
    doctor = models.ForeignKey(
        User, null=True, blank=True, on_delete=models.SET_NULL, related_name='doctor_assignments'
    )
    nutritionist = models.ForeignKey(
        User, null=True, blank=True, on_delete=models.SET_NULL, related_name='nutritionist_assignments'
    )
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self) -> str:
        return f"care team p={self.subject_id} d={self.doctor_id} n={self.nutritionist_id}"


class ChatRoom(models.Model):
    TYPE_CARE_TEAM = 'care_team'
    TYPE_CHOICES = ((TYPE_CARE_TEAM, 'Care team'),)

    subject = models.ForeignKey(User, on_delete=models.CASCADE, related_name='chat_rooms')
    room_type = models.CharField(max_length=16, choices=TYPE_CHOICES, default=TYPE_CARE_TEAM)
    name = models.CharField(max_length=255, blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=['subject', 'room_type'], name='uniq_chat_room_per_subject'),
        ]

    def __str__(self) -> str:
        return f"room {self.id} ({self.room_type}) p={self.subject_id}"


class ChatRoomMember(models.Model):
    ROLE_CHOICES = [
        (User.ROLE_PATIENT, 'Patient'),
        (User.ROLE_DOCTOR, 'Doctor'),
        (User.ROLE_NUTRITIONIST, 'Nutritionist'),
        (User.ROLE_ADMIN, 'Administrator'),
    ]
    room = models.ForeignKey(ChatRoom, on_delete=models.CASCADE, related_name='members')
    user = models.ForeignKey(User, on_delete=models.CASCADE, related_name='chat_memberships')
    role = models.CharField(max_length=16, choices=ROLE_CHOICES)
    joined_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=['room', 'user'], name='uniq_chat_room_member'),
        ]

    def __str__(self) -> str:
        return f"{self.user_id} in room {self.room_id} as {self.role}"


class AuditEvent(models.Model):
    user = models.ForeignKey(User, on_delete=models.SET_NULL, null=True, blank=True)
    action = models.CharField(max_length=64)
    object_type = models.CharField(max_length=64, blank=True, null=True)
    object_id = models.IntegerField(blank=True, null=True)
    detail = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [
            models.Index(fields=['action', 'created_at'], name='audit_action_idx'),
            models.Index(fields=['object_type', 'object_id', 'created_at'], name='audit_object_idx'),
        ]

    def __str__(self) -> str:
        return f"{self.action}:{self.object_type}#{self.object_id}"
