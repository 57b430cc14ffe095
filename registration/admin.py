"""
Django admin registrations for the registration models.

Tasks are the main thing an operator inspects here: the list shows
status, retry count and next retry time so a stuck subject is easy to
spot.  Repairs should go through the API or management commands, which
keep the task store consistent.
"""

from django.contrib import admin

from .models import (
    User,
    SubjectProfile,
    ProfessionalProfile,
    DefaultCareTeam,
    RegistrationTask,
    CareTeamAssignment,
    ChatRoom,
    ChatRoomMember,
    AuditEvent,
)


@admin.register(User)
class UserAdmin(admin.ModelAdmin):
    list_display = ('username', 'role', 'email', 'is_staff', 'is_superuser')
    list_filter = ('role',)
    search_fields = ('username', 'first_name', 'last_name', 'email')


@admin.register(SubjectProfile)
class SubjectProfileAdmin(admin.ModelAdmin):
    list_display = ('user', 'payment_status', 'registration_status', 'registration_completed_at')
    list_filter = ('payment_status', 'registration_status')
    search_fields = ('user__username', 'phone', 'payment_reference')


@admin.register(ProfessionalProfile)
class ProfessionalProfileAdmin(admin.ModelAdmin):
    list_display = ('user', 'specialty', 'created_at')
    search_fields = ('user__username', 'specialty')


@admin.register(DefaultCareTeam)
class DefaultCareTeamAdmin(admin.ModelAdmin):
    list_display = ('id', 'doctor', 'nutritionist', 'is_active', 'created_at')
    list_filter = ('is_active',)


@admin.register(RegistrationTask)
class RegistrationTaskAdmin(admin.ModelAdmin):
    list_display = ('id', 'subject', 'task_type', 'status', 'priority', 'retry_count', 'next_retry_at')
    list_filter = ('status', 'task_type')
    search_fields = ('id', 'subject__username')
    readonly_fields = ('result_payload', 'error_details', 'created_at', 'updated_at')


@admin.register(CareTeamAssignment)
class CareTeamAssignmentAdmin(admin.ModelAdmin):
    list_display = ('subject', 'doctor', 'nutritionist', 'created_at')
    search_fields = ('subject__username', 'doctor__username', 'nutritionist__username')


class ChatRoomMemberInline(admin.TabularInline):
    model = ChatRoomMember
    extra = 0


@admin.register(ChatRoom)
class ChatRoomAdmin(admin.ModelAdmin):
    list_display = ('id', 'subject', 'room_type', 'name', 'is_active', 'created_at')
    list_filter = ('room_type', 'is_active')
    search_fields = ('id', 'name', 'subject__username')
    inlines = [ChatRoomMemberInline]


@admin.register(AuditEvent)
class AuditEventAdmin(admin.ModelAdmin):
    list_display = ('id', 'action', 'object_type', 'object_id', 'user', 'created_at')
    list_filter = ('action', 'object_type')
    search_fields = ('action', 'user__username')
