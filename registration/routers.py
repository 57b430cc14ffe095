"""
URL mappings for the registration API.

Trailing slashes are omitted to match the client endpoints.
"""
from django.urls import path, include

from .views import health
from .views.registration import (
    payment_registration_complete,
    registration_status,
    enqueue_tasks,
    process_tasks,
    process_next_task,
    reset_stuck,
    retry_failed,
    sync_care_team_rooms,
    circuit_breakers,
    reset_circuit_breakers,
)

urlpatterns = [
    path('healthz', health.healthz),
    path('', include('django_prometheus.urls')),

    # payment provider callback
    path('api/payments/registration-complete', payment_registration_complete),

    path('api/registration/status', registration_status),
    path('api/registration/tasks/enqueue', enqueue_tasks),
    path('api/registration/tasks/process', process_tasks),
    path('api/registration/tasks/process-next', process_next_task),
    path('api/registration/tasks/reset-stuck', reset_stuck),
    path('api/registration/tasks/retry-failed', retry_failed),

    path('api/care-team/rooms/sync', sync_care_team_rooms),

    path('api/admin/circuit-breakers', circuit_breakers),
    path('api/admin/circuit-breakers/reset', reset_circuit_breakers),
]
