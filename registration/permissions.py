"""
Permission classes for the registration API.
"""
import hmac

from django.conf import settings
from rest_framework.permissions import BasePermission

ADMIN_ROLES = {"admin", "super"}


def is_admin(user) -> bool:
    return bool(user and user.is_authenticated and getattr(user, "role", None) in ADMIN_ROLES)


class IsAdminRole(BasePermission):
    """Allow access only to users with an administrative role."""
    def has_permission(self, request, view) -> bool:  # type: ignore[override]
        return is_admin(getattr(request, "user", None))


class HasWebhookSecret(BasePermission):
    """Payment provider callbacks carrying the shared ``X-Webhook-Secret``."""
    def has_permission(self, request, view) -> bool:  # type: ignore[override]
        expected = getattr(settings, "PAYMENT_WEBHOOK_SECRET", "")
        given = request.headers.get("X-Webhook-Secret", "")
        return bool(expected) and hmac.compare_digest(given.encode(), expected.encode())
