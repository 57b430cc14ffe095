from typing import Optional, Any, Dict
from django.contrib.auth import get_user_model
from registration.models import AuditEvent

User = get_user_model()

def log_action(*, user: Optional[User], action: str, object_type: Optional[str]=None, object_id: Optional[int]=None, detail: Optional[Dict[str, Any]]=None) -> AuditEvent:
    """Record a pipeline or administrator action.

    ``user`` may be None for actions taken by the pipeline itself or by
    an unauthenticated webhook caller.
    """
    return AuditEvent.objects.create(
        user=user if getattr(user, 'pk', None) else None,
        action=action,
        object_type=object_type, object_id=object_id,
        detail=detail or {},
    )
