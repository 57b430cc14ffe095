from django.db import connections
from django.http import JsonResponse

from ..apps import get_pipeline


def healthz(request):
    try:
        with connections['default'].cursor() as c:
            c.execute('SELECT 1')
            row = c.fetchone()
    except Exception as e:
        return JsonResponse({'ok': False, 'error': str(e)}, status=500)
    open_circuits = sorted(
        name for name, snap in get_pipeline().breakers.snapshot().items() if snap['state'] != 'closed'
    )
    return JsonResponse({'ok': True, 'db': bool(row and row[0] == 1), 'openCircuits': open_circuits})
