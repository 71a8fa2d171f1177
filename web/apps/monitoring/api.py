from django.db import DatabaseError, connection
from django.http import JsonResponse

from apps.orders.http_adapters import CLOSED, payment_gateway_breaker


def live_view(_request):
    """Process liveness only; touches neither the db nor the gateway."""
    return JsonResponse({"ok": True})


def health_view(_request):
    db_ok = False
    try:
        with connection.cursor() as cur:
            cur.execute("SELECT 1;")
        db_ok = True
    except DatabaseError:
        db_ok = False

    # An open circuit degrades payment sync only; the service stays up
    circuit = payment_gateway_breaker.state
    code = 200 if db_ok else 503
    return JsonResponse(
        {
            "ok": db_ok,
            "components": {
                "db": {"ok": db_ok},
                "payment_gateway": {"ok": circuit == CLOSED, "circuit": circuit},
            },
        },
        status=code,
    )
