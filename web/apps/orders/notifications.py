"""Fire-and-forget dispatch of lifecycle events.

Events are sent only once the surrounding transaction commits, so a rolled
back checkout never announces an order, and a failing notifier never undoes
or fails the operation that triggered it.
"""

import logging

from django.db import transaction

from .domain import NotificationPort

logger = logging.getLogger(__name__)

ORDER_PLACED = "order_placed"
ORDER_RECEIVED = "order_received"
ORDER_PAID = "order_paid"
ORDER_CANCELLED = "order_cancelled"


def dispatch_on_commit(notifier: NotificationPort | None, event: str, recipient_id: str, payload: dict) -> None:
    if notifier is None:
        return

    def _send():
        try:
            notifier.notify(event, recipient_id, payload)
        except Exception:
            logger.exception("notification failed", extra={"event": event, "recipient_id": recipient_id})

    transaction.on_commit(_send)
