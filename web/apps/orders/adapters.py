"""In-process adapters for the orders domain ports.

These implement ``PaymentGatewayPort`` and ``NotificationPort`` without any
network calls. The gateway stub keeps its payment states in memory, which
lets tests and local development play the part of the hosted payment page
(``capture``/``fail``) deterministically.
"""

import logging
import threading
import uuid
from typing import Dict

from django.conf import settings

from .domain import (
    GatewayPaymentStatus,
    GatewayStatusReport,
    NotificationPort,
    PaymentGatewayPort,
)

logger = logging.getLogger(__name__)


def build_payment_url(order_id: str, buyer_id: str) -> str:
    """Fill the configured hosted-page template with order and buyer ids."""
    template = getattr(
        settings, "PAYMENT_PAGE_URL", "http://localhost:9002/pay?orderId={order_id}&buyerId={buyer_id}"
    )
    return template.format(order_id=order_id, buyer_id=buyer_id)


class PaymentGatewayStub(PaymentGatewayPort):
    """Stub implementation of ``PaymentGatewayPort``.

    Every order is ``pending`` until ``capture`` or ``fail`` is called for
    it. Thread-safe so a background poller can read while a test writes.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._payments: Dict[str, GatewayStatusReport] = {}

    def payment_url(self, order_id: str, buyer_id: str) -> str:
        return build_payment_url(str(order_id), str(buyer_id))

    def fetch_status(self, order_id: str) -> GatewayStatusReport:
        with self._lock:
            return self._payments.get(
                str(order_id), GatewayStatusReport(str(order_id), GatewayPaymentStatus.PENDING)
            )

    def capture(self, order_id: str) -> GatewayStatusReport:
        report = GatewayStatusReport(str(order_id), GatewayPaymentStatus.PAID, f"pay_{uuid.uuid4().hex[:16]}")
        with self._lock:
            self._payments[str(order_id)] = report
        return report

    def fail(self, order_id: str) -> GatewayStatusReport:
        report = GatewayStatusReport(str(order_id), GatewayPaymentStatus.FAILED)
        with self._lock:
            self._payments[str(order_id)] = report
        return report


class LoggingNotifier(NotificationPort):
    """Notification sink that only logs; the real dispatcher lives elsewhere.

    Keeps no state, so one instance can serve a worker for its whole life.
    """

    def notify(self, event: str, recipient_id: str, payload: dict) -> None:
        logger.info("notification dispatched", extra={"event": event, "recipient_id": recipient_id, "payload": payload})
