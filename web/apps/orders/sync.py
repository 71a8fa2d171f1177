"""Payment status synchronization.

The payment page is hosted by the gateway, out of process, so this service
learns about completed payments in two ways: the gateway's webhook, or
polling. Both end up in ``PaymentStatusSynchronizer``:

- ``record`` stores what the gateway reported (paid / failed);
- ``check_payment_status`` is one poll tick: ask the gateway if nothing has
  been recorded yet, then move ``pending_payment → paid`` once the payment
  is captured.

``PaymentPoller`` is the client-side loop around a tick. It is bounded
(attempt cap), tolerant (consecutive transient-error budget) and
cancellable, and a timeout leaves the order untouched in
``pending_payment``/``unpaid`` for later resolution rather than failing it.
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from django.conf import settings
from django.db import transaction

from .domain import (
    Actor,
    GatewayPaymentStatus,
    GatewayStatusReport,
    NotFound,
    OrderStatus,
    PaymentGatewayPort,
    PaymentStatus,
    TransientNetworkError,
)
from .models import OrderModel
from .state_machine import OrderStateMachine, lock_order

logger = logging.getLogger(__name__)

SYNC_ACTOR = Actor.system("payment-sync")


class PaymentStatusSynchronizer:
    def __init__(self, gateway: PaymentGatewayPort, state_machine: OrderStateMachine | None = None):
        self.gateway = gateway
        self.state_machine = state_machine or OrderStateMachine()

    def mark_for_checkout(self, order_id, actor: Actor) -> tuple[OrderModel, str]:
        """Idempotently move ``draft → pending_payment`` and hand out the payment URL."""
        order = self.state_machine.mark_for_checkout(order_id, actor)
        return order, self.gateway.payment_url(str(order.pk), order.buyer_id)

    def check_payment_status(self, order_id) -> OrderModel:
        """One synchronization tick for an order.

        Only orders waiting for payment are looked at; any other order is
        returned as it is. The gateway call happens outside the row lock.

        Raises:
            NotFound: Unknown order.
            TransientNetworkError: The gateway could not be reached, refused
                the request or answered with an unreadable body.
        """
        try:
            order = OrderModel.objects.get(pk=order_id)
        except OrderModel.DoesNotExist:
            raise NotFound(orderId=str(order_id))
        if order.status != OrderStatus.PENDING_PAYMENT.value:
            return order

        if order.payment_status != PaymentStatus.PAID.value:
            report = self.gateway.fetch_status(str(order.pk))
            if report.status == GatewayPaymentStatus.PENDING:
                logger.info("payment still pending", extra={"order_id": str(order.pk)})
                return order
            return self.record(report)

        with transaction.atomic():
            return self._settle(lock_order(order.pk))

    @transaction.atomic
    def record(self, report: GatewayStatusReport) -> OrderModel:
        """Store a gateway report on the order and settle it if paid.

        A failed payment keeps the order in ``pending_payment`` so the buyer
        can retry; a late ``failed`` never overrides a captured payment.
        """
        order = lock_order(report.order_id)
        if report.status == GatewayPaymentStatus.PAID:
            if order.payment_status != PaymentStatus.PAID.value:
                if order.payment_status == PaymentStatus.REFUNDED.value:
                    logger.warning("payment captured for refunded order", extra={"order_id": str(order.pk)})
                    return order
                order.payment_id = report.payment_id or order.payment_id
                if order.status == OrderStatus.CANCELLED.value:
                    # Buyer paid after cancelling: money is owed back
                    order.payment_status = PaymentStatus.REFUNDED.value
                    order.save(update_fields=["payment_status", "payment_id", "updated_at"])
                    logger.warning("payment captured for cancelled order", extra={"order_id": str(order.pk)})
                    return order
                order.payment_status = PaymentStatus.PAID.value
                order.save(update_fields=["payment_status", "payment_id", "updated_at"])
                logger.info(
                    "payment captured",
                    extra={"order_id": str(order.pk), "payment_id": order.payment_id},
                )
        elif report.status == GatewayPaymentStatus.FAILED:
            if order.payment_status in (PaymentStatus.UNPAID.value, PaymentStatus.FAILED.value):
                order.payment_status = PaymentStatus.FAILED.value
                order.save(update_fields=["payment_status", "updated_at"])
                logger.warning("payment failed", extra={"order_id": str(order.pk)})
        return self._settle(order)

    def _settle(self, order: OrderModel) -> OrderModel:
        if (
            order.status == OrderStatus.PENDING_PAYMENT.value
            and order.payment_status == PaymentStatus.PAID.value
        ):
            self.state_machine.mark_paid(order, SYNC_ACTOR)
        return order


# ---------------- Client-side poller ---------------- #


class PollOutcome(str, Enum):
    PAID = "paid"
    TIMED_OUT = "timed_out"
    ERROR_BUDGET_EXHAUSTED = "error_budget_exhausted"
    CANCELLED = "cancelled"


@dataclass
class PollResult:
    outcome: PollOutcome
    attempts: int
    last_seen: Optional[Any] = None
    last_error: Optional[Exception] = None

    @property
    def message(self) -> str:
        if self.outcome == PollOutcome.PAID:
            return "Payment completed"
        if self.outcome == PollOutcome.CANCELLED:
            return "Stopped checking payment status"
        return "Payment pending, check your orders later"


def _payment_status_of(order: Any) -> Any:
    if isinstance(order, dict):
        return order.get("paymentStatus", order.get("payment_status"))
    return getattr(order, "payment_status", None)


class PaymentPoller:
    """Repeatedly runs a payment-status check until it resolves.

    Args:
        check: Zero-argument callable returning the current order (a model,
            DTO or the JSON dict from the orders API). It may raise
            ``TransientNetworkError``; anything else propagates.
        interval: Seconds between attempts.
        max_attempts: Hard cap on attempts, errored ones included.
        error_budget: Consecutive transient failures tolerated.
    """

    def __init__(
        self,
        check: Callable[[], Any],
        interval: float | None = None,
        max_attempts: int | None = None,
        error_budget: int | None = None,
    ):
        self.check = check
        self.interval = interval if interval is not None else getattr(settings, "PAYMENT_POLL_INTERVAL_SECS", 5)
        self.max_attempts = max_attempts or getattr(settings, "PAYMENT_POLL_MAX_ATTEMPTS", 60)
        self.error_budget = error_budget or getattr(settings, "PAYMENT_POLL_ERROR_BUDGET", 5)
        self._cancelled = threading.Event()
        self._thread: threading.Thread | None = None
        self.result: PollResult | None = None

    def cancel(self) -> None:
        """Stop polling; an in-flight wait returns immediately."""
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def run(self) -> PollResult:
        attempts = 0
        consecutive_errors = 0
        last_seen = None
        last_error = None

        while attempts < self.max_attempts:
            # Event.wait doubles as a cancellable sleep
            if self._cancelled.wait(self.interval):
                return self._finish(PollOutcome.CANCELLED, attempts, last_seen, last_error)
            attempts += 1
            try:
                last_seen = self.check()
            except TransientNetworkError as e:
                consecutive_errors += 1
                last_error = e
                logger.warning(
                    "payment poll error",
                    extra={"attempt": attempts, "consecutive_errors": consecutive_errors},
                )
                if consecutive_errors >= self.error_budget:
                    return self._finish(PollOutcome.ERROR_BUDGET_EXHAUSTED, attempts, last_seen, last_error)
                continue

            consecutive_errors = 0
            if _payment_status_of(last_seen) == PaymentStatus.PAID.value:
                return self._finish(PollOutcome.PAID, attempts, last_seen, None)

        return self._finish(PollOutcome.TIMED_OUT, attempts, last_seen, last_error)

    def start(self) -> threading.Thread:
        """Run in a daemon thread; read ``result`` after ``join()``."""
        self._thread = threading.Thread(target=self.run, name="payment-poller", daemon=True)
        self._thread.start()
        return self._thread

    def join(self, timeout: float | None = None) -> PollResult | None:
        if self._thread is not None:
            self._thread.join(timeout)
        return self.result

    def _finish(self, outcome: PollOutcome, attempts: int, last_seen, last_error) -> PollResult:
        self.result = PollResult(outcome, attempts, last_seen, last_error)
        logger.info("payment poll finished", extra={"outcome": outcome.value, "attempts": attempts})
        return self.result
