"""Payment synchronization and client-side polling tests."""
import threading

import pytest

from apps.orders.domain import (
    Actor,
    GatewayPaymentStatus,
    GatewayStatusReport,
    NotFound,
    StatusSetCancellationPolicy,
    TransientNetworkError,
)
from apps.orders.models import OrderModel
from apps.orders.reconciler import CancellationReconciler
from apps.orders.sync import PaymentPoller, PaymentStatusSynchronizer, PollOutcome


@pytest.fixture
def pending_order(make_product, place_order, gateway):
    p = make_product(stock=5)
    order = place_order("buyer-1", [(p, 1)])
    PaymentStatusSynchronizer(gateway).mark_for_checkout(order.pk, Actor.buyer("buyer-1"))
    order.refresh_from_db()
    return order


@pytest.mark.django_db
def test_checkout_returns_payment_url(make_product, place_order, gateway, settings):
    settings.PAYMENT_PAGE_URL = "https://pay.example/checkout?o={order_id}&b={buyer_id}"
    p = make_product()
    order = place_order("buyer-1", [(p, 1)])
    updated, url = PaymentStatusSynchronizer(gateway).mark_for_checkout(order.pk, Actor.buyer("buyer-1"))
    assert updated.status == "pending_payment"
    assert url == f"https://pay.example/checkout?o={order.pk}&b=buyer-1"


@pytest.mark.django_db
def test_tick_while_gateway_pending_changes_nothing(pending_order, gateway):
    order = PaymentStatusSynchronizer(gateway).check_payment_status(pending_order.pk)
    assert (order.status, order.payment_status) == ("pending_payment", "unpaid")


@pytest.mark.django_db
def test_tick_after_capture_marks_paid(pending_order, gateway):
    report = gateway.capture(pending_order.pk)
    order = PaymentStatusSynchronizer(gateway).check_payment_status(pending_order.pk)
    assert (order.status, order.payment_status) == ("paid", "paid")
    assert order.payment_id == report.payment_id


@pytest.mark.django_db
def test_failed_payment_keeps_order_open_for_retry(pending_order, gateway):
    gateway.fail(pending_order.pk)
    sync = PaymentStatusSynchronizer(gateway)
    order = sync.check_payment_status(pending_order.pk)
    assert (order.status, order.payment_status) == ("pending_payment", "failed")

    # Buyer tries again and succeeds
    gateway.capture(pending_order.pk)
    order = sync.check_payment_status(pending_order.pk)
    assert order.status == "paid"


@pytest.mark.django_db
def test_late_failure_never_overrides_capture(pending_order, gateway):
    sync = PaymentStatusSynchronizer(gateway)
    sync.record(GatewayStatusReport(str(pending_order.pk), GatewayPaymentStatus.PAID, "pay_1"))
    order = sync.record(GatewayStatusReport(str(pending_order.pk), GatewayPaymentStatus.FAILED))
    assert (order.status, order.payment_status, order.payment_id) == ("paid", "paid", "pay_1")


@pytest.mark.django_db
def test_duplicate_paid_report_is_idempotent(pending_order, gateway):
    sync = PaymentStatusSynchronizer(gateway)
    report = GatewayStatusReport(str(pending_order.pk), GatewayPaymentStatus.PAID, "pay_1")
    sync.record(report)
    order = sync.record(report)
    assert order.status == "paid"
    assert order.events.filter(to_status="paid").count() == 1


@pytest.mark.django_db
def test_payment_after_cancellation_is_refunded(pending_order, gateway):
    CancellationReconciler(StatusSetCancellationPolicy(["pending_payment"])).cancel_order(pending_order.pk, "buyer-1")
    order = PaymentStatusSynchronizer(gateway).record(
        GatewayStatusReport(str(pending_order.pk), GatewayPaymentStatus.PAID, "pay_late")
    )
    assert (order.status, order.payment_status) == ("cancelled", "refunded")


@pytest.mark.django_db
def test_tick_unknown_order_is_not_found(gateway):
    with pytest.raises(NotFound):
        PaymentStatusSynchronizer(gateway).check_payment_status("00000000-0000-0000-0000-000000000000")


@pytest.mark.django_db
def test_tick_propagates_gateway_outage(pending_order):
    class DownGateway:
        def payment_url(self, order_id, buyer_id):
            return ""

        def fetch_status(self, order_id):
            raise TransientNetworkError()

    with pytest.raises(TransientNetworkError):
        PaymentStatusSynchronizer(DownGateway()).check_payment_status(pending_order.pk)


# ---- poller ----

@pytest.mark.django_db
def test_poller_times_out_and_leaves_order_pending(pending_order, gateway):
    sync = PaymentStatusSynchronizer(gateway)
    calls = {"n": 0}

    def check():
        calls["n"] += 1
        return sync.check_payment_status(pending_order.pk)

    result = PaymentPoller(check, interval=0, max_attempts=60, error_budget=5).run()

    assert result.outcome == PollOutcome.TIMED_OUT
    assert result.attempts == calls["n"] == 60
    assert result.message == "Payment pending, check your orders later"
    order = OrderModel.objects.get(pk=pending_order.pk)
    assert (order.status, order.payment_status) == ("pending_payment", "unpaid")


@pytest.mark.django_db
def test_poller_stops_on_paid(pending_order, gateway):
    sync = PaymentStatusSynchronizer(gateway)
    calls = {"n": 0}

    def check():
        calls["n"] += 1
        if calls["n"] == 3:
            gateway.capture(pending_order.pk)
        return sync.check_payment_status(pending_order.pk)

    result = PaymentPoller(check, interval=0, max_attempts=60).run()
    assert result.outcome == PollOutcome.PAID
    assert result.attempts == 3
    assert result.last_seen.status == "paid"


def test_poller_error_budget_counts_consecutive_failures():
    seq = iter(["err", "err", {"paymentStatus": "unpaid"}, "err", "err", "err"])

    def check():
        item = next(seq)
        if item == "err":
            raise TransientNetworkError()
        return item

    result = PaymentPoller(check, interval=0, max_attempts=60, error_budget=3).run()
    assert result.outcome == PollOutcome.ERROR_BUDGET_EXHAUSTED
    assert result.attempts == 6
    assert isinstance(result.last_error, TransientNetworkError)


def test_poller_other_errors_propagate():
    def check():
        raise RuntimeError("bug")

    with pytest.raises(RuntimeError):
        PaymentPoller(check, interval=0, max_attempts=3).run()


def test_poller_accepts_api_json():
    result = PaymentPoller(lambda: {"paymentStatus": "paid"}, interval=0, max_attempts=2).run()
    assert result.outcome == PollOutcome.PAID


def test_poller_cancel_interrupts_wait():
    started = threading.Event()

    def check():
        started.set()
        return {"paymentStatus": "unpaid"}

    poller = PaymentPoller(check, interval=30, max_attempts=60)
    poller.start()
    poller.cancel()
    result = poller.join(timeout=5)

    assert result is not None
    assert result.outcome == PollOutcome.CANCELLED
    assert not started.is_set()
    assert poller.cancelled
