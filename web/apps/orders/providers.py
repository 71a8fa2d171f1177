"""Service provider helpers wiring the lifecycle services with their ports.

Views never build services themselves; they ask these factories. When
``settings.USE_HTTP_ADAPTERS`` is truthy the payment gateway is reached
over HTTP (``HttpPaymentGatewayClient``); otherwise a process-wide
``PaymentGatewayStub`` is used, which tests drive directly through
``get_gateway()``.
"""

from django.conf import settings

from .adapters import LoggingNotifier, PaymentGatewayStub
from .builder import OrderBuilder
from .cart import CartStore
from .domain import (
    CancellationPolicy,
    NotificationPort,
    PaymentGatewayPort,
    StatusSetCancellationPolicy,
)
from .http_adapters import HttpPaymentGatewayClient
from .ledger import StockLedger
from .reconciler import CancellationReconciler
from .repository import OrderReadRepository
from .state_machine import OrderStateMachine
from .sync import PaymentStatusSynchronizer

_gateway_stub = PaymentGatewayStub()
_notifier = LoggingNotifier()


def get_gateway() -> PaymentGatewayPort:
    if getattr(settings, "USE_HTTP_ADAPTERS", False):
        return HttpPaymentGatewayClient()
    return _gateway_stub


def get_notifier() -> NotificationPort:
    return _notifier


def get_cancellation_policy() -> CancellationPolicy:
    """Build the policy from ``settings.ORDER_CANCELLABLE_STATUSES``.

    The setting accepts a comma-separated string or an iterable. It has no
    default on purpose: a missing value raises ``ValueError``.
    """
    raw = getattr(settings, "ORDER_CANCELLABLE_STATUSES", None)
    if isinstance(raw, str):
        raw = [s.strip() for s in raw.split(",") if s.strip()]
    return StatusSetCancellationPolicy(raw)


def get_ledger() -> StockLedger:
    return StockLedger(max_units=getattr(settings, "STOCK_MAX_UNITS", None))


def get_cart_store() -> CartStore:
    return CartStore()


def get_state_machine() -> OrderStateMachine:
    return OrderStateMachine(notifier=get_notifier())


def get_order_builder() -> OrderBuilder:
    return OrderBuilder(ledger=get_ledger(), notifier=get_notifier())


def get_synchronizer() -> PaymentStatusSynchronizer:
    return PaymentStatusSynchronizer(get_gateway(), state_machine=get_state_machine())


def get_reconciler() -> CancellationReconciler:
    return CancellationReconciler(
        get_cancellation_policy(),
        ledger=get_ledger(),
        state_machine=get_state_machine(),
        notifier=get_notifier(),
    )


def get_read_repository() -> OrderReadRepository:
    return OrderReadRepository()
