from decimal import Decimal

import pytest

ADDRESS = {
    "street": "1 Market St",
    "city": "Springfield",
    "state": "IL",
    "zipCode": "62701",
    "country": "US",
}


class RecordingNotifier:
    """Notification port fake that keeps every event for assertions."""

    def __init__(self):
        self.sent = []

    def notify(self, event, recipient_id, payload):
        self.sent.append((event, recipient_id, payload))


@pytest.fixture(autouse=True)
def use_stubs_for_tests(settings, monkeypatch):
    from django.core.cache import cache

    from apps.orders import providers
    from apps.orders.adapters import PaymentGatewayStub
    from apps.orders.http_adapters import payment_gateway_breaker

    settings.USE_HTTP_ADAPTERS = False
    settings.HTTP_RETRY_BACKOFF_BASE = 0.0
    settings.PAYMENT_WEBHOOK_SECRET = "test-webhook-secret"
    settings.ORDER_CANCELLABLE_STATUSES = ["draft", "pending_payment", "paid", "processing"]
    # Fresh in-process ports per test; views reach them through providers
    monkeypatch.setattr(providers, "_gateway_stub", PaymentGatewayStub())
    monkeypatch.setattr(providers, "_notifier", RecordingNotifier())
    payment_gateway_breaker.reset()
    cache.clear()
    yield
    payment_gateway_breaker.reset()


@pytest.fixture
def gateway():
    from apps.orders import providers

    return providers._gateway_stub


@pytest.fixture
def notifier():
    from apps.orders import providers

    return providers._notifier


@pytest.fixture
def make_product(db):
    from apps.orders.models import Product

    def _make(seller_id="seller-1", stock=10, price="10.00", title="Widget", **kw):
        return Product.objects.create(
            seller_id=seller_id, stock=stock, price=Decimal(price), title=title, **kw
        )

    return _make


@pytest.fixture
def order_payload():
    def _payload(buyer_id="buyer-1", **overrides):
        body = {
            "buyerId": buyer_id,
            "shippingAddress": dict(ADDRESS),
            "phoneNumber": "+1 555-0100",
            "notes": "Leave at the door",
        }
        body.update(overrides)
        return body

    return _payload


@pytest.fixture
def place_order(db, order_payload):
    """Fill a buyer's cart and build a draft order through the services."""
    from apps.orders.builder import OrderBuilder
    from apps.orders.cart import CartStore
    from apps.orders.schemas import CreateOrderDTO

    def _place(buyer_id, lines, notifier=None):
        cart = CartStore()
        for product, qty in lines:
            cart.add_item(buyer_id, product.pk, qty)
        details = CreateOrderDTO.model_validate(order_payload(buyer_id)).to_domain()
        return OrderBuilder(notifier=notifier).build(details)

    return _place
