"""Checkout tests: all-or-nothing stock reservation, price snapshots and the
last-unit race between two buyers."""
from decimal import Decimal

import pytest

from apps.orders.builder import OrderBuilder
from apps.orders.cart import CartStore
from apps.orders.domain import CannotBuyOwnProduct, InsufficientStock, ProductNotFound, ValidationError
from apps.orders.models import CartItem, OrderModel, Product, ProductOrder
from apps.orders.notifications import ORDER_PLACED, ORDER_RECEIVED
from apps.orders.schemas import CreateOrderDTO


def _details(order_payload, buyer_id):
    return CreateOrderDTO.model_validate(order_payload(buyer_id)).to_domain()


@pytest.mark.django_db
def test_build_creates_draft_with_one_line_per_product(make_product, place_order):
    a = make_product(seller_id="s1", stock=5, price="3.00")
    b = make_product(seller_id="s2", stock=10, price="4.50")
    order = place_order("buyer-1", [(a, 2), (b, 3)])

    assert order.status == "draft"
    assert order.payment_status == "unpaid"
    assert order.total_amount == Decimal("19.50")
    lines = {po.product_id: po for po in order.product_orders.all()}
    assert lines[a.pk].seller_id == "s1" and lines[a.pk].total_price == Decimal("6.00")
    assert lines[b.pk].status == "pending"
    a.refresh_from_db()
    b.refresh_from_db()
    assert (a.stock, b.stock) == (3, 7)
    # Consumed cart lines are gone
    assert not CartItem.objects.filter(buyer_id="buyer-1").exists()


@pytest.mark.django_db
def test_one_short_line_aborts_whole_checkout(make_product, order_payload):
    a = make_product(stock=5)
    b = make_product(stock=1, title="Rare")
    cart = CartStore()
    cart.add_item("buyer-1", a.pk, 2)
    cart.add_item("buyer-1", b.pk, 2)

    with pytest.raises(InsufficientStock) as ei:
        OrderBuilder().build(_details(order_payload, "buyer-1"))
    assert ei.value.product_id == str(b.pk)
    assert ei.value.available == 1

    a.refresh_from_db()
    b.refresh_from_db()
    assert (a.stock, b.stock) == (5, 1)
    assert OrderModel.objects.count() == 0
    assert ProductOrder.objects.count() == 0
    # Cart survives so the buyer can adjust it
    assert CartItem.objects.filter(buyer_id="buyer-1").count() == 2


@pytest.mark.django_db
def test_last_unit_goes_to_exactly_one_buyer(make_product, order_payload):
    p = make_product(stock=1)
    cart = CartStore()
    cart.add_item("buyer-1", p.pk, 1)
    cart.add_item("buyer-2", p.pk, 1)
    builder = OrderBuilder()

    first = builder.build(_details(order_payload, "buyer-1"))
    with pytest.raises(InsufficientStock):
        builder.build(_details(order_payload, "buyer-2"))

    p.refresh_from_db()
    assert p.stock == 0
    assert list(OrderModel.objects.values_list("id", flat=True)) == [first.pk]


@pytest.mark.django_db
def test_stale_cart_snapshot_does_not_oversell(make_product, order_payload):
    p = make_product(stock=3)
    cart = CartStore()
    cart.add_item("buyer-1", p.pk, 3)
    snap = cart.snapshot("buyer-1")
    assert not snap.lines[0].exceeds_stock
    # Stock sold elsewhere after the snapshot was taken
    Product.objects.filter(pk=p.pk).update(stock=2)

    with pytest.raises(InsufficientStock):
        OrderBuilder().build(_details(order_payload, "buyer-1"))
    p.refresh_from_db()
    assert p.stock == 2


@pytest.mark.django_db
def test_price_is_snapshotted_at_checkout(make_product, place_order):
    p = make_product(price="10.00")
    order = place_order("buyer-1", [(p, 2)])
    Product.objects.filter(pk=p.pk).update(price=Decimal("99.00"))

    order.refresh_from_db()
    line = order.product_orders.get()
    assert line.unit_price == Decimal("10.00")
    assert order.total_amount == Decimal("20.00")


@pytest.mark.django_db
def test_empty_cart_is_rejected(order_payload):
    with pytest.raises(ValidationError) as ei:
        OrderBuilder().build(_details(order_payload, "buyer-1"))
    assert str(ei.value) == "EMPTY_CART"


@pytest.mark.django_db
def test_own_product_rejected_at_checkout(make_product, order_payload):
    p = make_product(seller_id="seller-9")
    CartItem.objects.create(buyer_id="seller-9", product=p, quantity=1)
    with pytest.raises(CannotBuyOwnProduct):
        OrderBuilder().build(_details(order_payload, "seller-9"))
    p.refresh_from_db()
    assert p.stock == 10


@pytest.mark.django_db
def test_deactivated_product_rejected_at_checkout(make_product, place_order):
    p = make_product()
    CartStore().add_item("buyer-1", p.pk, 1)
    Product.objects.filter(pk=p.pk).update(is_active=False)
    with pytest.raises(ProductNotFound):
        place_order("buyer-1", [])


@pytest.mark.django_db
def test_notifications_sent_after_commit(make_product, place_order, notifier, django_capture_on_commit_callbacks):
    a = make_product(seller_id="s1")
    b = make_product(seller_id="s2")
    with django_capture_on_commit_callbacks(execute=True):
        order = place_order("buyer-1", [(a, 1), (b, 1)], notifier=notifier)

    events = [(e, r) for e, r, _ in notifier.sent]
    assert (ORDER_PLACED, "buyer-1") in events
    assert (ORDER_RECEIVED, "s1") in events and (ORDER_RECEIVED, "s2") in events
    assert notifier.sent[0][2]["order_id"] == str(order.pk)


@pytest.mark.django_db
def test_failing_notifier_does_not_undo_order(make_product, place_order, django_capture_on_commit_callbacks):
    class Broken:
        def notify(self, event, recipient_id, payload):
            raise RuntimeError("smtp down")

    p = make_product()
    with django_capture_on_commit_callbacks(execute=True):
        order = place_order("buyer-1", [(p, 1)], notifier=Broken())
    assert OrderModel.objects.filter(pk=order.pk).exists()
