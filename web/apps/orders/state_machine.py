"""Order and fulfillment state machine.

Two levels of status are kept deliberately apart:

- the **order** status follows the payment lifecycle
  (``draft → pending_payment → paid``) and, past payment, the aggregated
  progress of its lines;
- each **product order** (one seller's line) carries its own fulfillment
  status, driven by that seller, so one seller can ship while another is
  still preparing.

Every change goes through the transition tables below; anything else raises
``IllegalTransition``. Each applied order transition is written to the
``OrderEvent`` audit trail with the actor who asked for it.
"""

import logging

from django.db import transaction
from django.utils import timezone

from .domain import (
    Actor,
    ActorRole,
    AlreadyTerminal,
    Forbidden,
    FulfillmentStatus,
    IllegalTransition,
    NotFound,
    NotificationPort,
    OrderStatus,
    PaymentStatus,
    TERMINAL_FULFILLMENT_STATUSES,
    TERMINAL_ORDER_STATUSES,
)
from .models import OrderEvent, OrderModel, ProductOrder
from .notifications import ORDER_PAID, dispatch_on_commit

logger = logging.getLogger(__name__)


ORDER_TRANSITIONS = {
    OrderStatus.DRAFT: frozenset({OrderStatus.PENDING_PAYMENT, OrderStatus.CANCELLED}),
    OrderStatus.PENDING_PAYMENT: frozenset({OrderStatus.PAID, OrderStatus.CANCELLED}),
    OrderStatus.PAID: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

FULFILLMENT_TRANSITIONS = {
    FulfillmentStatus.PENDING: frozenset({FulfillmentStatus.CONFIRMED, FulfillmentStatus.CANCELLED}),
    FulfillmentStatus.CONFIRMED: frozenset(
        {FulfillmentStatus.PROCESSING, FulfillmentStatus.SHIPPED, FulfillmentStatus.CANCELLED}
    ),
    FulfillmentStatus.PROCESSING: frozenset({FulfillmentStatus.SHIPPED, FulfillmentStatus.CANCELLED}),
    FulfillmentStatus.SHIPPED: frozenset({FulfillmentStatus.DELIVERED}),
    FulfillmentStatus.DELIVERED: frozenset(),
    FulfillmentStatus.CANCELLED: frozenset(),
}

# Order statuses reached by aggregating line progress, in order
FULFILLMENT_PROGRESSION = [
    OrderStatus.PAID,
    OrderStatus.PROCESSING,
    OrderStatus.SHIPPED,
    OrderStatus.DELIVERED,
]

_LINE_RANK = {
    FulfillmentStatus.PENDING: -1,
    FulfillmentStatus.CONFIRMED: 0,
    FulfillmentStatus.PROCESSING: 1,
    FulfillmentStatus.SHIPPED: 2,
    FulfillmentStatus.DELIVERED: 3,
}

# Lines can only be worked on once the buyer has paid
FULFILLABLE_ORDER_STATUSES = frozenset({OrderStatus.PAID, OrderStatus.PROCESSING, OrderStatus.SHIPPED})


def can_transition(current, target) -> bool:
    return OrderStatus(target) in ORDER_TRANSITIONS[OrderStatus(current)]


def assert_transition(current, target) -> None:
    if not can_transition(current, target):
        raise IllegalTransition(current, target)


def can_fulfill(current, target) -> bool:
    return FulfillmentStatus(target) in FULFILLMENT_TRANSITIONS[FulfillmentStatus(current)]


def aggregate_order_status(line_statuses) -> OrderStatus | None:
    """Order status implied by the fulfillment progress of its live lines.

    Cancelled lines are ignored. Returns None when the lines do not push the
    order past ``paid`` (or when every line is cancelled).
    """
    ranks = [_LINE_RANK[FulfillmentStatus(s)] for s in line_statuses if FulfillmentStatus(s) != FulfillmentStatus.CANCELLED]
    if not ranks:
        return None
    if min(ranks) >= _LINE_RANK[FulfillmentStatus.DELIVERED]:
        return OrderStatus.DELIVERED
    if min(ranks) >= _LINE_RANK[FulfillmentStatus.SHIPPED]:
        return OrderStatus.SHIPPED
    if max(ranks) >= _LINE_RANK[FulfillmentStatus.PROCESSING]:
        return OrderStatus.PROCESSING
    return None


def lock_order(order_id) -> OrderModel:
    """Fetch an order row with a row lock; must run inside a transaction."""
    try:
        return OrderModel.objects.select_for_update().get(pk=order_id)
    except OrderModel.DoesNotExist:
        raise NotFound(orderId=str(order_id))


class OrderStateMachine:
    """Applies validated status changes to orders and product orders."""

    def __init__(self, notifier: NotificationPort | None = None):
        self.notifier = notifier

    def transition(self, order: OrderModel, target: OrderStatus, actor: Actor, reason: str = "") -> OrderModel:
        """Move a (locked) order to ``target`` or raise ``IllegalTransition``.

        The caller is responsible for holding the row lock; this method only
        validates, writes and records.
        """
        current = OrderStatus(order.status)
        target = OrderStatus(target)
        if current in TERMINAL_ORDER_STATUSES:
            raise AlreadyTerminal(orderId=str(order.pk), status=current.value)
        assert_transition(current, target)

        order.status = target.value
        order.save(update_fields=["status", "updated_at"])
        OrderEvent.objects.create(
            order=order,
            from_status=current.value,
            to_status=target.value,
            actor_id=actor.id,
            actor_role=actor.role.value,
            reason=reason,
        )
        logger.info(
            "order transition",
            extra={
                "order_id": str(order.pk),
                "from_status": current.value,
                "to_status": target.value,
                "actor_id": actor.id,
                "actor_role": actor.role.value,
            },
        )
        return order

    @transaction.atomic
    def mark_for_checkout(self, order_id, actor: Actor) -> OrderModel:
        """``draft → pending_payment``; a no-op if the order is already there.

        Duplicate clicks from a client therefore succeed instead of erroring.
        """
        order = lock_order(order_id)
        if actor.role == ActorRole.BUYER and actor.id != order.buyer_id:
            raise Forbidden(orderId=str(order.pk))
        if order.status == OrderStatus.PENDING_PAYMENT.value:
            logger.info("checkout already marked", extra={"order_id": str(order.pk)})
            return order
        return self.transition(order, OrderStatus.PENDING_PAYMENT, actor)

    def mark_paid(self, order: OrderModel, actor: Actor) -> OrderModel:
        """``pending_payment → paid`` for a locked order whose payment is recorded.

        Confirms every pending line, since sellers can only act on paid orders.
        """
        if order.payment_status != PaymentStatus.PAID.value:
            raise IllegalTransition(order.status, OrderStatus.PAID, message="Payment has not been captured")
        self.transition(order, OrderStatus.PAID, actor)
        order.paid_at = timezone.now()
        order.save(update_fields=["paid_at", "updated_at"])
        order.product_orders.filter(status=FulfillmentStatus.PENDING.value).update(
            status=FulfillmentStatus.CONFIRMED.value, updated_at=timezone.now()
        )
        dispatch_on_commit(
            self.notifier,
            ORDER_PAID,
            order.buyer_id,
            {"order_id": str(order.pk), "total_amount": str(order.total_amount)},
        )
        return order

    @transaction.atomic
    def update_fulfillment(self, product_order_id, target, seller_id: str) -> ProductOrder:
        """Seller moves one of their lines forward; the order follows.

        Cancellation is not accepted here: it must go through the
        reconciler, which gives the line's stock back.
        """
        target = FulfillmentStatus(target)
        # Lock order before line, the same order the reconciler uses
        order_id = ProductOrder.objects.filter(pk=product_order_id).values_list("order_id", flat=True).first()
        if order_id is None:
            raise NotFound(productOrderId=str(product_order_id))
        order = lock_order(order_id)
        line = ProductOrder.objects.select_for_update().get(pk=product_order_id)
        if line.seller_id != seller_id:
            raise Forbidden(productOrderId=str(line.pk))
        if target == FulfillmentStatus.CANCELLED:
            raise IllegalTransition(line.status, target, message="Use the cancellation endpoint")

        current = FulfillmentStatus(line.status)
        if current == target:
            return line
        if current in TERMINAL_FULFILLMENT_STATUSES:
            raise AlreadyTerminal(productOrderId=str(line.pk), status=current.value)
        if OrderStatus(order.status) not in FULFILLABLE_ORDER_STATUSES:
            raise IllegalTransition(current, target, message=f"Order is {order.status}, not ready for fulfillment")
        if not can_fulfill(current, target):
            raise IllegalTransition(current, target)

        line.status = target.value
        line.save(update_fields=["status", "updated_at"])
        OrderEvent.objects.create(
            order=order,
            product_order=line,
            from_status=current.value,
            to_status=target.value,
            actor_id=seller_id,
            actor_role=ActorRole.SELLER.value,
        )
        logger.info(
            "fulfillment transition",
            extra={
                "order_id": str(order.pk),
                "product_order_id": str(line.pk),
                "from_status": current.value,
                "to_status": target.value,
                "seller_id": seller_id,
            },
        )
        self.advance_from_lines(order, Actor.seller(seller_id))
        return line

    def advance_from_lines(self, order: OrderModel, actor: Actor) -> OrderModel:
        """Step a locked order forward to what its lines now imply.

        Only moves forward, one legal transition at a time, so the audit
        trail shows ``paid → processing → shipped`` even if a seller jumped
        a line straight to shipped.
        """
        target = aggregate_order_status(order.product_orders.values_list("status", flat=True))
        current = OrderStatus(order.status)
        if target is None or current not in FULFILLMENT_PROGRESSION:
            return order
        while FULFILLMENT_PROGRESSION.index(current) < FULFILLMENT_PROGRESSION.index(target):
            current = FULFILLMENT_PROGRESSION[FULFILLMENT_PROGRESSION.index(current) + 1]
            self.transition(order, current, actor)
        return order
