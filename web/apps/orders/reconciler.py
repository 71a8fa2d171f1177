"""Cancellation and refund reconciliation.

The reconciler is the only path that gives stock back. It restores, per
product order, exactly what the ledger recorded as taken for that line
(``reserved_quantity - restored_quantity``), so the sum of restores over an
order's life always equals the sum of its decrements once it is cancelled,
whatever happened to the cart or the product in between.
"""

import logging

from django.db import transaction
from django.utils import timezone

from .domain import (
    Actor,
    AlreadyTerminal,
    CancellationPolicy,
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
from .ledger import StockLedger
from .models import OrderEvent, OrderModel, ProductOrder
from .notifications import ORDER_CANCELLED, dispatch_on_commit
from .state_machine import FULFILLABLE_ORDER_STATUSES, FULFILLMENT_TRANSITIONS, OrderStateMachine, lock_order

logger = logging.getLogger(__name__)


class CancellationReconciler:
    def __init__(
        self,
        policy: CancellationPolicy,
        ledger: StockLedger | None = None,
        state_machine: OrderStateMachine | None = None,
        notifier: NotificationPort | None = None,
    ):
        self.policy = policy
        self.ledger = ledger or StockLedger()
        self.state_machine = state_machine or OrderStateMachine(notifier=notifier)
        self.notifier = notifier

    def _resolve_actor(self, order: OrderModel, actor_id: str) -> Actor:
        if actor_id == order.buyer_id:
            return Actor.buyer(actor_id)
        if order.product_orders.filter(seller_id=actor_id).exists():
            return Actor.seller(actor_id)
        raise Forbidden(orderId=str(order.pk))

    @transaction.atomic
    def cancel_order(self, order_id, actor_id: str, reason: str = "") -> OrderModel:
        """Cancel an order and give every line's stock back.

        Raises:
            NotFound: Unknown order.
            AlreadyTerminal: The order is delivered or already cancelled.
            Forbidden: ``actor_id`` is neither the buyer nor one of its sellers.
            IllegalTransition: The cancellation policy refuses the current status.
        """
        order = lock_order(order_id)
        current = OrderStatus(order.status)
        if current in TERMINAL_ORDER_STATUSES:
            logger.warning(
                "cancel rejected: terminal order",
                extra={"order_id": str(order.pk), "status": current.value, "actor_id": actor_id},
            )
            raise AlreadyTerminal(orderId=str(order.pk), status=current.value)
        actor = self._resolve_actor(order, actor_id)
        if not self.policy.allows(current):
            raise IllegalTransition(
                current, OrderStatus.CANCELLED, message=f"Orders that are {current.value} cannot be cancelled"
            )

        restored = 0
        for line in order.product_orders.select_for_update().order_by("product_id"):
            restored += self.ledger.release_line(line)
            if line.status != FulfillmentStatus.CANCELLED.value:
                line.status = FulfillmentStatus.CANCELLED.value
                line.save(update_fields=["status", "updated_at"])

        self.state_machine.transition(order, OrderStatus.CANCELLED, actor, reason=reason)
        self._close(order, actor, reason)
        logger.info(
            "order cancelled",
            extra={"order_id": str(order.pk), "actor_id": actor.id, "units_restored": restored},
        )
        return order

    @transaction.atomic
    def cancel_product_order(self, product_order_id, actor_id: str, reason: str = "") -> ProductOrder:
        """The line's seller or its buyer drops one line of a paid order.

        The line's stock goes back; order totals stay as placed. The order
        itself is cancelled once no line is left.

        Raises:
            NotFound: Unknown product order.
            Forbidden: ``actor_id`` is neither the line's seller nor its buyer.
            AlreadyTerminal: The line or its order is delivered or cancelled.
            IllegalTransition: The order is not paid yet, the policy refuses
                its status, or the line is too far along.
        """
        order_id = ProductOrder.objects.filter(pk=product_order_id).values_list("order_id", flat=True).first()
        if order_id is None:
            raise NotFound(productOrderId=str(product_order_id))
        order = lock_order(order_id)
        line = ProductOrder.objects.select_for_update().get(pk=product_order_id)
        if actor_id == line.seller_id:
            actor = Actor.seller(actor_id)
        elif actor_id == line.buyer_id:
            actor = Actor.buyer(actor_id)
        else:
            raise Forbidden(productOrderId=str(line.pk))

        current = FulfillmentStatus(line.status)
        if current in TERMINAL_FULFILLMENT_STATUSES:
            raise AlreadyTerminal(productOrderId=str(line.pk), status=current.value)
        if OrderStatus(order.status) in TERMINAL_ORDER_STATUSES:
            raise AlreadyTerminal(orderId=str(order.pk), status=order.status)
        order_status = OrderStatus(order.status)
        if order_status not in FULFILLABLE_ORDER_STATUSES or not self.policy.allows(order_status):
            raise IllegalTransition(current, FulfillmentStatus.CANCELLED, message=f"Order is {order.status}")
        if FulfillmentStatus.CANCELLED not in FULFILLMENT_TRANSITIONS[current]:
            raise IllegalTransition(current, FulfillmentStatus.CANCELLED)

        self.ledger.release_line(line)
        line.status = FulfillmentStatus.CANCELLED.value
        line.save(update_fields=["status", "updated_at"])
        OrderEvent.objects.create(
            order=order,
            product_order=line,
            from_status=current.value,
            to_status=FulfillmentStatus.CANCELLED.value,
            actor_id=actor.id,
            actor_role=actor.role.value,
            reason=reason,
        )
        logger.info(
            "product order cancelled",
            extra={"order_id": str(order.pk), "product_order_id": str(line.pk), "actor_id": actor.id},
        )

        live = order.product_orders.exclude(status=FulfillmentStatus.CANCELLED.value)
        if not live.exists():
            self.state_machine.transition(order, OrderStatus.CANCELLED, actor, reason=reason)
            self._close(order, actor, reason)
        else:
            # Remaining lines may now all be further along than the order
            self.state_machine.advance_from_lines(order, actor)
        return line

    def _close(self, order: OrderModel, actor: Actor, reason: str) -> None:
        order.cancelled_by = actor.id
        order.cancel_reason = reason or ""
        order.cancelled_at = timezone.now()
        fields = ["cancelled_by", "cancel_reason", "cancelled_at", "updated_at"]
        if order.payment_status == PaymentStatus.PAID.value:
            # Money goes back through the gateway, outside this service
            order.payment_status = PaymentStatus.REFUNDED.value
            fields.append("payment_status")
        order.save(update_fields=fields)
        dispatch_on_commit(
            self.notifier,
            ORDER_CANCELLED,
            order.buyer_id,
            {"order_id": str(order.pk), "reason": order.cancel_reason},
        )
