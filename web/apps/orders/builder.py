"""Turns a buyer's cart into a draft order.

Checkout is one database transaction: every line's stock is decremented
through the ledger, every line gets its price snapshotted into a
``ProductOrder``, the parent order is created in ``draft`` and the consumed
cart lines are removed. If any line fails (insufficient stock, own product,
product gone) the transaction rolls back and nothing, stock included, has
changed. Partial fulfillment is never produced.
"""

import logging
from decimal import Decimal

from django.db import transaction

from .domain import (
    CannotBuyOwnProduct,
    CheckoutDetails,
    NotificationPort,
    ProductNotFound,
    ValidationError,
)
from .ledger import StockLedger
from .models import CartItem, OrderModel, Product, ProductOrder
from .notifications import ORDER_PLACED, ORDER_RECEIVED, dispatch_on_commit

logger = logging.getLogger(__name__)


class OrderBuilder:
    def __init__(self, ledger: StockLedger | None = None, notifier: NotificationPort | None = None):
        self.ledger = ledger or StockLedger()
        self.notifier = notifier

    @transaction.atomic
    def build(self, details: CheckoutDetails) -> OrderModel:
        """Create a draft order from the buyer's current cart.

        Args:
            details: Buyer id plus shipping/contact fields, already validated.

        Returns:
            The persisted ``OrderModel`` in status ``draft``.

        Raises:
            ValidationError: ``EMPTY_CART`` when there is nothing to order.
            ProductNotFound: A cart line points at a missing/inactive product.
            CannotBuyOwnProduct: A cart line is the buyer's own listing.
            InsufficientStock: Any line asks for more than is left.
        """
        buyer_id = details.buyer_id
        # Stable product order keeps concurrent checkouts from deadlocking
        cart = list(
            CartItem.objects.select_for_update()
            .filter(buyer_id=buyer_id)
            .order_by("product_id")
        )
        if not cart:
            raise ValidationError("EMPTY_CART", buyerId=buyer_id)

        products = Product.objects.in_bulk([it.product_id for it in cart])
        for it in cart:
            product = products.get(it.product_id)
            if product is None or not product.is_active:
                raise ProductNotFound(productId=str(it.product_id))
            if product.seller_id == buyer_id:
                raise CannotBuyOwnProduct(productId=str(product.pk))

        addr = details.shipping_address
        order = OrderModel.objects.create(
            buyer_id=buyer_id,
            street=addr.street,
            city=addr.city,
            state=addr.state,
            zip_code=addr.zip_code,
            country=addr.country,
            phone_number=details.phone_number,
            notes=details.notes or "",
        )

        total = Decimal("0.00")
        lines = []
        for it in cart:
            product = products[it.product_id]
            unit_price = product.price
            line = ProductOrder.objects.create(
                order=order,
                product=product,
                seller_id=product.seller_id,
                buyer_id=buyer_id,
                quantity=it.quantity,
                unit_price=unit_price,
                total_price=unit_price * it.quantity,
            )
            self.ledger.reserve_line(line)
            total += line.total_price
            lines.append(line)

        order.total_amount = total
        order.save(update_fields=["total_amount", "updated_at"])
        CartItem.objects.filter(pk__in=[it.pk for it in cart]).delete()

        logger.info(
            "order built",
            extra={
                "order_id": str(order.pk),
                "buyer_id": buyer_id,
                "lines": len(lines),
                "total_amount": str(total),
            },
        )
        self._announce(order, lines)
        return order

    def _announce(self, order: OrderModel, lines) -> None:
        dispatch_on_commit(
            self.notifier,
            ORDER_PLACED,
            order.buyer_id,
            {"order_id": str(order.pk), "total_amount": str(order.total_amount)},
        )
        by_seller = {}
        for line in lines:
            by_seller.setdefault(line.seller_id, []).append(str(line.pk))
        for seller_id, line_ids in by_seller.items():
            dispatch_on_commit(
                self.notifier,
                ORDER_RECEIVED,
                seller_id,
                {"order_id": str(order.pk), "product_order_ids": line_ids},
            )
