"""Stock ledger: the only code allowed to change ``Product.stock``.

Decrements are a single conditional UPDATE (``stock = stock - n WHERE
stock >= n``) so two requests racing for the last unit cannot both win,
without holding a lock between a read and a write. Contention is scoped to
the product row; there is no ledger-wide lock.

Callers that need several decrements to succeed or fail together (the order
builder) wrap them in ``transaction.atomic()``; a failing line raises and the
surrounding transaction rolls earlier lines back.
"""

import logging

from django.conf import settings
from django.db import transaction
from django.db.models import F

from .domain import InsufficientStock, InvalidQuantity, LedgerError, ProductNotFound
from .models import Product, ProductOrder, StockMovement

logger = logging.getLogger(__name__)


class StockLedger:
    def __init__(self, max_units: int | None = None):
        self.max_units = max_units or getattr(settings, "STOCK_MAX_UNITS", 1_000_000)

    def available(self, product_id) -> int:
        try:
            return Product.objects.values_list("stock", flat=True).get(pk=product_id)
        except Product.DoesNotExist:
            raise ProductNotFound(productId=str(product_id))

    def try_decrement(self, product_id, qty: int) -> None:
        """Take ``qty`` units of a product or fail without touching anything.

        Raises:
            InvalidQuantity: ``qty`` is not a positive integer.
            ProductNotFound: The product does not exist or is inactive.
            InsufficientStock: Fewer than ``qty`` units are available.
        """
        if qty < 1:
            raise InvalidQuantity(quantity=qty)

        rows = Product.objects.filter(pk=product_id, is_active=True, stock__gte=qty).update(
            stock=F("stock") - qty
        )
        if rows == 1:
            logger.info("stock decremented", extra={"product_id": str(product_id), "quantity": qty})
            return

        product = Product.objects.filter(pk=product_id).only("stock", "is_active", "title").first()
        if product is None or not product.is_active:
            raise ProductNotFound(productId=str(product_id))
        logger.warning(
            "stock decrement rejected",
            extra={"product_id": str(product_id), "quantity": qty, "available": product.stock},
        )
        raise InsufficientStock(product_id, qty, product.stock, product.title)

    def restore(self, product_id, qty: int) -> None:
        """Give ``qty`` units back to a product.

        Restores are unconditional except for the ``max_units`` ceiling, which
        only a miscounted restore can reach.

        Raises:
            InvalidQuantity: ``qty`` is not a positive integer.
            ProductNotFound: The product row is gone.
            LedgerError: ``RESTORE_OVERFLOW`` when the ceiling would be passed.
        """
        if qty < 1:
            raise InvalidQuantity(quantity=qty)

        ceiling = self.max_units - qty
        rows = Product.objects.filter(pk=product_id, stock__lte=ceiling).update(stock=F("stock") + qty)
        if rows == 1:
            logger.info("stock restored", extra={"product_id": str(product_id), "quantity": qty})
            return
        if not Product.objects.filter(pk=product_id).exists():
            raise ProductNotFound(productId=str(product_id))
        raise LedgerError("RESTORE_OVERFLOW", productId=str(product_id), quantity=qty, maxUnits=self.max_units)

    # ---- line-level bookkeeping ----

    def reserve_line(self, line: ProductOrder) -> None:
        """Decrement stock for a freshly built product order and record it."""
        self.try_decrement(line.product_id, line.quantity)
        line.reserved_quantity = line.quantity
        line.save(update_fields=["reserved_quantity"])
        StockMovement.objects.create(
            product_id=line.product_id,
            product_order=line,
            kind=StockMovement.Kind.DECREMENT,
            quantity=line.quantity,
        )

    @transaction.atomic
    def release_line(self, line: ProductOrder) -> int:
        """Give back whatever this line still holds; returns the amount restored.

        The amount comes from the line's own reserved/restored counters, never
        from the cart or the current product, so repeated calls restore
        nothing more once the line is square.
        """
        locked = ProductOrder.objects.select_for_update().get(pk=line.pk)
        qty = locked.outstanding_quantity
        if qty < 0:
            raise LedgerError("RESTORE_EXCEEDS_RESERVED", productOrderId=str(line.pk))
        if qty == 0:
            return 0

        self.restore(locked.product_id, qty)
        updated = ProductOrder.objects.filter(
            pk=locked.pk, restored_quantity=locked.restored_quantity
        ).update(restored_quantity=F("restored_quantity") + qty)
        if updated != 1:
            raise LedgerError("RESTORE_EXCEEDS_RESERVED", productOrderId=str(line.pk))
        StockMovement.objects.create(
            product_id=locked.product_id,
            product_order=locked,
            kind=StockMovement.Kind.RESTORE,
            quantity=qty,
        )
        line.restored_quantity = locked.restored_quantity + qty
        return qty
