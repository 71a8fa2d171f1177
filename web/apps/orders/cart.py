"""Per-buyer cart of product quantities.

The cart is advisory: nothing here touches the stock ledger, and the stock
figures in a snapshot are only a hint for the client. The order builder
re-reads stock and price when the cart is turned into an order.
"""

import logging

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import IntegrityError, transaction
from django.db.models import F

from .domain import CannotBuyOwnProduct, CartLine, CartSnapshot, InvalidQuantity, ProductNotFound
from .models import CartItem, Product

logger = logging.getLogger(__name__)


class CartStore:
    def snapshot(self, buyer_id: str) -> CartSnapshot:
        items = CartItem.objects.filter(buyer_id=buyer_id).select_related("product")
        lines = [
            CartLine(
                product_id=str(it.product_id),
                quantity=it.quantity,
                unit_price=it.product.price,
                available=it.product.stock,
                seller_id=it.product.seller_id,
                title=it.product.title,
            )
            for it in items
        ]
        return CartSnapshot(buyer_id=buyer_id, lines=lines)

    def add_item(self, buyer_id: str, product_id, qty: int) -> CartSnapshot:
        """Add ``qty`` units of a product, on top of any already in the cart."""
        if not isinstance(qty, int) or qty < 1:
            raise InvalidQuantity(quantity=qty)
        product = self._purchasable(buyer_id, product_id)

        with transaction.atomic():
            bumped = CartItem.objects.filter(buyer_id=buyer_id, product=product).update(
                quantity=F("quantity") + qty
            )
            if not bumped:
                try:
                    with transaction.atomic():
                        CartItem.objects.create(buyer_id=buyer_id, product=product, quantity=qty)
                except IntegrityError:
                    # A concurrent add created the line first
                    CartItem.objects.filter(buyer_id=buyer_id, product=product).update(
                        quantity=F("quantity") + qty
                    )
        logger.info("cart item added", extra={"buyer_id": buyer_id, "product_id": str(product_id), "quantity": qty})
        return self.snapshot(buyer_id)

    def set_quantity(self, buyer_id: str, product_id, qty: int) -> CartSnapshot:
        """Replace a line's quantity; zero removes the line."""
        if not isinstance(qty, int) or qty < 0:
            raise InvalidQuantity(quantity=qty)
        if qty == 0:
            return self.remove_item(buyer_id, product_id)

        product = self._purchasable(buyer_id, product_id)
        CartItem.objects.update_or_create(buyer_id=buyer_id, product=product, defaults={"quantity": qty})
        return self.snapshot(buyer_id)

    def remove_item(self, buyer_id: str, product_id) -> CartSnapshot:
        CartItem.objects.filter(buyer_id=buyer_id, product_id=product_id).delete()
        return self.snapshot(buyer_id)

    def clear(self, buyer_id: str) -> CartSnapshot:
        CartItem.objects.filter(buyer_id=buyer_id).delete()
        return CartSnapshot(buyer_id=buyer_id)

    def _purchasable(self, buyer_id: str, product_id) -> Product:
        try:
            product = Product.objects.get(pk=product_id, is_active=True)
        except (Product.DoesNotExist, DjangoValidationError, ValueError):
            raise ProductNotFound(productId=str(product_id))
        if product.seller_id == buyer_id:
            raise CannotBuyOwnProduct(productId=str(product_id))
        return product
