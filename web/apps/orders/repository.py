"""Read side of the orders app.

Queries and serialization for the read endpoints live here so the views
stay thin and the lifecycle services never have to know about response
shapes.
"""

from collections import OrderedDict
from decimal import Decimal

from django.core.paginator import Paginator
from django.db.models import Count, Q, Sum

from .domain import CartSnapshot, FulfillmentStatus, NotFound
from .models import OrderModel, ProductOrder
from .schemas import (
    CartLineOut,
    CartOut,
    OrderReadDTO,
    ProductOrderReadDTO,
    SellerSummaryDTO,
    VendorGroupDTO,
)
from .state_machine import aggregate_order_status


def cart_to_dict(snapshot: CartSnapshot) -> dict:
    return CartOut(
        buyer_id=snapshot.buyer_id,
        items=[
            CartLineOut(
                product_id=line.product_id,
                title=line.title,
                quantity=line.quantity,
                unit_price=line.unit_price,
                available=line.available,
                seller_id=line.seller_id,
                exceeds_stock=line.exceeds_stock,
            )
            for line in snapshot.lines
        ],
        total_items=snapshot.total_items,
    ).dump()


def _line_dto(line: ProductOrder) -> ProductOrderReadDTO:
    return ProductOrderReadDTO(
        id=line.pk,
        order_id=line.order_id,
        product_id=line.product_id,
        product_title=line.product.title,
        seller_id=line.seller_id,
        buyer_id=line.buyer_id,
        quantity=line.quantity,
        unit_price=line.unit_price,
        total_price=line.total_price,
        status=line.status,
        created_at=line.created_at,
        updated_at=line.updated_at,
    )


def _vendor_groups(lines) -> list[VendorGroupDTO]:
    grouped: "OrderedDict[str, list]" = OrderedDict()
    for line in lines:
        grouped.setdefault(line.seller_id, []).append(line)

    groups = []
    for seller_id, items in grouped.items():
        implied = aggregate_order_status([i.status for i in items])
        statuses = {i.status for i in items}
        if implied is not None:
            status = implied.value
        elif len(statuses) == 1:
            status = statuses.pop()
        else:
            status = None
        groups.append(
            VendorGroupDTO(
                seller_id=seller_id,
                items=[_line_dto(i) for i in items],
                subtotal=sum((i.total_price for i in items), Decimal("0.00")),
                status=status,
            )
        )
    return groups


def _order_dto(order: OrderModel, with_lines: bool) -> OrderReadDTO:
    dto = OrderReadDTO(
        id=order.pk,
        buyer_id=order.buyer_id,
        status=order.status,
        payment_status=order.payment_status,
        payment_id=order.payment_id,
        total_amount=order.total_amount,
        shipping_address=order.shipping_address,
        phone_number=order.phone_number,
        notes=order.notes,
        cancelled_by=order.cancelled_by,
        cancel_reason=order.cancel_reason,
        cancelled_at=order.cancelled_at,
        paid_at=order.paid_at,
        created_at=order.created_at,
        updated_at=order.updated_at,
    )
    if with_lines:
        lines = list(order.product_orders.select_related("product").order_by("seller_id", "created_at"))
        dto.product_orders = [_line_dto(line) for line in lines]
        dto.vendor_groups = _vendor_groups(lines)
    return dto


class OrderReadRepository:
    def order_to_dict(self, order: OrderModel, with_lines: bool = True) -> dict:
        dto = _order_dto(order, with_lines)
        if with_lines:
            return dto.dump()
        return dto.model_dump(mode="json", by_alias=True, exclude={"product_orders", "vendor_groups"})

    def get_order(self, order_id) -> dict:
        try:
            order = OrderModel.objects.get(pk=order_id)
        except OrderModel.DoesNotExist:
            raise NotFound(orderId=str(order_id))
        return self.order_to_dict(order)

    def get_product_order(self, product_order_id) -> dict:
        try:
            line = ProductOrder.objects.select_related("product").get(pk=product_order_id)
        except ProductOrder.DoesNotExist:
            raise NotFound(productOrderId=str(product_order_id))
        return _line_dto(line).dump()

    def list_orders(self, buyer_id: str | None = None, status: str | None = None, page: int = 1, page_size: int = 20) -> dict:
        """Newest first, optionally filtered by buyer and status."""
        qs = OrderModel.objects.order_by("-created_at", "-id")
        if buyer_id:
            qs = qs.filter(buyer_id=buyer_id)
        if status:
            qs = qs.filter(status=status)
        p = Paginator(qs, page_size)
        page_obj = p.get_page(page)
        return {
            "count": p.count,
            "page": page_obj.number,
            "page_size": page_size,
            "results": [self.order_to_dict(o, with_lines=False) for o in page_obj.object_list],
        }

    def seller_lines(self, seller_id: str, status: str | None = None) -> dict:
        """A seller's product orders plus a summary over all of them.

        The summary ignores the ``status`` filter: revenue counts every line
        that is not cancelled, pending counts lines still awaiting the
        seller (pending or confirmed).
        """
        base = ProductOrder.objects.filter(seller_id=seller_id)
        lines = base.select_related("product").order_by("-created_at")
        if status:
            lines = lines.filter(status=status)

        agg = base.aggregate(
            total_orders=Count("id"),
            total_revenue=Sum("total_price", filter=~Q(status=FulfillmentStatus.CANCELLED.value)),
            pending_orders=Count(
                "id",
                filter=Q(status__in=[FulfillmentStatus.PENDING.value, FulfillmentStatus.CONFIRMED.value]),
            ),
        )
        summary = SellerSummaryDTO(
            total_orders=agg["total_orders"] or 0,
            total_revenue=agg["total_revenue"] or Decimal("0.00"),
            pending_orders=agg["pending_orders"] or 0,
        )
        return {
            "results": [_line_dto(line).dump() for line in lines],
            "summary": summary.dump(),
        }
