import uuid
from decimal import Decimal

from django.db import models
from django.db.models import Q


class Product(models.Model):
    # Projection of the catalog: only what the ledger and builder need
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    seller_id = models.CharField(max_length=128, db_index=True)
    title = models.CharField(max_length=255, blank=True, default="")
    price = models.DecimalField(max_digits=12, decimal_places=2)
    stock = models.IntegerField(default=0)
    is_active = models.BooleanField(default=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "products"
        constraints = [
            models.CheckConstraint(condition=Q(stock__gte=0), name="product_stock_non_negative"),
            models.CheckConstraint(condition=Q(price__gte=0), name="product_price_non_negative"),
        ]

    def __str__(self):
        return self.title or str(self.id)


class CartItem(models.Model):
    buyer_id = models.CharField(max_length=128, db_index=True)
    product = models.ForeignKey(Product, on_delete=models.CASCADE, related_name="cart_items")
    quantity = models.PositiveIntegerField()
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "cart_items"
        ordering = ["created_at", "id"]
        constraints = [
            models.UniqueConstraint(fields=["buyer_id", "product"], name="cart_item_unique_per_buyer"),
            models.CheckConstraint(condition=Q(quantity__gte=1), name="cart_item_quantity_positive"),
        ]


class OrderModel(models.Model):
    # UUID PK exposed through the API
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    class Status(models.TextChoices):
        DRAFT = "draft"
        PENDING_PAYMENT = "pending_payment"
        PAID = "paid"
        PROCESSING = "processing"
        SHIPPED = "shipped"
        DELIVERED = "delivered"
        CANCELLED = "cancelled"

    class PaymentStatus(models.TextChoices):
        UNPAID = "unpaid"
        PAID = "paid"
        FAILED = "failed"
        REFUNDED = "refunded"

    buyer_id = models.CharField(max_length=128, db_index=True)
    status = models.CharField(max_length=32, choices=Status.choices, default=Status.DRAFT, db_index=True)
    payment_status = models.CharField(
        max_length=16, choices=PaymentStatus.choices, default=PaymentStatus.UNPAID, db_index=True
    )
    payment_id = models.CharField(max_length=128, null=True, blank=True)
    total_amount = models.DecimalField(max_digits=14, decimal_places=2, default=Decimal("0.00"))

    street = models.CharField(max_length=255)
    city = models.CharField(max_length=128)
    state = models.CharField(max_length=128)
    zip_code = models.CharField(max_length=16)
    country = models.CharField(max_length=64)
    phone_number = models.CharField(max_length=32)
    notes = models.TextField(blank=True, default="")

    cancelled_by = models.CharField(max_length=128, null=True, blank=True)
    cancel_reason = models.TextField(blank=True, default="")
    cancelled_at = models.DateTimeField(null=True, blank=True)
    paid_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "orders"
        ordering = ["-created_at"]
        indexes = [models.Index(fields=["buyer_id", "-created_at"], name="orders_buyer_recent")]

    @property
    def shipping_address(self) -> dict:
        return {
            "street": self.street,
            "city": self.city,
            "state": self.state,
            "zipCode": self.zip_code,
            "country": self.country,
        }


class ProductOrder(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)

    class Status(models.TextChoices):
        PENDING = "pending"
        CONFIRMED = "confirmed"
        PROCESSING = "processing"
        SHIPPED = "shipped"
        DELIVERED = "delivered"
        CANCELLED = "cancelled"

    order = models.ForeignKey(OrderModel, on_delete=models.CASCADE, related_name="product_orders")
    product = models.ForeignKey(Product, on_delete=models.PROTECT, related_name="product_orders")
    seller_id = models.CharField(max_length=128, db_index=True)
    buyer_id = models.CharField(max_length=128, db_index=True)
    quantity = models.PositiveIntegerField()
    unit_price = models.DecimalField(max_digits=12, decimal_places=2)
    total_price = models.DecimalField(max_digits=14, decimal_places=2)
    # What the ledger actually took and gave back for this line
    reserved_quantity = models.PositiveIntegerField(default=0)
    restored_quantity = models.PositiveIntegerField(default=0)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING, db_index=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "product_orders"
        ordering = ["seller_id", "created_at"]
        constraints = [
            models.CheckConstraint(
                condition=Q(restored_quantity__lte=models.F("reserved_quantity")),
                name="product_order_restore_within_reserved",
            ),
        ]

    @property
    def outstanding_quantity(self) -> int:
        return self.reserved_quantity - self.restored_quantity


class StockMovement(models.Model):
    class Kind(models.TextChoices):
        DECREMENT = "decrement"
        RESTORE = "restore"

    product = models.ForeignKey(Product, on_delete=models.PROTECT, related_name="stock_movements")
    product_order = models.ForeignKey(ProductOrder, on_delete=models.CASCADE, related_name="stock_movements")
    kind = models.CharField(max_length=16, choices=Kind.choices)
    quantity = models.PositiveIntegerField()
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "stock_movements"
        ordering = ["id"]


class OrderEvent(models.Model):
    order = models.ForeignKey(OrderModel, on_delete=models.CASCADE, related_name="events")
    product_order = models.ForeignKey(
        ProductOrder, on_delete=models.CASCADE, null=True, blank=True, related_name="events"
    )
    from_status = models.CharField(max_length=32)
    to_status = models.CharField(max_length=32)
    actor_id = models.CharField(max_length=128)
    actor_role = models.CharField(max_length=16)
    reason = models.TextField(blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "order_events"
        ordering = ["id"]


class IdempotencyKey(models.Model):
    buyer_id = models.CharField(max_length=128)
    key = models.CharField(max_length=200)
    request_hash = models.CharField(max_length=64)
    response_status = models.PositiveSmallIntegerField(default=0)
    response_body = models.JSONField(default=dict)
    order = models.ForeignKey(OrderModel, null=True, blank=True, on_delete=models.SET_NULL)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "idempotency_keys"
        constraints = [
            models.UniqueConstraint(fields=["buyer_id", "key"], name="idempotency_key_unique_per_buyer"),
        ]
