"""Pydantic schemas for the orders API.

Request schemas validate incoming payloads before any mutation happens; read
schemas shape what the API returns. Field names are snake_case in Python and
camelCase on the wire (``populate_by_name`` lets tests build them either way).
"""

import re
from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .domain import CheckoutDetails, FulfillmentStatus, ShippingAddress


ZIP_RE = re.compile(r"^[A-Za-z0-9 -]{3,10}$")
PHONE_RE = re.compile(r"^\+?[0-9 ()-]{7,20}$")
NOTES_MAX = 1000


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=_camel, populate_by_name=True)

    def dump(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


def _non_blank(v: str) -> str:
    v2 = v.strip()
    if not v2:
        raise ValueError("Must not be blank")
    return v2


# ---------------- Requests ---------------- #

class CartItemIn(ApiModel):
    """Add ``quantity`` units of ``product_id`` to a cart.

    Attributes:
        product_id: Catalog product UUID.
        quantity: Units to add on top of what is already in the cart (>= 1).
    """

    product_id: UUID
    quantity: int = Field(ge=1)


class SetQuantityIn(ApiModel):
    """Replace a cart line's quantity; 0 removes the line."""

    quantity: int = Field(ge=0)


class ShippingAddressIn(ApiModel):
    street: str = Field(max_length=255)
    city: str = Field(max_length=128)
    state: str = Field(max_length=128)
    zip_code: str
    country: str = Field(max_length=64)

    @field_validator("street", "city", "state", "country")
    @classmethod
    def validate_present(cls, v: str) -> str:
        return _non_blank(v)

    @field_validator("zip_code")
    @classmethod
    def validate_zip(cls, v: str) -> str:
        v2 = v.strip()
        if not ZIP_RE.match(v2):
            raise ValueError("Invalid zip code")
        return v2

    def to_domain(self) -> ShippingAddress:
        return ShippingAddress(self.street, self.city, self.state, self.zip_code, self.country)


class CreateOrderDTO(ApiModel):
    """Schema for turning a buyer's cart into a draft order.

    Attributes:
        buyer_id: The buyer whose cart is consumed.
        shipping_address: Delivery address; every field required.
        phone_number: Contact phone, digits with optional ``+``, spaces,
            dashes and parentheses.
        notes: Free-form note for the sellers, at most 1000 characters.
    """

    buyer_id: str = Field(min_length=1, max_length=128)
    shipping_address: ShippingAddressIn
    phone_number: str
    notes: str = Field(default="", max_length=NOTES_MAX)

    @field_validator("buyer_id")
    @classmethod
    def validate_buyer(cls, v: str) -> str:
        return _non_blank(v)

    @field_validator("phone_number")
    @classmethod
    def validate_phone(cls, v: str) -> str:
        """Validate the phone number format.

        Raises:
            ValueError: When the value does not look like a phone number.
        """
        v2 = v.strip()
        if not PHONE_RE.match(v2):
            raise ValueError("Invalid phone number")
        return v2

    def to_domain(self) -> CheckoutDetails:
        return CheckoutDetails(
            buyer_id=self.buyer_id,
            shipping_address=self.shipping_address.to_domain(),
            phone_number=self.phone_number,
            notes=self.notes or "",
        )


class CheckoutIn(ApiModel):
    buyer_id: Optional[str] = None


class CancelOrderDTO(ApiModel):
    """Who cancels, and why.

    Attributes:
        actor_id: The buyer of the order or a seller with a line in it.
        reason: Shown to the other parties; optional.
    """

    actor_id: str = Field(min_length=1, max_length=128)
    reason: str = Field(default="", max_length=NOTES_MAX)


class ProductOrderStatusDTO(ApiModel):
    status: FulfillmentStatus
    seller_id: str = Field(min_length=1, max_length=128)
    reason: str = Field(default="", max_length=NOTES_MAX)


class WebhookDTO(BaseModel):
    """Gateway callback body (snake_case, as the gateway sends it).

    Attributes:
        event: ``payment.succeeded`` or ``payment.failed``.
        order_id: The order the payment belongs to.
        payment_id: Gateway reference; present on success.
    """

    event: str
    order_id: UUID
    payment_id: Optional[str] = None

    @field_validator("event")
    @classmethod
    def validate_event(cls, v: str) -> str:
        if v not in WEBHOOK_EVENTS:
            raise ValueError("Unsupported event")
        return v


WEBHOOK_EVENTS = {"payment.succeeded", "payment.failed"}


# ---------------- Reads ---------------- #

class CartLineOut(ApiModel):
    product_id: str
    title: str
    quantity: int
    unit_price: Decimal
    available: int
    seller_id: str
    exceeds_stock: bool


class CartOut(ApiModel):
    buyer_id: str
    items: List[CartLineOut]
    total_items: int


class ProductOrderReadDTO(ApiModel):
    id: UUID
    order_id: UUID
    product_id: UUID
    product_title: str = ""
    seller_id: str
    buyer_id: str
    quantity: int
    unit_price: Decimal
    total_price: Decimal
    status: str
    created_at: datetime
    updated_at: datetime


class VendorGroupDTO(ApiModel):
    seller_id: str
    items: List[ProductOrderReadDTO]
    subtotal: Decimal
    status: Optional[str] = None


class OrderReadDTO(ApiModel):
    """Order as returned by the read endpoints.

    ``product_orders`` and ``vendor_groups`` are the same lines, flat and
    grouped by seller. The list endpoint leaves both out.
    """

    id: UUID
    buyer_id: str
    status: str
    payment_status: str
    payment_id: Optional[str] = None
    total_amount: Decimal
    shipping_address: dict
    phone_number: str
    notes: str = ""
    cancelled_by: Optional[str] = None
    cancel_reason: str = ""
    cancelled_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    product_orders: Optional[List[ProductOrderReadDTO]] = None
    vendor_groups: Optional[List[VendorGroupDTO]] = None


class SellerSummaryDTO(ApiModel):
    total_orders: int
    total_revenue: Decimal
    pending_orders: int
