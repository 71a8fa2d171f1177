"""Domain vocabulary, errors and ports for the order lifecycle.

This module holds the framework-free part of the orders app: the status
enums for the two-level lifecycle (payment at the order level, fulfillment at
the product-order level), small immutable value objects passed between
services, the error taxonomy raised by every service, and the protocol
definitions (ports) for collaborators that live outside this process, such
as the payment gateway and the notification dispatcher.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Protocol, List, Optional


# ---- Enums ----
class OrderStatus(str, Enum):
    """Buyer-facing order status. Governs the payment lifecycle."""

    DRAFT = "draft"
    PENDING_PAYMENT = "pending_payment"
    PAID = "paid"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    UNPAID = "unpaid"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class FulfillmentStatus(str, Enum):
    """Seller-side status of a single product order line."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class ActorRole(str, Enum):
    BUYER = "buyer"
    SELLER = "seller"
    SYSTEM = "system"


class GatewayPaymentStatus(str, Enum):
    """Payment state as reported by the external gateway."""

    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


TERMINAL_ORDER_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})
TERMINAL_FULFILLMENT_STATUSES = frozenset({FulfillmentStatus.DELIVERED, FulfillmentStatus.CANCELLED})


# ---- Value objects ----
@dataclass(frozen=True)
class Actor:
    """Who is asking for a transition.

    Attributes:
        id: Stable identifier supplied by the identity provider.
        role: Capacity in which the actor acts on this order.
    """

    id: str
    role: ActorRole

    @classmethod
    def buyer(cls, actor_id: str) -> "Actor":
        return cls(actor_id, ActorRole.BUYER)

    @classmethod
    def seller(cls, actor_id: str) -> "Actor":
        return cls(actor_id, ActorRole.SELLER)

    @classmethod
    def system(cls, name: str = "system") -> "Actor":
        return cls(name, ActorRole.SYSTEM)


@dataclass(frozen=True)
class ShippingAddress:
    street: str
    city: str
    state: str
    zip_code: str
    country: str

    def as_dict(self) -> dict:
        return {
            "street": self.street,
            "city": self.city,
            "state": self.state,
            "zipCode": self.zip_code,
            "country": self.country,
        }


@dataclass(frozen=True)
class CheckoutDetails:
    """Buyer-supplied fields needed to turn a cart into an order."""

    buyer_id: str
    shipping_address: ShippingAddress
    phone_number: str
    notes: str = ""


@dataclass(frozen=True)
class CartLine:
    """One line of a cart snapshot.

    ``unit_price`` and ``available`` are read at snapshot time and are
    advisory only; the order builder re-reads both before committing.
    """

    product_id: str
    quantity: int
    unit_price: Decimal
    available: int
    seller_id: str
    title: str = ""

    @property
    def exceeds_stock(self) -> bool:
        return self.quantity > self.available


@dataclass(frozen=True)
class CartSnapshot:
    buyer_id: str
    lines: List[CartLine] = field(default_factory=list)

    @property
    def total_items(self) -> int:
        return sum(line.quantity for line in self.lines)

    @property
    def is_empty(self) -> bool:
        return not self.lines


@dataclass(frozen=True)
class GatewayStatusReport:
    """What the gateway told us about an order's payment."""

    order_id: str
    status: GatewayPaymentStatus
    payment_id: Optional[str] = None


# ---- Errors ----
class OrderError(ValueError):
    """Base class for every error the lifecycle services raise.

    ``str(err)`` is always the stable upper-case ``code`` so callers can map
    errors without importing each subclass; ``context`` carries the details
    a client needs to disambiguate (product id, remaining quantity, ...).
    """

    code = "ORDER_ERROR"

    def __init__(self, code: Optional[str] = None, message: str = "", **context):
        if code:
            self.code = code
        self.message = message
        self.context = context
        super().__init__(self.code)

    def as_dict(self) -> dict:
        body = {"detail": self.code}
        if self.message:
            body["message"] = self.message
        body.update(self.context)
        return body


class ValidationError(OrderError):
    code = "VALIDATION_ERROR"


class InvalidQuantity(OrderError):
    code = "INVALID_QUANTITY"


class NotFound(OrderError):
    code = "NOT_FOUND"


class ProductNotFound(NotFound):
    code = "PRODUCT_NOT_FOUND"


class CannotBuyOwnProduct(OrderError):
    code = "CANNOT_BUY_OWN_PRODUCT"


class Forbidden(OrderError):
    code = "FORBIDDEN"


class InsufficientStock(OrderError):
    code = "INSUFFICIENT_STOCK"

    def __init__(self, product_id: str, requested: int, available: int, title: str = ""):
        name = title or product_id
        super().__init__(
            message=f"Insufficient stock for {name}: requested {requested}, only {available} left",
            productId=str(product_id),
            requested=requested,
            available=available,
        )
        self.product_id = str(product_id)
        self.requested = requested
        self.available = available


class IllegalTransition(OrderError):
    code = "ILLEGAL_TRANSITION"

    def __init__(self, current, target, message: str = ""):
        current_v = getattr(current, "value", current)
        target_v = getattr(target, "value", target)
        super().__init__(
            message=message or f"Cannot move from {current_v} to {target_v}",
            **{"from": current_v, "to": target_v},
        )
        self.current = current_v
        self.target = target_v


class AlreadyTerminal(OrderError):
    code = "ALREADY_TERMINAL"


class LedgerError(OrderError):
    """Stock ledger bookkeeping violation (restore larger than decrement, overflow)."""

    code = "LEDGER_ERROR"


class TransientNetworkError(OrderError):
    code = "TRANSIENT_NETWORK_ERROR"


# ---- Ports (DIP) ----
class PaymentGatewayPort(Protocol):
    """Port describing the slice of the payment gateway this engine needs.

    The gateway hosts the payment page itself; this service only needs to
    build the buyer-facing URL and to ask for the status of an order's
    payment when the webhook has not (yet) told us.
    """

    def payment_url(self, order_id: str, buyer_id: str) -> str:
        """Return the opaque hosted-page URL for this order and buyer."""
        raise NotImplementedError()

    def fetch_status(self, order_id: str) -> GatewayStatusReport:
        """Return the gateway's view of the order's payment.

        Raises:
            TransientNetworkError: When the gateway cannot be reached.
        """
        raise NotImplementedError()


class NotificationPort(Protocol):
    """Fire-and-forget sink for lifecycle events (e-mail, push, ...)."""

    def notify(self, event: str, recipient_id: str, payload: dict) -> None:
        raise NotImplementedError()


class CancellationPolicy(Protocol):
    """Decides whether an order in its current status may be cancelled."""

    def allows(self, status: OrderStatus) -> bool:
        raise NotImplementedError()


class StatusSetCancellationPolicy:
    """Cancellation allowed exactly for an explicitly configured set of statuses.

    Terminal statuses are never accepted, whatever the configuration says;
    those are rejected earlier as ``AlreadyTerminal``.
    """

    def __init__(self, statuses):
        if statuses is None:
            raise ValueError("CANCELLABLE_STATUSES_NOT_CONFIGURED")
        parsed = frozenset(OrderStatus(s) for s in statuses)
        bad = parsed & TERMINAL_ORDER_STATUSES
        if bad:
            raise ValueError("TERMINAL_STATUS_NOT_CANCELLABLE")
        self.statuses = parsed

    def allows(self, status: OrderStatus) -> bool:
        return OrderStatus(status) in self.statuses
