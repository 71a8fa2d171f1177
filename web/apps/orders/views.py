"""HTTP views for the orders app.

Views are kept small: they validate requests (via Pydantic), delegate to the
lifecycle services obtained from ``providers``, and turn the outcome into a
response. Every ``OrderError`` a service raises is mapped to an HTTP status
by ``_error_response``, with the error's code in ``detail``.

Identity: buyer and seller ids come from the request (path, body or the
``X-User-Id`` header captured by the gateway middleware); this service
trusts the identity provider in front of it.

Idempotency: ``POST /orders/`` honours an ``Idempotency-Key`` header per
buyer. The first request builds the order and stores its response; retries
with the same payload replay its status and body (``Idempotent-Replay:
true``); reusing the key with another payload returns 409
``IDEMPOTENCY_CONFLICT``.
"""

import hashlib
import hmac
import logging

from django.conf import settings
from pydantic import ValidationError as PydanticValidationError
from rest_framework import status
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from .domain import (
    Actor,
    AlreadyTerminal,
    CannotBuyOwnProduct,
    Forbidden,
    FulfillmentStatus,
    GatewayPaymentStatus,
    GatewayStatusReport,
    IllegalTransition,
    InsufficientStock,
    InvalidQuantity,
    LedgerError,
    NotFound,
    OrderError,
    TransientNetworkError,
    ValidationError,
)
from .idempotency import IdempotencyConflict, finalize, get_or_create_idempotent, release
from .models import ProductOrder
from .providers import (
    get_cart_store,
    get_order_builder,
    get_read_repository,
    get_reconciler,
    get_state_machine,
    get_synchronizer,
)
from .repository import cart_to_dict
from .schemas import (
    CancelOrderDTO,
    CartItemIn,
    CheckoutIn,
    CreateOrderDTO,
    ProductOrderStatusDTO,
    SetQuantityIn,
    WebhookDTO,
)

logger = logging.getLogger(__name__)

# Most specific first: ProductNotFound is a NotFound, IdempotencyConflict an OrderError
_STATUS_BY_ERROR = (
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (InvalidQuantity, status.HTTP_400_BAD_REQUEST),
    (NotFound, status.HTTP_404_NOT_FOUND),
    (CannotBuyOwnProduct, status.HTTP_403_FORBIDDEN),
    (Forbidden, status.HTTP_403_FORBIDDEN),
    (InsufficientStock, status.HTTP_409_CONFLICT),
    (IllegalTransition, status.HTTP_409_CONFLICT),
    (AlreadyTerminal, status.HTTP_409_CONFLICT),
    (IdempotencyConflict, status.HTTP_409_CONFLICT),
    (TransientNetworkError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (LedgerError, status.HTTP_500_INTERNAL_SERVER_ERROR),
)


def error_status(exc: OrderError) -> int:
    for cls, code in _STATUS_BY_ERROR:
        if isinstance(exc, cls):
            return code
    return status.HTTP_400_BAD_REQUEST


def _error_response(exc: OrderError) -> Response:
    code = error_status(exc)
    log = logger.error if code >= 500 else logger.warning
    log("request rejected", extra={"detail": exc.code, "status_code": code})
    return Response(exc.as_dict(), status=code)


def _invalid(e: PydanticValidationError) -> Response:
    errors = [
        {"loc": ".".join(str(p) for p in err["loc"]), "msg": err["msg"]}
        for err in e.errors(include_url=False)
    ]
    return Response({"detail": "VALIDATION_ERROR", "errors": errors}, status=status.HTTP_400_BAD_REQUEST)


def _validate(schema, data):
    """Return ``(dto, None)`` or ``(None, 400 response)``."""
    try:
        return schema.model_validate(data if data is not None else {}), None
    except PydanticValidationError as e:
        return None, _invalid(e)


def _int_param(request, name: str, default: int, maximum: int | None = None) -> int:
    try:
        value = int(request.GET.get(name, default))
    except (TypeError, ValueError):
        raise ValidationError(param=name)
    if value < 1:
        raise ValidationError(param=name)
    return min(value, maximum) if maximum else value


class ScopedAPIView(APIView):
    throttle_classes = [ScopedRateThrottle]


# ---------------- Carts ---------------- #

class CartView(ScopedAPIView):
    throttle_scope = "carts"

    def get(self, request, buyer_id: str):
        return Response(cart_to_dict(get_cart_store().snapshot(buyer_id)))

    def delete(self, request, buyer_id: str):
        return Response(cart_to_dict(get_cart_store().clear(buyer_id)))


class CartItemsView(ScopedAPIView):
    throttle_scope = "carts"

    def post(self, request, buyer_id: str):
        dto, bad = _validate(CartItemIn, request.data)
        if bad:
            return bad
        try:
            snap = get_cart_store().add_item(buyer_id, dto.product_id, dto.quantity)
        except OrderError as e:
            return _error_response(e)
        return Response(cart_to_dict(snap), status=status.HTTP_200_OK)


class CartItemDetailView(ScopedAPIView):
    throttle_scope = "carts"

    def put(self, request, buyer_id: str, product_id):
        dto, bad = _validate(SetQuantityIn, request.data)
        if bad:
            return bad
        try:
            snap = get_cart_store().set_quantity(buyer_id, product_id, dto.quantity)
        except OrderError as e:
            return _error_response(e)
        return Response(cart_to_dict(snap))

    def delete(self, request, buyer_id: str, product_id):
        return Response(cart_to_dict(get_cart_store().remove_item(buyer_id, product_id)))


# ---------------- Orders ---------------- #

class OrdersCollectionView(ScopedAPIView):
    """List orders, or turn a buyer's cart into a draft order."""

    def get_throttles(self):
        # DRF evaluates throttles in initial(), before get/post
        self.throttle_scope = "orders_list" if self.request.method == "GET" else "orders_create"
        return [throttle() for throttle in self.throttle_classes]

    def get(self, request):
        try:
            page = _int_param(request, "page", 1)
            page_size = _int_param(request, "page_size", 20, maximum=100)
        except OrderError as e:
            return _error_response(e)
        body = get_read_repository().list_orders(
            buyer_id=request.GET.get("buyerId") or None,
            status=request.GET.get("status") or None,
            page=page,
            page_size=page_size,
        )
        return Response(body, status=status.HTTP_200_OK)

    def post(self, request):
        """Create a draft order from the buyer's cart.

        Returns:
            Response: One of the following responses.
            - 201 with the order (status ``draft``, lines, vendor groups).
            - The stored status and body when an idempotent request is replayed.
            - 400 for payload errors or ``EMPTY_CART``.
            - 403 ``CANNOT_BUY_OWN_PRODUCT``; 404 ``PRODUCT_NOT_FOUND``.
            - 409 ``INSUFFICIENT_STOCK`` (with productId and available) or
              ``IDEMPOTENCY_CONFLICT``.
        """
        dto, bad = _validate(CreateOrderDTO, request.data)
        if bad:
            return bad

        idem_key = request.headers.get("Idempotency-Key")
        rec = None
        if idem_key:
            try:
                existing, rec = get_or_create_idempotent(dto.buyer_id, idem_key, dto.model_dump(mode="json"))
            except IdempotencyConflict as e:
                return _error_response(e)
            if existing:
                if not rec.response_status:
                    return Response({"detail": "IDEMPOTENCY_IN_PROGRESS"}, status=status.HTTP_409_CONFLICT)
                resp = Response(rec.response_body, status=rec.response_status)
                resp["Idempotent-Replay"] = "true"
                return resp

        try:
            order = get_order_builder().build(dto.to_domain())
        except OrderError as e:
            resp = _error_response(e)
            if rec:
                finalize(rec, resp.status_code, resp.data)
            return resp
        except Exception:
            if rec:
                release(rec)
            raise

        body = get_read_repository().order_to_dict(order)
        if rec:
            finalize(rec, status.HTTP_201_CREATED, body, order_id=order.pk)
        return Response(body, status=status.HTTP_201_CREATED)


class RetrieveOrderView(ScopedAPIView):
    throttle_scope = "orders_detail"

    def get(self, request, oid):
        try:
            body = get_read_repository().get_order(oid)
        except OrderError as e:
            return _error_response(e)
        return Response(body, status=status.HTTP_200_OK)


class CheckoutView(ScopedAPIView):
    """``draft → pending_payment``; safe to call twice. Returns the payment URL."""

    throttle_scope = "orders_transition"

    def patch(self, request, oid):
        dto, bad = _validate(CheckoutIn, request.data)
        if bad:
            return bad
        buyer_id = dto.buyer_id or getattr(request, "user_id", None)
        if not buyer_id:
            return Response({"detail": "VALIDATION_ERROR", "message": "buyerId is required"}, status=400)
        try:
            order, payment_url = get_synchronizer().mark_for_checkout(oid, Actor.buyer(buyer_id))
        except OrderError as e:
            return _error_response(e)
        body = get_read_repository().order_to_dict(order)
        body["paymentUrl"] = payment_url
        return Response(body, status=status.HTTP_200_OK)


class PaymentStatusView(ScopedAPIView):
    """One synchronization tick; clients poll this while the buyer pays."""

    throttle_scope = "payment_poll"

    def post(self, request, oid):
        try:
            order = get_synchronizer().check_payment_status(oid)
        except OrderError as e:
            return _error_response(e)
        return Response(get_read_repository().order_to_dict(order), status=status.HTTP_200_OK)


class CancelOrderView(ScopedAPIView):
    throttle_scope = "orders_transition"

    def patch(self, request, oid):
        dto, bad = _validate(CancelOrderDTO, request.data)
        if bad:
            return bad
        try:
            order = get_reconciler().cancel_order(oid, dto.actor_id, dto.reason)
        except OrderError as e:
            return _error_response(e)
        return Response(get_read_repository().order_to_dict(order), status=status.HTTP_200_OK)


# ---------------- Product orders (seller side) ---------------- #

class SellerProductOrdersView(ScopedAPIView):
    throttle_scope = "seller_orders"

    def get(self, request):
        seller_id = request.GET.get("sellerId") or getattr(request, "user_id", None)
        if not seller_id:
            return Response({"detail": "VALIDATION_ERROR", "message": "sellerId is required"}, status=400)
        status_filter = request.GET.get("status") or None
        if status_filter and status_filter not in FulfillmentStatus._value2member_map_:
            return Response({"detail": "VALIDATION_ERROR", "message": "Unknown status"}, status=400)
        return Response(get_read_repository().seller_lines(seller_id, status_filter))


class ProductOrderDetailView(ScopedAPIView):
    throttle_scope = "orders_detail"

    def get(self, request, pid):
        try:
            body = get_read_repository().get_product_order(pid)
        except OrderError as e:
            return _error_response(e)
        return Response(body, status=status.HTTP_200_OK)


class ProductOrderStatusView(ScopedAPIView):
    """A seller advances (or cancels) one of their own lines."""

    throttle_scope = "orders_transition"

    def patch(self, request, pid):
        dto, bad = _validate(ProductOrderStatusDTO, request.data)
        if bad:
            return bad
        try:
            if dto.status == FulfillmentStatus.CANCELLED:
                line = get_reconciler().cancel_product_order(pid, dto.seller_id, dto.reason)
            else:
                line = get_state_machine().update_fulfillment(pid, dto.status, dto.seller_id)
        except OrderError as e:
            return _error_response(e)
        line = ProductOrder.objects.select_related("order").get(pk=line.pk)
        return Response(get_read_repository().order_to_dict(line.order), status=status.HTTP_200_OK)


class ProductOrderCancelView(ScopedAPIView):
    """The line's buyer or seller drops a single line; answers with the order."""

    throttle_scope = "orders_transition"

    def patch(self, request, pid):
        dto, bad = _validate(CancelOrderDTO, request.data)
        if bad:
            return bad
        try:
            line = get_reconciler().cancel_product_order(pid, dto.actor_id, dto.reason)
        except OrderError as e:
            return _error_response(e)
        line = ProductOrder.objects.select_related("order").get(pk=line.pk)
        return Response(get_read_repository().order_to_dict(line.order), status=status.HTTP_200_OK)


# ---------------- Gateway webhook ---------------- #

def _signature_ok(body: bytes, signature: str | None) -> bool:
    secret = getattr(settings, "PAYMENT_WEBHOOK_SECRET", "")
    if not secret or not signature:
        return False
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())


class PaymentWebhookView(APIView):
    """Signed payment callback from the gateway.

    ``X-Gateway-Signature`` is the hex HMAC-SHA256 of the raw body with
    ``PAYMENT_WEBHOOK_SECRET``. Deliveries are idempotent: replaying a
    success for an order already paid changes nothing.
    """

    def post(self, request):
        raw = request.body
        if not _signature_ok(raw, request.headers.get("X-Gateway-Signature")):
            logger.warning("webhook rejected: bad signature")
            return Response({"detail": "INVALID_SIGNATURE"}, status=status.HTTP_400_BAD_REQUEST)

        dto, bad = _validate(WebhookDTO, request.data)
        if bad:
            return bad
        paid = dto.event == "payment.succeeded"
        report = GatewayStatusReport(
            str(dto.order_id),
            GatewayPaymentStatus.PAID if paid else GatewayPaymentStatus.FAILED,
            dto.payment_id,
        )
        try:
            order = get_synchronizer().record(report)
        except OrderError as e:
            return _error_response(e)
        logger.info(
            "webhook processed",
            extra={"order_id": str(order.pk), "event": dto.event, "order_status": order.status},
        )
        return Response(
            {"ok": True, "orderId": str(order.pk), "status": order.status, "paymentStatus": order.payment_status},
            status=status.HTTP_200_OK,
        )
