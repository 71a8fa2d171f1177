from django.urls import path

from .views import (
    CancelOrderView,
    CartItemDetailView,
    CartItemsView,
    CartView,
    CheckoutView,
    OrdersCollectionView,
    PaymentStatusView,
    PaymentWebhookView,
    ProductOrderCancelView,
    ProductOrderDetailView,
    ProductOrderStatusView,
    RetrieveOrderView,
    SellerProductOrdersView,
)

app_name = "orders"

urlpatterns = [
    path("carts/<str:buyer_id>/", CartView.as_view(), name="cart"),
    path("carts/<str:buyer_id>/items/", CartItemsView.as_view(), name="cart-items"),
    path("carts/<str:buyer_id>/items/<uuid:product_id>/", CartItemDetailView.as_view(), name="cart-item"),
    path("orders/", OrdersCollectionView.as_view(), name="orders-collection"),  # GET list / POST create
    path("orders/<uuid:oid>/", RetrieveOrderView.as_view(), name="orders-detail"),
    path("orders/<uuid:oid>/checkout/", CheckoutView.as_view(), name="orders-checkout"),
    path("orders/<uuid:oid>/payment-status/", PaymentStatusView.as_view(), name="orders-payment-status"),
    path("orders/<uuid:oid>/cancel/", CancelOrderView.as_view(), name="orders-cancel"),
    path("product-orders/", SellerProductOrdersView.as_view(), name="product-orders"),
    path("product-orders/<uuid:pid>/", ProductOrderDetailView.as_view(), name="product-orders-detail"),
    path("product-orders/<uuid:pid>/status/", ProductOrderStatusView.as_view(), name="product-orders-status"),
    path("product-orders/<uuid:pid>/cancel/", ProductOrderCancelView.as_view(), name="product-orders-cancel"),
    path("payments/webhook/", PaymentWebhookView.as_view(), name="payments-webhook"),
]
