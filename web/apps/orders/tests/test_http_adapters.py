"""Unit tests for the HTTP payment-gateway and orders-API clients.

``httpx.Client`` methods are monkeypatched so no network is involved.
"""
import httpx
import pytest

from apps.orders.domain import GatewayPaymentStatus, NotFound, OrderError, TransientNetworkError
from apps.orders.http_adapters import HttpOrdersClient, HttpPaymentGatewayClient
from apps.orders.sync import PaymentPoller, PollOutcome


class DummyResp:
    """Minimal httpx-like response stub.

    Args:
        status_code (int): HTTP status code to simulate.
        json_data (dict | None): JSON body to return from ``json()``.
    """

    def __init__(self, status_code=200, json_data=None):
        self.status_code = status_code
        self._json = json_data or {}

    def raise_for_status(self):
        if self.status_code >= 400:
            raise httpx.HTTPStatusError("err", request=None, response=None)

    def json(self):
        return self._json


def test_gateway_status_paid(monkeypatch):
    seen = {}

    def fake_get(self, url, headers=None, **kw):
        seen["url"] = url
        return DummyResp(200, {"order_id": "o-1", "status": "paid", "payment_id": "pay_9"})

    monkeypatch.setattr(httpx.Client, "get", fake_get, raising=True)
    report = HttpPaymentGatewayClient(base_url="http://gw:9002/").fetch_status("o-1")
    assert seen["url"] == "http://gw:9002/payments/o-1"
    assert report.status == GatewayPaymentStatus.PAID
    assert report.payment_id == "pay_9"


def test_gateway_404_means_pending(monkeypatch):
    monkeypatch.setattr(httpx.Client, "get", lambda self, url, headers=None, **kw: DummyResp(404), raising=True)
    report = HttpPaymentGatewayClient(base_url="http://gw").fetch_status("o-1")
    assert report.status == GatewayPaymentStatus.PENDING


def test_gateway_unknown_status_treated_as_pending(monkeypatch):
    monkeypatch.setattr(
        httpx.Client, "get", lambda self, url, headers=None, **kw: DummyResp(200, {"status": "weird"}), raising=True
    )
    assert HttpPaymentGatewayClient(base_url="http://gw").fetch_status("o-1").status == GatewayPaymentStatus.PENDING


def test_gateway_network_error_is_transient(monkeypatch, settings):
    settings.HTTP_RETRY_MAX = 2

    def fake_get(self, url, headers=None, **kw):
        raise httpx.ConnectError("boom")

    monkeypatch.setattr(httpx.Client, "get", fake_get, raising=True)
    monkeypatch.setattr("time.sleep", lambda *a, **k: None, raising=True)
    with pytest.raises(TransientNetworkError):
        HttpPaymentGatewayClient(base_url="http://gw").fetch_status("o-1")


def test_gateway_url_uses_page_template(settings):
    settings.PAYMENT_PAGE_URL = "https://pay/{order_id}/{buyer_id}"
    assert HttpPaymentGatewayClient(base_url="http://gw").payment_url("o-1", "b-1") == "https://pay/o-1/b-1"


def test_gateway_forwards_request_id(monkeypatch):
    from gateway.middleware import REQUEST_ID_CTX

    seen = {}

    def fake_get(self, url, headers=None, **kw):
        seen.update(headers or {})
        return DummyResp(404)

    monkeypatch.setattr(httpx.Client, "get", fake_get, raising=True)
    token = REQUEST_ID_CTX.set("rid-77")
    try:
        HttpPaymentGatewayClient(base_url="http://gw").fetch_status("o-1")
    finally:
        REQUEST_ID_CTX.reset(token)
    assert seen["X-Request-ID"] == "rid-77"


def test_orders_client_maps_errors(monkeypatch):
    responses = iter([DummyResp(503), DummyResp(404), DummyResp(200, {"paymentStatus": "paid"})])
    monkeypatch.setattr(
        httpx.Client, "request", lambda self, method, url, headers=None, **kw: next(responses), raising=True
    )
    client = HttpOrdersClient("http://orders/api", user_id="buyer-1")

    with pytest.raises(TransientNetworkError):
        client.check_payment_status("o-1")
    with pytest.raises(NotFound):
        client.check_payment_status("o-1")
    assert client.check_payment_status("o-1") == {"paymentStatus": "paid"}


def test_poller_over_orders_client(monkeypatch):
    calls = {"n": 0}

    def fake_request(self, method, url, headers=None, **kw):
        calls["n"] += 1
        assert (method, url) == ("POST", "http://orders/api/orders/o-1/payment-status/")
        if calls["n"] == 1:
            raise httpx.ReadTimeout("slow")
        status = "paid" if calls["n"] == 3 else "unpaid"
        return DummyResp(200, {"paymentStatus": status})

    monkeypatch.setattr(httpx.Client, "request", fake_request, raising=True)
    client = HttpOrdersClient("http://orders/api")
    result = PaymentPoller(lambda: client.check_payment_status("o-1"), interval=0, max_attempts=10).run()
    assert result.outcome == PollOutcome.PAID
    assert result.attempts == 3


def test_poller_spends_error_budget_on_gateway_refusals(monkeypatch):
    calls = {"n": 0}

    def fake_get(self, url, headers=None, **kw):
        calls["n"] += 1
        return httpx.Response(403, request=httpx.Request("GET", url))

    monkeypatch.setattr(httpx.Client, "get", fake_get, raising=True)
    gateway = HttpPaymentGatewayClient(base_url="http://gw")
    result = PaymentPoller(lambda: gateway.fetch_status("o-1"), interval=0, max_attempts=10, error_budget=3).run()
    assert result.outcome == PollOutcome.ERROR_BUDGET_EXHAUSTED
    assert str(result.last_error) == "GATEWAY_REJECTED"
    assert calls["n"] == 3


def test_orders_client_keeps_api_error_code(monkeypatch):
    monkeypatch.setattr(
        httpx.Client,
        "request",
        lambda self, method, url, headers=None, **kw: httpx.Response(
            409, json={"detail": "ALREADY_TERMINAL"}, request=httpx.Request(method, url)
        ),
        raising=True,
    )
    with pytest.raises(OrderError) as ei:
        HttpOrdersClient("http://orders/api").check_payment_status("o-1")
    assert str(ei.value) == "ALREADY_TERMINAL"
    assert ei.value.context["status"] == 409
