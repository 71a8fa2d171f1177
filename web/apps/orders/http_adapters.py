"""HTTP clients for the payment gateway and for the orders API itself.

``HttpPaymentGatewayClient`` implements ``PaymentGatewayPort`` over
``httpx``. It keeps the resilience tooling of the service-to-service calls:

- request correlation: ``X-Request-ID`` from the gateway middleware's
  ContextVar is forwarded;
- a circuit breaker per downstream, with a single HALF_OPEN probe after the
  reset timeout;
- retries with capped exponential backoff on transport errors, 429 and 5xx.

Exhausted retries, an open circuit, a refused request (other 4xx) and an
unreadable body are all reported as ``TransientNetworkError`` so the
synchronizer and the poller treat them as "try again later" rather than as
a failed payment. No raw ``httpx`` error leaves this module.

``HttpOrdersClient`` is what a front-end (or any out-of-process client)
uses to drive ``PaymentPoller`` against this service.
"""

import logging
import threading
import time
from typing import Optional

import httpx
from django.conf import settings

from gateway.middleware import REQUEST_ID_CTX

from .adapters import build_payment_url
from .domain import (
    GatewayPaymentStatus,
    GatewayStatusReport,
    NotFound,
    OrderError,
    PaymentGatewayPort,
    TransientNetworkError,
)

logger = logging.getLogger(__name__)

CLOSED, OPEN, HALF_OPEN = "CLOSED", "OPEN", "HALF_OPEN"


# ---------------- Circuit Breaker ---------------- #

class CircuitBreaker:
    """Thread-safe CLOSED/OPEN/HALF_OPEN breaker.

    ``fail_threshold`` consecutive failures open the circuit; after
    ``reset_timeout`` seconds one probe call is let through (HALF_OPEN) and
    its outcome closes or re-opens the circuit.
    """

    def __init__(self, name: str, fail_threshold: int, reset_timeout: float):
        self.name = name
        self.fail_threshold = fail_threshold
        self.reset_timeout = reset_timeout
        self._lock = threading.RLock()
        self._failures = 0
        self._state = CLOSED
        self._opened_at = 0.0
        self._probing = False

    @property
    def state(self) -> str:
        with self._lock:
            if self._state == OPEN and time.monotonic() - self._opened_at >= self.reset_timeout:
                self._state = HALF_OPEN
                self._probing = False
            return self._state

    def acquire(self) -> str:
        """Claim permission for one call, or raise ``TransientNetworkError``."""
        with self._lock:
            st = self.state
            if st == OPEN:
                raise TransientNetworkError("CIRCUIT_OPEN", downstream=self.name)
            if st == HALF_OPEN:
                if self._probing:
                    raise TransientNetworkError("CIRCUIT_HALF_OPEN_BUSY", downstream=self.name)
                self._probing = True
            return st

    def record_success(self):
        with self._lock:
            self._failures = 0
            self._state = CLOSED
            self._probing = False

    def record_failure(self):
        with self._lock:
            self._failures += 1
            if self._state == HALF_OPEN or (self._failures >= self.fail_threshold and self._state != OPEN):
                self._state = OPEN
                self._opened_at = time.monotonic()
                logger.warning("circuit opened", extra={"downstream": self.name, "failures": self._failures})
            self._probing = False

    def release(self):
        with self._lock:
            if self._state == HALF_OPEN:
                self._probing = False

    def reset(self):
        self.record_success()


payment_gateway_breaker = CircuitBreaker(
    "payment-gateway",
    getattr(settings, "HTTP_CIRCUIT_FAIL_THRESHOLD", 5),
    getattr(settings, "HTTP_CIRCUIT_RESET_TIMEOUT", 30.0),
)


# ---------------- Helpers ---------------- #

def _request_headers(extra: Optional[dict] = None) -> dict:
    headers: dict[str, str] = {}
    rid = REQUEST_ID_CTX.get()
    if rid and rid != "-":
        headers["X-Request-ID"] = rid
    if extra:
        headers.update(extra)
    return headers


def _retry_policy() -> tuple[int, float, float]:
    """(max attempts, backoff base seconds, max sleep seconds)."""
    return (
        max(1, getattr(settings, "HTTP_RETRY_MAX", 3)),
        getattr(settings, "HTTP_RETRY_BACKOFF_BASE", 0.15),
        getattr(settings, "HTTP_RETRY_MAX_SLEEP", 0.5),
    )


def _is_retryable(resp: Optional[httpx.Response]) -> bool:
    return resp is None or resp.status_code == 429 or 500 <= resp.status_code < 600


def _json_body(resp: httpx.Response, url: str) -> dict:
    try:
        data = resp.json()
    except ValueError:
        data = None
    if not isinstance(data, dict):
        raise TransientNetworkError("GATEWAY_BAD_RESPONSE", url=url, status=resp.status_code)
    return data


# ---------------- Payment gateway adapter ---------------- #

class HttpPaymentGatewayClient(PaymentGatewayPort):
    """Reads payment status from the gateway's status endpoint.

    Contract: ``GET {base}/payments/{order_id}`` answers
    ``{"order_id", "status": "pending"|"paid"|"failed", "payment_id"}``; a
    404 means the buyer never opened the payment page, i.e. still pending.
    """

    def __init__(self, base_url: str | None = None, timeout: float | None = None, breaker: CircuitBreaker | None = None):
        self.base_url = (base_url or settings.PAYMENT_GATEWAY_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS
        self.breaker = breaker or payment_gateway_breaker

    def payment_url(self, order_id: str, buyer_id: str) -> str:
        return build_payment_url(str(order_id), str(buyer_id))

    def fetch_status(self, order_id: str) -> GatewayStatusReport:
        url = f"{self.base_url}/payments/{order_id}"
        resp = self._get(url)
        if resp.status_code == 404:
            return GatewayStatusReport(str(order_id), GatewayPaymentStatus.PENDING)
        if resp.status_code >= 400:
            logger.error("gateway refused status request", extra={"url": url, "status_code": resp.status_code})
            raise TransientNetworkError("GATEWAY_REJECTED", url=url, status=resp.status_code)
        try:
            data = _json_body(resp, url)
        except TransientNetworkError:
            self.breaker.record_failure()
            raise
        try:
            status = GatewayPaymentStatus(data.get("status", "pending"))
        except ValueError:
            logger.warning("unknown gateway status", extra={"order_id": str(order_id), "status": data.get("status")})
            status = GatewayPaymentStatus.PENDING
        return GatewayStatusReport(str(order_id), status, data.get("payment_id"))

    def _get(self, url: str) -> httpx.Response:
        max_attempts, backoff, cap = _retry_policy()
        state = self.breaker.acquire()
        headers = _request_headers({"X-Circuit-State": state})
        try:
            with httpx.Client(timeout=self.timeout) as client:
                for attempt in range(1, max_attempts + 1):
                    resp = None
                    try:
                        resp = client.get(url, headers=headers)
                        if not _is_retryable(resp):
                            # 4xx are answers, not outages
                            self.breaker.record_success()
                            return resp
                    except httpx.RequestError as e:
                        logger.warning("gateway request error", extra={"url": url, "attempt": attempt, "error": str(e)})

                    if attempt == max_attempts:
                        break
                    headers["X-Retry-Count"] = str(attempt)
                    time.sleep(min(backoff * (2 ** (attempt - 1)), cap))
        finally:
            self.breaker.release()

        self.breaker.record_failure()
        raise TransientNetworkError(downstream=self.breaker.name, attempts=max_attempts)


# ---------------- Orders API client ---------------- #

class HttpOrdersClient:
    """Client for this service's own orders API, used by out-of-process pollers.

    One HTTP call per method, no retries: retry pacing belongs to
    ``PaymentPoller`` and its error budget.
    """

    def __init__(self, base_url: str, user_id: str | None = None, timeout: float | None = None):
        self.base_url = base_url.rstrip("/")
        self.user_id = user_id
        self.timeout = timeout or getattr(settings, "HTTP_TIMEOUT_SECS", 3.0)

    def get_order(self, order_id: str) -> dict:
        return self._call("GET", f"{self.base_url}/orders/{order_id}/")

    def check_payment_status(self, order_id: str) -> dict:
        return self._call("POST", f"{self.base_url}/orders/{order_id}/payment-status/")

    def _call(self, method: str, url: str) -> dict:
        extra = {"X-User-Id": self.user_id} if self.user_id else None
        try:
            with httpx.Client(timeout=self.timeout) as client:
                resp = client.request(method, url, headers=_request_headers(extra))
        except httpx.RequestError as e:
            raise TransientNetworkError(url=url, error=str(e))
        if resp.status_code == 404:
            raise NotFound(url=url)
        if _is_retryable(resp):
            raise TransientNetworkError(url=url, status=resp.status_code)
        if resp.status_code >= 400:
            # The API answers {"detail": CODE, ...}; keep its code when readable
            try:
                detail = resp.json().get("detail")
            except (ValueError, AttributeError):
                detail = None
            raise OrderError(detail if isinstance(detail, str) else None, url=url, status=resp.status_code)
        return _json_body(resp, url)
