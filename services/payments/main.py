"""Payment gateway sandbox built with FastAPI.

Plays the external gateway for local development and end-to-end tests:

- ``GET /pay?orderId=&buyerId=`` is the hosted payment page the orders
  service hands out as ``paymentUrl``;
- ``POST /payments/{order_id}/capture`` and ``/fail`` stand in for the
  buyer completing or abandoning the payment;
- ``GET /payments/{order_id}`` is the status contract the orders service
  polls (404 while no page was opened).

When ``ORDERS_WEBHOOK_URL`` and ``PAYMENT_WEBHOOK_SECRET`` are set, every
capture/fail is also pushed to the orders service as a signed webhook.
Persistence is delegated to the SQLAlchemy repository in ``repo``.
"""

import hashlib
import hmac
import html
import json
import logging
import os
import time
import uuid
from urllib.parse import quote

import httpx
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import HTMLResponse
from pydantic import BaseModel
from pythonjsonlogger import jsonlogger
from sqlalchemy import text
from typing import Optional

from repo import PaymentSessionsRepo, SessionConflict, engine

app = FastAPI(title="Payment Gateway Sandbox")

ORDERS_WEBHOOK_URL = os.getenv("ORDERS_WEBHOOK_URL", "")
PAYMENT_WEBHOOK_SECRET = os.getenv("PAYMENT_WEBHOOK_SECRET", "")


@app.on_event("startup")
def _startup_db():
    # Short active wait until the DB accepts connections
    deadline = time.time() + 30
    while True:
        try:
            with engine.connect() as conn:
                conn.execute(text("select 1"))
            break
        except Exception:
            if time.time() > deadline:
                raise
            time.sleep(1)


logger = logging.getLogger("payments")
if not logger.handlers:
    h = logging.StreamHandler()
    h.setFormatter(jsonlogger.JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s"))
    logger.addHandler(h)
    logger.setLevel(logging.INFO)


class PaymentStatusOut(BaseModel):
    """Status contract read by the orders service.

    Attributes:
        order_id: Order the session belongs to.
        status: ``pending``, ``paid`` or ``failed``.
        payment_id: Gateway reference once captured.
    """

    order_id: str
    status: str
    payment_id: Optional[str] = None


def sign(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def _push_webhook(event: str, session: dict, request_id: str) -> None:
    if not (ORDERS_WEBHOOK_URL and PAYMENT_WEBHOOK_SECRET):
        return
    body = json.dumps(
        {"event": event, "order_id": session["order_id"], "payment_id": session["payment_id"]},
        separators=(",", ":"),
    ).encode("utf-8")
    headers = {
        "Content-Type": "application/json",
        "X-Gateway-Signature": sign(body, PAYMENT_WEBHOOK_SECRET),
        "X-Request-ID": request_id,
    }
    try:
        resp = httpx.post(ORDERS_WEBHOOK_URL, content=body, headers=headers, timeout=3.0)
        logger.info(
            "webhook delivered",
            extra={"request_id": request_id, "order_id": session["order_id"], "status_code": resp.status_code},
        )
    except httpx.RequestError as e:
        # The orders service also polls; a lost webhook only delays settlement
        logger.warning(
            "webhook delivery failed",
            extra={"request_id": request_id, "order_id": session["order_id"], "error": str(e)},
        )


@app.get("/health")
def health():
    """Liveness/health probe endpoint."""
    return {"ok": True}


@app.get("/pay", response_class=HTMLResponse)
def pay_page(order_id: str = Query(alias="orderId"), buyer_id: str = Query(alias="buyerId")):
    """Hosted payment page: opens (or reopens) the order's payment session."""
    try:
        session = PaymentSessionsRepo().open(order_id, buyer_id)
    except SessionConflict as e:
        raise HTTPException(status_code=409, detail=str(e))
    # Query values are attacker-controlled; escape everything echoed back
    shown = html.escape(session["order_id"])
    action = html.escape(f"/payments/{quote(session['order_id'], safe='')}", quote=True)
    return (
        "<html><body>"
        f"<h1>Sandbox payment for order {shown}</h1>"
        f"<p>Status: {html.escape(session['status'])}</p>"
        f"<form method='post' action='{action}/capture'><button>Pay</button></form>"
        f"<form method='post' action='{action}/fail'><button>Decline</button></form>"
        "</body></html>"
    )


@app.get("/payments/{order_id}", response_model=PaymentStatusOut)
def payment_status(order_id: str):
    session = PaymentSessionsRepo().get(order_id)
    if session is None:
        raise HTTPException(status_code=404, detail="NOT_FOUND")
    return session


@app.post("/payments/{order_id}/capture", response_model=PaymentStatusOut)
def capture(order_id: str, request: Request):
    """Complete the payment; idempotent once captured."""
    session = PaymentSessionsRepo().capture(order_id)
    if session is None:
        raise HTTPException(status_code=404, detail="NOT_FOUND")
    _push_webhook("payment.succeeded", session, request.state.request_id)
    return session


@app.post("/payments/{order_id}/fail", response_model=PaymentStatusOut)
def fail(order_id: str, request: Request):
    try:
        session = PaymentSessionsRepo().fail(order_id)
    except SessionConflict as e:
        raise HTTPException(status_code=409, detail=str(e))
    if session is None:
        raise HTTPException(status_code=404, detail="NOT_FOUND")
    _push_webhook("payment.failed", session, request.state.request_id)
    return session


@app.middleware("http")
async def add_request_id(request: Request, call_next):
    rid = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = rid
    try:
        response = await call_next(request)
    finally:
        logger.info("request handled", extra={"request_id": rid, "path": request.url.path, "method": request.method})
    response.headers["X-Request-ID"] = rid
    return response
