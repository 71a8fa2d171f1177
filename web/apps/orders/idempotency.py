"""Idempotency keys for order creation.

A buyer retrying ``POST /orders/`` with the same ``Idempotency-Key`` gets
the stored response back instead of a second order (and a second stock
decrement). Keys are scoped per buyer; reusing a key with a different
payload is a conflict.
"""

import hashlib
import json

from django.db import IntegrityError, transaction

from .domain import OrderError
from .models import IdempotencyKey


class IdempotencyConflict(OrderError):
    code = "IDEMPOTENCY_CONFLICT"


def _hash(payload: dict) -> str:
    """Stable SHA-256 of a JSON-serializable payload (sorted keys, compact)."""
    body = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


@transaction.atomic
def get_or_create_idempotent(buyer_id: str, key: str, payload: dict):
    """Claim ``key`` for ``buyer_id`` or find the earlier claim.

    Returns:
        tuple[bool, IdempotencyKey]: ``(existing, rec)``. ``existing`` is
        False when this call created the record; the caller then runs the
        operation and stores its response with ``finalize``.

    Raises:
        IdempotencyConflict: The key was used before with another payload.
    """
    h = _hash(payload)
    try:
        # Savepoint: an IntegrityError only rolls back the insert
        with transaction.atomic():
            rec = IdempotencyKey.objects.create(
                buyer_id=buyer_id, key=key, request_hash=h, response_status=0, response_body={}
            )
            return False, rec
    except IntegrityError:
        rec = IdempotencyKey.objects.select_for_update().get(buyer_id=buyer_id, key=key)
        if rec.request_hash != h:
            raise IdempotencyConflict(key=key)
        return True, rec


def finalize(rec: IdempotencyKey, status_code: int, body: dict, order_id=None):
    """Store the response of the first request so retries can replay it."""
    rec.response_status = status_code
    rec.response_body = body
    if order_id is not None:
        rec.order_id = order_id
    rec.save(update_fields=["response_status", "response_body", "order_id"])


def release(rec: IdempotencyKey):
    """Forget a claim whose request failed before producing a response."""
    rec.delete()
