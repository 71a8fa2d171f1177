"""SQLAlchemy repository for the payment gateway sandbox.

One ``PaymentSession`` row per order: created when the buyer opens the
hosted payment page, then moved to ``paid`` or ``failed`` by the sandbox's
capture/fail actions. The orders service reads it back through
``GET /payments/{order_id}``.

Database connection parameters are read from the ``DATABASE_URL`` environment
variable, defaulting to a local SQLite file.
"""

import enum
import os
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DateTime, String, create_engine, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Session, mapped_column
from sqlalchemy.pool import StaticPool

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./payments.db")


def _make_engine(url: str):
    if url.startswith("sqlite"):
        # In-memory SQLite must share one connection across threads
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)
    return create_engine(url, pool_pre_ping=True)


engine = _make_engine(DATABASE_URL)


class Base(DeclarativeBase):
    pass


class SessionStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


def _now():
    return datetime.now(timezone.utc)


class PaymentSession(Base):
    """A buyer's attempt to pay for one order.

    Attributes:
        order_id: Order identifier from the orders service (primary key).
        buyer_id: Buyer that opened the page.
        status: ``pending`` until captured or failed.
        payment_id: Gateway reference, assigned on capture.
    """

    __tablename__ = "payment_sessions"

    order_id = mapped_column(String(64), primary_key=True)
    buyer_id = mapped_column(String(128), nullable=False)
    status = mapped_column(String(16), nullable=False, default=SessionStatus.PENDING.value)
    payment_id = mapped_column(String(64), nullable=True, unique=True)
    created_at = mapped_column(DateTime(timezone=True), default=_now, nullable=False)
    updated_at = mapped_column(DateTime(timezone=True), default=_now, onupdate=_now, nullable=False)

    def as_dict(self) -> dict:
        return {"order_id": self.order_id, "status": self.status, "payment_id": self.payment_id}


@contextmanager
def get_session():
    """Yield a session bound to the configured engine; closed on exit."""
    with Session(engine) as s:
        yield s


class SessionConflict(Exception):
    """The requested change contradicts the session's current state."""


class PaymentSessionsRepo:
    def get(self, order_id: str) -> Optional[dict]:
        with get_session() as s:
            row = s.get(PaymentSession, order_id)
            return row.as_dict() if row else None

    def open(self, order_id: str, buyer_id: str) -> dict:
        """Get-or-create the session for an order.

        Raises:
            SessionConflict: The order's session belongs to another buyer.
        """
        with get_session() as s:
            try:
                s.add(PaymentSession(order_id=order_id, buyer_id=buyer_id))
                s.commit()
            except IntegrityError:
                # Page reopened (or opened twice concurrently)
                s.rollback()
            row = s.get(PaymentSession, order_id)
            if row.buyer_id != buyer_id:
                raise SessionConflict("BUYER_MISMATCH")
            return row.as_dict()

    def capture(self, order_id: str) -> Optional[dict]:
        """Mark the session paid; capturing twice returns the same payment."""
        with get_session() as s:
            row = s.execute(
                select(PaymentSession).where(PaymentSession.order_id == order_id).with_for_update()
            ).scalars().first()
            if row is None:
                return None
            if row.status != SessionStatus.PAID.value:
                row.status = SessionStatus.PAID.value
                row.payment_id = f"pay_{uuid.uuid4().hex[:16]}"
                s.commit()
            return row.as_dict()

    def fail(self, order_id: str) -> Optional[dict]:
        """Mark the session failed.

        Raises:
            SessionConflict: The payment was already captured.
        """
        with get_session() as s:
            row = s.execute(
                select(PaymentSession).where(PaymentSession.order_id == order_id).with_for_update()
            ).scalars().first()
            if row is None:
                return None
            if row.status == SessionStatus.PAID.value:
                raise SessionConflict("ALREADY_PAID")
            row.status = SessionStatus.FAILED.value
            s.commit()
            return row.as_dict()


Base.metadata.create_all(engine)
