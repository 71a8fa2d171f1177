"""Tests for the stock ledger: conditional decrement, bounded restore and
per-line bookkeeping."""
import contextlib
import threading

import pytest
from django.db import connection

from apps.orders.domain import InsufficientStock, InvalidQuantity, LedgerError, ProductNotFound
from apps.orders.ledger import StockLedger
from apps.orders.models import StockMovement


@pytest.mark.django_db
def test_decrement_takes_units(make_product):
    p = make_product(stock=5)
    StockLedger().try_decrement(p.pk, 3)
    p.refresh_from_db()
    assert p.stock == 2


@pytest.mark.django_db
def test_decrement_more_than_available_changes_nothing(make_product):
    p = make_product(stock=2, title="Lamp")
    with pytest.raises(InsufficientStock) as ei:
        StockLedger().try_decrement(p.pk, 3)
    assert str(ei.value) == "INSUFFICIENT_STOCK"
    assert ei.value.available == 2
    assert "Lamp" in ei.value.message
    p.refresh_from_db()
    assert p.stock == 2


@pytest.mark.django_db
def test_decrement_exact_stock_reaches_zero(make_product):
    p = make_product(stock=1)
    ledger = StockLedger()
    ledger.try_decrement(p.pk, 1)
    with pytest.raises(InsufficientStock):
        ledger.try_decrement(p.pk, 1)
    p.refresh_from_db()
    assert p.stock == 0


@pytest.mark.django_db
def test_decrement_rejects_non_positive_quantity(make_product):
    p = make_product(stock=5)
    with pytest.raises(InvalidQuantity):
        StockLedger().try_decrement(p.pk, 0)


@pytest.mark.django_db
def test_decrement_inactive_product_is_not_found(make_product):
    p = make_product(stock=5, is_active=False)
    with pytest.raises(ProductNotFound):
        StockLedger().try_decrement(p.pk, 1)


@pytest.mark.django_db
def test_restore_adds_units_back(make_product):
    p = make_product(stock=4)
    StockLedger().restore(p.pk, 6)
    assert StockLedger().available(p.pk) == 10


@pytest.mark.django_db
def test_restore_over_ceiling_is_ledger_error(make_product):
    p = make_product(stock=95)
    with pytest.raises(LedgerError) as ei:
        StockLedger(max_units=100).restore(p.pk, 10)
    assert str(ei.value) == "RESTORE_OVERFLOW"
    p.refresh_from_db()
    assert p.stock == 95


@pytest.mark.django_db
def test_release_line_restores_only_what_was_reserved(make_product, place_order):
    p = make_product(stock=10)
    order = place_order("buyer-1", [(p, 4)])
    line = order.product_orders.get()
    p.refresh_from_db()
    assert p.stock == 6
    assert line.reserved_quantity == 4

    ledger = StockLedger()
    assert ledger.release_line(line) == 4
    # Second release finds the line already square
    assert ledger.release_line(line) == 0

    p.refresh_from_db()
    line.refresh_from_db()
    assert p.stock == 10
    assert line.restored_quantity == 4
    kinds = list(StockMovement.objects.filter(product_order=line).values_list("kind", "quantity"))
    assert kinds == [("decrement", 4), ("restore", 4)]


@pytest.mark.django_db(transaction=True)
def test_racing_buyers_cannot_both_take_the_last_unit(make_product):
    p = make_product(stock=1)
    buyers = 4
    barrier = threading.Barrier(buyers)
    # sqlite takes one writer at a time; the race that matters is read-then-write
    write_gate = threading.Lock() if connection.vendor == "sqlite" else contextlib.nullcontext()
    seen, won, lost, crashed = [], [], [], []

    def buy():
        ledger = StockLedger()
        try:
            seen.append(ledger.available(p.pk))
            barrier.wait(timeout=10)
            with write_gate:
                ledger.try_decrement(p.pk, 1)
            won.append(1)
        except InsufficientStock:
            lost.append(1)
        except Exception as e:
            crashed.append(e)
        finally:
            connection.close()

    threads = [threading.Thread(target=buy) for _ in range(buyers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert crashed == []
    assert seen == [1] * buyers
    assert (len(won), len(lost)) == (1, buyers - 1)
    p.refresh_from_db()
    assert p.stock == 0
