import pytest

from apps.orders import adapters, providers
from apps.orders.adapters import LoggingNotifier
from apps.orders.notifications import dispatch_on_commit


def test_logging_notifier_keeps_nothing_between_calls(monkeypatch):
    logged = []
    monkeypatch.setattr(adapters.logger, "info", lambda msg, *a, **kw: logged.append(msg))
    notifier = LoggingNotifier()
    for i in range(1000):
        notifier.notify("order_placed", "buyer-1", {"order_id": str(i)})
    assert vars(notifier) == {}
    assert logged == ["notification dispatched"] * 1000


def test_production_notifier_is_the_logging_one(monkeypatch):
    monkeypatch.undo()
    assert type(providers.get_notifier()) is LoggingNotifier


@pytest.mark.django_db
def test_dispatch_waits_for_commit(notifier, django_capture_on_commit_callbacks):
    with django_capture_on_commit_callbacks(execute=False) as callbacks:
        dispatch_on_commit(notifier, "order_paid", "buyer-1", {"order_id": "o-1"})
        assert notifier.sent == []
    for cb in callbacks:
        cb()
    assert notifier.sent == [("order_paid", "buyer-1", {"order_id": "o-1"})]
