import threading
from datetime import datetime, timedelta, timezone

import pytest

from tracking import DatabaseOrderSource, Identity, OrderQueryError, OrderQueryLayer

T0 = datetime(2026, 10, 18, 19, 0, tzinfo=timezone.utc)


def _row(oid, *, minutes=0, updated=0, user_id=None, client_id=None, status="pending"):
    return {
        "id": oid,
        "order_number": f"ORD-{oid}",
        "status": status,
        "order_status": status,
        "user_id": user_id,
        "metadata": {"clientId": client_id} if client_id else {},
        "created_at": T0 + timedelta(minutes=minutes),
        "updated_at": T0 + timedelta(minutes=minutes, seconds=updated),
    }


class FakeSource:
    def __init__(self, by_user=None, by_client=None, fail_user=False, fail_client=False, barrier=None):
        self.by_user = by_user or []
        self.by_client = by_client or []
        self.fail_user = fail_user
        self.fail_client = fail_client
        self.barrier = barrier
        self.calls = []

    def _wait(self):
        if self.barrier is not None:
            self.barrier.wait()

    def orders_for_user(self, user_id):
        self.calls.append(("user", user_id))
        self._wait()
        if self.fail_user:
            raise ConnectionError("store unreachable")
        return list(self.by_user)

    def orders_for_client(self, client_id):
        self.calls.append(("client", client_id))
        self._wait()
        if self.fail_client:
            raise ConnectionError("store unreachable")
        return list(self.by_client)


def test_empty_identity_returns_empty_without_querying():
    source = FakeSource(by_user=[_row("o1")])
    result = OrderQueryLayer(source).fetch_visible_orders(Identity())
    assert result.orders == []
    assert not result.partial
    assert source.calls == []


def test_order_in_both_lists_appears_once():
    shared_old = _row("o2", minutes=2, user_id="u1", client_id="c1", status="confirmed")
    shared_new = _row("o2", minutes=2, updated=30, user_id="u1", client_id="c1", status="preparing")
    source = FakeSource(
        by_user=[_row("o1", minutes=1, user_id="u1"), shared_old],
        by_client=[shared_new, _row("o3", minutes=3, client_id="c1")],
    )
    result = OrderQueryLayer(source).fetch_visible_orders(Identity(user_id="u1", client_id="c1"))

    assert [o.id for o in result.orders] == ["o3", "o2", "o1"]
    assert [o.status for o in result.orders if o.id == "o2"] == ["preparing"]


def test_both_queries_run_concurrently():
    # Each query blocks until the other has started; sequential execution would time out.
    barrier = threading.Barrier(2, timeout=5)
    source = FakeSource(by_user=[_row("o1", user_id="u1")], by_client=[_row("o2", client_id="c1")], barrier=barrier)
    result = OrderQueryLayer(source).fetch_visible_orders(Identity(user_id="u1", client_id="c1"))
    assert {o.id for o in result.orders} == {"o1", "o2"}
    assert not result.partial


def test_partial_failure_returns_best_effort_data_with_error_flag():
    source = FakeSource(by_client=[_row("o2", client_id="c1")], fail_user=True)
    result = OrderQueryLayer(source).fetch_visible_orders(Identity(user_id="u1", client_id="c1"))
    assert [o.id for o in result.orders] == ["o2"]
    assert result.partial
    assert set(result.errors) == {"user_id"}


def test_total_failure_raises_recoverable_error():
    source = FakeSource(fail_user=True, fail_client=True)
    with pytest.raises(OrderQueryError) as exc:
        OrderQueryLayer(source).fetch_visible_orders(Identity(user_id="u1", client_id="c1"))
    assert set(exc.value.errors) == {"user_id", "client_id"}


def test_only_the_available_predicate_is_queried():
    source = FakeSource(by_client=[_row("o2", client_id="c1")])
    OrderQueryLayer(source).fetch_visible_orders(Identity(client_id="c1"))
    assert source.calls == [("client", "c1")]


def test_database_source_finds_user_and_client_orders(place_order):
    mine = place_order(user_id="u1")
    anon = place_order(client_id="c1")
    both = place_order(user_id="u1", client_id="c1")
    place_order(user_id="u2", client_id="c2")

    layer = OrderQueryLayer(DatabaseOrderSource())
    by_user = layer.fetch_visible_orders(Identity(user_id="u1"))
    by_client = layer.fetch_visible_orders(Identity(client_id="c1"))
    merged = layer.fetch_visible_orders(Identity(user_id="u1", client_id="c1"))

    assert {o.id for o in by_user.orders} == {mine, both}
    assert {o.id for o in by_client.orders} == {anon, both}
    assert sorted(o.id for o in merged.orders) == sorted([mine, anon, both])
    assert merged.orders[0].id == both


def test_rows_that_do_not_validate_are_left_out():
    bad = _row("o9", client_id="c1")
    bad["metadata"] = {"clientId": "c1", "cart": {"size": "L"}}
    source = FakeSource(by_client=[bad, _row("o2", client_id="c1")])
    result = OrderQueryLayer(source).fetch_visible_orders(Identity(client_id="c1"))
    assert [o.id for o in result.orders] == ["o2"]
    assert not result.partial
