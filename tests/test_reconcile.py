from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from tracking import Identity, OrderBook, OrderRecord, matches

T0 = datetime(2026, 10, 18, 19, 0, tzinfo=timezone.utc)


def _order(**kw):
    base = {
        "id": "o1",
        "order_number": "ORD-1",
        "status": "confirmed",
        "order_status": "confirmed",
        "user_id": None,
        "metadata": {},
        "created_at": T0,
        "updated_at": T0,
    }
    base.update(kw)
    return OrderRecord.model_validate(base)


def test_known_order_always_matches():
    order = _order(user_id="someone", metadata={"clientId": "elsewhere"})
    assert matches(order, Identity(user_id="u1", client_id="c1"), {"o1"}) is True
    assert matches(order, Identity(), {"o1"}) is True


def test_user_id_match():
    assert matches(_order(user_id="u1"), Identity(user_id="u1"), set()) is True
    assert matches(_order(user_id="u2"), Identity(user_id="u1"), set()) is False


def test_client_id_match_for_anonymous_order():
    order = _order(user_id=None, metadata={"clientId": "c1"})
    assert matches(order, Identity(client_id="c1"), set()) is True


def test_foreign_order_is_dropped():
    order = _order(id="o9", user_id="other", metadata={"clientId": "other-client"})
    assert matches(order, Identity(user_id="u1", client_id="c1"), {"o1"}) is False


def test_null_identity_fields_never_match_null_order_fields():
    assert matches(_order(user_id=None, metadata={}), Identity(user_id=None, client_id=None), set()) is False


def test_matches_accepts_plain_dicts():
    assert matches({"id": "o1", "user_id": "u1"}, Identity(user_id="u1")) is True


def test_later_update_wins_and_equal_or_older_is_ignored():
    book = OrderBook([_order(status="preparing", order_status="preparing")])

    assert book.merge(_order(status="ready", order_status="ready", updated_at=T0 + timedelta(seconds=5))) is True
    assert book.get("o1").status == "ready"

    assert book.merge(_order(status="preparing", updated_at=T0 + timedelta(seconds=5))) is False
    assert book.merge(_order(status="confirmed", updated_at=T0 + timedelta(seconds=1))) is False
    assert book.get("o1").status == "ready"


def test_update_without_timestamp_never_wins():
    book = OrderBook([_order()])
    assert book.merge(OrderRecord.model_validate({"id": "o1", "status": "cancelled"})) is False
    assert book.get("o1").status == "confirmed"


def test_partial_payload_keeps_fields_it_does_not_carry():
    fetched = _order(
        order_items=[{"product_name": "Margherita", "quantity": 2, "product_price": 8.0, "subtotal": 16.0}],
        metadata={"clientId": "c1", "table": 4},
    )
    book = OrderBook([fetched])

    live = OrderRecord.model_validate(
        {"id": "o1", "status": "ready", "updated_at": T0 + timedelta(minutes=1), "metadata": {}}
    )
    assert book.merge(live)

    merged = book.get("o1")
    assert merged.status == "ready"
    assert merged.order_items[0].product_name == "Margherita"
    assert merged.client_id == "c1"
    assert merged.metadata.to_dict() == {"clientId": "c1", "table": 4}


def test_orders_sorted_newest_first_and_active_filter():
    book = OrderBook(
        [
            _order(id="old", created_at=T0 - timedelta(days=1), status="delivered"),
            _order(id="new", created_at=T0, status="preparing"),
            _order(id="done", created_at=T0 - timedelta(hours=1), status="ready", admin_done_at=T0),
        ]
    )
    assert [o.id for o in book.orders()] == ["new", "done", "old"]
    assert [o.id for o in book.active_orders()] == ["new"]
    assert book.known_ids() == {"old", "new", "done"}
    assert "new" in book
    book.clear()
    assert len(book) == 0


def test_status_falls_back_to_order_status():
    assert _order(status=None, order_status="ready").current_status == "ready"


def test_metadata_extras_must_be_primitive():
    with pytest.raises(ValidationError):
        _order(metadata={"clientId": "c1", "nested": {"a": 1}})


def test_naive_timestamps_are_utc():
    rec = OrderRecord.model_validate({"id": "x", "updated_at": "2026-10-18T19:00:00"})
    assert rec.updated_at == T0
