import threading
from datetime import datetime, timedelta, timezone

import pytest

from logic import services
from realtime import ChangeEvent, EventType, LocalChangeFeed
from tracking import Identity, LiveUpdateSubscriber, OrderBook, SubscriptionError, SubscriptionState

T0 = datetime(2026, 10, 18, 19, 0, tzinfo=timezone.utc)


def _update(oid, *, status="preparing", user_id=None, client_id=None, seconds=60):
    return ChangeEvent(
        event_type=EventType.UPDATE,
        table="orders",
        new={
            "id": oid,
            "order_number": f"ORD-{oid}",
            "status": status,
            "order_status": status,
            "user_id": user_id,
            "metadata": {"clientId": client_id} if client_id else {},
            "updated_at": T0 + timedelta(seconds=seconds),
        },
    )


def test_subscribe_reaches_subscribed_and_delivers_matching_updates():
    feed = LocalChangeFeed()
    seen, states = [], []
    sub = LiveUpdateSubscriber(feed, connect_timeout=None).subscribe(
        Identity(client_id="c1"),
        seen.append,
        on_state=lambda state, err: states.append(state),
    )
    assert sub.state is SubscriptionState.SUBSCRIBED
    assert states == [SubscriptionState.CONNECTING, SubscriptionState.SUBSCRIBED]

    feed.publish(_update("o1", client_id="c1"))
    assert [o.id for o in seen] == ["o1"]


def test_foreign_event_is_dropped_silently():
    feed = LocalChangeFeed()
    seen = []
    sub = LiveUpdateSubscriber(feed, connect_timeout=None).subscribe(
        Identity(user_id="u1", client_id="c1"), seen.append, known_ids=lambda: {"o1"}
    )
    feed.publish(_update("o9", user_id="other", client_id="other-client"))
    assert seen == []
    assert sub.state is SubscriptionState.SUBSCRIBED
    assert sub.error is None


def test_known_order_update_is_delivered_even_without_owner_fields():
    feed = LocalChangeFeed()
    seen = []
    LiveUpdateSubscriber(feed, connect_timeout=None).subscribe(
        Identity(client_id="c1"), seen.append, known_ids=lambda: {"o1"}
    )
    # A writer stripped the metadata.
    feed.publish(_update("o1", client_id=None))
    assert [o.id for o in seen] == ["o1"]


def test_user_only_identity_uses_server_side_filter():
    feed = LocalChangeFeed()
    seen = []
    LiveUpdateSubscriber(feed, connect_timeout=None).subscribe(Identity(user_id="u1"), seen.append)
    (channel,) = feed.open_channels()
    assert channel.filter == ("user_id", "u1")

    feed.publish(_update("o1", user_id="u2"))
    feed.publish(_update("o2", user_id="u1"))
    assert [o.id for o in seen] == ["o2"]


def test_client_identity_reads_unfiltered_stream():
    feed = LocalChangeFeed()
    LiveUpdateSubscriber(feed, connect_timeout=None).subscribe(Identity(user_id="u1", client_id="c1"), lambda o: None)
    (channel,) = feed.open_channels()
    assert channel.filter is None


def test_events_before_confirmation_are_not_delivered():
    feed = LocalChangeFeed(auto_confirm=False)
    seen = []
    sub = LiveUpdateSubscriber(feed, connect_timeout=None).subscribe(Identity(client_id="c1"), seen.append)
    assert sub.state is SubscriptionState.CONNECTING

    feed.publish(_update("o1", client_id="c1"))
    (channel,) = feed.open_channels()
    feed.confirm(channel)
    feed.publish(_update("o2", client_id="c1"))

    assert sub.state is SubscriptionState.SUBSCRIBED
    assert [o.id for o in seen] == ["o2"]


def test_unconfirmed_subscription_times_out_into_error():
    feed = LocalChangeFeed(auto_confirm=False)
    errored = threading.Event()

    def on_state(state, err):
        if state is SubscriptionState.ERROR:
            errored.set()

    sub = LiveUpdateSubscriber(feed, connect_timeout=0.05).subscribe(
        Identity(client_id="c1"), lambda o: None, on_state=on_state
    )
    assert errored.wait(2)
    assert sub.state is SubscriptionState.ERROR
    assert isinstance(sub.error, SubscriptionError)
    assert feed.open_channels() == []


def test_transport_drop_moves_to_error_and_stops_delivery():
    feed = LocalChangeFeed()
    seen = []
    sub = LiveUpdateSubscriber(feed, connect_timeout=None).subscribe(Identity(client_id="c1"), seen.append)

    feed.drop_all("socket reset")
    assert sub.state is SubscriptionState.ERROR
    assert "socket reset" in str(sub.error)

    feed.publish(_update("o1", client_id="c1"))
    assert seen == []

    # No auto-reconnect; closing after an error is still fine.
    sub.unsubscribe()
    assert sub.state is SubscriptionState.CLOSED


def test_unsubscribe_twice_is_safe_and_stops_events():
    feed = LocalChangeFeed()
    seen = []
    sub = LiveUpdateSubscriber(feed, connect_timeout=None).subscribe(Identity(client_id="c1"), seen.append)

    sub.unsubscribe()
    sub.unsubscribe()
    sub()

    feed.publish(_update("o1", client_id="c1"))
    assert seen == []
    assert sub.state is SubscriptionState.CLOSED
    assert feed.open_channels() == []


def test_matching_insert_goes_to_new_order_callback():
    feed = LocalChangeFeed()
    changed, created = [], []
    LiveUpdateSubscriber(feed, connect_timeout=None).subscribe(
        Identity(client_id="c1"), changed.append, on_new_order=created.append
    )
    feed.publish(ChangeEvent(event_type=EventType.INSERT, table="orders", new={"id": "o5", "metadata": {"clientId": "c1"}}))
    feed.publish(ChangeEvent(event_type=EventType.INSERT, table="orders", new={"id": "o6", "metadata": {"clientId": "c2"}}))
    assert [o.id for o in created] == ["o5"]
    assert changed == []


def test_other_tables_are_ignored():
    feed = LocalChangeFeed()
    seen = []
    LiveUpdateSubscriber(feed, connect_timeout=None).subscribe(Identity(client_id="c1"), seen.append)
    feed.publish(ChangeEvent(event_type=EventType.UPDATE, table="products", new={"id": "p1", "metadata": {"clientId": "c1"}}))
    assert seen == []


def test_empty_identity_cannot_subscribe():
    with pytest.raises(ValueError):
        LiveUpdateSubscriber(LocalChangeFeed()).subscribe(Identity(), lambda o: None)


def test_status_change_propagates_to_owner(place_order, change_feed):
    """Fetch, then a staff status change arrives live and wins over the fetched copy."""
    oid = place_order(user_id="u1")
    services.update_order_status(oid, "confirmed")

    book = OrderBook(services.list_orders(user_id="u1"))
    assert book.get(oid).status == "confirmed"

    sub = LiveUpdateSubscriber(change_feed, connect_timeout=None).subscribe(
        Identity(user_id="u1"), book.merge, known_ids=book.known_ids
    )
    services.update_order_status(oid, "preparing")

    assert book.get(oid).status == "preparing"
    assert book.get(oid).order_status == "preparing"
    sub.unsubscribe()
