from __future__ import annotations

import os
import threading
import time
from typing import Callable, Dict, List, Optional, Tuple

import structlog

from .identity import ClientIdentityProvider, Identity
from .query import OrderQueryError, OrderQueryLayer
from .reconcile import OrderBook
from .records import OrderRecord
from .subscriber import LiveUpdateSubscriber, Subscription, SubscriptionState

logger = structlog.get_logger(__name__)

LIVE_DELAYED_WARNING = "Live updates may be delayed. Showing the last known order status."
PARTIAL_WARNING = "Some of your orders could not be loaded right now."
FETCH_FAILED_WARNING = "Could not refresh your orders. Showing the last known order status."


class OrderTracker:
    """Keeps the viewer's orders current: one fetch, then live updates.

    Errors never propagate to the view; they leave the last known orders in
    place and set `warning` / `live_delayed` instead.
    """

    def __init__(
        self,
        identity_provider: ClientIdentityProvider,
        query_layer: OrderQueryLayer,
        subscriber: LiveUpdateSubscriber,
        *,
        user_id: Optional[str] = None,
        on_update: Optional[Callable[[OrderRecord], None]] = None,
    ) -> None:
        self.identity_provider = identity_provider
        self.query_layer = query_layer
        self.subscriber = subscriber
        self.on_update = on_update
        self.book = OrderBook()
        self.warning: Optional[str] = None
        self.live_delayed = False
        self._user_id = str(user_id) if user_id else None
        self._identity: Optional[Identity] = None
        self._subscription: Optional[Subscription] = None
        self._lock = threading.RLock()

    @property
    def identity(self) -> Identity:
        if self._identity is None:
            self._identity = self.identity_provider.identity(self._user_id)
        return self._identity

    @property
    def subscription_state(self) -> SubscriptionState:
        sub = self._subscription
        return sub.state if sub is not None else SubscriptionState.IDLE

    def start(self) -> None:
        """Subscribe; the authoritative fetch runs once the stream is confirmed."""
        with self._lock:
            if self._subscription is not None and self._subscription.state in (
                SubscriptionState.CONNECTING,
                SubscriptionState.SUBSCRIBED,
            ):
                return
            self._close_subscription()
            self._subscribe()

    def _subscribe(self) -> None:
        identity = self.identity
        self.live_delayed = False
        self._subscription = self.subscriber.subscribe(
            identity,
            self._apply_change,
            known_ids=self.book.known_ids,
            on_new_order=self._on_new_order,
            on_state=self._on_state,
        )
        if self._subscription.state is SubscriptionState.ERROR:
            self.live_delayed = True
            self.warning = LIVE_DELAYED_WARNING
            # Still show something.
            self.refresh()

    def _on_state(self, state: SubscriptionState, error: Optional[Exception]) -> None:
        if state is SubscriptionState.SUBSCRIBED:
            self.live_delayed = False
            self.refresh()
        elif state is SubscriptionState.ERROR:
            self.live_delayed = True
            self.warning = LIVE_DELAYED_WARNING
            logger.warning("order_tracker.live_updates_lost", error=str(error) if error else None)

    def _apply_change(self, order: OrderRecord) -> None:
        if self.book.merge(order):
            logger.info("order_tracker.order_updated", order_id=order.id, status=order.current_status)
            if self.on_update is not None:
                merged = self.book.get(order.id)
                if merged is not None:
                    self.on_update(merged)

    def _on_new_order(self, order: OrderRecord) -> None:
        # Change payloads carry no items; re-fetch for the full record.
        logger.info("order_tracker.new_order", order_id=order.id)
        self.refresh()

    def refresh(self) -> bool:
        """Fetch and merge. Returns False when nothing could be loaded."""
        identity = self.identity
        try:
            result = self.query_layer.fetch_visible_orders(identity)
        except OrderQueryError as e:
            self.warning = FETCH_FAILED_WARNING
            logger.warning("order_tracker.refresh_failed", error=str(e))
            return False

        self.book.merge_many(result.orders)
        if result.partial:
            self.warning = PARTIAL_WARNING
        elif self.live_delayed:
            self.warning = LIVE_DELAYED_WARNING
        else:
            self.warning = None
        return True

    def resubscribe(self) -> None:
        """Drop the current stream and start over (used after `ERROR`)."""
        with self._lock:
            self._close_subscription()
            self._subscribe()

    def set_user(self, user_id: Optional[str]) -> None:
        """Switch the authenticated user (login/logout)."""
        new_user = str(user_id) if user_id else None
        with self._lock:
            if new_user == self._user_id and self._identity is not None:
                return
            logged_out = self._user_id is not None and new_user is None
            self._user_id = new_user
            self._identity = None
            if logged_out:
                self.book.clear()
            was_running = self._subscription is not None
            self._close_subscription()
            if was_running:
                self._subscribe()

    def orders(self) -> List[OrderRecord]:
        return self.book.orders()

    def active_orders(self) -> List[OrderRecord]:
        return self.book.active_orders()

    def stop(self) -> None:
        with self._lock:
            self._close_subscription()

    def _close_subscription(self) -> None:
        sub, self._subscription = self._subscription, None
        if sub is not None:
            sub.unsubscribe()


def default_idle_seconds() -> float:
    try:
        return float(os.getenv("TRACKER_IDLE_SECONDS", "300"))
    except (TypeError, ValueError):
        return 300.0


class TrackerRegistry:
    """Trackers of live viewer sessions, keyed by a per-session token.

    Sessions never say goodbye, so a tracker that has not been looked up for
    `idle_seconds` is stopped and dropped; its channel leaves the change feed.
    """

    def __init__(self, *, idle_seconds: Optional[float] = None, clock: Callable[[], float] = time.monotonic) -> None:
        self.idle_seconds = default_idle_seconds() if idle_seconds is None else float(idle_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, Tuple[OrderTracker, float]] = {}

    def get(self, key: str) -> Optional[OrderTracker]:
        self.evict_idle()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            self._entries[key] = (entry[0], self._clock())
            return entry[0]

    def put(self, key: str, tracker: OrderTracker) -> OrderTracker:
        with self._lock:
            old = self._entries.get(key)
            self._entries[key] = (tracker, self._clock())
        if old is not None and old[0] is not tracker:
            old[0].stop()
        return tracker

    def discard(self, key: str) -> None:
        with self._lock:
            entry = self._entries.pop(key, None)
        if entry is not None:
            entry[0].stop()

    def evict_idle(self) -> int:
        cutoff = self._clock() - self.idle_seconds
        with self._lock:
            stale = [k for k, (_, seen) in self._entries.items() if seen < cutoff]
            trackers = [self._entries.pop(k)[0] for k in stale]
        for tracker in trackers:
            tracker.stop()
        if trackers:
            logger.info("order_tracker.evicted", count=len(trackers))
        return len(trackers)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
