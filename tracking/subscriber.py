from __future__ import annotations

import enum
import os
import threading
import uuid
from typing import Callable, Optional, Set

import structlog
from pydantic import ValidationError

from realtime import ChangeEvent, ChangeFeed, Channel, ChannelStatus, EventType

from .identity import Identity
from .reconcile import as_record, matches
from .records import OrderRecord

logger = structlog.get_logger(__name__)

OrderCallback = Callable[[OrderRecord], None]
KnownIds = Callable[[], Set[str]]


class SubscriptionState(str, enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"
    ERROR = "error"
    CLOSED = "closed"


StateCallback = Callable[[SubscriptionState, Optional[Exception]], None]


class SubscriptionError(RuntimeError):
    """The live update stream failed or never got confirmed."""


_ALLOWED = {
    SubscriptionState.IDLE: {SubscriptionState.CONNECTING, SubscriptionState.CLOSED},
    SubscriptionState.CONNECTING: {SubscriptionState.SUBSCRIBED, SubscriptionState.ERROR, SubscriptionState.CLOSED},
    SubscriptionState.SUBSCRIBED: {SubscriptionState.ERROR, SubscriptionState.CLOSED},
    SubscriptionState.ERROR: {SubscriptionState.CLOSED},
    SubscriptionState.CLOSED: set(),
}


def default_connect_timeout() -> Optional[float]:
    raw = os.getenv("SUBSCRIBE_TIMEOUT_SECONDS", "10")
    try:
        value = float(raw)
    except (TypeError, ValueError):
        value = 10.0
    return value if value > 0 else None


class Subscription:
    """Handle for one live update stream.

    Only events received while `SUBSCRIBED` reach the callbacks. There is no
    reconnect: after `ERROR` the caller subscribes again and re-fetches.
    """

    def __init__(
        self,
        identity: Identity,
        on_change: OrderCallback,
        *,
        known_ids: Optional[KnownIds] = None,
        on_new_order: Optional[OrderCallback] = None,
        on_state: Optional[StateCallback] = None,
    ) -> None:
        self.identity = identity
        self._on_change = on_change
        self._known_ids = known_ids
        self._on_new_order = on_new_order
        self._on_state = on_state
        self._lock = threading.RLock()
        self._state = SubscriptionState.IDLE
        self._error: Optional[Exception] = None
        self._channel: Optional[Channel] = None
        self._timer: Optional[threading.Timer] = None

    @property
    def state(self) -> SubscriptionState:
        return self._state

    @property
    def error(self) -> Optional[Exception]:
        return self._error

    @property
    def active(self) -> bool:
        return self._state is SubscriptionState.SUBSCRIBED

    def unsubscribe(self) -> None:
        """Stop delivery and release the channel. Safe to call repeatedly."""
        with self._lock:
            if self._state is SubscriptionState.CLOSED:
                return
            channel, self._channel = self._channel, None
            self._cancel_timer()
            self._transition(SubscriptionState.CLOSED)
        if channel is not None:
            channel.close()

    __call__ = unsubscribe

    def _transition(self, new: SubscriptionState, error: Optional[Exception] = None) -> bool:
        with self._lock:
            if new not in _ALLOWED[self._state]:
                return False
            old, self._state = self._state, new
            if error is not None:
                self._error = error
        logger.debug("subscription.state", old=old.value, new=new.value, error=str(error) if error else None)
        if self._on_state is not None:
            try:
                self._on_state(new, error)
            except Exception:
                logger.exception("subscription.state_callback_failed", state=new.value)
        return True

    def _fail(self, error: SubscriptionError) -> None:
        with self._lock:
            if not self._transition(SubscriptionState.ERROR, error):
                return
            channel, self._channel = self._channel, None
            self._cancel_timer()
        logger.warning("subscription.error", error=str(error))
        if channel is not None:
            channel.close()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _start_timer(self, timeout: Optional[float]) -> None:
        if not timeout:
            return
        timer = threading.Timer(float(timeout), self._on_timeout, args=(float(timeout),))
        timer.daemon = True
        self._timer = timer
        timer.start()

    def _on_timeout(self, timeout: float) -> None:
        if self._state is SubscriptionState.CONNECTING:
            self._fail(SubscriptionError(f"subscription not confirmed within {timeout:g}s"))

    def _handle_status(self, status: ChannelStatus, reason: Optional[str] = None) -> None:
        if status is ChannelStatus.SUBSCRIBED:
            with self._lock:
                self._cancel_timer()
                self._transition(SubscriptionState.SUBSCRIBED)
        elif status in (ChannelStatus.CHANNEL_ERROR, ChannelStatus.TIMED_OUT):
            self._fail(SubscriptionError(f"{status.value}: {reason or 'no reason given'}"))
        elif status is ChannelStatus.CLOSED and self._state is not SubscriptionState.CLOSED:
            self._fail(SubscriptionError(f"channel closed by transport: {reason or 'no reason given'}"))

    def _handle_event(self, event: ChangeEvent) -> None:
        if self._state is not SubscriptionState.SUBSCRIBED:
            return
        try:
            order = as_record(event.new or {})
        except ValidationError as e:
            logger.warning("subscription.bad_payload", table=event.table, error=str(e))
            return

        known = self._known_ids() if self._known_ids is not None else set()
        if not matches(order, self.identity, known):
            return

        if event.event_type is EventType.INSERT:
            if self._on_new_order is not None:
                self._on_new_order(order)
            return
        self._on_change(order)


_UNSET = object()


class LiveUpdateSubscriber:
    """Subscribes the viewer to order changes on a `ChangeFeed`.

    Authenticated-only viewers get the stream pre-filtered by `user_id`; a
    client id cannot be filtered server side (it lives inside `metadata`), so
    those viewers read the table-wide stream and filter locally.
    """

    def __init__(self, feed: ChangeFeed, *, table: str = "orders", connect_timeout=_UNSET) -> None:
        self.feed = feed
        self.table = table
        self.connect_timeout = default_connect_timeout() if connect_timeout is _UNSET else connect_timeout

    def subscribe(
        self,
        identity: Identity,
        on_change: OrderCallback,
        *,
        known_ids: Optional[KnownIds] = None,
        on_new_order: Optional[OrderCallback] = None,
        on_state: Optional[StateCallback] = None,
    ) -> Subscription:
        if identity.is_empty:
            raise ValueError("cannot subscribe without a user id or client id")

        sub = Subscription(
            identity,
            on_change,
            known_ids=known_ids,
            on_new_order=on_new_order,
            on_state=on_state,
        )
        eq_filter = None if identity.client_id else ("user_id", identity.user_id)
        name = f"{self.table}-{uuid.uuid4().hex[:12]}"

        sub._transition(SubscriptionState.CONNECTING)
        try:
            channel = self.feed.channel(
                name,
                table=self.table,
                events=frozenset({EventType.INSERT, EventType.UPDATE}),
                filter=eq_filter,
                on_event=sub._handle_event,
                on_status=sub._handle_status,
            )
            sub._channel = channel
            sub._start_timer(self.connect_timeout)
            channel.subscribe()
        except Exception as e:
            sub._fail(SubscriptionError(f"could not open channel {name}: {e}"))
            return sub

        logger.info(
            "subscription.opened",
            channel=name,
            server_filter=eq_filter[0] if eq_filter else None,
            state=sub.state.value,
        )
        return sub
