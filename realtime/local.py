from __future__ import annotations

import threading
from typing import FrozenSet, List, Optional

import structlog

from .base import ChangeEvent, ChannelStatus, EqFilter, EventCallback, EventType, StatusCallback

logger = structlog.get_logger(__name__)


class LocalChannel:
    """A channel registered on a `LocalChangeFeed`.

    Events are delivered only between confirmation (`SUBSCRIBED`) and `close()`.
    """

    def __init__(
        self,
        feed: "LocalChangeFeed",
        name: str,
        *,
        table: str,
        events: FrozenSet[EventType],
        filter: Optional[EqFilter],
        on_event: EventCallback,
        on_status: Optional[StatusCallback],
    ) -> None:
        self.name = name
        self.table = table
        self.events = frozenset(events)
        self.filter = filter
        self._feed = feed
        self._on_event = on_event
        self._on_status = on_status
        self._lock = threading.Lock()
        self._requested = False
        self._joined = False
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def joined(self) -> bool:
        return self._joined

    def subscribe(self) -> None:
        with self._lock:
            if self._closed or self._requested:
                return
            self._requested = True
        self._feed._register(self)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._joined = False
        self._feed._unregister(self)

    def accepts(self, event: ChangeEvent) -> bool:
        if not self._joined or self._closed:
            return False
        if event.table != self.table or event.event_type not in self.events:
            return False
        if self.filter is None:
            return True
        column, value = self.filter
        got = (event.new or {}).get(column)
        return got is not None and value is not None and str(got) == str(value)

    def _confirm(self) -> None:
        with self._lock:
            if self._closed or self._joined:
                return
            self._joined = True
        self._emit_status(ChannelStatus.SUBSCRIBED, None)

    def _fail(self, status: ChannelStatus, reason: Optional[str]) -> None:
        with self._lock:
            if self._closed:
                return
            self._joined = False
        self._emit_status(status, reason)

    def _deliver(self, event: ChangeEvent) -> None:
        self._on_event(event)

    def _emit_status(self, status: ChannelStatus, reason: Optional[str]) -> None:
        if self._on_status is None:
            return
        self._on_status(status, reason)


class LocalChangeFeed:
    """In-process change feed.

    Stands in for a hosted realtime service when the order store is reached
    directly (dev server, Streamlit app, tests). Writers call `publish()`;
    every joined channel whose table, event type and optional equality filter
    match receives the event synchronously on the publisher's thread.
    """

    name = "local"

    def __init__(self, *, auto_confirm: bool = True) -> None:
        self.auto_confirm = bool(auto_confirm)
        self._lock = threading.Lock()
        self._channels: List[LocalChannel] = []

    def channel(
        self,
        name: str,
        *,
        table: str,
        events: FrozenSet[EventType],
        filter: Optional[EqFilter] = None,
        on_event: EventCallback,
        on_status: Optional[StatusCallback] = None,
    ) -> LocalChannel:
        return LocalChannel(
            self,
            str(name),
            table=str(table),
            events=frozenset(events),
            filter=filter,
            on_event=on_event,
            on_status=on_status,
        )

    def publish(self, event: ChangeEvent) -> None:
        with self._lock:
            targets = [c for c in self._channels if c.accepts(event)]
        for ch in targets:
            try:
                ch._deliver(event)
            except Exception:
                # One broken listener must not starve the others.
                logger.exception("change_feed.listener_failed", channel=ch.name, table=event.table)

    def remove_channel(self, channel: LocalChannel) -> None:
        channel.close()

    def confirm(self, channel: LocalChannel) -> None:
        """Confirm a pending subscription (used when `auto_confirm` is off)."""
        channel._confirm()

    def fail(self, channel: LocalChannel, reason: str = "channel error") -> None:
        channel._fail(ChannelStatus.CHANNEL_ERROR, reason)

    def drop_all(self, reason: str = "transport dropped") -> None:
        """Simulate a transport drop: every open channel gets CHANNEL_ERROR."""
        with self._lock:
            targets = list(self._channels)
        logger.warning("change_feed.dropped", channels=len(targets), reason=reason)
        for ch in targets:
            ch._fail(ChannelStatus.CHANNEL_ERROR, reason)

    def open_channels(self) -> List[LocalChannel]:
        with self._lock:
            return [c for c in self._channels if not c.closed]

    def _register(self, channel: LocalChannel) -> None:
        with self._lock:
            if channel not in self._channels:
                self._channels.append(channel)
        logger.debug("change_feed.channel_registered", channel=channel.name, table=channel.table)
        if self.auto_confirm:
            channel._confirm()

    def _unregister(self, channel: LocalChannel) -> None:
        with self._lock:
            if channel in self._channels:
                self._channels.remove(channel)
        logger.debug("change_feed.channel_removed", channel=channel.name)
