from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, FrozenSet, Optional, Protocol, Tuple


class EventType(str, enum.Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"


class ChannelStatus(str, enum.Enum):
    SUBSCRIBED = "SUBSCRIBED"
    CHANNEL_ERROR = "CHANNEL_ERROR"
    TIMED_OUT = "TIMED_OUT"
    CLOSED = "CLOSED"


@dataclass(frozen=True)
class ChangeEvent:
    """One row change delivered by a change feed."""

    event_type: EventType
    table: str
    new: Dict[str, Any]
    old: Optional[Dict[str, Any]] = None
    commit_timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


# (column, value): a single server-side equality predicate.
EqFilter = Tuple[str, Any]

EventCallback = Callable[[ChangeEvent], None]
StatusCallback = Callable[[ChannelStatus, Optional[str]], None]


class Channel(Protocol):
    name: str

    @property
    def closed(self) -> bool: ...

    def subscribe(self) -> None: ...

    def close(self) -> None: ...


class ChangeFeed(Protocol):
    """Provider-agnostic change-notification interface.

    The tracking core only needs row-level INSERT/UPDATE notifications for one
    table, optionally pre-filtered by a single equality predicate.
    """

    name: str

    def channel(
        self,
        name: str,
        *,
        table: str,
        events: FrozenSet[EventType],
        filter: Optional[EqFilter] = None,
        on_event: EventCallback,
        on_status: Optional[StatusCallback] = None,
    ) -> Channel: ...

    def publish(self, event: ChangeEvent) -> None: ...

    def remove_channel(self, channel: Channel) -> None: ...
