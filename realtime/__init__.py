from .base import ChangeEvent, ChangeFeed, Channel, ChannelStatus, EventType
from .factory import get_change_feed, reset_change_feed
from .local import LocalChangeFeed

__all__ = [
    "ChangeEvent",
    "ChangeFeed",
    "Channel",
    "ChannelStatus",
    "EventType",
    "LocalChangeFeed",
    "get_change_feed",
    "reset_change_feed",
]
