from .identity import (
    ClientIdentityProvider,
    Identity,
    MemoryClientStorage,
    SqliteClientStorage,
    StorageUnavailable,
    migrate_legacy_tracking,
)
from .query import ApiOrderSource, DatabaseOrderSource, FetchResult, OrderQueryError, OrderQueryLayer
from .reconcile import OrderBook, matches
from .records import OrderMetadata, OrderRecord
from .subscriber import LiveUpdateSubscriber, Subscription, SubscriptionError, SubscriptionState
from .tracker import OrderTracker, TrackerRegistry

__all__ = [
    "ApiOrderSource",
    "ClientIdentityProvider",
    "DatabaseOrderSource",
    "FetchResult",
    "Identity",
    "LiveUpdateSubscriber",
    "MemoryClientStorage",
    "OrderBook",
    "OrderMetadata",
    "OrderQueryError",
    "OrderQueryLayer",
    "OrderRecord",
    "OrderTracker",
    "SqliteClientStorage",
    "StorageUnavailable",
    "Subscription",
    "SubscriptionError",
    "SubscriptionState",
    "TrackerRegistry",
    "matches",
]
