from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set, Union

from .identity import Identity
from .records import OrderRecord

OrderLike = Union[OrderRecord, Mapping[str, Any]]

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def as_record(order: OrderLike) -> OrderRecord:
    if isinstance(order, OrderRecord):
        return order
    return OrderRecord.model_validate(dict(order))


def matches(order: OrderLike, identity: Identity, known_order_ids: Optional[Set[str]] = None) -> bool:
    """Does a change to `order` concern the viewer?

    Any of: same authenticated user, same anonymous client id, or an order the
    viewer already holds. The last rule keeps updates flowing when a writer
    momentarily strips the ownership fields.
    """
    rec = as_record(order)
    if identity.user_id and rec.user_id is not None and str(rec.user_id) == str(identity.user_id):
        return True
    if identity.client_id and rec.client_id is not None and rec.client_id == identity.client_id:
        return True
    return bool(known_order_ids) and rec.id in known_order_ids


def is_newer(incoming: Optional[datetime], current: Optional[datetime]) -> bool:
    if incoming is None:
        return False
    if current is None:
        return True
    return incoming > current


def overlay(current: OrderRecord, incoming: OrderRecord) -> OrderRecord:
    """Apply the fields an incoming payload carries on top of `current`."""
    fields = set(incoming.model_fields_set)
    data: Dict[str, Any] = current.model_dump(exclude={"metadata"})
    data.update(incoming.model_dump(include=fields - {"metadata"}))
    meta = current.metadata.to_dict()
    if "metadata" in fields:
        meta.update(incoming.metadata.to_dict())
    data["metadata"] = meta
    return OrderRecord.model_validate(data)


class OrderBook:
    """The viewer's known orders, keyed by id.

    Fetch results and live updates both go through `merge()`; a record only
    replaces what is held when its `updated_at` is strictly later, so neither
    path can roll the other back.
    """

    def __init__(self, orders: Optional[Iterable[OrderLike]] = None) -> None:
        self._lock = threading.RLock()
        self._orders: Dict[str, OrderRecord] = {}
        if orders:
            self.merge_many(orders)

    def merge(self, order: OrderLike) -> bool:
        rec = as_record(order)
        with self._lock:
            current = self._orders.get(rec.id)
            if current is None:
                self._orders[rec.id] = rec
                return True
            if not is_newer(rec.updated_at, current.updated_at):
                return False
            self._orders[rec.id] = overlay(current, rec)
            return True

    def merge_many(self, orders: Iterable[OrderLike]) -> int:
        changed = 0
        with self._lock:
            for order in orders:
                if self.merge(order):
                    changed += 1
        return changed

    def get(self, order_id: str) -> Optional[OrderRecord]:
        with self._lock:
            return self._orders.get(str(order_id))

    def known_ids(self) -> Set[str]:
        with self._lock:
            return set(self._orders)

    def orders(self) -> List[OrderRecord]:
        with self._lock:
            items = list(self._orders.values())
        return sorted(items, key=lambda o: o.created_at or _EPOCH, reverse=True)

    def active_orders(self) -> List[OrderRecord]:
        return [o for o in self.orders() if o.is_active]

    def clear(self) -> None:
        with self._lock:
            self._orders.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._orders)

    def __contains__(self, order_id: object) -> bool:
        with self._lock:
            return order_id in self._orders
