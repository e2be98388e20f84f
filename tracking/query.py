from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Protocol

import structlog
from pydantic import ValidationError

from .identity import Identity
from .reconcile import as_record, is_newer
from .records import OrderRecord

logger = structlog.get_logger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class OrderQueryError(RuntimeError):
    """Fetching the viewer's orders failed; callers may retry or keep stale data."""

    def __init__(self, message: str, errors: Optional[Dict[str, BaseException]] = None) -> None:
        super().__init__(message)
        self.errors: Dict[str, BaseException] = dict(errors or {})


class OrderSource(Protocol):
    """Read side of the order store, one query per ownership predicate."""

    def orders_for_user(self, user_id: str) -> List[Mapping[str, Any]]: ...

    def orders_for_client(self, client_id: str) -> List[Mapping[str, Any]]: ...


class DatabaseOrderSource:
    """Reads straight from the order store through `logic.services`."""

    def __init__(self, *, limit: int = 100) -> None:
        self.limit = int(limit)

    def orders_for_user(self, user_id: str) -> List[Mapping[str, Any]]:
        from logic import services

        return services.list_orders(user_id=user_id, limit=self.limit)

    def orders_for_client(self, client_id: str) -> List[Mapping[str, Any]]:
        from logic import services

        return services.list_orders(client_id=client_id, limit=self.limit)


class ApiOrderSource:
    """Reads through the REST API; the user query needs the viewer's bearer token."""

    def __init__(self, token: Optional[str] = None) -> None:
        self.token = token

    def orders_for_user(self, user_id: str) -> List[Mapping[str, Any]]:
        import frontend_client

        if not self.token:
            raise OrderQueryError("orders by user need a bearer token")
        return frontend_client.list_my_orders(self.token)

    def orders_for_client(self, client_id: str) -> List[Mapping[str, Any]]:
        import frontend_client

        return frontend_client.list_client_orders(client_id)


@dataclass
class FetchResult:
    orders: List[OrderRecord] = field(default_factory=list)
    errors: Dict[str, BaseException] = field(default_factory=dict)

    @property
    def partial(self) -> bool:
        return bool(self.errors)

    def __len__(self) -> int:
        return len(self.orders)


def merge_order_lists(*lists: List[Mapping[str, Any]]) -> List[OrderRecord]:
    """Union keyed by order id (newest `updated_at` wins), newest order first.

    Rows that do not validate are logged and left out.
    """
    merged: Dict[str, OrderRecord] = {}
    for rows in lists:
        for row in rows or []:
            try:
                rec = as_record(row)
            except ValidationError as e:
                logger.warning("order_query.bad_row", order_id=row.get("id"), error=str(e))
                continue
            current = merged.get(rec.id)
            if current is None or is_newer(rec.updated_at, current.updated_at):
                merged[rec.id] = rec
    return sorted(merged.values(), key=lambda o: o.created_at or _EPOCH, reverse=True)


class OrderQueryLayer:
    def __init__(self, source: OrderSource, *, max_workers: int = 2) -> None:
        self.source = source
        self.max_workers = max(1, int(max_workers))

    def fetch_visible_orders(self, identity: Identity) -> FetchResult:
        """Orders owned by `identity.user_id` or tagged with `identity.client_id`.

        Both queries run concurrently and both must finish. If one fails the
        other's rows come back with `errors` set; if every query fails,
        `OrderQueryError` is raised. An empty identity yields an empty result.
        """
        if identity.is_empty:
            logger.debug("order_query.identity_not_ready")
            return FetchResult()

        futures: Dict[str, Future] = {}
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="order-query") as pool:
            if identity.user_id:
                futures["user_id"] = pool.submit(self.source.orders_for_user, identity.user_id)
            if identity.client_id:
                futures["client_id"] = pool.submit(self.source.orders_for_client, identity.client_id)

        results: Dict[str, List[Mapping[str, Any]]] = {}
        errors: Dict[str, BaseException] = {}
        for key, fut in futures.items():
            try:
                results[key] = list(fut.result() or [])
            except Exception as e:
                errors[key] = e
                logger.warning("order_query.failed", predicate=key, error=str(e))

        if errors and not results:
            first = next(iter(errors.values()))
            raise OrderQueryError(f"could not load orders: {first}", errors) from first

        orders = merge_order_lists(*results.values())
        logger.debug("order_query.done", count=len(orders), partial=bool(errors))
        return FetchResult(orders=orders, errors=errors)
