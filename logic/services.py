from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

import pandas as pd
import structlog
from pydantic import ValidationError
from sqlalchemy.orm import selectinload, sessionmaker

from database.models import Order, OrderItem, OrderStatus, User, get_engine
from realtime import ChangeEvent, EventType, get_change_feed
from tracking.records import OrderMetadata, as_utc

logger = structlog.get_logger(__name__)

ORDERS_TABLE = "orders"

# NOTE: create engine/session per-call to ensure we respect the current
# `DATABASE_URL` environment variable at runtime.

# Tests may monkeypatch these.
engine = None
feed = None


def get_session():
    """Create a new SQLAlchemy Session bound to the engine returned by get_engine()."""
    _engine = engine if engine is not None else get_engine()
    Session = sessionmaker(bind=_engine, expire_on_commit=False)
    return Session()


def _change_feed():
    return feed if feed is not None else get_change_feed()


try:
    from passlib.context import CryptContext
except Exception as e:
    raise ImportError(
        "passlib is required for secure password hashing. Install with: `pip install passlib`"
    ) from e

# PBKDF2-SHA256 avoids native bcrypt backend issues.
pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


# --- USERS ---
def create_user(username, password, *, is_staff=False) -> str:
    uname = _normalize_str(username)
    if not uname:
        raise ValueError("username is required")
    if not password or len(str(password)) < 8:
        raise ValueError("password must be at least 8 characters")

    session = get_session()
    try:
        if session.query(User).filter(User.username == uname).first():
            raise ValueError("username already exists")
        user = User(username=uname, password_hash=pwd_context.hash(str(password)), is_staff=bool(is_staff))
        session.add(user)
        session.commit()
        logger.info("user.created", user_id=user.id, is_staff=bool(is_staff))
        return str(user.id)
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def _normalize_str(x):
    if x is None:
        return ""
    return str(x).strip()


def authenticate_user(username, password) -> Optional[str]:
    session = get_session()
    try:
        user = session.query(User).filter(User.username == _normalize_str(username)).first()
        if not user:
            return None
        if not pwd_context.verify(str(password or ""), user.password_hash):
            return None
        return str(user.id)
    finally:
        session.close()


def get_user(user_id) -> Optional[Dict[str, Any]]:
    session = get_session()
    try:
        user = session.get(User, str(user_id))
        if user is None:
            return None
        return {"id": str(user.id), "username": user.username, "is_staff": bool(user.is_staff)}
    finally:
        session.close()


# --- ORDERS ---
def normalize_status(value) -> str:
    s = _normalize_str(value).lower()
    try:
        return OrderStatus(s).value
    except ValueError:
        raise ValueError(f"Unknown order status: {value!r}") from None


def _order_number(now: datetime) -> str:
    return f"ORD-{now:%Y%m%d}-{secrets.token_hex(3).upper()}"


def _order_to_dict(order: Order) -> Dict[str, Any]:
    return {
        "id": str(order.id),
        "order_number": order.order_number,
        "customer_name": order.customer_name,
        "customer_email": order.customer_email,
        "customer_phone": order.customer_phone,
        "customer_address": order.customer_address,
        "total_amount": float(order.total_amount or 0.0),
        "status": order.status,
        "order_status": order.order_status,
        "payment_status": order.payment_status,
        "admin_read_at": as_utc(order.admin_read_at),
        "admin_done_at": as_utc(order.admin_done_at),
        "user_id": order.user_id,
        "metadata": dict(order.metadata_ or {}),
        "created_at": as_utc(order.created_at),
        "updated_at": as_utc(order.updated_at),
        "order_items": [
            {
                "id": item.id,
                "product_name": item.product_name,
                "quantity": int(item.quantity or 0),
                "product_price": float(item.product_price or 0.0),
                "subtotal": float(item.subtotal or 0.0),
                "special_requests": item.special_requests,
                "toppings": item.toppings,
            }
            for item in order.items
        ],
    }


def _publish(event_type: EventType, new: Dict[str, Any], old: Optional[Dict[str, Any]] = None) -> None:
    # The row is already committed; a broken feed only delays live updates and
    # subscribers close that gap with a re-fetch.
    try:
        _change_feed().publish(ChangeEvent(event_type=event_type, table=ORDERS_TABLE, new=new, old=old))
    except Exception:
        logger.exception("order.publish_failed", event_type=event_type.value, order_id=new.get("id"))


def _build_items(items: Iterable[Dict[str, Any]]) -> List[OrderItem]:
    out: List[OrderItem] = []
    for raw in items or []:
        name = _normalize_str(raw.get("product_name"))
        if not name:
            raise ValueError("order item needs a product_name")
        qty = int(raw.get("quantity") or 1)
        if qty < 1:
            raise ValueError("order item quantity must be >= 1")
        price = float(raw.get("product_price") or 0.0)
        if price < 0:
            raise ValueError("order item price must be >= 0")
        toppings = raw.get("toppings")
        if isinstance(toppings, str):
            toppings = [t.strip() for t in toppings.split(",") if t.strip()]
        out.append(
            OrderItem(
                product_name=name,
                quantity=qty,
                product_price=price,
                subtotal=round(price * qty, 2),
                special_requests=raw.get("special_requests") or None,
                toppings=list(toppings) if toppings else None,
            )
        )
    if not out:
        raise ValueError("an order needs at least one item")
    return out


def create_order(
    *,
    customer_name,
    customer_email,
    items,
    user_id=None,
    client_id=None,
    customer_phone=None,
    customer_address=None,
    metadata=None,
    order_number=None,
) -> str:
    """Create an order owned by a user id and/or an anonymous client id.

    Idempotent by `order_number`: re-submitting the same number returns the
    existing order id.
    """
    uid = _normalize_str(user_id) or None
    cid = _normalize_str(client_id) or _normalize_str((metadata or {}).get("clientId")) or None
    if not uid and not cid:
        raise ValueError("an order must carry a user_id or a client_id")
    if not _normalize_str(customer_name):
        raise ValueError("customer_name is required")
    if not _normalize_str(customer_email):
        raise ValueError("customer_email is required")

    meta = _check_metadata(metadata)
    if cid:
        meta["clientId"] = cid

    session = get_session()
    try:
        number = _normalize_str(order_number) or None
        if number:
            existing = session.query(Order).filter(Order.order_number == number).first()
            if existing:
                return str(existing.id)

        now = _now_utc()
        order_items = _build_items(items)
        order = Order(
            order_number=number or _order_number(now),
            customer_name=_normalize_str(customer_name),
            customer_email=_normalize_str(customer_email),
            customer_phone=_normalize_str(customer_phone) or None,
            customer_address=_normalize_str(customer_address) or None,
            total_amount=round(sum(i.subtotal for i in order_items), 2),
            status=OrderStatus.PENDING.value,
            order_status=OrderStatus.PENDING.value,
            user_id=uid,
            metadata_=meta,
            created_at=now,
            updated_at=now,
            items=order_items,
        )
        session.add(order)
        session.commit()
        record = _order_to_dict(order)
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

    logger.info(
        "order.created",
        order_id=record["id"],
        order_number=record["order_number"],
        anonymous=uid is None,
    )
    _publish(EventType.INSERT, record)
    return record["id"]


def _orders_query(session):
    return session.query(Order).options(selectinload(Order.items))


def get_order(order_id) -> Optional[Dict[str, Any]]:
    session = get_session()
    try:
        order = _orders_query(session).filter(Order.id == str(order_id)).first()
        return _order_to_dict(order) if order else None
    finally:
        session.close()


def list_orders(*, user_id=None, client_id=None, limit: int = 100) -> List[Dict[str, Any]]:
    """Orders matching exactly one ownership predicate, newest first."""
    uid = _normalize_str(user_id) or None
    cid = _normalize_str(client_id) or None
    if bool(uid) == bool(cid):
        raise ValueError("pass exactly one of user_id / client_id")

    session = get_session()
    try:
        q = _orders_query(session)
        if uid:
            q = q.filter(Order.user_id == uid)
        else:
            q = q.filter(Order.metadata_["clientId"].as_string() == cid)
        rows = q.order_by(Order.created_at.desc()).limit(int(limit)).all()
        return [_order_to_dict(o) for o in rows]
    finally:
        session.close()


def list_recent_orders(*, limit: int = 50, include_done: bool = True) -> List[Dict[str, Any]]:
    session = get_session()
    try:
        q = _orders_query(session)
        if not include_done:
            q = q.filter(Order.admin_done_at.is_(None))
        rows = q.order_by(Order.created_at.desc()).limit(int(limit)).all()
        return [_order_to_dict(o) for o in rows]
    finally:
        session.close()


_IMMUTABLE_FIELDS = {"id", "order_number", "created_at"}
_MUTABLE_FIELDS = {
    "status",
    "order_status",
    "payment_status",
    "admin_read_at",
    "admin_done_at",
    "customer_name",
    "customer_email",
    "customer_phone",
    "customer_address",
    "user_id",
    "metadata",
}


def _check_metadata(metadata) -> Dict[str, Any]:
    if metadata is None:
        return {}
    if not isinstance(metadata, dict):
        raise ValueError("metadata must be an object")
    try:
        OrderMetadata.model_validate(metadata)
    except ValidationError as e:
        raise ValueError(f"invalid metadata: {e.errors()[0].get('msg')}") from None
    return dict(metadata)


def _merge_metadata(current: Dict[str, Any], incoming: Optional[Dict[str, Any]], *, order_id: str) -> Dict[str, Any]:
    merged = dict(current or {})
    stored_cid = _normalize_str(merged.get("clientId"))
    for key, value in (incoming or {}).items():
        # Once set, clientId is the anonymous owner's only handle on the order.
        if key == "clientId" and stored_cid and _normalize_str(value) != stored_cid:
            logger.warning("order.metadata_client_id_kept", order_id=order_id, rejected=bool(_normalize_str(value)))
            continue
        merged[key] = value
    return merged


def _apply_user_id(order: Order, value) -> None:
    new_uid = _normalize_str(value) or None
    current = order.user_id or None
    if new_uid == current:
        return
    if current is None:
        # Claiming an anonymous order after sign-in.
        order.user_id = new_uid
        return
    if new_uid is not None:
        raise ValueError("an order's user_id cannot be reassigned")
    if not _normalize_str((order.metadata_ or {}).get("clientId")):
        raise ValueError("cannot clear user_id of an order without a clientId")
    order.user_id = None


def update_order(order_id, *, changes: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Partial, metadata-preserving update of one order.

    Only the given fields change. `metadata` is merged key by key and a stored
    `clientId` can never be dropped; `status` and `order_status` are always
    written together; `updated_at` always moves forward.
    Returns the updated record, or None if the order does not exist.
    """
    changes = dict(changes or {})
    changes.pop("updated_at", None)
    bad = set(changes) & _IMMUTABLE_FIELDS
    if bad:
        raise ValueError(f"immutable order fields: {sorted(bad)}")
    unknown = set(changes) - _MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"unknown order fields: {sorted(unknown)}")

    if "status" in changes or "order_status" in changes:
        st = changes.get("status", changes.get("order_status"))
        changes["status"] = changes["order_status"] = normalize_status(st)
    if "metadata" in changes:
        changes["metadata"] = _check_metadata(changes["metadata"])

    session = get_session()
    try:
        order = _orders_query(session).filter(Order.id == str(order_id)).first()
        if not order:
            return None
        before = _order_to_dict(order)

        # metadata first: clearing user_id depends on the stored clientId.
        if "metadata" in changes:
            order.metadata_ = _merge_metadata(order.metadata_, changes["metadata"], order_id=str(order.id))
        if "user_id" in changes:
            _apply_user_id(order, changes["user_id"])
        for field, value in changes.items():
            if field not in ("metadata", "user_id"):
                setattr(order, field, value)

        prev = as_utc(order.updated_at)
        now = _now_utc()
        if prev is not None and now <= prev:
            now = prev + timedelta(microseconds=1)
        order.updated_at = now

        session.commit()
        after = _order_to_dict(order)
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

    logger.info("order.updated", order_id=after["id"], fields=sorted(changes), status=after["status"])
    _publish(EventType.UPDATE, after, old=before)
    return after


def update_order_status(order_id, status) -> Optional[Dict[str, Any]]:
    """Staff status transition."""
    return update_order(order_id, changes={"status": normalize_status(status)})


def mark_order_read(order_id) -> Optional[Dict[str, Any]]:
    return update_order(order_id, changes={"admin_read_at": _now_utc()})


def mark_order_done(order_id) -> Optional[Dict[str, Any]]:
    return update_order(order_id, changes={"admin_done_at": _now_utc()})


def orders_frame(orders: List[Dict[str, Any]]) -> pd.DataFrame:
    """Flatten order records for tabular display (staff board)."""
    if not orders:
        return pd.DataFrame()
    rows = []
    for o in orders:
        items = o.get("order_items") or []
        rows.append(
            {
                "order_number": o.get("order_number"),
                "status": o.get("status") or o.get("order_status"),
                "customer_name": o.get("customer_name"),
                "total_amount": o.get("total_amount"),
                "items": ", ".join(f"{i.get('quantity')}x {i.get('product_name')}" for i in items),
                "anonymous": not o.get("user_id"),
                "read": o.get("admin_read_at") is not None,
                "done": o.get("admin_done_at") is not None,
                "created_at": o.get("created_at"),
                "updated_at": o.get("updated_at"),
                "id": o.get("id"),
            }
        )
    df = pd.DataFrame(rows)
    for col in ("created_at", "updated_at"):
        df[col] = pd.to_datetime(df[col], errors="coerce", utc=True)
    return df
