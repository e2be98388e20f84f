from __future__ import annotations

import enum
import os
import uuid
from datetime import datetime, timezone
from functools import lru_cache

from sqlalchemy import JSON, Boolean, Column, DateTime, Float, ForeignKey, Integer, String, create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.pool import NullPool


Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


# --- ENUMS ---
class OrderStatus(enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY = "ready"
    ARRIVED = "arrived"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


ACTIVE_STATUSES = frozenset(
    s.value
    for s in (
        OrderStatus.PENDING,
        OrderStatus.CONFIRMED,
        OrderStatus.PREPARING,
        OrderStatus.READY,
        OrderStatus.ARRIVED,
    )
)


class PaymentStatus(enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


# --- TABLES ---
class User(Base):
    __tablename__ = "users"
    id = Column(String(36), primary_key=True, default=_new_id)
    username = Column(String, unique=True, index=True, nullable=False)
    password_hash = Column(String, nullable=False)
    is_staff = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class Order(Base):
    __tablename__ = "orders"
    id = Column(String(36), primary_key=True, default=_new_id)
    order_number = Column(String, unique=True, nullable=False, index=True)
    customer_name = Column(String, nullable=False)
    customer_email = Column(String, nullable=False)
    customer_phone = Column(String, nullable=True)
    customer_address = Column(String, nullable=True)
    total_amount = Column(Float, nullable=False, default=0.0)
    # Two storage slots for one logical status; always written together.
    status = Column(String, nullable=False, default=OrderStatus.PENDING.value, index=True)
    order_status = Column(String, nullable=False, default=OrderStatus.PENDING.value)
    payment_status = Column(String, nullable=False, default=PaymentStatus.PENDING.value)
    admin_read_at = Column(DateTime(timezone=True), nullable=True)
    admin_done_at = Column(DateTime(timezone=True), nullable=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=True, index=True)
    # `metadata` is reserved on declarative classes; the column keeps its name.
    metadata_ = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.id",
    )


class OrderItem(Base):
    __tablename__ = "order_items"
    id = Column(Integer, primary_key=True)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    product_name = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    product_price = Column(Float, nullable=False, default=0.0)
    subtotal = Column(Float, nullable=False, default=0.0)
    special_requests = Column(String, nullable=True)
    toppings = Column(JSON, nullable=True)

    order = relationship("Order", back_populates="items")


# Database Connection Setup
def _database_url() -> str:
    return os.getenv("DATABASE_URL", "sqlite:///pizzeria_orders.db")


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    url = _database_url()

    if url.startswith("sqlite"):
        # Use NullPool for sqlite to avoid cross-thread pooling issues in dev.
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=NullPool,
        )

    # Postgres (managed) / others.
    pool_size = _int_env("DB_POOL_SIZE", 5)
    max_overflow = _int_env("DB_MAX_OVERFLOW", 10)
    pool_timeout = _int_env("DB_POOL_TIMEOUT", 30)

    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_timeout=pool_timeout,
    )


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except (TypeError, ValueError):
        return default


def reset_engine_cache() -> None:
    """Clear cached engine (useful for tests)."""
    get_engine.cache_clear()


def init_db():
    engine = get_engine()
    url = _database_url()
    auto_default = "1" if url.startswith("sqlite") else "0"
    auto_create = os.getenv("AUTO_CREATE_DB", auto_default)
    if str(auto_create).strip().lower() in {"1", "true", "yes"}:
        Base.metadata.create_all(engine)

    if url.startswith("sqlite"):
        _ensure_sqlite_schema(engine)
    return engine


def _ensure_sqlite_schema(engine: Engine) -> None:
    """Add columns introduced after the first release to existing SQLite files.

    `create_all()` never ALTERs existing tables, so local dev databases created
    before `admin_read_at`/`admin_done_at`/`payment_status` existed would break
    the staff board.
    """
    insp = inspect(engine)
    tables = set(insp.get_table_names())
    if "orders" not in tables:
        return

    existing_cols = {c["name"] for c in insp.get_columns("orders")}
    wanted = [
        ("payment_status", "TEXT NOT NULL DEFAULT 'pending'"),
        ("admin_read_at", "DATETIME"),
        ("admin_done_at", "DATETIME"),
    ]
    to_add = [(n, d) for (n, d) in wanted if n not in existing_cols]
    with engine.begin() as conn:
        for col_name, col_def in to_add:
            conn.execute(text(f"ALTER TABLE orders ADD COLUMN {col_name} {col_def}"))
        conn.execute(text("CREATE INDEX IF NOT EXISTS ix_orders_user_id ON orders(user_id)"))
        conn.execute(text("CREATE INDEX IF NOT EXISTS ix_orders_created_at ON orders(created_at)"))
