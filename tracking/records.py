from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from database.models import ACTIVE_STATUSES

Primitive = Union[str, int, float, bool, None]


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Naive timestamps coming out of SQLite are UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class OrderMetadata(BaseModel):
    """The open `metadata` bag of an order.

    `clientId` is the one key the tracking core relies on; anything else is
    carried through untouched as long as it is a primitive value.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    client_id: Optional[str] = Field(default=None, alias="clientId")

    @model_validator(mode="after")
    def _extras_are_primitive(self) -> "OrderMetadata":
        for key, value in (self.model_extra or {}).items():
            if not isinstance(value, (str, int, float, bool)) and value is not None:
                raise ValueError(f"metadata.{key} must be a primitive value")
        return self

    def to_dict(self) -> Dict[str, Primitive]:
        out: Dict[str, Primitive] = dict(self.model_extra or {})
        if self.client_id:
            out["clientId"] = self.client_id
        return out


class OrderItemRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[int] = None
    product_name: str
    quantity: int = 1
    product_price: float = 0.0
    subtotal: float = 0.0
    special_requests: Optional[str] = None
    toppings: Optional[List[str]] = None

    @field_validator("toppings", mode="before")
    @classmethod
    def _toppings_list(cls, v: Any) -> Any:
        if isinstance(v, str):
            return [t.strip() for t in v.split(",") if t.strip()]
        return v


class OrderRecord(BaseModel):
    """An order as seen by the client.

    Only `id` is required so that partial change payloads can be represented;
    `model_fields_set` tells which fields a payload actually carried.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str
    order_number: Optional[str] = None
    customer_name: Optional[str] = None
    customer_email: Optional[str] = None
    customer_phone: Optional[str] = None
    customer_address: Optional[str] = None
    total_amount: Optional[float] = None
    status: Optional[str] = None
    order_status: Optional[str] = None
    payment_status: Optional[str] = None
    admin_read_at: Optional[datetime] = None
    admin_done_at: Optional[datetime] = None
    user_id: Optional[str] = None
    metadata: OrderMetadata = Field(default_factory=OrderMetadata)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    order_items: Optional[List[OrderItemRecord]] = None

    @field_validator("id", "user_id", mode="before")
    @classmethod
    def _ids_are_strings(cls, v: Any) -> Any:
        if v is None:
            return None
        return str(v)

    @field_validator("metadata", mode="before")
    @classmethod
    def _metadata_default(cls, v: Any) -> Any:
        return {} if v is None else v

    @field_validator("created_at", "updated_at", "admin_read_at", "admin_done_at", mode="after")
    @classmethod
    def _utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v)

    @property
    def client_id(self) -> Optional[str]:
        return self.metadata.client_id

    @property
    def current_status(self) -> Optional[str]:
        return self.status or self.order_status

    @property
    def is_active(self) -> bool:
        return self.current_status in ACTIVE_STATUSES and self.admin_done_at is None

    def to_dict(self) -> Dict[str, Any]:
        data = self.model_dump(mode="json", exclude={"metadata"})
        data["metadata"] = self.metadata.to_dict()
        return data
