from datetime import datetime
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, Field


class AuthSignupRequest(BaseModel):
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)


class AuthLoginRequest(BaseModel):
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)


class AuthResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user_id: str
    username: str
    is_staff: bool = False


class AuthMeResponse(BaseModel):
    user_id: str
    username: str
    is_staff: bool = False


class OrderItemIn(BaseModel):
    product_name: str = Field(min_length=1)
    quantity: int = Field(default=1, ge=1)
    product_price: float = Field(ge=0)
    special_requests: Optional[str] = None
    toppings: Optional[List[str]] = None


class OrderCreateRequest(BaseModel):
    customer_name: str = Field(min_length=1)
    customer_email: str = Field(min_length=3)
    customer_phone: Optional[str] = None
    customer_address: Optional[str] = None
    items: List[OrderItemIn] = Field(min_length=1)
    # Required for anonymous callers; optional with a bearer token.
    client_id: Optional[str] = None
    order_number: Optional[str] = None
    metadata: Dict[str, Union[str, int, float, bool, None]] = Field(default_factory=dict)


class OrderCreatedResponse(BaseModel):
    id: str
    order_number: str


class OrderStatusUpdateRequest(BaseModel):
    status: str = Field(min_length=1)
