from __future__ import annotations

import os
from typing import Any, Dict, List, Optional

import structlog
from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import ValidationError

from database.models import init_db
from logic import services
from logic.logging import configure_logging
from tracking.records import OrderRecord

from .schemas import (
    AuthLoginRequest,
    AuthMeResponse,
    AuthResponse,
    AuthSignupRequest,
    OrderCreatedResponse,
    OrderCreateRequest,
    OrderStatusUpdateRequest,
)
from .security import TokenUser, create_access_token, decode_token

logger = structlog.get_logger(__name__)

app = FastAPI(title="Pizzeria Orders API", version="1.0.0")

# CORS: default to permissive for local dev, but allow locking down via env.
_cors_origins_raw = os.getenv("CORS_ALLOW_ORIGINS", "*")
_cors_origins = [o.strip() for o in _cors_origins_raw.split(",") if o.strip()]
_cors_is_wildcard = len(_cors_origins) == 1 and _cors_origins[0] == "*"
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    # Credentials cannot be used with wildcard origins.
    allow_credentials=False if _cors_is_wildcard else True,
    allow_methods=["*"],
    allow_headers=["*"],
)

security = HTTPBearer(auto_error=False)


@app.on_event("startup")
def _startup() -> None:
    configure_logging()
    init_db()


def _records(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    out = []
    for r in rows:
        try:
            out.append(OrderRecord.model_validate(r).to_dict())
        except ValidationError as e:
            logger.warning("api.bad_order_row", order_id=r.get("id"), error=str(e))
    return out


def get_optional_user(
    creds: HTTPAuthorizationCredentials | None = Depends(security),
) -> Optional[TokenUser]:
    if creds is None:
        return None
    try:
        return decode_token(creds.credentials)
    except Exception:
        raise HTTPException(status_code=401, detail="Invalid token")


def get_current_user(user: Optional[TokenUser] = Depends(get_optional_user)) -> TokenUser:
    if user is None:
        raise HTTPException(status_code=401, detail="Missing bearer token")
    return user


def get_staff_user(user: TokenUser = Depends(get_current_user)) -> TokenUser:
    if not user.is_staff:
        raise HTTPException(status_code=403, detail="Staff only")
    return user


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.post("/auth/signup", response_model=AuthResponse)
def signup(req: AuthSignupRequest) -> AuthResponse:
    username = str(req.username).strip()
    try:
        user_id = services.create_user(username, req.password)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    token = create_access_token(user_id=user_id, username=username)
    return AuthResponse(access_token=token, user_id=user_id, username=username)


@app.post("/auth/login", response_model=AuthResponse)
def login(req: AuthLoginRequest) -> AuthResponse:
    username = str(req.username).strip()
    user_id = services.authenticate_user(username, req.password)
    if not user_id:
        logger.info("auth.login_failed", username=username)
        raise HTTPException(status_code=401, detail="Invalid username or password")
    user = services.get_user(user_id) or {}
    is_staff = bool(user.get("is_staff"))
    token = create_access_token(user_id=user_id, username=username, is_staff=is_staff)
    return AuthResponse(access_token=token, user_id=user_id, username=username, is_staff=is_staff)


@app.get("/auth/me", response_model=AuthMeResponse)
def me(user: TokenUser = Depends(get_current_user)) -> AuthMeResponse:
    # Prefer DB values if present.
    row = services.get_user(user.user_id)
    if row is None:
        return AuthMeResponse(user_id=user.user_id, username=user.username, is_staff=user.is_staff)
    return AuthMeResponse(user_id=row["id"], username=row["username"], is_staff=row["is_staff"])


@app.post("/orders", response_model=OrderCreatedResponse)
def create_order(req: OrderCreateRequest, user: Optional[TokenUser] = Depends(get_optional_user)) -> OrderCreatedResponse:
    if user is None and not (req.client_id or "").strip():
        raise HTTPException(status_code=400, detail="Anonymous orders need a client_id")
    try:
        order_id = services.create_order(
            customer_name=req.customer_name,
            customer_email=req.customer_email,
            customer_phone=req.customer_phone,
            customer_address=req.customer_address,
            items=[i.model_dump() for i in req.items],
            user_id=user.user_id if user else None,
            client_id=req.client_id,
            metadata=req.metadata,
            order_number=req.order_number,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    order = services.get_order(order_id) or {}
    return OrderCreatedResponse(id=order_id, order_number=str(order.get("order_number") or ""))


@app.get("/orders", response_model=List[Dict[str, Any]])
def list_client_orders(client_id: str = Query(min_length=1)) -> List[Dict[str, Any]]:
    # Holding the client id is what entitles an anonymous caller to its orders.
    return _records(services.list_orders(client_id=client_id))


@app.get("/orders/mine", response_model=List[Dict[str, Any]])
def list_my_orders(user: TokenUser = Depends(get_current_user)) -> List[Dict[str, Any]]:
    return _records(services.list_orders(user_id=user.user_id))


@app.get("/orders/{order_id}", response_model=Dict[str, Any])
def get_order(
    order_id: str,
    client_id: Optional[str] = None,
    user: Optional[TokenUser] = Depends(get_optional_user),
) -> Dict[str, Any]:
    order = services.get_order(order_id)
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    owner_ok = user is not None and (user.is_staff or order.get("user_id") == user.user_id)
    client_ok = bool(client_id) and (order.get("metadata") or {}).get("clientId") == client_id
    if not (owner_ok or client_ok):
        # Same answer as a missing row: do not reveal other people's orders.
        raise HTTPException(status_code=404, detail="Order not found")
    return OrderRecord.model_validate(order).to_dict()


@app.get("/admin/orders", response_model=List[Dict[str, Any]])
def admin_list_orders(
    limit: int = Query(default=50, ge=1, le=500),
    include_done: bool = True,
    staff: TokenUser = Depends(get_staff_user),
) -> List[Dict[str, Any]]:
    return _records(services.list_recent_orders(limit=limit, include_done=include_done))


@app.patch("/admin/orders/{order_id}/status", response_model=Dict[str, Any])
def admin_update_status(
    order_id: str,
    req: OrderStatusUpdateRequest,
    staff: TokenUser = Depends(get_staff_user),
) -> Dict[str, Any]:
    try:
        order = services.update_order_status(order_id, req.status)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    logger.info("admin.status_changed", order_id=order_id, status=order["status"], staff=staff.username)
    return OrderRecord.model_validate(order).to_dict()


@app.post("/admin/orders/{order_id}/read", response_model=Dict[str, Any])
def admin_mark_read(order_id: str, staff: TokenUser = Depends(get_staff_user)) -> Dict[str, Any]:
    order = services.mark_order_read(order_id)
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    return OrderRecord.model_validate(order).to_dict()


@app.post("/admin/orders/{order_id}/done", response_model=Dict[str, Any])
def admin_mark_done(order_id: str, staff: TokenUser = Depends(get_staff_user)) -> Dict[str, Any]:
    order = services.mark_order_done(order_id)
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    return OrderRecord.model_validate(order).to_dict()
