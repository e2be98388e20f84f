from __future__ import annotations

import json
import os
import socket
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class APIError(RuntimeError):
    status_code: int
    detail: str
    body: str = ""

    def __str__(self) -> str:
        return f"{self.status_code}: {self.detail}"


def _request_json(
    method: str,
    path: str,
    *,
    token: Optional[str] = None,
    json_body: Optional[Dict[str, Any]] = None,
    params: Optional[Dict[str, Any]] = None,
    timeout: float = 30.0,
) -> Any:
    url = f"{_base_url()}{path}"
    if params:
        query = {k: v for k, v in params.items() if v is not None}
        if query:
            url = f"{url}?{urllib.parse.urlencode(query)}"
    data = None
    headers: Dict[str, str] = {"Accept": "application/json"}
    headers.update(_headers(token))

    if json_body is not None:
        data = json.dumps(json_body).encode("utf-8")
        headers["Content-Type"] = "application/json"

    req = urllib.request.Request(url, data=data, method=method.upper(), headers=headers)
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            raw = resp.read().decode("utf-8")
            if not raw:
                return None
            try:
                return json.loads(raw)
            except ValueError:
                return raw
    except urllib.error.HTTPError as e:
        raw = ""
        try:
            raw = e.read().decode("utf-8")
        except (OSError, UnicodeDecodeError):
            raw = ""

        detail = raw
        try:
            parsed = json.loads(raw) if raw else {}
            if isinstance(parsed, dict) and "detail" in parsed:
                detail = str(parsed.get("detail"))
        except ValueError:
            pass

        raise APIError(status_code=int(getattr(e, "code", 0) or 0), detail=str(detail or e), body=raw) from e
    except (urllib.error.URLError, socket.timeout) as e:
        logger.warning("api.unreachable", url=url, error=str(e))
        raise APIError(
            status_code=0,
            detail=f"Cannot reach API at {url}. Is the backend running and API_BASE_URL correct?",
            body=str(e),
        ) from e


def _base_url() -> str:
    # Prefer Streamlit secrets when running in Streamlit Cloud.
    try:
        import streamlit as st

        if hasattr(st, "secrets") and "API_BASE_URL" in st.secrets:
            return str(st.secrets["API_BASE_URL"]).rstrip("/")
    except Exception:
        pass

    # 127.0.0.1 instead of localhost avoids IPv6 resolution issues.
    return os.getenv("API_BASE_URL", "http://127.0.0.1:8000").rstrip("/")


def api_base_url() -> str:
    return _base_url()


def _headers(token: Optional[str]) -> Dict[str, str]:
    if not token:
        return {}
    return {"Authorization": f"Bearer {token}"}


def api_health() -> bool:
    try:
        _request_json("GET", "/health", timeout=5)
        return True
    except APIError:
        return False


def signup(username: str, password: str) -> Dict[str, Any]:
    resp = _request_json(
        "POST",
        "/auth/signup",
        json_body={"username": username, "password": password},
        timeout=15,
    )
    return dict(resp or {})


def login(username: str, password: str) -> Dict[str, Any]:
    resp = _request_json(
        "POST",
        "/auth/login",
        json_body={"username": username, "password": password},
        timeout=15,
    )
    return dict(resp or {})


def me(token: str) -> Dict[str, Any]:
    resp = _request_json("GET", "/auth/me", token=token, timeout=15)
    return dict(resp or {})


def create_order(
    *,
    customer_name: str,
    customer_email: str,
    items: List[Dict[str, Any]],
    token: Optional[str] = None,
    client_id: Optional[str] = None,
    customer_phone: Optional[str] = None,
    customer_address: Optional[str] = None,
    order_number: Optional[str] = None,
) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "customer_name": customer_name,
        "customer_email": customer_email,
        "customer_phone": customer_phone,
        "customer_address": customer_address,
        "items": list(items),
    }
    if client_id:
        body["client_id"] = str(client_id)
    if order_number:
        body["order_number"] = str(order_number)
    resp = _request_json("POST", "/orders", token=token, json_body=body, timeout=30)
    return dict(resp or {})


def _as_list(resp: Any) -> List[Dict[str, Any]]:
    if isinstance(resp, list):
        return [dict(x) for x in resp]
    return []


def list_client_orders(client_id: str) -> List[Dict[str, Any]]:
    return _as_list(_request_json("GET", "/orders", params={"client_id": str(client_id)}, timeout=15))


def list_my_orders(token: str) -> List[Dict[str, Any]]:
    return _as_list(_request_json("GET", "/orders/mine", token=token, timeout=15))


def get_order(order_id: str, *, token: Optional[str] = None, client_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
    try:
        resp = _request_json(
            "GET",
            f"/orders/{urllib.parse.quote(str(order_id))}",
            token=token,
            params={"client_id": client_id},
            timeout=15,
        )
    except APIError as e:
        if e.status_code == 404:
            return None
        raise
    return dict(resp or {})


def admin_list_orders(token: str, *, limit: int = 50, include_done: bool = True) -> List[Dict[str, Any]]:
    resp = _request_json(
        "GET",
        "/admin/orders",
        token=token,
        params={"limit": int(limit), "include_done": str(bool(include_done)).lower()},
        timeout=15,
    )
    return _as_list(resp)


def update_order_status(token: str, order_id: str, status: str) -> Optional[Dict[str, Any]]:
    try:
        resp = _request_json(
            "PATCH",
            f"/admin/orders/{urllib.parse.quote(str(order_id))}/status",
            token=token,
            json_body={"status": str(status)},
            timeout=15,
        )
    except APIError as e:
        if e.status_code == 404:
            return None
        raise
    return dict(resp or {})


def mark_order_read(token: str, order_id: str) -> bool:
    try:
        _request_json("POST", f"/admin/orders/{urllib.parse.quote(str(order_id))}/read", token=token, timeout=15)
        return True
    except APIError as e:
        if e.status_code == 404:
            return False
        raise


def mark_order_done(token: str, order_id: str) -> bool:
    try:
        _request_json("POST", f"/admin/orders/{urllib.parse.quote(str(order_id))}/done", token=token, timeout=15)
        return True
    except APIError as e:
        if e.status_code == 404:
            return False
        raise
