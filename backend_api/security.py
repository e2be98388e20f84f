import os
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt


@dataclass(frozen=True)
class TokenUser:
    user_id: str
    username: str
    is_staff: bool


def _jwt_secret() -> str:
    # Dev-friendly default; set JWT_SECRET in production.
    return os.getenv("JWT_SECRET") or "dev-insecure-secret"


def _jwt_issuer() -> str:
    return os.getenv("JWT_ISSUER", "pizzeria-api")


def _jwt_audience() -> str:
    return os.getenv("JWT_AUDIENCE", "pizzeria-orders")


def _default_access_minutes() -> int:
    try:
        # Customers keep the tracking page open while the pizza is made.
        return int(os.getenv("ACCESS_TOKEN_EXPIRES_MINUTES", "120"))
    except (TypeError, ValueError):
        return 120


def create_access_token(
    *,
    user_id: str,
    username: str,
    is_staff: bool = False,
    expires_minutes: Optional[int] = None,
    issued_at: Optional[datetime] = None,
) -> str:
    now = datetime.now(timezone.utc) if issued_at is None else issued_at
    minutes = _default_access_minutes() if expires_minutes is None else int(expires_minutes)
    payload: Dict[str, Any] = {
        "sub": str(user_id),
        "username": str(username),
        "is_staff": bool(is_staff),
        "iss": _jwt_issuer(),
        "aud": _jwt_audience(),
        "jti": uuid.uuid4().hex,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=minutes)).timestamp()),
    }
    return jwt.encode(payload, _jwt_secret(), algorithm="HS256")


def decode_token(token: str) -> TokenUser:
    payload = jwt.decode(
        token,
        _jwt_secret(),
        algorithms=["HS256"],
        audience=_jwt_audience(),
        issuer=_jwt_issuer(),
        options={"require": ["sub", "exp", "iat", "jti", "iss", "aud"]},
    )
    return TokenUser(
        user_id=str(payload["sub"]),
        username=str(payload.get("username") or ""),
        is_staff=bool(payload.get("is_staff", False)),
    )
