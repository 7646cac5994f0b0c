from __future__ import annotations

import hashlib
import hmac
import time
from typing import Any

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from push_bridge.errors import ApiError
from push_bridge.schemas import ForumUser
from push_bridge.settings import get_settings

bearer_scheme = HTTPBearer(auto_error=False)

HOST_TS_HEADER = "X-Host-Ts"
HOST_SIGN_HEADER = "X-Host-Sign"


def decode_forum_token(token: str) -> dict[str, Any]:
    settings = get_settings()
    if not settings.jwt_secret:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token verification is not configured.")
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
            options={"require_sub": True, "require_exp": True},
        )
    except JWTError as exc:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token is invalid.") from exc

    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject.strip().isdigit():
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token subject is invalid.")
    return payload


def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> ForumUser:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Missing bearer token.")

    payload = decode_forum_token(credentials.credentials)
    user = ForumUser(
        id=int(payload["sub"]),
        username=str(payload.get("username") or ""),
    )
    request.state.actor = "user"
    request.state.actor_id = str(user.id)
    return user


def compute_host_signature(secret: str, ts: str, body: bytes) -> str:
    message = ts.encode("utf-8") + body
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def sign_host_event(body: bytes, *, secret: str, ts: str | None = None) -> dict[str, str]:
    ts_value = ts or str(int(time.time()))
    return {
        HOST_TS_HEADER: ts_value,
        HOST_SIGN_HEADER: compute_host_signature(secret, ts_value, body),
        "Content-Type": "application/json",
    }


async def verify_host_event_signature(request: Request) -> None:
    settings = get_settings()
    secret = settings.host_events_secret.strip()
    if not secret:
        raise ApiError(status_code=401, code="INVALID_SIGNATURE", message="Host events are not configured.")

    ts = (request.headers.get(HOST_TS_HEADER) or "").strip()
    sign = (request.headers.get(HOST_SIGN_HEADER) or "").strip()
    if not ts or not sign or not ts.isdigit():
        raise ApiError(status_code=401, code="INVALID_SIGNATURE", message="Missing host signature.")

    if abs(int(time.time()) - int(ts)) > max(1, settings.host_events_max_skew_seconds):
        raise ApiError(status_code=401, code="INVALID_SIGNATURE", message="Host signature expired.")

    body = await request.body()
    expected = compute_host_signature(secret, ts, body)
    if not hmac.compare_digest(expected, sign):
        raise ApiError(status_code=401, code="INVALID_SIGNATURE", message="Host signature is invalid.")

    request.state.actor = "host"
    request.state.actor_id = "host"
