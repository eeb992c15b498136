import base64
import hashlib
import hmac
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Header, HTTPException, status

from app.settings import read_bool_env, read_int_env

TOKEN_TTL_HOURS = read_int_env("AUTH_TOKEN_TTL_HOURS", 24)
AUTH_REQUIRED = read_bool_env("AUTH_REQUIRED", False)
AUTH_DEMO_PASSWORD = os.getenv("AUTH_DEMO_PASSWORD", "gruas-demo")
_AUTH_SECRET = os.getenv("AUTH_SECRET", "dev-insecure-secret-change-me")


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _b64urldecode(value: str) -> bytes:
    padding = "=" * ((4 - len(value) % 4) % 4)
    return base64.urlsafe_b64decode((value + padding).encode("utf-8"))


def _sign(payload: bytes) -> bytes:
    return hmac.new(_AUTH_SECRET.encode("utf-8"), payload, hashlib.sha256).digest()


def create_access_token(user_id: str) -> tuple[str, str]:
    expiry = datetime.now(timezone.utc) + timedelta(hours=TOKEN_TTL_HOURS)
    payload = f"{user_id}|{int(expiry.timestamp())}".encode("utf-8")
    token = f"{_b64url(payload)}.{_b64url(_sign(payload))}"
    return token, expiry.isoformat()


def verify_access_token(token: str) -> Optional[str]:
    try:
        payload_part, sig_part = token.split(".", 1)
        payload = _b64urldecode(payload_part)
        sent_sig = _b64urldecode(sig_part)
        if not hmac.compare_digest(sent_sig, _sign(payload)):
            return None
        user_id, expiry_ts = payload.decode("utf-8").split("|", 1)
        if datetime.now(timezone.utc).timestamp() > int(expiry_ts):
            return None
        return user_id
    except ValueError:
        return None


def check_demo_password(password: str) -> bool:
    return hmac.compare_digest(password.encode("utf-8"), AUTH_DEMO_PASSWORD.encode("utf-8"))


def parse_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1].strip() or None


def resolve_request_user(authorization: Optional[str]) -> Optional[str]:
    token = parse_bearer_token(authorization)
    if not token:
        return None
    return verify_access_token(token)


def require_authenticated_user(authorization: Optional[str] = Header(default=None)) -> str:
    user_id = resolve_request_user(authorization)
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or missing bearer token")
    return user_id


def assert_actor_authorized(
    actor_user_id: str,
    authorization: Optional[str] = Header(default=None),
) -> None:
    """The bearer token, when present, must belong to ``actor_user_id``.

    Without a token the call passes unless AUTH_REQUIRED is set.
    """
    token_user = resolve_request_user(authorization)
    if not token_user:
        if AUTH_REQUIRED:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
        return
    if token_user != actor_user_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Token user does not match actor user")
