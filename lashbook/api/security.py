"""Telegram Mini App authentication.

Two ``Authorization`` schemes are accepted:

* ``tma <initData>``: the raw WebApp initData string, verified with the bot
  token (HMAC-SHA256 over the sorted ``key=value`` lines, secret derived
  from ``"WebAppData"``) and rejected when ``auth_date`` is too old;
* ``Bearer <jwt>``: a session token issued by ``POST /api/session``.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
import urllib.parse
from datetime import UTC, datetime, timedelta
from typing import Dict

import jwt
from fastapi import HTTPException, status

from lashbook.api.schemas import TelegramUser
from lashbook.app.services.booking_services import Principal
from lashbook.config import Settings

logger = logging.getLogger(__name__)

JWT_ALGO = "HS256"

__all__ = [
    "JWT_ALGO",
    "validate_init_data",
    "sign_init_data",
    "issue_jwt",
    "decode_token",
    "principal_from_authorization",
]


def _parse_init_data(init_data: str) -> Dict[str, str]:
    try:
        parsed = dict(urllib.parse.parse_qsl(init_data, keep_blank_values=True, strict_parsing=True))
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_init_data_format") from exc
    if "hash" not in parsed:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="missing_hash")
    return parsed


def _data_check_string(data: Dict[str, str]) -> str:
    return "\n".join(f"{k}={data[k]}" for k in sorted(data) if k != "hash")


def _compute_hash(data: Dict[str, str], token: str) -> str:
    secret_key = hmac.new("WebAppData".encode(), token.encode(), hashlib.sha256).digest()
    return hmac.new(secret_key, _data_check_string(data).encode(), hashlib.sha256).hexdigest()


def sign_init_data(fields: Dict[str, str], token: str) -> str:
    """Build a signed initData query string (what Telegram sends to the WebApp)."""
    data = dict(fields)
    data["hash"] = _compute_hash(data, token)
    return urllib.parse.urlencode(data)


def validate_init_data(
    init_data: str,
    bot_token: str,
    max_age_seconds: int = 86400,
    now: datetime | None = None,
) -> TelegramUser:
    if not bot_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="auth_unavailable")
    parsed = _parse_init_data(init_data)
    computed = _compute_hash(parsed, bot_token)
    if not hmac.compare_digest(computed, parsed.get("hash", "")):
        logger.warning("initData hash mismatch")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_init_data_signature")

    auth_date_raw = parsed.get("auth_date")
    if auth_date_raw:
        try:
            auth_ts = int(auth_date_raw)
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_auth_date") from exc
        now_ts = int((now or datetime.now(UTC)).timestamp())
        if now_ts - auth_ts > max_age_seconds:
            logger.warning("initData expired: auth_date=%s age=%ss", auth_ts, now_ts - auth_ts)
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="stale_init_data")

    try:
        user_raw = parsed.get("user")
        user_payload = json.loads(user_raw) if user_raw else None
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_user_payload") from exc
    if not isinstance(user_payload, dict) or user_payload.get("id") is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="missing_user")

    return TelegramUser(
        id=int(user_payload["id"]),
        first_name=user_payload.get("first_name"),
        last_name=user_payload.get("last_name"),
        username=user_payload.get("username"),
    )


def issue_jwt(settings: Settings, tg_user: TelegramUser) -> str:
    payload = {
        "sub": str(tg_user.id),
        "tg_id": int(tg_user.id),
        "username": tg_user.username,
        "first_name": tg_user.first_name,
        "exp": datetime.now(UTC) + timedelta(seconds=settings.jwt_ttl_seconds),
    }
    return jwt.encode(payload, settings.effective_jwt_secret, algorithm=JWT_ALGO)


def decode_token(settings: Settings, token: str) -> Principal:
    try:
        data = jwt.decode(token, settings.effective_jwt_secret, algorithms=[JWT_ALGO])
    except jwt.ExpiredSignatureError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="token_expired") from exc
    except jwt.InvalidTokenError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_token") from exc

    tg_id = int(data.get("tg_id"))
    return Principal(
        tg_id=tg_id,
        username=data.get("username"),
        first_name=data.get("first_name") or "",
        is_admin=settings.is_admin(tg_id),
    )


def principal_from_authorization(settings: Settings, authorization: str | None) -> Principal:
    if not authorization:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="missing_authorization")
    scheme, _, credentials = authorization.partition(" ")
    credentials = credentials.strip()
    if not credentials:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_authorization_header")

    scheme = scheme.lower()
    if scheme == "tma":
        user = validate_init_data(credentials, settings.bot_token, settings.init_data_max_age_seconds)
        return Principal(
            tg_id=user.id,
            username=user.username,
            first_name=user.first_name or "",
            is_admin=settings.is_admin(user.id),
        )
    if scheme == "bearer":
        return decode_token(settings, credentials)
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_authorization_header")
