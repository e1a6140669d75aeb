from __future__ import annotations

import hmac
from datetime import timedelta
from typing import Optional

from fastapi import Cookie, HTTPException, Response, status
from itsdangerous import URLSafeTimedSerializer, BadSignature, SignatureExpired

from ..config import settings


SESSION_COOKIE = "dp_session"
SESSION_MAX_AGE = int(timedelta(hours=12).total_seconds())


def _serializer() -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(settings.secret_key or settings.admin_token, salt="dangerprep-session")


def check_token(token: str) -> bool:
    expected = settings.admin_token or ""
    return bool(expected) and hmac.compare_digest(token.encode(), expected.encode())


def create_session(response: Response, username: str = "admin") -> None:
    token = _serializer().dumps({"u": username})
    response.set_cookie(
        key=SESSION_COOKIE,
        value=token,
        max_age=SESSION_MAX_AGE,
        httponly=True,
        secure=False,
        samesite="Lax",
        path="/",
    )


def clear_session(response: Response) -> None:
    response.delete_cookie(SESSION_COOKIE, path="/")


def require_auth(dp_session: Optional[str] = Cookie(default=None, alias=SESSION_COOKIE)) -> str:
    if not dp_session:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    try:
        data = _serializer().loads(dp_session, max_age=SESSION_MAX_AGE)
        return data.get("u")
    except SignatureExpired:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Session expired")
    except BadSignature:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid session")
