from __future__ import annotations

from datetime import datetime, timezone
from http.cookies import CookieError, SimpleCookie
from typing import Any, Mapping, Optional, Protocol

from fastapi import Request, Response

SESSION_COOKIE = "vibekit_session"


class RequestCredentials(Protocol):
    """The two places a session token can arrive from."""

    def header(self, name: str) -> Optional[str]: ...

    def cookie(self, name: str) -> Optional[str]: ...


class StarletteRequestAdapter:
    def __init__(self, request: Request) -> None:
        self.request = request

    def header(self, name: str) -> Optional[str]:
        return self.request.headers.get(name)

    def cookie(self, name: str) -> Optional[str]:
        return self.request.cookies.get(name)


class MappingRequest:
    """Credentials from a plain header mapping, e.g. a websocket handshake or a job payload."""

    def __init__(self, headers: Optional[Mapping[str, Any]] = None) -> None:
        self._headers = {str(k).lower(): str(v) for k, v in (headers or {}).items()}

    def header(self, name: str) -> Optional[str]:
        return self._headers.get(name.lower())

    def cookie(self, name: str) -> Optional[str]:
        raw = self._headers.get("cookie")
        if not raw:
            return None
        jar: SimpleCookie = SimpleCookie()
        try:
            jar.load(raw)
        except CookieError:
            return None
        morsel = jar.get(name)
        return morsel.value if morsel else None


def as_credentials(request: Any) -> RequestCredentials:
    if isinstance(request, Request):
        return StarletteRequestAdapter(request)
    if isinstance(request, Mapping):
        return MappingRequest(request)
    return request


def extract_token(request: Any) -> Optional[str]:
    """Bearer token from ``Authorization`` first, then the session cookie."""
    credentials = as_credentials(request)
    authorization = credentials.header("authorization")
    if authorization:
        scheme, _, value = authorization.strip().partition(" ")
        if scheme.lower() == "bearer" and value.strip():
            return value.strip()
    cookie = credentials.cookie(SESSION_COOKIE)
    return cookie or None


def set_session_cookie(
    response: Response, token: str, expires_at: datetime, *, secure: bool = True
) -> None:
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    response.set_cookie(
        SESSION_COOKIE,
        token,
        httponly=True,
        secure=secure,
        samesite="lax",
        expires=expires_at,
        path="/",
    )


def clear_session_cookie(response: Response, *, secure: bool = True) -> None:
    response.delete_cookie(SESSION_COOKIE, path="/", secure=secure, httponly=True, samesite="lax")
