from __future__ import annotations

from fastapi import Request

from vibeauth.service.runtime import get_runtime
from vibeauth.storage.models import User


async def current_user(request: Request) -> User:
    """FastAPI dependency: the signed-in user, or ``AUTH_UNAUTHORIZED`` (401)."""
    runtime = get_runtime()
    return await runtime.auth.require_user(request)


async def optional_user(request: Request) -> User | None:
    runtime = get_runtime()
    return await runtime.auth.get_user(request)
