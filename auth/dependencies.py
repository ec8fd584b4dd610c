"""
auth/dependencies.py -- FastAPI Depends() helpers for session authentication.

Two token sources are checked in priority order:
  1. Session cookie ("session_token") -- set by the login endpoints.
  2. Authorization: Bearer <token> header -- API clients.

Both carry the same opaque session token and converge on a SessionContext
from AuthOrchestrator.verify_session(), which also performs sliding refresh.

try_get_session() is the soft variant (returns None on failure).
get_current_session() wraps it and raises HTTP 401 if unauthenticated.
get_current_user() and require_admin() narrow that to the User.

Layer rule: no imports from api/.
  auth/dependencies.py may import from fastapi (for Depends/HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.errors import ErrorKind
from auth.models import SessionContext, User
from auth.tokens import SESSION_COOKIE


def get_session_token(request: Request) -> str | None:
    """Return the raw session token from the cookie or Bearer header, if any."""
    token: str | None = request.cookies.get(SESSION_COOKIE)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:].strip()
    return token or None


def try_get_session(request: Request) -> SessionContext | None:
    """Validate the request's session token. Never raises for auth failures.

    Storage failures are re-raised as HTTP 503 so a broken database is not
    reported to the client as "please log in again".
    """
    token = get_session_token(request)
    if not token:
        return None
    result = request.app.state.orchestrator.verify_session(token)
    if result.ok:
        return result.value
    if result.error is ErrorKind.STORAGE_UNAVAILABLE:
        raise HTTPException(
            status_code=503,
            detail={"code": result.error.value, "message": result.message},
        )
    return None


def get_current_session(request: Request) -> SessionContext:
    """Require a live session. Raises HTTP 401 otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(ctx: SessionContext = Depends(get_current_session)): ...
    """
    ctx = try_get_session(request)
    if ctx is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return ctx


def get_current_user(request: Request) -> User:
    return get_current_session(request).user


def require_admin(request: Request) -> User:
    """Require admin role. Raises HTTP 401 if unauthenticated, HTTP 403 if not admin."""
    user = get_current_user(request)
    if not user.is_admin:
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Admin access required."},
        )
    return user
