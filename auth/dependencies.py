"""
auth/dependencies.py -- Request-level session resolution.

Two token sources are checked in priority order:
  1. session_token cookie -- set by the web sign-in flows.
  2. Authorization: Bearer <token> header -- API clients.

The session is stateless: it is rebuilt from the verified JWT on each
request and projected through auth.claims.project_session(). No database
call happens here; role checks that must be fresh go through
auth.permissions.require_role().

try_get_session() is the soft variant (returns None when signed out).
get_current_session() wraps it and raises HTTP 401 for JSON API routes.

Layer rule: no imports from web/ or api/. fastapi is allowed because this
module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import HTTPException, Request

from auth.claims import project_session
from auth.tokens import SESSION_COOKIE, decode_access_token


def _read_token(request: Request) -> str | None:
    token = request.cookies.get(SESSION_COOKIE)
    if not token:
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            token = auth_header[7:]
    return token or None


def try_get_session(request: Request) -> dict | None:
    """Return {"user": {...}, "expires": iso} for a signed-in request, else None.

    Never raises -- an invalid or expired token simply means "signed out".
    """
    token = _read_token(request)
    if token is None:
        return None
    payload = decode_access_token(token)
    if payload is None:
        return None

    session = {
        "user": {
            "email": payload.get("email"),
            "name": payload.get("name"),
            "image": payload.get("image"),
        },
        "expires": datetime.fromtimestamp(payload["exp"], timezone.utc).isoformat() if "exp" in payload else None,
    }
    return project_session(session, payload)


def get_current_session(request: Request) -> dict:
    """Require a session. Raises HTTP 401 if the request is not signed in.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(session: dict = Depends(get_current_session)): ...
    """
    session = try_get_session(request)
    if session is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return session
