"""
auth/dependencies.py -- Request authentication and FastAPI Depends() helpers.

Two token sources are checked in priority order:
  1. "access_token" cookie -- set by the browser login flow.
  2. Authorization: Bearer <token> header -- API clients.

Both converge on a Caller after the token signature, the server-side session,
the account state and the email binding have all been checked. Roles are
re-read from the store on every call, so authorities are never stale.

authenticate() is the soft variant (returns None on failure). The access
control middleware calls it once per request and stores the result on
request.state.caller; get_current_caller() reads it back and raises 401 when
the request is anonymous. require_admin() additionally raises 403.

Layer rule: no imports from web/, api/, or accounts/.
  auth/dependencies.py may import from fastapi (for HTTPException/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.authorities import authorities
from auth.models import Caller
from auth.tokens import COOKIE_NAME, decode_access_token


def _token_from_request(request: Request) -> tuple[str | None, str]:
    token = request.cookies.get(COOKIE_NAME)
    if token:
        return token, "cookie"
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:], "bearer"
    return None, ""


def authenticate(request: Request) -> Caller | None:
    """Attempt to authenticate the request. Returns a Caller or None, never raises.

    A token is accepted only if:
      - its signature and expiry verify,
      - its sid names an active (unrevoked, unexpired) session of the same user,
      - the user still exists and is active,
      - the user's current email equals the token subject. Changing the email
        therefore detaches every token issued for the old identity.
    """
    token, via = _token_from_request(request)
    if not token:
        return None
    payload = decode_access_token(token)
    if payload is None:
        return None

    session = request.app.state.session_store.get_active(payload["sid"])
    if session is None or session.user_id != payload["user_id"]:
        return None
    user = request.app.state.user_store.get_by_id(payload["user_id"])
    if user is None or not user.is_active or user.email != payload["sub"]:
        return None

    return Caller(
        user_id=user.id,
        email=user.email,
        authorities=authorities(user),
        session_id=session.id,
        via=via,
    )


def try_get_current_caller(request: Request) -> Caller | None:
    """Return the caller resolved by the access middleware, authenticating if it has not run."""
    if hasattr(request.state, "caller"):
        return request.state.caller
    caller = authenticate(request)
    request.state.caller = caller
    return caller


def get_current_caller(request: Request) -> Caller:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(caller: Caller = Depends(get_current_caller)): ...
    """
    caller = try_get_current_caller(request)
    if caller is None:
        raise HTTPException(status_code=401, detail="Authentication required.")
    return caller


def require_admin(request: Request) -> Caller:
    """Require ROLE_ADMIN. Raises HTTP 401 if unauthenticated, HTTP 403 if not admin.

    The access-control rule table already guards admin paths; this dependency
    keeps admin handlers safe even if they are mounted elsewhere.
    """
    caller = get_current_caller(request)
    if not caller.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required.")
    return caller
