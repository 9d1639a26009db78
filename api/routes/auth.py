"""
api/routes/auth.py -- JSON authentication endpoints.

Routes:
  POST /api/auth/login   -- password login; returns a bearer token (no cookie)
  POST /api/auth/logout  -- revokes the caller's session and clears the cookie
  GET  /api/auth/me      -- current caller with roles and authorities
  GET  /api/auth/csrf    -- CSRF token for cookie-authenticated JSON calls

Security:
  POST /login is rate-limited per client IP (Settings.login_rate_limit).
  Login failures all raise InvalidCredential, answered with one generic 401.
  Cache-Control: no-store on login responses.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from accounts.service import AccountService
from api.models import CsrfData, Envelope, LoginData, LoginRequest, MeOut, UserOut
from api.responses import ok
from auth.authorities import landing_path
from auth.csrf import get_csrf_token, require_csrf_header
from auth.dependencies import get_current_caller, try_get_current_caller
from auth.models import Caller
from auth.tokens import clear_auth_cookie
from core.config import get_settings
from core.limiter import LOGIN_LIMIT, limiter

router = APIRouter(prefix="/api/auth")


@router.post("/login", response_model=Envelope)
@limiter.limit(LOGIN_LIMIT)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password and return a bearer token.

    The browser flow (POST /login) sets the cookie instead; this endpoint is
    for API clients, which send the token back as Authorization: Bearer.
    """
    accounts: AccountService = request.app.state.accounts
    result = accounts.login(body.email, body.password)
    data = LoginData(
        access_token=result.token,
        expires_in=get_settings().token_expire_seconds,
        landing=landing_path(result.authorities),
        authorities=sorted(result.authorities),
    )
    resp = ok("Login successful.", data)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/logout", response_model=Envelope, dependencies=[Depends(require_csrf_header)])
def logout(request: Request) -> JSONResponse:
    """Revoke the caller's session, if any, and clear the cookie. Always 200."""
    caller = try_get_current_caller(request)
    if caller is not None:
        request.app.state.accounts.logout(caller)
    resp = ok("Logged out.")
    clear_auth_cookie(resp)
    return resp


@router.get("/me", response_model=Envelope)
def me(request: Request, caller: Caller = Depends(get_current_caller)) -> JSONResponse:
    user = request.app.state.accounts.get_user(caller.user_id)
    out = MeOut(**UserOut.from_user(user).model_dump(), authorities=sorted(caller.authorities))
    return ok("Current user.", out)


@router.get("/csrf", response_model=Envelope)
def csrf(request: Request) -> JSONResponse:
    return ok("CSRF token.", CsrfData(csrf_token=get_csrf_token(request)))
