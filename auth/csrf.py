"""
auth/csrf.py -- Cross-site request forgery protection.

Synchronizer-token pattern: one random token per browser session, kept in the
signed Starlette session cookie (SessionMiddleware). State-changing requests
authenticated by the access_token cookie must echo it back:

  - browser forms as the "csrf_token" form field (require_csrf_form)
  - JSON API calls as the "X-CSRF-Token" header (require_csrf_header)

Requests authenticated with an Authorization: Bearer header are exempt: the
browser never attaches that header on its own, so a forged cross-site request
cannot carry it. Unlike a blanket /api/** exemption, this keeps cookie-
authenticated API calls from the browser covered.

Layer rule: no imports from web/, api/, or accounts/.
"""

from __future__ import annotations

import hmac
import logging
import secrets

from fastapi import Form, HTTPException, Request

from auth.dependencies import try_get_current_caller

logger = logging.getLogger("rolekeeper.auth")

SESSION_KEY = "csrf_token"
HEADER_NAME = "X-CSRF-Token"
FORM_FIELD = "csrf_token"

_SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


def get_csrf_token(request: Request) -> str:
    """Return the session's CSRF token, minting one on first use."""
    token = request.session.get(SESSION_KEY)
    if not token:
        token = secrets.token_urlsafe(32)
        request.session[SESSION_KEY] = token
    return token


def _check(request: Request, supplied: str | None) -> None:
    expected = request.session.get(SESSION_KEY)
    if not expected or not supplied or not hmac.compare_digest(expected, supplied):
        logger.warning("csrf.rejected method=%s path=%s", request.method, request.url.path)
        raise HTTPException(status_code=403, detail="CSRF token missing or invalid.")


def _exempt(request: Request) -> bool:
    if request.method in _SAFE_METHODS:
        return True
    caller = try_get_current_caller(request)
    # Anonymous requests carry no ambient credential worth forging; the access
    # layer rejects them on protected paths anyway.
    return caller is None or caller.via == "bearer"


def require_csrf_header(request: Request) -> None:
    """Router-level dependency for JSON routes."""
    if _exempt(request):
        return
    _check(request, request.headers.get(HEADER_NAME))


def require_csrf_form(request: Request, csrf_token: str = Form(default="")) -> None:
    """Route dependency for browser form posts."""
    if _exempt(request):
        return
    _check(request, csrf_token)
