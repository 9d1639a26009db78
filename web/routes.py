"""
web/routes.py -- Jinja2 template routes for the RoleKeeper web UI.

These routes serve server-rendered HTML. They share app.state with the API
routes (same stores, same AccountService) but answer with pages and
redirects instead of JSON.

Access to every path here is decided by the access middleware in api/main.py
before a handler runs: anonymous requests to /admin or /user are redirected
to /login?next=<path>, users without ROLE_ADMIN get a 403 page on /admin/**
and on POST /api/users.

Routes:
  GET  /login               -- login form
  POST /login               -- handle password login, redirect by role
  POST /logout              -- revoke session, clear cookie, redirect /login
  GET  /default             -- dispatch to /admin or /user by role
  GET  /admin               -- user administration page (ADMIN)
  POST /api/users           -- create-user form target (ADMIN)
  POST /admin/update        -- edit-user form target (ADMIN)
  POST /admin/delete/{id}   -- delete-user form target (ADMIN)
  GET  /user                -- the logged-in user's own page and profile form
  POST /user/profile        -- profile form target (names, age, password)

Form posts carry the session CSRF token as the csrf_token field. POST /login
is exempt: there is no session to forge yet.
"""

import logging
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Depends, Form, Request
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from pydantic import ValidationError

from accounts.service import AccountService, ProfileChange
from api.models import ProfileUpdate, UserCreate, UserUpdateRequest
from auth.authorities import landing_path
from auth.csrf import get_csrf_token, require_csrf_form
from auth.dependencies import try_get_current_caller
from auth.models import User
from auth.tokens import clear_auth_cookie, set_auth_cookie
from core.errors import AccountError, InvalidCredential
from core.limiter import LOGIN_LIMIT, limiter

logger = logging.getLogger("rolekeeper.web")

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))
# Templates call csrf_token(request) to embed the token in every form.
templates.env.globals["csrf_token"] = get_csrf_token
router = APIRouter()

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

# Whitelist mapping for ?error= and ?notice= on /login. The raw query param is
# never passed to templates, only the message from these dicts.
_ERROR_MESSAGES: dict[str, str] = {
    "bad_credentials": "Invalid email or password.",
    "too_many_attempts": "Too many login attempts. Please wait a minute and try again.",
}
_NOTICE_MESSAGES: dict[str, str] = {
    "logged_out": "You have been logged out.",
    "session_ended": "Your email address changed. Please log in again with the new address.",
}

_FLASH_KEY = "_flashes"


def _safe_next(next_url: Optional[str]) -> Optional[str]:
    """Accept only server-local paths as a post-login redirect target.

    Rejects absolute URLs and protocol-relative "//host" forms, which would
    redirect off-site.
    """
    if next_url and next_url.startswith("/") and not next_url.startswith("//"):
        return next_url
    return None


def _flash(request: Request, category: str, message: str) -> None:
    flashes = request.session.get(_FLASH_KEY, [])
    flashes.append({"category": category, "message": message})
    request.session[_FLASH_KEY] = flashes


def _pop_flashes(request: Request) -> list[dict]:
    return request.session.pop(_FLASH_KEY, [])


def _validation_message(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        field = ".".join(str(p) for p in err["loc"]) or "form"
        parts.append(f"{field}: {err['msg']}")
    return "Invalid input -- " + "; ".join(parts)


def _accounts(request: Request) -> AccountService:
    return request.app.state.accounts


def _to_admin(request: Request, category: str, message: str) -> RedirectResponse:
    _flash(request, category, message)
    return RedirectResponse("/admin", status_code=303)


def _to_user(request: Request, category: str, message: str) -> RedirectResponse:
    _flash(request, category, message)
    return RedirectResponse("/user", status_code=303)


# ---------------------------------------------------------------------------
# Login / logout
# ---------------------------------------------------------------------------


@router.get("/login", response_class=HTMLResponse)
def login_form(request: Request) -> HTMLResponse:
    """Render the login page. Already-authenticated callers go to their landing page."""
    caller = try_get_current_caller(request)
    if caller is not None:
        return RedirectResponse(landing_path(caller.authorities), status_code=302)

    error_msg = _ERROR_MESSAGES.get(request.query_params.get("error", ""))
    notice_msg = _NOTICE_MESSAGES.get(request.query_params.get("notice", ""))
    return templates.TemplateResponse(
        request,
        "login.html",
        {
            "error_msg": error_msg,
            "notice_msg": notice_msg,
            "next_url": _safe_next(request.query_params.get("next")) or "",
        },
    )


@router.post("/login", response_class=HTMLResponse)
@limiter.limit(LOGIN_LIMIT)
def login_post(
    request: Request,
    email: str = Form(...),
    password: str = Form(...),
    next_url: str = Form(default="", alias="next"),
) -> RedirectResponse:
    """Handle the login form.

    Success sets the access_token cookie and redirects to ?next= when it is a
    local path, otherwise to /admin for admins and /user for everyone else.
    Every failure redirects back with the same generic error.
    """
    try:
        result = _accounts(request).login(email, password)
    except InvalidCredential:
        target = "/login?error=bad_credentials"
        if _safe_next(next_url):
            target += f"&next={_safe_next(next_url)}"
        return RedirectResponse(target, status_code=302)

    destination = _safe_next(next_url) or landing_path(result.authorities)
    resp = RedirectResponse(destination, status_code=302)
    set_auth_cookie(resp, result.token)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/logout", dependencies=[Depends(require_csrf_form)])
def logout(request: Request) -> RedirectResponse:
    """Revoke the session, clear the cookie and redirect to the login page."""
    caller = try_get_current_caller(request)
    if caller is not None:
        _accounts(request).logout(caller)
    request.session.clear()
    resp = RedirectResponse("/login?notice=logged_out", status_code=302)
    clear_auth_cookie(resp)
    return resp


@router.get("/default")
def default_landing(request: Request) -> RedirectResponse:
    """Send the caller to the home page that matches their roles."""
    caller = try_get_current_caller(request)
    if caller is None:
        return RedirectResponse("/login", status_code=302)
    return RedirectResponse(landing_path(caller.authorities), status_code=302)


# ---------------------------------------------------------------------------
# Administration (ADMIN)
# ---------------------------------------------------------------------------


@router.get("/admin", response_class=HTMLResponse)
def admin_page(request: Request) -> HTMLResponse:
    """List every user with their roles, plus the create and edit forms."""
    accounts = _accounts(request)
    caller = try_get_current_caller(request)
    return templates.TemplateResponse(
        request,
        "admin.html",
        {
            "caller": caller,
            "users": accounts.list_users_with_roles(),
            "roles": accounts.list_roles(),
            "flashes": _pop_flashes(request),
        },
    )


@router.post("/api/users", dependencies=[Depends(require_csrf_form)])
def admin_create_user(
    request: Request,
    first_name: str = Form(default=""),
    last_name: str = Form(default=""),
    age: str = Form(default=""),
    email: str = Form(default=""),
    password: str = Form(default=""),
    role_ids: list[int] = Form(default=[]),
) -> RedirectResponse:
    """Create a user from the admin form and return to /admin with a message."""
    try:
        form = UserCreate(
            first_name=first_name,
            last_name=last_name,
            age=age,
            email=email,
            password=password,
            role_ids=role_ids,
        )
    except ValidationError as exc:
        return _to_admin(request, "error", _validation_message(exc))

    accounts = _accounts(request)
    caller = try_get_current_caller(request)
    try:
        roles = {accounts.get_role(role_id) for role_id in form.role_ids}
        created = accounts.create_or_update_user(
            User(
                email=form.email,
                first_name=form.first_name,
                last_name=form.last_name,
                age=form.age,
                password=form.password,
                roles=roles,
            ),
            caller,
        )
    except AccountError as exc:
        return _to_admin(request, "error", exc.message)
    return _to_admin(request, "success", f"User {created.email} created.")


@router.post("/admin/update", dependencies=[Depends(require_csrf_form)])
def admin_update_user(
    request: Request,
    user_id: int = Form(..., alias="id"),
    first_name: str = Form(default=""),
    last_name: str = Form(default=""),
    age: str = Form(default=""),
    email: str = Form(default=""),
    password: str = Form(default=""),
    role_ids: list[int] = Form(default=[]),
    is_active: Optional[bool] = Form(default=None),
) -> RedirectResponse:
    """Apply the edit-user form.

    The form always sends the full role set, so unchecking every box removes
    every role.

    An admin who changes their own email loses every session: the cookie is
    cleared and they are sent to the login page with an explanation.
    """
    try:
        form = UserUpdateRequest(
            first_name=first_name,
            last_name=last_name,
            age=age,
            email=email,
            password=password or None,
            role_ids=role_ids,
            is_active=is_active,
        )
    except ValidationError as exc:
        return _to_admin(request, "error", _validation_message(exc))

    caller = try_get_current_caller(request)
    try:
        result = _accounts(request).update_user(
            user_id,
            first_name=form.first_name,
            last_name=form.last_name,
            age=form.age,
            email=form.email,
            password=form.password,
            role_ids=form.role_ids,
            caller=caller,
            is_active=form.is_active,
        )
    except AccountError as exc:
        return _to_admin(request, "error", exc.message)

    if result.session_invalidated:
        logger.info("Session ended after self email change user_id=%s", caller.user_id)
        resp = RedirectResponse("/login?notice=session_ended", status_code=303)
        clear_auth_cookie(resp)
        return resp
    return _to_admin(request, "success", f"User {result.user.email} updated.")


@router.post("/admin/delete/{user_id}", dependencies=[Depends(require_csrf_form)])
def admin_delete_user(request: Request, user_id: int) -> RedirectResponse:
    caller = try_get_current_caller(request)
    try:
        _accounts(request).delete_user(user_id, caller)
    except AccountError as exc:
        return _to_admin(request, "error", exc.message)
    return _to_admin(request, "success", "User deleted.")


# ---------------------------------------------------------------------------
# Regular user page
# ---------------------------------------------------------------------------


@router.get("/user", response_class=HTMLResponse)
def user_page(request: Request) -> HTMLResponse:
    """The caller's own account with the profile form."""
    caller = try_get_current_caller(request)
    user = _accounts(request).get_user(caller.user_id)
    return templates.TemplateResponse(
        request,
        "user.html",
        {
            "caller": caller,
            "user": user,
            "is_admin": caller.is_admin,
            "flashes": _pop_flashes(request),
        },
    )


@router.post("/user/profile", dependencies=[Depends(require_csrf_form)])
def user_update_profile(
    request: Request,
    first_name: str = Form(default=""),
    last_name: str = Form(default=""),
    age: str = Form(default=""),
    current_password: str = Form(default=""),
    new_password: str = Form(default=""),
) -> RedirectResponse:
    """Apply the profile form. Blank password fields leave the password alone."""
    try:
        form = ProfileUpdate(
            first_name=first_name,
            last_name=last_name,
            age=age or None,
            current_password=current_password or None,
            new_password=new_password or None,
        )
    except ValidationError as exc:
        return _to_user(request, "error", _validation_message(exc))

    caller = try_get_current_caller(request)
    change = ProfileChange(
        first_name=form.first_name,
        last_name=form.last_name,
        age=form.age,
        current_password=form.current_password,
        new_password=form.new_password,
    )
    try:
        _accounts(request).update_profile(caller, change)
    except AccountError as exc:
        return _to_user(request, "error", exc.message)
    return _to_user(request, "success", "Profile updated.")
