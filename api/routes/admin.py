"""
api/routes/admin.py -- JSON user and role administration (admin only).

Routes:
  GET    /api/admin/users        -- all users with their roles, ordered by id
  POST   /api/admin/users        -- create a user; 201
  GET    /api/admin/users/{id}   -- one user
  PUT    /api/admin/users/{id}   -- overwrite profile fields; roleIds/isActive when sent
  DELETE /api/admin/users/{id}   -- delete; a missing id still succeeds, self or last admin 409
  GET    /api/admin/roles        -- all roles, ordered by id
  POST   /api/admin/roles        -- create a role; 201
  GET    /api/admin/roles/{id}   -- one role
  PUT    /api/admin/roles/{id}   -- rename / redescribe an unassigned role
  DELETE /api/admin/roles/{id}   -- delete an unassigned role

The access middleware already restricts /api/admin/** to ROLE_ADMIN;
require_admin resolves the Caller that is passed into the service.
Cookie-authenticated callers must send X-CSRF-Token on writes.

A role id in roleIds that does not exist is bad input for the user being
saved, so RoleNotFound is answered with 400 here rather than 404.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from accounts.service import AccountService
from api.models import Envelope, RoleCreate, RoleOut, RoleUpdate, UserCreate, UserOut, UserUpdateRequest
from api.responses import fail, ok
from auth.csrf import require_csrf_header
from auth.dependencies import require_admin
from auth.models import Caller, User
from auth.tokens import clear_auth_cookie
from core.errors import RoleNotFound

router = APIRouter(prefix="/api/admin", dependencies=[Depends(require_csrf_header)])


def _accounts(request: Request) -> AccountService:
    return request.app.state.accounts


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


@router.get("/users", response_model=Envelope)
def list_users(request: Request, caller: Caller = Depends(require_admin)) -> JSONResponse:
    users = _accounts(request).list_users_with_roles()
    return ok(f"{len(users)} user(s).", [UserOut.from_user(u) for u in users])


@router.post("/users", response_model=Envelope, status_code=201)
def create_user(request: Request, body: UserCreate, caller: Caller = Depends(require_admin)) -> JSONResponse:
    """Create a user. Roles are given by id and must all exist."""
    accounts = _accounts(request)
    try:
        roles = {accounts.get_role(role_id) for role_id in body.role_ids}
    except RoleNotFound as exc:
        return fail(exc.message, 400)
    new_user = User(
        email=body.email,
        first_name=body.first_name,
        last_name=body.last_name,
        age=body.age,
        password=body.password,
        roles=roles,
    )
    created = accounts.create_or_update_user(new_user, caller)
    return ok("User created.", UserOut.from_user(created), status_code=201)


@router.get("/users/{user_id}", response_model=Envelope)
def get_user(request: Request, user_id: int, caller: Caller = Depends(require_admin)) -> JSONResponse:
    return ok("User found.", UserOut.from_user(_accounts(request).get_user(user_id)))


@router.put("/users/{user_id}", response_model=Envelope)
def update_user(
    request: Request,
    user_id: int,
    body: UserUpdateRequest,
    caller: Caller = Depends(require_admin),
) -> JSONResponse:
    """Overwrite a user. Roles and the active flag change only when sent.

    When the caller changes their own email every one of their sessions is
    revoked; the cookie is cleared so the client knows to log in again.
    """
    try:
        result = _accounts(request).update_user(
            user_id,
            first_name=body.first_name,
            last_name=body.last_name,
            age=body.age,
            email=body.email,
            password=body.password,
            role_ids=body.role_ids,
            caller=caller,
            is_active=body.is_active,
        )
    except RoleNotFound as exc:
        return fail(exc.message, 400)
    if result.session_invalidated:
        resp = ok("User updated. Your session has ended; please log in again.", UserOut.from_user(result.user))
        clear_auth_cookie(resp)
        return resp
    return ok("User updated.", UserOut.from_user(result.user))


@router.delete("/users/{user_id}", response_model=Envelope)
def delete_user(request: Request, user_id: int, caller: Caller = Depends(require_admin)) -> JSONResponse:
    _accounts(request).delete_user(user_id, caller)
    return ok("User deleted.")


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------


@router.get("/roles", response_model=Envelope)
def list_roles(request: Request, caller: Caller = Depends(require_admin)) -> JSONResponse:
    roles = _accounts(request).list_roles()
    return ok(f"{len(roles)} role(s).", [RoleOut.from_role(r) for r in roles])


@router.post("/roles", response_model=Envelope, status_code=201)
def create_role(request: Request, body: RoleCreate, caller: Caller = Depends(require_admin)) -> JSONResponse:
    role = _accounts(request).create_role(body.name, caller, description=body.description)
    return ok("Role created.", RoleOut.from_role(role), status_code=201)


@router.get("/roles/{role_id}", response_model=Envelope)
def get_role(request: Request, role_id: int, caller: Caller = Depends(require_admin)) -> JSONResponse:
    return ok("Role found.", RoleOut.from_role(_accounts(request).get_role(role_id)))


@router.put("/roles/{role_id}", response_model=Envelope)
def update_role(
    request: Request,
    role_id: int,
    body: RoleUpdate,
    caller: Caller = Depends(require_admin),
) -> JSONResponse:
    role = _accounts(request).update_role(role_id, body.name, caller, description=body.description)
    return ok("Role updated.", RoleOut.from_role(role))


@router.delete("/roles/{role_id}", response_model=Envelope)
def delete_role(request: Request, role_id: int, caller: Caller = Depends(require_admin)) -> JSONResponse:
    _accounts(request).delete_role(role_id, caller)
    return ok("Role deleted.")
