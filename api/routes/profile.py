"""
api/routes/profile.py -- Self-service profile for any logged-in user.

Routes:
  GET /api/user/profile  -- the caller's own account
  PUT /api/user/profile  -- change names, age, or password

Only the fields of ProfileUpdate can be changed here; email, roles and the
active flag stay under admin control.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from accounts.service import ProfileChange
from api.models import Envelope, ProfileUpdate, UserOut
from api.responses import ok
from auth.csrf import require_csrf_header
from auth.dependencies import get_current_caller
from auth.models import Caller

router = APIRouter(prefix="/api/user", dependencies=[Depends(require_csrf_header)])


@router.get("/profile", response_model=Envelope)
def get_profile(request: Request, caller: Caller = Depends(get_current_caller)) -> JSONResponse:
    user = request.app.state.accounts.get_user(caller.user_id)
    return ok("Profile.", UserOut.from_user(user))


@router.put("/profile", response_model=Envelope)
def update_profile(
    request: Request,
    body: ProfileUpdate,
    caller: Caller = Depends(get_current_caller),
) -> JSONResponse:
    """Apply a self-service change. A new password needs the current one."""
    change = ProfileChange(
        first_name=body.first_name,
        last_name=body.last_name,
        age=body.age,
        current_password=body.current_password,
        new_password=body.new_password,
    )
    user = request.app.state.accounts.update_profile(caller, change)
    return ok("Profile updated.", UserOut.from_user(user))
