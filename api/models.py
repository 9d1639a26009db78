"""
API request and response models for RoleKeeper REST endpoints.

These Pydantic v2 models define the HTTP transport contract. They are
intentionally separate from the dataclasses in auth/models.py, which own the
internal domain representation. Route handlers map between the two.

Every request body is validated here, once, at the boundary: handlers receive
typed values and never pick fields out of loose dicts. JSON field names are
camelCase on the wire (firstName, roleIds); snake_case names are accepted too.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from auth.models import Role, User

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

# bcrypt ignores everything past 72 bytes; reject longer input instead of
# silently truncating it.
_MAX_PASSWORD = 72


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(_WireModel):
    """Request body for POST /api/auth/login."""

    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=1, max_length=_MAX_PASSWORD)


class UserCreate(_WireModel):
    """Request body for POST /api/admin/users and the admin create-user form."""

    first_name: str = Field(default="", max_length=100)
    last_name: str = Field(default="", max_length=100)
    age: int = Field(ge=0, le=150)
    email: str = Field(pattern=EMAIL_PATTERN, max_length=255)
    password: str = Field(min_length=1, max_length=_MAX_PASSWORD)
    role_ids: list[int] = Field(default_factory=list)


class UserUpdateRequest(_WireModel):
    """Request body for PUT /api/admin/users/{id} and the admin edit form.

    password is optional; omitted or blank keeps the current one. roleIds and
    isActive are optional too: omitted keeps the current value, while an
    explicit empty roleIds list removes every role.
    """

    first_name: str = Field(default="", max_length=100)
    last_name: str = Field(default="", max_length=100)
    age: int = Field(ge=0, le=150)
    email: str = Field(pattern=EMAIL_PATTERN, max_length=255)
    password: Optional[str] = Field(default=None, max_length=_MAX_PASSWORD)
    role_ids: Optional[list[int]] = None
    is_active: Optional[bool] = None


class RoleCreate(_WireModel):
    name: str = Field(min_length=1, max_length=50)
    description: str = Field(default="", max_length=255)


class RoleUpdate(_WireModel):
    name: str = Field(min_length=1, max_length=50)
    description: Optional[str] = Field(default=None, max_length=255)


class ProfileUpdate(_WireModel):
    """Request body for PUT /api/user/profile.

    Only these fields exist, so nothing else about the account can be changed
    through self-service. newPassword must be accompanied by currentPassword.
    """

    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    age: Optional[int] = Field(default=None, ge=0, le=150)
    current_password: Optional[str] = Field(default=None, max_length=_MAX_PASSWORD)
    new_password: Optional[str] = Field(default=None, min_length=1, max_length=_MAX_PASSWORD)

    @model_validator(mode="after")
    def new_password_needs_current(self) -> "ProfileUpdate":
        if self.new_password and not self.current_password:
            raise ValueError("currentPassword is required to set newPassword")
        return self


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class RoleOut(_WireModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: int
    name: str
    description: str

    @classmethod
    def from_role(cls, role: Role) -> "RoleOut":
        return cls(id=role.id, name=role.name, description=role.description)


class UserOut(_WireModel):
    """Public view of a user. The password hash is never part of it."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: int
    email: str
    username: str
    first_name: str
    last_name: str
    age: int
    is_active: bool
    roles: list[RoleOut]
    created_at: Optional[str] = None
    last_login: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserOut":
        """Factory Method -- the domain-to-wire mapping lives beside the wire model."""
        return cls(
            id=user.id,
            email=user.email,
            username=user.username,
            first_name=user.first_name,
            last_name=user.last_name,
            age=user.age,
            is_active=user.is_active,
            roles=[RoleOut.from_role(r) for r in sorted(user.roles, key=lambda r: r.id or 0)],
            created_at=user.created_at,
            last_login=user.last_login,
        )


class MeOut(UserOut):
    authorities: list[str]


class LoginData(_WireModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    landing: str
    authorities: list[str]


class CsrfData(_WireModel):
    csrf_token: str


class Envelope(_WireModel):
    """Body of every JSON response: {success, data?, message}."""

    success: bool
    data: Optional[Any] = None
    message: str


class HealthResponse(BaseModel):
    """Response for GET /api/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
