"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic beyond trivial derived
properties). Stores and services do the work.

Layer rule: no imports from api/, web/, or accounts/.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class Role:
    """A named role such as ADMIN or USER.

    Frozen so roles can live in sets. id is None for a transient role that has
    not been resolved against the role store yet (e.g. built from a name in a
    request body).
    """

    name: str
    description: str = ""
    id: int | None = None


@dataclass
class User:
    """A user account.

    email is the login identifier. username is kept equal to email by the
    account service on every write; it is stored only so existing consumers
    that read "username" keep working.

    password is the plaintext supplied with a create/update request ("" keeps
    the stored hash on update). It is never persisted: the account service
    hashes it into hashed_password before any write, and row mappers always
    leave it empty.

    id is None before the record is written to the database.
    """

    email: str
    first_name: str = ""
    last_name: str = ""
    age: int = 0
    id: int | None = None
    username: str = ""
    hashed_password: str | None = field(default=None, repr=False)
    is_active: bool = True
    roles: set[Role] = field(default_factory=set)
    created_at: str | None = None
    last_login: str | None = None
    password: str = field(default="", repr=False)

    @property
    def role_names(self) -> list[str]:
        return sorted(r.name for r in self.roles)


@dataclass(frozen=True)
class Caller:
    """The identity behind one inbound request.

    Built by the access-control middleware after the session token is
    verified and passed explicitly into every mutating service call. There is
    no ambient "current user".

    via is "cookie" for browser sessions and "bearer" for Authorization-header
    clients; CSRF checks apply only to the former.
    """

    user_id: int
    email: str
    authorities: frozenset[str]
    session_id: str | None = None
    via: str = "cookie"

    @property
    def is_admin(self) -> bool:
        return "ROLE_ADMIN" in self.authorities


@dataclass
class Session:
    """A server-side login session, identified by the sid claim of a token."""

    id: str
    user_id: int
    expires_at: str
    created_at: str | None = None
    revoked_at: str | None = None
