"""
auth/authorities.py -- Role-to-authority derivation.

An authority is the label the access-control rule table checks. Each role
name R yields exactly one authority "ROLE_R"; nothing else contributes. The
derivation is a pure function of the user's current roles and is recomputed
on every request, so a role change takes effect on the caller's next request.

Layer rule: no imports from api/, web/, or accounts/.
"""

from __future__ import annotations

from collections.abc import Iterable

from auth.models import Role, User

ROLE_PREFIX = "ROLE_"
ROLE_ADMIN = "ROLE_ADMIN"
ROLE_USER = "ROLE_USER"

ADMIN_LANDING = "/admin"
USER_LANDING = "/user"


def authority_for(role: Role) -> str:
    return f"{ROLE_PREFIX}{role.name}"


def authorities(user: User) -> frozenset[str]:
    """Return the authority labels for a user's current role set."""
    return frozenset(authority_for(r) for r in user.roles)


def landing_path(granted: Iterable[str]) -> str:
    """Where a freshly authenticated caller is sent: /admin for admins, /user otherwise."""
    return ADMIN_LANDING if ROLE_ADMIN in set(granted) else USER_LANDING
