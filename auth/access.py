"""
auth/access.py -- Declarative route-level access control.

The rule table is evaluated top to bottom and the first rule whose path
pattern and method match decides. A path that matches no rule is public.

Pattern syntax: "/admin/**" matches "/admin" itself and everything below it;
any other pattern must match the path exactly. Trailing slashes are ignored.

decide() is pure: it sees only the path, the method and the caller's
authorities (None for an anonymous caller). Turning a Decision into a
redirect, a 401 or a 403 is the HTTP layer's job -- see route_class().

Layer rule: no imports from api/, web/, or accounts/.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

from auth.authorities import ROLE_ADMIN, ROLE_USER

ANY_METHOD: frozenset[str] = frozenset()


class Decision(str, Enum):
    ALLOW = "allow"
    UNAUTHENTICATED = "unauthenticated"
    FORBIDDEN = "forbidden"


@dataclass(frozen=True)
class AccessRule:
    """One row of the rule table.

    methods is empty to match every method. requires lists the authorities
    of which the caller must hold at least one.
    """

    patterns: tuple[str, ...]
    requires: frozenset[str]
    methods: frozenset[str] = ANY_METHOD

    def matches(self, path: str, method: str) -> bool:
        if self.methods and method.upper() not in self.methods:
            return False
        return any(_path_matches(p, path) for p in self.patterns)


RULES: tuple[AccessRule, ...] = (
    AccessRule(
        patterns=("/api/admin/**",),
        methods=frozenset({"GET", "POST", "PUT", "DELETE"}),
        requires=frozenset({ROLE_ADMIN}),
    ),
    AccessRule(patterns=("/admin/**",), requires=frozenset({ROLE_ADMIN})),
    # The browser create-user form posts here; without this row the generic
    # /api/users/** rule below would let ROLE_USER create accounts.
    AccessRule(patterns=("/api/users",), methods=frozenset({"POST"}), requires=frozenset({ROLE_ADMIN})),
    AccessRule(
        patterns=("/user/**", "/api/users/**", "/api/user/**"),
        requires=frozenset({ROLE_ADMIN, ROLE_USER}),
    ),
)


def _path_matches(pattern: str, path: str) -> bool:
    path = path.rstrip("/") or "/"
    if pattern.endswith("/**"):
        prefix = pattern[:-3]
        return path == prefix or path.startswith(prefix + "/")
    return path == pattern


def find_rule(path: str, method: str, rules: Iterable[AccessRule] = RULES) -> AccessRule | None:
    for rule in rules:
        if rule.matches(path, method):
            return rule
    return None


def decide(
    path: str,
    method: str,
    granted: Iterable[str] | None,
    rules: Iterable[AccessRule] = RULES,
) -> Decision:
    """Return the access decision for a request.

    granted is None for an unauthenticated caller. An authenticated caller
    with no matching authority is FORBIDDEN; an anonymous one hitting a
    protected path is UNAUTHENTICATED.
    """
    rule = find_rule(path, method, rules)
    if rule is None:
        return Decision.ALLOW
    if granted is None:
        return Decision.UNAUTHENTICATED
    if rule.requires & set(granted):
        return Decision.ALLOW
    return Decision.FORBIDDEN


def route_class(path: str) -> str:
    """Return "api" for JSON routes under /api/, "browser" for everything else."""
    return "api" if path == "/api" or path.startswith("/api/") else "browser"
