"""
core/errors.py -- Domain exception taxonomy for RoleKeeper.

Services and stores raise these; the HTTP layers translate them. api/main.py
maps each class to a status code and the JSON envelope, web/routes.py turns
them into a redirect with a flash message. Nothing below this layer knows
about HTTP.

Layer rule: core/ is the kernel. This module may not import from api/, web/,
auth/, or accounts/.
"""

from __future__ import annotations


class AccountError(Exception):
    """Base class for every expected failure in the account domain."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFound(AccountError):
    """A user or role lookup missed."""


class UserNotFound(NotFound):
    def __init__(self, user_id: int) -> None:
        super().__init__(f"User not found with ID: {user_id}")
        self.user_id = user_id


class RoleNotFound(NotFound):
    """A role reference could not be resolved.

    key is the identifier or the name that was looked up, whichever the
    caller used.
    """

    def __init__(self, key: int | str) -> None:
        label = "ID" if isinstance(key, int) else "name"
        super().__init__(f"Role not found with {label}: {key}")
        self.key = key


class InvalidCredential(AccountError):
    """Login failed. The message is identical for every cause."""

    def __init__(self, message: str = "Invalid email or password.") -> None:
        super().__init__(message)


class UnknownLogin(InvalidCredential):
    """No user holds the login identifier.

    Subclasses InvalidCredential so callers catching the parent cannot tell
    the two outcomes apart, and the message stays the generic one.
    """


class ValidationFailure(AccountError):
    """Malformed or inconsistent caller input."""


class Conflict(AccountError):
    """A uniqueness or referential rule would be violated."""
