"""
accounts/service.py -- User and role administration.

AccountService is the only place that mutates accounts. It enforces the
invariants the stores cannot express on their own:

  - username is always set to the (normalised) email on every write
  - a user's roles are resolved against the role store before anything is
    written; an unknown role raises RoleNotFound and nothing is persisted
  - every password that reaches the store is a bcrypt hash
  - a role that users still hold cannot be renamed or deleted
  - changing a user's email revokes all of that user's sessions
  - nobody can delete or deactivate their own account, and the last active
    ADMIN holder cannot be deleted, deactivated or stripped of ADMIN

Every mutating method takes the acting Caller explicitly. It is used for the
audit trail and for self-service checks; there is no ambient "current user".

Audit records go to the "rolekeeper.audit" logger as key=value text. They
never contain passwords or hashes.

Layer rule: accounts/ imports from auth/ and core/, never from api/ or web/.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, replace

from sqlalchemy.exc import IntegrityError

from auth.authorities import authorities
from auth.models import Caller, Role, User
from auth.store import RoleStore, SessionStore, UserStore
from auth.tokens import hash_password, start_session, verify_credentials, verify_password
from core.errors import Conflict, RoleNotFound, UserNotFound, ValidationFailure

logger = logging.getLogger("rolekeeper.accounts")
audit = logging.getLogger("rolekeeper.audit")

# Acting identity for startup seeding and the CLI.
SYSTEM = Caller(user_id=0, email="<system>", authorities=frozenset(), via="system")

_ROLE_NAME_RE = re.compile(r"^[A-Z][A-Z0-9_]{0,49}$")

ADMIN_ROLE = "ADMIN"


@dataclass
class UserUpdate:
    """Result of update_user().

    session_invalidated is True when the caller changed their own email and
    their sessions were revoked; browser callers must be sent back to login.
    """

    user: User
    session_invalidated: bool = False


@dataclass
class ProfileChange:
    """Fields a user may change on their own account. None means unchanged."""

    first_name: str | None = None
    last_name: str | None = None
    age: int | None = None
    current_password: str | None = None
    new_password: str | None = None


@dataclass
class LoginResult:
    user: User
    token: str
    authorities: frozenset[str]


def normalize_email(email: str) -> str:
    return email.strip().lower()


def normalize_role_name(name: str) -> str:
    return name.strip().upper()


class AccountService:
    def __init__(self, roles: RoleStore, users: UserStore, sessions: SessionStore) -> None:
        self.roles = roles
        self.users = users
        self.sessions = sessions

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    def login(self, email: str, password: str) -> LoginResult:
        """Verify credentials and open a session.

        Raises InvalidCredential (never anything more specific to callers that
        catch it) when the email is unknown, the password is wrong, or the
        account is disabled.
        """
        user = verify_credentials(self.users, normalize_email(email), password)
        _session, token = start_session(self.sessions, user)
        self.users.update_last_login(user.id)
        audit.info("login user_id=%s", user.id)
        return LoginResult(user=user, token=token, authorities=authorities(user))

    def logout(self, caller: Caller) -> None:
        if caller.session_id:
            self.sessions.revoke(caller.session_id)
        audit.info("logout user_id=%s", caller.user_id)

    # ------------------------------------------------------------------
    # User queries
    # ------------------------------------------------------------------

    def list_users_with_roles(self) -> list[User]:
        return self.users.list_users_with_roles()

    def find_by_email(self, email: str) -> User | None:
        return self.users.get_by_email(normalize_email(email))

    def find_by_id(self, user_id: int) -> User | None:
        return self.users.get_by_id(user_id)

    def get_user(self, user_id: int) -> User:
        """Like find_by_id() but raises UserNotFound."""
        user = self.users.get_by_id(user_id)
        if user is None:
            raise UserNotFound(user_id)
        return user

    # ------------------------------------------------------------------
    # User mutations
    # ------------------------------------------------------------------

    def create_or_update_user(self, user: User, caller: Caller) -> User:
        """Create (user.id is None) or fully overwrite a user.

        Roles on the incoming user may be transient: each is looked up by name
        and replaced by the persisted role. user.password is the plaintext to
        set; it is required on create and "" keeps the stored hash on update.
        """
        email = self._validated_email(user.email)
        if user.age < 0:
            raise ValidationFailure("Age must not be negative.")
        resolved = self._resolve_roles_by_name(user.roles)

        if user.id is None:
            if not user.password.strip():
                raise ValidationFailure("Password is required for a new user.")
            if self.users.get_by_email(email) is not None:
                raise Conflict(f"A user with email {email} already exists.")
            record = replace(
                user,
                email=email,
                username=email,
                hashed_password=hash_password(user.password),
                roles=resolved,
                password="",
            )
            try:
                user_id = self.users.create_user(record)
            except IntegrityError as exc:
                raise Conflict(f"A user with email {email} already exists.") from exc
            audit.info(
                "user.create id=%s email=%s roles=%s by=%s",
                user_id,
                email,
                ",".join(sorted(r.name for r in resolved)),
                caller.user_id,
            )
            return self.get_user(user_id)

        existing = self.get_user(user.id)
        hashed = hash_password(user.password) if user.password.strip() else existing.hashed_password
        record = replace(
            user,
            email=email,
            username=email,
            hashed_password=hashed,
            roles=resolved,
            password="",
        )
        self._write_update(existing, record, caller)
        return self.get_user(user.id)

    def update_user(
        self,
        user_id: int,
        first_name: str,
        last_name: str,
        age: int,
        email: str,
        password: str | None,
        role_ids: list[int] | None,
        caller: Caller,
        is_active: bool | None = None,
    ) -> UserUpdate:
        """Overwrite a user's profile fields and optionally its role set.

        When role_ids is given, the roles are resolved by ID and replace the
        current set entirely; None keeps the current roles. is_active None
        keeps the current flag. A blank or missing password keeps the stored
        hash. If the caller changes their own email, their sessions are
        revoked and the result says so.
        """
        existing = self.get_user(user_id)
        new_email = self._validated_email(email)
        if age < 0:
            raise ValidationFailure("Age must not be negative.")
        roles = existing.roles if role_ids is None else self._resolve_roles_by_id(role_ids)
        hashed = hash_password(password) if password and password.strip() else existing.hashed_password

        record = replace(
            existing,
            first_name=first_name,
            last_name=last_name,
            age=age,
            email=new_email,
            username=new_email,
            hashed_password=hashed,
            roles=roles,
            is_active=existing.is_active if is_active is None else is_active,
        )
        email_changed = self._write_update(existing, record, caller)
        if existing.is_active and not record.is_active:
            self.sessions.revoke_all_for_user(user_id)
        return UserUpdate(
            user=self.get_user(user_id),
            session_invalidated=email_changed and caller.user_id == user_id,
        )

    def delete_user(self, user_id: int, caller: Caller) -> bool:
        """Delete a user. Deleting an ID that does not exist succeeds silently.

        Returns whether a record was actually removed. Raises Conflict when
        the caller targets their own account or the last active administrator.
        """
        if user_id == caller.user_id:
            raise Conflict("You cannot delete your own account.")
        existing = self.users.get_by_id(user_id)
        if existing is not None and self._is_active_admin(existing):
            if self.users.count_active_with_role(ADMIN_ROLE) <= 1:
                raise Conflict("Cannot delete the last active administrator.")
        deleted = self.users.delete_user(user_id)
        audit.info("user.delete id=%s existed=%s by=%s", user_id, deleted, caller.user_id)
        return deleted

    def update_profile(self, caller: Caller, change: ProfileChange) -> User:
        """Self-service update limited to names, age and password.

        A new password is only accepted together with the correct current
        password. Changing the password revokes the caller's other sessions.
        """
        user = self.get_user(caller.user_id)
        hashed = user.hashed_password
        if change.new_password:
            if not change.current_password or not verify_password(change.current_password, user.hashed_password or ""):
                raise ValidationFailure("Current password is incorrect.")
            hashed = hash_password(change.new_password)
        if change.age is not None and change.age < 0:
            raise ValidationFailure("Age must not be negative.")

        record = replace(
            user,
            first_name=user.first_name if change.first_name is None else change.first_name,
            last_name=user.last_name if change.last_name is None else change.last_name,
            age=user.age if change.age is None else change.age,
            hashed_password=hashed,
        )
        self.users.update_user(record)
        if hashed != user.hashed_password:
            self.sessions.revoke_all_for_user(user.id, keep=caller.session_id)
        audit.info(
            "profile.update id=%s password_changed=%s",
            user.id,
            hashed != user.hashed_password,
        )
        return self.get_user(user.id)

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def list_roles(self) -> list[Role]:
        return self.roles.list_roles()

    def find_role_by_id(self, role_id: int) -> Role | None:
        return self.roles.get_by_id(role_id)

    def find_role_by_name(self, name: str) -> Role | None:
        return self.roles.get_by_name(normalize_role_name(name))

    def get_role(self, role_id: int) -> Role:
        role = self.roles.get_by_id(role_id)
        if role is None:
            raise RoleNotFound(role_id)
        return role

    def create_role(self, name: str, caller: Caller, description: str = "") -> Role:
        name = self._validated_role_name(name)
        if self.roles.get_by_name(name) is not None:
            raise Conflict(f"Role {name} already exists.")
        try:
            role_id = self.roles.create_role(Role(name=name, description=description))
        except IntegrityError as exc:
            raise Conflict(f"Role {name} already exists.") from exc
        audit.info("role.create id=%s name=%s by=%s", role_id, name, caller.user_id)
        return self.get_role(role_id)

    def update_role(self, role_id: int, name: str, caller: Caller, description: str | None = None) -> Role:
        existing = self.get_role(role_id)
        name = self._validated_role_name(name)
        fields: dict = {}
        if name != existing.name:
            holders = self.roles.count_holders(role_id)
            if holders:
                raise Conflict(f"Role {existing.name} is assigned to {holders} user(s) and cannot be renamed.")
            clash = self.roles.get_by_name(name)
            if clash is not None:
                raise Conflict(f"Role {name} already exists.")
            fields["name"] = name
        if description is not None:
            fields["description"] = description
        if fields:
            try:
                self.roles.update_role(role_id, **fields)
            except IntegrityError as exc:
                raise Conflict(f"Role {name} already exists.") from exc
            audit.info("role.update id=%s name=%s by=%s", role_id, name, caller.user_id)
        return self.get_role(role_id)

    def delete_role(self, role_id: int, caller: Caller) -> None:
        role = self.get_role(role_id)
        holders = self.roles.count_holders(role_id)
        if holders:
            raise Conflict(f"Role {role.name} is assigned to {holders} user(s) and cannot be deleted.")
        self.roles.delete_role(role_id)
        audit.info("role.delete id=%s name=%s by=%s", role_id, role.name, caller.user_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _write_update(self, existing: User, record: User, caller: Caller) -> bool:
        """Persist an update of an existing user. Returns True if the email changed."""
        self._guard_admin_access(existing, record, caller)
        clash = self.users.get_by_email(record.email)
        if clash is not None and clash.id != existing.id:
            raise Conflict(f"A user with email {record.email} already exists.")
        try:
            if not self.users.update_user(record):
                raise UserNotFound(existing.id)
        except IntegrityError as exc:
            raise Conflict(f"A user with email {record.email} already exists.") from exc

        email_changed = record.email != existing.email
        if email_changed:
            revoked = self.sessions.revoke_all_for_user(existing.id)
            logger.info("Email changed for user %s; revoked %d session(s)", existing.id, revoked)
        audit.info(
            "user.update id=%s email_changed=%s password_changed=%s roles=%s by=%s",
            existing.id,
            email_changed,
            record.hashed_password != existing.hashed_password,
            ",".join(sorted(r.name for r in record.roles)),
            caller.user_id,
        )
        return email_changed

    @staticmethod
    def _is_active_admin(user: User) -> bool:
        return user.is_active and any(r.name == ADMIN_ROLE for r in user.roles)

    def _guard_admin_access(self, existing: User, record: User, caller: Caller) -> None:
        """Block self-deactivation and losing the last active administrator."""
        if caller.user_id == existing.id and existing.is_active and not record.is_active:
            raise Conflict("You cannot deactivate your own account.")
        if self._is_active_admin(existing) and not self._is_active_admin(record):
            if self.users.count_active_with_role(ADMIN_ROLE) <= 1:
                raise Conflict("Cannot remove the last active administrator.")

    def _validated_email(self, email: str) -> str:
        email = normalize_email(email)
        local, sep, domain = email.partition("@")
        if not local or not sep or "." not in domain:
            raise ValidationFailure(f"Invalid email address: {email!r}")
        return email

    def _validated_role_name(self, name: str) -> str:
        name = normalize_role_name(name)
        if not _ROLE_NAME_RE.match(name):
            raise ValidationFailure("Role name must be letters, digits or underscores, starting with a letter.")
        return name

    def _resolve_roles_by_name(self, roles: set[Role]) -> set[Role]:
        resolved: set[Role] = set()
        for role in roles:
            name = normalize_role_name(role.name)
            stored = self.roles.get_by_name(name)
            if stored is None:
                raise RoleNotFound(name)
            resolved.add(stored)
        return resolved

    def _resolve_roles_by_id(self, role_ids: list[int]) -> set[Role]:
        wanted = list(dict.fromkeys(role_ids))
        found = {r.id: r for r in self.roles.get_by_ids(wanted)}
        for role_id in wanted:
            if role_id not in found:
                raise RoleNotFound(role_id)
        return set(found.values())
