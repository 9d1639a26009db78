"""
tests/test_account_service.py -- Behaviour of accounts/service.py::AccountService.

Each test gets an isolated, unseeded database (the `service` fixture) plus the
two standard roles created here. Covered:
  - role create/list/lookup, normalisation, duplicates, rename/delete guards
  - role resolution to canonical persisted roles; RoleNotFound writes nothing
  - username == email after every write
  - hashing on every password write path
  - idempotent delete
  - email change revokes sessions; self email change reports it
  - login failures are indistinguishable
  - self-service profile updates
  - self-delete, self-deactivation and last-admin guards; omitted roles kept
"""

from __future__ import annotations

import pytest

from accounts.service import SYSTEM, AccountService, ProfileChange
from auth.authorities import authorities
from auth.models import Caller, Role, User
from auth.tokens import decode_access_token, verify_password
from core.errors import Conflict, InvalidCredential, RoleNotFound, UnknownLogin, UserNotFound, ValidationFailure


@pytest.fixture
def svc(service: AccountService) -> AccountService:
    service.create_role("ADMIN", SYSTEM, description="Administrator role")
    service.create_role("USER", SYSTEM, description="Regular user role")
    return service


def _new_user(email: str = "eve@example.com", roles: tuple[str, ...] = ("USER",), password: str = "pw-eve") -> User:
    return User(
        email=email,
        first_name="Eve",
        last_name="Example",
        age=33,
        password=password,
        roles={Role(name=n) for n in roles},
    )


def _caller_for(user: User, session_id: str | None = None) -> Caller:
    return Caller(user_id=user.id, email=user.email, authorities=authorities(user), session_id=session_id)


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------


class TestRoles:
    def test_created_role_listed_once_and_found_by_id(self, svc) -> None:
        role = svc.create_role("AUDITOR", SYSTEM, description="Read-only")
        listed = [r for r in svc.list_roles() if r.name == "AUDITOR"]
        assert listed == [role]
        assert svc.find_role_by_id(role.id) == role

    def test_name_normalised(self, svc) -> None:
        role = svc.create_role("  auditor ", SYSTEM)
        assert role.name == "AUDITOR"
        assert svc.find_role_by_name("Auditor") == role

    def test_duplicate_name_conflicts(self, svc) -> None:
        with pytest.raises(Conflict):
            svc.create_role("admin", SYSTEM)

    def test_invalid_name_rejected(self, svc) -> None:
        with pytest.raises(ValidationFailure):
            svc.create_role("no spaces allowed", SYSTEM)

    def test_rename_unheld_role(self, svc) -> None:
        role = svc.create_role("TEMP", SYSTEM)
        renamed = svc.update_role(role.id, "TEMPORARY", SYSTEM, description="changed")
        assert renamed.name == "TEMPORARY"
        assert renamed.description == "changed"

    def test_rename_held_role_conflicts(self, svc) -> None:
        svc.create_or_update_user(_new_user(), SYSTEM)
        user_role = svc.find_role_by_name("USER")
        with pytest.raises(Conflict):
            svc.update_role(user_role.id, "MEMBER", SYSTEM)

    def test_describe_held_role_allowed(self, svc) -> None:
        svc.create_or_update_user(_new_user(), SYSTEM)
        user_role = svc.find_role_by_name("USER")
        assert svc.update_role(user_role.id, "USER", SYSTEM, description="Members").description == "Members"

    def test_delete_held_role_conflicts(self, svc) -> None:
        svc.create_or_update_user(_new_user(), SYSTEM)
        with pytest.raises(Conflict):
            svc.delete_role(svc.find_role_by_name("USER").id, SYSTEM)

    def test_delete_missing_role(self, svc) -> None:
        with pytest.raises(RoleNotFound):
            svc.delete_role(999, SYSTEM)
        with pytest.raises(RoleNotFound):
            svc.update_role(999, "X", SYSTEM)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class TestCreateOrUpdateUser:
    def test_roles_resolved_to_persisted_roles(self, svc) -> None:
        saved = svc.create_or_update_user(_new_user(roles=("ADMIN", "USER")), SYSTEM)
        expected = {svc.find_role_by_name("ADMIN"), svc.find_role_by_name("USER")}
        assert svc.find_by_id(saved.id).roles == expected
        assert all(r.id is not None for r in saved.roles)

    def test_unknown_role_fails_without_partial_write(self, svc) -> None:
        with pytest.raises(RoleNotFound) as exc:
            svc.create_or_update_user(_new_user(roles=("USER", "GHOST")), SYSTEM)
        assert "GHOST" in exc.value.message
        assert svc.find_by_email("eve@example.com") is None

    def test_unknown_role_on_update_leaves_user_untouched(self, svc) -> None:
        saved = svc.create_or_update_user(_new_user(), SYSTEM)
        change = _new_user(roles=("GHOST",))
        change.id = saved.id
        change.first_name = "Changed"
        with pytest.raises(RoleNotFound):
            svc.create_or_update_user(change, SYSTEM)
        assert svc.get_user(saved.id).first_name == "Eve"

    def test_username_follows_email(self, svc) -> None:
        user = _new_user(email="  Eve@Example.COM ")
        user.username = "something-else"
        saved = svc.create_or_update_user(user, SYSTEM)
        assert saved.email == "eve@example.com"
        assert saved.username == saved.email

        saved.email = "eve2@example.com"
        saved.username = "stale"
        updated = svc.create_or_update_user(saved, SYSTEM)
        assert updated.username == "eve2@example.com"

    def test_password_hashed_on_create(self, svc) -> None:
        saved = svc.create_or_update_user(_new_user(password="plain-secret"), SYSTEM)
        assert saved.hashed_password != "plain-secret"
        assert verify_password("plain-secret", saved.hashed_password)

    def test_blank_password_keeps_hash_on_update(self, svc) -> None:
        saved = svc.create_or_update_user(_new_user(), SYSTEM)
        saved.first_name = "Evelyn"
        saved.password = ""
        updated = svc.create_or_update_user(saved, SYSTEM)
        assert updated.hashed_password == saved.hashed_password
        assert updated.first_name == "Evelyn"

    def test_new_password_rehashed_on_update(self, svc) -> None:
        saved = svc.create_or_update_user(_new_user(), SYSTEM)
        saved.password = "rotated"
        updated = svc.create_or_update_user(saved, SYSTEM)
        assert verify_password("rotated", updated.hashed_password)

    def test_create_requires_password(self, svc) -> None:
        with pytest.raises(ValidationFailure):
            svc.create_or_update_user(_new_user(password="  "), SYSTEM)

    def test_duplicate_email_conflicts(self, svc) -> None:
        svc.create_or_update_user(_new_user(), SYSTEM)
        with pytest.raises(Conflict):
            svc.create_or_update_user(_new_user(email="EVE@example.com"), SYSTEM)

    def test_update_missing_user(self, svc) -> None:
        ghost = _new_user()
        ghost.id = 404
        with pytest.raises(UserNotFound):
            svc.create_or_update_user(ghost, SYSTEM)

    def test_invalid_email_rejected(self, svc) -> None:
        with pytest.raises(ValidationFailure):
            svc.create_or_update_user(_new_user(email="not-an-email"), SYSTEM)


class TestUpdateUser:
    def test_overwrites_fields_and_replaces_roles(self, svc) -> None:
        saved = svc.create_or_update_user(_new_user(roles=("USER",)), SYSTEM)
        admin_id = svc.find_role_by_name("ADMIN").id
        result = svc.update_user(
            saved.id, "New", "Name", 40, "eve@example.com", None, [admin_id], SYSTEM
        )
        assert result.user.first_name == "New"
        assert result.user.age == 40
        assert result.user.role_names == ["ADMIN"]
        assert result.user.hashed_password == saved.hashed_password
        assert result.session_invalidated is False

    def test_unknown_role_id(self, svc) -> None:
        saved = svc.create_or_update_user(_new_user(), SYSTEM)
        with pytest.raises(RoleNotFound):
            svc.update_user(saved.id, "A", "B", 1, saved.email, None, [999], SYSTEM)
        assert svc.get_user(saved.id).first_name == "Eve"

    def test_missing_user(self, svc) -> None:
        with pytest.raises(UserNotFound):
            svc.update_user(404, "A", "B", 1, "x@example.com", None, [], SYSTEM)

    def test_self_email_change_invalidates_own_sessions(self, svc) -> None:
        saved = svc.create_or_update_user(_new_user(roles=("ADMIN",)), SYSTEM)
        login = svc.login("eve@example.com", "pw-eve")
        caller = _caller_for(saved)
        result = svc.update_user(
            saved.id, "Eve", "Example", 33, "eve.new@example.com", None,
            [r.id for r in saved.roles], caller,
        )
        assert result.session_invalidated is True
        assert result.user.username == "eve.new@example.com"
        assert svc.sessions.get_active(decode_access_token(login.token)["sid"]) is None

    def test_admin_changing_someone_elses_email(self, svc) -> None:
        admin = svc.create_or_update_user(_new_user(email="boss@example.com", roles=("ADMIN",)), SYSTEM)
        target = svc.create_or_update_user(_new_user(), SYSTEM)
        svc.login("eve@example.com", "pw-eve")
        result = svc.update_user(
            target.id, "Eve", "Example", 33, "eve.moved@example.com", None,
            [r.id for r in target.roles], _caller_for(admin),
        )
        assert result.session_invalidated is False
        # the target's own sessions are still revoked
        assert svc.sessions.revoke_all_for_user(target.id) == 0

    def test_email_clash_conflicts(self, svc) -> None:
        svc.create_or_update_user(_new_user(email="taken@example.com"), SYSTEM)
        saved = svc.create_or_update_user(_new_user(), SYSTEM)
        with pytest.raises(Conflict):
            svc.update_user(saved.id, "A", "B", 1, "taken@example.com", None, [], SYSTEM)


class TestDeleteAndQueries:
    def test_delete_missing_id_is_success(self, svc) -> None:
        assert svc.delete_user(12345, SYSTEM) is False

    def test_delete_existing(self, svc) -> None:
        saved = svc.create_or_update_user(_new_user(), SYSTEM)
        assert svc.delete_user(saved.id, SYSTEM) is True
        assert svc.find_by_id(saved.id) is None
        assert svc.delete_user(saved.id, SYSTEM) is False

    def test_list_users_ordered_with_roles(self, svc) -> None:
        svc.create_or_update_user(_new_user(email="b@example.com", roles=("ADMIN", "USER")), SYSTEM)
        svc.create_or_update_user(_new_user(email="a@example.com"), SYSTEM)
        listed = svc.list_users_with_roles()
        assert [u.email for u in listed] == ["b@example.com", "a@example.com"]
        assert listed[0].role_names == ["ADMIN", "USER"]

    def test_get_user_missing(self, svc) -> None:
        with pytest.raises(UserNotFound) as exc:
            svc.get_user(77)
        assert exc.value.message == "User not found with ID: 77"


# ---------------------------------------------------------------------------
# Login and profile
# ---------------------------------------------------------------------------


class TestLogin:
    def test_success_returns_token_and_authorities(self, svc) -> None:
        svc.create_or_update_user(_new_user(roles=("ADMIN", "USER")), SYSTEM)
        result = svc.login("EVE@example.com", "pw-eve")
        assert result.authorities == {"ROLE_ADMIN", "ROLE_USER"}
        assert result.token
        assert svc.find_by_email("eve@example.com").last_login is not None

    def test_wrong_password_and_unknown_email_share_message(self, svc) -> None:
        svc.create_or_update_user(_new_user(), SYSTEM)
        with pytest.raises(InvalidCredential) as wrong:
            svc.login("eve@example.com", "wrong")
        with pytest.raises(InvalidCredential) as unknown:
            svc.login("nobody@example.com", "pw-eve")
        assert type(wrong.value) is InvalidCredential
        assert isinstance(unknown.value, UnknownLogin)
        assert wrong.value.message == unknown.value.message

    def test_logout_revokes_session(self, svc) -> None:
        saved = svc.create_or_update_user(_new_user(), SYSTEM)
        sid = svc.sessions.create_session(saved.id, 60).id
        svc.logout(_caller_for(saved, session_id=sid))
        assert svc.sessions.get_active(sid) is None


class TestProfile:
    def test_names_and_age(self, svc) -> None:
        saved = svc.create_or_update_user(_new_user(), SYSTEM)
        updated = svc.update_profile(_caller_for(saved), ProfileChange(first_name="E", age=34))
        assert updated.first_name == "E"
        assert updated.last_name == "Example"
        assert updated.age == 34
        assert updated.role_names == ["USER"]

    def test_password_change_requires_current(self, svc) -> None:
        saved = svc.create_or_update_user(_new_user(), SYSTEM)
        with pytest.raises(ValidationFailure):
            svc.update_profile(_caller_for(saved), ProfileChange(current_password="bad", new_password="n"))
        with pytest.raises(ValidationFailure):
            svc.update_profile(_caller_for(saved), ProfileChange(new_password="n"))

    def test_password_change_revokes_other_sessions(self, svc) -> None:
        saved = svc.create_or_update_user(_new_user(), SYSTEM)
        current = svc.sessions.create_session(saved.id, 60)
        other = svc.sessions.create_session(saved.id, 60)
        updated = svc.update_profile(
            _caller_for(saved, session_id=current.id),
            ProfileChange(current_password="pw-eve", new_password="pw-new"),
        )
        assert verify_password("pw-new", updated.hashed_password)
        assert svc.sessions.get_active(current.id) is not None
        assert svc.sessions.get_active(other.id) is None


class TestAdminGuards:
    def test_role_ids_none_keeps_roles(self, svc) -> None:
        saved = svc.create_or_update_user(_new_user(roles=("ADMIN", "USER")), SYSTEM)
        other = svc.create_or_update_user(_new_user(email="boss@example.com", roles=("ADMIN",)), SYSTEM)
        result = svc.update_user(saved.id, "Eve", "Kept", 33, saved.email, None, None, _caller_for(other))
        assert result.user.role_names == ["ADMIN", "USER"]
        assert result.user.last_name == "Kept"

    def test_cannot_delete_self(self, svc) -> None:
        me = svc.create_or_update_user(_new_user(email="me@example.com", roles=("ADMIN",)), SYSTEM)
        svc.create_or_update_user(_new_user(email="boss@example.com", roles=("ADMIN",)), SYSTEM)
        with pytest.raises(Conflict):
            svc.delete_user(me.id, _caller_for(me))
        assert svc.find_by_id(me.id) is not None

    def test_cannot_delete_last_active_admin(self, svc) -> None:
        admin = svc.create_or_update_user(_new_user(roles=("ADMIN",)), SYSTEM)
        with pytest.raises(Conflict) as exc:
            svc.delete_user(admin.id, SYSTEM)
        assert exc.value.message == "Cannot delete the last active administrator."
        assert svc.find_by_id(admin.id) is not None

    def test_admin_deletable_while_another_remains(self, svc) -> None:
        boss = svc.create_or_update_user(_new_user(email="boss@example.com", roles=("ADMIN",)), SYSTEM)
        other = svc.create_or_update_user(_new_user(roles=("ADMIN",)), SYSTEM)
        assert svc.delete_user(other.id, _caller_for(boss)) is True

    def test_cannot_demote_last_active_admin(self, svc) -> None:
        admin = svc.create_or_update_user(_new_user(roles=("ADMIN",)), SYSTEM)
        user_role = svc.find_role_by_name("USER").id
        with pytest.raises(Conflict):
            svc.update_user(admin.id, "Eve", "Example", 33, admin.email, None, [user_role], SYSTEM)
        assert svc.get_user(admin.id).role_names == ["ADMIN"]

    def test_cannot_deactivate_last_active_admin(self, svc) -> None:
        admin = svc.create_or_update_user(_new_user(roles=("ADMIN",)), SYSTEM)
        with pytest.raises(Conflict):
            svc.update_user(admin.id, "Eve", "Example", 33, admin.email, None, None, SYSTEM, is_active=False)
        assert svc.get_user(admin.id).is_active is True

    def test_disabled_admin_does_not_count(self, svc) -> None:
        boss = svc.create_or_update_user(_new_user(email="boss@example.com", roles=("ADMIN",)), SYSTEM)
        other = svc.create_or_update_user(_new_user(roles=("ADMIN",)), SYSTEM)
        svc.update_user(other.id, "Eve", "Example", 33, other.email, None, None, _caller_for(boss), is_active=False)
        with pytest.raises(Conflict):
            svc.delete_user(boss.id, SYSTEM)

    def test_cannot_deactivate_self(self, svc) -> None:
        me = svc.create_or_update_user(_new_user(email="me@example.com", roles=("ADMIN",)), SYSTEM)
        svc.create_or_update_user(_new_user(email="boss@example.com", roles=("ADMIN",)), SYSTEM)
        with pytest.raises(Conflict) as exc:
            svc.update_user(me.id, "Eve", "Example", 33, me.email, None, None, _caller_for(me), is_active=False)
        assert exc.value.message == "You cannot deactivate your own account."

    def test_deactivated_user_cannot_log_in(self, svc) -> None:
        boss = svc.create_or_update_user(_new_user(email="boss@example.com", roles=("ADMIN",)), SYSTEM)
        target = svc.create_or_update_user(_new_user(), SYSTEM)
        login = svc.login("eve@example.com", "pw-eve")
        result = svc.update_user(
            target.id, "Eve", "Example", 33, target.email, None, None, _caller_for(boss), is_active=False
        )
        assert result.user.is_active is False
        assert svc.sessions.get_active(decode_access_token(login.token)["sid"]) is None
        with pytest.raises(InvalidCredential):
            svc.login("eve@example.com", "pw-eve")
