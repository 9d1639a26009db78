"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. RoleStore, UserStore and SessionStore are
the repositories; the _row_to_* functions are the mappers. Services and route
code never touch SQL directly.

The three stores share one Engine created by open_engine(). Each public
method opens its own connection and commits before returning, so every
method is one transaction. Multi-row writes (a user row plus its role links)
happen inside a single method and are therefore atomic: if any statement
fails, the connection is closed without commit and nothing is persisted.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Plaintext passwords never reach this module -- User.password is ignored by
  every write; only hashed_password is stored.

Layer rule: no imports from api/, web/, or accounts/.
"""

from __future__ import annotations

import secrets
from collections import defaultdict
from datetime import datetime, timedelta, timezone

from sqlalchemy import (
    Column,
    ForeignKey,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    select,
)
from sqlalchemy.engine import Connection, Engine

from auth.models import Role, Session, User

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_roles = Table(
    "roles",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(50), nullable=False, unique=True),
    Column("description", Text, nullable=False, server_default=""),
)

_users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("hashed_password", Text, nullable=False),
    Column("first_name", String(100), nullable=False, server_default=""),
    Column("last_name", String(100), nullable=False, server_default=""),
    Column("age", Integer, nullable=False, server_default="0"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("last_login", String(32)),
)

_user_roles = Table(
    "user_roles",
    metadata,
    Column("user_id", Integer, ForeignKey("users.id"), primary_key=True),
    Column("role_id", Integer, ForeignKey("roles.id"), primary_key=True),
)

_sessions = Table(
    "sessions",
    metadata,
    Column("id", String(64), primary_key=True),  # the token's sid claim
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("expires_at", String(32), nullable=False),
    Column("revoked_at", String(32)),
)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journaling and foreign key enforcement.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. Foreign keys are off by default in SQLite;
    without them a role still linked to users could be deleted.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


def open_engine(db_url: str) -> Engine:
    """Create the shared Engine and make sure the schema exists.

    create_all() is idempotent, so this is safe on every startup.
    """
    connect_args: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    engine = create_engine(db_url, connect_args=connect_args)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _sqlite_pragmas)
    metadata.create_all(engine)
    return engine


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _now_iso() -> str:
    return _now().isoformat()


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------


class RoleStore:
    """Repository for Role entities.

    Usage:
        roles = RoleStore(engine)
        role_id = roles.create_role(Role(name="ADMIN", description="Administrator role"))
        admin = roles.get_by_name("ADMIN")
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create_role(self, role: Role) -> int:
        """Insert a role and return its ID.

        Raises sqlalchemy.exc.IntegrityError if the name is already taken.
        """
        with self.engine.connect() as conn:
            result = conn.execute(_roles.insert().values(name=role.name, description=role.description))
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_id(self, role_id: int) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.id == role_id)).fetchone()
        return _row_to_role(row) if row is not None else None

    def get_by_name(self, name: str) -> Role | None:
        """Exact, case-sensitive lookup. Names are stored upper-cased by the service."""
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.name == name)).fetchone()
        return _row_to_role(row) if row is not None else None

    def get_by_ids(self, role_ids: list[int]) -> list[Role]:
        """Return the roles whose IDs are in role_ids. Missing IDs are simply absent."""
        if not role_ids:
            return []
        with self.engine.connect() as conn:
            rows = conn.execute(_roles.select().where(_roles.c.id.in_(role_ids))).fetchall()
        return [_row_to_role(r) for r in rows]

    def list_roles(self) -> list[Role]:
        with self.engine.connect() as conn:
            rows = conn.execute(_roles.select().order_by(_roles.c.id)).fetchall()
        return [_row_to_role(r) for r in rows]

    def update_role(self, role_id: int, **fields) -> bool:
        """Update name and/or description. Returns False if role_id was not found.

        Raises sqlalchemy.exc.IntegrityError if a new name collides.
        """
        with self.engine.connect() as conn:
            result = conn.execute(_roles.update().where(_roles.c.id == role_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def delete_role(self, role_id: int) -> bool:
        """Delete a role. Returns False if not found.

        The foreign key on user_roles rejects the delete while any user still
        holds the role; the service checks count_holders() first to fail with
        a readable error instead.
        """
        with self.engine.connect() as conn:
            result = conn.execute(_roles.delete().where(_roles.c.id == role_id))
            conn.commit()
        return result.rowcount > 0

    def count_holders(self, role_id: int) -> int:
        """Return how many users currently hold the role."""
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count()).select_from(_user_roles).where(_user_roles.c.role_id == role_id)
            ).scalar()
        return result or 0


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User entities and their role links.

    Every read returns users with roles already attached (one extra query per
    call, never per user), so callers never hit a lazily loaded relation.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create_user(self, user: User) -> int:
        """Insert a user plus its role links in one transaction and return the new ID.

        Every role in user.roles must already carry a persisted id.
        Raises sqlalchemy.exc.IntegrityError if the email is already taken.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=user.email,
                    username=user.username,
                    hashed_password=user.hashed_password,
                    first_name=user.first_name,
                    last_name=user.last_name,
                    age=user.age,
                    is_active=1 if user.is_active else 0,
                    created_at=_now_iso(),
                )
            )
            user_id = result.inserted_primary_key[0]
            _write_role_links(conn, user_id, user.roles)
            conn.commit()
        return user_id

    def update_user(self, user: User) -> bool:
        """Overwrite a user row and replace its role links in one transaction.

        Returns False (and writes nothing) if user.id does not exist.
        Raises sqlalchemy.exc.IntegrityError if the new email is already taken.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.id == user.id)
                .values(
                    email=user.email,
                    username=user.username,
                    hashed_password=user.hashed_password,
                    first_name=user.first_name,
                    last_name=user.last_name,
                    age=user.age,
                    is_active=1 if user.is_active else 0,
                )
            )
            if result.rowcount == 0:
                conn.rollback()
                return False
            conn.execute(_user_roles.delete().where(_user_roles.c.user_id == user.id))
            _write_role_links(conn, user.id, user.roles)
            conn.commit()
        return True

    def get_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
            if row is None:
                return None
            return _attach_roles(conn, [row])[0]

    def get_by_email(self, email: str) -> User | None:
        """Look up a user by exact email (the login identifier)."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.email == email)).fetchone()
            if row is None:
                return None
            return _attach_roles(conn, [row])[0]

    def list_users_with_roles(self) -> list[User]:
        """Return all users ordered by ID, each with its roles resolved."""
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.id)).fetchall()
            return _attach_roles(conn, rows)

    def count_active_with_role(self, role_name: str) -> int:
        """Return how many active users hold the named role."""
        holders = _users.join(_user_roles, _user_roles.c.user_id == _users.c.id).join(
            _roles, _roles.c.id == _user_roles.c.role_id
        )
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(holders)
                .where((_roles.c.name == role_name) & (_users.c.is_active == 1))
            ).scalar()
        return result or 0

    def delete_user(self, user_id: int) -> bool:
        """Delete a user with its role links and sessions. Returns False if not found."""
        with self.engine.connect() as conn:
            conn.execute(_user_roles.delete().where(_user_roles.c.user_id == user_id))
            conn.execute(_sessions.delete().where(_sessions.c.user_id == user_id))
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
            conn.commit()
        return result.rowcount > 0

    def update_last_login(self, user_id: int) -> None:
        """Stamp the current UTC timestamp as last_login for the given user."""
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_login=_now_iso()))
            conn.commit()


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class SessionStore:
    """Repository for server-side login sessions.

    A signed token is only honoured while its session row is unrevoked and
    unexpired. Revoking the row is how logout and identity changes end a
    session before the token itself expires.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def create_session(self, user_id: int, ttl_seconds: int) -> Session:
        session = Session(
            id=secrets.token_urlsafe(32),
            user_id=user_id,
            created_at=_now_iso(),
            expires_at=(_now() + timedelta(seconds=ttl_seconds)).isoformat(),
        )
        with self.engine.connect() as conn:
            conn.execute(
                _sessions.insert().values(
                    id=session.id,
                    user_id=session.user_id,
                    created_at=session.created_at,
                    expires_at=session.expires_at,
                )
            )
            conn.commit()
        return session

    def get_active(self, session_id: str) -> Session | None:
        """Return the session if it exists, is not revoked and has not expired."""
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.id == session_id)).fetchone()
        if row is None or row.revoked_at is not None:
            return None
        if datetime.fromisoformat(row.expires_at) <= _now():
            return None
        return _row_to_session(row)

    def revoke(self, session_id: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.update()
                .where((_sessions.c.id == session_id) & (_sessions.c.revoked_at.is_(None)))
                .values(revoked_at=_now_iso())
            )
            conn.commit()
        return result.rowcount > 0

    def revoke_all_for_user(self, user_id: int, keep: str | None = None) -> int:
        """Revoke every open session of a user except `keep`. Returns the number revoked."""
        condition = (_sessions.c.user_id == user_id) & (_sessions.c.revoked_at.is_(None))
        if keep is not None:
            condition = condition & (_sessions.c.id != keep)
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.update().where(condition).values(revoked_at=_now_iso()))
            conn.commit()
        return result.rowcount

    def purge_expired(self) -> int:
        """Delete expired and revoked session rows. Returns number of rows removed."""
        cutoff = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(
                _sessions.delete().where((_sessions.c.expires_at < cutoff) | (_sessions.c.revoked_at.is_not(None)))
            )
            conn.commit()
        return result.rowcount


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _write_role_links(conn: Connection, user_id: int, roles: set[Role]) -> None:
    role_ids = sorted({r.id for r in roles})
    if role_ids:
        conn.execute(_user_roles.insert(), [{"user_id": user_id, "role_id": rid} for rid in role_ids])


def _attach_roles(conn: Connection, rows) -> list[User]:
    """Map user rows to Users, loading all their roles with a single query."""
    user_ids = [r.id for r in rows]
    roles_by_user: dict[int, set[Role]] = defaultdict(set)
    if user_ids:
        links = conn.execute(
            select(_user_roles.c.user_id, _roles.c.id, _roles.c.name, _roles.c.description)
            .select_from(_user_roles.join(_roles, _user_roles.c.role_id == _roles.c.id))
            .where(_user_roles.c.user_id.in_(user_ids))
        ).fetchall()
        for link in links:
            roles_by_user[link.user_id].add(Role(id=link.id, name=link.name, description=link.description))
    return [_row_to_user(r, roles_by_user[r.id]) for r in rows]


def _row_to_role(row) -> Role:
    return Role(id=row.id, name=row.name, description=row.description or "")


def _row_to_user(row, roles: set[Role]) -> User:
    return User(
        id=row.id,
        email=row.email,
        username=row.username,
        hashed_password=row.hashed_password,
        first_name=row.first_name,
        last_name=row.last_name,
        age=row.age,
        is_active=bool(row.is_active),
        roles=set(roles),
        created_at=row.created_at,
        last_login=row.last_login,
    )


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        user_id=row.user_id,
        created_at=row.created_at,
        expires_at=row.expires_at,
        revoked_at=row.revoked_at,
    )
