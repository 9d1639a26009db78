"""
auth/tokens.py -- Password hashing, credential verification, and session tokens.

Security design decisions:
  Passwords: bcrypt directly (no passlib wrapper). Bcrypt's cost factor makes
       brute-force of low-entropy secrets expensive, and checkpw() compares in
       constant time. _DUMMY_HASH enables timing equalization in
       verify_credentials() so response time does not reveal whether an email
       is registered.

  Tokens: python-jose HS256 JWTs signed with SECRET_KEY, carrying
       sub (email), user_id, sid (server-side session id) and exp. A token is
       only honoured while its session row is active and the user's current
       email still equals sub (see auth/dependencies.py). Revoking the session
       row ends the session before exp.

  Logging: nothing in this module logs a password or a hash. Failed logins
       are logged with a masked identifier and the same message for an
       unknown email and a wrong password.

Layer rule: no imports from api/, web/, or accounts/. Import from core/ is
allowed -- core/ is the kernel and has no reverse dependencies.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from core.config import get_settings
from core.errors import InvalidCredential, UnknownLogin

if TYPE_CHECKING:
    from auth.models import Session, User
    from auth.store import SessionStore, UserStore

logger = logging.getLogger("rolekeeper.auth")

_settings = get_settings()

_ALGORITHM = "HS256"

COOKIE_NAME = "access_token"

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt only looks at the first 72 bytes; the API layer caps password
    length well below that.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    A malformed stored hash is a mismatch, not an error.
    """
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("rolekeeper_timing_dummy")


def mask_email(email: str) -> str:
    """Mask a login identifier for logs: "alice@example.com" -> "a***@example.com"."""
    local, sep, domain = email.partition("@")
    if not sep:
        return "***"
    return f"{local[:1]}***@{domain}"


# ---------------------------------------------------------------------------
# Credential verification (constant-time)
# ---------------------------------------------------------------------------


def verify_credentials(store: UserStore, email: str, password: str) -> User:
    """Return the user for a correct email/password pair.

    Raises UnknownLogin when no user has the email and InvalidCredential for a
    wrong password or a disabled account. UnknownLogin subclasses
    InvalidCredential and carries the same message, so callers that catch
    InvalidCredential cannot leak which case occurred.

    Always runs bcrypt, against _DUMMY_HASH when the email is unknown, so both
    failure paths cost the same.
    """
    user = store.get_by_email(email)
    if user is None or not user.hashed_password:
        verify_password(password, _DUMMY_HASH)
        logger.info("login.failed identifier=%s", mask_email(email))
        raise UnknownLogin()
    if not verify_password(password, user.hashed_password) or not user.is_active:
        logger.info("login.failed identifier=%s", mask_email(email))
        raise InvalidCredential()
    return user


# ---------------------------------------------------------------------------
# Session tokens
# ---------------------------------------------------------------------------


def create_access_token(user_id: int, email: str, session_id: str, expire_seconds: int = 0) -> str:
    """Encode a signed JWT bound to a server-side session.

    Args:
        user_id:        Numeric user ID stored in the DB.
        email:          Login identifier, stored as the subject claim.
        session_id:     ID of the SessionStore row this token belongs to.
        expire_seconds: Token lifetime. 0 (default) uses Settings.token_expire_seconds.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds
    expire = datetime.now(timezone.utc) + timedelta(seconds=duration)
    payload = {
        "sub": email,
        "user_id": user_id,
        "sid": session_id,
        "exp": expire,
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM)


def decode_access_token(token: str) -> dict | None:
    """Decode and verify a JWT. Returns the payload dict or None on any failure.

    Returning None (rather than raising) keeps the caller simple: any invalid
    token is treated as unauthenticated.
    """
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if not {"sub", "user_id", "sid"} <= payload.keys():
        return None
    return payload


def start_session(sessions: SessionStore, user: User) -> tuple[Session, str]:
    """Open a server-side session for an authenticated user and sign its token."""
    ttl = _settings.token_expire_seconds
    session = sessions.create_session(user.id, ttl)
    token = create_access_token(user.id, user.email, session.id, expire_seconds=ttl)
    logger.info("session.start user_id=%s", user.id)
    return session, token


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_auth_cookie(response, token: str) -> None:
    """Write the access token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST; the CSRF token covers the rest.
    secure: only sent over HTTPS when SECURE_COOKIES=true (set in production).
    max_age: matches the token expiry so both expire together.
    """
    response.set_cookie(
        COOKIE_NAME,
        value=token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=_settings.token_expire_seconds,
    )


def clear_auth_cookie(response) -> None:
    response.delete_cookie(COOKIE_NAME)
