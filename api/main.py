"""
api/main.py -- FastAPI application entry point for RoleKeeper.

Run with:      uvicorn asgi:app --reload

Middleware stack (outermost to innermost):
  1. log_requests           -- one access-log line per request
  2. access_control         -- authenticates the caller and applies the rule table
  3. SessionMiddleware      -- signed cookie carrying the CSRF token and flash messages
  4. SlowAPIMiddleware      -- enforces per-route rate limits from core.limiter
  5. CORSMiddleware         -- adds CORS headers for allowed browser origins
  6. TrustedHostMiddleware  -- rejects requests with unexpected Host headers

Lifespan handles startup (schema, stores, seeding, session purge task) and
shutdown (cancel purge task, dispose the engine) symmetrically.
"""

from __future__ import annotations

import asyncio
import html
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from urllib.parse import quote

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.sessions import SessionMiddleware

from accounts.seed import seed_defaults
from accounts.service import AccountService
from api.models import HealthResponse
from api.responses import fail
from api.routes.admin import router as admin_router
from api.routes.auth import router as auth_router
from api.routes.profile import router as profile_router
from auth.access import Decision, decide, route_class
from auth.dependencies import authenticate
from auth.store import RoleStore, SessionStore, UserStore, open_engine
from core.config import get_settings
from core.errors import AccountError, Conflict, InvalidCredential, NotFound, ValidationFailure
from core.limiter import limiter

VERSION = "0.1.0"

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("rolekeeper.api")

_settings = get_settings()

# ---------------------------------------------------------------------------
# Background purge task
# ---------------------------------------------------------------------------


async def _purge_loop(app: FastAPI) -> None:
    """Delete expired and revoked session rows every 6 hours."""
    while True:
        await asyncio.sleep(6 * 60 * 60)
        removed = await run_in_threadpool(app.state.session_store.purge_expired)
        logger.info("Purged %d stale session(s)", removed)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application-level resources across the full server lifetime.

    Startup order matters:
      1. Engine and schema.
      2. Stores and the account service on top of them.
      3. Seeding -- finishes before the first request is accepted.
      4. Purge task last -- references the session store.
    """
    logger.info("RoleKeeper API starting up")
    engine = open_engine(_settings.database_url)
    app.state.engine = engine
    app.state.role_store = RoleStore(engine)
    app.state.user_store = UserStore(engine)
    app.state.session_store = SessionStore(engine)
    app.state.accounts = AccountService(app.state.role_store, app.state.user_store, app.state.session_store)
    logger.info("Stores initialized")
    if _settings.seed_on_startup:
        seed_defaults(app.state.accounts, _settings)
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    engine.dispose()
    logger.info("RoleKeeper API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="RoleKeeper API",
    description="Role-based user administration: login, user and role management, self-service profile.",
    version=VERSION,
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# Starlette wraps middleware in reverse registration order: the last
# add_middleware() / @app.middleware registration is the outermost layer.
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type", "Authorization", "X-CSRF-Token"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# Holds the CSRF token (auth/csrf.py) and flash messages (web/routes.py).
app.add_middleware(
    SessionMiddleware,
    secret_key=_settings.secret_key,
    session_cookie="rk_session",
    same_site="lax",
    https_only=_settings.secure_cookies,
)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


_FORBIDDEN_HTML = (
    "<!doctype html><title>403 Forbidden</title>"
    "<h1>403 Forbidden</h1><p>Your account does not have access to this page.</p>"
    '<p><a href="/default">Back to your home page</a></p>'
)


@app.middleware("http")
async def access_control(request: Request, call_next):
    """Authenticate the caller once and apply the access-control rule table.

    The resolved Caller (or None) is stored on request.state.caller for the
    route dependencies. Denials are answered per route class: API paths get a
    401/403 envelope, browser paths a redirect to /login or a 403 page.
    """
    caller = await run_in_threadpool(authenticate, request)
    request.state.caller = caller
    path = request.url.path
    decision = decide(path, request.method, caller.authorities if caller else None)
    if decision is Decision.ALLOW:
        return await call_next(request)

    logger.info(
        "access.denied decision=%s method=%s path=%s user_id=%s",
        decision.value,
        request.method,
        path,
        caller.user_id if caller else None,
    )
    if route_class(path) == "api":
        if decision is Decision.UNAUTHENTICATED:
            return fail("Authentication required.", 401)
        return fail("You do not have permission to access this resource.", 403)
    if decision is Decision.UNAUTHENTICATED:
        return RedirectResponse(f"/login?next={quote(path, safe='/')}", status_code=302)
    return HTMLResponse(_FORBIDDEN_HTML, status_code=403)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, tags=["Auth"])
app.include_router(admin_router, tags=["Administration"])
app.include_router(profile_router, tags=["Profile"])
# Web UI router is mounted by asgi.py, not here.
# web/ borrows api.models for form validation only; api/ never imports web/.


# ---------------------------------------------------------------------------
# Exception handlers
#
# API paths get the {success: false, message} envelope. Domain
# errors are mapped by class; the first matching entry wins.
# ---------------------------------------------------------------------------

_ERROR_STATUS: tuple[tuple[type[AccountError], int], ...] = (
    (InvalidCredential, 401),
    (NotFound, 404),
    (ValidationFailure, 400),
    (Conflict, 409),
)


def status_for(exc: AccountError) -> int:
    for error_type, status_code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 400


@app.exception_handler(AccountError)
async def account_error_handler(request: Request, exc: AccountError) -> JSONResponse:
    return fail(exc.message, status_for(exc))


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    """Return 429 with a Retry-After header when a rate limit is exceeded.

    The browser login form is sent back to /login with a readable error.
    """
    retry_after = int(getattr(exc, "retry_after", 60))
    if route_class(request.url.path) == "api":
        response = fail("Too many requests.", 429)
    else:
        response = RedirectResponse("/login?error=too_many_attempts", status_code=302)
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Malformed request bodies are caller errors: 400 with the offending fields."""
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err['loc'] if p != 'body')}: {err['msg']}" for err in exc.errors()
    )
    return fail(f"Request validation failed: {problems}", 400)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """API paths get the JSON envelope; browser paths a minimal HTML page."""
    if route_class(request.url.path) == "api":
        return fail(str(exc.detail), exc.status_code)
    detail = html.escape(str(exc.detail))
    return HTMLResponse(
        f"<!doctype html><title>{exc.status_code}</title><h1>{exc.status_code}</h1><p>{detail}</p>",
        status_code=exc.status_code,
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return fail("An unexpected error occurred.", 500)


# ---------------------------------------------------------------------------
# Health endpoint
# ---------------------------------------------------------------------------


@app.get("/api/health", tags=["Health"])
async def health() -> HealthResponse:
    """Return API liveness and current version."""
    return HealthResponse(version=VERSION)
