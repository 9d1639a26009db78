"""
core/limiter.py -- Shared slowapi rate limiter instance.

Import this in api/main.py (to mount as middleware) and in the login routes
(api/routes/auth.py, web/routes.py) to apply per-route limits with
@limiter.limit(). A single shared instance means all routes share the same
in-memory counter store.

LOGIN_LIMIT comes from Settings.login_rate_limit. There is no lockout; this
limit is the only brute-force brake on the login endpoints.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")

LOGIN_LIMIT = get_settings().login_rate_limit
