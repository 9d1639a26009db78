"""
asgi.py -- Application assembly for RoleKeeper.

Joins the JSON API (api/main.py) and the server-rendered web UI
(web/routes.py) into a single ASGI app. api/main.py never imports web/.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app
from web.routes import router as web_router

# Mount the web UI router here, not in api/main.py.
app.include_router(web_router, tags=["Web UI"])
