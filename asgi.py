"""
asgi.py -- ASGI entry point for AuthGate.

Run with:  uvicorn asgi:app --reload

api/main.py builds the app; this module only re-exports it so the server
command stays the same if the assembly ever grows a second router package.
"""

from api.main import app

__all__ = ["app"]
