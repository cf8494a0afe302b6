"""
asgi.py -- ASGI entry point for SchoolAdmin.

Run with:  uvicorn asgi:app --reload

Keeps the import path used by process managers stable even if the API
package layout changes.
"""

from api.main import app

__all__ = ["app"]
