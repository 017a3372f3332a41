"""
asgi.py -- ASGI entry point for the ALWR registry.

Kept separate from api/main.py so process managers have a stable import path
that does not change if the API module is reorganized.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
