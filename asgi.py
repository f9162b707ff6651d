"""
asgi.py -- ASGI entry point for authkeeper.

Run with:  uvicorn asgi:app --reload

Kept separate from api/main.py so process managers and the CLI have one
stable import path that does not depend on the api/ package layout.
"""

from api.main import app

__all__ = ["app"]
