"""
asgi.py -- ASGI entry point for CertGuard.

Run with:  uvicorn asgi:app --reload

Kept separate from api/main.py so deployment tooling has one stable import
path even if more routers are assembled here later.
"""

from api.main import app

__all__ = ["app"]
