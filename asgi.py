"""
asgi.py -- ASGI entry point for ticketgate.

Commerce and page routers mount onto this app here, behind the access gate
installed in api/main.py; api/ itself knows nothing about them.

Run with:  uvicorn asgi:app --reload
"""

from api.main import app

__all__ = ["app"]
