"""API Package.

FastAPI server for the CRM/ERP sync engine.
"""

from api.server import create_app, app

__all__ = [
    "create_app",
    "app",
]
