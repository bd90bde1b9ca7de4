"""
Admin HTTP API.
"""

from .admin_routes import AdminHandlers, create_admin_app, run_admin_server

__all__ = [
    "AdminHandlers",
    "create_admin_app",
    "run_admin_server",
]
