"""
API module.
Contains the FastAPI application, routes, and authentication.
"""

from integration_queue.api.main import create_app, run

__all__ = ["create_app", "run"]
