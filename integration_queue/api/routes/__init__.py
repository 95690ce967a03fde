"""
API routes module.
"""

from integration_queue.api.routes.auth import router as auth_router
from integration_queue.api.routes.health import router as health_router
from integration_queue.api.routes.jobs import router as jobs_router
from integration_queue.api.routes.postings import router as postings_router
from integration_queue.api.routes.worker import router as worker_router

__all__ = ["jobs_router", "postings_router", "worker_router", "auth_router", "health_router"]
