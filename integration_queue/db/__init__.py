"""
Database module.
Contains database connection, models, and repository implementations.
"""

from integration_queue.db.connection import (
    close_db,
    create_engine_for_url,
    create_schema,
    get_async_session,
    get_engine,
    get_session_context,
    init_db,
    make_session_factory,
)
from integration_queue.db.models import AuditEvent, Base, Job, WorkerRun

__all__ = [
    "get_async_session",
    "get_session_context",
    "get_engine",
    "create_engine_for_url",
    "create_schema",
    "make_session_factory",
    "init_db",
    "close_db",
    "Job",
    "WorkerRun",
    "AuditEvent",
    "Base",
]
