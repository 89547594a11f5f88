"""Database layer for Warden."""

from warden.db.config import close_db, create_engine, create_session_factory, init_db
from warden.db.models import AuditRecordModel, Base

__all__ = [
    "Base",
    "AuditRecordModel",
    "create_engine",
    "create_session_factory",
    "init_db",
    "close_db",
]
