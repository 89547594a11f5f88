"""Database models for Warden."""

from .audit import AuditRecordModel
from .base import Base, PortableJSON, PortableUUID, UTCDateTime

__all__ = [
    "Base",
    "PortableJSON",
    "PortableUUID",
    "UTCDateTime",
    "AuditRecordModel",
]
