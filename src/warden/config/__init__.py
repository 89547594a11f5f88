"""Configuration module for Warden."""

from warden.config.settings import (
    AuditSettings,
    DetectionSettings,
    ResponseSettings,
    Settings,
    get_settings,
)

__all__ = ["Settings", "get_settings", "DetectionSettings", "ResponseSettings", "AuditSettings"]
