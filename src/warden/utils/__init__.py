"""Utility modules for Warden."""

from warden.utils.exceptions import ConfigurationError, WardenError

__all__ = [
    "WardenError",
    "ConfigurationError",
]
