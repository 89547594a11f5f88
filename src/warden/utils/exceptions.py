"""Custom exceptions for Warden."""


class WardenError(Exception):
    """Base exception for all Warden errors."""

    pass


class ConfigurationError(WardenError):
    """Error in configuration, threshold bands or playbook definitions.

    Always raised at load time. A process that hits this error refuses to
    start rather than running with a partial policy.
    """

    pass
