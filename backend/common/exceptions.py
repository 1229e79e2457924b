"""Errors shared across packages."""


class ConfigError(Exception):
    """Raised when startup configuration is invalid. Fatal: the service must not start."""
