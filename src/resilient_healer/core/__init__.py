"""Core data model, errors and cross-cutting concerns."""

from .errors import BaseError, ConfigurationError, HealerError

__all__ = ["BaseError", "ConfigurationError", "HealerError"]
