"""Error taxonomy shared by the limiter, the index and the service facade."""

from __future__ import annotations


class GeogateError(Exception):
    """Base class for all geogate errors."""


class ConfigError(GeogateError, ValueError):
    """Invalid construction parameters. Never recovered."""


class LoadError(GeogateError):
    """The initial load of the backing source failed."""


class ReloadFailure(GeogateError):
    """A periodic reload failed; the previous snapshot stays in service."""


class NotInitializedError(GeogateError):
    """A lookup or admission was attempted before a successful initialize()."""
