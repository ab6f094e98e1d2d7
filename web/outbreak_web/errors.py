from __future__ import annotations

from typing import Optional


class QueryError(Exception):
    """Base class for failures of a single backend query."""

    def __init__(self, message: str, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.cause = cause


class TransportError(QueryError):
    """Network, DNS, timeout or non-2xx status."""


class DecodeError(QueryError):
    """The response body was not valid JSON."""


class ShapeError(QueryError):
    """
    The decoded payload is missing fields the caller needs, e.g. a
    "most recent" lookup returning zero or several records where exactly one
    was expected.
    """


# Raised by code reading a decoded payload of the wrong shape.
SHAPE_ERRORS = (AttributeError, KeyError, IndexError, TypeError, ValueError)


class ConfigError(RuntimeError):
    """Raised when the outbreak-web configuration is missing or invalid."""


__all__ = [
    "QueryError",
    "TransportError",
    "DecodeError",
    "ShapeError",
    "SHAPE_ERRORS",
    "ConfigError",
]
