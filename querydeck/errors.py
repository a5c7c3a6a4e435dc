"""Error taxonomy shared by the registry, executor and normalizer."""

from __future__ import annotations


class QuerydeckError(RuntimeError):
    """Base class for every error raised by the core."""


class ConfigurationError(QuerydeckError):
    """Raised for a missing active connection or an unknown connection id."""


class ConnectionTestError(QuerydeckError):
    """Raised when the connectivity test of an add/update fails."""


class TransientConnectionError(QuerydeckError):
    """Raised by drivers for recoverable network or session faults."""


class QueryExecutionError(QuerydeckError):
    """Raised when the database reports a failure for a statement."""


class NoResultSetError(QueryExecutionError):
    """Raised when the result-returning call path gets no result set."""


class CancellationError(QuerydeckError):
    """Raised when the caller cancelled the query."""


__all__ = [
    "CancellationError",
    "ConfigurationError",
    "ConnectionTestError",
    "NoResultSetError",
    "QueryExecutionError",
    "QuerydeckError",
    "TransientConnectionError",
]
