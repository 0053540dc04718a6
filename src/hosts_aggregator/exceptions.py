"""
Exception classes for the hosts aggregator.

All exceptions inherit from HostsAggregatorError and provide structured
error information with codes, messages, and optional details.
"""

from typing import Optional


class HostsAggregatorError(Exception):
    """Base exception for all hosts aggregator errors."""

    http_status = 500

    def __init__(
        self,
        code: str,
        message: str,
        details: Optional[dict] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"


class FetchError(HostsAggregatorError):
    """Raised when a source cannot be retrieved."""

    http_status = 502


class NetworkError(FetchError):
    """Raised when the connection to a source fails."""

    pass


class FetchTimeoutError(FetchError):
    """Raised when a source does not answer within its timeout."""

    http_status = 504


class HttpStatusError(FetchError):
    """Raised when a source answers with a non-success HTTP status."""

    pass


class ParseError(HostsAggregatorError):
    """Raised for a single unparseable list line."""

    http_status = 400


class MergeConflictError(HostsAggregatorError):
    """Raised when a host update would violate the store invariants."""

    http_status = 409


class PassAlreadyRunningError(HostsAggregatorError):
    """Raised when a pass is triggered while another one is in flight."""

    http_status = 409


class AggregationFailedError(HostsAggregatorError):
    """Raised when a pass finished without a single successful source."""

    http_status = 502


class NotFoundError(HostsAggregatorError):
    """Raised when a requested record does not exist."""

    http_status = 404


class ConflictError(HostsAggregatorError):
    """Raised when a record would collide with an existing one."""

    http_status = 409


class ValidationError(HostsAggregatorError):
    """Raised when request input is invalid."""

    http_status = 400


class PersistenceError(HostsAggregatorError):
    """Raised when persistence operations fail (file I/O, HMAC validation)."""

    pass


class TamperingError(PersistenceError):
    """Raised when HMAC validation fails, indicating data tampering."""

    pass
