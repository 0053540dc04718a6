"""
Enumeration types for the hosts aggregator.

These enums provide type-safe constants for entry types, fetch statuses,
health states and error codes throughout the system.
"""

from enum import Enum


class EntryType(Enum):
    """Classification of a parsed list entry."""

    BLOCK = "block"
    ALLOW = "allow"
    ELEMENT = "element"


class FetchStatus(Enum):
    """Outcome of fetching one source."""

    SUCCESS = "SUCCESS"
    ERROR = "ERROR"
    TIMEOUT = "TIMEOUT"
    NOT_MODIFIED = "NOT_MODIFIED"
    SKIPPED = "SKIPPED"

    @property
    def is_success(self) -> bool:
        """SUCCESS and NOT_MODIFIED both deliver usable content."""
        return self in (FetchStatus.SUCCESS, FetchStatus.NOT_MODIFIED)


class FetchErrorCode(Enum):
    """Error codes for failed fetches."""

    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    HTTP_STATUS = "http_status"
    TLS_ERROR = "tls_error"
    CONTENT_TOO_LARGE = "content_too_large"


class HealthStatus(Enum):
    """Derived reachability state of a source."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


class PassStatus(Enum):
    """Lifecycle state of an aggregation pass."""

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class TriggeredBy(Enum):
    """What started an aggregation pass."""

    MANUAL = "manual"
    SCHEDULED = "scheduled"
    AUTO = "auto"


class ListFormat(Enum):
    """Detected syntax family of a source list."""

    STANDARD = "standard"
    ADBLOCK = "adblock"
    AUTO = "auto"


class OutputFormat(Enum):
    """Syntax of the rendered unified list."""

    HOSTS = "hosts"
    ABP = "abp"


class LogLevel(Enum):
    """Logging severity levels."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class NormalizationErrorCode(Enum):
    """Error codes for rejected domain tokens."""

    EMPTY_INPUT = "empty_input"
    IP_LITERAL = "ip_literal"
    WILDCARD = "wildcard"
    FORBIDDEN_CHARS = "forbidden_chars"
    INVALID_LABEL = "invalid_label"
    IDNA_ERROR = "idna_error"
