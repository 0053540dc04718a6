"""
Data models for the hosts aggregator.

This module defines all data structures used for sources, host entries,
source attribution, fetch auditing, source health and aggregation results.
Timestamps are ISO-8601 UTC strings throughout.
"""

from dataclasses import dataclass, field
from typing import Optional

from .enums import EntryType, FetchErrorCode, FetchStatus, HealthStatus, PassStatus, TriggeredBy


@dataclass
class Source:
    """A configured remote list contributing domain entries."""

    id: str
    name: str
    url: str
    created_at: str
    updated_at: str
    enabled: bool = True
    metadata: Optional[dict] = None
    # Derived fields, written by the aggregation runner only
    last_checked: Optional[str] = None
    last_fetch_status: Optional[str] = None
    host_count: int = 0
    entry_count: int = 0


@dataclass
class HostEntry:
    """Canonical record for one normalized domain and entry type."""

    id: str
    domain: str  # Display form, as first seen
    normalized: str  # Dedup key
    entry_type: EntryType
    first_seen: str
    last_seen: str
    enabled: bool = True
    occurrence_count: int = 1

    @property
    def key(self) -> tuple[str, EntryType]:
        return (self.normalized, self.entry_type)


@dataclass
class HostSourceLink:
    """Attribution of a host to the source line that produced it."""

    host_id: str
    source_id: str
    line_number: Optional[int]
    raw_line: Optional[str]
    comment: Optional[str]
    first_seen: str
    last_seen: str
    mapping_enabled: bool = True


@dataclass
class SourceContent:
    """Last body merged for a source, kept for conditional requests."""

    source_id: str
    content: str
    content_hash: str
    fetched_at: str
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    line_count: int = 0
    entry_count: int = 0


@dataclass
class SourceFetchLog:
    """Append-only audit record of one fetch."""

    id: str
    source_id: str
    status: FetchStatus
    created_at: str
    http_status: Optional[int] = None
    error_message: Optional[str] = None
    response_time_ms: float = 0.0
    content_changed: bool = False


@dataclass
class SourceHealth:
    """Latest reachability state of one source."""

    source_id: str
    status: HealthStatus = HealthStatus.UNKNOWN
    last_checked: Optional[str] = None
    response_time: Optional[float] = None
    error_message: Optional[str] = None
    consecutive_failures: int = 0
    content_changed: bool = False
    last_content_hash: Optional[str] = None
    last_failure_at: Optional[str] = None


@dataclass
class FetchOutcome:
    """Result of fetching one source."""

    source_id: str
    status: FetchStatus
    content: Optional[bytes] = None
    http_status: Optional[int] = None
    error_code: Optional[FetchErrorCode] = None
    error_message: Optional[str] = None
    response_time_ms: float = 0.0
    content_hash: Optional[str] = None
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    content_changed: bool = False


@dataclass(frozen=True)
class RawEntry:
    """One entry extracted from a list line, before normalization."""

    token: str
    entry_type: EntryType
    line_number: int
    raw_line: str
    comment: Optional[str] = None


@dataclass(frozen=True)
class NormalizedEntry:
    """A raw entry whose token passed normalization."""

    normalized: str
    domain: str
    entry_type: EntryType
    line_number: int
    raw_line: str
    comment: Optional[str] = None

    @property
    def key(self) -> tuple[str, EntryType]:
        return (self.normalized, self.entry_type)


@dataclass(frozen=True)
class SourceContribution:
    """Per-source statistics inside one aggregation result."""

    source_id: str
    fetch_status: FetchStatus
    source_name: Optional[str] = None
    entries_contributed: int = 0
    unique_domains_contributed: int = 0
    fetch_duration_ms: float = 0.0
    malformed_lines: int = 0
    rejected_tokens: int = 0
    error_message: Optional[str] = None


@dataclass(frozen=True)
class AggregationResult:
    """Immutable record of one aggregation pass."""

    id: str
    timestamp: str
    status: PassStatus
    triggered_by: TriggeredBy
    total_sources: int
    successful_sources: int
    failed_sources: int
    total_entries: int
    unique_entries: int
    duplicates_removed: int
    new_entries: int
    allow_entries: int
    block_entries: int
    processing_time_ms: float
    sources: tuple[SourceContribution, ...] = ()
    message: Optional[str] = None
    file_path: Optional[str] = None
    file_size_bytes: Optional[int] = None
    file_hash: Optional[str] = None


@dataclass
class AggregationProgress:
    """Observable progress of the current (or last) pass."""

    status: PassStatus = PassStatus.IDLE
    processed_sources: int = 0
    total_sources: int = 0
    current_source: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    result_id: Optional[str] = None
    message: Optional[str] = None
    triggered_by: Optional[TriggeredBy] = None
    cancel_requested: bool = False


@dataclass
class HealthReport:
    """Aggregate health view over all sources."""

    total_sources: int
    healthy_sources: int
    unhealthy_sources: int
    unknown_sources: int
    sources: list[SourceHealth] = field(default_factory=list)
