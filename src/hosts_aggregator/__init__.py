"""
Hosts Aggregator - unified hosts files from remote block and allow lists.

This package fetches registered sources concurrently, parses hosts-file and
adblock syntaxes, normalizes and deduplicates domains with per-source
attribution, tracks source health and writes one unified hosts file.
"""

__version__ = "0.1.0"

from hosts_aggregator.exceptions import (
    HostsAggregatorError,
    FetchError,
    NetworkError,
    FetchTimeoutError,
    HttpStatusError,
    ParseError,
    MergeConflictError,
    PassAlreadyRunningError,
    AggregationFailedError,
    NotFoundError,
    ConflictError,
    ValidationError,
    PersistenceError,
    TamperingError,
)
from hosts_aggregator.enums import (
    EntryType,
    FetchStatus,
    FetchErrorCode,
    HealthStatus,
    PassStatus,
    TriggeredBy,
    ListFormat,
    LogLevel,
    NormalizationErrorCode,
)
from hosts_aggregator.config import (
    AppConfig,
    FetchConfig,
    HealthConfig,
    NormalizerConfig,
    OutputConfig,
    ScheduleConfig,
    PersistenceConfig,
    LoggingConfig,
    ServerConfig,
    load_config,
)
from hosts_aggregator.models import (
    Source,
    HostEntry,
    HostSourceLink,
    SourceContent,
    SourceFetchLog,
    SourceHealth,
    FetchOutcome,
    RawEntry,
    NormalizedEntry,
    SourceContribution,
    AggregationResult,
    AggregationProgress,
    HealthReport,
)
from hosts_aggregator.audit_logger import AuditLogger, LogEntry
from hosts_aggregator.normalizer import DomainNormalizer, NormalizationResult, NormalizationError
from hosts_aggregator.list_parser import ListParser, ParseRun, FormatDetection, detect_format
from hosts_aggregator.host_store import HostStore
from hosts_aggregator.health_monitor import HealthMonitor
from hosts_aggregator.source_fetcher import SourceFetcher
from hosts_aggregator.dedup_merger import DedupMerger, MergeSession
from hosts_aggregator.file_writer import UnifiedFileWriter, WrittenFile
from hosts_aggregator.aggregation_runner import AggregationRunner
from hosts_aggregator.scheduler import CronParser, CronParseError, CronSchedule, Scheduler
from hosts_aggregator.service import AggregatorService

__all__ = [
    "__version__",
    # Exceptions
    "HostsAggregatorError",
    "FetchError",
    "NetworkError",
    "FetchTimeoutError",
    "HttpStatusError",
    "ParseError",
    "MergeConflictError",
    "PassAlreadyRunningError",
    "AggregationFailedError",
    "NotFoundError",
    "ConflictError",
    "ValidationError",
    "PersistenceError",
    "TamperingError",
    # Enums
    "EntryType",
    "FetchStatus",
    "FetchErrorCode",
    "HealthStatus",
    "PassStatus",
    "TriggeredBy",
    "ListFormat",
    "LogLevel",
    "NormalizationErrorCode",
    # Config
    "AppConfig",
    "FetchConfig",
    "HealthConfig",
    "NormalizerConfig",
    "OutputConfig",
    "ScheduleConfig",
    "PersistenceConfig",
    "LoggingConfig",
    "ServerConfig",
    "load_config",
    # Models
    "Source",
    "HostEntry",
    "HostSourceLink",
    "SourceContent",
    "SourceFetchLog",
    "SourceHealth",
    "FetchOutcome",
    "RawEntry",
    "NormalizedEntry",
    "SourceContribution",
    "AggregationResult",
    "AggregationProgress",
    "HealthReport",
    # Components
    "AuditLogger",
    "LogEntry",
    "DomainNormalizer",
    "NormalizationResult",
    "NormalizationError",
    "ListParser",
    "ParseRun",
    "FormatDetection",
    "detect_format",
    "HostStore",
    "HealthMonitor",
    "SourceFetcher",
    "DedupMerger",
    "MergeSession",
    "UnifiedFileWriter",
    "WrittenFile",
    "AggregationRunner",
    "CronParser",
    "CronParseError",
    "CronSchedule",
    "Scheduler",
    "AggregatorService",
]
