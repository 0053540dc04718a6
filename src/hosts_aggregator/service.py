"""
Aggregator service: wires the engine components together.

The HTTP application and the CLI both talk to one AggregatorService. It owns
the host store, the runner and the scheduler, validates operator input, and
queues automatic passes after source changes (one pending follow-up at most).
"""

import asyncio
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

import httpx

from .aggregation_runner import AggregationRunner
from .audit_logger import AuditLogger
from .backoff import BackoffPolicy
from .config import AppConfig
from .dedup_merger import DedupMerger
from .enums import EntryType, OutputFormat, TriggeredBy
from .exceptions import (
    AggregationFailedError,
    NotFoundError,
    PassAlreadyRunningError,
    ValidationError,
)
from .file_writer import UnifiedFileWriter
from .health_monitor import HealthMonitor
from .host_store import HostStore
from .list_parser import FormatDetection, ListParser, detect_format
from .models import (
    AggregationProgress,
    AggregationResult,
    HealthReport,
    HostEntry,
    HostSourceLink,
    Source,
    SourceFetchLog,
    SourceHealth,
)
from .normalizer import DomainNormalizer
from .scheduler import Scheduler
from .source_fetcher import SourceFetcher
from .striped_lock import StripedLock


COMPONENT = "service"

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 500
MAX_NAME_LENGTH = 255
SCHEDULED_TASK = "aggregate"


def validate_source_url(url: str) -> bool:
    """True for absolute http(s) URLs with a host."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    return parsed.scheme in ("http", "https") and bool(parsed.hostname)


class AggregatorService:
    """Facade over the aggregation engine."""

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        logger: Optional[AuditLogger] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        store: Optional[HostStore] = None,
    ) -> None:
        """
        Build all components from configuration.

        Args:
            config: Application configuration (defaults apply when omitted)
            logger: Optional audit logger shared by every component
            transport: Optional httpx transport for the fetcher (tests)
            store: Optional pre-built host store
        """
        self._config = config or AppConfig()
        self._logger = logger
        persistence = self._config.persistence
        self._store = store or HostStore(
            file_path=persistence.state_file_path,
            hmac_secret=persistence.hmac_secret,
            log_retention=self._config.health.log_retention,
        )
        self._health = HealthMonitor(self._store, self._config.health, logger)
        self._fetcher = SourceFetcher(self._store, self._health, self._config.fetch, logger, transport)
        self._merger = DedupMerger(self._store, StripedLock(), logger)
        self._writer = UnifiedFileWriter(self._store, self._config.output, logger)
        self._runner = AggregationRunner(
            store=self._store,
            fetcher=self._fetcher,
            merger=self._merger,
            writer=self._writer,
            health=self._health,
            backoff=BackoffPolicy(self._config.schedule),
            parser=ListParser(),
            normalizer=DomainNormalizer(strip_www=self._config.normalizer.strip_www),
            logger=logger,
        )
        self._scheduler = Scheduler(logger=logger)
        self._scheduler_task: Optional[asyncio.Task] = None
        self._scheduler_stop: Optional[asyncio.Event] = None
        self._auto_task: Optional[asyncio.Task] = None
        self._auto_pending = False

    @property
    def config(self) -> AppConfig:
        return self._config

    @property
    def store(self) -> HostStore:
        return self._store

    @property
    def runner(self) -> AggregationRunner:
        return self._runner

    @property
    def writer(self) -> UnifiedFileWriter:
        return self._writer

    @property
    def scheduler(self) -> Scheduler:
        return self._scheduler

    @property
    def logger(self) -> Optional[AuditLogger]:
        return self._logger

    def load(self) -> bool:
        """Load persisted state. Returns False when there is nothing to load."""
        return self._store.load()

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------

    def list_sources(self) -> list[Source]:
        return self._store.list_sources()

    def get_source(self, source_id: str) -> Source:
        return self._store.require_source(source_id)

    async def create_source(
        self,
        name: str,
        url: str,
        enabled: bool = True,
        metadata: Optional[dict] = None,
    ) -> Source:
        """
        Register a source and queue an automatic pass.

        Raises:
            ValidationError: If the name or URL is invalid
            ConflictError: If the name is taken
        """
        name = self._validate_name(name)
        self._validate_url(url)
        source = self._store.add_source(name, url.strip(), enabled=enabled, metadata=metadata)
        await self._store.save_async()
        self._log_info("Source created", {"source_id": source.id, "name": source.name})
        self.request_auto_aggregation()
        return source

    async def update_source(
        self,
        source_id: str,
        name: Optional[str] = None,
        url: Optional[str] = None,
        enabled: Optional[bool] = None,
        metadata: Optional[dict] = None,
    ) -> Source:
        """
        Update a source. A new URL drops the cached body so the next fetch is
        unconditional.

        Raises:
            NotFoundError: If the source does not exist
            ValidationError: If the name or URL is invalid
            ConflictError: If the new name is taken
        """
        previous_url = self._store.require_source(source_id).url
        if name is not None:
            name = self._validate_name(name)
        if url is not None:
            self._validate_url(url)
            url = url.strip()
        source = self._store.update_source(
            source_id, name=name, url=url, enabled=enabled, metadata=metadata
        )
        if source.url != previous_url:
            self._store.clear_content(source_id)
        await self._store.save_async()
        self._log_info("Source updated", {"source_id": source_id})
        self.request_auto_aggregation()
        return source

    async def toggle_source(self, source_id: str) -> Source:
        source = self._store.require_source(source_id)
        return await self.update_source(source_id, enabled=not source.enabled)

    async def delete_source(self, source_id: str) -> Source:
        """
        Delete a source, purging its links and the hosts only it provided.

        A running pass is allowed to finish first so that it cannot link
        hosts to the source after the purge.

        Raises:
            NotFoundError: If the source does not exist
        """
        self._store.require_source(source_id)
        await self._runner.wait_idle()
        self._store.require_source(source_id)
        purged = self._merger.purge_source(source_id)
        source = self._store.delete_source(source_id)
        await self._store.save_async()
        self._log_info("Source deleted", {
            "source_id": source_id,
            "links_pruned": purged.links_pruned,
            "hosts_deleted": purged.hosts_deleted,
        })
        self.request_auto_aggregation()
        return source

    async def refresh_source(self, source_id: str) -> AggregationResult:
        self._store.require_source(source_id)
        return await self._runner.run(TriggeredBy.MANUAL, source_ids=[source_id])

    def source_logs(self, source_id: str, limit: Optional[int] = None) -> list[SourceFetchLog]:
        self._store.require_source(source_id)
        if limit is not None and limit < 1:
            raise ValidationError(code="invalid_limit", message="limit must be >= 1")
        return self._store.fetch_logs(source_id, limit)

    async def detect_source_format(self, source_id: str) -> FormatDetection:
        """
        Detect the list format of a source from its cached body, fetching it
        when nothing is cached.

        Raises:
            NotFoundError: If the source does not exist
            FetchError: If the body cannot be fetched
        """
        source = self._store.require_source(source_id)
        cached = self._store.get_content(source_id)
        if cached is not None:
            return detect_format(cached.content)

        outcome = await self._fetcher.fetch(source)
        if not outcome.status.is_success:
            raise AggregationFailedError(
                code="fetch_failed",
                message=f"Could not fetch source: {outcome.error_message}",
                details={"source_id": source_id, "status": outcome.status.value},
            )
        return detect_format(outcome.content or b"")

    # ------------------------------------------------------------------
    # Aggregation
    # ------------------------------------------------------------------

    async def aggregate(self, triggered_by: TriggeredBy = TriggeredBy.MANUAL) -> AggregationResult:
        return await self._runner.run(triggered_by)

    def status(self) -> AggregationProgress:
        return self._runner.progress

    def cancel(self) -> bool:
        return self._runner.cancel()

    def aggregation_stats(self) -> dict:
        latest = self._store.latest_result()
        return {
            "total_sources": len(self._store.list_sources()),
            "enabled_sources": len(self._store.list_sources(enabled=True)),
            "total_entries": latest.unique_entries if latest else 0,
            "last_aggregation": latest.timestamp if latest else None,
            "hosts": self._store.host_stats(),
        }

    def history(self, limit: Optional[int] = None) -> list[AggregationResult]:
        return self._store.list_results(limit)

    def latest(self) -> AggregationResult:
        result = self._store.latest_result()
        if result is None:
            raise NotFoundError(code="no_results", message="No aggregation results found")
        return result

    def result_file(self, result_id: Optional[str] = None) -> Path:
        """
        Path of the unified file written by a pass (the latest one with a
        file when ``result_id`` is omitted).

        Raises:
            NotFoundError: If the result or its file does not exist
        """
        if result_id is None:
            result = next((r for r in self._store.list_results() if r.file_path), None)
        else:
            result = self._store.get_result(result_id)
        if result is None or not result.file_path:
            raise NotFoundError(
                code="file_not_found",
                message="No unified hosts file for this aggregation",
                details={"result_id": result_id},
            )
        path = Path(result.file_path)
        if not path.is_file():
            raise NotFoundError(
                code="file_not_found",
                message="Unified hosts file is missing on disk",
                details={"result_id": result.id},
            )
        return path

    def request_auto_aggregation(self) -> bool:
        """
        Queue an automatic pass after a source change.

        Triggers arriving while a pass runs collapse into one follow-up pass.
        Requires a running event loop.

        Returns:
            True if a pass was queued
        """
        if not self._config.schedule.auto_aggregate_on_change:
            return False
        self._auto_pending = True
        if self._auto_task is None or self._auto_task.done():
            self._auto_task = asyncio.get_running_loop().create_task(self._drain_auto())
        return True

    async def _drain_auto(self) -> None:
        while self._auto_pending:
            await self._runner.wait_idle()
            self._auto_pending = False
            try:
                await self._runner.run(TriggeredBy.AUTO)
            except PassAlreadyRunningError:
                self._auto_pending = True
            except AggregationFailedError as e:
                if self._logger:
                    self._logger.log_error(COMPONENT, "Automatic aggregation failed", error=e)

    async def wait_for_auto(self) -> None:
        """Wait for queued automatic passes to finish."""
        if self._auto_task is not None:
            await self._auto_task

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def health_all(self) -> list[SourceHealth]:
        return self._health.all()

    def health_for(self, source_id: str) -> SourceHealth:
        self._store.require_source(source_id)
        return self._health.get(source_id)

    def health_report(self) -> HealthReport:
        return self._health.report()

    async def check_source(self, source_id: str) -> SourceHealth:
        source = self._store.require_source(source_id)
        health = await self._health.check(source, self._fetcher)
        await self._store.save_async()
        return health

    async def check_all(self) -> HealthReport:
        report = await self._health.check_all(self._fetcher)
        await self._store.save_async()
        return report

    # ------------------------------------------------------------------
    # Hosts
    # ------------------------------------------------------------------

    def list_hosts(
        self,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
        search: Optional[str] = None,
        enabled: Optional[bool] = None,
        entry_type: Optional[str] = None,
        source_id: Optional[str] = None,
    ) -> dict:
        """
        One page of hosts.

        Raises:
            ValidationError: On a bad page, limit or entry type
        """
        if page < 1:
            raise ValidationError(code="invalid_page", message="page must be >= 1")
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError(
                code="invalid_limit",
                message=f"limit must be between 1 and {MAX_PAGE_SIZE}",
            )
        parsed_type = None
        if entry_type is not None:
            try:
                parsed_type = EntryType(entry_type)
            except ValueError:
                raise ValidationError(
                    code="invalid_entry_type",
                    message=f"entryType must be one of: {', '.join(t.value for t in EntryType)}",
                ) from None

        hosts = self._store.query_hosts(
            search=search, enabled=enabled, entry_type=parsed_type, source_id=source_id
        )
        total = len(hosts)
        start = (page - 1) * limit
        return {
            "items": hosts[start:start + limit],
            "total": total,
            "page": page,
            "limit": limit,
            "pages": (total + limit - 1) // limit,
        }

    def get_host(self, host_id: str) -> tuple[HostEntry, list[HostSourceLink]]:
        host = self._store.require_host(host_id)
        return host, self._store.links_for_host(host_id)

    def host_stats(self) -> dict:
        return self._store.host_stats()

    async def set_host_enabled(self, host_id: str, enabled: bool) -> HostEntry:
        host = self._store.set_host_enabled(host_id, enabled)
        await self._store.save_async()
        return host

    async def bulk_set_enabled(self, host_ids: list[str], enabled: bool) -> dict:
        """Enable or disable many hosts; unknown ids are reported, not fatal."""
        updated, missing = 0, []
        for host_id in host_ids:
            if self._store.get_host(host_id) is None:
                missing.append(host_id)
                continue
            self._store.set_host_enabled(host_id, enabled)
            updated += 1
        await self._store.save_async()
        return {"updated": updated, "failed": len(missing), "not_found": missing}

    async def bulk_toggle(self, host_ids: list[str]) -> dict:
        """Flip the enabled flag of many hosts."""
        updated, missing = 0, []
        for host_id in host_ids:
            host = self._store.get_host(host_id)
            if host is None:
                missing.append(host_id)
                continue
            self._store.set_host_enabled(host_id, not host.enabled)
            updated += 1
        await self._store.save_async()
        return {"updated": updated, "failed": len(missing), "not_found": missing}

    async def set_mapping_enabled(self, host_id: str, source_id: str, enabled: bool) -> HostSourceLink:
        link = self._merger.set_mapping_enabled(host_id, source_id, enabled)
        await self._store.save_async()
        return link

    def render_unified(self, output_format: OutputFormat = OutputFormat.HOSTS) -> str:
        """Unified list for the current host set, without writing it."""
        return self._writer.render(output_format)

    async def cleanup_files(self) -> list[Path]:
        """Delete generated files beyond the configured retention."""
        await self._runner.wait_idle()
        deleted = await asyncio.to_thread(self._writer.prune, self._store.list_results())
        self._log_info("Generated files cleaned up", {"deleted": len(deleted)})
        return deleted

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def start_scheduler(self) -> bool:
        """
        Start cron-driven passes when a schedule is configured.

        Returns:
            True if the scheduler was started
        """
        cron = self._config.schedule.cron
        if not cron or self._scheduler_task is not None:
            return False
        if self._scheduler.get_task(SCHEDULED_TASK) is None:
            self._scheduler.schedule(SCHEDULED_TASK, cron, self._scheduled_pass)
        self._scheduler_stop = asyncio.Event()
        self._scheduler_task = asyncio.get_running_loop().create_task(
            self._scheduler.run(self._scheduler_stop)
        )
        return True

    async def _scheduled_pass(self) -> None:
        try:
            await self._runner.run(TriggeredBy.SCHEDULED)
        except PassAlreadyRunningError:
            self._log_info("Scheduled pass skipped, another pass is running", {})

    async def close(self) -> None:
        """Stop the scheduler, cancel queued automatic passes and save state."""
        if self._scheduler_task is not None:
            self._scheduler.stop()
            self._scheduler_stop.set()
            await self._scheduler_task
            self._scheduler_task = None
        if self._auto_task is not None and not self._auto_task.done():
            self._auto_pending = False
            self._auto_task.cancel()
            try:
                await self._auto_task
            except asyncio.CancelledError:
                pass
        await self._store.save_async()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_name(name: str) -> str:
        name = (name or "").strip()
        if not name:
            raise ValidationError(code="invalid_name", message="Name is required")
        if len(name) > MAX_NAME_LENGTH:
            raise ValidationError(
                code="invalid_name",
                message=f"Name must be between 1 and {MAX_NAME_LENGTH} characters",
            )
        return name

    @staticmethod
    def _validate_url(url: str) -> None:
        if not url or not validate_source_url(url.strip()):
            raise ValidationError(
                code="invalid_url",
                message="URL must be a valid http(s) URL",
                details={"url": url},
            )

    def _log_info(self, message: str, data: dict) -> None:
        if self._logger:
            self._logger.info(COMPONENT, message, data)
