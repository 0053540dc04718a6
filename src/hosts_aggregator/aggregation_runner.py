"""
Aggregation Runner for the hosts aggregator.

This module coordinates one aggregation pass across all enabled sources:
- snapshots the enabled sources (or an explicit subset)
- fetches them concurrently, bounded by a semaphore
- parses, normalizes and merges each source as soon as it settles
- prunes stale attribution once every source has settled
- writes the unified hosts file and appends one AggregationResult
- deletes generated files of passes beyond the retention limit

Only one pass runs at a time; a concurrent trigger raises
PassAlreadyRunningError instead of waiting.
"""

import asyncio
import time
from dataclasses import dataclass, replace
from typing import Iterable, Iterator, Optional

from .audit_logger import AuditLogger
from .backoff import BackoffPolicy
from .dedup_merger import DedupMerger, MergeSession, count_by_type
from .enums import EntryType, FetchStatus, PassStatus, TriggeredBy
from .exceptions import AggregationFailedError, PassAlreadyRunningError, PersistenceError
from .file_writer import UnifiedFileWriter
from .health_monitor import HealthMonitor
from .host_store import HostStore, new_id, utc_now
from .list_parser import ListParser, ParseRun
from .models import (
    AggregationProgress,
    AggregationResult,
    FetchOutcome,
    NormalizedEntry,
    Source,
    SourceContent,
    SourceContribution,
)
from .normalizer import DomainNormalizer
from .source_fetcher import SourceFetcher


COMPONENT = "runner"


@dataclass
class _RejectCounter:
    rejected: int = 0


class AggregationRunner:
    """
    Orchestrates aggregation passes.

    Owns the pass lock and the observable progress object. Components are
    injected so that tests can run a pass against an httpx.MockTransport.
    """

    def __init__(
        self,
        store: HostStore,
        fetcher: SourceFetcher,
        merger: DedupMerger,
        writer: UnifiedFileWriter,
        health: HealthMonitor,
        backoff: BackoffPolicy,
        parser: Optional[ListParser] = None,
        normalizer: Optional[DomainNormalizer] = None,
        logger: Optional[AuditLogger] = None,
    ) -> None:
        self._store = store
        self._fetcher = fetcher
        self._merger = merger
        self._writer = writer
        self._health = health
        self._backoff = backoff
        self._parser = parser or ListParser()
        self._normalizer = normalizer or DomainNormalizer()
        self._logger = logger
        self._lock = asyncio.Lock()
        self._progress = AggregationProgress()

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    @property
    def progress(self) -> AggregationProgress:
        """Snapshot of the current (or last) pass progress."""
        return replace(self._progress)

    async def wait_idle(self) -> None:
        """Wait until no pass is running."""
        async with self._lock:
            pass

    def cancel(self) -> bool:
        """
        Request cancellation of the running pass.

        No new fetches are dispatched; fetches in flight finish and are
        merged. The pass ends with status ``error``.

        Returns:
            True if a running pass was asked to stop
        """
        if not self.is_running:
            return False
        self._progress.cancel_requested = True
        self._log_info("Cancellation requested", {"result_id": self._progress.result_id})
        return True

    async def run(
        self,
        triggered_by: TriggeredBy = TriggeredBy.MANUAL,
        source_ids: Optional[Iterable[str]] = None,
    ) -> AggregationResult:
        """
        Run one aggregation pass.

        Args:
            triggered_by: What started the pass
            source_ids: Restrict the pass to these sources (enabled or not)

        Returns:
            The appended AggregationResult

        Raises:
            PassAlreadyRunningError: If another pass is in flight
            AggregationFailedError: If sources were fetched but none succeeded
        """
        if self._lock.locked():
            raise PassAlreadyRunningError(
                code="pass_already_running",
                message="An aggregation pass is already running",
                details={"result_id": self._progress.result_id},
            )
        async with self._lock:
            try:
                return await self._run_pass(triggered_by, source_ids)
            except Exception as e:
                if self._progress.status == PassStatus.RUNNING:
                    self._finish_progress(PassStatus.ERROR, str(e))
                raise

    def _finish_progress(self, status: PassStatus, message: Optional[str]) -> None:
        self._progress.status = status
        self._progress.current_source = None
        self._progress.finished_at = utc_now()
        self._progress.message = message

    async def _run_pass(
        self,
        triggered_by: TriggeredBy,
        source_ids: Optional[Iterable[str]],
    ) -> AggregationResult:
        start_time = time.perf_counter()
        now = utc_now()
        result_id = new_id()

        if source_ids is None:
            sources = self._store.list_sources(enabled=True)
        else:
            sources = [self._store.require_source(source_id) for source_id in source_ids]

        self._progress = AggregationProgress(
            status=PassStatus.RUNNING,
            total_sources=len(sources),
            started_at=now,
            result_id=result_id,
            triggered_by=triggered_by,
        )
        self._log_info("Aggregation pass started", {
            "result_id": result_id,
            "triggered_by": triggered_by.value,
            "sources": len(sources),
        })

        session = self._merger.begin_pass(now)
        semaphore = asyncio.Semaphore(self._fetcher.max_concurrency)

        async with self._fetcher.client() as client:
            settled = await asyncio.gather(
                *(self._process_source(source, session, semaphore, client, triggered_by, now)
                  for source in sources),
                return_exceptions=True,
            )

        contributions = []
        for source, item in zip(sources, settled):
            if isinstance(item, BaseException):
                if not isinstance(item, Exception):
                    raise item
                if self._logger:
                    self._logger.log_error(COMPONENT, "Source processing failed", error=item,
                                           additional_data={"source_id": source.id})
                item = SourceContribution(
                    source_id=source.id,
                    source_name=source.name,
                    fetch_status=FetchStatus.ERROR,
                    error_message=f"Processing failed: {item}",
                )
            contributions.append(item)

        self._merger.finalize(session)
        return await self._complete(result_id, now, start_time, triggered_by, session, contributions)

    async def _process_source(
        self,
        source: Source,
        session: MergeSession,
        semaphore: asyncio.Semaphore,
        client,
        triggered_by: TriggeredBy,
        now: str,
    ) -> SourceContribution:
        async with semaphore:
            if self._progress.cancel_requested:
                self._progress.processed_sources += 1
                return SourceContribution(
                    source_id=source.id,
                    source_name=source.name,
                    fetch_status=FetchStatus.SKIPPED,
                    error_message="cancelled",
                )
            if triggered_by == TriggeredBy.SCHEDULED:
                decision = self._backoff.evaluate(self._health.get(source.id))
                if decision.skip:
                    self._progress.processed_sources += 1
                    self._log_info("Source skipped by backoff", {
                        "source_id": source.id,
                        "retry_after_seconds": round(decision.retry_after_seconds),
                    })
                    return SourceContribution(
                        source_id=source.id,
                        source_name=source.name,
                        fetch_status=FetchStatus.SKIPPED,
                        error_message=decision.reason,
                    )

            self._progress.current_source = source.name
            outcome = await self._fetcher.fetch(source, client=client)

        try:
            return await self._merge_outcome(source, outcome, session, now)
        finally:
            self._progress.processed_sources += 1

    async def _merge_outcome(
        self,
        source: Source,
        outcome: FetchOutcome,
        session: MergeSession,
        now: str,
    ) -> SourceContribution:
        if not outcome.status.is_success:
            self._store.record_source_fetch(source.id, outcome.status, now)
            return SourceContribution(
                source_id=source.id,
                source_name=source.name,
                fetch_status=outcome.status,
                fetch_duration_ms=outcome.response_time_ms,
                error_message=outcome.error_message,
            )

        run = self._parser.parse(outcome.content or b"")
        counter = _RejectCounter()
        entries = self._normalize(run, counter)

        if outcome.status == FetchStatus.SUCCESS:
            stats = await self._merger.merge_source(session, source.id, entries, now)
            self._store.set_content(SourceContent(
                source_id=source.id,
                content=ListParser.decode(outcome.content or b""),
                content_hash=outcome.content_hash or "",
                fetched_at=now,
                etag=outcome.etag,
                last_modified=outcome.last_modified,
                line_count=run.stats.lines,
                entry_count=stats.entries_contributed,
            ))
        else:
            stats = await self._merger.observe_source(session, source.id, entries, now)

        self._store.record_source_fetch(source.id, outcome.status, now, stats.entries_contributed)

        if run.stats.malformed and self._logger:
            self._logger.warn(COMPONENT, "Skipped malformed lines", {
                "source_id": source.id,
                "malformed_lines": run.stats.malformed,
                "first_errors": [e.details for e in run.stats.errors[:3]],
            })

        return SourceContribution(
            source_id=source.id,
            source_name=source.name,
            fetch_status=outcome.status,
            entries_contributed=stats.entries_contributed,
            unique_domains_contributed=stats.unique_domains_contributed,
            fetch_duration_ms=outcome.response_time_ms,
            malformed_lines=run.stats.malformed,
            rejected_tokens=counter.rejected,
        )

    def _normalize(self, run: ParseRun, counter: _RejectCounter) -> Iterator[NormalizedEntry]:
        for raw in run:
            result = self._normalizer.validate(raw.token)
            if not result.valid:
                counter.rejected += 1
                continue
            display = raw.token.strip().lower()
            if display.isascii():
                display = result.normalized
            yield NormalizedEntry(
                normalized=result.normalized,
                domain=display,
                entry_type=raw.entry_type,
                line_number=raw.line_number,
                raw_line=raw.raw_line,
                comment=raw.comment,
            )

    async def _complete(
        self,
        result_id: str,
        now: str,
        start_time: float,
        triggered_by: TriggeredBy,
        session: MergeSession,
        contributions: list[SourceContribution],
    ) -> AggregationResult:
        successful = sum(1 for c in contributions if c.fetch_status.is_success)
        failed = sum(
            1 for c in contributions if c.fetch_status in (FetchStatus.ERROR, FetchStatus.TIMEOUT)
        )
        total_entries = sum(c.entries_contributed for c in contributions)
        unique_entries = session.unique_entries
        by_type = count_by_type(self._store, session.touched)

        all_failed = successful == 0 and failed > 0
        status = PassStatus.COMPLETED
        message = None
        if self._progress.cancel_requested:
            status, message = PassStatus.ERROR, "cancelled"
        elif all_failed:
            status, message = PassStatus.ERROR, "No source could be fetched"

        written = None
        if not all_failed:
            try:
                written = await self._writer.write(result_id)
            except OSError as e:
                status, message = PassStatus.ERROR, f"Failed to write unified hosts file: {e}"
                if self._logger:
                    self._logger.log_error(COMPONENT, "Unified file write failed", error=e)

        result = AggregationResult(
            id=result_id,
            timestamp=now,
            status=status,
            triggered_by=triggered_by,
            total_sources=len(contributions),
            successful_sources=successful,
            failed_sources=failed,
            total_entries=total_entries,
            unique_entries=unique_entries,
            duplicates_removed=total_entries - unique_entries,
            new_entries=session.new_hosts,
            allow_entries=by_type[EntryType.ALLOW],
            block_entries=by_type[EntryType.BLOCK],
            processing_time_ms=(time.perf_counter() - start_time) * 1000,
            sources=tuple(contributions),
            message=message,
            file_path=str(written.path) if written else None,
            file_size_bytes=written.size_bytes if written else None,
            file_hash=written.sha256 if written else None,
        )
        self._store.add_result(result)
        if written:
            await asyncio.to_thread(self._writer.prune, self._store.list_results())
        try:
            await self._store.save_async()
        except PersistenceError as e:
            status, message = PassStatus.ERROR, e.message
            if self._logger:
                self._logger.log_error(COMPONENT, "State save failed", error=e,
                                       additional_data={"result_id": result_id})
            raise
        finally:
            self._finish_progress(status, message)

        self._log_info("Aggregation pass finished", {
            "result_id": result_id,
            "status": status.value,
            "successful_sources": successful,
            "failed_sources": failed,
            "total_entries": total_entries,
            "unique_entries": unique_entries,
            "new_entries": session.new_hosts,
        })

        if all_failed:
            raise AggregationFailedError(
                code="aggregation_failed",
                message="Aggregation failed: no source could be fetched",
                details={"result_id": result_id, "failed_sources": failed},
            )
        return result

    def _log_info(self, message: str, data: dict) -> None:
        if self._logger:
            self._logger.info(COMPONENT, message, data)
