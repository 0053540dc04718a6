"""
Health Monitor for source reachability.

Tracks one state machine per source:

    unknown --success--> healthy
    healthy --failures >= threshold--> unhealthy
    unhealthy --success--> healthy

Below the threshold a failing source keeps its previous status; only the
failure counter moves. A source that has never succeeded therefore stays
unknown until its failures reach the threshold. NOT_MODIFIED counts as a
success. Content changes are detected by comparing the SHA-256 of the body
with the previous successful fetch.
"""

from __future__ import annotations

import asyncio
import hashlib
from typing import TYPE_CHECKING, Optional

from .audit_logger import AuditLogger
from .config import HealthConfig
from .enums import FetchStatus, HealthStatus
from .host_store import HostStore, utc_now
from .models import FetchOutcome, HealthReport, Source, SourceHealth

if TYPE_CHECKING:
    from .source_fetcher import SourceFetcher


COMPONENT = "health"


def content_hash(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


class HealthMonitor:
    """Per-source health bookkeeping on top of the host store."""

    def __init__(
        self,
        store: HostStore,
        config: Optional[HealthConfig] = None,
        logger: Optional[AuditLogger] = None,
    ) -> None:
        self._store = store
        self._config = config or HealthConfig()
        self._logger = logger

    @property
    def failure_threshold(self) -> int:
        return self._config.failure_threshold

    def record(self, outcome: FetchOutcome, checked_at: Optional[str] = None) -> SourceHealth:
        """
        Apply one fetch outcome to the source's health.

        Args:
            outcome: Settled fetch outcome (SKIPPED outcomes are not recorded)
            checked_at: Time of the fetch, defaults to now

        Returns:
            The updated SourceHealth
        """
        checked_at = checked_at or utc_now()
        previous = self.get(outcome.source_id)
        health = SourceHealth(
            source_id=outcome.source_id,
            status=previous.status,
            last_checked=checked_at,
            response_time=outcome.response_time_ms,
            consecutive_failures=previous.consecutive_failures,
            last_content_hash=previous.last_content_hash,
            last_failure_at=previous.last_failure_at,
        )

        if outcome.status == FetchStatus.SUCCESS:
            digest = outcome.content_hash or content_hash(outcome.content or b"")
            health.content_changed = digest != previous.last_content_hash
            health.last_content_hash = digest
            health.consecutive_failures = 0
            health.status = HealthStatus.HEALTHY
        elif outcome.status == FetchStatus.NOT_MODIFIED:
            health.content_changed = False
            health.consecutive_failures = 0
            health.status = HealthStatus.HEALTHY
        else:
            health.content_changed = False
            health.error_message = outcome.error_message
            health.consecutive_failures = previous.consecutive_failures + 1
            health.last_failure_at = checked_at
            if health.consecutive_failures >= self._config.failure_threshold:
                health.status = HealthStatus.UNHEALTHY

        if previous.status != health.status and self._logger:
            self._logger.warn(
                COMPONENT,
                f"Source health changed: {previous.status.value} -> {health.status.value}",
                {
                    "source_id": outcome.source_id,
                    "consecutive_failures": health.consecutive_failures,
                },
            )

        self._store.set_health(health)
        return health

    def get(self, source_id: str) -> SourceHealth:
        """Health of one source; UNKNOWN when never checked."""
        return self._store.get_health(source_id) or SourceHealth(source_id=source_id)

    def all(self) -> list[SourceHealth]:
        return [self.get(source.id) for source in self._store.list_sources()]

    def report(self) -> HealthReport:
        sources = self.all()
        return HealthReport(
            total_sources=len(sources),
            healthy_sources=sum(1 for h in sources if h.status == HealthStatus.HEALTHY),
            unhealthy_sources=sum(1 for h in sources if h.status == HealthStatus.UNHEALTHY),
            unknown_sources=sum(1 for h in sources if h.status == HealthStatus.UNKNOWN),
            sources=sources,
        )

    async def check(self, source: Source, fetcher: SourceFetcher) -> SourceHealth:
        """
        Manually probe a source.

        The fetch is recorded (health and fetch log) but the cached body is
        left alone, so the next pass still merges against the last merged body.
        """
        await fetcher.fetch(source)
        return self.get(source.id)

    async def check_all(self, fetcher: SourceFetcher) -> HealthReport:
        """Probe every source (enabled or not) concurrently."""
        sources = self._store.list_sources()
        semaphore = asyncio.Semaphore(fetcher.max_concurrency)

        async def probe(source: Source) -> None:
            async with semaphore:
                await fetcher.fetch(source, client=client)

        async with fetcher.client() as client:
            await asyncio.gather(*(probe(source) for source in sources))
        return self.report()
