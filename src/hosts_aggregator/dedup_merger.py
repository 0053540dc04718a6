"""
Dedup Merger: the only writer of host entries and their source links.

Each pass opens a MergeSession. Sources are merged as they settle; every
normalized entry is reconciled against the host keyed by
``(normalized, entry_type)`` under a striped lock on the normalized domain.
Once all sources are in, ``finalize`` prunes links that successfully merged
sources no longer emit and deletes hosts left without any link.
"""

from dataclasses import dataclass, field
from typing import Iterable, Optional

from .audit_logger import AuditLogger
from .enums import EntryType
from .exceptions import MergeConflictError, NotFoundError
from .host_store import HostStore, utc_now
from .models import HostEntry, HostSourceLink, NormalizedEntry
from .striped_lock import StripedLock


COMPONENT = "merger"


@dataclass
class SourceMergeStats:
    """What one source contributed to a pass."""

    source_id: str
    entries_contributed: int = 0
    unique_domains_contributed: int = 0
    new_hosts: int = 0
    conflicts: int = 0


@dataclass
class MergeSession:
    """Bookkeeping of one aggregation pass."""

    started_at: str
    touched: set[str] = field(default_factory=set)  # host ids seen this pass
    emitted: dict[str, set[str]] = field(default_factory=dict)  # merged source -> host ids
    new_hosts: int = 0

    @property
    def unique_entries(self) -> int:
        return len(self.touched)


@dataclass
class FinalizeStats:
    links_pruned: int = 0
    hosts_deleted: int = 0


class DedupMerger:
    """Reconciles normalized entries with the persisted host set."""

    def __init__(
        self,
        store: HostStore,
        lock: Optional[StripedLock] = None,
        logger: Optional[AuditLogger] = None,
    ) -> None:
        self._store = store
        self._lock = lock or StripedLock()
        self._logger = logger

    def begin_pass(self, now: Optional[str] = None) -> MergeSession:
        return MergeSession(started_at=now or utc_now())

    async def merge_source(
        self,
        session: MergeSession,
        source_id: str,
        entries: Iterable[NormalizedEntry],
        now: Optional[str] = None,
    ) -> SourceMergeStats:
        """
        Merge a freshly fetched source.

        Repeated keys inside one source count towards ``entries_contributed``
        but only the first occurrence shapes the link.
        """
        now = now or utc_now()
        stats = SourceMergeStats(source_id=source_id)
        emitted: set[str] = set()

        for entry in entries:
            stats.entries_contributed += 1
            host = self._store.find_host(entry.normalized, entry.entry_type)
            if host is not None and host.id in emitted:
                continue
            try:
                host, created = await self._upsert(entry, source_id, now)
            except MergeConflictError as e:
                stats.conflicts += 1
                if self._logger:
                    self._logger.log_error(COMPONENT, "Host update rejected", error=e,
                                           additional_data={"source_id": source_id})
                continue
            if created:
                stats.new_hosts += 1
                session.new_hosts += 1
            emitted.add(host.id)
            session.touched.add(host.id)

        stats.unique_domains_contributed = len(emitted)
        session.emitted[source_id] = emitted
        return stats

    async def observe_source(
        self,
        session: MergeSession,
        source_id: str,
        entries: Iterable[NormalizedEntry],
        now: Optional[str] = None,
    ) -> SourceMergeStats:
        """
        Account for an unchanged (NOT_MODIFIED) source without mutating it.

        Hosts it still links to are counted as touched. An entry whose host
        or link has gone missing is merged again so the store catches up.
        The source is not pruned in ``finalize``.
        """
        now = now or utc_now()
        stats = SourceMergeStats(source_id=source_id)
        seen: set[str] = set()

        for entry in entries:
            stats.entries_contributed += 1
            host = self._store.find_host(entry.normalized, entry.entry_type)
            if host is not None and host.id in seen:
                continue
            if host is None or self._store.get_link(host.id, source_id) is None:
                try:
                    host, created = await self._upsert(entry, source_id, now)
                except MergeConflictError as e:
                    stats.conflicts += 1
                    if self._logger:
                        self._logger.log_error(COMPONENT, "Host update rejected", error=e,
                                               additional_data={"source_id": source_id})
                    continue
                if created:
                    stats.new_hosts += 1
                    session.new_hosts += 1
            seen.add(host.id)
            session.touched.add(host.id)

        stats.unique_domains_contributed = len(seen)
        return stats

    async def _upsert(
        self, entry: NormalizedEntry, source_id: str, now: str
    ) -> tuple[HostEntry, bool]:
        async with self._lock.acquire(entry.normalized):
            created = False
            host = self._store.find_host(entry.normalized, entry.entry_type)
            if host is None:
                host = self._store.create_host(entry.domain, entry.normalized, entry.entry_type, now)
                created = True

            previous = self._store.get_link(host.id, source_id)
            self._store.upsert_link(HostSourceLink(
                host_id=host.id,
                source_id=source_id,
                line_number=entry.line_number,
                raw_line=entry.raw_line,
                comment=entry.comment,
                mapping_enabled=previous.mapping_enabled if previous else True,
                first_seen=previous.first_seen if previous else now,
                last_seen=now,
            ))
            host.last_seen = now
            host.occurrence_count = self._store.link_count(host.id)
            return host, created

    def finalize(self, session: MergeSession) -> FinalizeStats:
        """
        Prune stale links of merged sources and drop orphaned hosts.

        Only sources passed to ``merge_source`` in this session are pruned;
        failed, skipped and unchanged sources keep their links.
        """
        stats = FinalizeStats()
        affected: set[str] = set()
        for source_id, emitted in session.emitted.items():
            for host_id in self._store.host_ids_for_source(source_id) - emitted:
                if self._store.delete_link(host_id, source_id):
                    stats.links_pruned += 1
                    affected.add(host_id)

        stats.hosts_deleted = self._settle_hosts(affected)

        if self._logger and (stats.links_pruned or stats.hosts_deleted):
            self._logger.info(COMPONENT, "Pruned stale attribution", {
                "links_pruned": stats.links_pruned,
                "hosts_deleted": stats.hosts_deleted,
            })
        return stats

    def purge_source(self, source_id: str) -> FinalizeStats:
        """Remove every link of a source, e.g. before deleting it."""
        stats = FinalizeStats()
        affected = self._store.host_ids_for_source(source_id)
        for host_id in affected:
            if self._store.delete_link(host_id, source_id):
                stats.links_pruned += 1
        stats.hosts_deleted = self._settle_hosts(affected)
        return stats

    def _settle_hosts(self, host_ids: Iterable[str]) -> int:
        deleted = 0
        for host_id in host_ids:
            host = self._store.get_host(host_id)
            if host is None:
                continue
            count = self._store.link_count(host_id)
            if count == 0:
                self._store.delete_host(host_id)
                deleted += 1
            else:
                host.occurrence_count = count
        return deleted

    def set_mapping_enabled(self, host_id: str, source_id: str, enabled: bool) -> HostSourceLink:
        """
        Toggle one (host, source) mapping.

        Raises:
            NotFoundError: If the host or the mapping does not exist
        """
        self._store.require_host(host_id)
        link = self._store.get_link(host_id, source_id)
        if link is None:
            raise NotFoundError(
                code="mapping_not_found",
                message="Host is not linked to this source",
                details={"host_id": host_id, "source_id": source_id},
            )
        if link.mapping_enabled != enabled:
            link.mapping_enabled = enabled
            self._store.mark_hosts_changed()
        return link


def count_by_type(store: HostStore, host_ids: Iterable[str]) -> dict[EntryType, int]:
    """Count hosts per entry type among ``host_ids``."""
    counts = {entry_type: 0 for entry_type in EntryType}
    for host_id in host_ids:
        host = store.get_host(host_id)
        if host is not None:
            counts[host.entry_type] += 1
    return counts
