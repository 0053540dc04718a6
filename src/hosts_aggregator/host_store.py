"""
Host Store module for persistent aggregator state.

Keeps sources, host entries, source attribution links, cached source bodies,
fetch logs, source health and aggregation results in indexed in-memory
tables. The whole state is persisted as one JSON snapshot protected by an
HMAC so that tampering is detected on load. Without a file path the store is
memory-only.
"""

import asyncio
import hashlib
import hmac
import json
import os
import uuid
from collections import defaultdict
from dataclasses import asdict
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional

from .enums import EntryType, FetchStatus, HealthStatus, PassStatus, TriggeredBy
from .exceptions import ConflictError, MergeConflictError, NotFoundError, PersistenceError, TamperingError
from .models import (
    AggregationResult,
    HostEntry,
    HostSourceLink,
    Source,
    SourceContent,
    SourceContribution,
    SourceFetchLog,
    SourceHealth,
)


def new_id() -> str:
    return uuid.uuid4().hex


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _dict_factory(pairs) -> dict:
    return {key: (value.value if isinstance(value, Enum) else value) for key, value in pairs}


def to_plain(obj) -> dict:
    """Convert a model dataclass to a JSON-ready dict (enums by value)."""
    return asdict(obj, dict_factory=_dict_factory)


class HostStore:
    """
    Indexed state tables with HMAC-protected persistence.

    Indexes maintained alongside the tables:
    - (normalized, entry_type) -> host id, at most one host per key
    - host id -> linked source ids
    - source id -> linked host ids
    """

    VERSION = 1

    def __init__(
        self,
        file_path: Optional[Path] = None,
        hmac_secret: str = "default-secret-change-me",
        log_retention: int = 100,
    ) -> None:
        """
        Initialize the host store.

        Args:
            file_path: Path to the state file (JSON), None for memory-only
            hmac_secret: Secret key for HMAC computation
            log_retention: Fetch logs kept per source
        """
        self._file_path = Path(file_path) if file_path is not None else None
        self._hmac_secret = hmac_secret.encode("utf-8")
        self._log_retention = log_retention
        self._reset()

    def _reset(self) -> None:
        self._sources: dict[str, Source] = {}
        self._hosts: dict[str, HostEntry] = {}
        self._host_index: dict[tuple[str, EntryType], str] = {}
        self._links: dict[tuple[str, str], HostSourceLink] = {}
        self._links_by_host: dict[str, set[str]] = defaultdict(set)
        self._links_by_source: dict[str, set[str]] = defaultdict(set)
        self._contents: dict[str, SourceContent] = {}
        self._fetch_logs: dict[str, list[SourceFetchLog]] = defaultdict(list)
        self._health: dict[str, SourceHealth] = {}
        self._results: list[AggregationResult] = []
        self._hosts_changed_at: Optional[str] = None
        self._last_updated: Optional[str] = None

    @property
    def file_path(self) -> Optional[Path]:
        return self._file_path

    @property
    def hosts_changed_at(self) -> Optional[str]:
        """Time the set of exported hosts last changed (create/delete/enable)."""
        return self._hosts_changed_at

    def mark_hosts_changed(self, timestamp: Optional[str] = None) -> None:
        self._hosts_changed_at = timestamp or utc_now()

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------

    def add_source(
        self,
        name: str,
        url: str,
        enabled: bool = True,
        metadata: Optional[dict] = None,
    ) -> Source:
        """
        Register a new source.

        Raises:
            ConflictError: If a source with the same name exists
        """
        if self.find_source_by_name(name) is not None:
            raise ConflictError(
                code="duplicate_source_name",
                message=f"Source with name '{name}' already exists",
                details={"name": name},
            )
        now = utc_now()
        source = Source(
            id=new_id(),
            name=name,
            url=url,
            enabled=enabled,
            metadata=metadata,
            created_at=now,
            updated_at=now,
        )
        self._sources[source.id] = source
        return source

    def get_source(self, source_id: str) -> Optional[Source]:
        return self._sources.get(source_id)

    def require_source(self, source_id: str) -> Source:
        source = self._sources.get(source_id)
        if source is None:
            raise NotFoundError(
                code="source_not_found",
                message="Source not found",
                details={"source_id": source_id},
            )
        return source

    def find_source_by_name(self, name: str) -> Optional[Source]:
        for source in self._sources.values():
            if source.name == name:
                return source
        return None

    def list_sources(self, enabled: Optional[bool] = None) -> list[Source]:
        """List sources ordered by creation time."""
        sources = sorted(self._sources.values(), key=lambda s: (s.created_at, s.id))
        if enabled is not None:
            sources = [s for s in sources if s.enabled == enabled]
        return sources

    def update_source(self, source_id: str, **fields) -> Source:
        """
        Update user-editable source fields (name, url, enabled, metadata).

        Raises:
            NotFoundError: If the source does not exist
            ConflictError: If the new name is taken by another source
        """
        source = self.require_source(source_id)
        name = fields.get("name")
        if name is not None and name != source.name:
            other = self.find_source_by_name(name)
            if other is not None and other.id != source_id:
                raise ConflictError(
                    code="duplicate_source_name",
                    message=f"Source with name '{name}' already exists",
                    details={"name": name},
                )
        for key in ("name", "url", "enabled", "metadata"):
            if key in fields and fields[key] is not None:
                setattr(source, key, fields[key])
        source.updated_at = utc_now()
        return source

    def record_source_fetch(
        self,
        source_id: str,
        status: FetchStatus,
        checked_at: str,
        entry_count: Optional[int] = None,
    ) -> None:
        """Write the derived fetch fields of a source after a pass."""
        source = self._sources.get(source_id)
        if source is None:
            return
        source.last_checked = checked_at
        source.last_fetch_status = status.value
        source.host_count = len(self._links_by_source.get(source_id, ()))
        if entry_count is not None:
            source.entry_count = entry_count

    def delete_source(self, source_id: str) -> Source:
        """
        Remove a source with its cached body, health and fetch logs.

        Links must have been purged by the merger beforehand.

        Raises:
            NotFoundError: If the source does not exist
            MergeConflictError: If the source still has links
        """
        source = self.require_source(source_id)
        if self._links_by_source.get(source_id):
            raise MergeConflictError(
                code="source_has_links",
                message="Source still has host links",
                details={"source_id": source_id},
            )
        del self._sources[source_id]
        self._links_by_source.pop(source_id, None)
        self._contents.pop(source_id, None)
        self._health.pop(source_id, None)
        self._fetch_logs.pop(source_id, None)
        return source

    # ------------------------------------------------------------------
    # Hosts
    # ------------------------------------------------------------------

    def get_host(self, host_id: str) -> Optional[HostEntry]:
        return self._hosts.get(host_id)

    def require_host(self, host_id: str) -> HostEntry:
        host = self._hosts.get(host_id)
        if host is None:
            raise NotFoundError(
                code="host_not_found",
                message="Host not found",
                details={"host_id": host_id},
            )
        return host

    def find_host(self, normalized: str, entry_type: EntryType) -> Optional[HostEntry]:
        host_id = self._host_index.get((normalized, entry_type))
        return self._hosts.get(host_id) if host_id else None

    def create_host(self, domain: str, normalized: str, entry_type: EntryType, now: str) -> HostEntry:
        """
        Create a host entry for a key that has none yet.

        Raises:
            MergeConflictError: If the key is already taken
        """
        key = (normalized, entry_type)
        if key in self._host_index:
            raise MergeConflictError(
                code="duplicate_host",
                message=f"Host {normalized} ({entry_type.value}) already exists",
                details={"normalized": normalized, "entry_type": entry_type.value},
            )
        host = HostEntry(
            id=new_id(),
            domain=domain,
            normalized=normalized,
            entry_type=entry_type,
            enabled=True,
            occurrence_count=0,
            first_seen=now,
            last_seen=now,
        )
        self._hosts[host.id] = host
        self._host_index[key] = host.id
        self.mark_hosts_changed(now)
        return host

    def delete_host(self, host_id: str) -> None:
        host = self._hosts.pop(host_id, None)
        if host is None:
            return
        self._host_index.pop(host.key, None)
        for source_id in self._links_by_host.pop(host_id, set()):
            self._links.pop((host_id, source_id), None)
            self._links_by_source[source_id].discard(host_id)
        self.mark_hosts_changed()

    def set_host_enabled(self, host_id: str, enabled: bool) -> HostEntry:
        host = self.require_host(host_id)
        if host.enabled != enabled:
            host.enabled = enabled
            self.mark_hosts_changed()
        return host

    def iter_hosts(self) -> Iterable[HostEntry]:
        return self._hosts.values()

    def host_count(self) -> int:
        return len(self._hosts)

    def query_hosts(
        self,
        search: Optional[str] = None,
        enabled: Optional[bool] = None,
        entry_type: Optional[EntryType] = None,
        source_id: Optional[str] = None,
    ) -> list[HostEntry]:
        """Filter hosts, ordered by normalized domain then entry type."""
        if source_id is not None:
            candidates = [self._hosts[h] for h in self._links_by_source.get(source_id, ()) if h in self._hosts]
        else:
            candidates = list(self._hosts.values())

        needle = search.strip().lower() if search else None
        result = []
        for host in candidates:
            if enabled is not None and host.enabled != enabled:
                continue
            if entry_type is not None and host.entry_type != entry_type:
                continue
            if needle and needle not in host.normalized and needle not in host.domain.lower():
                continue
            result.append(host)
        result.sort(key=lambda h: (h.normalized, h.entry_type.value))
        return result

    def host_stats(self) -> dict:
        total = len(self._hosts)
        enabled = sum(1 for h in self._hosts.values() if h.enabled)
        by_entry_type = {t.value: 0 for t in EntryType}
        for host in self._hosts.values():
            by_entry_type[host.entry_type.value] += 1
        by_source = [
            {
                "source_id": source.id,
                "source_name": source.name,
                "count": len(self._links_by_source.get(source.id, ())),
            }
            for source in self.list_sources()
        ]
        return {
            "total": total,
            "enabled": enabled,
            "disabled": total - enabled,
            "by_entry_type": by_entry_type,
            "by_source": by_source,
        }

    # ------------------------------------------------------------------
    # Links
    # ------------------------------------------------------------------

    def get_link(self, host_id: str, source_id: str) -> Optional[HostSourceLink]:
        return self._links.get((host_id, source_id))

    def upsert_link(self, link: HostSourceLink) -> bool:
        """
        Insert or replace the link for (host, source).

        Returns:
            True if the link is new
        """
        key = (link.host_id, link.source_id)
        created = key not in self._links
        self._links[key] = link
        self._links_by_host[link.host_id].add(link.source_id)
        self._links_by_source[link.source_id].add(link.host_id)
        return created

    def delete_link(self, host_id: str, source_id: str) -> bool:
        if self._links.pop((host_id, source_id), None) is None:
            return False
        self._links_by_host[host_id].discard(source_id)
        self._links_by_source[source_id].discard(host_id)
        return True

    def links_for_host(self, host_id: str) -> list[HostSourceLink]:
        return [
            self._links[(host_id, source_id)]
            for source_id in sorted(self._links_by_host.get(host_id, ()))
        ]

    def link_count(self, host_id: str) -> int:
        return len(self._links_by_host.get(host_id, ()))

    def host_ids_for_source(self, source_id: str) -> set[str]:
        return set(self._links_by_source.get(source_id, ()))

    # ------------------------------------------------------------------
    # Source bodies, fetch logs and health
    # ------------------------------------------------------------------

    def get_content(self, source_id: str) -> Optional[SourceContent]:
        return self._contents.get(source_id)

    def set_content(self, content: SourceContent) -> None:
        self._contents[content.source_id] = content

    def clear_content(self, source_id: str) -> None:
        self._contents.pop(source_id, None)

    def append_fetch_log(self, log: SourceFetchLog) -> None:
        logs = self._fetch_logs[log.source_id]
        logs.append(log)
        if len(logs) > self._log_retention:
            del logs[: len(logs) - self._log_retention]

    def fetch_logs(self, source_id: str, limit: Optional[int] = None) -> list[SourceFetchLog]:
        """Fetch logs of a source, newest first."""
        logs = list(reversed(self._fetch_logs.get(source_id, [])))
        return logs[:limit] if limit is not None else logs

    def get_health(self, source_id: str) -> Optional[SourceHealth]:
        return self._health.get(source_id)

    def set_health(self, health: SourceHealth) -> None:
        self._health[health.source_id] = health

    # ------------------------------------------------------------------
    # Aggregation results
    # ------------------------------------------------------------------

    def add_result(self, result: AggregationResult) -> None:
        self._results.append(result)

    def get_result(self, result_id: str) -> Optional[AggregationResult]:
        for result in self._results:
            if result.id == result_id:
                return result
        return None

    def list_results(self, limit: Optional[int] = None) -> list[AggregationResult]:
        """Results, newest first."""
        results = list(reversed(self._results))
        return results[:limit] if limit is not None else results

    def latest_result(self, status: Optional[PassStatus] = None) -> Optional[AggregationResult]:
        for result in reversed(self._results):
            if status is None or result.status == status:
                return result
        return None

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def snapshot(self) -> dict:
        """Serialize all tables (without HMAC)."""
        return {
            "version": self.VERSION,
            "hosts_changed_at": self._hosts_changed_at,
            "sources": [to_plain(s) for s in self._sources.values()],
            "hosts": [to_plain(h) for h in self._hosts.values()],
            "links": [to_plain(link) for link in self._links.values()],
            "contents": [to_plain(c) for c in self._contents.values()],
            "fetch_logs": [to_plain(log) for logs in self._fetch_logs.values() for log in logs],
            "health": [to_plain(h) for h in self._health.values()],
            "results": [to_plain(r) for r in self._results],
        }

    def save(self) -> None:
        """
        Save state to file with HMAC protection. No-op when memory-only.

        Raises:
            PersistenceError: If file cannot be written
        """
        if self._file_path is None:
            return
        self._write(self.snapshot())

    async def save_async(self) -> None:
        """Snapshot on the event loop, write the file in a worker thread."""
        if self._file_path is None:
            return
        data = self.snapshot()
        await asyncio.to_thread(self._write, data)

    def _write(self, data: dict) -> None:
        now = utc_now()
        data_for_hmac = {"data": data, "last_updated": now}
        output_data = {
            "data": data,
            "last_updated": now,
            "hmac": self.compute_hmac(data_for_hmac),
        }

        tmp_path = self._file_path.with_suffix(self._file_path.suffix + ".tmp")
        try:
            self._file_path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(output_data, f, sort_keys=True)
            os.replace(tmp_path, self._file_path)
        except OSError as e:
            raise PersistenceError(
                code="io_error",
                message=f"Failed to write state file: {e}",
                details={"file_path": str(self._file_path)},
            )
        self._last_updated = now

    def load(self) -> bool:
        """
        Load state from file and validate HMAC.

        Returns:
            True if state was loaded, False if there is no state file

        Raises:
            TamperingError: If HMAC validation fails
            PersistenceError: If file cannot be read or parsed
        """
        if self._file_path is None or not self._file_path.exists():
            return False

        try:
            with open(self._file_path, "r", encoding="utf-8") as f:
                raw_data = json.load(f)
        except json.JSONDecodeError as e:
            raise PersistenceError(
                code="parse_error",
                message=f"Failed to parse state file: {e}",
                details={"file_path": str(self._file_path)},
            )
        except OSError as e:
            raise PersistenceError(
                code="io_error",
                message=f"Failed to read state file: {e}",
                details={"file_path": str(self._file_path)},
            )

        stored_hmac = raw_data.get("hmac", "")
        computed_hmac = self.compute_hmac({
            "data": raw_data.get("data", {}),
            "last_updated": raw_data.get("last_updated"),
        })
        if not self.validate_hmac(stored_hmac, computed_hmac):
            raise TamperingError(
                code="hmac_mismatch",
                message="HMAC validation failed - data may have been tampered with",
                details={"file_path": str(self._file_path)},
            )

        try:
            self._restore(raw_data.get("data", {}))
        except (KeyError, TypeError, ValueError) as e:
            self._reset()
            raise PersistenceError(
                code="schema_error",
                message=f"State file has an unexpected layout: {e}",
                details={"file_path": str(self._file_path)},
            )
        self._last_updated = raw_data.get("last_updated")
        return True

    def _restore(self, data: dict) -> None:
        self._reset()
        self._hosts_changed_at = data.get("hosts_changed_at")

        for item in data.get("sources", []):
            source = Source(**item)
            self._sources[source.id] = source

        for item in data.get("hosts", []):
            host = HostEntry(**{**item, "entry_type": EntryType(item["entry_type"])})
            self._hosts[host.id] = host
            self._host_index[host.key] = host.id

        for item in data.get("links", []):
            self.upsert_link(HostSourceLink(**item))

        for item in data.get("contents", []):
            self.set_content(SourceContent(**item))

        for item in data.get("fetch_logs", []):
            self._fetch_logs[item["source_id"]].append(
                SourceFetchLog(**{**item, "status": FetchStatus(item["status"])})
            )

        for item in data.get("health", []):
            self.set_health(SourceHealth(**{**item, "status": HealthStatus(item["status"])}))

        for item in data.get("results", []):
            contributions = tuple(
                SourceContribution(**{**c, "fetch_status": FetchStatus(c["fetch_status"])})
                for c in item.get("sources", [])
            )
            self._results.append(AggregationResult(**{
                **item,
                "status": PassStatus(item["status"]),
                "triggered_by": TriggeredBy(item["triggered_by"]),
                "sources": contributions,
            }))

    def compute_hmac(self, data: dict) -> str:
        """
        Compute HMAC-SHA256 over serialized data.

        Args:
            data: Dictionary to compute HMAC over

        Returns:
            Hexadecimal HMAC string
        """
        serialized = json.dumps(data, sort_keys=True, separators=(",", ":"))
        return hmac.new(
            self._hmac_secret,
            serialized.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    def validate_hmac(self, stored_hmac: str, computed_hmac: str) -> bool:
        return hmac.compare_digest(stored_hmac, computed_hmac)
