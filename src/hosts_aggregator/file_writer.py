"""
Unified hosts file writer.

Serializes the enabled host set to UTF-8, LF-terminated hosts syntax:

    # Unified Hosts File
    # Generated: <time the exported host set last changed>
    # Sources: <enabled sources>
    # Total domains: <block lines>
    # Allow entries: <allow lines>

    0.0.0.0 ads.example.com
    ...

    # Allowed domains (not blocked)
    # @@ cdn.example.com

Lines are ordered by normalized domain. An enabled allow entry overrides a
block entry for the same domain. The header timestamp only moves when the
exported set moves, so writing an unchanged set twice yields identical bytes.

The same set can be rendered as an Adblock Plus list (``||domain^`` block
rules followed by ``@@||domain^`` exceptions). Generated files beyond the
newest ``retain_files`` passes are pruned after each write.
"""

import asyncio
import hashlib
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

from .audit_logger import AuditLogger
from .config import OutputConfig
from .enums import EntryType, OutputFormat
from .host_store import HostStore
from .models import AggregationResult


COMPONENT = "writer"

TITLE = "Unified Hosts File"

FILE_PREFIX = "unified-hosts-"
FILE_SUFFIX = ".txt"


@dataclass
class WrittenFile:
    """Location and fingerprint of a written hosts file."""

    path: Path
    size_bytes: int
    sha256: str
    block_entries: int
    allow_entries: int


class UnifiedFileWriter:
    """Renders and writes the unified hosts file."""

    def __init__(
        self,
        store: HostStore,
        config: Optional[OutputConfig] = None,
        logger: Optional[AuditLogger] = None,
    ) -> None:
        self._store = store
        self._config = config or OutputConfig()
        self._logger = logger

    @property
    def output_dir(self) -> Path:
        return Path(self._config.output_dir)

    def path_for(self, result_id: str) -> Path:
        return self.output_dir / f"{FILE_PREFIX}{result_id}{FILE_SUFFIX}"

    def exported_domains(self) -> tuple[list[str], list[str]]:
        """
        Domains for the block and allow sections, sorted.

        A host is exported when it is enabled and at least one of its source
        mappings is enabled.
        """
        blocked: set[str] = set()
        allowed: set[str] = set()
        for host in self._store.iter_hosts():
            if not host.enabled:
                continue
            if not any(link.mapping_enabled for link in self._store.links_for_host(host.id)):
                continue
            if host.entry_type == EntryType.BLOCK:
                blocked.add(host.normalized)
            elif host.entry_type == EntryType.ALLOW:
                allowed.add(host.normalized)
        return sorted(blocked - allowed), sorted(allowed)

    def render(self, output_format: OutputFormat = OutputFormat.HOSTS) -> str:
        blocked, allowed = self.exported_domains()
        if output_format == OutputFormat.ABP:
            return self._render_abp(blocked, allowed)
        return self._render(blocked, allowed)

    def _render_abp(self, blocked: list[str], allowed: list[str]) -> str:
        lines = [
            f"! {TITLE} - ABP Format",
            f"! Generated: {self._store.hosts_changed_at or 'never'}",
            f"! Sources: {len(self._store.list_sources(enabled=True))}",
            f"! Total domains: {len(blocked)}",
            f"! Allow entries: {len(allowed)}",
            "!",
        ]
        lines.extend(f"||{domain}^" for domain in blocked)
        lines.extend(f"@@||{domain}^" for domain in allowed)
        return "\n".join(lines) + "\n"

    def _render(self, blocked: list[str], allowed: list[str]) -> str:
        source_count = len(self._store.list_sources(enabled=True))
        generated = self._store.hosts_changed_at or "never"

        lines = [
            f"# {TITLE}",
            f"# Generated: {generated}",
            f"# Sources: {source_count}",
            f"# Total domains: {len(blocked)}",
            f"# Allow entries: {len(allowed)}",
            "",
        ]
        lines.extend(f"{self._config.blocking_ip} {domain}" for domain in blocked)

        if self._config.include_allow_section and allowed:
            lines.append("")
            lines.append("# Allowed domains (not blocked)")
            lines.extend(f"# @@ {domain}" for domain in allowed)

        return "\n".join(lines) + "\n"

    async def write(self, result_id: str) -> WrittenFile:
        """
        Render the current host set to ``unified-hosts-<result_id>.txt``.

        Raises:
            OSError: If the output directory or file cannot be written
        """
        blocked, allowed = self.exported_domains()
        data = self._render(blocked, allowed).encode("utf-8")
        path = self.path_for(result_id)
        await asyncio.to_thread(self._write_bytes, path, data)

        written = WrittenFile(
            path=path,
            size_bytes=len(data),
            sha256=hashlib.sha256(data).hexdigest(),
            block_entries=len(blocked),
            allow_entries=len(allowed),
        )
        if self._logger:
            self._logger.info(COMPONENT, "Wrote unified hosts file", {
                "path": str(path),
                "size_bytes": written.size_bytes,
                "block_entries": written.block_entries,
                "allow_entries": written.allow_entries,
            })
        return written

    def prune(self, results: Iterable[AggregationResult]) -> list[Path]:
        """
        Delete generated files not belonging to the newest passes.

        Args:
            results: Aggregation results, newest first

        Returns:
            Paths of the deleted files
        """
        retain = self._config.retain_files
        if retain < 1 or not self.output_dir.is_dir():
            return []
        keep = [r.id for r in results if r.file_path][:retain]
        keep_names = {self.path_for(result_id).name for result_id in keep}

        deleted = []
        for path in sorted(self.output_dir.glob(f"{FILE_PREFIX}*{FILE_SUFFIX}")):
            if path.name in keep_names:
                continue
            try:
                path.unlink()
            except OSError as e:
                if self._logger:
                    self._logger.log_error(COMPONENT, "Failed to delete old hosts file", error=e,
                                           additional_data={"path": str(path)})
                continue
            deleted.append(path)

        if deleted and self._logger:
            self._logger.info(COMPONENT, "Pruned old hosts files", {
                "deleted": len(deleted),
                "retained": len(keep_names),
            })
        return deleted

    @staticmethod
    def _write_bytes(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        tmp_path.write_bytes(data)
        tmp_path.replace(path)
