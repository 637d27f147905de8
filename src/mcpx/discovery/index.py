"""
MCPX Tool Index

Materializes a searchable set of ToolDescriptors from a directory tree of
metadata files. The index is read-mostly: every load builds a complete new
snapshot and swaps it in under a single reference, so readers never observe
a partially updated index.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable, Sequence
from pathlib import Path
from types import MappingProxyType

from mcpx.core.models import DiscoveryResult, IndexDiff, ToolDescriptor
from mcpx.discovery import scorer
from mcpx.discovery.schema import parse_document
from mcpx.exceptions import ConfigError, McpxIOError, NotFound
from mcpx.logging import get_logger

logger = get_logger("mcpx.discovery")

MAX_METADATA_BYTES = 256 * 1024


class _Snapshot:
    """Immutable view of the index contents."""

    __slots__ = ("by_key", "ordered", "files_scanned", "version")

    def __init__(
        self,
        descriptors: dict[tuple[str, str], ToolDescriptor],
        files_scanned: int,
        version: int,
    ):
        self.by_key = MappingProxyType(dict(descriptors))
        self.ordered = tuple(descriptors[k] for k in sorted(descriptors))
        self.files_scanned = files_scanned
        self.version = version


class ToolIndex:
    """Searchable set of tool descriptors keyed by ``(server, name)``."""

    def __init__(self, max_file_bytes: int = MAX_METADATA_BYTES):
        self._max_file_bytes = max_file_bytes
        self._snapshot = _Snapshot({}, 0, 0)

    def load(self, root: str | Path, replace: bool = False) -> IndexDiff:
        """Walk ``root`` and insert or replace descriptors by ``(server, name)``.

        With ``replace=True`` the previous contents are dropped. Returns the
        diff between the previous and the new snapshot.

        Raises:
            ConfigError: a file is syntactically invalid or too large.
        """
        root = Path(root)
        if not root.is_dir():
            raise ConfigError("tools directory does not exist", path=str(root))

        previous = self._snapshot
        merged: dict[tuple[str, str], ToolDescriptor] = {} if replace else dict(previous.by_key)
        loaded_this_pass: set[tuple[str, str]] = set()

        files = sorted(p for p in root.rglob("*.json") if p.is_file())
        for path in files:
            for descriptor in self._read_file(root, path):
                key = descriptor.key
                existing = merged.get(key)
                if existing is not None and existing.content_hash != descriptor.content_hash:
                    origin = "this load" if key in loaded_this_pass else "a previous load"
                    logger.warning(
                        f"Conflicting descriptor for {descriptor.fqn}; "
                        f"{path} replaces the one from {origin}",
                        extra={"server": descriptor.server, "tool": descriptor.name},
                    )
                merged[key] = descriptor
                loaded_this_pass.add(key)

        self._snapshot = _Snapshot(merged, len(files), previous.version + 1)
        logger.info(
            f"Indexed {len(merged)} tools from {len(files)} files",
            extra={"phase": "discovery"},
        )
        return self.diff(previous.ordered, self._snapshot.ordered)

    def reload(self, root: str | Path) -> IndexDiff:
        """Rebuild the index from scratch and swap it in."""
        return self.load(root, replace=True)

    def _read_file(self, root: Path, path: Path) -> list[ToolDescriptor]:
        try:
            size = path.stat().st_size
            if size > self._max_file_bytes:
                raise ConfigError(
                    f"metadata file is {size} bytes, limit is {self._max_file_bytes}",
                    path=str(path),
                )
            text = path.read_text(encoding="utf-8")
        except UnicodeDecodeError as exc:
            raise ConfigError("metadata file is not UTF-8", path=str(path)) from exc
        except OSError as exc:
            raise McpxIOError(f"Cannot read {path}: {exc}") from exc

        relative = path.relative_to(root)
        default_server = relative.parts[0] if len(relative.parts) > 1 else "default"
        descriptors, _ = parse_document(text, source_uri=str(path), default_server=default_server)
        return descriptors

    def add(self, descriptors: Iterable[ToolDescriptor]) -> None:
        """Insert descriptors built in memory (swapped in as a new snapshot)."""
        merged = dict(self._snapshot.by_key)
        for descriptor in descriptors:
            merged[descriptor.key] = descriptor
        self._snapshot = _Snapshot(merged, self._snapshot.files_scanned, self._snapshot.version + 1)

    def get(self, server: str, name: str) -> ToolDescriptor:
        """Exact lookup.

        Raises:
            NotFound: no descriptor is indexed under ``(server, name)``.
        """
        descriptor = self._snapshot.by_key.get((server, name))
        if descriptor is None:
            raise NotFound(server, name)
        return descriptor

    def all(self) -> list[ToolDescriptor]:
        """Snapshot ordered by ``(server, name)``."""
        return list(self._snapshot.ordered)

    def search(self, intent: str, limit: int = 5, threshold: float = 0.3) -> DiscoveryResult:
        return scorer.rank(intent, list(self._snapshot.ordered), limit=limit, threshold=threshold)

    @staticmethod
    def diff(prev: Sequence[ToolDescriptor], current: Sequence[ToolDescriptor]) -> IndexDiff:
        """Set difference over content hashes, keyed by ``server.name``."""
        before = {d.fqn: d.content_hash for d in prev}
        after = {d.fqn: d.content_hash for d in current}
        return IndexDiff(
            added=sorted(after.keys() - before.keys()),
            removed=sorted(before.keys() - after.keys()),
            changed=sorted(k for k in after.keys() & before.keys() if after[k] != before[k]),
        )

    def stats(self) -> dict:
        snapshot = self._snapshot
        return {
            "total_tools": len(snapshot.ordered),
            "files_scanned": snapshot.files_scanned,
            "version": snapshot.version,
            "by_server": dict(sorted(Counter(d.server for d in snapshot.ordered).items())),
            "by_category": dict(
                sorted(Counter(d.category or "uncategorized" for d in snapshot.ordered).items())
            ),
        }

    @property
    def version(self) -> int:
        return self._snapshot.version

    def __len__(self) -> int:
        return len(self._snapshot.ordered)

    def __contains__(self, key: tuple[str, str]) -> bool:
        return key in self._snapshot.by_key
