"""
MCPX Audit Trail

Append-only, tamper-evident log of pipeline decisions. Each AuditRecord is
hashed together with the previous record's hash (SHA-256), so any edit to a
stored line breaks the chain.

Records are kept in memory and, when a path is configured, appended to a
JSON-lines file (one object per line). Opening an existing file continues
its chain. The redaction table is never part of a record.
"""

from __future__ import annotations

import hashlib
import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from mcpx.core.models import AuditRecord, Phase
from mcpx.exceptions import McpxIOError
from mcpx.logging import get_logger

logger = get_logger("mcpx.audit")

GENESIS_HASH = "0" * 64


class HashedAuditRecord(BaseModel):
    """An audit record with its position and hash chain links."""

    record: AuditRecord
    hash: str = Field(..., description="SHA-256 of this record + previous hash")
    previous_hash: str = Field(GENESIS_HASH, description="Hash of the previous record")
    sequence: int = Field(0, description="Sequential record number")

    def to_line(self) -> str:
        return json.dumps(
            {
                "sequence": self.sequence,
                "hash": self.hash,
                "previous_hash": self.previous_hash,
                "record": self.record.model_dump(mode="json"),
            },
            sort_keys=True,
            separators=(",", ":"),
        )


def _record_hash(record: AuditRecord, previous_hash: str, sequence: int) -> str:
    content = json.dumps(
        {
            "record": record.model_dump(mode="json"),
            "previous_hash": previous_hash,
            "sequence": sequence,
        },
        sort_keys=True,
        default=str,
    )
    return hashlib.sha256(content.encode()).hexdigest()


class AuditTrail:
    """Hash-chained audit log, optionally persisted as JSON lines.

    Safe to share between concurrent ``execute`` calls; appends are
    serialized by a lock that is never held across an await.
    """

    GENESIS_HASH = GENESIS_HASH

    def __init__(self, path: str | Path | None = None):
        self._path = Path(path) if path is not None else None
        self._events: list[HashedAuditRecord] = []
        self._current_hash = GENESIS_HASH
        self._next_sequence = 0
        self._lock = threading.Lock()
        if self._path is not None and self._path.exists():
            self._resume()

    @property
    def path(self) -> Path | None:
        return self._path

    def _resume(self) -> None:
        last = None
        try:
            with self._path.open("r", encoding="utf-8") as fh:
                for line in fh:
                    if line.strip():
                        last = line
        except OSError as exc:
            raise McpxIOError(f"Cannot read audit log {self._path}: {exc}") from exc
        if last is None:
            return
        try:
            data = json.loads(last)
            self._current_hash = data["hash"]
            self._next_sequence = int(data["sequence"]) + 1
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            logger.warning("Audit log tail is unreadable; starting a new chain segment")

    def append(self, record: AuditRecord) -> HashedAuditRecord:
        """Append a record to the chain and, if configured, to the file."""
        with self._lock:
            sequence = self._next_sequence
            event_hash = _record_hash(record, self._current_hash, sequence)
            hashed = HashedAuditRecord(
                record=record,
                hash=event_hash,
                previous_hash=self._current_hash,
                sequence=sequence,
            )
            if self._path is not None:
                try:
                    self._path.parent.mkdir(parents=True, exist_ok=True)
                    with self._path.open("a", encoding="utf-8") as fh:
                        fh.write(hashed.to_line() + "\n")
                except OSError as exc:
                    raise McpxIOError(f"Cannot append to audit log {self._path}: {exc}") from exc
            self._events.append(hashed)
            self._current_hash = event_hash
            self._next_sequence = sequence + 1

        logger.debug(
            "Audit record appended",
            extra={"execution_id": record.execution_id, "phase": record.phase.value},
        )
        return hashed

    def verify_integrity(self) -> tuple[bool, str]:
        """Verify the in-memory chain.

        Returns (is_valid, message).
        """
        return verify_chain(self._events)

    def get_events(
        self,
        execution_id: str | None = None,
        phase: Phase | str | None = None,
        decision: str | None = None,
    ) -> list[HashedAuditRecord]:
        """Query records with optional filters."""
        results = self._events
        if execution_id:
            results = [e for e in results if e.record.execution_id == execution_id]
        if phase:
            results = [e for e in results if e.record.phase == Phase(phase)]
        if decision:
            results = [e for e in results if e.record.decision == decision]
        return list(results)

    def export_json(self, path: str | Path) -> None:
        """Export the in-memory chain as one JSON document."""
        data = {
            "exported_at": datetime.now(timezone.utc).isoformat(),
            "total_events": len(self._events),
            "chain_head": self._current_hash,
            "events": [json.loads(e.to_line()) for e in self._events],
        }
        Path(path).write_text(json.dumps(data, indent=2, sort_keys=True, default=str))

    @property
    def head_hash(self) -> str:
        """SHA-256 hash of the most recent record in the chain."""
        return self._current_hash

    def __len__(self) -> int:
        return len(self._events)


def verify_chain(events: list[HashedAuditRecord]) -> tuple[bool, str]:
    if not events:
        return True, "Empty log, nothing to verify"

    expected_prev = events[0].previous_hash if events[0].sequence else GENESIS_HASH
    for i, event in enumerate(events):
        if event.previous_hash != expected_prev:
            return False, (
                f"Chain broken at record {event.sequence}: "
                f"expected previous_hash={expected_prev[:16]}..., "
                f"got {event.previous_hash[:16]}..."
            )
        recomputed = _record_hash(event.record, event.previous_hash, event.sequence)
        if recomputed != event.hash:
            return False, (
                f"Tampered record at {event.sequence}: "
                f"stored hash={event.hash[:16]}..., "
                f"recomputed={recomputed[:16]}..."
            )
        expected_prev = event.hash

    return True, f"All {len(events)} records verified, chain intact"


def load_file(path: str | Path) -> list[HashedAuditRecord]:
    """Parse a JSON-lines audit log."""
    events = []
    try:
        lines = Path(path).read_text(encoding="utf-8").splitlines()
    except OSError as exc:
        raise McpxIOError(f"Cannot read audit log {path}: {exc}") from exc
    for number, line in enumerate(lines, start=1):
        if not line.strip():
            continue
        try:
            data: dict[str, Any] = json.loads(line)
            events.append(
                HashedAuditRecord(
                    record=AuditRecord(**data["record"]),
                    hash=data["hash"],
                    previous_hash=data["previous_hash"],
                    sequence=data["sequence"],
                )
            )
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            raise McpxIOError(f"{path}:{number}: unreadable audit line ({exc})") from exc
    return events


def verify_file(path: str | Path) -> tuple[bool, str]:
    """Verify the hash chain stored in an audit log file."""
    return verify_chain(load_file(path))
