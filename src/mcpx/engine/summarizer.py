"""
MCPX Result Summarizer

Turns a sandbox result into text bounded by ``max_units`` characters.
Small results come back verbatim; large ones are replaced by a summary
record with the total size, the first and last K elements, and optional
per-field statistics. Pure function over an in-memory value.
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from typing import Any

DEFAULT_MAX_UNITS = 2000
DEFAULT_EDGE = 5


def serialize(value: Any) -> str:
    """Compact JSON for structured values; strings pass through unchanged."""
    if isinstance(value, str):
        return value
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False, default=str)


def _compact(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False, default=str)


def field_stats(records: Sequence[Any], fields: Sequence[str]) -> dict[str, dict[str, Any]]:
    """Count, sum and distinct-value count for each named field.

    ``sum`` is ``None`` when the field never carries a number.
    """
    stats: dict[str, dict[str, Any]] = {}
    for name in fields:
        count = 0
        total: float | None = None
        distinct: set[str] = set()
        for record in records:
            if not isinstance(record, dict) or name not in record:
                continue
            value = record[name]
            count += 1
            distinct.add(_compact(value))
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                total = value if total is None else total + value
        stats[name] = {"count": count, "sum": total, "distinct": len(distinct)}
    return stats


class Summarizer:
    """Bounded summaries of arbitrary JSON-like values."""

    def __init__(self, max_units: int = DEFAULT_MAX_UNITS, edge: int = DEFAULT_EDGE):
        self.max_units = max_units
        self.edge = edge

    def summarize(self, value: Any, stats_fields: Sequence[str] = ()) -> str:
        text = serialize(value)
        if len(text) <= self.max_units:
            return text

        elements, kind, field = self._elements(value)
        record: dict[str, Any] = {
            "truncated": True,
            "total_bytes": len(text.encode("utf-8")),
            "type": kind,
        }
        if elements is not None:
            record["total"] = len(elements)
            if field is not None:
                record["field"] = field
        if stats_fields and elements is not None:
            record["stats"] = field_stats(elements, stats_fields)

        return self._fit(record, elements, text)

    @staticmethod
    def _elements(value: Any) -> tuple[list[Any] | None, str, str | None]:
        if isinstance(value, list):
            return value, "array", None
        if isinstance(value, dict):
            lists = [(k, v) for k, v in value.items() if isinstance(v, list)]
            if lists:
                key, items = max(lists, key=lambda kv: (len(kv[1]), kv[0]))
                return items, "object", key
            return [{"key": k, "value": v} for k, v in value.items()], "object", None
        if isinstance(value, str):
            return None, "string", None
        return None, type(value).__name__, None

    def _fit(self, record: dict[str, Any], elements: list[Any] | None, text: str) -> str:
        if elements is None:
            record["head"] = ""
            budget = self.max_units - len(_compact(record))
            while budget > 0:
                record["head"] = text[:budget]
                rendered = _compact(record)
                if len(rendered) <= self.max_units:
                    return rendered
                budget -= len(rendered) - self.max_units
            record["head"] = ""
            return self._last_resort(record)

        for k in range(self.edge, -1, -1):
            head = elements[:k]
            tail = elements[-k:] if k and len(elements) > k else []
            if len(elements) <= k:
                tail = []
            candidate = dict(record, head=head, tail=tail)
            rendered = _compact(candidate)
            if len(rendered) <= self.max_units:
                return rendered

        for clip in (200, 80, 32):
            head = [self._clip(e, clip) for e in elements[: self.edge]]
            tail = [self._clip(e, clip) for e in elements[-self.edge:]] if len(elements) > self.edge else []
            rendered = _compact(dict(record, head=head, tail=tail))
            if len(rendered) <= self.max_units:
                return rendered

        record.pop("stats", None)
        return self._last_resort(dict(record, head=[], tail=[]))

    @staticmethod
    def _clip(element: Any, limit: int) -> Any:
        text = _compact(element)
        if len(text) <= limit:
            return element
        return text[: limit - 3] + "..."

    def _last_resort(self, record: dict[str, Any]) -> str:
        rendered = _compact(record)
        if len(rendered) <= self.max_units:
            return rendered
        minimal = {"truncated": True, "total_bytes": record["total_bytes"]}
        if "total" in record:
            minimal["total"] = record["total"]
        return _compact(minimal)[: self.max_units]


def summarize(
    value: Any,
    max_units: int = DEFAULT_MAX_UNITS,
    stats_fields: Sequence[str] = (),
) -> str:
    """Module-level shortcut for ``Summarizer(max_units).summarize``."""
    return Summarizer(max_units).summarize(value, stats_fields)
