"""
MCPX PII Tokenizer

Reversible substitution of personal data by opaque tokens ``[KIND_n]``.
One tokenizer instance is scoped to a single ``execute`` call: the same
original value always maps to the same token within it, counters are
per kind and monotonic, and nothing is persisted.

The redaction table maps bare token names (``EMAIL_1``) to originals; text
carries the bracketed form.
"""

from __future__ import annotations

import re
from collections.abc import Iterator
from typing import Any

from mcpx.core.models import PiiConfig, PiiKind

TOKEN_RE = re.compile(r"\[([A-Z][A-Z0-9_]*_\d+)\]")

EMAIL_RE = re.compile(r"(?<![\w.+-])[A-Za-z0-9._%+-]+@[A-Za-z0-9-]+(?:\.[A-Za-z0-9-]+)*\.[A-Za-z]{2,}\b")
PHONE_RE = re.compile(
    r"(?<![\w+])\+\d{1,3}[\s.-]?(?:\(\d{1,4}\)[\s.-]?)?\d{1,4}(?:[\s.-]?\d{2,4}){1,4}(?![\w])"
)
CARD_RE = re.compile(r"(?<![\d-])(?:\d[ -]?){12,18}\d(?![\d-])")

# Lower number wins when two matches overlap at the same position.
_PRIORITY = {
    PiiKind.EMAIL: 0,
    PiiKind.PAYMENT_CARD: 1,
    PiiKind.GOV_ID: 2,
    PiiKind.PHONE: 3,
    PiiKind.CUSTOM: 4,
}


def luhn_valid(digits: str) -> bool:
    """Luhn checksum over a digit string."""
    total = 0
    for i, ch in enumerate(reversed(digits)):
        n = int(ch)
        if i % 2 == 1:
            n *= 2
            if n > 9:
                n -= 9
        total += n
    return total % 10 == 0


class _Match:
    __slots__ = ("start", "end", "label", "priority", "text")

    def __init__(self, start: int, end: int, label: str, priority: int, text: str):
        self.start = start
        self.end = end
        self.label = label
        self.priority = priority
        self.text = text


class PiiTokenizer:
    """Per-call tokenizer holding the in-memory redaction table."""

    def __init__(self, config: PiiConfig | None = None):
        self._config = config or PiiConfig()
        self._patterns: list[tuple[str, int, re.Pattern[str]]] = []
        kinds = set(self._config.kinds)
        if PiiKind.EMAIL in kinds:
            self._patterns.append(("EMAIL", _PRIORITY[PiiKind.EMAIL], EMAIL_RE))
        if PiiKind.PAYMENT_CARD in kinds:
            self._patterns.append(("PAYMENT_CARD", _PRIORITY[PiiKind.PAYMENT_CARD], CARD_RE))
        if PiiKind.GOV_ID in kinds:
            for pattern in self._config.gov_id_patterns:
                self._patterns.append(("GOV_ID", _PRIORITY[PiiKind.GOV_ID], re.compile(pattern)))
        if PiiKind.PHONE in kinds:
            self._patterns.append(("PHONE", _PRIORITY[PiiKind.PHONE], PHONE_RE))
        for custom in self._config.custom:
            label = re.sub(r"[^A-Z0-9]+", "_", custom.name.upper()).strip("_") or "CUSTOM"
            self._patterns.append((label, _PRIORITY[PiiKind.CUSTOM], re.compile(custom.pattern)))

        self._redactions: dict[str, str] = {}
        self._by_original: dict[tuple[str, str], str] = {}
        self._counters: dict[str, int] = {}

    @property
    def redactions(self) -> dict[str, str]:
        """Copy of the table ``token -> original``."""
        return dict(self._redactions)

    @property
    def enabled(self) -> bool:
        return self._config.enabled

    def __len__(self) -> int:
        return len(self._redactions)

    def _accept(self, label: str, text: str) -> bool:
        if label == "PAYMENT_CARD":
            digits = re.sub(r"\D", "", text)
            return 13 <= len(digits) <= 19 and luhn_valid(digits)
        if label == "PHONE":
            digits = re.sub(r"\D", "", text)
            return 8 <= len(digits) <= 15
        return True

    def _matches(self, segment: str) -> Iterator[_Match]:
        found: list[_Match] = []
        for label, priority, pattern in self._patterns:
            for m in pattern.finditer(segment):
                if m.end() > m.start() and self._accept(label, m.group(0)):
                    found.append(_Match(m.start(), m.end(), label, priority, m.group(0)))
        found.sort(key=lambda m: (m.start, m.priority, -(m.end - m.start)))
        cursor = 0
        for match in found:
            if match.start >= cursor:
                yield match
                cursor = match.end

    def token_for(self, label: str, original: str) -> str:
        """Return the bare token for ``original``, allocating one if new."""
        key = (label, original)
        token = self._by_original.get(key)
        if token is None:
            self._counters[label] = self._counters.get(label, 0) + 1
            token = f"{label}_{self._counters[label]}"
            self._by_original[key] = token
            self._redactions[token] = original
        return token

    def tokenize(self, text: str) -> str:
        """Replace recognized personal data in ``text`` with tokens.

        Existing tokens are left untouched, so tokenizing twice is a no-op.
        """
        if not self._config.enabled or not text:
            return text
        out: list[str] = []
        last = 0
        for token_match in TOKEN_RE.finditer(text):
            out.append(self._tokenize_segment(text[last : token_match.start()]))
            out.append(token_match.group(0))
            last = token_match.end()
        out.append(self._tokenize_segment(text[last:]))
        return "".join(out)

    def _tokenize_segment(self, segment: str) -> str:
        if not segment:
            return segment
        pieces: list[str] = []
        cursor = 0
        for match in self._matches(segment):
            pieces.append(segment[cursor : match.start])
            pieces.append(f"[{self.token_for(match.label, match.text)}]")
            cursor = match.end
        pieces.append(segment[cursor:])
        return "".join(pieces)

    def tokenize_value(self, value: Any) -> Any:
        """Tokenize every string inside a JSON-like value."""
        if isinstance(value, str):
            return self.tokenize(value)
        if isinstance(value, list):
            return [self.tokenize_value(v) for v in value]
        if isinstance(value, dict):
            return {k: self.tokenize_value(v) for k, v in value.items()}
        return value

    def detokenize(self, text: str) -> str:
        """Restore originals for every known token in ``text``."""
        if not self._redactions:
            return text
        return TOKEN_RE.sub(lambda m: self._redactions.get(m.group(1), m.group(0)), text)

    def detokenize_value(self, value: Any) -> Any:
        if isinstance(value, str):
            return self.detokenize(value)
        if isinstance(value, list):
            return [self.detokenize_value(v) for v in value]
        if isinstance(value, dict):
            return {k: self.detokenize_value(v) for k, v in value.items()}
        return value

    def scrub(self, text: str) -> str:
        """Replace any known original value with its token without allocating new ones."""
        for (_, original), token in sorted(
            self._by_original.items(), key=lambda item: -len(item[0][1])
        ):
            if original:
                text = text.replace(original, f"[{token}]")
        return text
