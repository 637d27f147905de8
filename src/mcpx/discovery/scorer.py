"""
MCPX Relevance Scorer

Pure scoring of a tool descriptor against a free-text intent.

Contributions (summed, then clamped to [0, 1]):
  name as a whole word in the intent       +1.0
  name as a substring of the intent        +0.8
  a description phrase found in the intent +0.5
  each unique overlapping keyword          +0.3 (at most +0.9)
  category mentioned in the intent         +0.2

Ordering: score descending, then the exact-name contribution descending,
then ``(server, name)`` ascending.
"""

from __future__ import annotations

import re

from mcpx.core.models import DiscoveryResult, ScoredTool, ToolDescriptor

WHOLE_NAME_WEIGHT = 1.0
SUBSTRING_NAME_WEIGHT = 0.8
PHRASE_WEIGHT = 0.5
OVERLAP_WEIGHT = 0.3
OVERLAP_CAP = 0.9
CATEGORY_WEIGHT = 0.2

STOP_WORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of",
    "with", "by", "from", "as", "is", "was", "are", "be", "it", "its", "this",
    "that", "these", "those", "into", "then", "than", "me", "my", "our", "your",
    "please", "call", "use", "using", "tool", "tools", "all", "any", "some",
})

_CAMEL_RE = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")
_WORD_RE = re.compile(r"[a-z0-9]+")
_CLAUSE_RE = re.compile(r"[.,;:!?()\[\]{}\n]+")


def normalize(text: str) -> str:
    """Lowercase, split camelCase and collapse every non-alphanumeric run to a space."""
    text = _CAMEL_RE.sub(" ", text).lower()
    return " ".join(_WORD_RE.findall(text))


def extract_keywords(text: str) -> list[str]:
    """Unique content words in order of first appearance (len > 2, no stop words)."""
    seen: dict[str, None] = {}
    for word in normalize(text).split():
        if len(word) > 2 and word not in STOP_WORDS:
            seen.setdefault(word, None)
    return list(seen)


def _contains_words(haystack: str, needle: str) -> bool:
    return bool(needle) and f" {needle} " in f" {haystack} "


def name_contribution(intent: str, name: str) -> float:
    """Exact-name contribution: whole word beats substring."""
    lowered = intent.lower()
    raw = name.lower()
    if re.search(rf"(?<![\w]){re.escape(raw)}(?![\w])", lowered):
        return WHOLE_NAME_WEIGHT
    if _contains_words(normalize(intent), normalize(name)):
        return WHOLE_NAME_WEIGHT
    if raw and raw in lowered:
        return SUBSTRING_NAME_WEIGHT
    return 0.0


def description_phrases(description: str) -> list[str]:
    """Word runs of length >= 2 inside one clause that start and end on content words."""
    phrases: list[str] = []
    for clause in _CLAUSE_RE.split(description):
        words = normalize(clause).split()
        for i, first in enumerate(words):
            if first in STOP_WORDS:
                continue
            for j in range(i + 1, len(words)):
                if words[j] in STOP_WORDS:
                    continue
                phrases.append(" ".join(words[i : j + 1]))
    return phrases


def score(intent: str, descriptor: ToolDescriptor) -> tuple[float, float]:
    """Return ``(score, name_contribution)`` for one descriptor."""
    normalized_intent = normalize(intent)
    total = 0.0

    name_part = name_contribution(intent, descriptor.name)
    total += name_part

    if descriptor.description and any(
        _contains_words(normalized_intent, phrase)
        for phrase in description_phrases(descriptor.description)
    ):
        total += PHRASE_WEIGHT

    intent_words = set(extract_keywords(intent))
    tool_words = set(
        extract_keywords(" ".join([descriptor.name, descriptor.description, *descriptor.keywords]))
    )
    overlap = len(intent_words & tool_words)
    total += min(OVERLAP_CAP, OVERLAP_WEIGHT * overlap)

    if descriptor.category and _contains_words(normalized_intent, normalize(descriptor.category)):
        total += CATEGORY_WEIGHT

    return round(max(0.0, min(1.0, total)), 6), name_part


def rank(
    intent: str,
    descriptors: list[ToolDescriptor],
    limit: int = 5,
    threshold: float = 0.3,
) -> DiscoveryResult:
    """Score, filter by ``threshold`` and keep the top ``limit`` descriptors."""
    scored: list[ScoredTool] = []
    for descriptor in descriptors:
        value, name_part = score(intent, descriptor)
        if value >= threshold:
            scored.append(ScoredTool(descriptor=descriptor, score=value, name_score=name_part))

    scored.sort(key=lambda s: (-s.score, -s.name_score, s.descriptor.server, s.descriptor.name))
    return DiscoveryResult(intent=intent, threshold=threshold, entries=scored[: max(0, limit)])
