"""
MCPX Core Data Models

All shared types used across the engine. This module is the foundation
that every other component imports from; it has no internal dependencies
beyond pydantic.
"""

from __future__ import annotations

import hashlib
import json
import re
import time
import uuid
from collections.abc import Mapping
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator, model_validator


# ─── Enums ───────────────────────────────────────────────────

class Language(str, Enum):
    """Target language of a generated unit."""
    TYPESCRIPT = "typescript"
    PYTHON = "python"

    @classmethod
    def parse(cls, value: str | Language) -> Language:
        """Accept the long names and the ``ts``/``py`` shorthands."""
        if isinstance(value, Language):
            return value
        aliases = {"ts": cls.TYPESCRIPT, "py": cls.PYTHON}
        key = value.strip().lower()
        if key in aliases:
            return aliases[key]
        return cls(key)

    @property
    def extension(self) -> str:
        return ".ts" if self is Language.TYPESCRIPT else ".py"


class RiskLevel(str, Enum):
    """Categorical risk level derived from the validator score."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _RISK_ORDER.index(self)

    @classmethod
    def from_score(cls, score: int) -> RiskLevel:
        if score < 25:
            return cls.LOW
        if score < 60:
            return cls.MEDIUM
        if score < 85:
            return cls.HIGH
        return cls.CRITICAL


_RISK_ORDER = [RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH, RiskLevel.CRITICAL]


class IsolationLevel(str, Enum):
    """Kind of sandbox used to execute a generated unit."""
    PROCESS = "process"
    VM = "vm"
    CONTAINER = "container"


class NetworkMode(str, Enum):
    OFF = "off"
    ALLOWLIST = "allowlist"


class Phase(str, Enum):
    """Pipeline phases, each of which yields one audit record."""
    DISCOVERY = "discovery"
    GENERATION = "generation"
    REDACTION_PRE = "redaction_pre"
    VALIDATION = "validation"
    SANDBOX_SELECTION = "sandbox_selection"
    EXECUTION = "execution"
    SUMMARIZATION = "summarization"
    REDACTION_POST = "redaction_post"


class ConnectionState(str, Enum):
    """Lifecycle of a tool-server connection."""
    INIT = "INIT"
    STARTING = "STARTING"
    READY = "READY"
    CALLING = "CALLING"
    SHUTTING_DOWN = "SHUTTING_DOWN"
    CLOSED = "CLOSED"


class PiiKind(str, Enum):
    EMAIL = "email"
    PHONE = "phone"
    PAYMENT_CARD = "payment_card"
    GOV_ID = "gov_id"
    CUSTOM = "custom"


# ─── Tool Metadata ──────────────────────────────────────────

def compute_content_hash(
    server: str,
    name: str,
    description: str,
    input_schema: dict[str, Any],
    output_schema: dict[str, Any] | None,
) -> str:
    """Stable SHA-256 over everything that shapes a generated wrapper."""
    payload = json.dumps(
        {
            "server": server,
            "name": name,
            "description": description,
            "inputSchema": input_schema,
            "outputSchema": output_schema,
        },
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class ToolDescriptor(BaseModel):
    """One indexed tool.

    ``input_schema`` is always a JSON Schema object shape; parameter-list
    metadata is normalized into it at parse time. A top-level
    ``definitions`` section, when present, lives inside ``input_schema``.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    server: str = "default"
    description: str = ""
    category: str = ""
    keywords: list[str] = Field(default_factory=list)
    input_schema: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}, "required": []}
    )
    output_schema: dict[str, Any] | None = None
    examples: list[dict[str, Any]] = Field(default_factory=list)
    source_uri: str = ""
    content_hash: str = ""

    @model_validator(mode="after")
    def _fill_hash(self) -> ToolDescriptor:
        if not self.content_hash:
            object.__setattr__(
                self,
                "content_hash",
                compute_content_hash(
                    self.server, self.name, self.description, self.input_schema, self.output_schema
                ),
            )
        return self

    @property
    def key(self) -> tuple[str, str]:
        return (self.server, self.name)

    @property
    def fqn(self) -> str:
        """Fully qualified tool name used by the dispatcher: ``server.name``."""
        return f"{self.server}.{self.name}"

    @property
    def properties(self) -> dict[str, Any]:
        return self.input_schema.get("properties", {}) or {}

    @property
    def required(self) -> list[str]:
        return list(self.input_schema.get("required", []) or [])


class ScoredTool(BaseModel):
    """A descriptor with its relevance score and exact-name contribution."""

    descriptor: ToolDescriptor
    score: float = Field(ge=0.0, le=1.0)
    name_score: float = 0.0


class DiscoveryResult(BaseModel):
    """Ordered, thresholded discovery output (scores non-increasing)."""

    intent: str
    threshold: float = 0.3
    entries: list[ScoredTool] = Field(default_factory=list)

    @property
    def tools(self) -> list[ToolDescriptor]:
        return [e.descriptor for e in self.entries]

    def __len__(self) -> int:
        return len(self.entries)


class IndexDiff(BaseModel):
    """Set difference between two index snapshots, keyed by ``fqn``."""

    added: list[str] = Field(default_factory=list)
    removed: list[str] = Field(default_factory=list)
    changed: list[str] = Field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not (self.added or self.removed or self.changed)


# ─── Generated Code ─────────────────────────────────────────

class GeneratedFile(BaseModel):
    """One emitted source file, path relative to the unit root."""

    path: str
    content: str
    tool: str | None = None
    content_hash: str = ""


class GeneratedUnit(BaseModel):
    """The artifact produced for one execution. Never cached across calls."""

    language: Language
    tool_stubs: list[GeneratedFile] = Field(default_factory=list)
    entry: str = ""
    tools: list[str] = Field(default_factory=list)
    token_cost_estimate: int = 0


class GenerationReport(BaseModel):
    """What an incremental generation wrote, skipped and deleted."""

    written: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
    deleted: list[str] = Field(default_factory=list)


# ─── Validation ─────────────────────────────────────────────

class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class Violation(BaseModel):
    """A single validator finding with its location."""

    kind: str
    severity: Severity
    weight: int
    message: str
    line: int = 0
    column: int = 0
    snippet: str = ""
    source: str = "entry"


class ValidationReport(BaseModel):
    risk_score: int = Field(ge=0, le=100)
    risk_level: RiskLevel
    violations: list[Violation] = Field(default_factory=list)

    @property
    def has_critical(self) -> bool:
        return any(v.severity == Severity.CRITICAL for v in self.violations)

    @property
    def allowed(self) -> bool:
        return self.risk_level != RiskLevel.CRITICAL and not self.has_critical


# ─── Sandbox ────────────────────────────────────────────────

_SIZE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([kmgt]?)(?:i?b)?\s*$", re.IGNORECASE)
_SIZE_FACTORS = {"": 1, "k": 1024, "m": 1024**2, "g": 1024**3, "t": 1024**4}


def parse_size(value: int | str) -> int:
    """Parse ``512M`` / ``1G`` / plain byte counts."""
    if isinstance(value, int):
        return value
    match = _SIZE_RE.match(str(value))
    if not match:
        raise ValueError(f"Invalid size: {value!r}")
    number, unit = match.groups()
    return int(float(number) * _SIZE_FACTORS[unit.lower()])


class ResourceLimits(BaseModel):
    """Resource caps applied to one sandbox run."""

    model_config = ConfigDict(frozen=True)

    cpu_quota: float = Field(default=1.0, ge=0.1, le=8.0)
    memory_bytes: int = Field(default=512 * 1024**2, gt=0)
    wall_clock_ms: int = Field(default=30_000, ge=1, le=300_000)
    disk_bytes: int = Field(default=64 * 1024**2, gt=0)

    @field_validator("memory_bytes", "disk_bytes", mode="before")
    @classmethod
    def _parse_sizes(cls, value: Any) -> int:
        return parse_size(value)


class NetworkPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    mode: NetworkMode = NetworkMode.OFF
    hosts: list[str] = Field(default_factory=list)

    def permits(self, host: str) -> bool:
        """True when ``host`` (or a parent domain) is on the allowlist."""
        if self.mode == NetworkMode.OFF or not host:
            return False
        host = host.lower().rstrip(".")
        for allowed in self.hosts:
            allowed = allowed.lower().rstrip(".")
            if host == allowed or host.endswith(f".{allowed}"):
                return True
        return False


class ExecutionContext(BaseModel):
    """Sandbox configuration for one run. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    isolation_level: IsolationLevel = IsolationLevel.PROCESS
    resource_limits: ResourceLimits = Field(default_factory=ResourceLimits)
    network_policy: NetworkPolicy = Field(default_factory=NetworkPolicy)
    env_allowlist: list[str] = Field(default_factory=list)
    workdir: Path | None = None


class ExecutionMetrics(BaseModel):
    wall_ms: int = 0
    memory_peak_bytes: int = 0
    exit_status: int | None = None
    tool_calls: int = 0
    summary_tokens: int = 0


class SandboxOutcome(BaseModel):
    """Raw outcome of a sandbox run before summarization."""

    value: Any = None
    has_value: bool = False
    stdout: str = ""
    stderr: str = ""
    metrics: ExecutionMetrics = Field(default_factory=ExecutionMetrics)
    error: str | None = None


class ExecutionResult(BaseModel):
    """What the pipeline returns.

    ``redactions`` is excluded from serialization; it only lives in memory.
    """

    success: bool
    summary: str
    metrics: ExecutionMetrics = Field(default_factory=ExecutionMetrics)
    redactions: dict[str, str] = Field(default_factory=dict, exclude=True, repr=False)
    error_kind: str | None = None
    execution_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    tools_selected: list[str] = Field(default_factory=list)


# ─── Audit ──────────────────────────────────────────────────

def _freeze(value: Any) -> Any:
    """Read-only deep copy: mappings become proxies, lists become tuples."""
    if isinstance(value, Mapping):
        return MappingProxyType({key: _freeze(item) for key, item in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(item) for item in value)
    return value


def _thaw(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {key: _thaw(item) for key, item in value.items()}
    if isinstance(value, tuple):
        return [_thaw(item) for item in value]
    return value


class Anomaly(BaseModel):
    """A behavioural flag raised against one execution."""

    model_config = ConfigDict(frozen=True)

    rule: str
    severity: Severity
    reason: str


class AuditRecord(BaseModel):
    """One record per pipeline phase. Frozen after creation."""

    model_config = ConfigDict(frozen=True)

    execution_id: str
    phase: Phase
    decision: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    monotonic: float = Field(default_factory=time.monotonic)
    risk_score: int | None = None
    tools_selected: tuple[str, ...] = ()
    redactions_count: int = 0
    error_kind: str | None = None
    details: Mapping[str, Any] = Field(default_factory=dict, validate_default=True)

    @field_validator("details", mode="after")
    @classmethod
    def freeze_details(cls, value: Mapping[str, Any]) -> Mapping[str, Any]:
        return _freeze(value)

    @field_serializer("details")
    def thaw_details(self, value: Mapping[str, Any]) -> dict[str, Any]:
        return _thaw(value)


# ─── Options ────────────────────────────────────────────────

class RedactOptions(BaseModel):
    pre_execution: bool = False
    post_execution: bool = True


class CustomPattern(BaseModel):
    name: str
    pattern: str


class PiiConfig(BaseModel):
    """Which personal-data patterns the tokenizer recognizes."""

    enabled: bool = True
    redact_before_execution: bool = False
    kinds: list[PiiKind] = Field(
        default_factory=lambda: [PiiKind.EMAIL, PiiKind.PHONE, PiiKind.PAYMENT_CARD, PiiKind.GOV_ID]
    )
    gov_id_patterns: list[str] = Field(default_factory=lambda: [r"\b\d{3}-\d{2}-\d{4}\b"])
    custom: list[CustomPattern] = Field(default_factory=list)

    @field_validator("gov_id_patterns")
    @classmethod
    def _compile_check(cls, value: list[str]) -> list[str]:
        for pattern in value:
            re.compile(pattern)
        return value


class ExecuteOptions(BaseModel):
    """Options accepted by ``execute``."""

    max_tools: int = Field(default=5, ge=1)
    threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    timeout_ms: int = Field(default=30_000, ge=1, le=300_000)
    request_timeout_ms: int = Field(default=30_000, ge=1)
    isolation_level: IsolationLevel | None = None
    env_allowlist: list[str] = Field(default_factory=list)
    network: NetworkPolicy = Field(default_factory=NetworkPolicy)
    redact: RedactOptions = Field(default_factory=RedactOptions)
    pii: PiiConfig = Field(default_factory=PiiConfig)
    max_units: int = Field(default=2000, ge=64)
    stats_fields: list[str] = Field(default_factory=list)
    snippet: str | None = None
    retries: int = Field(default=0, ge=0, le=5)
    memory_bytes: int | None = None
    cpu_quota: float | None = None
