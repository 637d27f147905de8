"""
MCPX Anomaly Detector

Flags executions that behave unlike the ones before them. The detector
keeps a bounded history of observations (wall time, peak memory, outcome)
and evaluates every new one against its rule set:

- resource_spike: wall time or memory above 3x the running average
- repeated_failure: a streak of consecutive failed executions
- unusual_timing: implausibly fast successes and very long runs
- security_event: the sandbox was stopped by a policy decision

Flags are informational. They are written into the execution phase's
audit record and never change the outcome of the execution.
"""

from __future__ import annotations

from collections import Counter, deque
from dataclasses import dataclass
from typing import Any

from mcpx.core.models import Anomaly, Severity
from mcpx.logging import get_logger

logger = get_logger("mcpx.audit")

HISTORY_LIMIT = 1000
SECURITY_ERROR_KINDS = ("PolicyDenied",)


@dataclass(frozen=True)
class Observation:
    """What the detector knows about one finished execution."""

    execution_id: str
    wall_ms: int
    memory_bytes: int = 0
    success: bool = True
    error_kind: str | None = None


class AnomalyRule:
    """A rule that checks one observation against the history before it."""

    def __init__(self, name: str, description: str):
        self.name = name
        self.description = description

    def check(self, observation: Observation, history: list[Observation]) -> Anomaly | None:
        """Return an Anomaly if this rule is violated. Override in subclasses."""
        raise NotImplementedError

    def _flag(self, severity: Severity, reason: str) -> Anomaly:
        return Anomaly(rule=self.name, severity=severity, reason=reason)


class ResourceSpike(AnomalyRule):
    def __init__(self, multiplier: float = 3.0, min_history: int = 10):
        super().__init__(
            name="resource_spike",
            description=f"Wall time or memory above {multiplier:g}x the average",
        )
        self.multiplier = multiplier
        self.min_history = min_history

    def check(self, observation: Observation, history: list[Observation]) -> Anomaly | None:
        if len(history) < self.min_history:
            return None

        avg_wall = sum(h.wall_ms for h in history) / len(history)
        if avg_wall > 0 and observation.wall_ms > avg_wall * self.multiplier:
            return self._flag(
                Severity.HIGH,
                f"Wall time {observation.wall_ms}ms is {observation.wall_ms / avg_wall:.1f}x "
                f"the average of {avg_wall:.0f}ms",
            )

        # Backends that do not measure memory report 0.
        measured = [h.memory_bytes for h in history if h.memory_bytes > 0]
        if observation.memory_bytes > 0 and len(measured) >= self.min_history:
            avg_memory = sum(measured) / len(measured)
            if observation.memory_bytes > avg_memory * self.multiplier:
                return self._flag(
                    Severity.HIGH,
                    f"Peak memory {observation.memory_bytes} bytes is "
                    f"{observation.memory_bytes / avg_memory:.1f}x the average",
                )
        return None


class RepeatedFailure(AnomalyRule):
    def __init__(self, warn_after: int = 3, alarm_after: int = 5):
        super().__init__(
            name="repeated_failure",
            description=f"More than {warn_after} consecutive failed executions",
        )
        self.warn_after = warn_after
        self.alarm_after = alarm_after

    def check(self, observation: Observation, history: list[Observation]) -> Anomaly | None:
        if observation.success:
            return None

        streak = 1
        for past in reversed(history):
            if past.success:
                break
            streak += 1

        if streak > self.alarm_after:
            return self._flag(Severity.HIGH, f"{streak} consecutive failed executions")
        if streak > self.warn_after:
            return self._flag(Severity.MEDIUM, f"{streak} consecutive failed executions")
        return None


class UnusualTiming(AnomalyRule):
    def __init__(self, fast_ms: int = 10, slow_ms: int = 60_000):
        super().__init__(
            name="unusual_timing",
            description=f"Success under {fast_ms}ms or a run over {slow_ms}ms",
        )
        self.fast_ms = fast_ms
        self.slow_ms = slow_ms

    def check(self, observation: Observation, history: list[Observation]) -> Anomaly | None:
        if observation.wall_ms > self.slow_ms:
            return self._flag(Severity.HIGH, f"Execution ran for {observation.wall_ms}ms")
        if observation.success and observation.wall_ms < self.fast_ms:
            return self._flag(Severity.LOW, f"Execution finished in {observation.wall_ms}ms")
        return None


class SecurityEvent(AnomalyRule):
    def __init__(self):
        super().__init__(
            name="security_event",
            description="Execution stopped by a policy decision",
        )

    def check(self, observation: Observation, history: list[Observation]) -> Anomaly | None:
        if observation.error_kind in SECURITY_ERROR_KINDS:
            return self._flag(Severity.CRITICAL, f"Sandbox stopped with {observation.error_kind}")
        return None


def default_rules() -> list[AnomalyRule]:
    return [ResourceSpike(), RepeatedFailure(), UnusualTiming(), SecurityEvent()]


_SEVERITY_ORDER = [Severity.LOW, Severity.MEDIUM, Severity.HIGH, Severity.CRITICAL]


def highest_severity(anomalies: list[Anomaly]) -> Severity | None:
    if not anomalies:
        return None
    return max((a.severity for a in anomalies), key=_SEVERITY_ORDER.index)


class AnomalyDetector:
    """Evaluates each finished execution against a bounded history."""

    def __init__(self, rules: list[AnomalyRule] | None = None, history_limit: int = HISTORY_LIMIT):
        self.rules = rules if rules is not None else default_rules()
        self._history: deque[Observation] = deque(maxlen=history_limit)
        self._flagged: Counter[str] = Counter()

    def __len__(self) -> int:
        return len(self._history)

    def observe(self, observation: Observation) -> list[Anomaly]:
        """Check ``observation``, then add it to the history."""
        history = list(self._history)
        anomalies = []
        for rule in self.rules:
            anomaly = rule.check(observation, history)
            if anomaly is not None:
                anomalies.append(anomaly)
                self._flagged[anomaly.rule] += 1
        self._history.append(observation)

        if anomalies:
            logger.warning(
                f"{len(anomalies)} anomalies flagged: {', '.join(a.rule for a in anomalies)}",
                extra={"execution_id": observation.execution_id},
            )
        return anomalies

    def stats(self) -> dict[str, Any]:
        total = len(self._history)
        failures = sum(1 for h in self._history if not h.success)
        return {
            "observations": total,
            "failures": failures,
            "avg_wall_ms": round(sum(h.wall_ms for h in self._history) / total, 1) if total else 0.0,
            "flagged": dict(self._flagged),
        }

    def clear(self) -> None:
        self._history.clear()
        self._flagged.clear()
