"""Tests for the execution anomaly detector."""

import pytest

from mcpx.audit.anomaly import (
    AnomalyDetector,
    Observation,
    RepeatedFailure,
    ResourceSpike,
    SecurityEvent,
    UnusualTiming,
    highest_severity,
)
from mcpx.core.models import Anomaly, Severity


def _obs(wall_ms=500, memory_bytes=0, success=True, error_kind=None):
    return Observation(
        execution_id="exec-1",
        wall_ms=wall_ms,
        memory_bytes=memory_bytes,
        success=success,
        error_kind=error_kind,
    )


def _rules(anomalies):
    return [a.rule for a in anomalies]


class TestResourceSpike:
    def test_needs_history(self):
        history = [_obs(wall_ms=100)] * 9
        assert ResourceSpike().check(_obs(wall_ms=10_000), history) is None

    def test_wall_time_spike(self):
        history = [_obs(wall_ms=100)] * 10
        anomaly = ResourceSpike().check(_obs(wall_ms=301), history)
        assert anomaly.severity is Severity.HIGH
        assert "3.0x" in anomaly.reason

    def test_within_range(self):
        history = [_obs(wall_ms=100)] * 10
        assert ResourceSpike().check(_obs(wall_ms=300), history) is None

    def test_memory_spike(self):
        history = [_obs(wall_ms=100, memory_bytes=1_000_000)] * 10
        anomaly = ResourceSpike().check(_obs(wall_ms=100, memory_bytes=4_000_000), history)
        assert anomaly is not None
        assert "memory" in anomaly.reason

    def test_unmeasured_memory_ignored(self):
        history = [_obs(wall_ms=100)] * 10
        assert ResourceSpike().check(_obs(wall_ms=100, memory_bytes=4_000_000), history) is None


class TestRepeatedFailure:
    @pytest.mark.parametrize(
        "streak, expected",
        [
            (3, None),
            (4, Severity.MEDIUM),
            (5, Severity.MEDIUM),
            (6, Severity.HIGH),
        ],
    )
    def test_streak(self, streak, expected):
        history = [_obs(success=False)] * (streak - 1)
        anomaly = RepeatedFailure().check(_obs(success=False), history)
        assert (anomaly.severity if anomaly else None) is expected

    def test_success_breaks_streak(self):
        history = [_obs(success=False)] * 5 + [_obs()]
        assert RepeatedFailure().check(_obs(success=False), history) is None

    def test_success_never_flagged(self):
        assert RepeatedFailure().check(_obs(), [_obs(success=False)] * 10) is None


class TestUnusualTiming:
    def test_fast_success(self):
        assert UnusualTiming().check(_obs(wall_ms=3), []).severity is Severity.LOW

    def test_fast_failure_not_flagged(self):
        assert UnusualTiming().check(_obs(wall_ms=3, success=False), []) is None

    def test_long_run(self):
        assert UnusualTiming().check(_obs(wall_ms=61_000), []).severity is Severity.HIGH

    def test_normal(self):
        assert UnusualTiming().check(_obs(wall_ms=800), []) is None


class TestSecurityEvent:
    def test_policy_denied(self):
        anomaly = SecurityEvent().check(_obs(success=False, error_kind="PolicyDenied"), [])
        assert anomaly.severity is Severity.CRITICAL

    def test_other_failures(self):
        assert SecurityEvent().check(_obs(success=False, error_kind="ToolError"), []) is None


class TestAnomalyDetector:
    def test_clean_observation(self):
        detector = AnomalyDetector()
        assert detector.observe(_obs()) == []
        assert len(detector) == 1

    def test_history_bounded(self):
        detector = AnomalyDetector(history_limit=5)
        for _ in range(8):
            detector.observe(_obs())
        assert len(detector) == 5

    def test_observation_checked_before_it_joins_history(self):
        detector = AnomalyDetector(rules=[ResourceSpike(min_history=2)])
        detector.observe(_obs(wall_ms=100))
        detector.observe(_obs(wall_ms=100))
        assert _rules(detector.observe(_obs(wall_ms=1000))) == ["resource_spike"]

    def test_several_rules_fire(self):
        detector = AnomalyDetector()
        for _ in range(3):
            detector.observe(_obs(success=False))
        anomalies = detector.observe(_obs(wall_ms=70_000, success=False, error_kind="PolicyDenied"))
        assert _rules(anomalies) == ["repeated_failure", "unusual_timing", "security_event"]
        assert highest_severity(anomalies) is Severity.CRITICAL

    def test_stats(self):
        detector = AnomalyDetector()
        detector.observe(_obs(wall_ms=100))
        detector.observe(_obs(wall_ms=5, success=True))
        detector.observe(_obs(wall_ms=300, success=False))
        stats = detector.stats()
        assert stats["observations"] == 3
        assert stats["failures"] == 1
        assert stats["avg_wall_ms"] == 135.0
        assert stats["flagged"] == {"unusual_timing": 1}

    def test_clear(self):
        detector = AnomalyDetector()
        detector.observe(_obs(wall_ms=1))
        detector.clear()
        assert len(detector) == 0
        assert detector.stats()["flagged"] == {}

    def test_highest_severity_empty(self):
        assert highest_severity([]) is None
        assert highest_severity([Anomaly(rule="x", severity=Severity.LOW, reason="")]) is Severity.LOW
