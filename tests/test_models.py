"""Tests for MCPX core data models."""

import pydantic
import pytest

from mcpx.core.models import (
    ExecuteOptions,
    ExecutionResult,
    Language,
    NetworkMode,
    NetworkPolicy,
    ResourceLimits,
    RiskLevel,
    Severity,
    ToolDescriptor,
    ValidationReport,
    Violation,
    parse_size,
)


class TestLanguage:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("ts", Language.TYPESCRIPT),
            ("TypeScript", Language.TYPESCRIPT),
            ("py", Language.PYTHON),
            (" python ", Language.PYTHON),
        ],
    )
    def test_parse(self, raw, expected):
        assert Language.parse(raw) is expected

    def test_parse_rejects_unknown(self):
        with pytest.raises(ValueError):
            Language.parse("rust")

    def test_extension(self):
        assert Language.PYTHON.extension == ".py"
        assert Language.TYPESCRIPT.extension == ".ts"


class TestRiskLevel:
    @pytest.mark.parametrize(
        "score,level",
        [(0, RiskLevel.LOW), (24, RiskLevel.LOW), (25, RiskLevel.MEDIUM), (59, RiskLevel.MEDIUM),
         (60, RiskLevel.HIGH), (84, RiskLevel.HIGH), (85, RiskLevel.CRITICAL), (100, RiskLevel.CRITICAL)],
    )
    def test_from_score(self, score, level):
        assert RiskLevel.from_score(score) is level

    def test_rank_is_ordered(self):
        assert RiskLevel.LOW.rank < RiskLevel.MEDIUM.rank < RiskLevel.HIGH.rank < RiskLevel.CRITICAL.rank


class TestToolDescriptor:
    def test_hash_filled_and_stable(self):
        a = ToolDescriptor(name="read_file", server="fs", description="Read")
        b = ToolDescriptor(name="read_file", server="fs", description="Read")
        assert a.content_hash
        assert a.content_hash == b.content_hash

    def test_hash_changes_with_schema(self):
        a = ToolDescriptor(name="t", input_schema={"type": "object", "properties": {}})
        b = ToolDescriptor(name="t", input_schema={"type": "object", "properties": {"x": {"type": "string"}}})
        assert a.content_hash != b.content_hash

    def test_frozen(self):
        d = ToolDescriptor(name="t")
        with pytest.raises(pydantic.ValidationError):
            d.name = "other"

    def test_accessors(self, read_file_tool):
        assert read_file_tool.key == ("fs", "read_file")
        assert read_file_tool.fqn == "fs.read_file"
        assert read_file_tool.required == ["path"]
        assert "path" in read_file_tool.properties


class TestSandboxModels:
    @pytest.mark.parametrize(
        "raw,expected",
        [(1024, 1024), ("512M", 512 * 1024**2), ("1G", 1024**3), ("64kb", 64 * 1024), ("10", 10)],
    )
    def test_parse_size(self, raw, expected):
        assert parse_size(raw) == expected

    def test_parse_size_invalid(self):
        with pytest.raises(ValueError):
            parse_size("lots")

    def test_resource_limits_accept_sizes(self):
        limits = ResourceLimits(memory_bytes="256M")
        assert limits.memory_bytes == 256 * 1024**2

    def test_resource_limits_wall_clock_bounds(self):
        with pytest.raises(pydantic.ValidationError):
            ResourceLimits(wall_clock_ms=300_001)

    def test_network_off_permits_nothing(self):
        assert NetworkPolicy().permits("example.com") is False

    def test_network_allowlist(self):
        policy = NetworkPolicy(mode=NetworkMode.ALLOWLIST, hosts=["example.com"])
        assert policy.permits("example.com")
        assert policy.permits("api.example.com")
        assert not policy.permits("badexample.com")
        assert not policy.permits("")


class TestValidationReport:
    def test_critical_violation_blocks(self):
        report = ValidationReport(
            risk_score=10,
            risk_level=RiskLevel.LOW,
            violations=[Violation(kind="code_eval", severity=Severity.CRITICAL, weight=100, message="eval")],
        )
        assert report.has_critical
        assert report.allowed is False

    def test_high_risk_allowed(self):
        assert ValidationReport(risk_score=70, risk_level=RiskLevel.HIGH).allowed


class TestExecutionResult:
    def test_redactions_not_serialized(self):
        result = ExecutionResult(success=True, summary="ok", redactions={"EMAIL_1": "a@b.com"})
        dumped = result.model_dump()
        assert "redactions" not in dumped
        assert "a@b.com" not in result.model_dump_json()
        assert "a@b.com" not in repr(result)

    def test_execution_id_generated(self):
        assert ExecutionResult(success=True, summary="").execution_id


class TestExecuteOptions:
    def test_defaults(self):
        options = ExecuteOptions()
        assert options.max_tools == 5
        assert options.threshold == 0.3
        assert options.redact.post_execution is True
        assert options.redact.pre_execution is False

    def test_timeout_bounds(self):
        with pytest.raises(pydantic.ValidationError):
            ExecuteOptions(timeout_ms=0)
