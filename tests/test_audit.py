"""Tests for the hash-chained audit trail."""

import json

import pydantic
import pytest

from mcpx.audit.trail import GENESIS_HASH, AuditTrail, load_file, verify_chain, verify_file
from mcpx.core.models import AuditRecord, Phase
from mcpx.exceptions import McpxIOError


def _record(execution_id="exec-1", phase=Phase.DISCOVERY, decision="selected", **kwargs):
    return AuditRecord(execution_id=execution_id, phase=phase, decision=decision, **kwargs)


class TestAuditTrail:
    def test_empty(self):
        trail = AuditTrail()
        assert len(trail) == 0
        assert trail.verify_integrity() == (True, "Empty log, nothing to verify")
        assert trail.head_hash == GENESIS_HASH

    def test_chain_links(self):
        trail = AuditTrail()
        h1 = trail.append(_record())
        h2 = trail.append(_record(phase=Phase.GENERATION, decision="generated"))
        assert h1.sequence == 0
        assert h1.previous_hash == GENESIS_HASH
        assert h2.previous_hash == h1.hash
        assert trail.head_hash == h2.hash

    def test_verify_intact(self):
        trail = AuditTrail()
        for i in range(10):
            trail.append(_record(execution_id=f"exec-{i}"))
        valid, msg = trail.verify_integrity()
        assert valid is True
        assert "10 records verified" in msg

    def test_tampered_hash_detected(self):
        trail = AuditTrail()
        trail.append(_record())
        trail.append(_record(decision="again"))
        trail._events[0].hash = "0" * 63 + "1"
        valid, msg = trail.verify_integrity()
        assert valid is False
        assert "Tampered" in msg or "Chain broken" in msg

    def test_records_are_frozen(self):
        record = _record()
        with pytest.raises(pydantic.ValidationError, match="frozen"):
            record.decision = "changed"

    def test_record_contents_are_read_only(self):
        details = {"scores": {"fs.read_file": 1.0}, "servers": ["fs"]}
        tools = ["fs.read_file"]
        trail = AuditTrail()
        event = trail.append(_record(details=details, tools_selected=tools))

        details["scores"]["fs.read_file"] = 0.0
        tools.append("fs.write_file")
        assert event.record.details["scores"]["fs.read_file"] == 1.0
        assert event.record.tools_selected == ("fs.read_file",)
        assert event.record.details["servers"] == ("fs",)
        with pytest.raises(TypeError):
            event.record.details["scores"]["fs.read_file"] = 0.0
        assert trail.verify_integrity()[0] is True

    def test_default_details_are_read_only(self):
        with pytest.raises(TypeError):
            _record().details["injected"] = True

    def test_serialized_details_are_plain(self):
        record = _record(details={"violations": [{"kind": "code_eval"}]})
        assert record.model_dump(mode="json")["details"] == {"violations": [{"kind": "code_eval"}]}

    def test_get_events_filters(self):
        trail = AuditTrail()
        trail.append(_record(execution_id="a"))
        trail.append(_record(execution_id="a", phase=Phase.VALIDATION, decision="failed", error_kind="PolicyDenied"))
        trail.append(_record(execution_id="b"))
        assert len(trail.get_events(execution_id="a")) == 2
        assert len(trail.get_events(phase="validation")) == 1
        assert len(trail.get_events(decision="selected")) == 2

    def test_export_json(self, tmp_path):
        trail = AuditTrail()
        trail.append(_record())
        out = tmp_path / "export.json"
        trail.export_json(out)
        data = json.loads(out.read_text())
        assert data["total_events"] == 1
        assert data["chain_head"] == trail.head_hash


class TestAuditFile:
    def test_lines_written(self, tmp_path):
        path = tmp_path / "logs" / "audit.log"
        trail = AuditTrail(path)
        trail.append(_record())
        trail.append(_record(decision="second"))
        lines = path.read_text().splitlines()
        assert len(lines) == 2
        assert json.loads(lines[1])["record"]["decision"] == "second"

    def test_reopen_continues_chain(self, tmp_path):
        path = tmp_path / "audit.log"
        first = AuditTrail(path)
        head = first.append(_record()).hash

        second = AuditTrail(path)
        appended = second.append(_record(decision="later"))
        assert appended.previous_hash == head
        assert appended.sequence == 1
        assert verify_file(path) == (True, "All 2 records verified, chain intact")

    def test_edited_line_breaks_chain(self, tmp_path):
        path = tmp_path / "audit.log"
        trail = AuditTrail(path)
        trail.append(_record())
        trail.append(_record(decision="second"))

        lines = path.read_text().splitlines()
        data = json.loads(lines[0])
        data["record"]["decision"] = "forged"
        lines[0] = json.dumps(data)
        path.write_text("\n".join(lines) + "\n")

        valid, msg = verify_file(path)
        assert valid is False
        assert "Tampered record at 0" in msg

    def test_load_file_round_trip(self, tmp_path):
        path = tmp_path / "audit.log"
        trail = AuditTrail(path)
        trail.append(_record(details={"scores": {"fs.read_file": 1.0}}))
        (event,) = load_file(path)
        assert event.record.details == {"scores": {"fs.read_file": 1.0}}
        assert verify_chain([event])[0] is True

    def test_unreadable_line(self, tmp_path):
        path = tmp_path / "audit.log"
        path.write_text("not json\n")
        with pytest.raises(McpxIOError):
            load_file(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(McpxIOError):
            load_file(tmp_path / "absent.log")

    def test_unwritable_path(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("")
        trail = AuditTrail(blocker / "audit.log")
        with pytest.raises(McpxIOError):
            trail.append(_record())
