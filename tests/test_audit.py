"""
Tests for ctxmem.mcp.audit — structured JSONL audit trail.

Checked properties:
- Every record carries v, ts, rid, tool, project, outcome, ms
- Raw content never appears beyond the 120-char preview
- d.hash is the SHA-256 of the content
- log() never raises, even on a broken output
"""

import hashlib
import io
import json

import pytest

from ctxmem.mcp.audit import AUDIT_SCHEMA_VERSION, PREVIEW_MAX_CHARS, AuditLogger


@pytest.fixture
def buf():
    return io.StringIO()


@pytest.fixture
def audit(buf):
    return AuditLogger(output=buf)


def _records(buf):
    buf.seek(0)
    return [json.loads(ln) for ln in buf.read().splitlines() if ln]


class TestRecordShape:
    def test_required_fields(self, audit, buf):
        audit.log("memory_save", audit.new_rid(), "proj", "ok", {"id": "mem_1"}, 12.345)
        (rec,) = _records(buf)
        assert rec["v"] == AUDIT_SCHEMA_VERSION
        assert rec["tool"] == "memory_save"
        assert rec["project"] == "proj"
        assert rec["outcome"] == "ok"
        assert rec["d"] == {"id": "mem_1"}
        assert rec["ms"] == 12.3
        assert rec["ts"].endswith("Z")
        assert len(rec["rid"]) == 32

    def test_no_detail_omits_d(self, audit, buf):
        audit.log("context_get_rules", audit.new_rid(), None, "rejected")
        (rec,) = _records(buf)
        assert "d" not in rec
        assert rec["project"] is None

    def test_rids_unique(self, audit):
        assert len({audit.new_rid() for _ in range(100)}) == 100

    def test_one_line_per_call(self, audit, buf):
        for i in range(3):
            audit.log("memory_get", audit.new_rid(), "proj", "ok")
        assert len(_records(buf)) == 3


class TestContentDetail:
    def test_hash_and_size(self):
        content = "héllo"
        d = AuditLogger.make_content_detail(content)
        assert d["bytes"] == len(content.encode("utf-8"))
        assert d["hash"] == hashlib.sha256(content.encode("utf-8")).hexdigest()
        assert d["preview"] == "héllo"

    def test_preview_truncated(self):
        content = "a" * 50 + "SECRET-TAIL" * 20
        d = AuditLogger.make_content_detail(content)
        assert len(d["preview"]) == PREVIEW_MAX_CHARS + 1
        assert d["preview"].endswith("…")
        assert content not in json.dumps(d)

    def test_preview_single_line(self):
        d = AuditLogger.make_content_detail("line one\nline two\r\n")
        assert "\n" not in d["preview"]
        assert "\r" not in d["preview"]


class TestFireAndForget:
    def test_closed_output(self, caplog):
        out = io.StringIO()
        out.close()
        audit = AuditLogger(output=out)
        with caplog.at_level("WARNING", logger="ctxmem.mcp.audit"):
            audit.log("memory_save", "rid", "proj", "ok")
        assert any("Audit write failed" in r.message for r in caplog.records)
