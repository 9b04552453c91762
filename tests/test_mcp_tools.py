"""
Tests for all 14 MCP tools in ctxmem.mcp.tools.

Tests use direct function calls (not MCP protocol) via a mock FastMCP.
"""

import io
import json

import pytest

from ctxmem.context import ContextRegistry
from ctxmem.mcp.audit import AuditLogger
from ctxmem.mcp.guard import ServerGuard
from ctxmem.mcp.tools import register_tools


# ---------------------------------------------------------------------------
# Mock FastMCP
# ---------------------------------------------------------------------------


class MockMCP:
    """Minimal FastMCP mock that captures tool registrations."""

    def __init__(self):
        self.tools = {}

    def tool(self):
        def decorator(fn):
            self.tools[fn.__name__] = fn
            return fn
        return decorator


def _make_env(tmp_path, project_id="proj"):
    registry = ContextRegistry(str(tmp_path), start_sweepers=False)
    guard = ServerGuard(tmp_path, max_write_bytes=4096)
    buf = io.StringIO()
    mcp = MockMCP()
    state = register_tools(
        mcp, registry, guard=guard, audit=AuditLogger(output=buf), project_id=project_id,
    )
    return {"mcp": mcp, "registry": registry, "state": state, "audit_buf": buf}


@pytest.fixture
def mcp_env(tmp_path):
    """Registry, guard, audit buffer and mock MCP with all tools registered."""
    env = _make_env(tmp_path)
    yield env
    env["registry"].close()


@pytest.fixture
def bare_env(tmp_path):
    """Same as mcp_env, with no project selected."""
    env = _make_env(tmp_path, project_id=None)
    yield env
    env["registry"].close()


def call(env, tool_name, **kwargs):
    """Call a registered MCP tool by name."""
    return env["mcp"].tools[tool_name](**kwargs)


def audit_records(env):
    buf = env["audit_buf"]
    buf.seek(0)
    return [json.loads(ln) for ln in buf.read().splitlines() if ln]


# ---------------------------------------------------------------------------
# Tool count
# ---------------------------------------------------------------------------


class TestToolCount:
    def test_14_tools_registered(self, mcp_env):
        assert len(mcp_env["mcp"].tools) == 14

    def test_all_tool_names(self, mcp_env):
        expected = {
            "context_preview",
            "memory_save", "memory_search", "memory_get_recent", "memory_get",
            "memory_get_multiple", "memory_forget",
            "concept_search", "concept_get", "concept_save", "concept_allowlist",
            "context_get_rules", "context_set_rules",
            "project_select",
        }
        assert set(mcp_env["mcp"].tools.keys()) == expected


# ---------------------------------------------------------------------------
# Project resolution
# ---------------------------------------------------------------------------


class TestProjectResolution:
    def test_no_project_rejected(self, bare_env):
        r = call(bare_env, "memory_save", summary="x")
        assert r["status"] == "rejected"
        assert "No project selected" in r["message"]

    def test_explicit_project(self, bare_env):
        r = call(bare_env, "memory_save", summary="x", project_id="explicit")
        assert r["status"] == "ok"
        assert r["record"]["project_id"] == "explicit"

    def test_invalid_project(self, mcp_env):
        r = call(mcp_env, "memory_search", query="x", project_id="../escape")
        assert r["status"] == "rejected"

    def test_override_isolated(self, mcp_env):
        call(mcp_env, "memory_save", summary="Other project handshake", project_id="other")
        assert call(mcp_env, "memory_search", query="handshake")["count"] == 0
        r = call(mcp_env, "memory_search", query="handshake", project_id="other")
        assert r["count"] == 1

    def test_project_select(self, bare_env):
        r = call(bare_env, "project_select", project_id="alpha")
        assert r == {"status": "ok", "project_id": "alpha", "previous": None}
        assert bare_env["state"]["project"] == "alpha"
        assert call(bare_env, "memory_save", summary="x")["record"]["project_id"] == "alpha"
        r = call(bare_env, "project_select", project_id="beta")
        assert r["previous"] == "alpha"

    def test_project_select_invalid(self, mcp_env):
        r = call(mcp_env, "project_select", project_id="a/b")
        assert r["status"] == "rejected"
        assert mcp_env["state"]["project"] == "proj"


# ---------------------------------------------------------------------------
# Memory tools
# ---------------------------------------------------------------------------


class TestMemorySave:
    def test_save(self, mcp_env):
        r = call(mcp_env, "memory_save", summary="Auth uses JWT", tags=["auth"],
                 paths=["src/auth/"], importance=4)
        assert r["status"] == "ok"
        assert r["id"].startswith("mem_")
        assert r["record"]["importance"] == 4
        assert r["record"]["paths"] == ["src/auth/"]

    def test_dedupe_returns_same_id(self, mcp_env):
        a = call(mcp_env, "memory_save", summary="Auth uses JWT", paths=["src"])
        b = call(mcp_env, "memory_save", summary="auth uses jwt", paths=["src"], text="more")
        assert a["id"] == b["id"]

    def test_invalid_importance(self, mcp_env):
        r = call(mcp_env, "memory_save", summary="x", importance=9)
        assert r["status"] == "error"
        assert r["message"].startswith("Save failed")

    def test_too_large(self, mcp_env):
        r = call(mcp_env, "memory_save", summary="big", text="x" * 5000)
        assert r["status"] == "rejected"
        assert "exceeds limit" in r["message"]

    def test_audited_with_hash(self, mcp_env):
        call(mcp_env, "memory_save", summary="Auth uses JWT", text="details")
        (rec,) = audit_records(mcp_env)
        assert rec["tool"] == "memory_save"
        assert rec["outcome"] == "ok"
        assert rec["project"] == "proj"
        assert len(rec["d"]["hash"]) == 64
        assert rec["d"]["id"].startswith("mem_")


class TestMemorySearch:
    def test_search(self, mcp_env):
        saved = call(mcp_env, "memory_save", summary="Connection pool sizing")
        r = call(mcp_env, "memory_search", query="pool")
        assert r["count"] == 1
        assert r["results"][0]["record"]["id"] == saved["id"]
        assert "queries_tried" not in r

    def test_debug_trace(self, mcp_env):
        call(mcp_env, "memory_save", summary="foo bar handling")
        r = call(mcp_env, "memory_search", query="foo-bar!", debug=True)
        assert r["status"] == "ok"
        assert r["stage_used"] == "SANITIZED"
        assert r["queries_tried"][:2] == ["foo-bar!", "foo bar"]
        assert r["degraded"][0]["stage"] == "LITERAL"
        assert r["count"] == 1

    def test_tag_filter(self, mcp_env):
        call(mcp_env, "memory_save", summary="auth one", tags=["a"])
        call(mcp_env, "memory_save", summary="auth two", tags=["b"])
        r = call(mcp_env, "memory_search", query="auth", tags=["b"])
        assert [x["record"]["summary"] for x in r["results"]] == ["auth two"]

    def test_preview_dry_run(self, mcp_env):
        call(mcp_env, "memory_save", summary="auth one")
        call(mcp_env, "memory_save", summary="auth two")
        r = call(mcp_env, "memory_search", query="auth", k=1, preview=True)
        assert r["status"] == "ok"
        assert r["would_return"] == 1
        assert r["total_matches"] == 2
        assert r["stage_used"] == "LITERAL"
        assert "results" not in r


class TestMemoryRead:
    def test_get(self, mcp_env):
        saved = call(mcp_env, "memory_save", summary="readable")
        r = call(mcp_env, "memory_get", id=saved["id"])
        assert r["found"]
        assert r["record"]["summary"] == "readable"

    def test_get_missing(self, mcp_env):
        r = call(mcp_env, "memory_get", id="mem_missing")
        assert r == {"status": "ok", "found": False, "record": None}

    def test_get_multiple(self, mcp_env):
        saved = call(mcp_env, "memory_save", summary="readable")
        r = call(mcp_env, "memory_get_multiple", ids=[saved["id"], "mem_missing"])
        assert r["records"][saved["id"]]["summary"] == "readable"
        assert r["records"]["mem_missing"] is None

    def test_get_recent(self, mcp_env):
        call(mcp_env, "memory_save", summary="api", paths=["src/api/x.py"])
        call(mcp_env, "memory_save", summary="ui", paths=["src/ui/y.ts"])
        r = call(mcp_env, "memory_get_recent", k=5)
        assert [x["summary"] for x in r["records"]] == ["ui", "api"]
        r = call(mcp_env, "memory_get_recent", path_prefix="src/api")
        assert r["count"] == 1


class TestMemoryForget:
    def test_forget_twice(self, mcp_env):
        saved = call(mcp_env, "memory_save", summary="doomed")
        r = call(mcp_env, "memory_forget", id=saved["id"])
        assert r["status"] == "ok"
        assert r["ok"] is True
        r = call(mcp_env, "memory_forget", id=saved["id"])
        assert r["status"] == "ok"
        assert r["ok"] is False
        assert "not found" in r["message"]


# ---------------------------------------------------------------------------
# context_preview
# ---------------------------------------------------------------------------


class TestContextPreview:
    def test_preview(self, mcp_env):
        saved = call(
            mcp_env, "memory_save", summary="JWT auth flow", tags=["auth", "security"],
            paths=["src/middleware/auth.ts"], importance=5,
        )
        r = call(mcp_env, "context_preview", task="fix auth bug",
                 open_files=["src/middleware/auth.ts"], budget_bytes=200)
        assert r["status"] == "ok"
        assert r["format_version"] == 1
        assert r["injections"][0]["id"] == saved["id"]
        assert r["budget_used"] <= 200
        assert r["inject_text"].startswith("## Context (Injected)")
        assert "## JWT auth flow" in r["inject_text"]

    def test_empty(self, mcp_env):
        r = call(mcp_env, "context_preview", task="fix auth bug")
        assert r["status"] == "ok"
        assert r["inject_text"] == ""
        assert r["injections"] == []

    def test_invalid_mode(self, mcp_env):
        r = call(mcp_env, "context_preview", task="x", mode="loose")
        assert r["status"] == "error"
        assert "Invalid mode" in r["message"]

    def test_respects_rules(self, mcp_env):
        call(mcp_env, "memory_save", summary="auth trivia", importance=1)
        assert call(mcp_env, "context_preview", task="auth bug")["injections"] == []
        call(mcp_env, "context_set_rules", min_importance=1)
        assert len(call(mcp_env, "context_preview", task="auth bug")["injections"]) == 1


# ---------------------------------------------------------------------------
# Concepts
# ---------------------------------------------------------------------------


class TestConceptTools:
    def test_save_and_get(self, mcp_env):
        r = call(mcp_env, "concept_save", title="Retry with backoff", tags=["http"])
        assert r["status"] == "ok"
        assert "warning" not in r
        got = call(mcp_env, "concept_get", concept_id=r["id"])
        assert got["found"]
        assert got["concept"]["title"] == "Retry with backoff"

    def test_get_missing(self, mcp_env):
        r = call(mcp_env, "concept_get", concept_id="nope")
        assert r["found"] is False

    def test_long_body_warning(self, mcp_env):
        r = call(mcp_env, "concept_save", title="Verbose", body="x" * 1500)
        assert r["status"] == "ok"
        assert "recommended" in r["warning"]

    def test_invalid_relationship(self, mcp_env):
        r = call(mcp_env, "concept_save", title="t", relationship="likes")
        assert r["status"] == "error"

    def test_related_edges_visible(self, mcp_env):
        a = call(mcp_env, "concept_save", title="A", tags=["x", "y"])
        b = call(mcp_env, "concept_save", title="B", tags=["x", "y"])
        edges = call(mcp_env, "concept_get", concept_id=b["id"])["concept"]["edges"]
        assert edges[0]["target_id"] == a["id"]
        assert edges[0]["inferred"] is True

    def test_search_empty_lists_all(self, mcp_env):
        call(mcp_env, "concept_save", title="Low", importance=1)
        call(mcp_env, "concept_save", title="High", importance=5)
        r = call(mcp_env, "concept_search", query="")
        assert r["status"] == "ok"
        assert [x["concept"]["title"] for x in r["results"]] == ["High", "Low"]
        assert r["meta"]["wildcard"] is True

    def test_search_fallback_flag(self, mcp_env):
        call(mcp_env, "concept_save", title="Retry with backoff")
        r = call(mcp_env, "concept_search", query="kubernetes")
        assert r["count"] == 1
        assert r["meta"]["fallback_used"] is True
        assert r["results"][0]["matched"] is False

    def test_search_without_project(self, bare_env):
        call(bare_env, "concept_save", title="Global")
        assert call(bare_env, "concept_search", query="global")["count"] == 1

    def test_restrict_requires_project(self, bare_env):
        r = call(bare_env, "concept_search", query="", restrict_to_project=True)
        assert r["status"] == "rejected"

    def test_allowlist_and_restrict(self, mcp_env):
        a = call(mcp_env, "concept_save", title="Allowed")
        call(mcp_env, "concept_save", title="Hidden", importance=5)
        r = call(mcp_env, "concept_allowlist", add=[a["id"], "unknown"])
        assert r["added"] == [a["id"]]
        assert r["allowlist"] == [a["id"]]
        r = call(mcp_env, "concept_search", query="", restrict_to_project=True)
        assert [x["concept"]["id"] for x in r["results"]] == [a["id"]]
        r = call(mcp_env, "concept_allowlist", remove=[a["id"]])
        assert r["removed"] == [a["id"]]
        assert r["allowlist"] == []

    def test_allowlist_no_project(self, bare_env):
        r = call(bare_env, "concept_allowlist", add=["x"])
        assert r["status"] == "rejected"

    def test_smart_preview_uses_allowlist(self, mcp_env):
        c = call(mcp_env, "concept_save", title="Auth token rotation", tags=["auth"], importance=4)
        assert call(mcp_env, "context_preview", task="fix auth bug")["injections"] == []
        call(mcp_env, "concept_allowlist", add=[c["id"]])
        r = call(mcp_env, "context_preview", task="fix auth bug")
        assert [i["id"] for i in r["injections"]] == [c["id"]]
        assert r["injections"][0]["source"] == f"global:{c['id']}"


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


class TestRules:
    def test_get_rules(self, mcp_env):
        r = call(mcp_env, "context_get_rules")
        assert r["status"] == "ok"
        assert r["rules"]["min_importance"] == 2

    def test_set_rules(self, mcp_env):
        r = call(mcp_env, "context_set_rules", min_importance=3, dedupe_threshold=0.9)
        assert r["status"] == "ok"
        assert r["changed"] == ["dedupe_threshold", "min_importance"]
        assert call(mcp_env, "context_get_rules")["rules"]["min_importance"] == 3

    def test_set_rules_invalid(self, mcp_env):
        r = call(mcp_env, "context_set_rules", min_importance=0)
        assert r["status"] == "error"
        assert call(mcp_env, "context_get_rules")["rules"]["min_importance"] == 2

    def test_rules_per_project(self, mcp_env):
        call(mcp_env, "context_set_rules", min_importance=4)
        r = call(mcp_env, "context_get_rules", project_id="other")
        assert r["rules"]["min_importance"] == 2


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


class TestAudit:
    def test_every_call_audited(self, mcp_env):
        call(mcp_env, "memory_save", summary="x")
        call(mcp_env, "memory_search", query="x")
        call(mcp_env, "concept_search")
        call(mcp_env, "context_get_rules")
        tools = [r["tool"] for r in audit_records(mcp_env)]
        assert tools == ["memory_save", "memory_search", "concept_search", "context_get_rules"]

    def test_rejected_outcome(self, bare_env):
        call(bare_env, "memory_get", id="mem_x")
        (rec,) = audit_records(bare_env)
        assert rec["outcome"] == "rejected"
        assert rec["project"] is None

    def test_error_outcome(self, mcp_env):
        call(mcp_env, "memory_save", summary="   ")
        (rec,) = audit_records(mcp_env)
        assert rec["outcome"] == "error"
