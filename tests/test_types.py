"""
Tests for ctxmem.types — dataclasses, ids, fingerprints, validation.
"""

import json

import pytest

from ctxmem.types import (
    AllowlistUpdate,
    Concept,
    ConceptEdge,
    ContextPreview,
    Injection,
    MemoryRecord,
    SearchDebug,
    SearchHit,
    StageFailure,
    _iso_after,
    _now_iso,
    _parse_iso,
    check_importance,
    concept_id_for,
    fingerprint,
    slugify,
)


class TestFingerprint:
    def test_normalized_summary(self):
        assert fingerprint("JWT Auth flow!", ["src/a.ts"]) == fingerprint(
            "  jwt   auth FLOW ", ["src/a.ts"]
        )

    def test_path_order_irrelevant(self):
        assert fingerprint("x", ["b", "a"]) == fingerprint("x", ["a", "b"])

    def test_paths_matter(self):
        assert fingerprint("x", ["a"]) != fingerprint("x", ["b"])

    def test_prefix(self):
        assert fingerprint("x", []).startswith("sha256:")


class TestIds:
    def test_memory_id_prefix(self):
        rec = MemoryRecord(summary="s")
        assert rec.id.startswith("mem_")
        assert len(rec.id) == len("mem_") + 16

    def test_slugify(self):
        assert slugify("Use Dependency Injection!") == "use-dependency-injection"
        assert slugify("***") == ""

    def test_concept_id_suffix(self):
        cid = concept_id_for("Retry with backoff")
        assert cid.startswith("retry-with-backoff-")
        assert len(cid.rsplit("-", 1)[1]) == 6

    def test_concept_id_empty_slug(self):
        assert concept_id_for("!!!").startswith("concept-")

    def test_concept_autogenerates_id(self):
        assert Concept(title="Idempotent handlers").id.startswith("idempotent-handlers-")


class TestTimestamps:
    def test_lexicographic_order(self):
        assert _now_iso() < _iso_after(5)

    def test_microseconds(self):
        assert "." in _now_iso()

    def test_parse_roundtrip(self):
        ts = _now_iso()
        assert _parse_iso(ts).isoformat(timespec="microseconds") == ts

    def test_parse_garbage(self):
        assert _parse_iso("not a date") is None
        assert _parse_iso(None) is None


class TestImportance:
    @pytest.mark.parametrize("value", [1, 3, 5])
    def test_valid(self, value):
        assert check_importance(value) == value

    @pytest.mark.parametrize("value", [0, 6, -1, 2.5, True, "3"])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            check_importance(value)


class TestMemoryRecord:
    def test_cleans_tags_and_paths(self):
        rec = MemoryRecord(summary="s", tags=[" auth ", "auth", ""], paths=["a", "a"])
        assert rec.tags == ["auth"]
        assert rec.paths == ["a"]

    def test_fingerprint_computed(self):
        rec = MemoryRecord(summary="Hello", paths=["p"])
        assert rec.fingerprint == fingerprint("Hello", ["p"])

    def test_is_expired(self):
        assert not MemoryRecord(summary="s").is_expired()
        assert MemoryRecord(summary="s", expires_at=_iso_after(-1)).is_expired()
        assert not MemoryRecord(summary="s", expires_at=_iso_after(60)).is_expired()

    def test_dict_roundtrip(self):
        rec = MemoryRecord(summary="s", tags=["a"], importance=4, ttl=60)
        again = MemoryRecord.from_dict(json.loads(json.dumps(rec.to_dict())))
        assert again == rec

    def test_from_dict_ignores_unknown(self):
        rec = MemoryRecord.from_dict({"summary": "s", "bogus": 1})
        assert rec.summary == "s"


class TestConceptTypes:
    def test_invalid_provenance(self):
        with pytest.raises(ValueError):
            Concept(title="t", provenance="scraped")

    def test_invalid_edge_type(self):
        with pytest.raises(ValueError):
            ConceptEdge(source_id="a", target_id="b", type="likes")

    def test_edge_strength_range(self):
        with pytest.raises(ValueError):
            ConceptEdge(source_id="a", target_id="b", strength=1.5)

    def test_concept_to_dict_includes_edges(self):
        c = Concept(title="t", edges=[ConceptEdge(source_id="t", target_id="u")])
        assert c.to_dict()["edges"][0]["target_id"] == "u"

    def test_allowlist_update_drops_unset(self):
        assert AllowlistUpdate(added=["a"]).to_dict() == {"added": ["a"]}


class TestResultTypes:
    def test_injection_byte_size_utf8(self):
        inj = Injection(id="x", type="memory", summary="s", content="é", score=1.0, source="p:x")
        assert inj.byte_size == 2

    def test_search_debug_to_dict(self):
        dbg = SearchDebug(
            results=[SearchHit(record=MemoryRecord(summary="s"), relevance=1.5)],
            queries_tried=["a"],
            stage_used="LITERAL",
            degraded=[StageFailure(stage="LITERAL", query="a!", error="syntax")],
        )
        d = json.loads(json.dumps(dbg.to_dict()))
        assert d["stage_used"] == "LITERAL"
        assert d["results"][0]["relevance"] == 1.5
        assert d["degraded"][0]["error"] == "syntax"

    def test_preview_to_dict(self):
        d = ContextPreview(budget_limit=100, top_k=3).to_dict()
        assert d["injections"] == []
        assert d["stats"]["total_candidates"] == 0
