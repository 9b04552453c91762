"""
Tests for ctxmem.context — ContextRegistry lifecycle and project ids.
"""

import pytest

from ctxmem.config import CtxConfig, StoreConfig
from ctxmem.context import ContextRegistry, validate_project_id
from ctxmem.errors import StoreUnavailable


@pytest.fixture
def registry(tmp_path):
    reg = ContextRegistry(str(tmp_path), start_sweepers=False)
    yield reg
    reg.close()


class TestValidateProjectId:
    @pytest.mark.parametrize("pid", ["my-app", "App_2", "a.b", "x"])
    def test_valid(self, pid):
        assert validate_project_id(pid) == pid

    @pytest.mark.parametrize("pid", ["", "../etc", "a/b", ".hidden", "a..b", "-x", "x" * 129, None])
    def test_invalid(self, pid):
        with pytest.raises(ValueError):
            validate_project_id(pid)


class TestRegistry:
    def test_layout(self, registry, tmp_path):
        registry.open_project("alpha")
        registry.concepts()
        assert (tmp_path / "projects" / "alpha" / "memories.db").exists()
        assert (tmp_path / "global" / "concepts.db").exists()

    def test_open_is_idempotent(self, registry):
        assert registry.open_project("alpha") is registry.open_project("alpha")
        assert registry.open_projects() == ["alpha"]

    def test_store_requires_open(self, registry):
        with pytest.raises(StoreUnavailable):
            registry.store("alpha")

    def test_projects_are_isolated(self, registry):
        a = registry.open_project("alpha")
        b = registry.open_project("beta")
        a.save("Alpha secret handshake")
        assert b.search("handshake") == []
        assert registry.store("alpha").search("handshake")[0].record.project_id == "alpha"

    def test_concepts_shared(self, registry):
        assert registry.concepts() is registry.concepts()

    def test_assembler_cached(self, registry):
        registry.open_project("alpha")
        asm = registry.assembler("alpha")
        asm.set_rules(min_importance=4)
        assert registry.assembler("alpha") is asm
        assert registry.assembler("alpha").get_rules()["min_importance"] == 4

    def test_assembler_requires_open(self, registry):
        with pytest.raises(StoreUnavailable):
            registry.assembler("alpha")

    def test_close_project(self, registry):
        store = registry.open_project("alpha")
        assert registry.close_project("alpha")
        assert store.closed
        assert not registry.close_project("alpha")
        with pytest.raises(StoreUnavailable):
            registry.store("alpha")

    def test_reopen_after_close(self, registry):
        registry.open_project("alpha").save("kept across reopen")
        registry.close_project("alpha")
        assert registry.open_project("alpha").count() == 1

    def test_close_all(self, tmp_path):
        reg = ContextRegistry(str(tmp_path), start_sweepers=False)
        store = reg.open_project("alpha")
        concepts = reg.concepts()
        reg.close()
        reg.close()
        assert store.closed
        assert concepts.closed
        with pytest.raises(StoreUnavailable):
            reg.open_project("beta")

    def test_context_manager(self, tmp_path):
        with ContextRegistry(str(tmp_path), start_sweepers=False) as reg:
            store = reg.open_project("alpha")
        assert store.closed

    def test_invalid_project(self, registry):
        with pytest.raises(ValueError):
            registry.open_project("../escape")


class TestSweepers:
    def test_sweeper_started_and_cancelled(self, tmp_path):
        cfg = CtxConfig(store=StoreConfig(sweep_interval_seconds=60.0))
        reg = ContextRegistry(str(tmp_path), cfg)
        reg.open_project("alpha")
        sweeper = reg._sweepers["alpha"]
        assert sweeper.running
        reg.close()
        assert not sweeper.running
