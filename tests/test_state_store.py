"""
Tests for RepoState and the state stores.
"""

import json
from pathlib import Path

import pytest

from stack_cascade.models import (
    BranchMetadata,
    CycleDetectedError,
    DuplicateDependencyError,
    StateUnreadableError,
    UnknownRootError,
)
from stack_cascade.state_store import JsonStateStore, MemoryStateStore, RepoState

from conftest import make_state


class TestDependencies:
    """Test dependency mutations and derived indices."""

    def test_add_dependency_updates_indices(self):
        state = RepoState()
        state.add_dependency("b", "a")
        state.add_dependency("c", "a")
        assert state.get_children("a") == ["b", "c"]
        assert state.get_parents("b") == ["a"]

    def test_parents_keep_declaration_order(self):
        state = make_state([("d", "c"), ("d", "a"), ("d", "b")])
        assert state.get_parents("d") == ["c", "a", "b"]

    def test_rejected_edge_leaves_state_untouched(self):
        state = make_state([("b", "a"), ("c", "b")])
        before = [(d.child, d.parent) for d in state.dependencies]

        with pytest.raises(CycleDetectedError):
            state.add_dependency("a", "c")
        with pytest.raises(DuplicateDependencyError):
            state.add_dependency("b", "a")
        with pytest.raises(CycleDetectedError):
            state.add_dependency("x", "x")

        assert [(d.child, d.parent) for d in state.dependencies] == before
        assert state.get_parents("a") == []

    def test_remove_dependency(self):
        state = make_state([("b", "a")])
        assert state.remove_dependency("b", "a") is True
        assert state.remove_dependency("b", "a") is False
        assert state.get_children("a") == []

    def test_remove_all_dependencies_for_branch(self):
        state = make_state([("b", "a"), ("c", "b"), ("d", "a")])
        assert state.remove_all_dependencies_for_branch("b") == 2
        assert [(d.child, d.parent) for d in state.dependencies] == [("d", "a")]

    def test_rebuilding_indices_is_deterministic(self):
        state = make_state([("b", "a"), ("c", "b"), ("c", "a"), ("d", "c")])
        first = (state.children_index, state.parents_index)
        state.rebuild_indices()
        state.rebuild_indices()
        assert (state.children_index, state.parents_index) == first


class TestRoots:
    """Test root designation rules."""

    def test_single_default_root(self):
        state = RepoState()
        state.add_root("main", is_default=True)
        state.add_root("develop", is_default=True)
        assert state.get_default_root() == "develop"
        assert [r.branch for r in state.root_branches if r.is_default] == ["develop"]

    def test_readding_root_only_updates_flag(self):
        state = RepoState()
        state.add_root("main")
        state.add_root("main", is_default=True)
        assert state.root_branch_names() == ["main"]
        assert state.get_default_root() == "main"

    def test_set_default_root_requires_root(self):
        state = make_state(roots=["main"])
        with pytest.raises(UnknownRootError):
            state.set_default_root("feature")
        state.set_default_root("main")
        assert state.get_default_root() == "main"

    def test_effective_default_falls_back_to_first_root(self):
        state = make_state(roots=["main", "develop"])
        assert state.get_default_root() is None
        assert state.effective_default_root() == "main"

    def test_remove_root(self):
        state = make_state(roots=["main"])
        assert state.remove_root("main") is True
        assert not state.is_root("main")
        assert state.remove_root("main") is False


class TestMetadataAndEviction:
    """Test metadata index and stale branch eviction."""

    def test_issue_index(self):
        state = RepoState()
        state.set_branch_metadata(BranchMetadata(branch="feat", jira_issue="PROJ-12", github_pr=7))
        assert state.branch_for_issue("PROJ-12") == "feat"
        state.remove_branch_metadata("feat")
        assert state.branch_for_issue("PROJ-12") is None

    def test_evicts_missing_children_but_keeps_roots(self):
        state = make_state([("gone", "main"), ("b", "main"), ("release", "main")], roots=["main", "release"])
        state.set_branch_metadata(BranchMetadata(branch="gone", jira_issue="PROJ-1"))

        report = state.evict_stale_branches(["main", "b"])

        assert [(d.child, d.parent) for d in report.removed_dependencies] == [("gone", "main")]
        assert report.removed_metadata == ["gone"]
        assert [(d.child, d.parent) for d in state.dependencies] == [("b", "main"), ("release", "main")]
        assert state.branch_for_issue("PROJ-1") is None

    def test_plan_eviction_does_not_mutate(self):
        state = make_state([("gone", "main")])
        report = state.plan_eviction(["main"])
        assert len(report.removed_dependencies) == 1
        assert len(state.dependencies) == 1

    def test_nothing_to_evict(self):
        state = make_state([("b", "main")])
        assert state.evict_stale_branches(["main", "b"]).is_empty


class TestJsonStateStore:
    """Test the file-backed store."""

    def test_missing_file_loads_empty_state(self, tmp_path: Path):
        state = JsonStateStore(tmp_path).load()
        assert state.dependencies == []
        assert state.root_branches == []

    def test_round_trip_rebuilds_graph_shape(self, tmp_path: Path):
        store = JsonStateStore(tmp_path)
        state = make_state([("b", "a"), ("c", "b"), ("c", "a")], roots=["a"], default="a")
        store.save(state)

        loaded = store.load()
        assert loaded.children_index == state.children_index
        assert loaded.parents_index == state.parents_index
        assert loaded.get_default_root() == "a"
        assert [d.id for d in loaded.dependencies] == [d.id for d in state.dependencies]

    def test_indices_are_not_written(self, tmp_path: Path):
        store = JsonStateStore(tmp_path)
        store.save(make_state([("b", "a")]))
        document = json.loads(store.state_path.read_text())
        assert set(document) == {"version", "updated_at", "branches", "dependencies", "root_branches"}

    def test_serialized_indices_are_ignored(self, tmp_path: Path):
        store = JsonStateStore(tmp_path)
        store.state_dir.mkdir()
        store.state_path.write_text(json.dumps({
            "version": 1,
            "dependencies": [{"child": "b", "parent": "a"}],
            "root_branches": [],
            "branches": {},
            "dependency_children_index": {"a": ["zzz"]},
        }))
        assert store.load().get_children("a") == ["b"]

    def test_corrupt_file_is_fatal(self, tmp_path: Path):
        store = JsonStateStore(tmp_path)
        store.state_dir.mkdir()
        store.state_path.write_text("{not json")
        with pytest.raises(StateUnreadableError):
            store.load()

    @pytest.mark.parametrize(
        "document",
        [
            {"dependencies": [{"child": "b"}]},
            {"dependencies": [{"child": "b", "parent": "a", "created_at": 123}]},
            {"branches": [{"branch": "b"}]},
            {"branches": {"b": "PROJ-1"}},
            {"dependencies": ["b->a"]},
            {"root_branches": {"branch": "main"}},
            {"root_branches": [{"branch": "main", "is_default": "maybe"}]},
            {"updated_at": 5},
        ],
    )
    def test_malformed_document_is_fatal(self, tmp_path: Path, document):
        store = JsonStateStore(tmp_path)
        store.state_dir.mkdir()
        store.state_path.write_text(json.dumps(document))
        with pytest.raises(StateUnreadableError):
            store.load()

    def test_load_keeps_a_single_default_root(self):
        state = RepoState.from_dict(
            {
                "root_branches": [
                    {"branch": "main", "is_default": "false"},
                    {"branch": "develop", "is_default": True},
                    {"branch": "release", "is_default": "true"},
                ]
            }
        )
        assert [r.branch for r in state.root_branches if r.is_default] == ["develop"]
        assert state.get_default_root() == "develop"

    def test_first_save_adds_gitignore_entry_once(self, tmp_path: Path):
        (tmp_path / ".gitignore").write_text("*.pyc")
        store = JsonStateStore(tmp_path)
        store.save(RepoState())
        store.save(RepoState())
        assert (tmp_path / ".gitignore").read_text() == "*.pyc\n.stack-cascade/\n"


class TestMemoryStateStore:
    """Test the in-memory store used for injection."""

    def test_load_returns_independent_copies(self):
        store = MemoryStateStore(make_state([("b", "a")]))
        first = store.load()
        first.add_dependency("c", "b")
        assert len(store.load().dependencies) == 1

        store.save(first)
        assert store.load().get_parents("c") == ["b"]
        assert store.save_count == 1
