"""
Persistent per-repository record of branch dependencies, roots and metadata.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .cycle_guard import check_new_dependency
from .models import (
    BranchDependency,
    BranchMetadata,
    EvictionReport,
    RootBranch,
    StateUnreadableError,
    UnknownRootError,
    _parse_timestamp,
    utc_now,
)


logger = logging.getLogger(__name__)

STATE_DIR_NAME = ".stack-cascade"
STATE_FILE_NAME = "state.json"
STATE_VERSION = 1


class RepoState:
    """Canonical dependency, root and metadata lists plus derived lookup indices.

    The indices are never persisted. They are rebuilt from the canonical lists on
    construction and after every mutation.
    """

    def __init__(
        self,
        dependencies: Optional[Iterable[BranchDependency]] = None,
        root_branches: Optional[Iterable[RootBranch]] = None,
        branches: Optional[Dict[str, BranchMetadata]] = None,
        version: int = STATE_VERSION,
        updated_at: Optional[datetime] = None,
    ) -> None:
        self.version = version
        self.updated_at = updated_at or utc_now()
        self.dependencies: List[BranchDependency] = list(dependencies or [])
        self.root_branches: List[RootBranch] = list(root_branches or [])
        self.branches: Dict[str, BranchMetadata] = dict(branches or {})

        self._children_of: Dict[str, List[str]] = {}
        self._parents_of: Dict[str, List[str]] = {}
        self._issue_index: Dict[str, str] = {}
        self.rebuild_indices()

    # --- Indices ---
    def rebuild_indices(self) -> None:
        """Recompute parent/child and issue lookups from the canonical lists."""
        children_of: Dict[str, List[str]] = {}
        parents_of: Dict[str, List[str]] = {}
        for dep in self.dependencies:
            children_of.setdefault(dep.parent, []).append(dep.child)
            parents_of.setdefault(dep.child, []).append(dep.parent)
        self._children_of = children_of
        self._parents_of = parents_of
        self._issue_index = {
            meta.jira_issue: name
            for name, meta in self.branches.items()
            if meta.jira_issue
        }

    @property
    def children_index(self) -> Dict[str, List[str]]:
        return {k: list(v) for k, v in self._children_of.items()}

    @property
    def parents_index(self) -> Dict[str, List[str]]:
        return {k: list(v) for k, v in self._parents_of.items()}

    def get_children(self, branch: str) -> List[str]:
        return list(self._children_of.get(branch, []))

    def get_parents(self, branch: str) -> List[str]:
        """Parents of ``branch`` in the order they were declared."""
        return list(self._parents_of.get(branch, []))

    # --- Dependencies ---
    def add_dependency(self, child: str, parent: str) -> BranchDependency:
        """Record that ``child`` is stacked on ``parent``.

        The edge is checked before anything is mutated, so a rejected edge
        leaves the state untouched.
        """
        check_new_dependency(self.dependencies, child, parent, self._parents_of)
        dep = BranchDependency(child=child, parent=parent)
        self.dependencies.append(dep)
        self.rebuild_indices()
        logger.info(f"Added dependency {child} -> {parent}")
        return dep

    def remove_dependency(self, child: str, parent: str) -> bool:
        before = len(self.dependencies)
        self.dependencies = [
            d for d in self.dependencies if not (d.child == child and d.parent == parent)
        ]
        removed = len(self.dependencies) != before
        if removed:
            self.rebuild_indices()
            logger.info(f"Removed dependency {child} -> {parent}")
        return removed

    def remove_all_dependencies_for_branch(self, branch: str) -> int:
        """Drop every edge where ``branch`` is the child or the parent."""
        before = len(self.dependencies)
        self.dependencies = [
            d for d in self.dependencies if d.child != branch and d.parent != branch
        ]
        removed = before - len(self.dependencies)
        if removed:
            self.rebuild_indices()
            logger.info(f"Removed {removed} dependencies involving {branch}")
        return removed

    # --- Roots ---
    def add_root(self, branch: str, is_default: bool = False) -> RootBranch:
        """Mark ``branch`` as a root; re-adding only updates the default flag."""
        existing = self.get_root(branch)
        if existing is not None:
            if is_default:
                self._promote_default(existing)
            return existing

        root = RootBranch(branch=branch, is_default=False)
        self.root_branches.append(root)
        if is_default:
            self._promote_default(root)
        logger.info(f"Added root branch {branch}{' (default)' if is_default else ''}")
        return root

    def _promote_default(self, root: RootBranch) -> None:
        for other in self.root_branches:
            other.is_default = False
        root.is_default = True

    def get_root(self, branch: str) -> Optional[RootBranch]:
        for root in self.root_branches:
            if root.branch == branch:
                return root
        return None

    def remove_root(self, branch: str) -> bool:
        before = len(self.root_branches)
        self.root_branches = [r for r in self.root_branches if r.branch != branch]
        removed = len(self.root_branches) != before
        if removed:
            logger.info(f"Removed root branch {branch}")
        return removed

    def set_default_root(self, branch: str) -> None:
        root = self.get_root(branch)
        if root is None:
            raise UnknownRootError(branch)
        self._promote_default(root)
        logger.info(f"Default root set to {branch}")

    def get_default_root(self) -> Optional[str]:
        for root in self.root_branches:
            if root.is_default:
                return root.branch
        return None

    def effective_default_root(self) -> Optional[str]:
        """The flagged default root, falling back to the first configured root."""
        flagged = self.get_default_root()
        if flagged is not None:
            return flagged
        return self.root_branches[0].branch if self.root_branches else None

    def is_root(self, branch: str) -> bool:
        return self.get_root(branch) is not None

    def root_branch_names(self) -> List[str]:
        return [r.branch for r in self.root_branches]

    # --- Metadata ---
    def set_branch_metadata(self, metadata: BranchMetadata) -> None:
        self.branches[metadata.branch] = metadata
        self.rebuild_indices()

    def get_branch_metadata(self, branch: str) -> Optional[BranchMetadata]:
        return self.branches.get(branch)

    def remove_branch_metadata(self, branch: str) -> bool:
        if self.branches.pop(branch, None) is None:
            return False
        self.rebuild_indices()
        return True

    def branch_for_issue(self, issue_key: str) -> Optional[str]:
        return self._issue_index.get(issue_key)

    # --- Cleanup ---
    def plan_eviction(self, local_branches: Iterable[str]) -> EvictionReport:
        """Report what :meth:`evict_stale_branches` would remove, without mutating."""
        local = set(local_branches)
        report = EvictionReport()
        for dep in self.dependencies:
            if dep.child not in local and not self.is_root(dep.child):
                report.removed_dependencies.append(dep)
        report.removed_metadata = sorted(name for name in self.branches if name not in local)
        return report

    def evict_stale_branches(self, local_branches: Iterable[str]) -> EvictionReport:
        """Remove entries for branches that no longer exist locally.

        Dependencies are evicted when their child is gone and is not a root;
        metadata is evicted for any missing branch.
        """
        report = self.plan_eviction(local_branches)
        if report.is_empty:
            return report

        stale_ids = {d.id for d in report.removed_dependencies}
        self.dependencies = [d for d in self.dependencies if d.id not in stale_ids]
        for name in report.removed_metadata:
            self.branches.pop(name, None)
        self.rebuild_indices()

        for dep in report.removed_dependencies:
            logger.warning(f"Evicted stale dependency {dep.child} -> {dep.parent}")
        for name in report.removed_metadata:
            logger.warning(f"Evicted metadata for missing branch {name}")
        return report

    # --- Serialization ---
    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "updated_at": self.updated_at.isoformat(),
            "branches": {name: meta.to_dict() for name, meta in sorted(self.branches.items())},
            "dependencies": [d.to_dict() for d in self.dependencies],
            "root_branches": [r.to_dict() for r in self.root_branches],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> RepoState:
        """Build state from a persisted document. Serialized indices are ignored."""
        if not isinstance(data, dict):
            raise StateUnreadableError("State document must be a JSON object")
        raw_branches = data.get("branches") or {}
        raw_dependencies = data.get("dependencies") or []
        raw_roots = data.get("root_branches") or []
        if not isinstance(raw_branches, dict):
            raise StateUnreadableError("Malformed state document: 'branches' must be an object")
        for key, value in (("dependencies", raw_dependencies), ("root_branches", raw_roots)):
            if not isinstance(value, list) or not all(isinstance(item, dict) for item in value):
                raise StateUnreadableError(f"Malformed state document: '{key}' must be a list of objects")

        try:
            branches = {
                name: BranchMetadata.from_dict({"branch": name, **meta})
                for name, meta in raw_branches.items()
            }
            dependencies = [BranchDependency.from_dict(d) for d in raw_dependencies]
            roots = [RootBranch.from_dict(r) for r in raw_roots]
            defaults = [r for r in roots if r.is_default]
            if len(defaults) > 1:
                logger.warning(
                    f"State lists {len(defaults)} default roots; keeping {defaults[0].branch}"
                )
                for extra in defaults[1:]:
                    extra.is_default = False
            updated_at = data.get("updated_at")
            return cls(
                dependencies=dependencies,
                root_branches=roots,
                branches=branches,
                version=int(data.get("version", STATE_VERSION)),
                updated_at=_parse_timestamp(updated_at) if updated_at else None,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise StateUnreadableError(f"Malformed state document: {e}") from e


class StateStore(ABC):
    """Load/save boundary for :class:`RepoState`."""

    @abstractmethod
    def load(self) -> RepoState:
        """Return persisted state, or an empty default if none exists."""
        pass

    @abstractmethod
    def save(self, state: RepoState) -> None:
        pass


class JsonStateStore(StateStore):
    """Stores state as JSON under ``<repo>/.stack-cascade/state.json``."""

    def __init__(self, repo_path: Path) -> None:
        self.repo_path = Path(repo_path).resolve()

    @property
    def state_dir(self) -> Path:
        return self.repo_path / STATE_DIR_NAME

    @property
    def state_path(self) -> Path:
        return self.state_dir / STATE_FILE_NAME

    def load(self) -> RepoState:
        path = self.state_path
        if not path.exists():
            logger.debug(f"No state file at {path}; using empty state")
            return RepoState()
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.error(f"Failed to read state file {path}: {e}")
            raise StateUnreadableError(f"Could not read state file {path}: {e}") from e
        state = RepoState.from_dict(data)
        logger.debug(
            f"Loaded state: {len(state.dependencies)} dependencies, {len(state.root_branches)} roots"
        )
        return state

    def save(self, state: RepoState) -> None:
        first_save = not self.state_dir.exists()
        self.state_dir.mkdir(parents=True, exist_ok=True)
        if first_save:
            self._ensure_gitignored()

        state.updated_at = utc_now()
        self.state_path.write_text(
            json.dumps(state.to_dict(), indent=2) + "\n", encoding="utf-8"
        )
        logger.debug(f"Saved state to {self.state_path}")

    def _ensure_gitignored(self) -> None:
        gitignore = self.repo_path / ".gitignore"
        entry = f"{STATE_DIR_NAME}/"
        content = gitignore.read_text(encoding="utf-8") if gitignore.exists() else ""
        lines = [ln.strip() for ln in content.splitlines()]
        if entry in lines or STATE_DIR_NAME in lines:
            return
        if content and not content.endswith("\n"):
            content += "\n"
        gitignore.write_text(content + entry + "\n", encoding="utf-8")
        logger.info(f"Added {entry} to {gitignore}")


class MemoryStateStore(StateStore):
    """Keeps a serialized snapshot in memory; each load returns a fresh copy."""

    def __init__(self, state: Optional[RepoState] = None) -> None:
        self._snapshot: Optional[Dict[str, Any]] = state.to_dict() if state else None
        self.save_count = 0

    def load(self) -> RepoState:
        if self._snapshot is None:
            return RepoState()
        return RepoState.from_dict(json.loads(json.dumps(self._snapshot)))

    def save(self, state: RepoState) -> None:
        state.updated_at = utc_now()
        self._snapshot = state.to_dict()
        self.save_count += 1
