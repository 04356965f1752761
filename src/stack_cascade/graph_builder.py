"""
Builds the read-only branch graph from local branches and persisted dependencies.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Set, Tuple

from .models import (
    BranchDivergence,
    BranchEdge,
    BranchNode,
    GitRepositoryError,
    LocalBranch,
)
from .state_store import RepoState


logger = logging.getLogger(__name__)

AheadBehindFn = Callable[[str, str], BranchDivergence]

ANNOTATION_JIRA = "jira_issue"
ANNOTATION_PR = "github_pr"


class BranchGraph:
    """Immutable directed graph of branches; edges point parent -> child.

    Node iteration is ordered by branch name. Traversals that need to skip
    already-seen nodes take their visited set as a parameter and never mark
    the nodes themselves.
    """

    def __init__(
        self,
        nodes: Dict[str, BranchNode],
        edges: Sequence[BranchEdge],
        root_candidates: Sequence[str],
        current_branch: Optional[str] = None,
        default_root: Optional[str] = None,
    ) -> None:
        self._nodes = {name: nodes[name] for name in sorted(nodes)}
        self._edges = tuple(edges)
        self._root_candidates = tuple(root_candidates)
        self._current_branch = current_branch
        self._default_root = default_root

    def __contains__(self, name: object) -> bool:
        return name in self._nodes

    def __iter__(self) -> Iterator[BranchNode]:
        return iter(self._nodes.values())

    def __len__(self) -> int:
        return len(self._nodes)

    @property
    def names(self) -> List[str]:
        return list(self._nodes)

    @property
    def edges(self) -> Tuple[BranchEdge, ...]:
        return self._edges

    @property
    def root_candidates(self) -> Tuple[str, ...]:
        return self._root_candidates

    @property
    def current_branch(self) -> Optional[str]:
        return self._current_branch

    @property
    def default_root(self) -> Optional[str]:
        """Default root used for orphan attachment and divergence, if present locally."""
        return self._default_root

    def get(self, name: str) -> Optional[BranchNode]:
        return self._nodes.get(name)

    def children(self, name: str) -> Tuple[str, ...]:
        node = self._nodes.get(name)
        return node.children if node else ()

    def parents(self, name: str) -> Tuple[str, ...]:
        """Primary parent first, then secondary parents in declaration order."""
        node = self._nodes.get(name)
        return node.parents if node else ()

    def primary_parent(self, name: str) -> Optional[str]:
        node = self._nodes.get(name)
        return node.primary_parent if node else None

    def divergence(self, name: str) -> Optional[BranchDivergence]:
        node = self._nodes.get(name)
        return node.divergence if node else None

    def descendants(self, name: str, max_depth: Optional[int] = None) -> List[Tuple[str, int]]:
        """Breadth-first descendants of ``name`` with their shortest distance.

        Branches further than ``max_depth`` from ``name`` are excluded.
        """
        result: List[Tuple[str, int]] = []
        visited: Set[str] = {name}
        queue = deque([(name, 0)])
        while queue:
            current, depth = queue.popleft()
            if max_depth is not None and depth >= max_depth:
                continue
            for child in self.children(current):
                if child in visited:
                    continue
                visited.add(child)
                result.append((child, depth + 1))
                queue.append((child, depth + 1))
        return result


class BranchGraphBuilder:
    """Pure builder: the same inputs always produce the same graph.

    Args:
        ahead_behind: callable ``(commit, base) -> BranchDivergence``; when omitted
            divergence is not computed
        attach_orphans: attach parentless, non-root branches under the default root
    """

    def __init__(
        self,
        ahead_behind: Optional[AheadBehindFn] = None,
        attach_orphans: bool = False,
    ) -> None:
        self.ahead_behind = ahead_behind
        self.attach_orphans = attach_orphans

    def build(
        self,
        branches: Sequence[LocalBranch],
        state: RepoState,
        current_branch: Optional[str] = None,
    ) -> BranchGraph:
        local: Dict[str, LocalBranch] = {b.name: b for b in branches}

        primary: Dict[str, Optional[str]] = {name: None for name in local}
        secondary: Dict[str, List[str]] = {name: [] for name in local}
        children: Dict[str, Set[str]] = {name: set() for name in local}
        edges: List[BranchEdge] = []

        for dep in state.dependencies:
            if dep.child not in local or dep.parent not in local:
                # Stale references are tolerated here and cleaned up by eviction
                logger.debug(f"Ignoring dependency {dep.child} -> {dep.parent}: branch not local")
                continue
            if primary[dep.child] is None:
                primary[dep.child] = dep.parent
            elif dep.parent != primary[dep.child] and dep.parent not in secondary[dep.child]:
                secondary[dep.child].append(dep.parent)
            children[dep.parent].add(dep.child)
            edges.append(BranchEdge(parent=dep.parent, child=dep.child))

        default_root = state.effective_default_root()
        if default_root not in local:
            default_root = None

        if self.attach_orphans and default_root is not None:
            for name in sorted(local):
                if primary[name] is None and name != default_root and not state.is_root(name):
                    primary[name] = default_root
                    children[default_root].add(name)
                    edges.append(BranchEdge(parent=default_root, child=name, implicit=True))
                    logger.debug(f"Attached orphan {name} under {default_root}")

        root_candidates = [r for r in state.root_branch_names() if r in local]
        if not root_candidates:
            if current_branch in local:
                root_candidates = [current_branch]
            elif local:
                root_candidates = [min(local)]

        divergence = self._compute_divergence(local, primary, default_root)

        nodes: Dict[str, BranchNode] = {}
        for name, branch in local.items():
            nodes[name] = BranchNode(
                name=name,
                head=branch.head,
                primary_parent=primary[name],
                secondary_parents=tuple(secondary[name]),
                children=tuple(sorted(children[name])),
                divergence=divergence.get(name),
                annotations=self._annotations(state, name),
                is_current=name == current_branch,
            )

        return BranchGraph(
            nodes=nodes,
            edges=edges,
            root_candidates=root_candidates,
            current_branch=current_branch if current_branch in local else None,
            default_root=default_root,
        )

    def _compute_divergence(
        self,
        local: Dict[str, LocalBranch],
        primary: Dict[str, Optional[str]],
        default_root: Optional[str],
    ) -> Dict[str, BranchDivergence]:
        if self.ahead_behind is None:
            return {}

        cache: Dict[Tuple[str, str], BranchDivergence] = {}
        result: Dict[str, BranchDivergence] = {}
        for name in sorted(local):
            base = primary[name]
            if base is None:
                if default_root is None or name == default_root:
                    continue
                base = default_root
            key = (local[name].head.commit_id, local[base].head.commit_id)
            if key not in cache:
                try:
                    cache[key] = self.ahead_behind(*key)
                except GitRepositoryError as e:
                    logger.warning(f"Could not compute divergence of {name} against {base}: {e}")
                    continue
            result[name] = cache[key]
        return result

    @staticmethod
    def _annotations(state: RepoState, name: str) -> Tuple[Tuple[str, str], ...]:
        meta = state.get_branch_metadata(name)
        if meta is None:
            return ()
        annotations: List[Tuple[str, str]] = []
        if meta.jira_issue:
            annotations.append((ANNOTATION_JIRA, meta.jira_issue))
        if meta.github_pr is not None:
            annotations.append((ANNOTATION_PR, str(meta.github_pr)))
        return tuple(annotations)
