"""
Root selection and orphan handling over a built branch graph.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Set, Tuple

from .graph_builder import BranchGraph
from .models import BranchDependency, StackError
from .state_store import RepoState, StateStore


logger = logging.getLogger(__name__)


def default_root_branch(state: RepoState) -> Optional[str]:
    """The flagged default root, else the first configured root."""
    return state.effective_default_root()


def determine_root(
    graph: BranchGraph, state: RepoState, override: Optional[str] = None
) -> Optional[str]:
    """Pick the operative root branch.

    Priority, first match wins:
      1. ``override`` when it is in the graph
      2. the configured default root when it is in the graph
      3. the first root candidate
      4. the current branch when it is in the graph
      5. the first branch in iteration order
    """
    if override and override in graph:
        return override

    default = state.get_default_root()
    if default and default in graph:
        return default

    if graph.root_candidates:
        return graph.root_candidates[0]

    if graph.current_branch and graph.current_branch in graph:
        return graph.current_branch

    for node in graph:
        return node.name
    return None


def find_root(graph: BranchGraph, branch: str, visited: Optional[Set[str]] = None) -> str:
    """Follow primary parents from ``branch`` to the top of its chain.

    ``visited`` is owned by the caller and may be shared across calls; the walk
    stops as soon as it meets a branch already in it.
    """
    if visited is None:
        visited = set()
    current = branch
    while True:
        visited.add(current)
        parent = graph.primary_parent(current)
        if parent is None or parent in visited:
            return current
        current = parent


def find_orphaned_branches(graph: BranchGraph, state: RepoState) -> List[str]:
    """Local branches with no persisted parent that are not roots, sorted by name."""
    orphans: List[str] = []
    for node in graph:
        if state.is_root(node.name):
            continue
        if any(parent in graph for parent in state.get_parents(node.name)):
            continue
        orphans.append(node.name)
    return orphans


def plan_adoption(
    graph: BranchGraph, state: RepoState, parent: Optional[str] = None
) -> List[Tuple[str, str]]:
    """Pair each orphan with the branch it would be adopted under.

    Defaults to the default root; the parent itself is never adopted.
    """
    target = parent or default_root_branch(state)
    if target is None or target not in graph:
        return []
    return [(orphan, target) for orphan in find_orphaned_branches(graph, state) if orphan != target]


def adopt_orphans(
    store: StateStore, plan: List[Tuple[str, str]]
) -> Tuple[List[BranchDependency], List[Tuple[str, str, str]]]:
    """Persist an adoption plan as real dependencies.

    Every edge goes through the normal dependency checks. Returns the created
    dependencies and ``(child, parent, reason)`` for each rejected pair.
    """
    state = store.load()
    created: List[BranchDependency] = []
    rejected: List[Tuple[str, str, str]] = []
    for child, parent in plan:
        try:
            created.append(state.add_dependency(child, parent))
        except StackError as e:
            logger.warning(f"Could not adopt {child} under {parent}: {e}")
            rejected.append((child, parent, str(e)))
    if created:
        store.save(state)
        logger.info(f"Adopted {len(created)} orphaned branches")
    return created, rejected
