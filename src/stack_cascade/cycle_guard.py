"""
Acceptance checks for new dependency edges.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from .models import BranchDependency, CycleDetectedError, DuplicateDependencyError


logger = logging.getLogger(__name__)


def build_parent_index(dependencies: Iterable[BranchDependency]) -> Dict[str, List[str]]:
    """Map each child to its parents, in declaration order."""
    index: Dict[str, List[str]] = {}
    for dep in dependencies:
        index.setdefault(dep.child, []).append(dep.parent)
    return index


def find_ancestor_path(
    parents_of: Mapping[str, Sequence[str]], start: str, target: str
) -> Optional[List[str]]:
    """Breadth-first walk up parent links from ``start`` looking for ``target``.

    Returns the chain ``[start, ..., target]`` when reachable, else None. A node
    trivially reaches itself.
    """
    if start == target:
        return [start]

    came_from: Dict[str, str] = {}
    visited = {start}
    queue = deque([start])
    while queue:
        node = queue.popleft()
        for parent in parents_of.get(node, ()):
            if parent in visited:
                continue
            visited.add(parent)
            came_from[parent] = node
            if parent == target:
                path = [parent]
                while path[-1] != start:
                    path.append(came_from[path[-1]])
                path.reverse()
                return path
            queue.append(parent)
    return None


def check_new_dependency(
    dependencies: Sequence[BranchDependency],
    child: str,
    parent: str,
    parents_of: Optional[Mapping[str, Sequence[str]]] = None,
) -> None:
    """Reject a proposed ``child -> parent`` edge that is a duplicate or closes a cycle.

    Raises:
        DuplicateDependencyError: the identical edge already exists
        CycleDetectedError: ``child`` is reachable from ``parent`` by parent links
            (including ``child == parent``)
    """
    for dep in dependencies:
        if dep.child == child and dep.parent == parent:
            logger.error(f"Rejected duplicate dependency {child} -> {parent}")
            raise DuplicateDependencyError(child, parent)

    if parents_of is None:
        parents_of = build_parent_index(dependencies)

    path = find_ancestor_path(parents_of, parent, child)
    if path is not None:
        # The new edge closes the loop back to the child
        cycle = [child] + path
        logger.error(f"Rejected dependency {child} -> {parent}: cycle {' -> '.join(cycle)}")
        raise CycleDetectedError(child, parent, cycle)
