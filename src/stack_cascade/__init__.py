"""
Stack Cascade - rebase stacked branches along their declared dependencies.

This package keeps a user-defined dependency graph between git branches,
separate from commit ancestry, and rebases across it in topological order.
"""

__version__ = "0.1.0"

from .rebase_orchestrator import CascadeOptions, RebaseOrchestrator
from .models import BranchDependency, CascadeReport, RootBranch, StackError
from .git_manager import GitManager
from .graph_builder import BranchGraph, BranchGraphBuilder
from .state_store import JsonStateStore, MemoryStateStore, RepoState

__all__ = [
    "RebaseOrchestrator",
    "CascadeOptions",
    "CascadeReport",
    "BranchDependency",
    "RootBranch",
    "StackError",
    "GitManager",
    "BranchGraph",
    "BranchGraphBuilder",
    "JsonStateStore",
    "MemoryStateStore",
    "RepoState",
]
