"""
Data models for the stacked-branch dependency engine.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Optional[str]) -> datetime:
    if not value:
        return utc_now()
    if not isinstance(value, str):
        raise ValueError(f"Expected an ISO-8601 timestamp, got {value!r}")
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_flag(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    raise ValueError(f"Expected a boolean, got {value!r}")


def _new_id() -> str:
    return str(uuid.uuid4())


# --- Persisted entities ---


@dataclass
class BranchDependency:
    """A user-declared edge: ``child`` is stacked on ``parent``."""

    child: str
    parent: str
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "child": self.child,
            "parent": self.parent,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> BranchDependency:
        return cls(
            child=data["child"],
            parent=data["parent"],
            id=data.get("id") or _new_id(),
            created_at=_parse_timestamp(data.get("created_at")),
        )


@dataclass
class RootBranch:
    """A branch designated as an entry point of the dependency tree."""

    branch: str
    is_default: bool = False
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "branch": self.branch,
            "is_default": self.is_default,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> RootBranch:
        return cls(
            branch=data["branch"],
            is_default=_parse_flag(data.get("is_default")),
            id=data.get("id") or _new_id(),
            created_at=_parse_timestamp(data.get("created_at")),
        )


@dataclass
class BranchMetadata:
    """Issue and pull request associations for a branch."""

    branch: str
    jira_issue: Optional[str] = None
    github_pr: Optional[int] = None
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "branch": self.branch,
            "jira_issue": self.jira_issue,
            "github_pr": self.github_pr,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> BranchMetadata:
        pr = data.get("github_pr")
        return cls(
            branch=data["branch"],
            jira_issue=data.get("jira_issue"),
            github_pr=int(pr) if pr is not None else None,
            created_at=_parse_timestamp(data.get("created_at")),
        )


# --- Collaborator records ---


@dataclass(frozen=True)
class BranchHead:
    """Tip commit information for a local branch."""

    commit_id: str
    summary: str = ""
    author: str = ""
    committed_at: Optional[datetime] = None


@dataclass(frozen=True)
class LocalBranch:
    name: str
    head: BranchHead


@dataclass(frozen=True)
class BranchDivergence:
    """Commit counts of a branch relative to its parent tip."""

    ahead: int
    behind: int


@dataclass(frozen=True)
class GitCommandResult:
    """Combined stdout/stderr of a git invocation and its exit status."""

    status: int
    output: str

    @property
    def success(self) -> bool:
        return self.status == 0


# --- Derived graph values ---


@dataclass(frozen=True)
class BranchNode:
    """A branch in a built graph. Rebuilt on every graph build, never persisted."""

    name: str
    head: BranchHead
    primary_parent: Optional[str] = None
    secondary_parents: Tuple[str, ...] = ()
    children: Tuple[str, ...] = ()
    divergence: Optional[BranchDivergence] = None
    annotations: Tuple[Tuple[str, str], ...] = ()
    is_current: bool = False

    @property
    def parents(self) -> Tuple[str, ...]:
        if self.primary_parent is None:
            return self.secondary_parents
        return (self.primary_parent,) + self.secondary_parents

    def annotation(self, key: str) -> Optional[str]:
        for k, v in self.annotations:
            if k == key:
                return v
        return None


@dataclass(frozen=True)
class BranchEdge:
    parent: str
    child: str
    # True for orphan attachments that are not persisted dependencies
    implicit: bool = False


@dataclass
class EvictionReport:
    """What an explicit cleanup removed from persisted state."""

    removed_dependencies: List[BranchDependency] = field(default_factory=list)
    removed_metadata: List[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.removed_dependencies and not self.removed_metadata


# --- Rebase protocol ---


class RebaseResult(Enum):
    """Classification of an initial ``git rebase`` invocation."""

    SUCCESS = "success"
    UP_TO_DATE = "up_to_date"
    CONFLICT = "conflict"
    ERROR = "error"


class ContinueOutcome(Enum):
    """Classification of ``git rebase --continue`` or ``--skip``."""

    COMPLETED = "completed"
    MORE_CONFLICTS = "more_conflicts"
    FAILED = "failed"


class ConflictResolution(Enum):
    CONTINUE = "continue"
    ABORT_TO_ORIGINAL = "abort_to_original"
    ABORT_STAY_HERE = "abort_stay_here"
    SKIP = "skip"


class StepState(Enum):
    """States of a single branch-onto-parent rebase step."""

    RUNNING = "running"
    CONFLICTED = "conflicted"
    ABORTED = "aborted"
    COMPLETED = "completed"
    FAILED = "failed"


class StepResult(Enum):
    REBASED = "rebased"
    UP_TO_DATE = "up_to_date"
    CONFLICT_RESOLVED = "conflict_resolved"
    ABORTED = "aborted"
    FAILED = "failed"


@dataclass
class StepOutcome:
    """Tagged outcome of rebasing one branch onto one parent."""

    branch: str
    parent: str
    result: StepResult
    resolution: Optional[ConflictResolution] = None
    output: str = ""

    @property
    def is_success(self) -> bool:
        return self.result in (
            StepResult.REBASED,
            StepResult.UP_TO_DATE,
            StepResult.CONFLICT_RESOLVED,
        )


class BranchStatus(Enum):
    REBASED = "rebased"
    UP_TO_DATE = "up_to_date"
    CONFLICT_RESOLVED = "conflict_resolved"
    FAILED = "failed"
    SKIPPED = "skipped"
    NOT_PROCESSED = "not_processed"


SUCCESS_STATUSES = (BranchStatus.REBASED, BranchStatus.UP_TO_DATE, BranchStatus.CONFLICT_RESOLVED)


@dataclass
class BranchReport:
    """Per-branch entry of a cascade report."""

    branch: str
    status: BranchStatus = BranchStatus.NOT_PROCESSED
    parents: List[str] = field(default_factory=list)
    steps: List[StepOutcome] = field(default_factory=list)
    message: str = ""
    pushed: Optional[bool] = None


@dataclass
class CascadeReport:
    """Outcome of a cascade or single-branch rebase, one entry per branch."""

    original_branch: Optional[str]
    entries: List[BranchReport] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    aborted_at: Optional[str] = None
    abort_reason: Optional[str] = None

    def get(self, branch: str) -> Optional[BranchReport]:
        for entry in self.entries:
            if entry.branch == branch:
                return entry
        return None

    def _with_status(self, *statuses: BranchStatus) -> List[str]:
        return [e.branch for e in self.entries if e.status in statuses]

    @property
    def succeeded(self) -> List[str]:
        return self._with_status(*SUCCESS_STATUSES)

    @property
    def failed(self) -> List[str]:
        return self._with_status(BranchStatus.FAILED)

    @property
    def skipped(self) -> List[str]:
        return self._with_status(BranchStatus.SKIPPED)

    @property
    def not_processed(self) -> List[str]:
        return self._with_status(BranchStatus.NOT_PROCESSED)

    @property
    def halted(self) -> bool:
        return self.aborted_at is not None

    @property
    def ok(self) -> bool:
        return not self.halted and not self.failed

    def raise_for_status(self) -> None:
        """Raise the matching error if the run halted or any branch failed."""
        if self.halted:
            if self.abort_reason == "conflict":
                raise RebaseConflictError(
                    f"Rebase of {self.aborted_at} stopped on a conflict",
                    branch=self.aborted_at,
                )
            raise CascadeAbortedError(
                f"Cascade aborted at {self.aborted_at}",
                branch=self.aborted_at,
                report=self,
            )
        if self.failed:
            raise RebaseExternalFailureError(
                f"Rebase failed for: {', '.join(self.failed)}"
            )


# --- Errors ---


class StackError(Exception):
    """Base exception for stack-cascade operations."""

    pass


class GitRepositoryError(StackError):
    """Exception raised for Git repository related errors."""

    pass


class DuplicateDependencyError(StackError):
    def __init__(self, child: str, parent: str) -> None:
        super().__init__(f"Dependency {child} -> {parent} already exists")
        self.child = child
        self.parent = parent


class CycleDetectedError(StackError):
    """Adding an edge would make a branch reachable from itself."""

    def __init__(self, child: str, parent: str, path: List[str]) -> None:
        if child == parent:
            message = f"Branch {child} cannot depend on itself"
        else:
            message = (
                f"Adding {child} -> {parent} would create a cycle: "
                + " -> ".join(path)
            )
        super().__init__(message)
        self.child = child
        self.parent = parent
        self.path = path


class StateUnreadableError(StackError):
    """Exception raised when the persisted state file cannot be parsed."""

    pass


class BranchNotLocalError(StackError):
    def __init__(self, branch: str) -> None:
        super().__init__(f"Branch {branch} does not exist locally")
        self.branch = branch


class DetachedHeadError(StackError):
    """HEAD does not point at a branch."""

    pass


class UnknownRootError(StackError):
    def __init__(self, branch: str) -> None:
        super().__init__(f"Branch {branch} is not a root branch")
        self.branch = branch


class InvalidCommitHashError(StackError):
    def __init__(self, value: str) -> None:
        super().__init__(
            f"Invalid commit hash '{value}': expected 7-64 hexadecimal characters"
        )
        self.value = value


class RebaseExternalFailureError(StackError):
    """git could not be run or returned an unclassifiable failure."""

    pass


class RebaseConflictError(StackError):
    """A rebase stopped on a conflict with no interactive resolution available."""

    def __init__(self, message: str, branch: Optional[str] = None) -> None:
        super().__init__(message)
        self.branch = branch


class CascadeAbortedError(StackError):
    """The user aborted a cascade while resolving a conflict."""

    def __init__(
        self,
        message: str,
        branch: Optional[str] = None,
        report: Optional[CascadeReport] = None,
    ) -> None:
        super().__init__(message)
        self.branch = branch
        self.report = report
