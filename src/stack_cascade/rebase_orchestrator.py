"""
Cascade orchestration: rebases a branch and its dependents in topological order.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

from .conflict_prompt_interface import ConflictPrompt, NoOpConflictPrompt
from .git_manager import GitManager
from .graph_builder import BranchGraph, BranchGraphBuilder
from .models import (
    BranchDependency,
    BranchNotLocalError,
    BranchReport,
    BranchStatus,
    CascadeReport,
    ConflictResolution,
    ContinueOutcome,
    EvictionReport,
    GitCommandResult,
    GitRepositoryError,
    InvalidCommitHashError,
    RebaseExternalFailureError,
    RebaseResult,
    StepOutcome,
    StepResult,
    StepState,
    StackError,
)
from .root_resolver import adopt_orphans, plan_adoption
from .state_store import JsonStateStore, RepoState, StateStore


logger = logging.getLogger(__name__)

NO_PARENT_WARNING = "No parent branches found for the current branch."

_COMMIT_HASH = re.compile(r"^[0-9a-fA-F]{7,64}$")


@dataclass
class CascadeOptions:
    """Options shared by cascade and single-branch rebase runs."""

    start_branch: Optional[str] = None
    max_depth: Optional[int] = None
    force: bool = False
    autostash: bool = False
    interactive: bool = True
    skip_commits: List[str] = field(default_factory=list)
    force_push: bool = False
    remote: str = "origin"


def validate_commit_hash(value: str) -> str:
    """Return the normalized hash or raise :class:`InvalidCommitHashError`."""
    candidate = value.strip()
    if not _COMMIT_HASH.match(candidate):
        raise InvalidCommitHashError(value)
    return candidate.lower()


def parse_skip_commits(value: Union[str, Path, None]) -> List[str]:
    """Parse commits to exclude from a comma-separated list or a file path.

    Files hold one hash per line; blank lines and ``#`` comments are ignored.
    Duplicates are dropped, first occurrence wins.
    """
    if value is None:
        return []
    raw: List[str]
    path = Path(str(value)).expanduser()
    if path.is_file():
        raw = []
        for line in path.read_text(encoding="utf-8").splitlines():
            line = line.split("#", 1)[0].strip()
            if line:
                raw.append(line)
    else:
        raw = [part for part in str(value).split(",") if part.strip()]

    hashes: List[str] = []
    for item in raw:
        normalized = validate_commit_hash(item)
        if normalized not in hashes:
            hashes.append(normalized)
    return hashes


def classify_rebase_output(result: GitCommandResult) -> RebaseResult:
    """Classify an initial ``git rebase`` by its output markers and exit status."""
    if "up to date" in result.output:
        return RebaseResult.UP_TO_DATE
    if "CONFLICT" in result.output:
        return RebaseResult.CONFLICT
    if result.success:
        return RebaseResult.SUCCESS
    return RebaseResult.ERROR


def classify_continue_output(result: GitCommandResult) -> ContinueOutcome:
    """Classify ``git rebase --continue`` / ``--skip``; new conflicts take precedence."""
    if "CONFLICT" in result.output:
        return ContinueOutcome.MORE_CONFLICTS
    if not result.success:
        return ContinueOutcome.FAILED
    return ContinueOutcome.COMPLETED


_STATE_RESULTS: Dict[StepState, StepResult] = {
    StepState.COMPLETED: StepResult.CONFLICT_RESOLVED,
    StepState.ABORTED: StepResult.ABORTED,
    StepState.FAILED: StepResult.FAILED,
}


class RebaseOrchestrator:
    """Drives rebases across the branch dependency graph of one repository."""

    def __init__(
        self,
        root_path: Optional[Path] = None,
        conflict_prompt: Optional[ConflictPrompt] = None,
        *,
        git_manager: Optional[GitManager] = None,
        store: Optional[StateStore] = None,
    ) -> None:
        """Initialize the rebase orchestrator."""
        self.git_manager = git_manager or GitManager(root_path)
        self.store = store or JsonStateStore(self.git_manager.working_dir)
        self.conflict_prompt = conflict_prompt or NoOpConflictPrompt()

    # --- State and graph access ---
    def load_state(self) -> RepoState:
        return self.store.load()

    def build_graph(
        self,
        state: Optional[RepoState] = None,
        attach_orphans: bool = False,
        with_divergence: bool = False,
    ) -> BranchGraph:
        """Build a fresh graph from local branches and persisted state."""
        state = state or self.store.load()
        builder = BranchGraphBuilder(
            ahead_behind=self.git_manager.ahead_behind if with_divergence else None,
            attach_orphans=attach_orphans,
        )
        return builder.build(
            self.git_manager.list_local_branches(),
            state,
            self.git_manager.current_branch_or_none(),
        )

    def add_dependency(self, child: str, parent: str) -> BranchDependency:
        state = self.store.load()
        dep = state.add_dependency(child, parent)
        self.store.save(state)
        return dep

    def remove_dependency(self, child: str, parent: str) -> bool:
        state = self.store.load()
        removed = state.remove_dependency(child, parent)
        if removed:
            self.store.save(state)
        return removed

    def add_root(self, branch: str, is_default: bool = False) -> None:
        state = self.store.load()
        state.add_root(branch, is_default)
        self.store.save(state)

    def remove_root(self, branch: str) -> bool:
        state = self.store.load()
        removed = state.remove_root(branch)
        if removed:
            self.store.save(state)
        return removed

    def adopt_orphans(
        self, parent: Optional[str] = None, dry_run: bool = False
    ) -> Tuple[List[Tuple[str, str]], List[BranchDependency], List[Tuple[str, str, str]]]:
        """Plan adoption of orphaned branches and, unless ``dry_run``, persist it."""
        state = self.store.load()
        graph = self.build_graph(state)
        if parent is not None and parent not in graph:
            raise BranchNotLocalError(parent)
        plan = plan_adoption(graph, state, parent)
        if dry_run or not plan:
            return plan, [], []
        created, rejected = adopt_orphans(self.store, plan)
        return plan, created, rejected

    def evict_stale_branches(self, dry_run: bool = False) -> EvictionReport:
        """Remove persisted references to branches that no longer exist locally."""
        state = self.store.load()
        local = self.git_manager.list_local_branch_names()
        if dry_run:
            return state.plan_eviction(local)
        report = state.evict_stale_branches(local)
        if not report.is_empty:
            self.store.save(state)
        return report

    # --- Planning ---
    def plan_cascade(
        self,
        start_branch: str,
        max_depth: Optional[int] = None,
        graph: Optional[BranchGraph] = None,
    ) -> List[Tuple[str, List[str]]]:
        """Order the descendants of ``start_branch`` so parents always come first.

        Returns ``(branch, parents)`` pairs where ``parents`` are all local parents
        in declaration order. Among branches that are ready at the same time, the
        one closer to the start (then by name) goes first.
        """
        graph = graph or self.build_graph()
        if start_branch not in graph:
            raise BranchNotLocalError(start_branch)

        descendants = graph.descendants(start_branch, max_depth)
        depth_of = {name: depth for name, depth in descendants}
        in_scope = set(depth_of) | {start_branch}

        pending = sorted(depth_of, key=lambda name: (depth_of[name], name))
        completed = {start_branch}
        order: List[Tuple[str, List[str]]] = []
        while pending:
            ready = next(
                (
                    name
                    for name in pending
                    if all(p in completed for p in graph.parents(name) if p in in_scope)
                ),
                None,
            )
            if ready is None:
                # Unreachable for an acyclic graph
                raise StackError(f"Could not order branches: {', '.join(pending)}")
            pending.remove(ready)
            completed.add(ready)
            order.append((ready, list(graph.parents(ready))))
        return order

    # --- Execution ---
    def cascade(self, options: Optional[CascadeOptions] = None) -> CascadeReport:
        """Rebase every descendant of the start branch onto its parents, in order."""
        options = options or CascadeOptions()
        skip_commits = [validate_commit_hash(c) for c in options.skip_commits]
        original, start = self._starting_point(options.start_branch)

        graph = self.build_graph()
        plan = self.plan_cascade(start, options.max_depth, graph)

        report = CascadeReport(original_branch=original)
        report.entries = [BranchReport(branch=b, parents=list(p)) for b, p in plan]
        if not plan:
            self._warn(report, f"No dependent branches of {start} to cascade")
            return report

        logger.info(f"Cascading from {start}: {' -> '.join(b for b, _ in plan)}")
        blocked = set()
        for entry in report.entries:
            if any(p in blocked for p in entry.parents):
                entry.status = BranchStatus.SKIPPED
                entry.message = "a parent branch could not be rebased"
                self._warn(report, f"Skipping {entry.branch}: {entry.message}")
                blocked.add(entry.branch)
                continue

            self._process_branch(entry, options, skip_commits, report)
            if report.halted:
                break
            if entry.status in (BranchStatus.FAILED, BranchStatus.SKIPPED):
                blocked.add(entry.branch)

        if not report.halted:
            self._return_to(original, report)
        self._log_summary(report)
        return report

    def rebase_branch(
        self, branch: Optional[str] = None, options: Optional[CascadeOptions] = None
    ) -> CascadeReport:
        """Rebase a single branch (default: the current one) onto its parents."""
        options = options or CascadeOptions()
        skip_commits = [validate_commit_hash(c) for c in options.skip_commits]
        original, target = self._starting_point(branch)

        graph = self.build_graph()
        if target not in graph:
            raise BranchNotLocalError(target)

        report = CascadeReport(original_branch=original)
        entry = BranchReport(branch=target, parents=list(graph.parents(target)))
        report.entries.append(entry)
        if not entry.parents:
            entry.status = BranchStatus.SKIPPED
            entry.message = NO_PARENT_WARNING
            self._warn(report, NO_PARENT_WARNING)
            return report

        self._process_branch(entry, options, skip_commits, report)
        if not report.halted and target != original:
            self._return_to(original, report)
        self._log_summary(report)
        return report

    def _starting_point(self, requested: Optional[str]) -> Tuple[Optional[str], str]:
        """Return the branch to come back to and the branch to start from.

        HEAD only has to be on a branch when no starting branch is named.
        """
        if self.git_manager.is_rebase_in_progress():
            raise RebaseExternalFailureError(
                "A rebase is already in progress; continue or abort it first"
            )
        if requested:
            return self.git_manager.current_branch_or_none(), requested
        current = self.git_manager.get_current_branch()
        return current, current

    def _process_branch(
        self,
        entry: BranchReport,
        options: CascadeOptions,
        skip_commits: Sequence[str],
        report: CascadeReport,
    ) -> None:
        branch = entry.branch
        if not entry.parents:
            entry.status = BranchStatus.SKIPPED
            entry.message = "no parent branches"
            self._warn(report, f"No parent branches found for {branch}, skipping")
            return

        try:
            self.git_manager.checkout_branch(branch)
        except GitRepositoryError as e:
            entry.status = BranchStatus.FAILED
            entry.message = str(e)
            logger.error(f"Cannot rebase {branch}: {e}")
            return

        for parent in entry.parents:
            self.conflict_prompt.show_messages([f"Rebasing {branch} onto {parent}"])
            outcome = self._rebase_step(branch, parent, options, skip_commits)
            entry.steps.append(outcome)

            if outcome.result is StepResult.ABORTED:
                self._halt(entry, outcome, report)
                return
            if outcome.result is StepResult.FAILED:
                entry.status = BranchStatus.FAILED
                entry.message = f"rebase onto {parent} failed"
                logger.error(f"Failed to rebase {branch} onto {parent}")
                return

        results = {s.result for s in entry.steps}
        if StepResult.CONFLICT_RESOLVED in results:
            entry.status = BranchStatus.CONFLICT_RESOLVED
        elif StepResult.REBASED in results:
            entry.status = BranchStatus.REBASED
        else:
            entry.status = BranchStatus.UP_TO_DATE
        logger.info(f"{branch}: {entry.status.value}")

        if options.force_push and entry.status is not BranchStatus.UP_TO_DATE:
            push = self.git_manager.push_force_with_lease(branch, options.remote)
            entry.pushed = push.success
            if not push.success:
                self._warn(report, f"Force push of {branch} to {options.remote} failed")

    def _rebase_step(
        self,
        branch: str,
        parent: str,
        options: CascadeOptions,
        skip_commits: Sequence[str],
    ) -> StepOutcome:
        """Rebase the checked-out ``branch`` onto ``parent`` and settle any conflicts."""
        logger.debug(f"{branch} onto {parent}: {StepState.RUNNING.value}")
        result = self.git_manager.rebase(
            parent, autostash=options.autostash, skip_commits=skip_commits
        )
        kind = classify_rebase_output(result)

        if kind is RebaseResult.UP_TO_DATE:
            if not options.force:
                return StepOutcome(branch, parent, StepResult.UP_TO_DATE, output=result.output)
            logger.info(f"{branch} is up to date with {parent}; forcing rebase")
            result = self.git_manager.rebase(
                parent, force=True, autostash=options.autostash, skip_commits=skip_commits
            )
            # git reports a forced no-op as "up to date, rebase forced"
            kind = classify_rebase_output(result)
            if kind is RebaseResult.UP_TO_DATE:
                kind = RebaseResult.SUCCESS if result.success else RebaseResult.ERROR

        if kind is RebaseResult.SUCCESS:
            return StepOutcome(branch, parent, StepResult.REBASED, output=result.output)
        if kind is RebaseResult.ERROR:
            return StepOutcome(branch, parent, StepResult.FAILED, output=result.output)
        return self._resolve_conflicts(branch, parent, result.output, options)

    def _resolve_conflicts(
        self, branch: str, parent: str, output: str, options: CascadeOptions
    ) -> StepOutcome:
        state = StepState.CONFLICTED
        resolution: Optional[ConflictResolution] = None
        while state is StepState.CONFLICTED:
            logger.warning(f"Conflicts detected while rebasing {branch} onto {parent}")
            if not options.interactive:
                self._abort_rebase()
                state = StepState.ABORTED
                break

            resolution = self.conflict_prompt.choose_resolution(branch, parent, output)
            logger.info(f"Conflict resolution for {branch}: {resolution.value}")
            if resolution in (ConflictResolution.ABORT_TO_ORIGINAL, ConflictResolution.ABORT_STAY_HERE):
                self._abort_rebase()
                state = StepState.ABORTED
                break

            if resolution is ConflictResolution.CONTINUE:
                result = self.git_manager.rebase_continue()
            else:
                result = self.git_manager.rebase_skip()
            output = result.output

            outcome = classify_continue_output(result)
            if outcome is ContinueOutcome.FAILED:
                logger.error(f"Could not {resolution.value} rebase of {branch} onto {parent}")
                self._abort_rebase()
                state = StepState.FAILED
            elif outcome is ContinueOutcome.COMPLETED:
                state = StepState.COMPLETED

        return StepOutcome(branch, parent, _STATE_RESULTS[state], resolution, output)

    def _halt(self, entry: BranchReport, outcome: StepOutcome, report: CascadeReport) -> None:
        entry.status = BranchStatus.NOT_PROCESSED
        report.aborted_at = entry.branch
        if outcome.resolution is None:
            report.abort_reason = "conflict"
            entry.message = "conflict in non-interactive mode"
        else:
            report.abort_reason = "user"
            entry.message = f"aborted by user ({outcome.resolution.value})"
        logger.warning(f"Cascade halted at {entry.branch}: {entry.message}")

        if outcome.resolution is not ConflictResolution.ABORT_STAY_HERE:
            self._return_to(report.original_branch, report)

    def _abort_rebase(self) -> None:
        result = self.git_manager.rebase_abort()
        if not result.success:
            logger.error(f"git rebase --abort failed: {result.output}")

    def _return_to(self, branch: Optional[str], report: CascadeReport) -> None:
        if not branch:
            return
        try:
            self.git_manager.checkout_branch(branch)
        except GitRepositoryError as e:
            self._warn(report, f"Could not return to {branch}: {e}")

    def _warn(self, report: CascadeReport, message: str) -> None:
        logger.warning(message)
        report.warnings.append(message)

    @staticmethod
    def _log_summary(report: CascadeReport) -> None:
        if report.halted:
            logger.warning(
                f"Cascade halted at {report.aborted_at}; not processed: {', '.join(report.not_processed)}"
            )
        elif report.failed or report.skipped:
            logger.warning(
                f"Cascade completed with errors; failed: {report.failed}, skipped: {report.skipped}"
            )
        else:
            logger.info("Cascade completed successfully")
