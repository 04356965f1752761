"""
Git repository management and operations.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from git import Repo, InvalidGitRepositoryError
from git.exc import GitCommandError, GitCommandNotFound

from .models import (
    BranchDivergence,
    BranchHead,
    DetachedHeadError,
    GitCommandResult,
    GitRepositoryError,
    LocalBranch,
    RebaseExternalFailureError,
)
from .todo_editor import SKIP_COMMITS_ENV


logger = logging.getLogger(__name__)


class GitManager:
    """Manages Git operations for a single working tree."""

    def __init__(self, repo_path: Optional[Path] = None) -> None:
        """Initialize Git manager with optional repository path."""
        self.repo_path = (repo_path or Path.cwd()).resolve()
        self._repo: Optional[Repo] = None

    @property
    def repo(self) -> Repo:
        """Get the Git repository instance."""
        if self._repo is None:
            self._repo = self._discover_repository()
        return self._repo

    @property
    def working_dir(self) -> Path:
        return Path(self.repo.working_dir)

    def _discover_repository(self) -> Repo:
        """Discover the Git repository from current or specified path."""
        search_path = self.repo_path

        logger.debug(f"Discovering repository in: {search_path}")
        # Walk up the directory tree to find a Git repository
        while search_path != search_path.parent:
            try:
                repo = Repo(search_path)
                logger.info(f"Found Git repository at: {search_path}")
                return repo
            except InvalidGitRepositoryError:
                search_path = search_path.parent

        try:
            return Repo(self.repo_path)
        except InvalidGitRepositoryError as e:
            raise GitRepositoryError(
                f"No Git repository found at {self.repo_path} or any parent directory"
            ) from e

    # --- Branch queries ---
    def list_local_branches(self) -> List[LocalBranch]:
        """List local branches with their tip commit information."""
        try:
            branches: List[LocalBranch] = []
            for head in self.repo.heads:
                commit = head.commit
                branches.append(
                    LocalBranch(
                        name=head.name,
                        head=BranchHead(
                            commit_id=commit.hexsha,
                            summary=str(commit.summary).strip(),
                            author=commit.author.name or "",
                            committed_at=commit.committed_datetime,
                        ),
                    )
                )
            return branches
        except GitRepositoryError:
            raise
        except Exception as e:
            logger.error(f"Error listing local branches: {e}")
            raise GitRepositoryError(f"Failed to list local branches: {e}") from e

    def list_local_branch_names(self) -> List[str]:
        return [b.name for b in self.list_local_branches()]

    def get_current_branch(self) -> str:
        """Get the current branch name.

        Raises:
            DetachedHeadError: HEAD points at a commit rather than a branch
        """
        if self.repo.head.is_detached:
            raise DetachedHeadError("HEAD is detached; check out a branch first")
        try:
            return self.repo.active_branch.name
        except Exception as e:
            logger.error(f"Error getting current branch: {e}")
            raise GitRepositoryError(f"Could not determine current branch: {e}") from e

    def current_branch_or_none(self) -> Optional[str]:
        try:
            return self.get_current_branch()
        except DetachedHeadError:
            return None

    def checkout_branch(self, branch_name: str) -> None:
        """Checkout a specific branch."""
        try:
            self.repo.git.checkout(branch_name)
            logger.info(f"Checked out branch: {branch_name}")
        except GitCommandError as e:
            logger.error(f"Error checking out branch {branch_name}: {e}")
            raise GitRepositoryError(f"Failed to checkout branch {branch_name}: {e}") from e

    def ahead_behind(self, commit: str, base: str) -> BranchDivergence:
        """Return how far ``commit`` is ahead of and behind ``base``."""
        try:
            output = self.repo.git.rev_list("--left-right", "--count", f"{base}...{commit}")
        except GitCommandError as e:
            logger.error(f"Error computing ahead/behind for {commit} vs {base}: {e}")
            raise GitRepositoryError(f"Failed to compare {commit} with {base}: {e}") from e
        left_right = output.strip().split()
        if len(left_right) != 2:
            raise GitRepositoryError(f"Unexpected rev-list output: {output!r}")
        behind = int(left_right[0])
        ahead = int(left_right[1])
        return BranchDivergence(ahead=ahead, behind=behind)

    def is_rebase_in_progress(self) -> bool:
        """Check if a rebase is currently in progress."""
        try:
            git_dir = Path(self.repo.git_dir)
            rebase_dirs = [git_dir / "rebase-merge", git_dir / "rebase-apply"]
            return any(d.exists() for d in rebase_dirs)
        except Exception as e:
            logger.error(f"Error checking rebase status: {e}")
            return False

    # --- Rebase primitives ---
    def _run_git(self, args: Sequence[str], env: Optional[Dict[str, str]] = None) -> GitCommandResult:
        """Run ``git <args>`` and capture combined output; never raises on non-zero exit."""
        command = ["git", *args]
        logger.debug(f"Running '{' '.join(command)}' in {self.repo.working_dir}")
        try:
            with self.repo.git.custom_environment(**(env or {})):
                status, stdout, stderr = self.repo.git.execute(
                    command,
                    with_extended_output=True,
                    with_exceptions=False,
                )
        except GitCommandNotFound as e:
            logger.error(f"git executable not available: {e}")
            raise RebaseExternalFailureError(f"Could not run git: {e}") from e

        combined = "\n".join(part for part in (stdout, stderr) if part)
        logger.debug(f"git {args[0]} exited with {status}: {combined}")
        return GitCommandResult(status=int(status or 0), output=combined)

    def rebase(
        self,
        onto: str,
        force: bool = False,
        autostash: bool = False,
        skip_commits: Optional[Sequence[str]] = None,
    ) -> GitCommandResult:
        """Rebase the checked-out branch onto ``onto``.

        When ``skip_commits`` is given, an interactive rebase is driven by the
        todo editor so that matching commits are dropped during replay.
        """
        args = ["rebase"]
        env: Dict[str, str] = {}
        if skip_commits:
            args.append("--interactive")
            env["GIT_SEQUENCE_EDITOR"] = f'"{sys.executable}" -m stack_cascade.todo_editor'
            env["GIT_EDITOR"] = "true"
            env[SKIP_COMMITS_ENV] = ",".join(skip_commits)
        if force:
            args.append("--force-rebase")
        if autostash:
            args.append("--autostash")
        args.append(onto)
        return self._run_git(args, env)

    def rebase_continue(self) -> GitCommandResult:
        # Avoid interactive editor prompt
        return self._run_git(["rebase", "--continue"], {"GIT_EDITOR": "true"})

    def rebase_skip(self) -> GitCommandResult:
        return self._run_git(["rebase", "--skip"], {"GIT_EDITOR": "true"})

    def rebase_abort(self) -> GitCommandResult:
        result = self._run_git(["rebase", "--abort"])
        if result.success:
            logger.info("Rebase aborted successfully")
        else:
            logger.error(f"Failed to abort rebase: {result.output}")
        return result

    # --- Remote synchronization ---
    def push_force_with_lease(self, branch_name: str, remote_name: str = "origin") -> GitCommandResult:
        """Push ``branch_name``, refusing to overwrite remote commits not seen locally."""
        result = self._run_git(["push", "--force-with-lease", remote_name, branch_name])
        if result.success:
            logger.info(f"Force-pushed {branch_name} to {remote_name}")
        else:
            logger.warning(f"Force push of {branch_name} to {remote_name} failed: {result.output}")
        return result
