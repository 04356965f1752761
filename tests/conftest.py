"""
Shared fixtures and fakes for the test suite.
"""

import shutil
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import pytest

from stack_cascade.conflict_prompt_interface import ConflictPrompt
from stack_cascade.models import (
    BranchDivergence,
    BranchHead,
    ConflictResolution,
    DetachedHeadError,
    GitCommandResult,
    GitRepositoryError,
    LocalBranch,
)
from stack_cascade.state_store import RepoState


REBASED = GitCommandResult(0, "Successfully rebased and updated refs/heads/x.")
UP_TO_DATE = GitCommandResult(0, "Current branch x is up to date.")
CONFLICT = GitCommandResult(
    1, "Auto-merging f.txt\nCONFLICT (content): Merge conflict in f.txt\nerror: could not apply 1234567..."
)
FAILED = GitCommandResult(128, "fatal: invalid upstream 'nowhere'")


requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git executable not available")


class FakeGitManager:
    """Scripted stand-in for GitManager that records every call."""

    def __init__(self, branches: Iterable[str], current: Optional[str] = "main") -> None:
        self.branches = list(branches)
        self.current = current
        self.calls: List[Tuple] = []
        self.rebase_results: Dict[Tuple[str, str], List[GitCommandResult]] = {}
        self.continue_results: List[GitCommandResult] = []
        self.skip_results: List[GitCommandResult] = []
        self.push_results: Dict[str, GitCommandResult] = {}
        self.checkout_failures = set()
        self.divergence: Dict[Tuple[str, str], BranchDivergence] = {}
        self.rebase_in_progress = False

    # --- scripting helpers ---
    def script_rebase(self, branch: str, onto: str, *results: GitCommandResult) -> None:
        self.rebase_results[(branch, onto)] = list(results)

    @property
    def rebases(self) -> List[Tuple[str, str]]:
        return [(c[1], c[2]) for c in self.calls if c[0] == "rebase"]

    def count(self, name: str) -> int:
        return len([c for c in self.calls if c[0] == name])

    # --- GitManager surface ---
    def list_local_branches(self) -> List[LocalBranch]:
        return [LocalBranch(name=b, head=BranchHead(commit_id=f"{b}-sha")) for b in self.branches]

    def list_local_branch_names(self) -> List[str]:
        return list(self.branches)

    def get_current_branch(self) -> str:
        if self.current is None:
            raise DetachedHeadError("HEAD is detached")
        return self.current

    def current_branch_or_none(self) -> Optional[str]:
        return self.current

    def is_rebase_in_progress(self) -> bool:
        return self.rebase_in_progress

    def checkout_branch(self, branch_name: str) -> None:
        self.calls.append(("checkout", branch_name))
        if branch_name in self.checkout_failures:
            raise GitRepositoryError(f"Failed to checkout branch {branch_name}")
        self.current = branch_name

    def ahead_behind(self, commit: str, base: str) -> BranchDivergence:
        self.calls.append(("ahead_behind", commit, base))
        return self.divergence.get((commit, base), BranchDivergence(ahead=1, behind=0))

    def rebase(
        self,
        onto: str,
        force: bool = False,
        autostash: bool = False,
        skip_commits: Optional[Sequence[str]] = None,
    ) -> GitCommandResult:
        self.calls.append(("rebase", self.current, onto, force, autostash, tuple(skip_commits or ())))
        queue = self.rebase_results.get((self.current, onto))
        if queue:
            return queue.pop(0)
        return REBASED

    def rebase_continue(self) -> GitCommandResult:
        self.calls.append(("continue",))
        return self.continue_results.pop(0) if self.continue_results else REBASED

    def rebase_skip(self) -> GitCommandResult:
        self.calls.append(("skip",))
        return self.skip_results.pop(0) if self.skip_results else REBASED

    def rebase_abort(self) -> GitCommandResult:
        self.calls.append(("abort",))
        return GitCommandResult(0, "")

    def push_force_with_lease(self, branch_name: str, remote_name: str = "origin") -> GitCommandResult:
        self.calls.append(("push", branch_name, remote_name))
        return self.push_results.get(branch_name, GitCommandResult(0, ""))


class ScriptedConflictPrompt(ConflictPrompt):
    """Returns pre-recorded conflict choices in order."""

    def __init__(self, *choices: ConflictResolution) -> None:
        self.choices = list(choices)
        self.asked: List[Tuple[str, str]] = []
        self.messages: List[str] = []

    def choose_resolution(self, branch: str, onto: str, output: str) -> ConflictResolution:
        self.asked.append((branch, onto))
        return self.choices.pop(0)

    def show_messages(self, messages: List[str], style: str = "") -> None:
        self.messages.extend(messages)


def make_state(dependencies: Iterable[Tuple[str, str]] = (), roots: Iterable[str] = (), default: Optional[str] = None) -> RepoState:
    """Build a RepoState from ``(child, parent)`` pairs and root names."""
    state = RepoState()
    for root in roots:
        state.add_root(root, is_default=root == default)
    for child, parent in dependencies:
        state.add_dependency(child, parent)
    return state


@pytest.fixture(autouse=True)
def isolated_log(tmp_path: Path, monkeypatch):
    """Keep CLI log files inside the test's temporary directory."""
    monkeypatch.setenv("STACK_CASCADE_LOG", str(tmp_path / "logs" / "stack-cascade.log"))


@pytest.fixture()
def git_repo(tmp_path: Path):
    """A real repository with one commit on ``main`` and a configured identity."""
    from git import Repo

    path = tmp_path / "repo"
    path.mkdir()
    repo = Repo.init(path)
    with repo.config_writer() as cw:
        cw.set_value("user", "name", "Test User")
        cw.set_value("user", "email", "test@example.com")
        cw.set_value("commit", "gpgsign", "false")
    (path / "base.txt").write_text("base\n")
    repo.index.add(["base.txt"])
    repo.index.commit("initial")
    repo.git.branch("-M", "main")
    return repo


def commit_file(repo, name: str, content: str, message: str) -> str:
    path = Path(repo.working_dir) / name
    path.write_text(content)
    repo.index.add([name])
    return repo.index.commit(message).hexsha
