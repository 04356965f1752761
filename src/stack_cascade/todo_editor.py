"""
Sequence editor that drops excluded commits from an interactive rebase todo list.

git invokes this as ``GIT_SEQUENCE_EDITOR`` with the todo file path as its only
argument; the commits to drop are read from ``STACK_CASCADE_SKIP_COMMITS``.
"""

from __future__ import annotations

import os
import re
import sys
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

SKIP_COMMITS_ENV = "STACK_CASCADE_SKIP_COMMITS"

_PICK_LINE = re.compile(r"^(pick|p)\s+([0-9a-fA-F]+)(\s.*)?$")


def _matches(todo_hash: str, skip: Iterable[str]) -> bool:
    todo_hash = todo_hash.lower()
    return any(todo_hash.startswith(s) or s.startswith(todo_hash) for s in skip)


def rewrite_todo(lines: Sequence[str], skip_commits: Iterable[str]) -> List[str]:
    """Turn ``pick`` lines for matching commits into ``drop`` lines."""
    skip = [s.strip().lower() for s in skip_commits if s.strip()]
    rewritten: List[str] = []
    for line in lines:
        match = _PICK_LINE.match(line.rstrip("\n"))
        if match and _matches(match.group(2), skip):
            rest = match.group(3) or ""
            newline = "\n" if line.endswith("\n") else ""
            rewritten.append(f"drop {match.group(2)}{rest}{newline}")
        else:
            rewritten.append(line)
    return rewritten


def main(argv: Optional[List[str]] = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    if len(args) != 1:
        print("usage: python -m stack_cascade.todo_editor <todo-file>", file=sys.stderr)
        return 2

    skip = [s for s in os.environ.get(SKIP_COMMITS_ENV, "").split(",") if s]
    todo = Path(args[0])
    lines = todo.read_text(encoding="utf-8").splitlines(keepends=True)
    todo.write_text("".join(rewrite_todo(lines, skip)), encoding="utf-8")
    return 0


if __name__ == "__main__":
    sys.exit(main())
