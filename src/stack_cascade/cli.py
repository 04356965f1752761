"""
Command-line interface for stack-cascade.
"""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
import os
import sys
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional, Set

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from rich.tree import Tree

from .cli_conflict_prompt import CliConflictPrompt
from .graph_builder import ANNOTATION_JIRA, ANNOTATION_PR, BranchGraph
from .models import (
    BranchStatus,
    CascadeAbortedError,
    CascadeReport,
    RebaseConflictError,
    StackError,
)
from .rebase_orchestrator import CascadeOptions, RebaseOrchestrator, parse_skip_commits
from .root_resolver import determine_root
from . import __version__ as PACKAGE_VERSION


console = Console()
logger = logging.getLogger(__name__)

LOG_ENV = "STACK_CASCADE_LOG"

EXIT_FAILURE = 1
EXIT_ABORTED = 3
EXIT_INTERRUPTED = 130

_STATUS_STYLES = {
    BranchStatus.REBASED: "green",
    BranchStatus.UP_TO_DATE: "cyan",
    BranchStatus.CONFLICT_RESOLVED: "green",
    BranchStatus.FAILED: "bold red",
    BranchStatus.SKIPPED: "yellow",
    BranchStatus.NOT_PROCESSED: "dim",
}


def _print_version(ctx, param, value):
    """Eager option callback to print version and exit."""
    if not value or ctx.resilient_parsing:
        return
    click.echo(f"stack-cascade {PACKAGE_VERSION}")
    ctx.exit()


def _default_log_path() -> Path:
    """Determine default log file path (~/.stack-cascade/stack-cascade.log)."""
    env_path = os.environ.get(LOG_ENV)
    if env_path:
        p = Path(env_path).expanduser()
        p.parent.mkdir(parents=True, exist_ok=True)
        return p
    base = Path.home() / ".stack-cascade"
    base.mkdir(parents=True, exist_ok=True)
    return base / "stack-cascade.log"


class SafeConsoleFilter(logging.Filter):
    """Sanitize record messages for console by replacing unencodable characters.

    Runs before handler emission, which matters for RichHandler since it may
    bypass standard formatters for message text.
    """

    def __init__(self, encoding: Optional[str] = None):
        super().__init__()
        self.encoding = encoding or getattr(sys.stderr, "encoding", None) or "utf-8"

    def filter(self, record: logging.LogRecord) -> bool:  # always keep the record
        message = record.getMessage()
        try:
            message.encode(self.encoding, errors="strict")
        except UnicodeEncodeError:
            record.msg = message.encode(self.encoding, errors="replace").decode(
                self.encoding, errors="replace"
            )
            record.args = ()
        return True


def setup_logging(verbose: bool = False, console_level: Optional[str] = None, log_file: Optional[Path] = None) -> Path:
    """Setup logging with a per-run file plus a rotating aggregate file.

    - Per-run log file: <stem>-YYYYMMDD_HHMMSS.log
    - Aggregate log: <stem>.log (rotated)
    - Console logging disabled by default; enable via --verbose or --log-level

    Returns the aggregate log path.
    """
    provided = Path(log_file) if log_file else _default_log_path()
    if provided.exists() and provided.is_dir():
        base_dir = provided
        base_stem = "stack-cascade"
        aggregate_path = base_dir / f"{base_stem}.log"
    else:
        base_dir = provided.parent
        base_stem = provided.stem or "stack-cascade"
        aggregate_path = provided
    base_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    per_run_path = base_dir / f"{base_stem}-{timestamp}.log"

    root = logging.getLogger()
    # Clear existing handlers to avoid duplication in tests / repeated invocations
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    root.setLevel(logging.DEBUG)

    file_fmt = logging.Formatter(
        fmt="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    run_file_handler = logging.FileHandler(str(per_run_path), encoding="utf-8")
    run_file_handler.setLevel(logging.DEBUG)
    run_file_handler.setFormatter(file_fmt)
    root.addHandler(run_file_handler)

    aggregate_handler = RotatingFileHandler(
        str(aggregate_path), maxBytes=1_000_000, backupCount=3, encoding="utf-8"
    )
    aggregate_handler.setLevel(logging.DEBUG)
    aggregate_handler.setFormatter(file_fmt)
    root.addHandler(aggregate_handler)

    # GitPython logs every command at debug level
    logging.getLogger("git").setLevel(logging.INFO)

    if verbose or console_level:
        level_map = {
            "debug": logging.DEBUG,
            "info": logging.INFO,
            "warning": logging.WARNING,
            "error": logging.ERROR,
        }
        ch_level = level_map.get((console_level or "info").lower(), logging.INFO)
        console_handler = RichHandler(console=console, rich_tracebacks=True)
        console_handler.setLevel(ch_level)
        enc = getattr(console.file, "encoding", None) or getattr(sys.stderr, "encoding", None) or "utf-8"
        console_handler.setFormatter(logging.Formatter("%(message)s"))
        console_handler.addFilter(SafeConsoleFilter(encoding=enc))
        root.addHandler(console_handler)

    return aggregate_path


def _maybe_print_log_notice(ctx: click.Context) -> None:
    """Inform user about logging destination and how to enable console logs."""
    if ctx.obj.get("verbose") or ctx.obj.get("console_level"):
        return
    console.print(
        f"[dim]Logs are written to {ctx.obj.get('log_path')}. Use -v or --log-level to show them here.[/dim]"
    )


@contextmanager
def _reported_errors(ctx: click.Context, action: str) -> Iterator[None]:
    """Map errors raised by a command body onto console messages and exit codes."""
    try:
        yield
    except (CascadeAbortedError, RebaseConflictError) as e:
        console.print(f"\n🛑 **{action} halted:** {e}", style="bold yellow")
        logger.debug(f"{action} halted", exc_info=True)
        sys.exit(EXIT_ABORTED)
    except StackError as e:
        console.print(f"\n❌ **{action} failed:** {e}", style="bold red")
        logger.debug(f"{action} failed", exc_info=True)
        sys.exit(EXIT_FAILURE)
    except (click.Abort, KeyboardInterrupt):
        console.print("\n\n🚫 **Operation cancelled by user**", style="bold yellow")
        logger.debug("Operation cancelled by user", exc_info=True)
        sys.exit(EXIT_INTERRUPTED)
    except Exception as e:
        console.print(f"\n💥 **Unexpected Error:** {e}", style="bold red")
        if ctx.obj.get("verbose"):
            console.print_exception()
        logger.debug(f"Unexpected error during {action}", exc_info=True)
        sys.exit(EXIT_FAILURE)


def _orchestrator(ctx: click.Context) -> RebaseOrchestrator:
    return RebaseOrchestrator(ctx.obj.get("repo_path"), CliConflictPrompt(console))


@click.group()
@click.option(
    "--version",
    "-V",
    is_flag=True,
    callback=_print_version,
    expose_value=False,
    is_eager=True,
    help="Show version and exit.",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose console logging (INFO)")
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default=None,
    help="Console log level. By default, console logging is disabled.",
)
@click.option(
    "--repo-path",
    type=click.Path(exists=True, path_type=Path),
    help="Path to repository (defaults to current directory)",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool, log_level: Optional[str], repo_path: Optional[Path]) -> None:
    """Stack Cascade - rebase stacked branches along their declared dependencies."""
    log_path = setup_logging(verbose, console_level=log_level)

    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    ctx.obj["console_level"] = log_level
    ctx.obj["log_path"] = log_path
    ctx.obj["repo_path"] = repo_path.resolve() if isinstance(repo_path, Path) else None
    logger.debug(f"CLI init: cwd={Path.cwd()} repo_path={ctx.obj['repo_path']}")


# --- Dependencies ---


@cli.group()
def dep() -> None:
    """Manage branch dependencies."""
    pass


@dep.command("add")
@click.argument("child")
@click.argument("parent")
@click.pass_context
def dep_add(ctx: click.Context, child: str, parent: str) -> None:
    """Declare that CHILD is stacked on PARENT."""
    with _reported_errors(ctx, "Adding dependency"):
        _orchestrator(ctx).add_dependency(child, parent)
        console.print(f"✅ [cyan]{child}[/cyan] now depends on [green]{parent}[/green]")


@dep.command("remove")
@click.argument("child")
@click.argument("parent")
@click.pass_context
def dep_remove(ctx: click.Context, child: str, parent: str) -> None:
    """Remove the dependency of CHILD on PARENT."""
    with _reported_errors(ctx, "Removing dependency"):
        if _orchestrator(ctx).remove_dependency(child, parent):
            console.print(f"🗑️  Removed dependency {child} -> {parent}")
        else:
            console.print(f"No dependency {child} -> {parent} found.", style="yellow")
            sys.exit(EXIT_FAILURE)


@dep.command("list")
@click.pass_context
def dep_list(ctx: click.Context) -> None:
    """List declared dependencies."""
    with _reported_errors(ctx, "Listing dependencies"):
        state = _orchestrator(ctx).load_state()
        if not state.dependencies:
            console.print("No dependencies defined.")
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Child", style="cyan")
        table.add_column("Parent", style="green")
        table.add_column("Created", style="dim")
        for d in state.dependencies:
            table.add_row(d.child, d.parent, d.created_at.strftime("%Y-%m-%d %H:%M"))
        console.print(table)


# --- Roots ---


@cli.group()
def root() -> None:
    """Manage root branches."""
    pass


@root.command("add")
@click.argument("branch")
@click.option("--default", "is_default", is_flag=True, help="Make this the default root")
@click.pass_context
def root_add(ctx: click.Context, branch: str, is_default: bool) -> None:
    """Mark BRANCH as a root branch."""
    with _reported_errors(ctx, "Adding root"):
        _orchestrator(ctx).add_root(branch, is_default)
        suffix = " (default)" if is_default else ""
        console.print(f"✅ [green]{branch}[/green] is a root branch{suffix}")


@root.command("remove")
@click.argument("branch")
@click.pass_context
def root_remove(ctx: click.Context, branch: str) -> None:
    """Stop treating BRANCH as a root branch."""
    with _reported_errors(ctx, "Removing root"):
        if _orchestrator(ctx).remove_root(branch):
            console.print(f"🗑️  {branch} is no longer a root branch")
        else:
            console.print(f"{branch} is not a root branch.", style="yellow")
            sys.exit(EXIT_FAILURE)


@root.command("list")
@click.pass_context
def root_list(ctx: click.Context) -> None:
    """List root branches."""
    with _reported_errors(ctx, "Listing roots"):
        state = _orchestrator(ctx).load_state()
        if not state.root_branches:
            console.print("No root branches defined.")
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Branch", style="green")
        table.add_column("Default", justify="center")
        for r in state.root_branches:
            table.add_row(r.branch, "⭐" if r.is_default else "")
        console.print(table)


# --- Rebasing ---


def _skip_commits_option(value: Optional[str]):
    return parse_skip_commits(value) if value else []


_shared_rebase_options = [
    click.option("--force", is_flag=True, help="Rebase even when already up to date"),
    click.option("--autostash", is_flag=True, help="Stash local changes around each rebase"),
    click.option(
        "--no-interactive",
        "no_interactive",
        is_flag=True,
        help="Abort on the first conflict instead of prompting",
    ),
    click.option(
        "--skip-commits",
        "skip_commits",
        metavar="HASHES|FILE",
        help="Commits to drop: comma-separated hashes or a file with one hash per line",
    ),
]


def _rebase_options(func):
    for option in reversed(_shared_rebase_options):
        func = option(func)
    return func


@cli.command()
@click.argument("branch", required=False)
@_rebase_options
@click.pass_context
def rebase(
    ctx: click.Context,
    branch: Optional[str],
    force: bool,
    autostash: bool,
    no_interactive: bool,
    skip_commits: Optional[str],
) -> None:
    """
    Rebase BRANCH (default: the current branch) onto its parent branches.

    Example: stack-cascade rebase --autostash
    """
    with _reported_errors(ctx, "Rebase"):
        _maybe_print_log_notice(ctx)
        options = CascadeOptions(
            force=force,
            autostash=autostash,
            interactive=not no_interactive,
            skip_commits=_skip_commits_option(skip_commits),
        )
        report = _orchestrator(ctx).rebase_branch(branch, options)
        _display_report(report)
        report.raise_for_status()


@cli.command()
@click.option("--max-depth", type=click.IntRange(min=1), help="Only cascade this many levels deep")
@_rebase_options
@click.option("--force-push", is_flag=True, help="Push rebased branches with --force-with-lease")
@click.option("--remote", default="origin", show_default=True, help="Remote used by --force-push")
@click.option("--preview", is_flag=True, help="Show the rebase order without running it")
@click.pass_context
def cascade(
    ctx: click.Context,
    max_depth: Optional[int],
    force: bool,
    autostash: bool,
    no_interactive: bool,
    skip_commits: Optional[str],
    force_push: bool,
    remote: str,
    preview: bool,
) -> None:
    """
    Rebase every branch stacked on the current branch, parents first.

    Example: stack-cascade cascade --max-depth 2 --force-push
    """
    with _reported_errors(ctx, "Cascade"):
        _maybe_print_log_notice(ctx)
        orchestrator = _orchestrator(ctx)
        options = CascadeOptions(
            max_depth=max_depth,
            force=force,
            autostash=autostash,
            interactive=not no_interactive,
            skip_commits=_skip_commits_option(skip_commits),
            force_push=force_push,
            remote=remote,
        )

        if preview:
            start = orchestrator.git_manager.get_current_branch()
            plan = orchestrator.plan_cascade(start, max_depth)
            _display_plan(start, plan)
            return

        report = orchestrator.cascade(options)
        _display_report(report)
        report.raise_for_status()


# --- Graph maintenance ---


@cli.command()
@click.option("--root", "root_override", help="Render from this branch instead of the default root")
@click.option(
    "--attach-orphans/--no-attach-orphans",
    default=True,
    show_default=True,
    help="Show unparented branches under the default root",
)
@click.pass_context
def tree(ctx: click.Context, root_override: Optional[str], attach_orphans: bool) -> None:
    """Show the branch dependency tree."""
    with _reported_errors(ctx, "Tree"):
        orchestrator = _orchestrator(ctx)
        state = orchestrator.load_state()
        graph = orchestrator.build_graph(state, attach_orphans=attach_orphans, with_divergence=True)
        top = determine_root(graph, state, root_override)
        if top is None:
            console.print("No branches found.")
            return
        _display_tree(graph, top)


@cli.command()
@click.option("--parent", help="Adopt orphans under this branch (default: the default root)")
@click.option("--dry-run", is_flag=True, help="Show what would be adopted")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def adopt(ctx: click.Context, parent: Optional[str], dry_run: bool, yes: bool) -> None:
    """Attach branches without a parent to the default root (or --parent)."""
    with _reported_errors(ctx, "Adopt"):
        orchestrator = _orchestrator(ctx)
        plan, _, _ = orchestrator.adopt_orphans(parent, dry_run=True)
        if not plan:
            console.print("No orphaned branches to adopt.")
            return

        console.print(f"\n📋 **{len(plan)} orphaned branch(es)**")
        for child, target in plan:
            console.print(f"  • [cyan]{child}[/cyan] → [green]{target}[/green]")
        if dry_run:
            return
        if not yes and not click.confirm("\nAdopt these branches?"):
            console.print("Operation cancelled.")
            return

        _, created, rejected = orchestrator.adopt_orphans(parent)
        console.print(f"✅ Adopted {len(created)} branch(es)", style="bold green")
        for child, target, reason in rejected:
            console.print(f"  ⚠️  {child} → {target}: {reason}", style="yellow")


@cli.command()
@click.option("--dry-run", is_flag=True, help="Show what would be removed")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def evict(ctx: click.Context, dry_run: bool, yes: bool) -> None:
    """Remove stored references to branches that no longer exist locally."""
    with _reported_errors(ctx, "Evict"):
        orchestrator = _orchestrator(ctx)
        report = orchestrator.evict_stale_branches(dry_run=True)
        if report.is_empty:
            console.print("No stale branch references found.")
            return

        for d in report.removed_dependencies:
            console.print(f"  • dependency [cyan]{d.child}[/cyan] → [green]{d.parent}[/green]")
        for name in report.removed_metadata:
            console.print(f"  • metadata for [cyan]{name}[/cyan]")
        if dry_run:
            return
        if not yes and not click.confirm("\nRemove these stale references?"):
            console.print("Operation cancelled.")
            return

        report = orchestrator.evict_stale_branches()
        total = len(report.removed_dependencies) + len(report.removed_metadata)
        console.print(f"🧹 Removed {total} stale reference(s)", style="bold green")


@cli.command()
def version() -> None:
    """Print the current stack-cascade version."""
    console.print(f"stack-cascade {PACKAGE_VERSION}")


# --- Rendering ---


def _node_label(graph: BranchGraph, name: str, implicit: bool) -> str:
    node = graph.get(name)
    label = f"[bold green]{name}[/bold green]" if node.is_current else f"[cyan]{name}[/cyan]"
    if node.is_current:
        label = f"* {label}"
    if node.divergence is not None:
        label += f" [dim](+{node.divergence.ahead}/-{node.divergence.behind})[/dim]"
    jira = node.annotation(ANNOTATION_JIRA)
    if jira:
        label += f" [magenta]{jira}[/magenta]"
    pr = node.annotation(ANNOTATION_PR)
    if pr:
        label += f" [blue]PR #{pr}[/blue]"
    if node.secondary_parents:
        label += f" [dim]also on: {', '.join(node.secondary_parents)}[/dim]"
    if implicit:
        label += " [dim italic](orphan)[/dim italic]"
    return label


def _display_tree(graph: BranchGraph, top: str) -> None:
    implicit = {(e.parent, e.child) for e in graph.edges if e.implicit}
    visited: Set[str] = set()

    def add_children(parent_tree: Tree, name: str) -> None:
        for child in graph.children(name):
            if child in visited:
                parent_tree.add(f"[dim]{child} ↑[/dim]")
                continue
            visited.add(child)
            add_children(parent_tree.add(_node_label(graph, child, (name, child) in implicit)), child)

    visited.add(top)
    rendered = Tree(_node_label(graph, top, False), guide_style="dim")
    add_children(rendered, top)
    console.print(rendered)

    # Anything not reachable from the chosen root
    for node in graph:
        if node.name in visited or node.primary_parent is not None:
            continue
        visited.add(node.name)
        other = Tree(_node_label(graph, node.name, False), guide_style="dim")
        add_children(other, node.name)
        console.print(other)


def _display_plan(start: str, plan) -> None:
    if not plan:
        console.print(f"No dependent branches of {start} to cascade.")
        return
    console.print(f"\n📋 **Cascade plan from {start}**")
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Order", justify="center")
    table.add_column("Branch", style="cyan")
    table.add_column("Onto", style="green")
    for i, (branch, parents) in enumerate(plan, 1):
        table.add_row(str(i), branch, ", ".join(parents))
    console.print(table)


def _display_report(report: CascadeReport) -> None:
    for warning in report.warnings:
        console.print(f"⚠️  {warning}", style="yellow")
    if not report.entries:
        return
    if len(report.entries) == 1 and report.entries[0].status is BranchStatus.SKIPPED:
        # Nothing to rebase; the warning says why
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Branch", style="cyan")
    table.add_column("Onto", style="green")
    table.add_column("Status")
    table.add_column("Details", style="dim")
    for entry in report.entries:
        style = _STATUS_STYLES.get(entry.status, "")
        details = entry.message
        if entry.pushed is not None:
            details = (details + "; " if details else "") + ("pushed" if entry.pushed else "push failed")
        table.add_row(
            entry.branch,
            ", ".join(entry.parents),
            f"[{style}]{entry.status.value}[/{style}]" if style else entry.status.value,
            details,
        )
    console.print(table)

    if report.ok:
        console.print("\n🎉 **Rebase completed successfully!**", style="bold green")


def main() -> None:
    """Main entry point for the CLI."""
    try:
        cli()
    except KeyboardInterrupt:
        console.print("\n\n🚫 **Operation cancelled by user**", style="bold yellow")
        logger.debug("Top-level cancellation (KeyboardInterrupt)", exc_info=True)
        sys.exit(EXIT_INTERRUPTED)
    except Exception as e:
        console.print(f"\n💥 **Unexpected error:** {e}", style="bold red")
        logger.debug("Unexpected error in main()", exc_info=True)
        sys.exit(EXIT_FAILURE)


if __name__ == "__main__":
    main()
