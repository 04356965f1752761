"""
CLI-specific implementation of the conflict prompt interface.
"""

from __future__ import annotations

from typing import List

import click
from rich.console import Console
from rich.panel import Panel

from .conflict_prompt_interface import ConflictPrompt
from .models import ConflictResolution


_CHOICES = {
    "continue": ConflictResolution.CONTINUE,
    "abort": ConflictResolution.ABORT_TO_ORIGINAL,
    "stay": ConflictResolution.ABORT_STAY_HERE,
    "skip": ConflictResolution.SKIP,
}


class CliConflictPrompt(ConflictPrompt):
    """CLI implementation of the conflict prompt interface using click and rich."""

    def __init__(self, console: Console = None):
        self.console = console or Console()

    def choose_resolution(self, branch: str, onto: str, output: str) -> ConflictResolution:
        """Show the conflict and ask for one of the four resolutions."""
        self.console.print(
            f"\n🔥 **REBASE CONFLICT** rebasing [cyan]{branch}[/cyan] onto [green]{onto}[/green]",
            style="bold red",
        )
        if output:
            self.console.print(output, style="dim", markup=False, highlight=False)

        options = [
            "[bold]continue[/bold] - resolve and stage the conflicts, then continue the rebase",
            "[bold]abort[/bold]    - abort the rebase and return to the original branch",
            "[bold]stay[/bold]     - abort the rebase but stay on the current branch",
            "[bold]skip[/bold]     - skip the conflicting commit and continue",
        ]
        self.console.print(
            Panel("\n".join(options), title="Options", title_align="left", border_style="blue")
        )

        choice = click.prompt(
            "Select an option",
            type=click.Choice(list(_CHOICES), case_sensitive=False),
            default="continue",
        ).lower()
        return _CHOICES[choice]

    def show_messages(self, messages: List[str], style: str = "") -> None:
        for message in messages:
            self.console.print(message, style=style or None)
