"""
UI-agnostic interface for conflict resolution prompting.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List

from .models import ConflictResolution


class ConflictPrompt(ABC):
    """Abstract interface for asking the user how to handle a rebase conflict."""

    @abstractmethod
    def choose_resolution(self, branch: str, onto: str, output: str) -> ConflictResolution:
        """
        Ask how to proceed with a rebase stopped on a conflict.

        Args:
            branch: The branch being rebased
            onto: The parent branch it is being rebased onto
            output: Combined git output of the step that conflicted

        Returns:
            The chosen resolution
        """
        pass

    @abstractmethod
    def show_messages(self, messages: List[str], style: str = "") -> None:
        """Display generic user-facing messages from core logic.

        Args:
            messages: List of strings to display
            style: Optional style hint for UI implementations
        """
        pass


class NoOpConflictPrompt(ConflictPrompt):
    """No-operation conflict prompt that always aborts back to the original branch."""

    def choose_resolution(self, branch: str, onto: str, output: str) -> ConflictResolution:
        return ConflictResolution.ABORT_TO_ORIGINAL

    def show_messages(self, messages: List[str], style: str = "") -> None:
        pass
