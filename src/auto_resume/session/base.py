"""Execution session interface the scheduler dispatches commands to."""

from __future__ import annotations

from typing import Protocol


class SessionError(RuntimeError):
    """Raised when a command cannot be delivered to the session."""


class ExecutionSession(Protocol):
    """Long-lived interactive process (for example a CLI agent in a tmux pane)."""

    def send(self, command: str) -> None:
        """Deliver ``command`` followed by Enter. Raises SessionError on failure."""

    def read_recent_output(self) -> str:
        """Return the most recent visible output of the session."""

    def is_responsive(self) -> bool:
        """Whether the session is alive and accepting input."""

    def recover(self) -> bool:
        """Try to bring an unresponsive session back; True on success."""
