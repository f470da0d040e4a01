"""Execution session backed by a tmux pane running an interactive CLI agent."""

from __future__ import annotations

import logging
import shlex
import subprocess
from collections.abc import Callable, Sequence

from auto_resume.session.base import SessionError

logger = logging.getLogger(__name__)

CommandRunner = Callable[[Sequence[str]], subprocess.CompletedProcess[str]]


def run_tmux(
    args: Sequence[str],
    *,
    timeout_seconds: float = 10.0,
) -> subprocess.CompletedProcess[str]:
    return subprocess.run(  # noqa: S603
        ["tmux", *args],  # noqa: S607
        capture_output=True,
        text=True,
        timeout=timeout_seconds,
        check=False,
    )


class TmuxSession:
    """Drives ``tmux send-keys`` / ``capture-pane`` against one target pane."""

    def __init__(
        self,
        target: str,
        *,
        output_lines: int = 200,
        start_command: str | None = None,
        runner: CommandRunner = run_tmux,
    ) -> None:
        self.target = target
        self.output_lines = output_lines
        self.start_command = start_command
        self._run = runner

    def send(self, command: str) -> None:
        self._checked(["send-keys", "-t", self.target, "-l", command], action="send command")
        self._checked(["send-keys", "-t", self.target, "Enter"], action="submit command")

    def read_recent_output(self) -> str:
        result = self._checked(
            ["capture-pane", "-p", "-J", "-t", self.target, "-S", f"-{self.output_lines}"],
            action="capture pane",
        )
        return result.stdout

    def is_responsive(self) -> bool:
        try:
            result = self._run(["has-session", "-t", self.target.split(":", 1)[0]])
        except (OSError, subprocess.TimeoutExpired) as error:
            logger.warning("tmux is not reachable: %s", error)
            return False
        return result.returncode == 0

    def recover(self) -> bool:
        if self.is_responsive():
            try:
                self._checked(["send-keys", "-t", self.target, "Escape"], action="reset input")
            except SessionError as error:
                logger.warning("Session %s did not accept reset: %s", self.target, error)
                return False
            return True
        if not self.start_command:
            logger.warning("Session %s is gone and no start command is configured", self.target)
            return False
        session_name = self.target.split(":", 1)[0]
        logger.info("Starting new tmux session %s", session_name)
        try:
            self._checked(
                ["new-session", "-d", "-s", session_name, *shlex.split(self.start_command)],
                action="start session",
            )
        except SessionError as error:
            logger.warning("Could not restart session %s: %s", session_name, error)
            return False
        return self.is_responsive()

    def _checked(self, args: list[str], *, action: str) -> subprocess.CompletedProcess[str]:
        try:
            result = self._run(args)
        except (OSError, subprocess.TimeoutExpired) as error:
            raise SessionError(f"tmux failed to {action}: {error}") from error
        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            raise SessionError(f"tmux failed to {action} (exit {result.returncode}): {stderr}")
        return result
