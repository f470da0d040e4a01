"""Scripted execution session used for dry runs and tests."""

from __future__ import annotations

from collections.abc import Mapping, Sequence

from auto_resume.session.base import SessionError


class ReplaySession:
    """Replays canned output frames for each command it receives.

    The visible output behaves like a terminal: earlier commands and their
    final frames stay on screen above the current one. After ``send(command)``
    each ``read_recent_output()`` advances to the next frame scripted for that
    command and the last frame repeats once the script runs out. Commands
    without a script get ``default_frames``.
    """

    def __init__(  # noqa: PLR0913
        self,
        script: Mapping[str, Sequence[str]] | None = None,
        *,
        default_frames: Sequence[str] = ("",),
        responsive: bool = True,
        recoverable: bool = True,
        failing_commands: Sequence[str] = (),
    ) -> None:
        self.script = dict(script or {})
        self.default_frames = tuple(default_frames) or ("",)
        self.responsive = responsive
        self.recoverable = recoverable
        self.failing_commands = set(failing_commands)
        self.sent: list[str] = []
        self.recover_calls = 0
        self._history: list[str] = []
        self._frames: tuple[str, ...] = ()
        self._cursor = 0

    def send(self, command: str) -> None:
        if command in self.failing_commands:
            raise SessionError(f"replay session rejected command: {command}")
        if self._frames:
            self._history.append(self._frame_at(self._cursor - 1))
        self._history.append(f"> {command}")
        self.sent.append(command)
        self._frames = tuple(self.script.get(command, self.default_frames)) or ("",)
        self._cursor = 0

    def read_recent_output(self) -> str:
        lines = [*self._history]
        if self._frames:
            lines.append(self._frame_at(self._cursor))
            self._cursor += 1
        return "\n".join(lines)

    def is_responsive(self) -> bool:
        return self.responsive

    def recover(self) -> bool:
        self.recover_calls += 1
        if self.recoverable:
            self.responsive = True
        return self.responsive

    def _frame_at(self, position: int) -> str:
        return self._frames[min(max(position, 0), len(self._frames) - 1)]
