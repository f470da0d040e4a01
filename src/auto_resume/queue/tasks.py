"""Task variants: how each task type turns into a session command."""

from __future__ import annotations

from dataclasses import dataclass

from auto_resume.queue.models import Task, TaskType
from auto_resume.session.base import ExecutionSession


@dataclass(frozen=True, slots=True)
class CustomTask:
    """Free-form instruction sent verbatim."""

    task: Task

    @staticmethod
    def default_command(reference: int | None) -> str | None:
        return None

    def build_command(self) -> str:
        return self.task.command

    def completion_patterns(self) -> tuple[str, ...]:
        return ()

    def execute(self, session: ExecutionSession) -> str:
        command = self.build_command()
        session.send(command)
        return command


@dataclass(frozen=True, slots=True)
class IssueReferenceTask:
    """Work on an issue through the agent's ``/dev`` command."""

    task: Task

    @staticmethod
    def default_command(reference: int | None) -> str | None:
        if reference is None:
            return None
        return f"/dev {reference}"

    def build_command(self) -> str:
        return self.task.command or self.default_command(self.task.reference) or ""

    def completion_patterns(self) -> tuple[str, ...]:
        if self.task.reference is None:
            return ()
        return (f"###TASK_COMPLETE:issue-{self.task.reference}###",)

    def execute(self, session: ExecutionSession) -> str:
        command = self.build_command()
        session.send(command)
        return command


@dataclass(frozen=True, slots=True)
class PullRequestReferenceTask:
    """Review a pull request through the agent's ``/review`` command."""

    task: Task

    @staticmethod
    def default_command(reference: int | None) -> str | None:
        if reference is None:
            return None
        return f"/review PR-{reference}"

    def build_command(self) -> str:
        return self.task.command or self.default_command(self.task.reference) or ""

    def completion_patterns(self) -> tuple[str, ...]:
        if self.task.reference is None:
            return ()
        return (f"###REVIEW_COMPLETE:PR-{self.task.reference}###",)

    def execute(self, session: ExecutionSession) -> str:
        command = self.build_command()
        session.send(command)
        return command


TaskVariant = CustomTask | IssueReferenceTask | PullRequestReferenceTask

_VARIANTS: dict[TaskType, type[TaskVariant]] = {
    TaskType.CUSTOM: CustomTask,
    TaskType.ISSUE_REFERENCE: IssueReferenceTask,
    TaskType.PR_REFERENCE: PullRequestReferenceTask,
}


def variant_for(task: Task) -> TaskVariant:
    """Wrap ``task`` in the variant that knows how to execute it."""

    return _VARIANTS[task.type](task)


def resolve_command(task_type: TaskType, *, command: str | None, reference: int | None) -> str:
    """Command to store for a new task, derived from the reference when not given."""

    if command and command.strip():
        return command.strip()
    derived = _VARIANTS[task_type].default_command(reference)
    if derived is None:
        if task_type == TaskType.CUSTOM:
            raise ValueError("Custom tasks need a command.")
        raise ValueError(f"{task_type.value} tasks need a command or a reference number.")
    return derived
