from __future__ import annotations

import allure
import pytest

from auto_resume.queue.models import Task, TaskType
from auto_resume.queue.tasks import (
    CustomTask,
    IssueReferenceTask,
    PullRequestReferenceTask,
    resolve_command,
    variant_for,
)
from auto_resume.session import ReplaySession

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Task Variants"),
]


def test_reference_tasks_derive_commands() -> None:
    assert resolve_command(TaskType.ISSUE_REFERENCE, command=None, reference=42) == "/dev 42"
    assert resolve_command(TaskType.PR_REFERENCE, command="", reference=7) == "/review PR-7"


def test_explicit_command_wins_and_is_trimmed() -> None:
    resolved = resolve_command(TaskType.ISSUE_REFERENCE, command="  /dev 42 --fast ", reference=42)

    assert resolved == "/dev 42 --fast"


@pytest.mark.parametrize(
    ("task_type", "message"),
    [
        (TaskType.CUSTOM, "Custom tasks need a command"),
        (TaskType.PR_REFERENCE, "pr_reference tasks need a command or a reference"),
    ],
)
def test_missing_command_is_rejected(task_type: TaskType, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        resolve_command(task_type, command="   ", reference=None)


def test_variant_dispatch_by_type() -> None:
    custom = Task(id="c", type=TaskType.CUSTOM, command="echo")
    issue = Task(id="i", type=TaskType.ISSUE_REFERENCE, command="/dev 3", reference=3)
    review = Task(id="p", type=TaskType.PR_REFERENCE, command="/review PR-9", reference=9)

    assert isinstance(variant_for(custom), CustomTask)
    assert isinstance(variant_for(issue), IssueReferenceTask)
    assert isinstance(variant_for(review), PullRequestReferenceTask)
    assert variant_for(custom).completion_patterns() == ()
    assert variant_for(issue).completion_patterns() == ("###TASK_COMPLETE:issue-3###",)
    assert variant_for(review).completion_patterns() == ("###REVIEW_COMPLETE:PR-9###",)


def test_execute_sends_stored_command() -> None:
    session = ReplaySession()
    task = Task(id="i", type=TaskType.ISSUE_REFERENCE, command="", reference=5)

    sent = variant_for(task).execute(session)

    assert sent == "/dev 5"
    assert session.sent == ["/dev 5"]
