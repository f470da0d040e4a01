from __future__ import annotations

from datetime import timedelta

import allure
import pytest

from auto_resume.config import RetrySettings
from auto_resume.queue.errors import NotFoundError, PermanentFailure
from auto_resume.queue.models import (
    ErrorSeverity,
    PauseReason,
    PermanentlyFailed,
    Retried,
    Superseded,
    Task,
    TaskStatus,
    TaskType,
)
from auto_resume.queue.retry import RetryHandler
from auto_resume.queue.store import QueueStore

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Retry And Escalation"),
]


def _running_task(store: QueueStore, task_id: str = "t1", max_retries: int = 2) -> None:
    task = store.load().find(task_id)
    if task is None:
        store.append(
            Task(id=task_id, type=TaskType.CUSTOM, command="work", max_retries=max_retries),
        )
    store.update_status(task_id, TaskStatus.IN_PROGRESS)


def test_delay_grows_linearly_and_caps(store: QueueStore) -> None:
    handler = RetryHandler(store)

    assert [handler.compute_delay(count) for count in range(3)] == [300, 600, 900]
    assert handler.compute_delay(10) == 1_800


def test_failure_with_budget_left_is_rescheduled(store: QueueStore, clock) -> None:
    handler = RetryHandler(store, clock=clock)
    _running_task(store)

    outcome = handler.handle_failure("t1", "timed out")

    assert outcome == Retried(task_id="t1", retry_count=1, delay_seconds=300)
    task = store.load().find("t1")
    assert task.status == TaskStatus.PENDING
    assert task.retry_count == 1
    assert task.last_error == "timed out"
    assert task.available_at == clock.now + timedelta(seconds=300)


def test_exhausted_task_escalates_and_pauses_queue(store: QueueStore, clock) -> None:
    handler = RetryHandler(store, clock=clock)
    outcomes = []
    for _ in range(3):
        _running_task(store)
        outcomes.append(handler.handle_failure("t1", "boom"))

    assert [type(outcome) for outcome in outcomes] == [Retried, Retried, PermanentlyFailed]
    assert outcomes[1].delay_seconds == 600
    final = outcomes[-1]
    assert final.queue_paused is True
    assert isinstance(final.error, PermanentFailure)
    assert "after 2 retries" in str(final.error)

    document = store.load()
    assert document.find("t1").status == TaskStatus.FAILED_PERMANENT
    assert document.paused is True
    assert document.pause_reason == PauseReason.PERMANENT_FAILURE


def test_escalation_happens_exactly_once(store: QueueStore, clock) -> None:
    handler = RetryHandler(store, clock=clock)
    _running_task(store, max_retries=0)
    handler.handle_failure("t1", "boom")
    store.set_unpaused()
    revision = store.load().revision

    again = handler.handle_failure("t1", "boom")

    assert isinstance(again, PermanentlyFailed)
    assert again.queue_paused is False
    assert store.load().revision == revision
    assert store.load().paused is False


def test_auto_pause_can_be_disabled(store: QueueStore, clock) -> None:
    handler = RetryHandler(
        store,
        settings=RetrySettings(auto_pause_on_permanent_failure=False),
        clock=clock,
    )
    _running_task(store, max_retries=0)

    outcome = handler.handle_failure("t1", "boom")

    assert isinstance(outcome, PermanentlyFailed)
    assert outcome.queue_paused is False
    assert store.load().paused is False


def test_unknown_task_raises(store: QueueStore, clock) -> None:
    with pytest.raises(NotFoundError):
        RetryHandler(store, clock=clock).handle_failure("missing", "boom")


def test_requeued_task_is_left_alone(store: QueueStore, clock) -> None:
    handler = RetryHandler(store, clock=clock)
    _running_task(store)
    store.update_status_if("t1", TaskStatus.IN_PROGRESS, TaskStatus.PENDING, retry_count=0)
    revision = store.load().revision

    outcome = handler.handle_failure("t1", "timed out")

    assert outcome == Superseded(task_id="t1", status=TaskStatus.PENDING)
    assert store.load().revision == revision


def test_critical_failure_escalates_immediately(store: QueueStore, clock) -> None:
    handler = RetryHandler(store, clock=clock)
    _running_task(store, max_retries=3)

    outcome = handler.handle_failure("t1", "out of memory", severity=ErrorSeverity.CRITICAL)

    assert isinstance(outcome, PermanentlyFailed)
    assert outcome.escalated is True
    assert outcome.retry_count == 0
    assert outcome.queue_paused is True
    assert store.load().find("t1").status == TaskStatus.FAILED_PERMANENT


def test_critical_escalation_can_be_disabled(store: QueueStore, clock) -> None:
    handler = RetryHandler(
        store,
        settings=RetrySettings(escalate_critical_errors=False),
        clock=clock,
    )
    _running_task(store)

    outcome = handler.handle_failure("t1", "out of memory", severity=ErrorSeverity.CRITICAL)

    assert isinstance(outcome, Retried)
    assert store.load().find("t1").status == TaskStatus.PENDING


@pytest.mark.parametrize("severity", [ErrorSeverity.WARNING, ErrorSeverity.INFO])
def test_non_critical_failures_use_the_retry_budget(
    store: QueueStore,
    clock,
    severity: ErrorSeverity,
) -> None:
    handler = RetryHandler(store, clock=clock)
    _running_task(store)

    outcome = handler.handle_failure("t1", "boom", severity=severity)

    assert isinstance(outcome, Retried)
