from __future__ import annotations

import logging
from dataclasses import dataclass

import allure
import pytest

from auto_resume.config import Settings
from auto_resume.queue.backoff import BackoffController
from auto_resume.queue.cache import QueueCache
from auto_resume.queue.models import PauseReason, Task, TaskStatus, TaskType
from auto_resume.queue.monitor import CompletionMonitor
from auto_resume.queue.retry import RetryHandler
from auto_resume.queue.scheduler import QueueScheduler, SchedulerRunSummary
from auto_resume.queue.services import QueueService
from auto_resume.queue.store import QueueStore
from auto_resume.session import ReplaySession

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Scheduler"),
]

MARKER = "###TASK_COMPLETE###"


@dataclass(slots=True)
class Harness:
    store: QueueStore
    cache: QueueCache
    backoff: BackoffController
    session: ReplaySession
    scheduler: QueueScheduler

    def add(self, task_id: str, **kwargs) -> Task:
        kwargs.setdefault("command", task_id)
        return self.store.append(Task(id=task_id, type=TaskType.CUSTOM, **kwargs))

    def status(self, task_id: str) -> TaskStatus:
        return self.store.load().find(task_id).status


@pytest.fixture()
def make_harness(store: QueueStore, cache: QueueCache, clock, monotonic):
    def _make(session: ReplaySession, **kwargs) -> Harness:
        backoff = BackoffController(store, clock=clock)
        kwargs.setdefault("clear_between_tasks", False)
        scheduler = QueueScheduler(
            store=store,
            cache=cache,
            backoff=backoff,
            retry_handler=RetryHandler(store, clock=clock),
            session=session,
            monitor=CompletionMonitor(
                check_interval_seconds=1,
                monotonic=monotonic,
                sleep=monotonic.sleep,
            ),
            poll_interval_seconds=0,
            **kwargs,
        )
        return Harness(store, cache, backoff, session, scheduler)

    return _make


def test_runs_tasks_in_priority_order_until_idle(make_harness) -> None:
    harness = make_harness(ReplaySession(default_frames=(MARKER,)))
    harness.add("first", priority=5)
    harness.add("second", priority=1)

    summary = harness.scheduler.run_loop(max_idle_polls=1)

    assert summary.processed == 2
    assert summary.completed == 2
    assert summary.idle_polls == 1
    assert harness.session.sent == ["second", "first"]
    assert harness.status("first") == TaskStatus.COMPLETED
    assert harness.status("second") == TaskStatus.COMPLETED


def test_max_tasks_limits_loop(make_harness) -> None:
    harness = make_harness(ReplaySession(default_frames=(MARKER,)))
    harness.add("a")
    harness.add("b")

    summary = harness.scheduler.run_loop(max_tasks=1)

    assert summary.processed == 1
    assert harness.status("b") == TaskStatus.PENDING


def test_context_is_cleared_between_tasks(make_harness) -> None:
    harness = make_harness(
        ReplaySession(default_frames=(MARKER,)),
        clear_between_tasks=True,
        clear_command="/clear",
    )
    harness.add("a")
    harness.add("b", clear_context=False)

    harness.scheduler.run_loop()

    assert harness.session.sent == ["/clear", "a", "b"]


def test_stale_marker_from_previous_task_does_not_complete_next(make_harness) -> None:
    session = ReplaySession({"a": [MARKER], "b": ["still thinking"]})
    harness = make_harness(session)
    harness.add("a")
    harness.add("b", timeout_seconds=3)

    harness.scheduler.run_loop()

    assert harness.status("a") == TaskStatus.COMPLETED
    task = harness.store.load().find("b")
    assert task.status == TaskStatus.PENDING
    assert task.retry_count == 1
    assert "timed out" in task.last_error


def test_timeout_schedules_retry_with_delay(make_harness, clock) -> None:
    harness = make_harness(ReplaySession(default_frames=("thinking...",)))
    harness.add("slow", timeout_seconds=3)

    summary = harness.scheduler.run_once()

    assert summary.timeouts == 1
    assert summary.retried == 1
    assert harness.status("slow") == TaskStatus.PENDING

    idle = harness.scheduler.run_once()
    assert idle.processed == 0
    assert idle.idle_polls == 1

    clock.advance(300)
    harness.session.default_frames = (MARKER,)
    assert harness.scheduler.run_once().completed == 1


def test_usage_limit_pauses_queue_then_resumes_same_task(make_harness, clock) -> None:
    limit_message = "Claude usage limit reached. Try again at 3pm."
    session = ReplaySession({"work": ["thinking", limit_message]})
    harness = make_harness(session)
    harness.add("work")
    harness.add("next")

    summary = harness.scheduler.run_once()

    assert summary.backoffs == 1
    assert summary.failed == summary.retried == 0
    task = harness.store.load().find("work")
    assert task.status == TaskStatus.PENDING
    assert task.retry_count == 0
    assert harness.store.load().pause_reason == PauseReason.USAGE_LIMIT
    assert harness.backoff.state().estimated_resume_at.hour == 15

    waiting = harness.scheduler.run_once()
    assert waiting.paused_polls == 1
    assert waiting.processed == 0

    clock.advance(5 * 3_600)
    session.script["work"] = [f"done {MARKER}"]
    resumed = harness.scheduler.run_once()

    assert resumed.resumed == 1
    assert resumed.completed == 1
    assert session.sent == ["work", "work"]
    assert harness.status("next") == TaskStatus.PENDING
    assert harness.store.load().paused is False


def test_permanent_failure_pauses_queue(make_harness) -> None:
    harness = make_harness(ReplaySession(default_frames=("thinking",)))
    harness.add("doomed", timeout_seconds=2, max_retries=0)
    harness.add("other")

    summary = harness.scheduler.run_loop()

    assert summary.failed == 1
    assert harness.status("doomed") == TaskStatus.FAILED_PERMANENT
    assert harness.status("other") == TaskStatus.PENDING
    assert harness.store.load().pause_reason == PauseReason.PERMANENT_FAILURE
    assert harness.session.sent == ["doomed"]


def test_stale_in_progress_task_is_recovered(make_harness, clock) -> None:
    harness = make_harness(ReplaySession(default_frames=(MARKER,)))
    harness.add("orphan", timeout_seconds=60)
    harness.store.update_status("orphan", TaskStatus.IN_PROGRESS)

    blocked = harness.scheduler.run_once()
    assert blocked.processed == 0

    clock.advance(60 + 300 + 1)
    summary = harness.scheduler.run_once()

    assert summary.recovered == 1
    assert summary.completed == 1
    assert harness.status("orphan") == TaskStatus.COMPLETED


def test_unrecoverable_session_fails_the_task(make_harness) -> None:
    session = ReplaySession(responsive=False, recoverable=False)
    harness = make_harness(session, recovery_attempts=2)
    harness.add("a")

    summary = harness.scheduler.run_once()

    assert summary.retried == 1
    assert session.recover_calls == 2
    assert session.sent == []
    assert harness.store.load().find("a").last_error == "session_unresponsive"


def test_dispatch_failure_is_retried(make_harness) -> None:
    harness = make_harness(ReplaySession(failing_commands=["a"]))
    harness.add("a")

    summary = harness.scheduler.run_once()

    assert summary.retried == 1
    assert "dispatch failed" in harness.store.load().find("a").last_error


def test_stop_request_prevents_dispatch(make_harness) -> None:
    harness = make_harness(ReplaySession(default_frames=(MARKER,)))
    harness.add("a")
    harness.scheduler.request_stop("test")

    summary = harness.scheduler.run_loop()

    assert summary.processed == 0
    assert harness.scheduler.stop_requested is True
    assert harness.status("a") == TaskStatus.PENDING


def test_summary_add_accumulates_every_counter() -> None:
    total = SchedulerRunSummary(processed=1, completed=1)
    total.add(SchedulerRunSummary(processed=1, backoffs=1, idle_polls=2))

    assert total == SchedulerRunSummary(processed=2, completed=1, backoffs=1, idle_polls=2)


class HookedSession(ReplaySession):
    """Replay session that runs ``hook`` on the given output read."""

    def __init__(self, hook, *, on_read: int, **kwargs) -> None:
        super().__init__(**kwargs)
        self.hook = hook
        self.on_read = on_read
        self.reads = 0

    def read_recent_output(self) -> str:
        self.reads += 1
        if self.reads == self.on_read:
            self.hook()
        return super().read_recent_output()


def _service(harness: Harness) -> QueueService:
    return QueueService(
        store=harness.store,
        cache=harness.cache,
        backoff=harness.backoff,
        settings=Settings(),
    )


def test_operator_requeue_during_run_supersedes_timeout(make_harness) -> None:
    requeue: list = []
    session = HookedSession(lambda: requeue[0](), on_read=3, default_frames=("thinking",))
    harness = make_harness(session)
    harness.add("slow", timeout_seconds=3)
    requeue.append(lambda: _service(harness).retry_task("slow"))

    summary = harness.scheduler.run_once()

    assert summary.timeouts == 1
    assert summary.superseded == 1
    assert summary.retried == summary.failed == 0
    task = harness.store.load().find("slow")
    assert task.status == TaskStatus.PENDING
    assert task.retry_count == 0
    assert task.last_error is None


def test_operator_skip_during_run_drops_completion(make_harness) -> None:
    skip: list = []
    session = HookedSession(lambda: skip[0](), on_read=2, default_frames=(MARKER,))
    harness = make_harness(session)
    harness.add("job")
    skip.append(lambda: _service(harness).skip_task("job"))

    summary = harness.scheduler.run_once()

    assert summary.completed == 0
    assert summary.superseded == 1
    assert harness.status("job") == TaskStatus.FAILED_PERMANENT


def test_task_running_elsewhere_blocks_dispatch(make_harness, queue_dir, clock) -> None:
    harness = make_harness(ReplaySession(default_frames=(MARKER,)))
    harness.add("a")
    harness.add("b")
    QueueStore(queue_dir, retry_delay_seconds=0, clock=clock).claim("a")

    summary = harness.scheduler.run_once()

    assert summary.processed == 0
    assert summary.idle_polls == 1
    assert harness.session.sent == []
    assert harness.status("b") == TaskStatus.PENDING


def test_critical_error_skips_remaining_retries(make_harness) -> None:
    harness = make_harness(ReplaySession(default_frames=("Error: permission denied",)))
    harness.add("locked", timeout_seconds=2, max_retries=3)
    harness.add("other")

    summary = harness.scheduler.run_once()

    assert summary.failed == 1
    assert summary.retried == 0
    task = harness.store.load().find("locked")
    assert task.status == TaskStatus.FAILED_PERMANENT
    assert task.retry_count == 0
    assert harness.store.load().pause_reason == PauseReason.PERMANENT_FAILURE


def test_old_critical_error_on_screen_does_not_escalate(make_harness) -> None:
    session = ReplaySession(
        {"first": [f"Error: permission denied\n{MARKER}"], "second": ["thinking"]},
    )
    harness = make_harness(session)
    harness.add("first")
    harness.add("second", timeout_seconds=2)

    harness.scheduler.run_once()
    summary = harness.scheduler.run_once()

    assert summary.retried == 1
    assert harness.store.load().find("second").retry_count == 1


def test_resume_prefers_checkpointed_task(make_harness, clock, caplog) -> None:
    caplog.set_level(logging.INFO, logger="auto_resume.queue.scheduler")
    session = ReplaySession(
        {"work": ["thinking", "Usage limit reached. Try again at 3pm."]},
        default_frames=(MARKER,),
    )
    harness = make_harness(session)
    harness.add("work")
    harness.scheduler.run_once()
    harness.add("urgent", priority=1)

    clock.advance(5 * 3_600)
    session.script["work"] = [MARKER]
    resumed = harness.scheduler.run_once()

    assert resumed.resumed == 1
    assert session.sent == ["work", "work"]
    assert harness.status("work") == TaskStatus.COMPLETED
    assert harness.status("urgent") == TaskStatus.PENDING
    assert harness.backoff.checkpoint() is None
    assert any(
        "usage-limit checkpoint: task=work" in record.getMessage() for record in caplog.records
    )
