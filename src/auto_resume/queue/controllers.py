"""Controllers for queue and scheduler CLI commands."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from auto_resume.config import Settings
from auto_resume.queue.backoff import BackoffController
from auto_resume.queue.cache import QueueCache
from auto_resume.queue.common import to_iso
from auto_resume.queue.models import Task, TaskStatus, TaskType
from auto_resume.queue.retry import RetryHandler
from auto_resume.queue.scheduler import QueueScheduler
from auto_resume.queue.services import AddTask, ConfigureTask, QueueService
from auto_resume.queue.store import QueueStore
from auto_resume.session import ExecutionSession, ReplaySession, TmuxSession


@dataclass(slots=True)
class QueueDirCommand:
    """CLI input for commands that only need the queue location."""

    queue_dir: Path | None


@dataclass(slots=True)
class QueueAddCommand:
    """CLI input for task enqueue."""

    queue_dir: Path | None
    task_type: str
    command: str | None
    description: str
    reference: int | None
    task_id: str | None
    priority: int | None
    timeout_seconds: int | None
    max_retries: int | None
    clear_context: bool | None


@dataclass(slots=True)
class QueueListCommand:
    queue_dir: Path | None
    status: str | None


@dataclass(slots=True)
class QueueTaskCommand:
    """CLI input for commands addressing one task."""

    queue_dir: Path | None
    task_id: str | None


@dataclass(slots=True)
class QueueClearCommand:
    queue_dir: Path | None
    status: str | None


@dataclass(slots=True)
class QueueConfigureCommand:
    queue_dir: Path | None
    task_id: str
    priority: int | None
    timeout_seconds: int | None
    max_retries: int | None
    clear_context: bool | None


@dataclass(slots=True)
class QueueCleanupCommand:
    queue_dir: Path | None
    backup_retention_days: int | None
    completed_older_than_days: int | None


@dataclass(slots=True)
class SchedulerRunCommand:
    """CLI input for scheduler execution."""

    queue_dir: Path | None
    once: bool
    max_tasks: int | None
    max_idle_polls: int | None = 1
    dry_run: bool = False


@dataclass(slots=True)
class _Components:
    settings: Settings
    store: QueueStore
    cache: QueueCache
    backoff: BackoffController
    retry_handler: RetryHandler
    service: QueueService


@dataclass(slots=True)
class QueueCliController:
    """Coordinates queue management and scheduler CLI operations."""

    def add_task(self, command: QueueAddCommand) -> list[str]:
        service = _components(command.queue_dir).service
        task = service.add_task(
            AddTask(
                task_type=_parse_type(command.task_type),
                command=command.command,
                description=command.description,
                reference=command.reference,
                task_id=command.task_id,
                priority=command.priority,
                timeout_seconds=command.timeout_seconds,
                max_retries=command.max_retries,
                clear_context=command.clear_context,
            ),
        )
        return [
            f"Task enqueued: task_id={task.id} type={task.type.value} "
            f"priority={task.priority} status={task.status.value}",
            f"Command: {task.command}",
        ]

    def list_tasks(self, command: QueueListCommand) -> list[str]:
        service = _components(command.queue_dir).service
        tasks = service.list_tasks(status=_parse_status(command.status))
        lines = [f"Tasks: {len(tasks)}"]
        lines.extend(f"  {_task_line(task)}" for task in tasks)
        return lines

    def show_task(self, command: QueueTaskCommand) -> list[str]:
        service = _components(command.queue_dir).service
        task = service.get_task(command.task_id or "")
        clear_context = "-" if task.clear_context is None else str(task.clear_context).lower()
        return [
            f"Task: {task.id}",
            f"Type: {task.type.value}",
            f"Status: {task.status.value}",
            f"Command: {task.command}",
            f"Description: {task.description or '-'}",
            f"Priority: {task.priority}",
            f"Timeout: {task.timeout_seconds}s",
            f"Retries: {task.retry_count}/{task.max_retries}",
            f"Reference: {task.reference if task.reference is not None else '-'}",
            f"Clear context: {clear_context}",
            f"Available at: {to_iso(task.available_at) or '-'}",
            f"Last error: {task.last_error or '-'}",
            f"Created: {to_iso(task.created_at)}",
            f"Updated: {to_iso(task.updated_at)}",
            f"Completed: {to_iso(task.completed_at) or '-'}",
        ]

    def pause(self, command: QueueDirCommand) -> list[str]:
        changed = _components(command.queue_dir).service.pause_queue()
        return ["Queue paused." if changed else "Queue already paused."]

    def resume(self, command: QueueDirCommand) -> list[str]:
        changed = _components(command.queue_dir).service.resume_queue()
        return ["Queue resumed." if changed else "Queue was not paused."]

    def clear(self, command: QueueClearCommand) -> list[str]:
        status = _parse_status(command.status)
        removed = _components(command.queue_dir).service.clear_queue(status=status)
        scope = f" with status {status.value}" if status is not None else ""
        return [f"Removed {removed} task(s){scope}."]

    def retry_task(self, command: QueueTaskCommand) -> list[str]:
        task = _components(command.queue_dir).service.retry_task(command.task_id or "")
        return [f"Task re-queued: {task.id}"]

    def skip_task(self, command: QueueTaskCommand) -> list[str]:
        task = _components(command.queue_dir).service.skip_task(command.task_id)
        return [f"Task skipped: {task.id}"]

    def configure_task(self, command: QueueConfigureCommand) -> list[str]:
        task = _components(command.queue_dir).service.configure_task(
            ConfigureTask(
                task_id=command.task_id,
                priority=command.priority,
                timeout_seconds=command.timeout_seconds,
                max_retries=command.max_retries,
                clear_context=command.clear_context,
            ),
        )
        return [f"Task configured: {_task_line(task)}"]

    def stats(self, command: QueueDirCommand) -> list[str]:
        status = _components(command.queue_dir).service.status()
        counts = " ".join(
            f"{task_status.value}={status.counts.get(task_status, 0)}"
            for task_status in TaskStatus
        )
        pause = status.pause_reason.value if status.pause_reason is not None else "-"
        lines = [
            f"Tasks: total={sum(status.counts.values())} {counts}",
            f"Paused: {'yes' if status.paused else 'no'} reason={pause}",
            f"Next task: {status.next_task.id if status.next_task is not None else '-'}",
        ]
        if status.backoff is not None:
            lines.append(
                f"Usage limit: pattern={status.backoff.detected_pattern} "
                f"task={status.backoff.task_id or '-'} "
                f"occurrence={status.backoff.occurrence_count} "
                f"resume_at={to_iso(status.backoff.estimated_resume_at)}",
            )
        lines.append(
            f"Cache: hits={status.cache.hits} misses={status.cache.misses} "
            f"rebuilds={status.cache.rebuilds} hit_rate={status.cache.hit_rate:.0%}",
        )
        return lines

    def cleanup(self, command: QueueCleanupCommand) -> list[str]:
        result = _components(command.queue_dir).service.cleanup(
            backup_retention_days=command.backup_retention_days,
            completed_older_than_days=command.completed_older_than_days,
        )
        return [
            f"Removed completed tasks: {result.completed_removed}",
            f"Removed backups: {result.backups_removed}",
            f"Backups kept: {len(result.remaining_backups)}",
        ]

    def backups(self, command: QueueDirCommand) -> list[str]:
        backups = _components(command.queue_dir).service.list_backups()
        return [f"Backups: {len(backups)}", *(f"  {path.name}" for path in backups)]

    def backoff_stats(self, command: QueueDirCommand) -> list[str]:
        statistics = _components(command.queue_dir).service.backoff_statistics()
        lines = [
            f"Usage-limit occurrences: {statistics.total_occurrences}",
            f"Distinct patterns: {statistics.unique_patterns}",
        ]
        lines.extend(
            f"  {pattern}: {count}" for pattern, count in sorted(statistics.per_pattern.items())
        )
        if statistics.active is not None:
            lines.append(
                f"Active pause until {to_iso(statistics.active.estimated_resume_at)} "
                f"({statistics.active.detected_pattern})",
            )
        return lines

    def backoff_reset(self, command: QueueDirCommand) -> list[str]:
        _components(command.queue_dir).service.reset_backoff_statistics()
        return ["Usage-limit statistics reset."]

    def run_scheduler(self, command: SchedulerRunCommand) -> list[str]:
        components = _components(command.queue_dir)
        settings = components.settings
        scheduler = QueueScheduler(
            store=components.store,
            cache=components.cache,
            backoff=components.backoff,
            retry_handler=components.retry_handler,
            session=_session(settings, dry_run=command.dry_run),
            poll_interval_seconds=settings.queue.poll_interval_seconds,
            check_interval_seconds=settings.monitor.check_interval_seconds,
            completion_marker=settings.monitor.completion_marker,
            stale_grace_seconds=settings.queue.stale_grace_seconds,
            clear_between_tasks=settings.queue.clear_between_tasks,
            clear_command=settings.queue.clear_command,
            recovery_attempts=settings.session.recovery_attempts,
        )
        summary = (
            scheduler.run_once()
            if command.once
            else scheduler.run_loop(
                max_tasks=command.max_tasks,
                max_idle_polls=command.max_idle_polls,
            )
        )
        return [
            "Scheduler summary: "
            f"processed={summary.processed} completed={summary.completed} "
            f"retried={summary.retried} failed={summary.failed} "
            f"timeouts={summary.timeouts} backoffs={summary.backoffs} "
            f"resumed={summary.resumed} recovered={summary.recovered} "
            f"idle_polls={summary.idle_polls} superseded={summary.superseded}",
        ]


def _components(queue_dir: Path | None) -> _Components:
    settings = Settings.from_env(queue_dir=queue_dir)
    settings.validate()
    store = QueueStore(
        settings.queue.queue_dir,
        write_retries=settings.queue.write_retries,
        backup_retention_days=settings.queue.backup_retention_days,
    )
    cache = QueueCache(store)
    backoff = BackoffController(store, settings=settings.backoff)
    return _Components(
        settings=settings,
        store=store,
        cache=cache,
        backoff=backoff,
        retry_handler=RetryHandler(store, settings=settings.retry),
        service=QueueService(store=store, cache=cache, backoff=backoff, settings=settings),
    )


def _session(settings: Settings, *, dry_run: bool) -> ExecutionSession:
    if dry_run:
        return ReplaySession(default_frames=(settings.monitor.completion_marker,))
    return TmuxSession(
        settings.session.tmux_target,
        output_lines=settings.session.output_lines,
        start_command=settings.session.start_command,
    )


def _task_line(task: Task) -> str:
    return (
        f"{task.id} type={task.type.value} status={task.status.value} "
        f"priority={task.priority} retries={task.retry_count}/{task.max_retries} "
        f"command={task.command!r}"
    )


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    return TaskStatus(value.strip().lower())


def _parse_type(value: str) -> TaskType:
    return TaskType(value.strip().lower().replace("-", "_"))
