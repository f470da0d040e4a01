"""CLI entrypoint for auto-resume."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from auto_resume import __version__
from auto_resume.queue.controllers import (
    QueueAddCommand,
    QueueCleanupCommand,
    QueueClearCommand,
    QueueCliController,
    QueueConfigureCommand,
    QueueDirCommand,
    QueueListCommand,
    QueueTaskCommand,
    SchedulerRunCommand,
)
from auto_resume.queue.errors import QueueError
from auto_resume.queue.models import MAX_PRIORITY, MIN_PRIORITY, TaskStatus, TaskType

click.rich_click.USE_MARKDOWN = True
QUEUE_CONTROLLER = QueueCliController()

C = TypeVar("C")

_STATUS_CHOICE = click.Choice([status.value for status in TaskStatus], case_sensitive=False)
_TYPE_CHOICE = click.Choice([task_type.value for task_type in TaskType], case_sensitive=False)


def queue_dir_option(func: Callable[..., None]) -> Callable[..., None]:
    return click.option(
        "--queue-dir",
        type=click.Path(path_type=Path, file_okay=False),
        default=None,
        help="Queue directory (defaults to AUTO_RESUME_QUEUE_DIR or .auto_resume).",
    )(func)


@click.group()
@click.version_option(version=__version__, prog_name="auto-resume")
def auto_resume() -> None:
    """Sequential task queue for rate-limited interactive sessions."""


@auto_resume.group()
def queue() -> None:
    """Queue management commands."""


@queue.command("add")
@queue_dir_option
@click.option(
    "--type",
    "task_type",
    type=_TYPE_CHOICE,
    default=TaskType.CUSTOM.value,
    show_default=True,
    help="Task type.",
)
@click.option("--command", default=None, help="Command sent to the session.")
@click.option(
    "--reference",
    type=click.IntRange(min=1),
    default=None,
    help="Issue or PR number for reference tasks.",
)
@click.option("--description", default="", help="Free-form description.")
@click.option("--task-id", default=None, help="Explicit task id (generated when omitted).")
@click.option(
    "--priority",
    type=click.IntRange(min=MIN_PRIORITY, max=MAX_PRIORITY),
    default=None,
    help="1 is most urgent; defaults to AUTO_RESUME_TASK_DEFAULT_PRIORITY.",
)
@click.option(
    "--timeout-seconds",
    type=click.IntRange(min=1),
    default=None,
    help="Per-task completion timeout.",
)
@click.option("--max-retries", type=click.IntRange(min=0), default=None, help="Retry budget.")
@click.option(
    "--clear-context/--keep-context",
    default=None,
    help="Override the global context reset before this task.",
)
def queue_add(  # noqa: PLR0913
    queue_dir: Path | None,
    task_type: str,
    command: str | None,
    reference: int | None,
    description: str,
    task_id: str | None,
    priority: int | None,
    timeout_seconds: int | None,
    max_retries: int | None,
    clear_context: bool | None,
) -> None:
    """Add a task to the queue."""

    _run(
        QUEUE_CONTROLLER.add_task,
        QueueAddCommand(
            queue_dir=queue_dir,
            task_type=task_type,
            command=command,
            description=description,
            reference=reference,
            task_id=task_id,
            priority=priority,
            timeout_seconds=timeout_seconds,
            max_retries=max_retries,
            clear_context=clear_context,
        ),
    )


@queue.command("list")
@queue_dir_option
@click.option("--status", type=_STATUS_CHOICE, default=None, help="Optional status filter.")
def queue_list(queue_dir: Path | None, status: str | None) -> None:
    """List queued tasks."""

    _run(QUEUE_CONTROLLER.list_tasks, QueueListCommand(queue_dir=queue_dir, status=status))


@queue.command("show")
@queue_dir_option
@click.option("--task-id", required=True, help="Task id.")
def queue_show(queue_dir: Path | None, task_id: str) -> None:
    """Show one task."""

    _run(QUEUE_CONTROLLER.show_task, QueueTaskCommand(queue_dir=queue_dir, task_id=task_id))


@queue.command("pause")
@queue_dir_option
def queue_pause(queue_dir: Path | None) -> None:
    """Pause dispatching until resumed."""

    _run(QUEUE_CONTROLLER.pause, QueueDirCommand(queue_dir=queue_dir))


@queue.command("resume")
@queue_dir_option
def queue_resume(queue_dir: Path | None) -> None:
    """Resume a paused queue, including an active usage-limit wait."""

    _run(QUEUE_CONTROLLER.resume, QueueDirCommand(queue_dir=queue_dir))


@queue.command("clear")
@queue_dir_option
@click.option(
    "--status",
    type=_STATUS_CHOICE,
    default=None,
    help="Only remove tasks with this status.",
)
@click.confirmation_option(prompt="Remove tasks from the queue?")
def queue_clear(queue_dir: Path | None, status: str | None) -> None:
    """Remove tasks; a backup is taken first."""

    _run(QUEUE_CONTROLLER.clear, QueueClearCommand(queue_dir=queue_dir, status=status))


@queue.command("retry")
@queue_dir_option
@click.option("--task-id", required=True, help="Task id.")
def queue_retry(queue_dir: Path | None, task_id: str) -> None:
    """Re-queue a task with a fresh retry budget."""

    _run(QUEUE_CONTROLLER.retry_task, QueueTaskCommand(queue_dir=queue_dir, task_id=task_id))


@queue.command("skip")
@queue_dir_option
@click.option("--task-id", default=None, help="Task id (defaults to the task in progress).")
def queue_skip(queue_dir: Path | None, task_id: str | None) -> None:
    """Give up on a task without pausing the queue."""

    _run(QUEUE_CONTROLLER.skip_task, QueueTaskCommand(queue_dir=queue_dir, task_id=task_id))


@queue.command("configure")
@queue_dir_option
@click.option("--task-id", required=True, help="Task id.")
@click.option(
    "--priority",
    type=click.IntRange(min=MIN_PRIORITY, max=MAX_PRIORITY),
    default=None,
    help="New priority.",
)
@click.option("--timeout-seconds", type=click.IntRange(min=1), default=None, help="New timeout.")
@click.option("--max-retries", type=click.IntRange(min=0), default=None, help="New retry budget.")
@click.option("--clear-context/--keep-context", default=None, help="Context reset override.")
def queue_configure(  # noqa: PLR0913
    queue_dir: Path | None,
    task_id: str,
    priority: int | None,
    timeout_seconds: int | None,
    max_retries: int | None,
    clear_context: bool | None,
) -> None:
    """Change per-task settings."""

    _run(
        QUEUE_CONTROLLER.configure_task,
        QueueConfigureCommand(
            queue_dir=queue_dir,
            task_id=task_id,
            priority=priority,
            timeout_seconds=timeout_seconds,
            max_retries=max_retries,
            clear_context=clear_context,
        ),
    )


@queue.command("stats")
@queue_dir_option
def queue_stats(queue_dir: Path | None) -> None:
    """Show queue health: counts, pause state and cache effectiveness."""

    _run(QUEUE_CONTROLLER.stats, QueueDirCommand(queue_dir=queue_dir))


@queue.command("cleanup")
@queue_dir_option
@click.option(
    "--backup-retention-days",
    type=click.IntRange(min=0),
    default=None,
    help="Delete backups older than this (defaults to AUTO_RESUME_BACKUP_RETENTION_DAYS).",
)
@click.option(
    "--completed-days",
    type=click.IntRange(min=0),
    default=None,
    help="Drop completed tasks older than this (defaults to AUTO_RESUME_AUTO_CLEANUP_DAYS).",
)
def queue_cleanup(
    queue_dir: Path | None,
    backup_retention_days: int | None,
    completed_days: int | None,
) -> None:
    """Prune old backups and completed tasks."""

    _run(
        QUEUE_CONTROLLER.cleanup,
        QueueCleanupCommand(
            queue_dir=queue_dir,
            backup_retention_days=backup_retention_days,
            completed_older_than_days=completed_days,
        ),
    )


@queue.command("backups")
@queue_dir_option
def queue_backups(queue_dir: Path | None) -> None:
    """List queue backups, newest first."""

    _run(QUEUE_CONTROLLER.backups, QueueDirCommand(queue_dir=queue_dir))


@queue.command("backoff-stats")
@queue_dir_option
def queue_backoff_stats(queue_dir: Path | None) -> None:
    """Show usage-limit history."""

    _run(QUEUE_CONTROLLER.backoff_stats, QueueDirCommand(queue_dir=queue_dir))


@queue.command("backoff-reset")
@queue_dir_option
def queue_backoff_reset(queue_dir: Path | None) -> None:
    """Forget usage-limit history."""

    _run(QUEUE_CONTROLLER.backoff_reset, QueueDirCommand(queue_dir=queue_dir))


@auto_resume.command("run")
@queue_dir_option
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Run one scheduling cycle or loop until idle.",
)
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed tasks in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=0),
    default=1,
    show_default=True,
    help="Exit after this many empty polls; 0 keeps polling forever.",
)
@click.option(
    "--dry-run",
    is_flag=True,
    default=False,
    help="Use a scripted session that completes every task instead of tmux.",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Scheduler log verbosity.",
)
def run(  # noqa: PLR0913
    queue_dir: Path | None,
    once: bool,
    max_tasks: int | None,
    max_idle_polls: int,
    dry_run: bool,
    log_level: str,
) -> None:
    """Run the queue scheduler."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _run(
        QUEUE_CONTROLLER.run_scheduler,
        SchedulerRunCommand(
            queue_dir=queue_dir,
            once=once,
            max_tasks=max_tasks,
            max_idle_polls=max_idle_polls or None,
            dry_run=dry_run,
        ),
    )


def _run(action: Callable[[C], list[str]], command: C) -> None:
    try:
        lines = action(command)
    except (QueueError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    auto_resume()
