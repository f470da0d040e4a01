from __future__ import annotations

import json
from pathlib import Path

import allure
from click.testing import CliRunner

from auto_resume.main import auto_resume
from auto_resume.queue.store import QUEUE_FILE_NAME

pytestmark = [
    allure.epic("Command Line"),
    allure.feature("Queue Commands"),
]


def _invoke(queue_dir: Path, *args: str, input_text: str | None = None):
    runner = CliRunner()
    group, command, *rest = args
    argv = [group, command, "--queue-dir", str(queue_dir), *rest]
    return runner.invoke(auto_resume, argv, input=input_text)


def _queue(queue_dir: Path) -> dict:
    return json.loads((queue_dir / QUEUE_FILE_NAME).read_text("utf-8"))


def test_add_list_and_show(tmp_path: Path) -> None:
    added = _invoke(tmp_path, "queue", "add", "--type", "issue_reference", "--reference", "42")
    assert added.exit_code == 0, added.output
    assert "Task enqueued" in added.output
    task_id = _queue(tmp_path)["tasks"][0]["id"]

    listed = _invoke(tmp_path, "queue", "list")
    assert listed.exit_code == 0, listed.output
    assert "Tasks: 1" in listed.output
    assert task_id in listed.output

    shown = _invoke(tmp_path, "queue", "show", "--task-id", task_id)
    assert shown.exit_code == 0, shown.output
    assert "Command: /dev 42" in shown.output
    assert "Status: pending" in shown.output


def test_add_custom_without_command_fails(tmp_path: Path) -> None:
    result = _invoke(tmp_path, "queue", "add", "--type", "custom")

    assert result.exit_code == 1
    assert not (tmp_path / QUEUE_FILE_NAME).exists()


def test_show_unknown_task_fails(tmp_path: Path) -> None:
    result = _invoke(tmp_path, "queue", "show", "--task-id", "nope")

    assert result.exit_code == 1


def test_pause_resume_and_stats(tmp_path: Path) -> None:
    assert "Queue paused." in _invoke(tmp_path, "queue", "pause").output
    assert _queue(tmp_path)["pause_reason"] == "manual"

    stats = _invoke(tmp_path, "queue", "stats")
    assert stats.exit_code == 0, stats.output
    assert "Paused: yes reason=manual" in stats.output

    assert "Queue resumed." in _invoke(tmp_path, "queue", "resume").output
    assert _queue(tmp_path)["paused"] is False


def test_configure_and_skip(tmp_path: Path) -> None:
    _invoke(tmp_path, "queue", "add", "--command", "lint", "--task-id", "lint")

    configured = _invoke(
        tmp_path,
        "queue",
        "configure",
        "--task-id",
        "lint",
        "--priority",
        "1",
        "--keep-context",
    )
    assert configured.exit_code == 0, configured.output
    task = _queue(tmp_path)["tasks"][0]
    assert task["priority"] == 1
    assert task["clear_context"] is False

    skipped = _invoke(tmp_path, "queue", "skip", "--task-id", "lint")
    assert skipped.exit_code == 0, skipped.output
    assert _queue(tmp_path)["tasks"][0]["status"] == "failed_permanent"

    retried = _invoke(tmp_path, "queue", "retry", "--task-id", "lint")
    assert retried.exit_code == 0, retried.output
    assert _queue(tmp_path)["tasks"][0]["status"] == "pending"


def test_clear_requires_confirmation_and_takes_backup(tmp_path: Path) -> None:
    _invoke(tmp_path, "queue", "add", "--command", "one")

    aborted = _invoke(tmp_path, "queue", "clear", input_text="n\n")
    assert aborted.exit_code == 1
    assert len(_queue(tmp_path)["tasks"]) == 1

    cleared = _invoke(tmp_path, "queue", "clear", "--yes")
    assert cleared.exit_code == 0, cleared.output
    assert "Removed 1 task(s)." in cleared.output
    assert _queue(tmp_path)["tasks"] == []

    backups = _invoke(tmp_path, "queue", "backups")
    assert "Backups: 1" in backups.output


def test_backoff_stats_and_reset(tmp_path: Path) -> None:
    stats = _invoke(tmp_path, "queue", "backoff-stats")
    assert stats.exit_code == 0, stats.output
    assert "Usage-limit occurrences: 0" in stats.output

    reset = _invoke(tmp_path, "queue", "backoff-reset")
    assert reset.exit_code == 0, reset.output


def test_cleanup_reports_counts(tmp_path: Path) -> None:
    result = _invoke(tmp_path, "queue", "cleanup")

    assert result.exit_code == 0, result.output
    assert "Removed completed tasks: 0" in result.output


def test_dry_run_scheduler_completes_task(tmp_path: Path) -> None:
    _invoke(tmp_path, "queue", "add", "--command", "do the thing", "--task-id", "job")

    runner = CliRunner()
    result = runner.invoke(
        auto_resume,
        ["run", "--queue-dir", str(tmp_path), "--once", "--dry-run", "--log-level", "WARNING"],
    )

    assert result.exit_code == 0, result.output
    assert "processed=1 completed=1" in result.output
    assert _queue(tmp_path)["tasks"][0]["status"] == "completed"
