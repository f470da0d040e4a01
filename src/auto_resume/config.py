"""Runtime configuration for the queue, backoff policy and execution session."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass(slots=True)
class QueueSettings:
    """Queue storage and scheduling-loop settings."""

    queue_dir: Path = Path(".auto_resume")
    default_timeout_seconds: int = 3_600
    default_priority: int = 5
    backup_retention_days: int = 30
    auto_cleanup_days: int = 7
    write_retries: int = 3
    poll_interval_seconds: float = 5.0
    stale_grace_seconds: int = 300
    clear_between_tasks: bool = True
    clear_command: str = "/clear"


@dataclass(slots=True)
class BackoffSettings:
    """Usage-limit backoff policy."""

    base_cooldown_seconds: int = 300
    backoff_factor: float = 1.5
    max_wait_seconds: int = 1_800
    min_wait_seconds: int = 60
    history_limit: int = 100


@dataclass(slots=True)
class RetrySettings:
    """Per-task retry and escalation policy."""

    max_retries: int = 3
    base_delay_seconds: int = 300
    max_delay_seconds: int = 1_800
    auto_pause_on_permanent_failure: bool = True
    escalate_critical_errors: bool = True


@dataclass(slots=True)
class MonitorSettings:
    """Completion monitor polling settings."""

    check_interval_seconds: float = 5.0
    completion_marker: str = "###TASK_COMPLETE###"


@dataclass(slots=True)
class SessionSettings:
    """Execution session (tmux) settings."""

    tmux_target: str = "claude-auto-resume"
    recovery_attempts: int = 3
    output_lines: int = 200
    start_command: str | None = None


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    queue: QueueSettings = field(default_factory=QueueSettings)
    backoff: BackoffSettings = field(default_factory=BackoffSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    monitor: MonitorSettings = field(default_factory=MonitorSettings)
    session: SessionSettings = field(default_factory=SessionSettings)

    @classmethod
    def from_env(cls, queue_dir: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local use."""

        return cls(
            queue=QueueSettings(
                queue_dir=queue_dir or Path(os.getenv("AUTO_RESUME_QUEUE_DIR", ".auto_resume")),
                default_timeout_seconds=int(
                    os.getenv("AUTO_RESUME_TASK_DEFAULT_TIMEOUT", "3600"),
                ),
                default_priority=int(os.getenv("AUTO_RESUME_TASK_DEFAULT_PRIORITY", "5")),
                backup_retention_days=int(
                    os.getenv("AUTO_RESUME_BACKUP_RETENTION_DAYS", "30"),
                ),
                auto_cleanup_days=int(os.getenv("AUTO_RESUME_AUTO_CLEANUP_DAYS", "7")),
                write_retries=int(os.getenv("AUTO_RESUME_WRITE_RETRIES", "3")),
                poll_interval_seconds=float(
                    os.getenv("AUTO_RESUME_QUEUE_PROCESSING_DELAY", "5.0"),
                ),
                stale_grace_seconds=int(os.getenv("AUTO_RESUME_STALE_GRACE_SECONDS", "300")),
                clear_between_tasks=_env_bool(
                    "AUTO_RESUME_CLEAR_BETWEEN_TASKS",
                    default=True,
                ),
                clear_command=os.getenv("AUTO_RESUME_CLEAR_COMMAND", "/clear"),
            ),
            backoff=BackoffSettings(
                base_cooldown_seconds=int(
                    os.getenv("AUTO_RESUME_USAGE_LIMIT_COOLDOWN", "300"),
                ),
                backoff_factor=float(os.getenv("AUTO_RESUME_BACKOFF_FACTOR", "1.5")),
                max_wait_seconds=int(os.getenv("AUTO_RESUME_MAX_WAIT_TIME", "1800")),
                min_wait_seconds=int(os.getenv("AUTO_RESUME_MIN_WAIT_TIME", "60")),
                history_limit=int(os.getenv("AUTO_RESUME_BACKOFF_HISTORY_LIMIT", "100")),
            ),
            retry=RetrySettings(
                max_retries=int(os.getenv("AUTO_RESUME_TASK_MAX_RETRIES", "3")),
                base_delay_seconds=int(os.getenv("AUTO_RESUME_TASK_RETRY_DELAY", "300")),
                max_delay_seconds=int(os.getenv("AUTO_RESUME_TASK_MAX_RETRY_DELAY", "1800")),
                auto_pause_on_permanent_failure=_env_bool(
                    "AUTO_RESUME_AUTO_PAUSE_ON_PERMANENT_FAILURE",
                    default=True,
                ),
                escalate_critical_errors=_env_bool(
                    "AUTO_RESUME_ESCALATE_CRITICAL_ERRORS",
                    default=True,
                ),
            ),
            monitor=MonitorSettings(
                check_interval_seconds=float(
                    os.getenv("AUTO_RESUME_CHECK_INTERVAL", "5.0"),
                ),
                completion_marker=os.getenv(
                    "AUTO_RESUME_TASK_COMPLETION_PATTERN",
                    "###TASK_COMPLETE###",
                ),
            ),
            session=SessionSettings(
                tmux_target=os.getenv("AUTO_RESUME_TMUX_TARGET", "claude-auto-resume"),
                recovery_attempts=int(
                    os.getenv("AUTO_RESUME_SESSION_RECOVERY_ATTEMPTS", "3"),
                ),
                output_lines=int(os.getenv("AUTO_RESUME_SESSION_OUTPUT_LINES", "200")),
                start_command=os.getenv("AUTO_RESUME_TMUX_START_COMMAND") or None,
            ),
        )

    def validate(self) -> None:
        """Raise configuration error on values the engine cannot work with."""

        if self.queue.default_timeout_seconds <= 0:
            raise ValueError("AUTO_RESUME_TASK_DEFAULT_TIMEOUT must be > 0.")
        if not 1 <= self.queue.default_priority <= 10:
            raise ValueError("AUTO_RESUME_TASK_DEFAULT_PRIORITY must be between 1 and 10.")
        if self.queue.backup_retention_days < 0:
            raise ValueError("AUTO_RESUME_BACKUP_RETENTION_DAYS must be >= 0.")
        if self.queue.write_retries <= 0:
            raise ValueError("AUTO_RESUME_WRITE_RETRIES must be > 0.")
        if self.queue.poll_interval_seconds < 0:
            raise ValueError("AUTO_RESUME_QUEUE_PROCESSING_DELAY must be >= 0.")
        if self.backoff.base_cooldown_seconds <= 0:
            raise ValueError("AUTO_RESUME_USAGE_LIMIT_COOLDOWN must be > 0.")
        if self.backoff.backoff_factor < 1:
            raise ValueError("AUTO_RESUME_BACKOFF_FACTOR must be >= 1.")
        if self.backoff.min_wait_seconds < 0:
            raise ValueError("AUTO_RESUME_MIN_WAIT_TIME must be >= 0.")
        if self.backoff.min_wait_seconds > self.backoff.max_wait_seconds:
            raise ValueError(
                "AUTO_RESUME_MIN_WAIT_TIME must not exceed AUTO_RESUME_MAX_WAIT_TIME.",
            )
        if self.retry.max_retries < 0:
            raise ValueError("AUTO_RESUME_TASK_MAX_RETRIES must be >= 0.")
        if self.retry.base_delay_seconds < 0:
            raise ValueError("AUTO_RESUME_TASK_RETRY_DELAY must be >= 0.")
        if self.monitor.check_interval_seconds <= 0:
            raise ValueError("AUTO_RESUME_CHECK_INTERVAL must be > 0.")
        if not self.monitor.completion_marker.strip():
            raise ValueError("AUTO_RESUME_TASK_COMPLETION_PATTERN must not be empty.")
        if self.session.recovery_attempts < 0:
            raise ValueError("AUTO_RESUME_SESSION_RECOVERY_ATTEMPTS must be >= 0.")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
