"""Runtime configuration for the task hub."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_COMMAND_TEMPLATE = (
    "claude -p --verbose {skip_permissions} --session-id {session_id} -- {prompt}"
)
DEFAULT_RESUME_COMMAND_TEMPLATE = (
    "claude -p --verbose {skip_permissions} --resume {session_id} -- {prompt}"
)
BACKOFF_MODES = ("fixed", "exponential", "signaled")
OVERFLOW_POLICIES = ("drop_oldest", "disconnect")


@dataclass(slots=True)
class RunnerSettings:
    """Agent process and runner supervisor settings."""

    command_template: str = DEFAULT_COMMAND_TEMPLATE
    resume_command_template: str = DEFAULT_RESUME_COMMAND_TEMPLATE
    model: str = ""
    workdir: Path | None = None
    cancel_timeout_seconds: float = 30.0
    kill_timeout_seconds: float = 10.0
    escalate_cancel_to_kill: bool = True
    auto_recover: bool = True
    poll_interval_seconds: float = 1.0
    output_tail_lines: int = 20
    transient_exit_codes: tuple[int, ...] = (137, 143)


@dataclass(slots=True)
class RecoverySettings:
    """Retry budget and rate-limit backoff."""

    max_retries: int = 3
    restart_after_failed_retries: int = 2
    backoff_mode: str = "fixed"
    backoff_base_seconds: float = 60.0
    backoff_max_seconds: float = 900.0
    count_rate_limits: bool = False


@dataclass(slots=True)
class BroadcastSettings:
    buffer_size: int = 1_000
    overflow_policy: str = "drop_oldest"


@dataclass(slots=True)
class RetentionSettings:
    retention_hours: int = 24
    archive_interval_seconds: float = 3_600.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".agent_taskhub.db")
    sqlite_busy_timeout_ms: int = 5_000
    runner: RunnerSettings = field(default_factory=RunnerSettings)
    recovery: RecoverySettings = field(default_factory=RecoverySettings)
    broadcast: BroadcastSettings = field(default_factory=BroadcastSettings)
    retention: RetentionSettings = field(default_factory=RetentionSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from ``AGENT_TASKHUB_*`` variables with local defaults."""

        workdir = os.getenv("AGENT_TASKHUB_WORKDIR", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv("AGENT_TASKHUB_DB_PATH", ".agent_taskhub.db")),
            sqlite_busy_timeout_ms=int(os.getenv("AGENT_TASKHUB_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            runner=RunnerSettings(
                command_template=os.getenv(
                    "AGENT_TASKHUB_COMMAND_TEMPLATE",
                    DEFAULT_COMMAND_TEMPLATE,
                ),
                resume_command_template=os.getenv(
                    "AGENT_TASKHUB_RESUME_COMMAND_TEMPLATE",
                    DEFAULT_RESUME_COMMAND_TEMPLATE,
                ),
                model=os.getenv("AGENT_TASKHUB_MODEL", ""),
                workdir=Path(workdir) if workdir else None,
                cancel_timeout_seconds=float(
                    os.getenv("AGENT_TASKHUB_CANCEL_TIMEOUT_SECONDS", "30"),
                ),
                kill_timeout_seconds=float(os.getenv("AGENT_TASKHUB_KILL_TIMEOUT_SECONDS", "10")),
                escalate_cancel_to_kill=_env_bool(
                    "AGENT_TASKHUB_ESCALATE_CANCEL_TO_KILL",
                    default=True,
                ),
                auto_recover=_env_bool("AGENT_TASKHUB_AUTO_RECOVER", default=True),
                poll_interval_seconds=float(
                    os.getenv("AGENT_TASKHUB_POLL_INTERVAL_SECONDS", "1.0"),
                ),
                output_tail_lines=int(os.getenv("AGENT_TASKHUB_OUTPUT_TAIL_LINES", "20")),
                transient_exit_codes=_env_int_tuple(
                    "AGENT_TASKHUB_TRANSIENT_EXIT_CODES",
                    default=(137, 143),
                ),
            ),
            recovery=RecoverySettings(
                max_retries=int(os.getenv("AGENT_TASKHUB_MAX_RETRIES", "3")),
                restart_after_failed_retries=int(
                    os.getenv("AGENT_TASKHUB_RESTART_AFTER_FAILED_RETRIES", "2"),
                ),
                backoff_mode=os.getenv("AGENT_TASKHUB_BACKOFF_MODE", "fixed").strip().lower(),
                backoff_base_seconds=float(
                    os.getenv("AGENT_TASKHUB_BACKOFF_BASE_SECONDS", "60"),
                ),
                backoff_max_seconds=float(os.getenv("AGENT_TASKHUB_BACKOFF_MAX_SECONDS", "900")),
                count_rate_limits=_env_bool("AGENT_TASKHUB_COUNT_RATE_LIMITS", default=False),
            ),
            broadcast=BroadcastSettings(
                buffer_size=int(os.getenv("AGENT_TASKHUB_EVENT_BUFFER_SIZE", "1000")),
                overflow_policy=os.getenv("AGENT_TASKHUB_EVENT_OVERFLOW_POLICY", "drop_oldest")
                .strip()
                .lower(),
            ),
            retention=RetentionSettings(
                retention_hours=int(os.getenv("AGENT_TASKHUB_RETENTION_HOURS", "24")),
                archive_interval_seconds=float(
                    os.getenv("AGENT_TASKHUB_ARCHIVE_INTERVAL_SECONDS", "3600"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error naming the offending variable."""

        if "{prompt}" not in self.runner.command_template:
            raise ValueError("AGENT_TASKHUB_COMMAND_TEMPLATE must include {prompt}.")
        if "{prompt}" not in self.runner.resume_command_template:
            raise ValueError("AGENT_TASKHUB_RESUME_COMMAND_TEMPLATE must include {prompt}.")
        if self.runner.cancel_timeout_seconds <= 0:
            raise ValueError("AGENT_TASKHUB_CANCEL_TIMEOUT_SECONDS must be > 0.")
        if self.runner.kill_timeout_seconds <= 0:
            raise ValueError("AGENT_TASKHUB_KILL_TIMEOUT_SECONDS must be > 0.")
        if self.runner.poll_interval_seconds < 0:
            raise ValueError("AGENT_TASKHUB_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.recovery.max_retries < 0:
            raise ValueError("AGENT_TASKHUB_MAX_RETRIES must be >= 0.")
        if self.recovery.restart_after_failed_retries < 0:
            raise ValueError("AGENT_TASKHUB_RESTART_AFTER_FAILED_RETRIES must be >= 0.")
        if self.recovery.backoff_mode not in BACKOFF_MODES:
            raise ValueError(
                "AGENT_TASKHUB_BACKOFF_MODE must be one of "
                f"{', '.join(BACKOFF_MODES)}: {self.recovery.backoff_mode!r}",
            )
        if self.recovery.backoff_base_seconds < 0:
            raise ValueError("AGENT_TASKHUB_BACKOFF_BASE_SECONDS must be >= 0.")
        if self.recovery.backoff_max_seconds < self.recovery.backoff_base_seconds:
            raise ValueError(
                "AGENT_TASKHUB_BACKOFF_MAX_SECONDS must be >= AGENT_TASKHUB_BACKOFF_BASE_SECONDS.",
            )
        if self.broadcast.buffer_size <= 0:
            raise ValueError("AGENT_TASKHUB_EVENT_BUFFER_SIZE must be > 0.")
        if self.broadcast.overflow_policy not in OVERFLOW_POLICIES:
            raise ValueError(
                "AGENT_TASKHUB_EVENT_OVERFLOW_POLICY must be one of "
                f"{', '.join(OVERFLOW_POLICIES)}: {self.broadcast.overflow_policy!r}",
            )
        if self.retention.retention_hours < 0:
            raise ValueError("AGENT_TASKHUB_RETENTION_HOURS must be >= 0.")


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


def _env_int_tuple(name: str, default: tuple[int, ...]) -> tuple[int, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    values: list[int] = []
    for token in raw.replace(";", ",").split(","):
        token = token.strip()
        if not token:
            continue
        try:
            values.append(int(token))
        except ValueError as error:
            raise ValueError(f"Invalid integer in {name}: {token!r}") from error
    return tuple(values)
