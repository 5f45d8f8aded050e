"""Runtime configuration for the task store, dispatch engine and sensors."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_WORKER_COMMAND = (
    "claude --print --verbose --model {model} --output-format stream-json "
    "--no-session-persistence"
)
DANGEROUS_WORKER_FLAG = "--dangerously-skip-permissions"
DEFAULT_SENSORS: tuple[str, ...] = ("heartbeat", "health", "cost-alerting")


@dataclass(slots=True)
class DispatchSettings:
    """Dispatch engine settings."""

    worker_command_template: str = DEFAULT_WORKER_COMMAND
    dangerous: bool = False
    recent_cycles: int = 10
    ancestor_depth: int = 10
    summary_max_chars: int = 500
    context_doc_max_chars: int = 20_000
    commit_enabled: bool = True
    commit_dirs: tuple[str, ...] = ("memory", "skills", "src", "templates")

    @property
    def worker_command(self) -> str:
        """Command template with the permission bypass flag when enabled."""

        if self.dangerous and DANGEROUS_WORKER_FLAG not in self.worker_command_template:
            return f"{self.worker_command_template} {DANGEROUS_WORKER_FLAG}"
        return self.worker_command_template


@dataclass(slots=True)
class SensorSettings:
    """Sensor scheduler settings."""

    enabled: tuple[str, ...] = DEFAULT_SENSORS
    cost_alert_threshold_usd: float = 15.0
    health_stale_cycle_minutes: int = 30
    max_workers: int = 8


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    root_dir: Path = Path()
    db_path: Path = Path("db/taskloop.sqlite")
    lock_path: Path = Path("db/dispatch-lock.json")
    sqlite_busy_timeout_ms: int = 5_000
    log_level: str = "INFO"
    log_file: Path | None = None
    dispatch: DispatchSettings = field(default_factory=DispatchSettings)
    sensors: SensorSettings = field(default_factory=SensorSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        root_dir = Path(os.getenv("TASKLOOP_ROOT", os.getcwd()))
        env_db_path = os.getenv("TASKLOOP_DB_PATH")
        env_lock_path = os.getenv("TASKLOOP_LOCK_PATH")
        env_log_file = os.getenv("TASKLOOP_LOG_FILE")
        return cls(
            root_dir=root_dir,
            db_path=db_path
            or (Path(env_db_path) if env_db_path else root_dir / "db" / "taskloop.sqlite"),
            lock_path=(
                Path(env_lock_path) if env_lock_path else root_dir / "db" / "dispatch-lock.json"
            ),
            sqlite_busy_timeout_ms=int(os.getenv("TASKLOOP_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            log_level=os.getenv("TASKLOOP_LOG_LEVEL", "INFO"),
            log_file=Path(env_log_file) if env_log_file else None,
            dispatch=DispatchSettings(
                worker_command_template=os.getenv(
                    "TASKLOOP_WORKER_COMMAND",
                    DEFAULT_WORKER_COMMAND,
                ),
                dangerous=_env_bool("TASKLOOP_WORKER_DANGEROUS", default=False),
                recent_cycles=int(os.getenv("TASKLOOP_RECENT_CYCLES", "10")),
                ancestor_depth=int(os.getenv("TASKLOOP_ANCESTOR_DEPTH", "10")),
                summary_max_chars=int(os.getenv("TASKLOOP_SUMMARY_MAX_CHARS", "500")),
                context_doc_max_chars=int(
                    os.getenv("TASKLOOP_CONTEXT_DOC_MAX_CHARS", "20000"),
                ),
                commit_enabled=_env_bool("TASKLOOP_COMMIT_ENABLED", default=True),
                commit_dirs=_env_csv(
                    "TASKLOOP_COMMIT_DIRS",
                    default=("memory", "skills", "src", "templates"),
                ),
            ),
            sensors=SensorSettings(
                enabled=_env_csv("TASKLOOP_SENSORS", default=DEFAULT_SENSORS),
                cost_alert_threshold_usd=float(
                    os.getenv("TASKLOOP_COST_ALERT_THRESHOLD_USD", "15.0"),
                ),
                health_stale_cycle_minutes=int(
                    os.getenv("TASKLOOP_HEALTH_STALE_CYCLE_MINUTES", "30"),
                ),
                max_workers=int(os.getenv("TASKLOOP_SENSOR_MAX_WORKERS", "8")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the loop cannot run with."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("TASKLOOP_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if not self.dispatch.worker_command_template.strip():
            raise ValueError("TASKLOOP_WORKER_COMMAND must not be empty.")
        if self.dispatch.recent_cycles <= 0:
            raise ValueError("TASKLOOP_RECENT_CYCLES must be > 0.")
        if self.dispatch.ancestor_depth < 0:
            raise ValueError("TASKLOOP_ANCESTOR_DEPTH must be >= 0.")
        if self.dispatch.summary_max_chars <= 0:
            raise ValueError("TASKLOOP_SUMMARY_MAX_CHARS must be > 0.")
        if self.dispatch.context_doc_max_chars <= 0:
            raise ValueError("TASKLOOP_CONTEXT_DOC_MAX_CHARS must be > 0.")
        for directory in self.dispatch.commit_dirs:
            if directory in {".", ".env", "db"} or directory.startswith(("/", "..", "db/")):
                raise ValueError(f"TASKLOOP_COMMIT_DIRS contains a forbidden path: {directory!r}")
        if self.sensors.cost_alert_threshold_usd < 0:
            raise ValueError("TASKLOOP_COST_ALERT_THRESHOLD_USD must be >= 0.")
        if self.sensors.health_stale_cycle_minutes <= 0:
            raise ValueError("TASKLOOP_HEALTH_STALE_CYCLE_MINUTES must be > 0.")
        if self.sensors.max_workers <= 0:
            raise ValueError("TASKLOOP_SENSOR_MAX_WORKERS must be > 0.")


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


def _env_csv(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    value = os.getenv(name)
    if value is None:
        return default
    return tuple(item.strip() for item in value.split(",") if item.strip())
