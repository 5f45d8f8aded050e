"""Controllers for taskloop CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from taskloop.config import Settings
from taskloop.dispatch.engine import DispatchEngine
from taskloop.sensors.builtin import build_registry
from taskloop.sensors.scheduler import SensorLeases, SensorScheduler
from taskloop.storage.common import utc_now
from taskloop.tasks.models import TaskCreate, TaskStatus, TaskView
from taskloop.tasks.repository import TaskStore


@dataclass(slots=True)
class ListTasksCommand:
    """CLI input for task listing."""

    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class AddTaskCommand:
    """CLI input for task enqueue."""

    db_path: Path | None
    subject: str
    description: str | None = None
    priority: int = 5
    source: str | None = None
    skills: tuple[str, ...] = ()
    parent_id: int | None = None
    scheduled_for: str | None = None
    max_retries: int = 3


@dataclass(slots=True)
class CloseTaskCommand:
    """CLI input for closing a task from inside a worker session."""

    db_path: Path | None
    task_id: int
    status: str
    summary: str


@dataclass(slots=True)
class ShowTaskCommand:
    db_path: Path | None
    task_id: int


@dataclass(slots=True)
class RunCycleCommand:
    db_path: Path | None


@dataclass(slots=True)
class SensorTickCommand:
    db_path: Path | None


@dataclass(slots=True)
class CyclesCommand:
    db_path: Path | None
    limit: int


@dataclass(slots=True)
class StatusCommand:
    db_path: Path | None


class LoopCliController:
    """Coordinates queue, dispatch and sensor CLI operations."""

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _store(settings) as store:
            tasks = store.list_tasks(status=status_filter, limit=command.limit)

        lines = [f"Tasks: {len(tasks)}"]
        lines.extend(f"  {_task_line(task)}" for task in tasks)
        return lines

    def add_task(self, command: AddTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            if command.parent_id is not None and store.get_by_id(command.parent_id) is None:
                raise ValueError(f"Parent task not found: {command.parent_id}")
            task_id = store.enqueue(
                TaskCreate(
                    subject=command.subject,
                    description=command.description,
                    skills=command.skills,
                    priority=command.priority,
                    source=command.source,
                    parent_id=command.parent_id,
                    scheduled_for=command.scheduled_for,
                    max_retries=command.max_retries,
                ),
            )
            task = store.get_by_id(task_id)
        assert task is not None
        return [f"Task enqueued: {_task_line(task)}"]

    def close_task(self, command: CloseTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = _parse_status(command.status)
        summary = command.summary.strip()
        if not summary:
            raise ValueError("Summary must not be empty.")
        with _store(settings) as store:
            if status is TaskStatus.COMPLETED:
                updated = store.mark_completed(command.task_id, summary)
            elif status is TaskStatus.FAILED:
                updated = store.mark_failed(command.task_id, summary)
            elif status is TaskStatus.BLOCKED:
                updated = store.mark_blocked(command.task_id, summary)
            else:
                raise ValueError("Status must be one of: completed, failed, blocked.")
            current = None if updated else store.get_by_id(command.task_id)
        if not updated:
            if current is None:
                raise ValueError(f"Task not found: {command.task_id}")
            raise ValueError(
                f"Task #{command.task_id} is not active (status={current.status.value}); "
                "only active or blocked tasks can be closed.",
            )
        return [f"Task #{command.task_id} closed as {status.value}: {summary}"]

    def show_task(self, command: ShowTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            task = store.get_by_id(command.task_id)
        if task is None:
            return [f"Task not found: {command.task_id}"]

        return [
            f"Task: #{task.id}",
            f"Subject: {task.subject}",
            f"Status: {task.status.value}",
            f"Priority: {task.priority}",
            f"Source: {task.source or '-'}",
            f"Parent: {f'#{task.parent_id}' if task.parent_id is not None else '-'}",
            f"Skills: {', '.join(task.skills) or '-'}",
            f"Attempt: {task.attempt_count}/{task.max_retries}",
            f"Scheduled for: {_iso(task.scheduled_for)}",
            f"Created: {_iso(task.created_at)}",
            f"Started: {_iso(task.started_at)}",
            f"Completed: {_iso(task.completed_at)}",
            f"Cost: ${task.cost_usd:.6f} (API ${task.api_cost_usd:.6f})",
            f"Tokens: {task.tokens_in} in / {task.tokens_out} out",
            f"Summary: {task.result_summary or '-'}",
            f"Description: {task.description or '-'}",
        ]

    def run_cycle(self, command: RunCycleCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        with _store(settings) as store:
            summary = DispatchEngine(store=store, settings=settings).run_once()

        lines = [f"Dispatch: {summary.outcome.value}"]
        if summary.recovered_task_ids:
            recovered = ", ".join(f"#{task_id}" for task_id in summary.recovered_task_ids)
            lines.append(f"Recovered (crash): {recovered}")
        if summary.task_id is not None:
            lines.append(f"Task: #{summary.task_id}")
        if summary.tokens_in or summary.tokens_out or summary.cost_usd:
            lines.append(
                f"Cost: ${summary.cost_usd:.6f} (API ${summary.api_cost_usd:.6f}) "
                f"tokens={summary.tokens_in}in/{summary.tokens_out}out",
            )
        if summary.error_summary:
            lines.append(f"Error: {summary.error_summary}")
        if summary.commit is not None:
            lines.append(f"Commit: {summary.commit.value}")
        return lines

    def run_sensors(self, command: SensorTickCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        with _store(settings) as store:
            leases = SensorLeases(store)
            registry = build_registry(store, leases, settings)
            scheduler = SensorScheduler(
                registry,
                leases,
                max_workers=settings.sensors.max_workers,
            )
            reports = scheduler.run_tick()

        lines = [f"Sensors: {len(reports)}"]
        for report in reports:
            detail = f" ({report.error})" if report.error else ""
            lines.append(
                f"  {report.name}: {report.status.value} {report.duration_ms}ms{detail}",
            )
        return lines

    def list_cycles(self, command: CyclesCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            cycles = store.list_recent_cycles(limit=command.limit)

        lines = [f"Cycles: {len(cycles)}"]
        for cycle in cycles:
            task = f"#{cycle.task_id}" if cycle.task_id is not None else "-"
            duration = f"{cycle.duration_ms}ms" if cycle.duration_ms is not None else "running"
            lines.append(
                f"  {cycle.id} started={_iso(cycle.started_at)} task={task} "
                f"duration={duration} cost=${cycle.cost_usd:.6f} "
                f"tokens={cycle.tokens_in}in/{cycle.tokens_out}out",
            )
        return lines

    def status(self, command: StatusCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        now = utc_now()
        with _store(settings) as store:
            counts = store.count_by_status()
            cycles = store.list_recent_cycles(limit=1)
            spend = store.spend_since(now.replace(hour=0, minute=0, second=0, microsecond=0))
            leases = store.list_sensor_leases()

        lines = [
            "Tasks: "
            + " ".join(f"{status.value}={counts[status]}" for status in TaskStatus),
            f"Last cycle: {_iso(cycles[0].started_at) if cycles else '-'}",
            f"Spend today: ${spend.cost_usd:.2f} (API ${spend.api_cost_usd:.2f}) "
            f"across {spend.task_count} task(s)",
            f"Sensors: {len(leases)}",
        ]
        for lease in leases:
            lines.append(
                f"  {lease.name}: last_ran={_iso(lease.last_ran)} result={lease.last_result} "
                f"version={lease.version} failures={lease.consecutive_failures}",
            )
        return lines


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    try:
        return TaskStatus(value.strip().lower())
    except ValueError as error:
        allowed = ", ".join(status.value for status in TaskStatus)
        raise ValueError(f"Unknown status {value!r}; expected one of: {allowed}.") from error


def _task_line(task: TaskView) -> str:
    return (
        f"#{task.id} [{task.status.value}] p{task.priority} {task.subject} "
        f"source={task.source or '-'} attempt={task.attempt_count}/{task.max_retries}"
    )


def _iso(value: datetime | None) -> str:
    return value.isoformat() if value is not None else "-"


@contextmanager
def _store(settings: Settings) -> Iterator[TaskStore]:
    store = TaskStore(settings.db_path, busy_timeout_ms=settings.sqlite_busy_timeout_ms)
    store.open()
    try:
        yield store
    finally:
        store.close()
