"""CLI entrypoint for taskloop."""

from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from taskloop import __version__
from taskloop.config import Settings
from taskloop.controllers import (
    AddTaskCommand,
    CloseTaskCommand,
    CyclesCommand,
    ListTasksCommand,
    LoopCliController,
    RunCycleCommand,
    SensorTickCommand,
    ShowTaskCommand,
    StatusCommand,
)
from taskloop.logging_setup import setup_logging

click.rich_click.USE_MARKDOWN = True
CONTROLLER = LoopCliController()

CommandT = TypeVar("CommandT")

db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path (default: $TASKLOOP_DB_PATH or db/taskloop.sqlite).",
)


@click.group()
@click.version_option(version=__version__, prog_name="taskloop")
@click.option(
    "--log-level",
    default=None,
    help="Logging level (default: $TASKLOOP_LOG_LEVEL or INFO).",
)
def taskloop(log_level: str | None) -> None:
    """Single-host task loop: sensors enqueue, dispatch runs one worker per task."""

    try:
        settings = Settings.from_env()
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    try:
        setup_logging(level=log_level or settings.log_level, log_file=settings.log_file)
    except ValueError as error:
        raise click.BadParameter(str(error), param_hint="--log-level") from error


@taskloop.group()
def tasks() -> None:
    """Task queue commands."""


@tasks.command("list")
@db_path_option
@click.option(
    "--status",
    type=click.Choice(["pending", "active", "completed", "failed", "blocked"]),
    default=None,
    help="Status filter (default: pending and active).",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=20,
    show_default=True,
    help="Maximum number of tasks to show.",
)
def tasks_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List tasks in dispatch order."""

    _emit_lines(
        _run(
            CONTROLLER.list_tasks,
            ListTasksCommand(db_path=db_path, status=status, limit=limit),
        ),
    )


@tasks.command("add")
@db_path_option
@click.argument("subject")
@click.option("--description", default=None, help="Longer task description.")
@click.option(
    "--priority",
    type=click.IntRange(min=1),
    default=5,
    show_default=True,
    help="Lower is more urgent.",
)
@click.option("--source", default=None, help="Provenance / dedup key, e.g. sensor:heartbeat.")
@click.option("--skills", default="", help="Comma-separated skill names to load.")
@click.option("--parent", "parent_id", type=int, default=None, help="Parent task id.")
@click.option(
    "--scheduled-for",
    default=None,
    help="ISO-8601 time before which the task is not dispatched.",
)
@click.option(
    "--max-retries",
    type=click.IntRange(min=1),
    default=3,
    show_default=True,
    help="Dispatch attempts before the task fails.",
)
def tasks_add(  # noqa: PLR0913
    db_path: Path | None,
    subject: str,
    description: str | None,
    priority: int,
    source: str | None,
    skills: str,
    parent_id: int | None,
    scheduled_for: str | None,
    max_retries: int,
) -> None:
    """Enqueue a pending task."""

    _emit_lines(
        _run(
            CONTROLLER.add_task,
            AddTaskCommand(
                db_path=db_path,
                subject=subject,
                description=description,
                priority=priority,
                source=source,
                skills=tuple(name.strip() for name in skills.split(",") if name.strip()),
                parent_id=parent_id,
                scheduled_for=scheduled_for,
                max_retries=max_retries,
            ),
        ),
    )


@tasks.command("close")
@db_path_option
@click.argument("task_id", type=int)
@click.argument("status", type=click.Choice(["completed", "failed", "blocked"]))
@click.argument("summary")
def tasks_close(db_path: Path | None, task_id: int, status: str, summary: str) -> None:
    """Close a task; workers call this to report their own outcome."""

    _emit_lines(
        _run(
            CONTROLLER.close_task,
            CloseTaskCommand(db_path=db_path, task_id=task_id, status=status, summary=summary),
        ),
    )


@tasks.command("show")
@db_path_option
@click.argument("task_id", type=int)
def tasks_show(db_path: Path | None, task_id: int) -> None:
    """Show one task with its result and cost."""

    _emit_lines(_run(CONTROLLER.show_task, ShowTaskCommand(db_path=db_path, task_id=task_id)))


@taskloop.command("run")
@db_path_option
def run(db_path: Path | None) -> None:
    """Run one dispatch cycle."""

    _emit_lines(_run(CONTROLLER.run_cycle, RunCycleCommand(db_path=db_path)))


@taskloop.command("sensors")
@db_path_option
def sensors(db_path: Path | None) -> None:
    """Run one scheduler tick over the enabled sensors."""

    _emit_lines(_run(CONTROLLER.run_sensors, SensorTickCommand(db_path=db_path)))


@taskloop.command("cycles")
@db_path_option
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=200),
    default=10,
    show_default=True,
    help="How many latest cycles to display.",
)
def cycles(db_path: Path | None, limit: int) -> None:
    """Show the most recent dispatch cycles."""

    _emit_lines(_run(CONTROLLER.list_cycles, CyclesCommand(db_path=db_path, limit=limit)))


@taskloop.command("status")
@db_path_option
def status(db_path: Path | None) -> None:
    """Queue counts, last cycle, today's spend and sensor leases."""

    _emit_lines(_run(CONTROLLER.status, StatusCommand(db_path=db_path)))


def _run(handler: Callable[[CommandT], list[str]], command: CommandT) -> list[str]:
    try:
        return handler(command)
    except ValueError as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    taskloop()
