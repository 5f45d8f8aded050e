"""Shared test fixtures."""

from __future__ import annotations

import os
import shlex
import subprocess
import sys
from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from taskloop.config import DispatchSettings, SensorSettings, Settings
from taskloop.tasks.repository import TaskStore

SRC_DIR = Path(__file__).resolve().parents[1] / "src"

ECHO_WORKER_COMMAND = (
    f"{shlex.quote(sys.executable)} -m taskloop.dispatch.echo_worker --model {{model}}"
)


class FakeClock:
    """Deterministic, manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 10, 18, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


@pytest.fixture(autouse=True)
def _worker_import_path(monkeypatch) -> None:
    """Let worker subprocesses import taskloop without an installed package."""
    existing = os.environ.get("PYTHONPATH")
    value = f"{SRC_DIR}{os.pathsep}{existing}" if existing else str(SRC_DIR)
    monkeypatch.setenv("PYTHONPATH", value)


@pytest.fixture()
def echo_worker_command() -> str:
    return ECHO_WORKER_COMMAND


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def store(tmp_path: Path) -> Iterator[TaskStore]:
    task_store = TaskStore(tmp_path / "db" / "taskloop.sqlite")
    task_store.open()
    try:
        yield task_store
    finally:
        task_store.close()


@pytest.fixture()
def loop_settings(tmp_path: Path) -> Settings:
    return Settings(
        root_dir=tmp_path,
        db_path=tmp_path / "db" / "taskloop.sqlite",
        lock_path=tmp_path / "db" / "dispatch-lock.json",
        dispatch=DispatchSettings(
            worker_command_template=ECHO_WORKER_COMMAND,
            commit_enabled=False,
        ),
        sensors=SensorSettings(),
    )


@pytest.fixture()
def dead_pid() -> int:
    """Pid of a process that has already exited and been reaped."""
    process = subprocess.Popen([sys.executable, "-c", "pass"])  # noqa: S603
    process.wait()
    return process.pid
