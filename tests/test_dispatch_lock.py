from __future__ import annotations

import json
import os
from datetime import UTC, datetime
from pathlib import Path

import allure

from taskloop.dispatch.lock import (
    DispatchLock,
    acquire_dispatch_lock,
    clear_dispatch_lock,
    is_pid_alive,
    read_dispatch_lock,
    write_dispatch_lock,
)

pytestmark = [
    allure.epic("Dispatch Engine"),
    allure.feature("Single-flight Lock"),
]


def test_lock_file_uses_stable_keys(tmp_path: Path) -> None:
    lock_path = tmp_path / "db" / "dispatch-lock.json"
    started_at = datetime(2026, 10, 18, 12, 0, tzinfo=UTC)

    write_dispatch_lock(lock_path, DispatchLock(owner_pid=42, task_id=7, started_at=started_at))

    assert json.loads(lock_path.read_text("utf-8")) == {
        "pid": 42,
        "task_id": 7,
        "started_at": "2026-10-18T12:00:00+00:00",
    }
    assert read_dispatch_lock(lock_path) == DispatchLock(
        owner_pid=42,
        task_id=7,
        started_at=started_at,
    )
    assert not (tmp_path / "db" / "dispatch-lock.json.tmp").exists()


def test_missing_and_malformed_locks_read_as_none(tmp_path: Path) -> None:
    lock_path = tmp_path / "dispatch-lock.json"
    assert read_dispatch_lock(lock_path) is None

    lock_path.write_text("{not json", "utf-8")
    assert read_dispatch_lock(lock_path) is None

    lock_path.write_text(json.dumps({"task_id": 1}), "utf-8")
    assert read_dispatch_lock(lock_path) is None


def test_acquire_refuses_an_existing_lock(tmp_path: Path) -> None:
    lock_path = tmp_path / "db" / "dispatch-lock.json"
    started_at = datetime(2026, 10, 18, 12, 0, tzinfo=UTC)
    first = DispatchLock(owner_pid=100, task_id=None, started_at=started_at)
    second = DispatchLock(owner_pid=200, task_id=None, started_at=started_at)

    assert acquire_dispatch_lock(lock_path, first) is True
    assert acquire_dispatch_lock(lock_path, second) is False

    assert read_dispatch_lock(lock_path) == first
    assert sorted(path.name for path in lock_path.parent.iterdir()) == ["dispatch-lock.json"]

    clear_dispatch_lock(lock_path)
    assert acquire_dispatch_lock(lock_path, second) is True
    assert read_dispatch_lock(lock_path) == second


def test_clear_is_idempotent(tmp_path: Path) -> None:
    lock_path = tmp_path / "dispatch-lock.json"
    write_dispatch_lock(
        lock_path,
        DispatchLock(owner_pid=1, task_id=None, started_at=datetime.now(tz=UTC)),
    )

    clear_dispatch_lock(lock_path)
    clear_dispatch_lock(lock_path)

    assert not lock_path.exists()


def test_pid_liveness(dead_pid: int) -> None:
    assert is_pid_alive(os.getpid()) is True
    assert is_pid_alive(dead_pid) is False
    assert is_pid_alive(0) is False
    assert is_pid_alive(-5) is False
