"""Single-flight dispatch lock file."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from taskloop.storage.common import from_iso

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DispatchLock:
    """Contents of the lock file: who holds dispatch and for which task."""

    owner_pid: int
    task_id: int | None
    started_at: datetime

    def to_json(self) -> str:
        return json.dumps(
            {
                "pid": self.owner_pid,
                "task_id": self.task_id,
                "started_at": self.started_at.isoformat(),
            },
        )


def read_dispatch_lock(path: Path) -> DispatchLock | None:
    """Read the lock; ``None`` when missing or unreadable."""

    try:
        raw = path.read_text("utf-8")
    except FileNotFoundError:
        return None
    except OSError as error:
        logger.warning("Cannot read dispatch lock %s: %s", path, error)
        return None
    try:
        payload = json.loads(raw)
        task_id = payload.get("task_id")
        return DispatchLock(
            owner_pid=int(payload["pid"]),
            task_id=int(task_id) if task_id is not None else None,
            started_at=from_iso(str(payload["started_at"])),
        )
    except (json.JSONDecodeError, AttributeError, KeyError, TypeError, ValueError) as error:
        logger.warning("Dispatch lock %s is malformed: %s", path, error)
        return None


def acquire_dispatch_lock(path: Path, lock: DispatchLock) -> bool:
    """Create the lock only if no lock file exists; ``False`` when another cycle holds it.

    The payload is written to a private file first and hard-linked into place,
    so the lock never exists without its contents.
    """

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f"{path.name}.{lock.owner_pid}.tmp")
    tmp_path.write_text(lock.to_json(), "utf-8")
    try:
        os.link(tmp_path, path)
    except FileExistsError:
        return False
    finally:
        tmp_path.unlink(missing_ok=True)
    return True


def write_dispatch_lock(path: Path, lock: DispatchLock) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f"{path.name}.tmp")
    tmp_path.write_text(lock.to_json(), "utf-8")
    os.replace(tmp_path, path)


def clear_dispatch_lock(path: Path) -> None:
    path.unlink(missing_ok=True)


def is_pid_alive(pid: int) -> bool:
    """Check a process with signal 0."""

    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True
