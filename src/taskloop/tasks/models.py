"""Domain models for the task queue, cycle log and sensor leases."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"


OPEN_STATUSES: tuple[TaskStatus, ...] = (TaskStatus.PENDING, TaskStatus.ACTIVE)


@dataclass(slots=True)
class TaskCreate:
    """Input payload for enqueuing a task."""

    subject: str
    description: str | None = None
    skills: tuple[str, ...] = ()
    priority: int = 5
    source: str | None = None
    parent_id: int | None = None
    scheduled_for: datetime | str | None = None
    max_retries: int = 3


@dataclass(slots=True)
class TaskView:
    """Readable task view for the engine, sensors and CLI."""

    id: int
    subject: str
    description: str | None
    skills: tuple[str, ...]
    priority: int
    status: TaskStatus
    source: str | None
    parent_id: int | None
    scheduled_for: datetime | None
    created_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    result_summary: str | None
    result_detail: str | None
    cost_usd: float
    api_cost_usd: float
    tokens_in: int
    tokens_out: int
    attempt_count: int
    max_retries: int


@dataclass(slots=True)
class CycleLogCreate:
    """Row opened when a dispatch attempt starts."""

    started_at: datetime
    task_id: int | None = None
    skills_loaded: tuple[str, ...] = ()


@dataclass(slots=True)
class CycleLogUpdate:
    """Completion fields; ``None`` leaves the column untouched."""

    completed_at: datetime | None = None
    duration_ms: int | None = None
    cost_usd: float | None = None
    api_cost_usd: float | None = None
    tokens_in: int | None = None
    tokens_out: int | None = None


@dataclass(slots=True)
class CycleLogView:
    id: int
    task_id: int | None
    started_at: datetime
    completed_at: datetime | None
    duration_ms: int | None
    cost_usd: float
    api_cost_usd: float
    tokens_in: int
    tokens_out: int
    skills_loaded: tuple[str, ...]


@dataclass(slots=True)
class SensorLease:
    """Per-sensor cadence record, always written wholesale."""

    name: str
    last_ran: datetime
    last_result: str
    version: int = 0
    consecutive_failures: int = 0


@dataclass(slots=True)
class SpendTotals:
    """Aggregated task spend over a time window."""

    cost_usd: float = 0.0
    api_cost_usd: float = 0.0
    tokens_in: int = 0
    tokens_out: int = 0
    task_count: int = 0
