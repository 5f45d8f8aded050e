"""Durable task queue, cycle log and sensor lease store."""

from taskloop.tasks.models import (
    CycleLogCreate,
    CycleLogUpdate,
    CycleLogView,
    SensorLease,
    SpendTotals,
    TaskCreate,
    TaskStatus,
    TaskView,
)
from taskloop.tasks.repository import StoreNotOpenError, TaskStore

__all__ = [
    "CycleLogCreate",
    "CycleLogUpdate",
    "CycleLogView",
    "SensorLease",
    "SpendTotals",
    "StoreNotOpenError",
    "TaskCreate",
    "TaskStatus",
    "TaskStore",
    "TaskView",
]
