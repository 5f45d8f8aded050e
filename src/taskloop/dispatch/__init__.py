"""Single-flight dispatch engine and its worker backend."""

from taskloop.dispatch.backend import (
    CliWorkerBackend,
    WorkerBackend,
    WorkerRunError,
    WorkerRunRequest,
    WorkerRunResult,
)
from taskloop.dispatch.engine import DispatchEngine, DispatchOutcome, DispatchSummary

__all__ = [
    "CliWorkerBackend",
    "DispatchEngine",
    "DispatchOutcome",
    "DispatchSummary",
    "WorkerBackend",
    "WorkerRunError",
    "WorkerRunRequest",
    "WorkerRunResult",
]
