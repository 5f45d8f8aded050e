"""Lock-gated dispatch cycle: pick one task, run one worker, record the outcome."""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path

from taskloop.config import Settings
from taskloop.dispatch.backend import (
    CliWorkerBackend,
    WorkerBackend,
    WorkerRunError,
    WorkerRunRequest,
    WorkerRunResult,
)
from taskloop.dispatch.context import ContextBuilder
from taskloop.dispatch.failure_classifier import classify_worker_failure
from taskloop.dispatch.lock import (
    DispatchLock,
    acquire_dispatch_lock,
    clear_dispatch_lock,
    is_pid_alive,
    read_dispatch_lock,
    write_dispatch_lock,
)
from taskloop.dispatch.persist import CommitOutcome, CycleCommitter
from taskloop.dispatch.pricing import calculate_api_cost_usd, select_model
from taskloop.storage.common import utc_now
from taskloop.tasks.models import CycleLogCreate, CycleLogUpdate, TaskStatus, TaskView
from taskloop.tasks.repository import TaskStore

logger = logging.getLogger(__name__)

CRASH_RECOVERY_SUMMARY = "Task was left active from a previous cycle (crash recovery)"
NO_OUTPUT_SUMMARY = "Completed - no output"
ERROR_SUMMARY_MAX_CHARS = 400


class DispatchOutcome(str, Enum):
    """How a dispatch cycle ended."""

    LOCKED = "locked"
    IDLE = "idle"
    COMPLETED = "completed"
    SELF_CLOSED = "self_closed"
    REQUEUED = "requeued"
    FAILED = "failed"


@dataclass(slots=True)
class DispatchSummary:
    """Aggregate cycle result for CLI reporting."""

    outcome: DispatchOutcome
    task_id: int | None = None
    recovered_task_ids: tuple[int, ...] = ()
    cost_usd: float = 0.0
    api_cost_usd: float = 0.0
    tokens_in: int = 0
    tokens_out: int = 0
    error_summary: str | None = None
    commit: CommitOutcome | None = None


@dataclass(slots=True)
class _CycleCost:
    cost_usd: float
    api_cost_usd: float
    tokens_in: int
    tokens_out: int


class DispatchEngine:
    """Runs at most one worker at a time, guarded by the dispatch lock file."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: TaskStore,
        settings: Settings,
        backend: WorkerBackend | None = None,
        committer: CycleCommitter | None = None,
        clock: Callable[[], datetime] = utc_now,
        pid: int | None = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self.backend = backend or CliWorkerBackend()
        self.committer = committer or CycleCommitter(
            store=store,
            root_dir=settings.root_dir,
            commit_dirs=settings.dispatch.commit_dirs,
        )
        self.context_builder = ContextBuilder(
            store=store,
            root_dir=settings.root_dir,
            recent_cycles=settings.dispatch.recent_cycles,
            ancestor_depth=settings.dispatch.ancestor_depth,
            doc_max_chars=settings.dispatch.context_doc_max_chars,
            clock=clock,
        )
        self._clock = clock
        self._pid = pid or os.getpid()

    @property
    def lock_path(self) -> Path:
        return self.settings.lock_path

    def run_once(self) -> DispatchSummary:
        existing = read_dispatch_lock(self.lock_path)
        if existing is not None and is_pid_alive(existing.owner_pid):
            logger.info(
                "Dispatch in progress (pid=%d, task=%s, started=%s), skipping cycle",
                existing.owner_pid,
                existing.task_id,
                existing.started_at.isoformat(),
            )
            return DispatchSummary(outcome=DispatchOutcome.LOCKED, task_id=existing.task_id)
        if self.lock_path.exists():
            owner = existing.owner_pid if existing is not None else "unknown"
            logger.warning("Discarding stale dispatch lock (pid=%s is gone)", owner)
            clear_dispatch_lock(self.lock_path)

        lock_started_at = self._clock()
        acquired = acquire_dispatch_lock(
            self.lock_path,
            DispatchLock(owner_pid=self._pid, task_id=None, started_at=lock_started_at),
        )
        if not acquired:
            holder = read_dispatch_lock(self.lock_path)
            logger.info("Another cycle took the dispatch lock first, skipping cycle")
            return DispatchSummary(
                outcome=DispatchOutcome.LOCKED,
                task_id=holder.task_id if holder is not None else None,
            )
        try:
            recovered = self._recover_crashed_tasks()
            pending = self.store.list_pending()
            if not pending:
                logger.info("No pending tasks. Idle.")
                return DispatchSummary(outcome=DispatchOutcome.IDLE, recovered_task_ids=recovered)
            task = pending[0]
            logger.info(
                "Selected task #%d %r (priority %d)",
                task.id,
                task.subject,
                task.priority,
            )
            summary = self._execute(task, lock_started_at=lock_started_at)
            summary.recovered_task_ids = recovered
        finally:
            clear_dispatch_lock(self.lock_path)

        if summary.outcome is not DispatchOutcome.IDLE:
            summary.commit = self._persist(task.id)
        return summary

    def _recover_crashed_tasks(self) -> tuple[int, ...]:
        recovered: list[int] = []
        for task in self.store.list_active():
            logger.warning(
                "Stale active task #%d %r, marking failed (crash recovery)",
                task.id,
                task.subject,
            )
            self.store.mark_failed(task.id, CRASH_RECOVERY_SUMMARY)
            recovered.append(task.id)
        return tuple(recovered)

    def _execute(self, task: TaskView, *, lock_started_at: datetime) -> DispatchSummary:
        model = select_model(task.priority)
        if task.skills:
            logger.info("Loading skills: %s", ", ".join(task.skills))
        logger.info("Model %s for priority %d", model, task.priority)
        prompt = self.context_builder.build(task)

        if not self.store.mark_active(task.id):
            logger.warning("Task #%d is no longer pending, nothing dispatched", task.id)
            return DispatchSummary(outcome=DispatchOutcome.IDLE, task_id=task.id)
        write_dispatch_lock(
            self.lock_path,
            DispatchLock(owner_pid=self._pid, task_id=task.id, started_at=lock_started_at),
        )
        cycle_id = self.store.append_cycle_log(
            CycleLogCreate(started_at=self._clock(), task_id=task.id, skills_loaded=task.skills),
        )

        started = time.monotonic()
        request = WorkerRunRequest(
            prompt=prompt,
            model=model,
            command_template=self.settings.dispatch.worker_command,
            cwd=self.settings.root_dir,
            env={
                "TASKLOOP_TASK_ID": str(task.id),
                "TASKLOOP_DB_PATH": str(self.store.db_path),
            },
        )
        try:
            result = self.backend.run(request)
        except WorkerRunError as error:
            return self._resolve_failure(
                task,
                error=error,
                model=model,
                cycle_id=cycle_id,
                started=started,
            )
        return self._resolve_success(
            task,
            result=result,
            model=model,
            cycle_id=cycle_id,
            started=started,
        )

    def _resolve_success(
        self,
        task: TaskView,
        *,
        result: WorkerRunResult,
        model: str,
        cycle_id: int,
        started: float,
    ) -> DispatchSummary:
        cost = _cycle_cost(model, result)
        logger.info(
            "Task #%d returned: cost_usd=$%.6f api_cost=$%.6f tokens=%din/%dout",
            task.id,
            cost.cost_usd,
            cost.api_cost_usd,
            cost.tokens_in,
            cost.tokens_out,
        )

        current = self.store.get_by_id(task.id)
        if current is not None and current.status is not TaskStatus.ACTIVE:
            logger.info("Task #%d was closed by the worker (status=%s)", task.id, current.status)
            outcome = DispatchOutcome.SELF_CLOSED
        else:
            logger.info("Task #%d still active after the worker exited, closing", task.id)
            summary = result.text[: self.settings.dispatch.summary_max_chars] or NO_OUTPUT_SUMMARY
            self.store.mark_completed(task.id, summary, result.text or None)
            outcome = DispatchOutcome.COMPLETED

        self._record_task_cost(task.id, cost)
        self.store.update_cycle_log(
            cycle_id,
            CycleLogUpdate(
                completed_at=self._clock(),
                duration_ms=_elapsed_ms(started),
                cost_usd=cost.cost_usd,
                api_cost_usd=cost.api_cost_usd,
                tokens_in=cost.tokens_in,
                tokens_out=cost.tokens_out,
            ),
        )
        return DispatchSummary(
            outcome=outcome,
            task_id=task.id,
            cost_usd=cost.cost_usd,
            api_cost_usd=cost.api_cost_usd,
            tokens_in=cost.tokens_in,
            tokens_out=cost.tokens_out,
        )

    def _resolve_failure(
        self,
        task: TaskView,
        *,
        error: WorkerRunError,
        model: str,
        cycle_id: int,
        started: float,
    ) -> DispatchSummary:
        message = str(error)
        bounded = message[:ERROR_SUMMARY_MAX_CHARS]
        cost = _cycle_cost(model, error.result) if error.result is not None else None

        current = self.store.get_by_id(task.id)
        if current is not None and current.status is not TaskStatus.ACTIVE:
            logger.info(
                "Worker for task #%d failed after closing it (status=%s): %s",
                task.id,
                current.status,
                bounded,
            )
            if cost is not None:
                self._record_task_cost(task.id, cost)
            outcome = DispatchOutcome.SELF_CLOSED
        else:
            attempt = current.attempt_count if current is not None else task.attempt_count + 1
            failure_text = message if error.result is None else f"{message}\n{error.result.stderr}"
            classification = classify_worker_failure(failure_text)
            if not classification.retryable:
                self.store.mark_failed(task.id, f"Auth error (not retried): {bounded}")
                logger.error(
                    "Task #%d failed (attempt %d/%d), auth error, not retrying: %s",
                    task.id,
                    attempt,
                    task.max_retries,
                    bounded,
                )
                outcome = DispatchOutcome.FAILED
            elif attempt < task.max_retries:
                self.store.requeue(task.id)
                logger.warning(
                    "Task #%d failed (attempt %d/%d), requeuing for retry: %s",
                    task.id,
                    attempt,
                    task.max_retries,
                    bounded,
                )
                outcome = DispatchOutcome.REQUEUED
            else:
                self.store.mark_failed(task.id, f"Max retries exhausted: {bounded}")
                logger.error(
                    "Task #%d failed (attempt %d/%d), max retries exhausted: %s",
                    task.id,
                    attempt,
                    task.max_retries,
                    bounded,
                )
                outcome = DispatchOutcome.FAILED

        self.store.update_cycle_log(
            cycle_id,
            CycleLogUpdate(completed_at=self._clock(), duration_ms=_elapsed_ms(started)),
        )
        return DispatchSummary(
            outcome=outcome,
            task_id=task.id,
            cost_usd=cost.cost_usd if cost is not None else 0.0,
            api_cost_usd=cost.api_cost_usd if cost is not None else 0.0,
            tokens_in=cost.tokens_in if cost is not None else 0,
            tokens_out=cost.tokens_out if cost is not None else 0,
            error_summary=bounded,
        )

    def _record_task_cost(self, task_id: int, cost: _CycleCost) -> None:
        self.store.update_cost(
            task_id,
            cost_usd=cost.cost_usd,
            api_cost_usd=cost.api_cost_usd,
            tokens_in=cost.tokens_in,
            tokens_out=cost.tokens_out,
        )

    def _persist(self, task_id: int) -> CommitOutcome:
        if not self.settings.dispatch.commit_enabled:
            return CommitOutcome.DISABLED
        return self.committer.commit_cycle(task_id)


def _cycle_cost(model: str, result: WorkerRunResult) -> _CycleCost:
    api_cost = calculate_api_cost_usd(model, result.usage)
    reported = result.reported_cost_usd
    return _CycleCost(
        cost_usd=reported if reported else api_cost,
        api_cost_usd=api_cost,
        tokens_in=result.usage.total_input_tokens,
        tokens_out=result.usage.output_tokens,
    )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
