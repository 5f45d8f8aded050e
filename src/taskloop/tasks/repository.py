"""Persistent task store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from sqlalchemy import func, or_
from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from taskloop.storage.alembic_runner import upgrade_head
from taskloop.storage.common import (
    build_sqlite_engine,
    from_iso,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from taskloop.storage.sqlmodel_models import CycleLogRecord, SensorLeaseRecord, TaskRecord
from taskloop.tasks.models import (
    OPEN_STATUSES,
    CycleLogCreate,
    CycleLogUpdate,
    CycleLogView,
    SensorLease,
    SpendTotals,
    TaskCreate,
    TaskStatus,
    TaskView,
)

logger = logging.getLogger(__name__)

_CLOSABLE_STATUSES = (TaskStatus.ACTIVE.value, TaskStatus.BLOCKED.value)


class StoreNotOpenError(RuntimeError):
    """Raised when the store is used before ``open()`` or after ``close()``."""


class TaskStore:
    """Queue, cycle log and sensor lease persistence facade.

    Every operation opens its own session so the store can be shared between
    the dispatch engine and concurrently running sensors.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        busy_timeout_ms: int = 5000,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db_path = db_path
        self.busy_timeout_ms = busy_timeout_ms
        self._clock = clock
        self._engine: Engine | None = None

    def open(self) -> TaskStore:
        """Run schema migrations and create the engine. Idempotent."""

        if self._engine is not None:
            return self
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        upgrade_head(self.db_path)
        self._engine = build_sqlite_engine(
            db_path=self.db_path,
            busy_timeout_ms=self.busy_timeout_ms,
        )
        logger.debug("Task store opened at %s", self.db_path)
        return self

    def close(self) -> None:
        """Dispose underlying DB resources."""

        if self._engine is None:
            return
        self._engine.dispose()
        self._engine = None

    def __enter__(self) -> TaskStore:
        return self.open()

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def is_open(self) -> bool:
        return self._engine is not None

    def _require_engine(self) -> Engine:
        if self._engine is None:
            raise StoreNotOpenError(f"Task store is not open: {self.db_path}")
        return self._engine

    def _now(self) -> datetime:
        return to_db_datetime(self._clock())

    # Tasks

    def enqueue(self, payload: TaskCreate) -> int:
        """Insert a pending task and return its id."""

        subject = payload.subject.strip()
        if not subject:
            raise ValueError("Task subject must not be empty.")
        engine = self._require_engine()
        with Session(engine) as session:
            row = TaskRecord(
                subject=subject,
                description=payload.description,
                skills=json.dumps(list(payload.skills)) if payload.skills else None,
                priority=payload.priority,
                status=TaskStatus.PENDING.value,
                source=payload.source,
                parent_id=payload.parent_id,
                scheduled_for=_normalize_scheduled_for(payload.scheduled_for),
                created_at=self._now(),
                max_retries=payload.max_retries,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            assert row.id is not None
            logger.info(
                "Enqueued task #%d (priority=%d, source=%s): %s",
                row.id,
                row.priority,
                row.source,
                row.subject,
            )
            return row.id

    def exists_for_source(self, source: str, *, active_only: bool = False) -> bool:
        """Whether a task with ``source`` exists (pending/active only if ``active_only``)."""

        engine = self._require_engine()
        statement = select(TaskRecord.id).where(TaskRecord.source == source)
        if active_only:
            statement = statement.where(
                col(TaskRecord.status).in_([status.value for status in OPEN_STATUSES]),
            )
        with Session(engine) as session:
            return session.exec(statement.limit(1)).first() is not None

    def list_pending(self) -> list[TaskView]:
        """Pending tasks that are due, in dispatch order."""

        engine = self._require_engine()
        now = self._now()
        with Session(engine) as session:
            rows = session.exec(
                select(TaskRecord)
                .where(
                    TaskRecord.status == TaskStatus.PENDING.value,
                    or_(
                        col(TaskRecord.scheduled_for).is_(None),
                        col(TaskRecord.scheduled_for) <= now,
                    ),
                )
                .order_by(col(TaskRecord.priority).asc(), col(TaskRecord.id).asc()),
            ).all()
            return [_to_task_view(row) for row in rows]

    def list_active(self) -> list[TaskView]:
        engine = self._require_engine()
        with Session(engine) as session:
            rows = session.exec(
                select(TaskRecord)
                .where(TaskRecord.status == TaskStatus.ACTIVE.value)
                .order_by(col(TaskRecord.id).asc()),
            ).all()
            return [_to_task_view(row) for row in rows]

    def list_tasks(self, *, status: TaskStatus | None = None, limit: int = 20) -> list[TaskView]:
        """Tasks with ``status`` (default: pending and active) in dispatch order."""

        engine = self._require_engine()
        statuses = [status.value] if status is not None else [s.value for s in OPEN_STATUSES]
        with Session(engine) as session:
            rows = session.exec(
                select(TaskRecord)
                .where(col(TaskRecord.status).in_(statuses))
                .order_by(col(TaskRecord.priority).asc(), col(TaskRecord.id).asc())
                .limit(max(1, limit)),
            ).all()
            return [_to_task_view(row) for row in rows]

    def count_by_status(self) -> dict[TaskStatus, int]:
        engine = self._require_engine()
        with Session(engine) as session:
            rows = session.exec(
                select(TaskRecord.status, func.count()).group_by(TaskRecord.status),
            ).all()
        counts = {status: 0 for status in TaskStatus}
        for status, count in rows:
            counts[TaskStatus(status)] = int(count)
        return counts

    def get_by_id(self, task_id: int) -> TaskView | None:
        engine = self._require_engine()
        with Session(engine) as session:
            row = session.get(TaskRecord, task_id)
            if row is None:
                return None
            return _to_task_view(row)

    def mark_active(self, task_id: int) -> bool:
        """Move a pending task to active; returns ``False`` if it was not pending."""

        engine = self._require_engine()
        with Session(engine) as session:
            result = session.exec(
                sa_update(TaskRecord)
                .where(
                    col(TaskRecord.id) == task_id,
                    col(TaskRecord.status) == TaskStatus.PENDING.value,
                )
                .values(
                    status=TaskStatus.ACTIVE.value,
                    started_at=self._now(),
                    attempt_count=col(TaskRecord.attempt_count) + 1,
                ),
            )
            session.commit()
            return result.rowcount == 1

    def mark_completed(self, task_id: int, summary: str, detail: str | None = None) -> bool:
        """Close an active or blocked task; ``False`` when it is missing, pending or closed."""

        return self._close_task(
            task_id,
            status=TaskStatus.COMPLETED,
            summary=summary,
            detail=detail,
            stamp_completed=True,
        )

    def mark_failed(self, task_id: int, summary: str) -> bool:
        return self._close_task(
            task_id,
            status=TaskStatus.FAILED,
            summary=summary,
            detail=None,
            stamp_completed=True,
        )

    def mark_blocked(self, task_id: int, reason: str) -> bool:
        """Park a task for later; blocked tasks are resumable, so no completion stamp."""

        return self._close_task(
            task_id,
            status=TaskStatus.BLOCKED,
            summary=reason,
            detail=None,
            stamp_completed=False,
        )

    def _close_task(
        self,
        task_id: int,
        *,
        status: TaskStatus,
        summary: str,
        detail: str | None,
        stamp_completed: bool,
    ) -> bool:
        engine = self._require_engine()
        values: dict[str, object] = {"status": status.value, "result_summary": summary}
        if detail is not None:
            values["result_detail"] = detail
        if stamp_completed:
            values["completed_at"] = self._now()
        with Session(engine) as session:
            result = session.exec(
                sa_update(TaskRecord)
                .where(
                    col(TaskRecord.id) == task_id,
                    col(TaskRecord.status).in_(_CLOSABLE_STATUSES),
                )
                .values(**values),
            )
            session.commit()
            updated = result.rowcount == 1
        if updated:
            logger.info("Task #%d marked %s: %s", task_id, status.value, summary[:120])
        else:
            logger.warning(
                "Task #%d is missing or not closable, not marking %s",
                task_id,
                status.value,
            )
        return updated

    def requeue(self, task_id: int) -> bool:
        """Return an active task to pending; keeps ``attempt_count``."""

        engine = self._require_engine()
        with Session(engine) as session:
            result = session.exec(
                sa_update(TaskRecord)
                .where(
                    col(TaskRecord.id) == task_id,
                    col(TaskRecord.status) == TaskStatus.ACTIVE.value,
                )
                .values(status=TaskStatus.PENDING.value, started_at=None),
            )
            session.commit()
            return result.rowcount == 1

    def update_cost(
        self,
        task_id: int,
        *,
        cost_usd: float,
        api_cost_usd: float,
        tokens_in: int,
        tokens_out: int,
    ) -> None:
        engine = self._require_engine()
        with Session(engine) as session:
            session.exec(
                sa_update(TaskRecord)
                .where(col(TaskRecord.id) == task_id)
                .values(
                    cost_usd=cost_usd,
                    api_cost_usd=api_cost_usd,
                    tokens_in=tokens_in,
                    tokens_out=tokens_out,
                ),
            )
            session.commit()

    def spend_since(self, since: datetime) -> SpendTotals:
        """Sum task spend for tasks created at or after ``since``."""

        engine = self._require_engine()
        with Session(engine) as session:
            row = session.exec(
                select(
                    func.coalesce(func.sum(TaskRecord.cost_usd), 0.0),
                    func.coalesce(func.sum(TaskRecord.api_cost_usd), 0.0),
                    func.coalesce(func.sum(TaskRecord.tokens_in), 0),
                    func.coalesce(func.sum(TaskRecord.tokens_out), 0),
                    func.count(),
                ).where(col(TaskRecord.created_at) >= to_db_datetime(since)),
            ).one()
        cost, api_cost, tokens_in, tokens_out, count = row
        return SpendTotals(
            cost_usd=float(cost),
            api_cost_usd=float(api_cost),
            tokens_in=int(tokens_in),
            tokens_out=int(tokens_out),
            task_count=int(count),
        )

    # Cycle log

    def append_cycle_log(self, payload: CycleLogCreate) -> int:
        engine = self._require_engine()
        with Session(engine) as session:
            row = CycleLogRecord(
                task_id=payload.task_id,
                started_at=to_db_datetime(payload.started_at),
                skills_loaded=json.dumps(list(payload.skills_loaded)),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            assert row.id is not None
            return row.id

    def update_cycle_log(self, cycle_id: int, payload: CycleLogUpdate) -> None:
        """Apply completion fields; ``None`` values are left untouched."""

        values: dict[str, object] = {}
        if payload.completed_at is not None:
            values["completed_at"] = to_db_datetime(payload.completed_at)
        for name in ("duration_ms", "cost_usd", "api_cost_usd", "tokens_in", "tokens_out"):
            value = getattr(payload, name)
            if value is not None:
                values[name] = value
        if not values:
            return
        engine = self._require_engine()
        with Session(engine) as session:
            session.exec(
                sa_update(CycleLogRecord)
                .where(col(CycleLogRecord.id) == cycle_id)
                .values(**values),
            )
            session.commit()

    def list_recent_cycles(self, limit: int = 10) -> list[CycleLogView]:
        """Most recent cycle-log rows, newest first."""

        engine = self._require_engine()
        with Session(engine) as session:
            rows = session.exec(
                select(CycleLogRecord)
                .order_by(col(CycleLogRecord.started_at).desc(), col(CycleLogRecord.id).desc())
                .limit(max(1, limit)),
            ).all()
            return [_to_cycle_view(row) for row in rows]

    # Sensor leases

    def read_sensor_lease(self, name: str) -> SensorLease | None:
        engine = self._require_engine()
        with Session(engine) as session:
            row = session.get(SensorLeaseRecord, name)
            if row is None:
                return None
            return SensorLease(
                name=row.name,
                last_ran=to_utc_aware_datetime(row.last_ran),
                last_result=row.last_result,
                version=row.version,
                consecutive_failures=row.consecutive_failures,
            )

    def write_sensor_lease(self, lease: SensorLease) -> None:
        """Upsert the full lease record."""

        engine = self._require_engine()
        with Session(engine) as session:
            session.merge(
                SensorLeaseRecord(
                    name=lease.name,
                    last_ran=to_db_datetime(lease.last_ran),
                    last_result=lease.last_result,
                    version=lease.version,
                    consecutive_failures=lease.consecutive_failures,
                ),
            )
            session.commit()

    def list_sensor_leases(self) -> list[SensorLease]:
        engine = self._require_engine()
        with Session(engine) as session:
            rows = session.exec(
                select(SensorLeaseRecord).order_by(col(SensorLeaseRecord.name).asc()),
            ).all()
            return [
                SensorLease(
                    name=row.name,
                    last_ran=to_utc_aware_datetime(row.last_ran),
                    last_result=row.last_result,
                    version=row.version,
                    consecutive_failures=row.consecutive_failures,
                )
                for row in rows
            ]


def _normalize_scheduled_for(value: datetime | str | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, str):
        if not value.strip():
            return None
        value = from_iso(value)
    return to_db_datetime(value)


def _decode_names(raw: str | None) -> tuple[str, ...]:
    if not raw:
        return ()
    try:
        decoded = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Ignoring malformed skills payload: %r", raw)
        return ()
    if not isinstance(decoded, list):
        return ()
    return tuple(str(item) for item in decoded)


def _aware_or_none(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _to_task_view(row: TaskRecord) -> TaskView:
    assert row.id is not None
    return TaskView(
        id=row.id,
        subject=row.subject,
        description=row.description,
        skills=_decode_names(row.skills),
        priority=row.priority,
        status=TaskStatus(row.status),
        source=row.source,
        parent_id=row.parent_id,
        scheduled_for=_aware_or_none(row.scheduled_for),
        created_at=to_utc_aware_datetime(row.created_at),
        started_at=_aware_or_none(row.started_at),
        completed_at=_aware_or_none(row.completed_at),
        result_summary=row.result_summary,
        result_detail=row.result_detail,
        cost_usd=row.cost_usd,
        api_cost_usd=row.api_cost_usd,
        tokens_in=row.tokens_in,
        tokens_out=row.tokens_out,
        attempt_count=row.attempt_count,
        max_retries=row.max_retries,
    )


def _to_cycle_view(row: CycleLogRecord) -> CycleLogView:
    assert row.id is not None
    return CycleLogView(
        id=row.id,
        task_id=row.task_id,
        started_at=to_utc_aware_datetime(row.started_at),
        completed_at=_aware_or_none(row.completed_at),
        duration_ms=row.duration_ms,
        cost_usd=row.cost_usd,
        api_cost_usd=row.api_cost_usd,
        tokens_in=row.tokens_in,
        tokens_out=row.tokens_out,
        skills_loaded=_decode_names(row.skills_loaded),
    )
