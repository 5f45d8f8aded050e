from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import allure
import pytest
from sqlalchemy.exc import IntegrityError

from taskloop.tasks.models import CycleLogCreate, CycleLogUpdate, TaskCreate, TaskStatus
from taskloop.tasks.repository import StoreNotOpenError, TaskStore

pytestmark = [
    allure.epic("Task Store"),
    allure.feature("Queue Lifecycle"),
]


def test_enqueue_applies_defaults(store: TaskStore) -> None:
    task_id = store.enqueue(TaskCreate(subject="write report"))

    task = store.get_by_id(task_id)
    assert task is not None
    assert task.priority == 5
    assert task.status == TaskStatus.PENDING
    assert task.max_retries == 3
    assert task.attempt_count == 0
    assert task.skills == ()
    assert task.created_at.tzinfo is not None


def test_enqueue_rejects_empty_subject(store: TaskStore) -> None:
    with pytest.raises(ValueError, match="subject"):
        store.enqueue(TaskCreate(subject="   "))


def test_list_pending_orders_by_priority_then_id(store: TaskStore) -> None:
    task_a = store.enqueue(TaskCreate(subject="A", priority=3))
    task_b = store.enqueue(TaskCreate(subject="B", priority=1))
    task_c = store.enqueue(TaskCreate(subject="C", priority=1))

    pending = store.list_pending()

    assert [task.id for task in pending] == [task_b, task_c, task_a]
    assert [task.subject for task in pending] == ["B", "C", "A"]


def test_deferred_task_is_hidden_until_scheduled_time(tmp_path: Path, clock) -> None:
    with TaskStore(tmp_path / "deferred.sqlite", clock=clock) as store:
        later = clock() + timedelta(hours=2)
        deferred_id = store.enqueue(
            TaskCreate(subject="later", scheduled_for=later.isoformat()),
        )
        now_id = store.enqueue(TaskCreate(subject="now", priority=9))

        assert [task.id for task in store.list_pending()] == [now_id]

        clock.advance(hours=2)
        pending = store.list_pending()

    assert [task.id for task in pending] == [deferred_id, now_id]
    assert pending[0].subject == "later"
    assert pending[0].status == TaskStatus.PENDING
    assert pending[0].scheduled_for == later


def test_scheduled_for_accepts_naive_and_zulu_forms(store: TaskStore) -> None:
    naive_id = store.enqueue(
        TaskCreate(subject="naive", scheduled_for=datetime(2000, 1, 1, 8, 30)),
    )
    zulu_id = store.enqueue(TaskCreate(subject="zulu", scheduled_for="2000-01-01T08:30:00Z"))

    naive = store.get_by_id(naive_id)
    zulu = store.get_by_id(zulu_id)
    assert naive is not None
    assert zulu is not None
    assert naive.scheduled_for == datetime(2000, 1, 1, 8, 30, tzinfo=UTC)
    assert zulu.scheduled_for == naive.scheduled_for


def test_exists_for_source_allows_refire_after_terminal_state(store: TaskStore) -> None:
    task_id = store.enqueue(TaskCreate(subject="alert", source="sensor:test"))

    assert store.exists_for_source("sensor:test", active_only=True) is True
    assert store.exists_for_source("sensor:test") is True

    assert store.mark_active(task_id) is True
    assert store.exists_for_source("sensor:test", active_only=True) is True

    store.mark_completed(task_id, "done")
    assert store.exists_for_source("sensor:test", active_only=True) is False
    assert store.exists_for_source("sensor:test") is True
    assert store.exists_for_source("sensor:other") is False


def test_mark_active_only_moves_pending_tasks(store: TaskStore) -> None:
    task_id = store.enqueue(TaskCreate(subject="once"))

    assert store.mark_active(task_id) is True
    assert store.mark_active(task_id) is False

    task = store.get_by_id(task_id)
    assert task is not None
    assert task.status == TaskStatus.ACTIVE
    assert task.attempt_count == 1
    assert task.started_at is not None
    assert [active.id for active in store.list_active()] == [task_id]


def test_requeue_clears_started_at_and_keeps_attempts(store: TaskStore) -> None:
    task_id = store.enqueue(TaskCreate(subject="flaky"))
    store.mark_active(task_id)

    assert store.requeue(task_id) is True

    task = store.get_by_id(task_id)
    assert task is not None
    assert task.status == TaskStatus.PENDING
    assert task.started_at is None
    assert task.attempt_count == 1
    assert store.requeue(task_id) is False


def test_terminal_marks_record_summary_and_completion_time(store: TaskStore) -> None:
    completed_id = store.enqueue(TaskCreate(subject="ok"))
    failed_id = store.enqueue(TaskCreate(subject="bad"))
    blocked_id = store.enqueue(TaskCreate(subject="wait"))
    for task_id in (completed_id, failed_id, blocked_id):
        store.mark_active(task_id)

    assert store.mark_completed(completed_id, "all good", "full transcript") is True
    assert store.mark_failed(failed_id, "broke") is True
    assert store.mark_blocked(blocked_id, "needs input") is True
    assert store.mark_completed(9999, "missing") is False

    completed = store.get_by_id(completed_id)
    failed = store.get_by_id(failed_id)
    blocked = store.get_by_id(blocked_id)
    assert completed is not None and failed is not None and blocked is not None
    assert completed.status == TaskStatus.COMPLETED
    assert completed.result_summary == "all good"
    assert completed.result_detail == "full transcript"
    assert completed.completed_at is not None
    assert failed.status == TaskStatus.FAILED
    assert failed.completed_at is not None
    assert blocked.status == TaskStatus.BLOCKED
    assert blocked.result_summary == "needs input"
    assert blocked.completed_at is None


def test_closing_requires_an_active_or_blocked_task(store: TaskStore) -> None:
    pending_id = store.enqueue(TaskCreate(subject="not started"))
    done_id = store.enqueue(TaskCreate(subject="finished"))
    parked_id = store.enqueue(TaskCreate(subject="parked"))
    for task_id in (done_id, parked_id):
        store.mark_active(task_id)
    store.mark_completed(done_id, "all good")
    store.mark_blocked(parked_id, "needs input")

    assert store.mark_completed(pending_id, "skipped the queue") is False
    assert store.mark_failed(done_id, "late failure") is False
    assert store.mark_blocked(done_id, "too late") is False
    assert store.mark_completed(parked_id, "human finished it") is True

    pending = store.get_by_id(pending_id)
    done = store.get_by_id(done_id)
    parked = store.get_by_id(parked_id)
    assert pending is not None and done is not None and parked is not None
    assert pending.status == TaskStatus.PENDING
    assert pending.result_summary is None
    assert done.status == TaskStatus.COMPLETED
    assert done.result_summary == "all good"
    assert parked.status == TaskStatus.COMPLETED
    assert parked.completed_at is not None


def test_update_cost_and_spend_since(store: TaskStore) -> None:
    first = store.enqueue(TaskCreate(subject="one"))
    second = store.enqueue(TaskCreate(subject="two"))
    store.update_cost(first, cost_usd=1.5, api_cost_usd=1.25, tokens_in=100, tokens_out=20)
    store.update_cost(second, cost_usd=0.5, api_cost_usd=0.75, tokens_in=10, tokens_out=2)

    task = store.get_by_id(first)
    assert task is not None
    assert task.cost_usd == pytest.approx(1.5)
    assert task.tokens_in == 100

    spend = store.spend_since(datetime.now(tz=UTC) - timedelta(hours=1))
    assert spend.cost_usd == pytest.approx(2.0)
    assert spend.api_cost_usd == pytest.approx(2.0)
    assert spend.tokens_in == 110
    assert spend.task_count == 2

    assert store.spend_since(datetime.now(tz=UTC) + timedelta(hours=1)).task_count == 0


def test_cycle_log_append_update_and_recent_order(store: TaskStore) -> None:
    task_id = store.enqueue(TaskCreate(subject="cycled", skills=("research", "write")))
    start = datetime(2026, 10, 18, 9, 0, tzinfo=UTC)
    first = store.append_cycle_log(CycleLogCreate(started_at=start, task_id=task_id))
    second = store.append_cycle_log(
        CycleLogCreate(
            started_at=start + timedelta(minutes=5),
            task_id=task_id,
            skills_loaded=("research", "write"),
        ),
    )

    store.update_cycle_log(
        second,
        CycleLogUpdate(
            completed_at=start + timedelta(minutes=6),
            duration_ms=60_000,
            cost_usd=0.25,
            tokens_in=1000,
        ),
    )
    store.update_cycle_log(first, CycleLogUpdate())

    cycles = store.list_recent_cycles()
    assert [cycle.id for cycle in cycles] == [second, first]
    assert cycles[0].duration_ms == 60_000
    assert cycles[0].cost_usd == pytest.approx(0.25)
    assert cycles[0].tokens_in == 1000
    assert cycles[0].tokens_out == 0
    assert cycles[0].skills_loaded == ("research", "write")
    assert cycles[1].completed_at is None
    assert len(store.list_recent_cycles(limit=1)) == 1


def test_list_tasks_defaults_to_open_tasks(store: TaskStore) -> None:
    open_id = store.enqueue(TaskCreate(subject="open", priority=2))
    done_id = store.enqueue(TaskCreate(subject="done", priority=1))
    store.mark_active(done_id)
    store.mark_completed(done_id, "ok")

    assert [task.id for task in store.list_tasks()] == [open_id]
    assert [task.id for task in store.list_tasks(status=TaskStatus.COMPLETED)] == [done_id]
    counts = store.count_by_status()
    assert counts[TaskStatus.PENDING] == 1
    assert counts[TaskStatus.COMPLETED] == 1
    assert counts[TaskStatus.FAILED] == 0


def test_parent_must_reference_existing_task(store: TaskStore) -> None:
    parent_id = store.enqueue(TaskCreate(subject="parent"))
    child_id = store.enqueue(TaskCreate(subject="child", parent_id=parent_id))

    child = store.get_by_id(child_id)
    assert child is not None
    assert child.parent_id == parent_id

    with pytest.raises(IntegrityError):
        store.enqueue(TaskCreate(subject="orphan", parent_id=4242))


def test_get_by_id_miss_returns_none(store: TaskStore) -> None:
    assert store.get_by_id(12345) is None


def test_operations_before_open_raise(tmp_path: Path) -> None:
    unopened = TaskStore(tmp_path / "closed.sqlite")

    with pytest.raises(StoreNotOpenError):
        unopened.list_pending()
    with pytest.raises(StoreNotOpenError):
        unopened.enqueue(TaskCreate(subject="nope"))


def test_store_is_closed_after_context_exit(tmp_path: Path) -> None:
    with TaskStore(tmp_path / "ctx.sqlite") as store:
        store.enqueue(TaskCreate(subject="inside"))
        assert store.is_open is True

    assert store.is_open is False
    with pytest.raises(StoreNotOpenError):
        store.get_by_id(1)


def test_second_store_sees_writes_from_first(tmp_path: Path) -> None:
    db_path = tmp_path / "shared.sqlite"
    with TaskStore(db_path) as writer, TaskStore(db_path) as reader:
        task_id = writer.enqueue(TaskCreate(subject="shared"))
        task = reader.get_by_id(task_id)

    assert task is not None
    assert task.subject == "shared"
