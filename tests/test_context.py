from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import allure

from taskloop.dispatch.context import ContextBuilder, truncate
from taskloop.tasks.models import CycleLogCreate, CycleLogUpdate, TaskCreate
from taskloop.tasks.repository import TaskStore

pytestmark = [
    allure.epic("Dispatch Engine"),
    allure.feature("Prompt Context"),
]


def _write(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, "utf-8")


def test_prompt_sections_follow_fixed_order(store: TaskStore, tmp_path: Path, clock) -> None:
    _write(tmp_path / "SOUL.md", "I am the loop.")
    _write(tmp_path / "memory" / "MEMORY.md", "Remember the milk.")
    _write(tmp_path / "skills" / "research" / "SKILL.md", "Search first.")
    started = datetime(2026, 10, 18, 11, 0, tzinfo=UTC)
    cycle_id = store.append_cycle_log(CycleLogCreate(started_at=started))
    store.update_cycle_log(cycle_id, CycleLogUpdate(duration_ms=1500, cost_usd=0.25))
    parent_id = store.enqueue(TaskCreate(subject="big goal"))
    task_id = store.enqueue(
        TaskCreate(
            subject="small step",
            description="do the thing",
            skills=("research", "missing-skill"),
            priority=2,
            source="human",
            parent_id=parent_id,
        ),
    )
    task = store.get_by_id(task_id)
    assert task is not None

    prompt = ContextBuilder(store=store, root_dir=tmp_path, clock=clock).build(task)

    headings = [line for line in prompt.splitlines() if line.startswith("# ")]
    assert headings == [
        "# Current Time",
        "# Identity",
        "# Memory",
        "# Recent Cycles",
        "# Skill: research",
        "# Task to Execute",
        "# Instructions",
    ]
    assert "2026-10-18 12:00:00 UTC" in prompt
    assert "2026-10-18 11:00:00 task=none duration=1500ms cost=$0.250000" in prompt
    assert "Subject: small step" in prompt
    assert "Description: do the thing" in prompt
    assert "Priority: 2" in prompt
    assert "Source: human" in prompt
    assert f"Task ID: {task_id}" in prompt
    assert f"  #{parent_id}: big goal (pending)" in prompt
    assert f"taskloop tasks close {task_id} completed|failed" in prompt
    assert f"--parent {task_id}" in prompt


def test_missing_documents_are_omitted(store: TaskStore, tmp_path: Path) -> None:
    task_id = store.enqueue(TaskCreate(subject="bare"))
    task = store.get_by_id(task_id)
    assert task is not None

    prompt = ContextBuilder(store=store, root_dir=tmp_path).build(task)

    assert "# Identity" not in prompt
    assert "# Memory" not in prompt
    assert "# Recent Cycles" not in prompt
    assert "Description: (none)" in prompt
    assert "Parent chain:" not in prompt


def test_ancestor_chain_is_capped(store: TaskStore, tmp_path: Path) -> None:
    parent_id: int | None = None
    for index in range(5):
        parent_id = store.enqueue(TaskCreate(subject=f"level {index}", parent_id=parent_id))
    assert parent_id is not None
    leaf = store.get_by_id(store.enqueue(TaskCreate(subject="leaf", parent_id=parent_id)))
    assert leaf is not None

    chain = ContextBuilder(store=store, root_dir=tmp_path, ancestor_depth=3).ancestor_chain(leaf)

    assert [task.subject for task in chain] == ["level 4", "level 3", "level 2"]


def test_large_documents_are_truncated(store: TaskStore, tmp_path: Path) -> None:
    _write(tmp_path / "SOUL.md", "x" * 50)
    task = store.get_by_id(store.enqueue(TaskCreate(subject="short")))
    assert task is not None

    prompt = ContextBuilder(store=store, root_dir=tmp_path, doc_max_chars=10).build(task)

    assert "x" * 10 + "\n[... truncated ...]" in prompt
    assert "x" * 11 not in prompt


def test_truncate_keeps_short_text() -> None:
    assert truncate("short", 10) == "short"
    assert truncate("abcdef", 3) == "abc\n[... truncated ...]"
