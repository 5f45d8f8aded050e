"""Prompt assembly for one dispatch cycle."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from taskloop.storage.common import utc_now
from taskloop.tasks.models import CycleLogView, TaskView
from taskloop.tasks.repository import TaskStore

logger = logging.getLogger(__name__)

_TRUNCATION_MARKER = "\n[... truncated ...]"


class ContextBuilder:
    """Build the worker prompt from workspace documents, history and the task itself."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: TaskStore,
        root_dir: Path,
        recent_cycles: int = 10,
        ancestor_depth: int = 10,
        doc_max_chars: int = 20_000,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.root_dir = root_dir
        self.recent_cycles = recent_cycles
        self.ancestor_depth = ancestor_depth
        self.doc_max_chars = doc_max_chars
        self._clock = clock

    def build(self, task: TaskView) -> str:
        now = self._clock()
        parts: list[str] = ["# Current Time", now.strftime("%Y-%m-%d %H:%M:%S UTC"), ""]

        sections = (
            ("# Identity", self._read_doc(self.root_dir / "SOUL.md")),
            ("# Memory", self._read_doc(self.root_dir / "memory" / "MEMORY.md")),
            ("# Recent Cycles", self._recent_cycles_text()),
        )
        for heading, content in sections:
            if content:
                parts.extend([heading, content, ""])

        for name in task.skills:
            content = self._read_doc(self.root_dir / "skills" / name / "SKILL.md")
            if content:
                parts.extend([f"# Skill: {name}", content, ""])

        task_lines = [
            "# Task to Execute",
            f"Subject: {task.subject}",
            f"Description: {task.description or '(none)'}",
            f"Priority: {task.priority}",
            f"Source: {task.source or '(none)'}",
            f"Task ID: {task.id}",
        ]
        chain = self.ancestor_chain(task)
        if chain:
            task_lines.append("Parent chain:")
            task_lines.extend(
                f"  #{parent.id}: {parent.subject} ({parent.status.value})" for parent in chain
            )
        parts.extend(["\n".join(task_lines), ""])

        parts.extend(
            [
                "# Instructions",
                "Use the `taskloop` CLI for all task changes:",
                f'- Close this task: taskloop tasks close {task.id} completed|failed "summary"',
                f'- Park this task: taskloop tasks close {task.id} blocked "reason"',
                "- Create follow-up: "
                f'taskloop tasks add "subject" --skills s1,s2 --parent {task.id}',
                "- Update memory: edit memory/MEMORY.md directly",
                "Do NOT use raw SQL, direct DB writes, or ad-hoc scripts.",
            ],
        )
        return "\n".join(parts)

    def ancestor_chain(self, task: TaskView) -> list[TaskView]:
        """Parents nearest first, capped at ``ancestor_depth``."""

        chain: list[TaskView] = []
        seen = {task.id}
        parent_id = task.parent_id
        while parent_id is not None and len(chain) < self.ancestor_depth:
            if parent_id in seen:
                logger.warning("Parent cycle detected at task #%d", parent_id)
                break
            parent = self.store.get_by_id(parent_id)
            if parent is None:
                break
            chain.append(parent)
            seen.add(parent.id)
            parent_id = parent.parent_id
        return chain

    def _recent_cycles_text(self) -> str:
        cycles = self.store.list_recent_cycles(limit=self.recent_cycles)
        return "\n".join(_format_cycle(cycle) for cycle in cycles)

    def _read_doc(self, path: Path) -> str:
        try:
            content = path.read_text("utf-8")
        except FileNotFoundError:
            return ""
        except OSError as error:
            logger.warning("Cannot read context document %s: %s", path, error)
            return ""
        return truncate(content.strip(), self.doc_max_chars)


def truncate(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + _TRUNCATION_MARKER


def _format_cycle(cycle: CycleLogView) -> str:
    task = cycle.task_id if cycle.task_id is not None else "none"
    duration = cycle.duration_ms if cycle.duration_ms is not None else "?"
    return (
        f"{cycle.started_at:%Y-%m-%d %H:%M:%S} task={task} "
        f"duration={duration}ms cost=${cycle.cost_usd:.6f}"
    )
