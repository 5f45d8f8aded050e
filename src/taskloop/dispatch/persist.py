"""Commit workspace changes produced by a dispatch cycle."""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from sqlalchemy.exc import SQLAlchemyError

from taskloop.tasks.models import TaskCreate
from taskloop.tasks.repository import TaskStore

logger = logging.getLogger(__name__)

DEFAULT_COMMIT_DIRS: tuple[str, ...] = ("memory", "skills", "src", "templates")


class CommitOutcome(str, Enum):
    DISABLED = "disabled"
    NOTHING_STAGED = "nothing_staged"
    COMMITTED = "committed"
    SYNTAX_REJECTED = "syntax_rejected"
    FAILED = "failed"


@dataclass(slots=True)
class _GitResult:
    exit_code: int
    stdout: str
    stderr: str


class CycleCommitter:
    """Stage the configured directories, syntax-check Python files and commit.

    Never raises: git and store problems are logged and reported as
    ``CommitOutcome.FAILED``.
    """

    def __init__(
        self,
        *,
        store: TaskStore,
        root_dir: Path,
        commit_dirs: tuple[str, ...] = DEFAULT_COMMIT_DIRS,
    ) -> None:
        self.store = store
        self.root_dir = root_dir
        self.commit_dirs = commit_dirs

    def commit_cycle(self, task_id: int) -> CommitOutcome:
        try:
            return self._commit_cycle(task_id)
        except (OSError, subprocess.SubprocessError, SQLAlchemyError) as error:
            logger.error("Auto-commit after task #%d failed: %s", task_id, error)
            return CommitOutcome.FAILED

    def _commit_cycle(self, task_id: int) -> CommitOutcome:
        for directory in self.commit_dirs:
            if (self.root_dir / directory).exists():
                added = self._git("add", "--", directory)
                if added.exit_code != 0:
                    logger.error("git add %s failed: %s", directory, added.stderr.strip())
                    return CommitOutcome.FAILED

        if self._git("diff", "--cached", "--quiet").exit_code == 0:
            return CommitOutcome.NOTHING_STAGED

        staged = [
            line
            for line in self._git("diff", "--cached", "--name-only").stdout.splitlines()
            if line.strip()
        ]
        errors = self._syntax_errors([path for path in staged if path.endswith(".py")])
        if errors:
            logger.warning("Syntax check failed for %d staged file(s)", len(errors))
            for error in errors:
                logger.warning("  %s", error)
            self._git("reset", "HEAD")
            self.store.enqueue(
                TaskCreate(
                    subject=f"Fix syntax errors from task #{task_id}",
                    description="Syntax check failed after dispatch:\n" + "\n".join(errors),
                    priority=2,
                    source=f"task:{task_id}",
                    parent_id=task_id,
                ),
            )
            return CommitOutcome.SYNTAX_REJECTED

        message = f"chore(loop): auto-commit after dispatch cycle [{len(staged)} file(s)]"
        committed = self._git("commit", "-m", message)
        if committed.exit_code != 0:
            logger.error("Auto-commit failed: %s", committed.stderr.strip())
            return CommitOutcome.FAILED
        logger.info("Auto-committed %d file(s) after task #%d", len(staged), task_id)
        return CommitOutcome.COMMITTED

    def _syntax_errors(self, paths: list[str]) -> list[str]:
        errors: list[str] = []
        for relative in paths:
            path = self.root_dir / relative
            if not path.is_file():
                continue
            try:
                compile(path.read_bytes(), str(relative), "exec")
            except SyntaxError as error:
                errors.append(f"{relative}:{error.lineno}: {error.msg}")
            except ValueError as error:
                errors.append(f"{relative}: {error}")
        return errors

    def _git(self, *args: str) -> _GitResult:
        completed = subprocess.run(  # noqa: S603
            ["git", *args],  # noqa: S607
            cwd=self.root_dir,
            capture_output=True,
            text=True,
            check=False,
        )
        return _GitResult(
            exit_code=completed.returncode,
            stdout=completed.stdout,
            stderr=completed.stderr,
        )
