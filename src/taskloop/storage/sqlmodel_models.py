"""SQLModel ORM tables for the task store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Text
from sqlmodel import Field, SQLModel


class TaskRecord(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_tasks_dispatch", "status", "priority", "id"),
        Index("idx_tasks_source_status", "source", "status"),
        {"sqlite_autoincrement": True},
    )

    id: int | None = Field(default=None, primary_key=True)
    subject: str
    description: str | None = Field(default=None, sa_column=Column(Text))
    skills: str | None = None
    priority: int = Field(default=5)
    status: str = Field(default="pending")
    source: str | None = None
    parent_id: int | None = Field(
        default=None,
        sa_column=Column(Integer, ForeignKey("tasks.id"), nullable=True),
    )
    scheduled_for: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    result_summary: str | None = Field(default=None, sa_column=Column(Text))
    result_detail: str | None = Field(default=None, sa_column=Column(Text))
    cost_usd: float = 0.0
    api_cost_usd: float = 0.0
    tokens_in: int = 0
    tokens_out: int = 0
    attempt_count: int = 0
    max_retries: int = 3


class CycleLogRecord(SQLModel, table=True):
    __tablename__ = "cycle_log"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_cycle_log_started", "started_at"),
        {"sqlite_autoincrement": True},
    )

    id: int | None = Field(default=None, primary_key=True)
    task_id: int | None = Field(
        default=None,
        sa_column=Column(Integer, ForeignKey("tasks.id"), nullable=True),
    )
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    duration_ms: int | None = None
    cost_usd: float = 0.0
    api_cost_usd: float = 0.0
    tokens_in: int = 0
    tokens_out: int = 0
    skills_loaded: str | None = None


class SensorLeaseRecord(SQLModel, table=True):
    __tablename__ = "sensor_leases"  # type: ignore[bad-override]

    name: str = Field(primary_key=True)
    last_ran: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    last_result: str
    version: int = 0
    consecutive_failures: int = 0
