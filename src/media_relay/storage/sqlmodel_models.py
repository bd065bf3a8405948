"""SQLModel ORM tables for the task queue."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, LargeBinary, Text
from sqlmodel import Field, SQLModel


class QueueTask(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_tasks_claim", "status", "created_at"),
        Index("idx_tasks_status_updated", "status", "updated_at"),
        Index("idx_tasks_dedup", "task_type", "dedup_key"),
    )

    id: int | None = Field(default=None, primary_key=True)
    task_type: str = Field(index=True)
    payload: bytes = Field(sa_column=Column(LargeBinary, nullable=False))
    dedup_key: str | None = Field(default=None)
    status: str = Field(index=True)
    attempts: int = Field(default=0)
    max_attempts: int = Field(default=3)
    last_error: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    processed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
