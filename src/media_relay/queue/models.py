"""Domain models for the durable task queue."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(slots=True)
class TaskView:
    """Readable task view for CLI and dispatcher logic."""

    task_id: int
    task_type: str
    payload: bytes
    status: TaskStatus
    attempts: int
    max_attempts: int
    last_error: str | None
    created_at: datetime
    updated_at: datetime
    processed_at: datetime | None
    dedup_key: str | None = None

    @property
    def is_terminal(self) -> bool:
        if self.status == TaskStatus.COMPLETED:
            return True
        return self.status == TaskStatus.FAILED and self.attempts >= self.max_attempts

    def payload_json(self) -> Any:
        """Decode the payload as JSON; raises ValueError for non-JSON payloads."""

        return json.loads(self.payload.decode("utf-8"))


@dataclass(frozen=True, slots=True)
class TaskExecution:
    """Immutable snapshot of one claimed task handed to a pool job."""

    task_id: int
    task_type: str
    payload: bytes
    attempt: int
    max_attempts: int

    @classmethod
    def from_view(cls, task: TaskView) -> TaskExecution:
        return cls(
            task_id=task.task_id,
            task_type=task.task_type,
            payload=task.payload,
            attempt=task.attempts,
            max_attempts=task.max_attempts,
        )

    @property
    def is_last_attempt(self) -> bool:
        return self.attempt >= self.max_attempts
