"""Persistent task store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import asdict, is_dataclass
from datetime import datetime, timedelta
from pathlib import Path

from sqlalchemy import and_, func, or_
from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from media_relay.queue.models import TaskStatus, TaskView
from media_relay.storage.alembic_runner import upgrade_head
from media_relay.storage.common import (
    DEFAULT_BUSY_TIMEOUT_MS,
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from media_relay.storage.sqlmodel_models import QueueTask

logger = logging.getLogger(__name__)

DEFAULT_STUCK_THRESHOLD = timedelta(minutes=30)
ERROR_SUMMARY_MAX_CHARS = 2_000


class StoreError(RuntimeError):
    """Datastore read/write or payload serialization failure."""


class TaskStore:
    """Durable bookkeeping of task lifecycle.

    Every state transition is one conditional UPDATE keyed by task id and the
    expected source status, committed in its own session. A transition that
    lost a race returns False instead of overwriting the winner.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        clock: Callable[[], datetime] = utc_now,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
    ) -> None:
        self.db_path = db_path
        self._clock = clock
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def __enter__(self) -> TaskStore:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        with self._store_errors("migrate schema"):
            upgrade_head(self.db_path)

    # -- producer ----------------------------------------------------------

    def enqueue(
        self,
        task_type: str,
        payload: object,
        max_attempts: int = 3,
        *,
        dedup_key: str | None = None,
    ) -> int:
        """Persist a new pending task and return its id.

        ``dedup_key`` identifies the work item across deliveries; see
        ``find_duplicate``.
        """

        if not task_type or not task_type.strip():
            raise ValueError("task_type is required")
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")

        raw = _serialize_payload(payload)
        now = self._now()
        with self._store_errors("enqueue task"), Session(self.engine) as session:
            row = QueueTask(
                task_type=task_type.strip(),
                payload=raw,
                dedup_key=dedup_key,
                status=TaskStatus.PENDING.value,
                attempts=0,
                max_attempts=max_attempts,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            if row.id is None:
                raise StoreError("SQLite did not return an id for the inserted task")
            task_id = int(row.id)

        logger.debug(
            "Task enqueued id=%s type=%s max_attempts=%s",
            task_id,
            task_type,
            max_attempts,
        )
        return task_id

    # -- claim -------------------------------------------------------------

    def claim_next(self) -> TaskView | None:
        """Return the oldest eligible task without changing its state."""

        with self._store_errors("read next task"), Session(self.engine) as session:
            row = session.exec(_eligible_query().limit(1)).one_or_none()
            return _to_task_view(row) if row is not None else None

    def mark_processing(self, task_id: int) -> bool:
        """Move an eligible task to processing and count the attempt."""

        now = self._now()
        action = f"mark task {task_id} processing"
        with self._store_errors(action), Session(self.engine) as session:
            result = session.exec(
                sa_update(QueueTask)
                .where(col(QueueTask.id) == task_id, _eligible_clause())
                .values(
                    status=TaskStatus.PROCESSING.value,
                    attempts=col(QueueTask.attempts) + 1,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def claim_ready(self, limit: int = 1) -> list[TaskView]:
        """Atomically claim up to ``limit`` eligible tasks, oldest first."""

        claimed: list[TaskView] = []
        with self._store_errors("claim tasks"):
            while len(claimed) < limit:
                task = self._claim_one()
                if task is None:
                    break
                claimed.append(task)
        return claimed

    def _claim_one(self) -> TaskView | None:
        while True:
            now = self._now()
            with Session(self.engine) as session:
                candidate = session.exec(_eligible_query().limit(1)).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(QueueTask)
                    .where(
                        col(QueueTask.id) == candidate.id,
                        col(QueueTask.status) == candidate.status,
                        col(QueueTask.attempts) == candidate.attempts,
                    )
                    .values(
                        status=TaskStatus.PROCESSING.value,
                        attempts=candidate.attempts + 1,
                        updated_at=now,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                session.commit()
                claimed = session.exec(
                    select(QueueTask).where(QueueTask.id == candidate.id),
                ).one()
                return _to_task_view(claimed)

    # -- outcome -----------------------------------------------------------

    def mark_completed(self, task_id: int) -> bool:
        """Mark a processing task as completed and stamp processed_at."""

        now = self._now()
        with self._store_errors(f"mark task {task_id} completed"), Session(self.engine) as session:
            result = session.exec(
                sa_update(QueueTask)
                .where(
                    col(QueueTask.id) == task_id,
                    col(QueueTask.status) == TaskStatus.PROCESSING.value,
                )
                .values(
                    status=TaskStatus.COMPLETED.value,
                    processed_at=now,
                    last_error=None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def mark_failed(
        self,
        task_id: int,
        *,
        error: str | None = None,
        retryable: bool = True,
    ) -> bool:
        """Mark a processing task as failed.

        A retryable failure stays eligible for claim while attempts remain.
        A non-retryable one is made terminal by lowering max_attempts to the
        attempts already spent.
        """

        now = self._now()
        values: dict[str, object] = {
            "status": TaskStatus.FAILED.value,
            "last_error": _truncate(error),
            "updated_at": now,
        }
        if not retryable:
            values["max_attempts"] = col(QueueTask.attempts)

        with self._store_errors(f"mark task {task_id} failed"), Session(self.engine) as session:
            result = session.exec(
                sa_update(QueueTask)
                .where(
                    col(QueueTask.id) == task_id,
                    col(QueueTask.status) == TaskStatus.PROCESSING.value,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def release_claim(self, task_id: int) -> bool:
        """Hand a claimed but never started task back to the queue.

        The attempt counted by the claim is returned too.
        """

        now = self._now()
        action = f"release task {task_id}"
        with self._store_errors(action), Session(self.engine) as session:
            result = session.exec(
                sa_update(QueueTask)
                .where(
                    col(QueueTask.id) == task_id,
                    col(QueueTask.status) == TaskStatus.PROCESSING.value,
                    col(QueueTask.attempts) > 0,
                )
                .values(
                    status=TaskStatus.PENDING.value,
                    attempts=col(QueueTask.attempts) - 1,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    # -- maintenance -------------------------------------------------------

    def recover_stuck(self, threshold: timedelta = DEFAULT_STUCK_THRESHOLD) -> int:
        """Reset processing tasks not updated within ``threshold`` back to pending."""

        now = self._now()
        cutoff = now - threshold
        with self._store_errors("recover stuck tasks"), Session(self.engine) as session:
            result = session.exec(
                sa_update(QueueTask)
                .where(
                    col(QueueTask.status) == TaskStatus.PROCESSING.value,
                    col(QueueTask.updated_at) < cutoff,
                )
                .values(status=TaskStatus.PENDING.value, updated_at=now),
            )
            session.commit()
            recovered = int(result.rowcount or 0)

        if recovered:
            logger.warning("Recovered %d stuck task(s) older than %s", recovered, threshold)
        return recovered

    def cleanup(self, retention_days: int) -> int:
        """Delete completed tasks processed more than ``retention_days`` ago."""

        if retention_days < 0:
            raise ValueError(f"retention_days must be >= 0, got {retention_days}")

        cutoff = self._now() - timedelta(days=retention_days)
        with self._store_errors("clean up completed tasks"), Session(self.engine) as session:
            result = session.exec(
                sa_delete(QueueTask).where(
                    col(QueueTask.status) == TaskStatus.COMPLETED.value,
                    col(QueueTask.processed_at) <= cutoff,
                ),
            )
            session.commit()
            deleted = int(result.rowcount or 0)

        if deleted:
            logger.info(
                "Cleaned up %d completed task(s) older than %d day(s)",
                deleted,
                retention_days,
            )
        return deleted

    # -- inspection --------------------------------------------------------

    def get_task(self, task_id: int) -> TaskView | None:
        with self._store_errors(f"read task {task_id}"), Session(self.engine) as session:
            row = session.exec(select(QueueTask).where(QueueTask.id == task_id)).one_or_none()
            return _to_task_view(row) if row is not None else None

    def list_tasks(self, *, status: TaskStatus | None = None, limit: int = 50) -> list[TaskView]:
        """List recent tasks, newest first, optionally filtered by status."""

        statement = select(QueueTask).order_by(
            col(QueueTask.created_at).desc(),
            col(QueueTask.id).desc(),
        )
        if status is not None:
            statement = statement.where(QueueTask.status == status.value)
        with self._store_errors("list tasks"), Session(self.engine) as session:
            rows = session.exec(statement.limit(limit)).all()
        return [_to_task_view(row) for row in rows]

    def find_duplicate(self, task_type: str, dedup_key: str) -> TaskView | None:
        """Return a completed or still-live task for the same work item.

        Terminal failures do not count, so a work item that exhausted its
        attempts can be queued again.
        """

        statement = (
            select(QueueTask)
            .where(
                col(QueueTask.task_type) == task_type,
                col(QueueTask.dedup_key) == dedup_key,
                or_(
                    col(QueueTask.status).in_(
                        (
                            TaskStatus.PENDING.value,
                            TaskStatus.PROCESSING.value,
                            TaskStatus.COMPLETED.value,
                        ),
                    ),
                    _eligible_clause(),
                ),
            )
            .order_by(col(QueueTask.id).desc())
            .limit(1)
        )
        with self._store_errors("find duplicate task"), Session(self.engine) as session:
            row = session.exec(statement).one_or_none()
            return _to_task_view(row) if row is not None else None

    def count_by_status(self) -> dict[TaskStatus, int]:
        counts = {status: 0 for status in TaskStatus}
        with self._store_errors("count tasks"), Session(self.engine) as session:
            rows = session.exec(
                select(QueueTask.status, func.count(col(QueueTask.id))).group_by(
                    QueueTask.status,
                ),
            ).all()
        for status, count in rows:
            counts[TaskStatus(status)] = int(count)
        return counts

    # -- helpers -----------------------------------------------------------

    def _now(self) -> datetime:
        return to_db_datetime(self._clock())

    @contextmanager
    def _store_errors(self, action: str) -> Iterator[None]:
        try:
            yield
        except SQLAlchemyError as error:
            raise StoreError(f"Failed to {action}: {error}") from error


def _eligible_clause():  # noqa: ANN202
    return or_(
        col(QueueTask.status) == TaskStatus.PENDING.value,
        and_(
            col(QueueTask.status) == TaskStatus.FAILED.value,
            col(QueueTask.attempts) < col(QueueTask.max_attempts),
        ),
    )


def _eligible_query():  # noqa: ANN202
    return (
        select(QueueTask)
        .where(_eligible_clause())
        .order_by(col(QueueTask.created_at).asc(), col(QueueTask.id).asc())
    )


def _serialize_payload(payload: object) -> bytes:
    if isinstance(payload, (bytes, bytearray, memoryview)):
        return bytes(payload)
    if isinstance(payload, str):
        return payload.encode("utf-8")
    if is_dataclass(payload) and not isinstance(payload, type):
        payload = asdict(payload)
    try:
        return json.dumps(payload, ensure_ascii=False, sort_keys=True).encode("utf-8")
    except (TypeError, ValueError) as error:
        raise StoreError(f"Failed to serialize payload: {error}") from error


def _truncate(value: str | None) -> str | None:
    if value is None:
        return None
    if len(value) <= ERROR_SUMMARY_MAX_CHARS:
        return value
    return value[: ERROR_SUMMARY_MAX_CHARS - 3] + "..."


def _to_task_view(row: QueueTask) -> TaskView:
    return TaskView(
        task_id=int(row.id or 0),
        task_type=row.task_type,
        payload=bytes(row.payload),
        status=TaskStatus(row.status),
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        last_error=row.last_error,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        processed_at=(
            to_utc_aware_datetime(row.processed_at) if row.processed_at is not None else None
        ),
        dedup_key=row.dedup_key,
    )
