"""Bridge between the durable task store and the in-memory worker pool."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import timedelta
from functools import partial

from media_relay.queue.models import TaskExecution
from media_relay.queue.pool import PoolShutdownError, WorkerPool
from media_relay.queue.registry import HandlerNotFoundError, HandlerRegistry
from media_relay.queue.store import DEFAULT_STUCK_THRESHOLD, StoreError, TaskStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DispatchSummary:
    """Aggregate dispatcher counters for CLI reporting."""

    polls: int = 0
    idle_polls: int = 0
    dispatched: int = 0
    completed: int = 0
    failed: int = 0
    unhandled: int = 0
    store_errors: int = 0


class QueueDispatcher:
    """Polls the store, claims eligible tasks and runs them on the pool.

    Owns the retry policy: a handler failure marks the task failed, which
    keeps it eligible while attempts remain. A task type without a handler
    fails permanently. Only one dispatcher may poll a given store.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: TaskStore,
        pool: WorkerPool,
        registry: HandlerRegistry,
        poll_interval_seconds: float = 5.0,
        cleanup_interval_seconds: float = 3_600.0,
        stuck_after: timedelta = DEFAULT_STUCK_THRESHOLD,
        retention_days: int = 7,
        claim_batch_size: int = 1,
    ) -> None:
        if claim_batch_size < 1:
            raise ValueError(f"claim_batch_size must be >= 1, got {claim_batch_size}")
        self.store = store
        self.pool = pool
        self.registry = registry
        self.poll_interval_seconds = poll_interval_seconds
        self.cleanup_interval_seconds = cleanup_interval_seconds
        self.stuck_after = stuck_after
        self.retention_days = retention_days
        self.claim_batch_size = claim_batch_size
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        self._threads: list[threading.Thread] = []
        self._summary = DispatchSummary()
        self._summary_lock = threading.Lock()

    @property
    def running(self) -> bool:
        return bool(self._threads)

    def summary(self) -> DispatchSummary:
        with self._summary_lock:
            return replace(self._summary)

    # -- lifecycle ---------------------------------------------------------

    def start(self) -> None:
        """Recover stuck work, then start the poll and cleanup loops."""

        if self.running:
            return
        self._stop_event.clear()
        self.recover_stuck()
        if not self.pool.running:
            self.pool.start()

        for name, target in (
            ("dispatcher-poll", self._poll_loop),
            ("dispatcher-cleanup", self._cleanup_loop),
        ):
            thread = threading.Thread(target=target, name=name, daemon=True)
            self._threads.append(thread)
            thread.start()
        logger.info(
            "Queue dispatcher started: poll=%.1fs cleanup=%.0fs batch=%d handlers=%s",
            self.poll_interval_seconds,
            self.cleanup_interval_seconds,
            self.claim_batch_size,
            ",".join(self.registry.task_types()) or "-",
        )

    def stop(self) -> None:
        """Stop polling, then drain in-flight jobs so their outcomes are recorded."""

        if not self.running:
            self.pool.stop()
            return
        self._stop_event.set()
        self._wake_event.set()
        for thread in self._threads:
            thread.join()
        self._threads = []
        self.pool.stop()
        logger.info("Queue dispatcher stopped")

    def drain(self) -> DispatchSummary:
        """Process eligible tasks until none are left, without the timed loops."""

        self.recover_stuck()
        if not self.pool.running:
            self.pool.start()
        while True:
            if self.poll_once() > 0:
                continue
            self.pool.wait_idle()
            if self.store.claim_next() is None:
                break
        return self.summary()

    # -- producer ----------------------------------------------------------

    def enqueue(
        self,
        task_type: str,
        payload: object,
        max_attempts: int = 3,
        *,
        dedup_key: str | None = None,
    ) -> int:
        """Persist a task and wake the poll loop."""

        task_id = self.store.enqueue(task_type, payload, max_attempts, dedup_key=dedup_key)
        self._wake_event.set()
        return task_id

    # -- one-shot operations -----------------------------------------------

    def recover_stuck(self) -> int:
        try:
            recovered = self.store.recover_stuck(self.stuck_after)
        except StoreError as error:
            logger.error("Stuck task recovery failed: %s", error)
            return 0
        logger.info("Stuck task recovery: %d task(s) reset to pending", recovered)
        return recovered

    def poll_once(self) -> int:
        """Claim up to ``claim_batch_size`` tasks and submit them to the pool."""

        tasks = self.store.claim_ready(self.claim_batch_size)
        with self._summary_lock:
            self._summary.polls += 1
            if not tasks:
                self._summary.idle_polls += 1
            self._summary.dispatched += len(tasks)

        executions = [TaskExecution.from_view(task) for task in tasks]
        for index, execution in enumerate(executions):
            logger.info(
                "Dispatching task %d type=%s (attempt %d/%d)",
                execution.task_id,
                execution.task_type,
                execution.attempt,
                execution.max_attempts,
            )
            try:
                self.pool.submit(partial(self._execute, execution))
            except PoolShutdownError:
                self._release(executions[index:])
                raise
        return len(tasks)

    def cleanup_once(self) -> int:
        return self.store.cleanup(self.retention_days)

    # -- loops -------------------------------------------------------------

    def _poll_loop(self) -> None:
        while not self._stop_event.is_set():
            self._poll_tick()
            self._wake_event.wait(timeout=self.poll_interval_seconds)
            self._wake_event.clear()

    def _poll_tick(self) -> None:
        try:
            self.poll_once()
        except StoreError as error:
            with self._summary_lock:
                self._summary.store_errors += 1
            logger.warning("Poll tick aborted, retrying on next tick: %s", error)
        except PoolShutdownError:
            logger.warning("Worker pool closed while dispatching; undispatched tasks released")
        except Exception:
            logger.exception("Unexpected error in poll tick")

    def _cleanup_loop(self) -> None:
        while not self._stop_event.wait(timeout=self.cleanup_interval_seconds):
            try:
                self.cleanup_once()
            except StoreError as error:
                logger.warning("Cleanup of completed tasks failed: %s", error)
            except Exception:
                logger.exception("Unexpected error in cleanup loop")

    # -- job ---------------------------------------------------------------

    def _execute(self, execution: TaskExecution) -> bool:
        try:
            handler = self.registry.resolve(execution.task_type)
        except HandlerNotFoundError as error:
            logger.error("Task %d failed permanently: %s", execution.task_id, error)
            self._count("unhandled")
            self._transition(
                execution,
                "failed",
                partial(
                    self.store.mark_failed,
                    execution.task_id,
                    error=str(error),
                    retryable=False,
                ),
            )
            return False

        try:
            handler(execution.payload)
        except BaseException as error:  # noqa: BLE001
            error_summary = f"{type(error).__name__}: {error}"
            if execution.is_last_attempt:
                logger.error(
                    "Task %d failed on final attempt %d/%d: %s",
                    execution.task_id,
                    execution.attempt,
                    execution.max_attempts,
                    error_summary,
                )
            else:
                logger.warning(
                    "Task %d failed attempt %d/%d, will retry: %s",
                    execution.task_id,
                    execution.attempt,
                    execution.max_attempts,
                    error_summary,
                )
            self._count("failed")
            self._transition(
                execution,
                "failed",
                partial(self.store.mark_failed, execution.task_id, error=error_summary),
            )
            return False

        if not self._transition(
            execution,
            "completed",
            partial(self.store.mark_completed, execution.task_id),
        ):
            return False
        self._count("completed")
        logger.info("Task %d completed (type=%s)", execution.task_id, execution.task_type)
        return True

    def _transition(
        self,
        execution: TaskExecution,
        target: str,
        apply: Callable[[], bool],
    ) -> bool:
        try:
            applied = apply()
        except StoreError as error:
            logger.error(
                "Could not mark task %d %s; it stays processing until recovery: %s",
                execution.task_id,
                target,
                error,
            )
            return False
        if not applied:
            logger.warning(
                "Task %d was no longer processing; %s transition skipped",
                execution.task_id,
                target,
            )
        return applied

    def _release(self, executions: list[TaskExecution]) -> None:
        with self._summary_lock:
            self._summary.dispatched -= len(executions)
        for execution in executions:
            self._transition(
                execution,
                "released",
                partial(self.store.release_claim, execution.task_id),
            )

    def _count(self, field_name: str) -> None:
        with self._summary_lock:
            setattr(self._summary, field_name, getattr(self._summary, field_name) + 1)
