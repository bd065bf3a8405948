"""Fixed-size thread pool consuming a bounded in-memory job queue."""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE = 100

Job = Callable[[], bool | None]

_STOP = object()


class PoolShutdownError(RuntimeError):
    """Job submitted to a pool that is not running."""


@dataclass(slots=True)
class PoolStats:
    """Point-in-time pool counters for observability."""

    max_workers: int
    active_workers: int
    peak_active_workers: int
    jobs_succeeded: int
    jobs_failed: int
    queued: int


class WorkerPool:
    """Bounded set of worker threads sharing one job buffer.

    ``submit`` blocks while the buffer is full, which is the pool's only
    backpressure. ``stop`` refuses new work and returns after every buffered
    and in-flight job has run. Jobs are never retried here; a job that raises
    anything, ``SystemExit`` included, or returns ``False`` is logged and
    counted as failed, and the worker keeps going.
    """

    def __init__(
        self,
        max_workers: int,
        *,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        name: str = "pool",
    ) -> None:
        if max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {max_workers}")
        if buffer_size < 1:
            raise ValueError(f"buffer_size must be >= 1, got {buffer_size}")
        self.max_workers = max_workers
        self.name = name
        self._jobs: queue.Queue[object] = queue.Queue(maxsize=buffer_size)
        self._threads: list[threading.Thread] = []
        self._lifecycle_lock = threading.Lock()
        self._started = False
        self._closed = False
        self._counter_lock = threading.Lock()
        self._active = 0
        self._peak_active = 0
        self._succeeded = 0
        self._failed = 0

    @property
    def running(self) -> bool:
        return self._started and not self._closed

    @property
    def active_workers(self) -> int:
        with self._counter_lock:
            return self._active

    def stats(self) -> PoolStats:
        with self._counter_lock:
            return PoolStats(
                max_workers=self.max_workers,
                active_workers=self._active,
                peak_active_workers=self._peak_active,
                jobs_succeeded=self._succeeded,
                jobs_failed=self._failed,
                queued=self._jobs.qsize(),
            )

    def start(self) -> None:
        with self._lifecycle_lock:
            if self._started:
                raise RuntimeError(f"Worker pool {self.name!r} already started")
            self._started = True

        logger.info("Starting worker pool %s with %d workers", self.name, self.max_workers)
        for worker_id in range(self.max_workers):
            thread = threading.Thread(
                target=self._worker_loop,
                args=(worker_id,),
                name=f"{self.name}-worker-{worker_id}",
                daemon=True,
            )
            self._threads.append(thread)
            thread.start()

    def submit(self, job: Job) -> None:
        """Queue a job, blocking while the buffer is full."""

        with self._lifecycle_lock:
            if not self._started:
                raise PoolShutdownError(f"Worker pool {self.name!r} is not started")
            if self._closed:
                raise PoolShutdownError(f"Worker pool {self.name!r} is stopped")
            self._jobs.put(job)

    def wait_idle(self) -> None:
        """Block until every job submitted so far has finished."""

        self._jobs.join()

    def stop(self) -> None:
        """Close the pool and drain buffered and in-flight jobs."""

        with self._lifecycle_lock:
            if not self._started or self._closed:
                return
            self._closed = True

        for _ in self._threads:
            self._jobs.put(_STOP)
        for thread in self._threads:
            thread.join()

        stats = self.stats()
        logger.info(
            "Worker pool %s stopped: succeeded=%d failed=%d",
            self.name,
            stats.jobs_succeeded,
            stats.jobs_failed,
        )

    def _worker_loop(self, worker_id: int) -> None:
        logger.debug("Worker %s-%d started", self.name, worker_id)
        while True:
            job = self._jobs.get()
            try:
                if job is _STOP:
                    break
                self._run_job(worker_id, job)  # type: ignore[arg-type]
            finally:
                self._jobs.task_done()
        logger.debug("Worker %s-%d stopped", self.name, worker_id)

    def _run_job(self, worker_id: int, job: Job) -> None:
        with self._counter_lock:
            self._active += 1
            self._peak_active = max(self._peak_active, self._active)
            active = self._active
        logger.debug(
            "Worker %s-%d: job started (active %d/%d)",
            self.name,
            worker_id,
            active,
            self.max_workers,
        )

        ok = False
        try:
            ok = job() is not False
        except BaseException:  # noqa: BLE001
            logger.exception("Worker %s-%d: job raised", self.name, worker_id)
        finally:
            with self._counter_lock:
                self._active -= 1
                if ok:
                    self._succeeded += 1
                else:
                    self._failed += 1

        if ok:
            logger.debug("Worker %s-%d: job succeeded", self.name, worker_id)
        else:
            logger.warning("Worker %s-%d: job failed", self.name, worker_id)
