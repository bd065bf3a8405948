"""Durable task queue: SQLite store, bounded worker pool and dispatcher.

The store is polled rather than pushed to, so a crash never loses work:
anything claimed but never finished is reset to pending by stuck-task
recovery on the next start. Handlers therefore see at-least-once delivery
and must be idempotent.
"""

from media_relay.queue.dispatcher import DispatchSummary, QueueDispatcher
from media_relay.queue.models import TaskExecution, TaskStatus, TaskView
from media_relay.queue.pool import PoolShutdownError, PoolStats, WorkerPool
from media_relay.queue.registry import (
    Handler,
    HandlerError,
    HandlerNotFoundError,
    HandlerRegistry,
)
from media_relay.queue.store import StoreError, TaskStore

__all__ = [
    "DispatchSummary",
    "Handler",
    "HandlerError",
    "HandlerNotFoundError",
    "HandlerRegistry",
    "PoolShutdownError",
    "PoolStats",
    "QueueDispatcher",
    "StoreError",
    "TaskExecution",
    "TaskStatus",
    "TaskStore",
    "TaskView",
    "WorkerPool",
]
