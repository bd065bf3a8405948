"""Controllers for queue CLI commands."""

from __future__ import annotations

import json
import logging
import signal
import threading
from collections.abc import Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from datetime import timedelta
from importlib import import_module
from pathlib import Path

from media_relay.config import Settings, parse_handler_spec
from media_relay.media.notify import NotifyClient, build_notify_handler
from media_relay.media.payloads import (
    NOTIFY_UPLOAD_TASK,
    UPLOAD_EPISODE_TASK,
    UPLOAD_MOVIE_TASK,
)
from media_relay.media.webhook import enqueue_download_event
from media_relay.queue.dispatcher import DispatchSummary, QueueDispatcher
from media_relay.queue.models import TaskStatus
from media_relay.queue.pool import WorkerPool
from media_relay.queue.registry import Handler, HandlerRegistry
from media_relay.queue.store import TaskStore

logger = logging.getLogger(__name__)

PAYLOAD_PREVIEW_CHARS = 200


@dataclass(slots=True)
class EnqueueCommand:
    """CLI input for manual task enqueue."""

    db_path: Path | None
    task_type: str
    payload: str
    max_attempts: int | None


@dataclass(slots=True)
class ListTasksCommand:
    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class ShowTaskCommand:
    db_path: Path | None
    task_id: int


@dataclass(slots=True)
class StatsCommand:
    db_path: Path | None


@dataclass(slots=True)
class RecoverCommand:
    """CLI input for stuck-task recovery; None falls back to settings."""

    db_path: Path | None
    older_than_minutes: int | None


@dataclass(slots=True)
class CleanupCommand:
    db_path: Path | None
    retention_days: int | None


@dataclass(slots=True)
class WebhookIngestCommand:
    """CLI input for enqueueing uploads from a saved webhook body."""

    db_path: Path | None
    event_path: Path
    max_attempts: int | None


@dataclass(slots=True)
class RunCommand:
    """CLI input for dispatcher execution."""

    db_path: Path | None
    drain: bool
    handler_specs: tuple[str, ...] = ()


class QueueCliController:
    """Coordinates store, pool and dispatcher for CLI operations."""

    def enqueue(self, command: EnqueueCommand) -> list[str]:
        settings = _settings(command.db_path)
        max_attempts = command.max_attempts or settings.queue.default_max_attempts
        with _store(settings) as store:
            task_id = store.enqueue(command.task_type, command.payload, max_attempts)
        return [
            f"Task enqueued: id={task_id} type={command.task_type} max_attempts={max_attempts}",
        ]

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        settings = _settings(command.db_path)
        status_filter = _parse_status(command.status)
        with _store(settings) as store:
            tasks = store.list_tasks(status=status_filter, limit=command.limit)

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.task_id} type={task.task_type} status={task.status.value} "
                f"attempts={task.attempts}/{task.max_attempts} "
                f"created_at={task.created_at.isoformat()}",
            )
        return lines

    def show_task(self, command: ShowTaskCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _store(settings) as store:
            task = store.get_task(command.task_id)
        if task is None:
            return [f"Task not found: {command.task_id}"]

        processed = task.processed_at.isoformat() if task.processed_at is not None else "-"
        return [
            f"Task: {task.task_id}",
            f"Type: {task.task_type}",
            f"Status: {task.status.value}{' (terminal)' if task.is_terminal else ''}",
            f"Attempts: {task.attempts}/{task.max_attempts}",
            f"Created: {task.created_at.isoformat()}",
            f"Updated: {task.updated_at.isoformat()}",
            f"Processed: {processed}",
            f"Error: {task.last_error or '-'}",
            f"Payload: {_payload_preview(task.payload)}",
        ]

    def stats(self, command: StatsCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _store(settings) as store:
            counts = store.count_by_status()
        total = sum(counts.values())
        lines = [f"Tasks total: {total}"]
        lines.extend(f"  {status.value}: {counts[status]}" for status in TaskStatus)
        return lines

    def recover(self, command: RecoverCommand) -> list[str]:
        settings = _settings(command.db_path)
        threshold = (
            timedelta(minutes=command.older_than_minutes)
            if command.older_than_minutes is not None
            else settings.queue.stuck_after
        )
        with _store(settings) as store:
            recovered = store.recover_stuck(threshold)
        return [f"Recovered stuck tasks: {recovered}"]

    def cleanup(self, command: CleanupCommand) -> list[str]:
        settings = _settings(command.db_path)
        retention_days = (
            command.retention_days
            if command.retention_days is not None
            else settings.queue.retention_days
        )
        with _store(settings) as store:
            deleted = store.cleanup(retention_days)
        return [f"Deleted completed tasks: {deleted} (retention {retention_days} day(s))"]

    def ingest_webhook(self, command: WebhookIngestCommand) -> list[str]:
        settings = _settings(command.db_path)
        try:
            event = json.loads(command.event_path.read_text("utf-8"))
        except json.JSONDecodeError as error:
            raise ValueError(f"Webhook body is not valid JSON: {error}") from error
        if not isinstance(event, dict):
            raise ValueError("Webhook body must be a JSON object.")

        max_attempts = command.max_attempts or settings.queue.default_max_attempts
        with _store(settings) as store:
            task_ids = enqueue_download_event(store, event, max_attempts=max_attempts)
        if not task_ids:
            return ["No upload tasks created from webhook."]
        return [f"Upload tasks enqueued: {', '.join(str(task_id) for task_id in task_ids)}"]

    def run(self, command: RunCommand) -> list[str]:
        settings = _settings(command.db_path)
        with ExitStack() as stack:
            store = stack.enter_context(_store(settings))
            registry = build_registry(
                settings=settings,
                extra_specs=command.handler_specs,
                stack=stack,
            )
            _warn_missing_upload_handlers(registry)
            pool = WorkerPool(
                settings.queue.max_concurrent,
                buffer_size=settings.queue.job_buffer_size,
                name="uploads",
            )
            dispatcher = QueueDispatcher(
                store=store,
                pool=pool,
                registry=registry,
                poll_interval_seconds=settings.queue.poll_interval_seconds,
                cleanup_interval_seconds=settings.queue.cleanup_interval_seconds,
                stuck_after=settings.queue.stuck_after,
                retention_days=settings.queue.retention_days,
                claim_batch_size=settings.queue.claim_batch_size,
            )
            try:
                if command.drain:
                    dispatcher.drain()
                else:
                    stop_requested = threading.Event()
                    with _stop_on_signals(stop_requested):
                        dispatcher.start()
                        stop_requested.wait()
            finally:
                dispatcher.stop()
            summary = dispatcher.summary()
        return [_render_summary(summary)]


def build_registry(
    *,
    settings: Settings,
    extra_specs: tuple[str, ...] = (),
    stack: ExitStack | None = None,
) -> HandlerRegistry:
    """Register the built-in notify handler plus handlers named by spec."""

    registry = HandlerRegistry()
    if settings.notify.endpoint is not None:
        client = NotifyClient(
            settings.notify.endpoint,
            timeout_seconds=settings.notify.timeout_seconds,
        )
        if stack is not None:
            stack.callback(client.close)
        registry.register(NOTIFY_UPLOAD_TASK, build_notify_handler(client))

    for spec in (*settings.queue.handler_specs, *extra_specs):
        task_type, handler = load_handler(spec)
        registry.register(task_type, handler)
    return registry


def load_handler(spec: str) -> tuple[str, Handler]:
    """Import the callable named by ``<task_type>=<module>:<attribute>``."""

    task_type, module_name, attribute = parse_handler_spec(spec)
    module = import_module(module_name)
    try:
        handler = getattr(module, attribute)
    except AttributeError as error:
        raise ValueError(f"Handler {attribute!r} not found in module {module_name!r}") from error
    if not callable(handler):
        raise ValueError(f"Handler {module_name}:{attribute} is not callable")
    return task_type, handler


def _warn_missing_upload_handlers(registry: HandlerRegistry) -> None:
    missing = [
        task_type
        for task_type in (UPLOAD_MOVIE_TASK, UPLOAD_EPISODE_TASK)
        if task_type not in registry
    ]
    if missing:
        logger.warning(
            "No handler registered for %s; such tasks will fail as unhandled. "
            "Register one with --handler or MEDIA_RELAY_HANDLERS.",
            ", ".join(missing),
        )


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


@contextmanager
def _store(settings: Settings) -> Iterator[TaskStore]:
    store = TaskStore(settings.db_path)
    store.init_schema()
    try:
        yield store
    finally:
        store.close()


@contextmanager
def _stop_on_signals(stop_requested: threading.Event) -> Iterator[None]:
    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        logger.info("Received %s, stopping dispatcher", name)
        stop_requested.set()

    originals: dict[int, object] = {}
    try:
        for signum in (signal.SIGINT, signal.SIGTERM):
            originals[signum] = signal.getsignal(signum)
            signal.signal(signum, _handler)
    except ValueError:
        # Signal handlers can only be installed in main thread.
        logger.debug("Signal handlers not installed outside main thread")
    try:
        yield
    finally:
        for signum, original in originals.items():
            signal.signal(signum, original)  # type: ignore[arg-type]


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    return TaskStatus(value.strip().lower())


def _payload_preview(payload: bytes) -> str:
    text = payload.decode("utf-8", errors="replace")
    if len(text) <= PAYLOAD_PREVIEW_CHARS:
        return text
    return text[: PAYLOAD_PREVIEW_CHARS - 3] + "..."


def _render_summary(summary: DispatchSummary) -> str:
    return (
        "Dispatcher summary: "
        f"dispatched={summary.dispatched} completed={summary.completed} "
        f"failed={summary.failed} unhandled={summary.unhandled} "
        f"idle_polls={summary.idle_polls} store_errors={summary.store_errors}"
    )
