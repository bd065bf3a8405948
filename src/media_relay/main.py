"""CLI entrypoint for media-relay."""

from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from media_relay import __version__
from media_relay.config import Settings
from media_relay.logging_setup import setup_logging
from media_relay.queue.controllers import (
    CleanupCommand,
    EnqueueCommand,
    ListTasksCommand,
    QueueCliController,
    RecoverCommand,
    RunCommand,
    ShowTaskCommand,
    StatsCommand,
    WebhookIngestCommand,
)
from media_relay.queue.models import TaskStatus
from media_relay.queue.store import StoreError

click.rich_click.USE_MARKDOWN = True
QUEUE_CONTROLLER = QueueCliController()

CommandT = TypeVar("CommandT")


@click.group()
@click.version_option(version=__version__, prog_name="media-relay")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Override MEDIA_RELAY_LOG_LEVEL.",
)
def media_relay(log_level: str | None) -> None:
    """Media upload task queue CLI."""

    try:
        settings = Settings.from_env()
        setup_logging(
            level=(log_level or settings.logging.level).upper(),
            log_file=settings.logging.file_path,
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error


@media_relay.group()
def queue() -> None:
    """Task queue inspection and maintenance."""


@queue.command("enqueue")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--type", "task_type", required=True, help="Task type, for example upload-movie.")
@click.option("--payload", default="{}", show_default=True, help="Task payload, usually JSON.")
@click.option(
    "--max-attempts",
    type=click.IntRange(min=1),
    default=None,
    help="Attempt limit; defaults to MEDIA_RELAY_DEFAULT_MAX_ATTEMPTS.",
)
def queue_enqueue(
    db_path: Path | None,
    task_type: str,
    payload: str,
    max_attempts: int | None,
) -> None:
    """Add one pending task."""

    _emit_lines(
        _invoke(
            QUEUE_CONTROLLER.enqueue,
            EnqueueCommand(
                db_path=db_path,
                task_type=task_type,
                payload=payload,
                max_attempts=max_attempts,
            ),
        ),
    )


@queue.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max tasks to print.",
)
def queue_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List recent tasks, newest first."""

    _emit_lines(
        _invoke(
            QUEUE_CONTROLLER.list_tasks,
            ListTasksCommand(db_path=db_path, status=status, limit=limit),
        ),
    )


@queue.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("task_id", type=int)
def queue_show(db_path: Path | None, task_id: int) -> None:
    """Show one task with its last error."""

    _emit_lines(
        _invoke(QUEUE_CONTROLLER.show_task, ShowTaskCommand(db_path=db_path, task_id=task_id)),
    )


@queue.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def queue_stats(db_path: Path | None) -> None:
    """Count tasks per status."""

    _emit_lines(_invoke(QUEUE_CONTROLLER.stats, StatsCommand(db_path=db_path)))


@queue.command("recover")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--older-than-minutes",
    type=click.IntRange(min=1),
    default=None,
    help="Stuck threshold; defaults to MEDIA_RELAY_STUCK_AFTER_SECONDS.",
)
def queue_recover(db_path: Path | None, older_than_minutes: int | None) -> None:
    """Reset tasks stuck in processing back to pending."""

    _emit_lines(
        _invoke(
            QUEUE_CONTROLLER.recover,
            RecoverCommand(db_path=db_path, older_than_minutes=older_than_minutes),
        ),
    )


@queue.command("cleanup")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--retention-days",
    type=click.IntRange(min=0),
    default=None,
    help="Keep completed tasks this many days; defaults to MEDIA_RELAY_RETENTION_DAYS.",
)
def queue_cleanup(db_path: Path | None, retention_days: int | None) -> None:
    """Delete completed tasks past retention."""

    _emit_lines(
        _invoke(
            QUEUE_CONTROLLER.cleanup,
            CleanupCommand(db_path=db_path, retention_days=retention_days),
        ),
    )


@media_relay.group()
def webhook() -> None:
    """Download webhook intake."""


@webhook.command("ingest")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--max-attempts",
    type=click.IntRange(min=1),
    default=None,
    help="Attempt limit for created tasks.",
)
@click.argument(
    "event_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
def webhook_ingest(db_path: Path | None, max_attempts: int | None, event_path: Path) -> None:
    """Enqueue upload tasks from a saved Radarr/Sonarr webhook body.

    Media already uploaded or already queued is skipped. Uploads are processed
    by `run` with handlers registered for upload-movie and upload-episode.
    """

    _emit_lines(
        _invoke(
            QUEUE_CONTROLLER.ingest_webhook,
            WebhookIngestCommand(
                db_path=db_path,
                event_path=event_path,
                max_attempts=max_attempts,
            ),
        ),
    )


@media_relay.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--drain",
    is_flag=True,
    default=False,
    help="Process eligible tasks until none are left, then exit.",
)
@click.option(
    "--handler",
    "handler_specs",
    multiple=True,
    help="Handler as <task_type>=<module>:<attribute>. Can be repeated.",
)
def run(db_path: Path | None, drain: bool, handler_specs: tuple[str, ...]) -> None:
    """Run the dispatcher until SIGINT/SIGTERM, or once with --drain.

    Only notify-upload has a built-in handler. Register upload-movie and
    upload-episode handlers with --handler or MEDIA_RELAY_HANDLERS, otherwise
    ingested uploads fail as unhandled.
    """

    _emit_lines(
        _invoke(
            QUEUE_CONTROLLER.run,
            RunCommand(db_path=db_path, drain=drain, handler_specs=handler_specs),
        ),
    )


def _invoke(action: Callable[[CommandT], list[str]], command: CommandT) -> list[str]:
    try:
        return action(command)
    except (StoreError, ValueError, ImportError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    media_relay()
