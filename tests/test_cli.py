from __future__ import annotations

import json
import logging
import re
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from media_relay import __version__
from media_relay.config import Settings
from media_relay.main import media_relay
from media_relay.queue.controllers import QueueCliController, RunCommand, build_registry
from media_relay.queue.models import TaskStatus
from media_relay.queue.store import TaskStore

pytestmark = [
    allure.epic("Runtime"),
    allure.feature("CLI"),
]


@pytest.fixture(autouse=True)
def _no_logging_setup(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("media_relay.main.setup_logging", lambda **_: None)


def _invoke(*args: str) -> str:
    result = CliRunner().invoke(media_relay, list(args))
    assert result.exit_code == 0, result.output
    return result.output


def _enqueued_id(output: str) -> int:
    match = re.search(r"id=(\d+)", output)
    assert match is not None, output
    return int(match.group(1))


def test_enqueue_list_show_and_stats(tmp_path: Path) -> None:
    db_path = str(tmp_path / "cli.db")

    output = _invoke(
        "queue",
        "enqueue",
        "--db-path",
        db_path,
        "--type",
        "upload-movie",
        "--payload",
        '{"tmdb_id": 949}',
        "--max-attempts",
        "5",
    )
    task_id = _enqueued_id(output)
    assert "max_attempts=5" in output

    listing = _invoke("queue", "list", "--db-path", db_path, "--status", "pending")
    assert "Tasks: 1" in listing
    assert f"{task_id} type=upload-movie status=pending attempts=0/5" in listing

    shown = _invoke("queue", "show", "--db-path", db_path, str(task_id))
    assert "Status: pending" in shown
    assert 'Payload: {"tmdb_id": 949}' in shown
    assert "Processed: -" in shown

    stats = _invoke("queue", "stats", "--db-path", db_path)
    assert "Tasks total: 1" in stats
    assert "  pending: 1" in stats
    assert "  completed: 0" in stats


def test_enqueue_uses_default_max_attempts_from_env(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("MEDIA_RELAY_DEFAULT_MAX_ATTEMPTS", "7")

    output = _invoke(
        "queue",
        "enqueue",
        "--db-path",
        str(tmp_path / "cli.db"),
        "--type",
        "notify-upload",
    )

    assert "max_attempts=7" in output


def test_show_unknown_task(tmp_path: Path) -> None:
    output = _invoke("queue", "show", "--db-path", str(tmp_path / "cli.db"), "42")

    assert "Task not found: 42" in output


def test_run_drain_completes_tasks_with_cli_handler(tmp_path: Path) -> None:
    db_path = str(tmp_path / "cli.db")
    task_id = _enqueued_id(
        _invoke("queue", "enqueue", "--db-path", db_path, "--type", "measure"),
    )

    output = _invoke("run", "--db-path", db_path, "--drain", "--handler", "measure=builtins:len")

    assert "dispatched=1 completed=1 failed=0 unhandled=0" in output
    with TaskStore(Path(db_path)) as store:
        task = store.get_task(task_id)
    assert task is not None
    assert task.status == TaskStatus.COMPLETED
    assert task.attempts == 1


def test_run_drain_retries_failing_handler_until_ceiling(tmp_path: Path) -> None:
    db_path = str(tmp_path / "cli.db")
    task_id = _enqueued_id(
        _invoke(
            "queue",
            "enqueue",
            "--db-path",
            db_path,
            "--type",
            "decode",
            "--payload",
            "not json",
            "--max-attempts",
            "2",
        ),
    )

    output = _invoke("run", "--db-path", db_path, "--drain", "--handler", "decode=json:loads")

    assert "dispatched=2 completed=0 failed=2" in output
    shown = _invoke("queue", "show", "--db-path", db_path, str(task_id))
    assert "Status: failed (terminal)" in shown
    assert "Attempts: 2/2" in shown
    assert "Error: JSONDecodeError:" in shown


def test_run_drain_fails_unhandled_type_once(tmp_path: Path) -> None:
    db_path = str(tmp_path / "cli.db")
    _invoke("queue", "enqueue", "--db-path", db_path, "--type", "transcode")

    output = _invoke("run", "--db-path", db_path, "--drain")

    assert "dispatched=1 completed=0 failed=0 unhandled=1" in output


def test_run_rejects_invalid_handler_spec(tmp_path: Path) -> None:
    result = CliRunner().invoke(
        media_relay,
        ["run", "--db-path", str(tmp_path / "cli.db"), "--drain", "--handler", "broken"],
    )

    assert result.exit_code == 1
    assert "Invalid handler spec" in result.output


def test_run_rejects_missing_handler_attribute(tmp_path: Path) -> None:
    result = CliRunner().invoke(
        media_relay,
        [
            "run",
            "--db-path",
            str(tmp_path / "cli.db"),
            "--drain",
            "--handler",
            "t=json:no_such_handler",
        ],
    )

    assert result.exit_code == 1
    assert "no_such_handler" in result.output


def test_webhook_ingest_enqueues_episode_uploads(tmp_path: Path) -> None:
    db_path = str(tmp_path / "cli.db")
    event_path = tmp_path / "sonarr.json"
    event_path.write_text(
        json.dumps(
            {
                "eventType": "Download",
                "series": {"title": "Dark", "tmdbId": 70523, "path": "/media/tv/Dark"},
                "episodes": [
                    {"seasonNumber": 1, "episodeNumber": 1, "title": "Secrets"},
                    {"seasonNumber": 1, "episodeNumber": 2, "title": "Lies"},
                ],
            },
        ),
        encoding="utf-8",
    )

    output = _invoke("webhook", "ingest", "--db-path", db_path, str(event_path))

    assert "Upload tasks enqueued: 1, 2" in output
    listing = _invoke("queue", "list", "--db-path", db_path)
    assert "Tasks: 2" in listing
    assert "type=upload-episode" in listing


def test_webhook_ingest_skips_redelivered_movie(tmp_path: Path) -> None:
    db_path = str(tmp_path / "cli.db")
    event_path = tmp_path / "radarr.json"
    event_path.write_text(
        json.dumps(
            {
                "eventType": "Download",
                "movie": {"id": 7, "title": "Heat", "tmdbId": 949},
                "movieFile": {"path": "/media/movies/Heat (1995)/Heat.mkv"},
            },
        ),
        encoding="utf-8",
    )

    first = _invoke("webhook", "ingest", "--db-path", db_path, str(event_path))
    _invoke("run", "--db-path", db_path, "--drain", "--handler", "upload-movie=builtins:len")
    second = _invoke("webhook", "ingest", "--db-path", db_path, str(event_path))

    assert "Upload tasks enqueued: 1" in first
    assert "No upload tasks created from webhook." in second
    assert "Tasks total: 1" in _invoke("queue", "stats", "--db-path", db_path)


def test_run_warns_when_upload_handlers_are_missing(
    tmp_path: Path,
    caplog: pytest.LogCaptureFixture,
) -> None:
    controller = QueueCliController()

    with caplog.at_level(logging.WARNING, logger="media_relay.queue.controllers"):
        controller.run(RunCommand(db_path=tmp_path / "cli.db", drain=True))

    assert "No handler registered for upload-movie, upload-episode" in caplog.text

    caplog.clear()
    with caplog.at_level(logging.WARNING, logger="media_relay.queue.controllers"):
        controller.run(
            RunCommand(
                db_path=tmp_path / "cli.db",
                drain=True,
                handler_specs=("upload-movie=builtins:len", "upload-episode=builtins:len"),
            ),
        )

    assert "No handler registered" not in caplog.text


def test_webhook_ingest_ignores_non_download_event(tmp_path: Path) -> None:
    event_path = tmp_path / "test.json"
    event_path.write_text('{"eventType": "Test"}', encoding="utf-8")

    output = _invoke("webhook", "ingest", "--db-path", str(tmp_path / "cli.db"), str(event_path))

    assert "No upload tasks created from webhook." in output


def test_webhook_ingest_rejects_invalid_json(tmp_path: Path) -> None:
    event_path = tmp_path / "broken.json"
    event_path.write_text("{", encoding="utf-8")

    result = CliRunner().invoke(
        media_relay,
        ["webhook", "ingest", "--db-path", str(tmp_path / "cli.db"), str(event_path)],
    )

    assert result.exit_code == 1
    assert "not valid JSON" in result.output


def test_cleanup_and_recover_commands(tmp_path: Path) -> None:
    db_path = str(tmp_path / "cli.db")
    _invoke("queue", "enqueue", "--db-path", db_path, "--type", "measure")
    _invoke("run", "--db-path", db_path, "--drain", "--handler", "measure=builtins:len")

    recovered = _invoke("queue", "recover", "--db-path", db_path, "--older-than-minutes", "1")
    assert "Recovered stuck tasks: 0" in recovered

    cleaned = _invoke("queue", "cleanup", "--db-path", db_path, "--retention-days", "0")
    assert "Deleted completed tasks: 1" in cleaned
    again = _invoke("queue", "cleanup", "--db-path", db_path, "--retention-days", "0")
    assert "Deleted completed tasks: 0" in again


def test_invalid_settings_surface_as_cli_error(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("MEDIA_RELAY_MAX_CONCURRENT", "0")

    result = CliRunner().invoke(
        media_relay,
        ["queue", "stats", "--db-path", str(tmp_path / "x.db")],
    )

    assert result.exit_code == 1
    assert "MEDIA_RELAY_MAX_CONCURRENT must be > 0." in result.output


def test_version_option() -> None:
    output = _invoke("--version")

    assert __version__ in output


def test_build_registry_includes_notify_handler_when_endpoint_configured(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("MEDIA_RELAY_NOTIFY_ENDPOINT", "https://cms.example.com/api/uploads")
    monkeypatch.setenv("MEDIA_RELAY_HANDLERS", "measure=builtins:len")

    registry = build_registry(settings=Settings.from_env(), extra_specs=("decode=json:loads",))

    assert registry.task_types() == ("decode", "measure", "notify-upload")
    assert registry.resolve("measure") is len
