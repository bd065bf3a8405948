from __future__ import annotations

import allure
import pytest

from media_relay.media.payloads import (
    UPLOAD_EPISODE_TASK,
    UPLOAD_MOVIE_TASK,
    MediaType,
    PayloadError,
    UploadPayload,
)
from media_relay.media.webhook import enqueue_download_event, parse_download_event
from media_relay.queue.models import TaskStatus
from media_relay.queue.store import TaskStore

pytestmark = [
    allure.epic("Media Uploads"),
    allure.feature("Download Webhooks"),
]

MOVIE_EVENT = {
    "eventType": "Download",
    "movie": {"id": 7, "title": "Heat", "tmdbId": 949},
    "movieFile": {"path": "/media/movies/Heat (1995)/Heat.mkv"},
}

SERIES_EVENT = {
    "eventType": "Download",
    "series": {"title": "Dark", "tmdbId": 70523, "path": "/media/tv/Dark"},
    "episodes": [
        {"seasonNumber": 1, "episodeNumber": 1, "title": "Secrets"},
        {"seasonNumber": 1, "episodeNumber": 2, "title": "Lies"},
    ],
}


def test_movie_event_yields_single_payload() -> None:
    payloads = parse_download_event(MOVIE_EVENT)

    assert payloads == [
        UploadPayload(
            tmdb_id=949,
            title="Heat",
            media_type=MediaType.MOVIE,
            file_path="/media/movies/Heat (1995)/Heat.mkv",
        ),
    ]
    assert payloads[0].task_type == UPLOAD_MOVIE_TASK
    assert payloads[0].label == "Heat"


def test_series_event_yields_payload_per_episode() -> None:
    payloads = parse_download_event(SERIES_EVENT)

    assert [payload.label for payload in payloads] == ["Dark S01E01", "Dark S01E02"]
    assert {payload.task_type for payload in payloads} == {UPLOAD_EPISODE_TASK}
    assert payloads[0].file_path == "/media/tv/Dark/Season 1/Secrets"


def test_series_event_prefers_episode_file_path() -> None:
    event = {**SERIES_EVENT, "episodeFile": {"path": "/media/tv/Dark/S01E01.mkv"}}

    payloads = parse_download_event(event)

    assert {payload.file_path for payload in payloads} == {"/media/tv/Dark/S01E01.mkv"}


@pytest.mark.parametrize(
    "event",
    [
        {"eventType": "Test"},
        {"eventType": "Grab", "movie": {"tmdbId": 1}, "movieFile": {"path": "/x"}},
        {"eventType": "Download"},
    ],
)
def test_events_without_files_yield_nothing(event: dict) -> None:
    assert parse_download_event(event) == []


def test_enqueue_download_event_creates_pending_tasks(store: TaskStore) -> None:
    task_ids = enqueue_download_event(store, SERIES_EVENT, max_attempts=4)

    assert len(task_ids) == 2
    tasks = [store.get_task(task_id) for task_id in task_ids]
    assert all(task is not None for task in tasks)
    first = tasks[0]
    assert first is not None
    assert first.task_type == UPLOAD_EPISODE_TASK
    assert first.status == TaskStatus.PENDING
    assert first.max_attempts == 4
    assert UploadPayload.from_bytes(first.payload).label == "Dark S01E01"


def test_redelivered_movie_event_is_skipped_while_queued_or_uploaded(store: TaskStore) -> None:
    [task_id] = enqueue_download_event(store, MOVIE_EVENT)

    assert enqueue_download_event(store, MOVIE_EVENT) == []

    store.mark_processing(task_id)
    store.mark_completed(task_id)

    assert enqueue_download_event(store, MOVIE_EVENT) == []
    assert store.count_by_status()[TaskStatus.COMPLETED] == 1
    assert sum(store.count_by_status().values()) == 1


def test_redelivered_series_event_only_queues_new_episodes(store: TaskStore) -> None:
    enqueue_download_event(store, SERIES_EVENT)
    event = {
        **SERIES_EVENT,
        "episodes": [
            *SERIES_EVENT["episodes"],
            {"seasonNumber": 1, "episodeNumber": 3, "title": "Past and Present"},
        ],
    }

    [task_id] = enqueue_download_event(store, event)

    task = store.get_task(task_id)
    assert task is not None
    assert task.dedup_key == "series:70523:1:3"


def test_movie_is_queued_again_after_terminal_failure(store: TaskStore) -> None:
    [task_id] = enqueue_download_event(store, MOVIE_EVENT, max_attempts=1)
    store.mark_processing(task_id)
    store.mark_failed(task_id, error="host unavailable")

    [retry_id] = enqueue_download_event(store, MOVIE_EVENT, max_attempts=1)

    assert retry_id != task_id
    retry = store.get_task(retry_id)
    assert retry is not None
    assert retry.status == TaskStatus.PENDING
    assert retry.dedup_key == "movie:949"


def test_upload_payload_decode_rejects_garbage() -> None:
    with pytest.raises(PayloadError):
        UploadPayload.from_bytes(b"not json")
    with pytest.raises(PayloadError):
        UploadPayload.from_bytes(b"[1, 2]")
    with pytest.raises(PayloadError):
        UploadPayload.from_bytes(b'{"tmdb_id": 1, "title": "x", "media_type": "anime"}')
