"""Radarr/Sonarr download webhooks turned into upload tasks."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from media_relay.media.payloads import MediaType, UploadPayload
from media_relay.queue.store import TaskStore

logger = logging.getLogger(__name__)

DOWNLOAD_EVENT = "Download"


def parse_download_event(event: Mapping[str, Any]) -> list[UploadPayload]:
    """Extract upload payloads from a webhook body.

    Only ``Download`` events carry files. A movie event yields one payload; a
    series event yields one payload per episode. Events without a usable
    media section yield an empty list.
    """

    event_type = event.get("eventType")
    if event_type != DOWNLOAD_EVENT:
        logger.info("Ignoring webhook event type %s", event_type)
        return []

    movie = event.get("movie")
    movie_file = event.get("movieFile")
    if isinstance(movie, Mapping) and isinstance(movie_file, Mapping):
        return [
            UploadPayload(
                tmdb_id=int(movie.get("tmdbId") or 0),
                title=str(movie.get("title") or ""),
                media_type=MediaType.MOVIE,
                file_path=str(movie_file.get("path") or ""),
            ),
        ]

    series = event.get("series")
    episodes = event.get("episodes")
    if isinstance(series, Mapping) and isinstance(episodes, list):
        episode_file = event.get("episodeFile")
        file_path = episode_file.get("path") if isinstance(episode_file, Mapping) else None
        payloads: list[UploadPayload] = []
        for episode in episodes:
            if not isinstance(episode, Mapping):
                continue
            season = int(episode.get("seasonNumber") or 0)
            number = int(episode.get("episodeNumber") or 0)
            payloads.append(
                UploadPayload(
                    tmdb_id=int(series.get("tmdbId") or 0),
                    title=str(series.get("title") or ""),
                    media_type=MediaType.SERIES,
                    file_path=str(
                        file_path
                        or f"{series.get('path', '')}/Season {season}/{episode.get('title', '')}",
                    ),
                    season=season,
                    episode=number,
                ),
            )
        return payloads

    logger.warning("Download event without identifiable media")
    return []


def enqueue_download_event(
    store: TaskStore,
    event: Mapping[str, Any],
    *,
    max_attempts: int = 3,
) -> list[int]:
    """Enqueue one upload task per payload found in the event.

    Media already uploaded, or already waiting in the queue, is skipped so a
    re-delivered webhook does not upload the same file twice.
    """

    task_ids: list[int] = []
    for payload in parse_download_event(event):
        existing = store.find_duplicate(payload.task_type, payload.dedup_key)
        if existing is not None:
            logger.info(
                "Skipping %s: task %d is already %s",
                payload.label,
                existing.task_id,
                existing.status.value,
            )
            continue
        task_id = store.enqueue(
            payload.task_type,
            payload.to_bytes(),
            max_attempts,
            dedup_key=payload.dedup_key,
        )
        logger.info("Queued %s task %d for %s", payload.task_type, task_id, payload.label)
        task_ids.append(task_id)
    return task_ids
