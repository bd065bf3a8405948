"""HTTP client announcing finished uploads to the publishing API."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from media_relay.media.payloads import PayloadError
from media_relay.queue.registry import Handler

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0


class NotifyError(RuntimeError):
    """Notification endpoint rejected the request or was unreachable."""


@dataclass(frozen=True, slots=True)
class HostedLink:
    """One hosted copy of an uploaded file."""

    hoster: str
    link: str
    file_code: str
    season: int | None = None
    episode: int | None = None

    def to_json(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "hoster": self.hoster,
            "link": self.link,
            "fileCode": self.file_code,
        }
        if self.season is not None:
            data["season"] = self.season
        if self.episode is not None:
            data["episode"] = self.episode
        return data


@dataclass(frozen=True, slots=True)
class NotifyPayload:
    tmdb_id: int
    title: str
    media_type: str
    links: tuple[HostedLink, ...] = field(default_factory=tuple)

    def to_json(self) -> dict[str, Any]:
        return {
            "tmdbId": self.tmdb_id,
            "title": self.title,
            "type": self.media_type,
            "links": [link.to_json() for link in self.links],
        }

    def to_bytes(self) -> bytes:
        return json.dumps(self.to_json(), ensure_ascii=False, sort_keys=True).encode("utf-8")

    @classmethod
    def from_bytes(cls, raw: bytes) -> NotifyPayload:
        try:
            data = json.loads(raw.decode("utf-8"))
            return cls(
                tmdb_id=int(data["tmdbId"]),
                title=str(data["title"]),
                media_type=str(data["type"]),
                links=tuple(
                    HostedLink(
                        hoster=str(item["hoster"]),
                        link=str(item["link"]),
                        file_code=str(item.get("fileCode", "")),
                        season=item.get("season"),
                        episode=item.get("episode"),
                    )
                    for item in data.get("links", [])
                ),
            )
        except (KeyError, TypeError, ValueError) as error:
            raise PayloadError(f"Invalid notify payload: {error!r}") from error


class NotifyClient:
    """POSTs upload announcements as JSON."""

    def __init__(
        self,
        endpoint: str,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        client: httpx.Client | None = None,
    ) -> None:
        self.endpoint = endpoint
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=httpx.Timeout(timeout_seconds, connect=10.0))

    def notify_upload(self, payload: NotifyPayload) -> None:
        try:
            response = self._client.post(self.endpoint, json=payload.to_json())
        except httpx.HTTPError as error:
            raise NotifyError(f"Notify request to {self.endpoint} failed: {error}") from error
        if not response.is_success:
            raise NotifyError(
                f"Notify endpoint {self.endpoint} returned HTTP {response.status_code}",
            )
        logger.info("Notified upload of %s (%d link(s))", payload.title, len(payload.links))

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> NotifyClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def build_notify_handler(client: NotifyClient) -> Handler:
    """Handler for ``notify-upload`` tasks."""

    def handle(payload: bytes) -> None:
        client.notify_upload(NotifyPayload.from_bytes(payload))

    return handle
