"""Typed payloads carried by media upload tasks."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from enum import Enum

UPLOAD_MOVIE_TASK = "upload-movie"
UPLOAD_EPISODE_TASK = "upload-episode"
NOTIFY_UPLOAD_TASK = "notify-upload"


class MediaType(str, Enum):
    MOVIE = "movie"
    SERIES = "series"


class PayloadError(ValueError):
    """Task payload bytes do not decode to the expected structure."""


@dataclass(frozen=True, slots=True)
class UploadPayload:
    """One media file ready to be pushed to file hosts."""

    tmdb_id: int
    title: str
    media_type: MediaType
    file_path: str
    season: int | None = None
    episode: int | None = None

    @property
    def task_type(self) -> str:
        return UPLOAD_MOVIE_TASK if self.media_type == MediaType.MOVIE else UPLOAD_EPISODE_TASK

    @property
    def dedup_key(self) -> str:
        """Stable identity of the media item, independent of file path."""

        if self.media_type == MediaType.MOVIE:
            return f"movie:{self.tmdb_id}"
        return f"series:{self.tmdb_id}:{self.season}:{self.episode}"

    @property
    def label(self) -> str:
        if self.season is None or self.episode is None:
            return self.title
        return f"{self.title} S{self.season:02d}E{self.episode:02d}"

    def to_bytes(self) -> bytes:
        data = asdict(self)
        data["media_type"] = self.media_type.value
        return json.dumps(data, ensure_ascii=False, sort_keys=True).encode("utf-8")

    @classmethod
    def from_bytes(cls, raw: bytes) -> UploadPayload:
        try:
            data = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as error:
            raise PayloadError(f"Upload payload is not valid JSON: {error}") from error
        if not isinstance(data, dict):
            raise PayloadError("Upload payload must be a JSON object")
        try:
            return cls(
                tmdb_id=int(data["tmdb_id"]),
                title=str(data["title"]),
                media_type=MediaType(data["media_type"]),
                file_path=str(data["file_path"]),
                season=_optional_int(data.get("season")),
                episode=_optional_int(data.get("episode")),
            )
        except (KeyError, TypeError, ValueError) as error:
            raise PayloadError(f"Invalid upload payload: {error!r}") from error


def _optional_int(value: object) -> int | None:
    if value is None:
        return None
    return int(value)  # type: ignore[arg-type]
