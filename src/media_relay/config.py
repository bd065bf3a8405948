"""Runtime configuration for the task queue and its collaborators."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from urllib.parse import urlparse


@dataclass(slots=True)
class QueueSettings:
    """Worker pool and dispatcher settings."""

    max_concurrent: int = 10
    job_buffer_size: int = 100
    poll_interval_seconds: float = 5.0
    cleanup_interval_seconds: float = 3_600.0
    stuck_after_seconds: int = 1_800
    retention_days: int = 7
    default_max_attempts: int = 3
    claim_batch_size: int = 1
    handler_specs: tuple[str, ...] = ()

    @property
    def stuck_after(self) -> timedelta:
        return timedelta(seconds=self.stuck_after_seconds)


@dataclass(slots=True)
class NotifySettings:
    """Outbound upload notification endpoint."""

    endpoint: str | None = None
    timeout_seconds: float = 30.0


@dataclass(slots=True)
class LoggingSettings:
    """Log verbosity and optional log file."""

    level: str = "INFO"
    file_path: Path | None = None


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".media_relay.db")
    queue: QueueSettings = field(default_factory=QueueSettings)
    notify: NotifySettings = field(default_factory=NotifySettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        log_file = os.getenv("MEDIA_RELAY_LOG_FILE", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv("MEDIA_RELAY_DB_PATH", ".media_relay.db")),
            queue=QueueSettings(
                max_concurrent=int(os.getenv("MEDIA_RELAY_MAX_CONCURRENT", "10")),
                job_buffer_size=int(os.getenv("MEDIA_RELAY_JOB_BUFFER_SIZE", "100")),
                poll_interval_seconds=float(os.getenv("MEDIA_RELAY_POLL_INTERVAL_SECONDS", "5.0")),
                cleanup_interval_seconds=float(
                    os.getenv("MEDIA_RELAY_CLEANUP_INTERVAL_SECONDS", "3600"),
                ),
                stuck_after_seconds=int(os.getenv("MEDIA_RELAY_STUCK_AFTER_SECONDS", "1800")),
                retention_days=int(os.getenv("MEDIA_RELAY_RETENTION_DAYS", "7")),
                default_max_attempts=int(os.getenv("MEDIA_RELAY_DEFAULT_MAX_ATTEMPTS", "3")),
                claim_batch_size=int(os.getenv("MEDIA_RELAY_CLAIM_BATCH_SIZE", "1")),
                handler_specs=_collect_handler_specs(),
            ),
            notify=NotifySettings(
                endpoint=os.getenv("MEDIA_RELAY_NOTIFY_ENDPOINT", "").strip() or None,
                timeout_seconds=float(os.getenv("MEDIA_RELAY_NOTIFY_TIMEOUT_SECONDS", "30.0")),
            ),
            logging=LoggingSettings(
                level=os.getenv("MEDIA_RELAY_LOG_LEVEL", "INFO").strip().upper(),
                file_path=Path(log_file) if log_file else None,
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the queue cannot run with."""

        queue = self.queue
        if queue.max_concurrent <= 0:
            raise ValueError("MEDIA_RELAY_MAX_CONCURRENT must be > 0.")
        if queue.job_buffer_size <= 0:
            raise ValueError("MEDIA_RELAY_JOB_BUFFER_SIZE must be > 0.")
        if queue.poll_interval_seconds <= 0:
            raise ValueError("MEDIA_RELAY_POLL_INTERVAL_SECONDS must be > 0.")
        if queue.cleanup_interval_seconds <= 0:
            raise ValueError("MEDIA_RELAY_CLEANUP_INTERVAL_SECONDS must be > 0.")
        if queue.stuck_after_seconds <= 0:
            raise ValueError("MEDIA_RELAY_STUCK_AFTER_SECONDS must be > 0.")
        if queue.retention_days < 0:
            raise ValueError("MEDIA_RELAY_RETENTION_DAYS must be >= 0.")
        if queue.default_max_attempts <= 0:
            raise ValueError("MEDIA_RELAY_DEFAULT_MAX_ATTEMPTS must be > 0.")
        if queue.claim_batch_size <= 0:
            raise ValueError("MEDIA_RELAY_CLAIM_BATCH_SIZE must be > 0.")
        for spec in queue.handler_specs:
            parse_handler_spec(spec)
        if self.notify.endpoint is not None:
            _validate_endpoint_url(self.notify.endpoint)
        if self.notify.timeout_seconds <= 0:
            raise ValueError("MEDIA_RELAY_NOTIFY_TIMEOUT_SECONDS must be > 0.")
        if not isinstance(logging.getLevelName(self.logging.level), int):
            raise ValueError(f"Invalid MEDIA_RELAY_LOG_LEVEL: {self.logging.level!r}")


def parse_handler_spec(spec: str) -> tuple[str, str, str]:
    """Split ``<task_type>=<module>:<attribute>`` into its parts."""

    task_type, sep, target = spec.partition("=")
    module_name, colon, attribute = target.partition(":")
    task_type, module_name, attribute = task_type.strip(), module_name.strip(), attribute.strip()
    if not sep or not colon or not task_type or not module_name or not attribute:
        raise ValueError(
            f"Invalid handler spec {spec!r}. Expected format '<task_type>=<module>:<attribute>'.",
        )
    return task_type, module_name, attribute


def _collect_handler_specs() -> tuple[str, ...]:
    raw = os.getenv("MEDIA_RELAY_HANDLERS", "").strip()
    if not raw:
        return ()
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _validate_endpoint_url(value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            "Invalid MEDIA_RELAY_NOTIFY_ENDPOINT: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )
