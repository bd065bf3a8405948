"""Task-type to handler mapping."""

from __future__ import annotations

import logging
from collections.abc import Callable

logger = logging.getLogger(__name__)

Handler = Callable[[bytes], None]


class HandlerNotFoundError(LookupError):
    """No handler is registered for a task type."""

    def __init__(self, task_type: str) -> None:
        super().__init__(f"No handler registered for task type {task_type!r}")
        self.task_type = task_type


class HandlerError(RuntimeError):
    """Business-logic failure raised by a handler; retried by the dispatcher."""


class HandlerRegistry:
    """Handlers are registered at startup, before the dispatcher starts."""

    def __init__(self) -> None:
        self._handlers: dict[str, Handler] = {}

    def register(self, task_type: str, handler: Handler) -> None:
        if not task_type or not task_type.strip():
            raise ValueError("task_type is required")
        key = task_type.strip()
        if key in self._handlers:
            logger.warning("Replacing handler for task type %s", key)
        self._handlers[key] = handler

    def resolve(self, task_type: str) -> Handler:
        try:
            return self._handlers[task_type]
        except KeyError:
            raise HandlerNotFoundError(task_type) from None

    def task_types(self) -> tuple[str, ...]:
        return tuple(sorted(self._handlers))

    def __contains__(self, task_type: object) -> bool:
        return task_type in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)
