"""Update notification bus and user-visible notification sink."""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)


class UpdateBus:
    """Synchronous registry of zero-argument change callbacks.

    Every state change visible to the UI calls ``notify()``, which invokes each
    registered callback in turn. Callbacks must be quick; a failing callback is
    logged and does not prevent the others from running.
    """

    def __init__(self) -> None:
        self._callbacks: list[Callable[[], None]] = []
        self._revision = 0

    @property
    def revision(self) -> int:
        """Counter bumped on every notification, for polling clients."""
        return self._revision

    def register(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register *callback*; returns a function that unregisters it."""
        self._callbacks.append(callback)

        def unregister() -> None:
            self.unregister(callback)

        return unregister

    def unregister(self, callback: Callable[[], None]) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def notify(self) -> None:
        self._revision += 1
        for callback in list(self._callbacks):
            try:
                callback()
            except Exception:
                logger.exception("Update callback %r failed", callback)


@dataclass
class Notification:
    level: str
    message: str
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@runtime_checkable
class Notifier(Protocol):
    """Fire-and-forget sink for messages shown to the user."""

    def info(self, message: str) -> None: ...

    def error(self, message: str) -> None: ...


class NotificationLog:
    """Notifier that logs messages and keeps the most recent ones in memory."""

    def __init__(self, max_entries: int = 100) -> None:
        self._entries: deque[Notification] = deque(maxlen=max_entries)

    def info(self, message: str) -> None:
        logger.info("Notify: %s", message)
        self._entries.append(Notification(level="info", message=message))

    def error(self, message: str) -> None:
        logger.error("Notify: %s", message)
        self._entries.append(Notification(level="error", message=message))

    def recent(self, limit: int = 20) -> list[Notification]:
        """Newest-first list of up to *limit* notifications."""
        return list(reversed(self._entries))[:limit]
