from __future__ import annotations

import queue
import threading
from enum import StrEnum, auto
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

from layered_context.cache import CachedResult  # noqa: TC001
from layered_context.logging import logger

if TYPE_CHECKING:
    from collections.abc import Callable

    EventHandler = Callable[[dict[str, Any]], None]
    NotificationHandler = Callable[["ChangeNotification"], None]


class ContextEvent(StrEnum):
    CONTEXT_LOADED = auto()
    CONTEXT_UPDATED = auto()
    CONTEXT_ERROR = auto()
    VARIABLE_RESOLVED = auto()


class UpdateType(StrEnum):
    FULL = auto()
    INCREMENTAL = auto()
    CACHED = auto()


class ChangeNotification(BaseModel):
    """Message telling a context engine that files changed on disk."""

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    update_type: UpdateType = Field(default=UpdateType.INCREMENTAL)
    affected_paths: tuple[Path, ...] = Field(default_factory=tuple, description="Changed files or directories")
    composed_result: CachedResult | None = Field(default=None, description="Fresh result, when the sender has one")


class EventBus:
    """Synchronous publish/subscribe for `ContextEvent`s.

    Handlers run on the publishing thread. A failing handler is logged and the
    remaining handlers still run; nothing propagates back to the publisher.
    """

    def __init__(self) -> None:
        self._handlers: dict[ContextEvent, list[EventHandler]] = {}
        self._lock = threading.Lock()

    def subscribe(self, event: ContextEvent, handler: EventHandler) -> Callable[[], None]:
        """Register `handler` for `event`.

        Returns:
            Callable[[], None]: a function removing the subscription
        """
        with self._lock:
            self._handlers.setdefault(event, []).append(handler)

        def unsubscribe() -> None:
            with self._lock:
                handlers = self._handlers.get(event, [])
                if handler in handlers:
                    handlers.remove(handler)

        return unsubscribe

    def publish(self, event: ContextEvent, payload: dict[str, Any]) -> None:
        with self._lock:
            handlers = list(self._handlers.get(event, []))
        for handler in handlers:
            try:
                handler(payload)
            except Exception as e:  # noqa: BLE001
                logger.warning("event_handler_failed", event_name=event.value, error=str(e))


_STOP = object()


class ChangeChannel:
    """Queue delivering `ChangeNotification`s to one consumer on a worker thread.

    Senders call `publish` from any thread. The consumer installed by `start`
    processes notifications in arrival order; `join` waits until everything
    published so far has been handled.
    """

    def __init__(self) -> None:
        self._queue: queue.Queue[Any] = queue.Queue()
        self._worker: threading.Thread | None = None
        self._closed = False

    def publish(self, notification: ChangeNotification) -> None:
        if self._closed:
            logger.warning("change_channel_closed", paths=[str(p) for p in notification.affected_paths])
            return
        self._queue.put(notification)

    def start(self, handler: NotificationHandler) -> None:
        if self._worker is not None:
            msg = "change channel already has a consumer"
            raise RuntimeError(msg)
        self._worker = threading.Thread(target=self._run, args=(handler,), name="change-channel", daemon=True)
        self._worker.start()

    def _run(self, handler: NotificationHandler) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                handler(item)
            except Exception as e:  # noqa: BLE001
                logger.warning("change_notification_failed", error=str(e))
            finally:
                self._queue.task_done()

    def join(self) -> None:
        """Block until every published notification has been handled."""
        self._queue.join()

    def close(self, timeout: float | None = 5.0) -> None:
        if self._closed:
            return
        self._closed = True
        if self._worker is not None:
            self._queue.put(_STOP)
            self._worker.join(timeout)
            self._worker = None

    @property
    def running(self) -> bool:
        return self._worker is not None and self._worker.is_alive()
