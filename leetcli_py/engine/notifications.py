"""Change notifications from the engine to the UI."""

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)


class ChangeKind(str, Enum):
    SYNCED = "synced"
    SYNC_FAILED = "sync_failed"
    SYNC_PAUSED = "sync_paused"
    SYNC_RESUMED = "sync_resumed"
    CACHE_RECOVERED = "cache_recovered"
    LIST_CHANGED = "list_changed"
    LIST_CONFIRMED = "list_confirmed"
    LIST_ROLLBACK = "list_rollback"
    JOB_UPDATED = "job_updated"
    INDEX_UPDATED = "index_updated"


@dataclass(frozen=True)
class ChangeEvent:
    """
    Something the UI may want to redraw for.

    ``task`` names the refresh task or job concerned, ``keys`` the cache keys
    that changed, ``message`` is ready to show to the user.
    """

    kind: ChangeKind
    task: str = ""
    keys: Tuple[str, ...] = ()
    message: str = ""
    error: Optional[BaseException] = None
    generation: Optional[int] = None
    payload: Any = None
    at: float = field(default_factory=time.time)


Subscriber = Callable[[ChangeEvent], None]


class ChangeBus:
    """Fan-out of change events to subscribers, on the publishing thread."""

    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers: List[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback``; returns a function that unregisters it."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, event: ChangeEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        logger.debug("Event %s %s %s", event.kind.value, event.task, event.message)
        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception("Change subscriber %r failed on %s", callback, event.kind.value)
