"""In-process channel announcing content served from the local database."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, List, Union

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheHitEvent:
    type: str
    id: Union[int, str]


CacheHitCallback = Callable[[CacheHitEvent], None]


class CacheHitNotifier:
    """Fan out :class:`CacheHitEvent` to subscribers without ever raising to the emitter."""

    def __init__(self) -> None:
        self._subscribers: List[CacheHitCallback] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: CacheHitCallback) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def emit(self, event: CacheHitEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                LOGGER.warning("Cache hit subscriber %r failed", callback, exc_info=True)


cache_hits = CacheHitNotifier()
