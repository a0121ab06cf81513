"""
Small event primitives: disposables, emitters and cancellation tokens.

Listeners may be fired from a watcher thread (task process exit), so emitters
copy their listener list under a lock before calling out.
"""

import logging
import threading
from typing import Callable, Generic, List, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Disposable:
    """Runs a release callback at most once."""

    def __init__(self, on_dispose: Callable[[], None]):
        self._on_dispose = on_dispose
        self._lock = threading.Lock()
        self._disposed = False

    @property
    def disposed(self) -> bool:
        return self._disposed

    def dispose(self):
        with self._lock:
            if self._disposed:
                return
            self._disposed = True
        self._on_dispose()


class EventEmitter(Generic[T]):
    """Fan-out of one event type to any number of subscribers."""

    def __init__(self):
        self._listeners: List[Callable[[T], None]] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: Callable[[T], None]) -> Disposable:
        with self._lock:
            self._listeners.append(listener)

        def _remove():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return Disposable(_remove)

    def fire(self, event: T):
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            listener(event)

    @property
    def listener_count(self) -> int:
        with self._lock:
            return len(self._listeners)


class CancellationToken:
    """Read side of a CancellationTokenSource."""

    def __init__(self):
        self._event = threading.Event()
        self._emitter: EventEmitter[None] = EventEmitter()

    @property
    def is_cancellation_requested(self) -> bool:
        return self._event.is_set()

    def on_cancellation_requested(self, listener: Callable[[None], None]) -> Disposable:
        """Subscribe; fires immediately if cancellation already happened."""
        sub = self._emitter.subscribe(listener)
        if self._event.is_set():
            listener(None)
        return sub

    def _cancel(self):
        if self._event.is_set():
            return
        self._event.set()
        self._emitter.fire(None)


class CancellationTokenSource:
    def __init__(self):
        self.token = CancellationToken()

    def cancel(self):
        logger.debug("Cancellation requested")
        self.token._cancel()

    def dispose(self):
        self.token._emitter = EventEmitter()


NONE_TOKEN = CancellationToken()
