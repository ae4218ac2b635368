"""Cancellation token checked by the engine at every suspension point."""

from __future__ import annotations

import threading
from collections.abc import Callable


class CancelToken:
    """Thread-safe cancel flag with callbacks.

    Callbacks registered with :meth:`on_cancel` run once, on the thread that
    calls :meth:`cancel`; they are used to close in-flight responses.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register *callback*; returns a function that unregisters it.

        If the token is already cancelled the callback runs immediately.
        """
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)

                def unregister() -> None:
                    with self._lock:
                        if callback in self._callbacks:
                            self._callbacks.remove(callback)

                return unregister
        callback()
        return lambda: None

    def reset(self) -> None:
        with self._lock:
            self._event.clear()
            self._callbacks.clear()
