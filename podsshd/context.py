import threading
from typing import Callable, List, Optional

from podsshd.utils import log_error


class RequestContext:
    """Cancellation scope for one connection, session or request.

    A child context is cancelled together with its parent. Callbacks
    registered with ``on_cancel`` run exactly once, on the thread that
    cancels; a callback registered after cancellation runs immediately.
    Using the context as a ``with`` block cancels it on exit.
    """

    def __init__(self, parent: Optional["RequestContext"] = None):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []
        self._detach: Optional[Callable[[], None]] = None
        if parent is not None:
            self._detach = parent.on_cancel(self.cancel)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)

    def child(self) -> "RequestContext":
        return RequestContext(parent=self)

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return lambda: self._discard(callback)
        callback()
        return lambda: None

    def _discard(self, callback: Callable[[], None]) -> None:
        with self._lock:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = self._callbacks
            self._callbacks = []
        for callback in callbacks:
            try:
                callback()
            except Exception as exc:
                log_error(f"cancel callback failed: {exc}")
        if self._detach is not None:
            self._detach()
            self._detach = None

    def __enter__(self) -> "RequestContext":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cancel()
