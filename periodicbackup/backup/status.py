"""
Process-wide run status shared between the executors and the host.

- StatusMessage: the user-visible "Creating backup..." style message
- RestartGuard: blocks disruptive host restarts while a restore is running
"""

import threading
from contextlib import contextmanager


class StatusMessage:
    """Thread-safe holder for the current user-visible status message."""

    def __init__(self):
        self._lock = threading.Lock()
        self._message = ''

    def set(self, message: str):
        with self._lock:
            self._message = message

    def clear(self):
        self.set('')

    def get(self) -> str:
        with self._lock:
            return self._message


class RestartGuard:
    """
    Restart readiness signal.

    Every active holder keeps the host "not ready"; the host must not perform
    a restart until ``ready`` is True again.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._holders = 0

    @property
    def ready(self) -> bool:
        with self._lock:
            return self._holders == 0

    @contextmanager
    def hold(self):
        """Keep the host not ready for the duration of the with-block."""
        with self._lock:
            self._holders += 1
        try:
            yield self
        finally:
            with self._lock:
                self._holders -= 1


# Global instances used by the host application
status_message = StatusMessage()
restart_guard = RestartGuard()
