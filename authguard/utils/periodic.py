"""
Periodic background tasks on daemon threads.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional


class PeriodicTask:
    """
    Runs ``action`` every ``interval_ms`` on a daemon thread.

    The first run happens one interval after start. Errors raised by the
    action are logged and the loop carries on. ``stop()`` is idempotent and
    wakes the thread immediately.
    """

    __slots__ = ("_name", "_action", "_interval_ms", "_stop_event", "_thread", "_log")

    def __init__(
        self,
        name: str,
        action: Callable[[], object],
        interval_ms: int,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._name = name
        self._action = action
        self._interval_ms = interval_ms
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._log = logger or logging.getLogger("authguard.tasks")

    @property
    def name(self) -> str:
        return self._name

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the loop thread."""
        if self.running:
            return

        self._stop_event = threading.Event()
        self._thread = threading.Thread(target=self._loop, daemon=True, name=self._name)
        self._thread.start()
        self._log.debug(f"{self._name} started (every {self._interval_ms}ms)")

    def stop(self, timeout: float = 2.0) -> None:
        """Stop the loop thread and wait briefly for it to exit."""
        self._stop_event.set()
        thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)

    def _loop(self) -> None:
        stop_event = self._stop_event
        while not stop_event.wait(self._interval_ms / 1000.0):
            try:
                self._action()
            except Exception as e:
                self._log.error(f"{self._name} failed: {e}")
