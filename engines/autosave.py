"""Periodic background saver for an active session."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

LOGGER = logging.getLogger(__name__)

DEFAULT_AUTOSAVE_INTERVAL = 30.0


class AutosaveScheduler:
    """Call ``callback`` every ``interval`` seconds on a daemon thread until stopped.

    The callback is expected to handle its own storage failures; anything that
    escapes it is logged so a single bad tick does not kill the loop.
    """

    def __init__(self, callback: Callable[[], object], interval: float = DEFAULT_AUTOSAVE_INTERVAL, *, name: str = "autosave"):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.callback = callback
        self.interval = float(interval)
        self.name = name
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive() and not self._stop.is_set()

    def start(self) -> None:
        with self._lock:
            if self.running:
                return
            self._stop.clear()
            self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
            self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        with self._lock:
            self._stop.set()
            thread = self._thread
            self._thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def tick(self) -> None:
        try:
            self.callback()
        except Exception:
            LOGGER.exception("Autosave tick %s failed", self.name)

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            self.tick()
