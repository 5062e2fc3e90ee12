"""Periodic driver for the suggestion cycle."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)


class SuggestionScheduler:
    """
    Run ``cycle`` on a daemon thread: once after ``initial_delay`` seconds,
    then every ``interval`` seconds until :meth:`stop`.
    """

    def __init__(
        self,
        cycle: Callable[[], Any],
        interval: float = 300.0,
        initial_delay: float = 10.0,
    ) -> None:
        self._cycle = cycle
        self.interval = interval
        self.initial_delay = initial_delay
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.runs = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            logger.warning("Suggestion scheduler already running")
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop, name="suggestion-scheduler", daemon=True
        )
        self._thread.start()
        logger.info("Suggestion scheduler started (interval: %.0fs)", self.interval)

    def stop(self, timeout: float | None = 5.0) -> None:
        if self._thread is None:
            return
        self._stop.set()
        self._thread.join(timeout)
        self._thread = None
        logger.info("Suggestion scheduler stopped")

    def _loop(self) -> None:
        delay = self.initial_delay
        while not self._stop.wait(delay):
            try:
                self._cycle()
            except Exception:
                logger.exception("Suggestion cycle failed")
            self.runs += 1
            delay = self.interval
