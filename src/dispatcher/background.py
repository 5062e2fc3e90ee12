"""Fire-and-forget work on a shared thread pool."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any

logger = logging.getLogger(__name__)


class BackgroundExecutor:
    """
    Thread pool for work whose trigger does not wait for the outcome.

    Exceptions escaping a job are logged, never re-raised. In-flight futures
    are tracked so callers (and tests) can wait for the pool to go idle.
    """

    def __init__(self, max_workers: int = 4, name: str = "dispatcher-bg") -> None:
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=name)
        self._futures: set[Future[Any]] = set()
        self._lock = threading.Lock()
        self._closed = False

    def submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future[Any]:
        with self._lock:
            if self._closed:
                raise RuntimeError("BackgroundExecutor is shut down")
            future = self._pool.submit(fn, *args, **kwargs)
            self._futures.add(future)
        future.add_done_callback(self._on_done)
        return future

    def _on_done(self, future: Future[Any]) -> None:
        with self._lock:
            self._futures.discard(future)
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.error("Background job failed: %s", exc, exc_info=exc)

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._futures)

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no job is in flight. Returns False on timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._lock:
                futures = list(self._futures)
            if not futures:
                return True
            for future in futures:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    return False
                try:
                    future.result(timeout=remaining)
                except TimeoutError:
                    return False
                except Exception:
                    # Already logged by _on_done.
                    pass

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            self._closed = True
        self._pool.shutdown(wait=wait, cancel_futures=not wait)
