"""Background timers for a task's context state: debounced flush and periodic pruning.

Both timers run their callback under the task lock they are given, so a flush
and a prune never interleave with each other or with other store mutators.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

from agent_rewind.errors import PersistenceWriteError, log_exception

logger = logging.getLogger(__name__)


class DebouncedFlusher:
    """Flush after ``delay`` seconds without new changes, or on demand."""

    def __init__(self, flush: Callable[[], None], delay: float,
                 lock: threading.RLock, name: str = "context-flush") -> None:
        self._flush = flush
        self.delay = delay
        self._lock = lock
        self._name = name
        self._timer: Optional[threading.Timer] = None
        self._timer_lock = threading.Lock()
        self._dirty = False
        self._closed = False
        self.failed_flushes = 0

    @property
    def dirty(self) -> bool:
        return self._dirty

    def mark_dirty(self) -> None:
        """Record a change and restart the inactivity timer."""
        with self._timer_lock:
            if self._closed:
                return
            self._dirty = True
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.delay, self._on_timer)
            self._timer.name = self._name
            self._timer.daemon = True
            self._timer.start()

    def _on_timer(self) -> None:
        with self._timer_lock:
            self._timer = None
        self.flush_now()

    def flush_now(self) -> bool:
        """Flush pending changes immediately; retried once, then logged.

        Returns:
            True if the state on disk is current.
        """
        with self._timer_lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        with self._lock:
            if not self._dirty:
                return True
            for attempt in (1, 2):
                try:
                    self._flush()
                    self._dirty = False
                    return True
                except PersistenceWriteError as e:
                    if attempt == 1:
                        logger.warning("Flush failed, retrying once: %s", e)
                        continue
                    self.failed_flushes += 1
                    log_exception(e, logger, component="DebouncedFlusher", operation="flush")
        return False

    def close(self) -> bool:
        """Flush whatever is pending and stop accepting changes."""
        flushed = self.flush_now()
        with self._timer_lock:
            self._closed = True
        return flushed


class BackgroundOptimizer:
    """Run a maintenance callback (overlay pruning) on a fixed interval."""

    def __init__(self, optimize: Callable[[], None], interval: float,
                 lock: threading.RLock) -> None:
        self._optimize = optimize
        self.interval = interval
        self._lock = lock
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.runs = 0

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            logger.warning("Background optimizer already running")
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="context-prune", daemon=True)
        self._thread.start()
        logger.debug("Started background optimizer (interval %.1fs)", self.interval)

    def stop(self) -> None:
        self._stop.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5.0)
            logger.debug("Stopped background optimizer")

    def run_once(self) -> None:
        with self._lock:
            self._optimize()
            self.runs += 1

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.run_once()
            except Exception as exc:  # pragma: no cover - keep the timer alive
                logger.error("Error in background optimization: %s", exc)
