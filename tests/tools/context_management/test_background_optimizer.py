"""
Tests for the debounced flusher and the pruning timer.
"""

import threading

from agent_rewind.errors import PersistenceWriteError
from agent_rewind.tools.context_management.background_optimizer import (
    BackgroundOptimizer,
    DebouncedFlusher,
)


class TestDebouncedFlusher:
    def test_burst_of_changes_flushes_once(self):
        flushed = threading.Event()
        calls = []

        def flush():
            calls.append(1)
            flushed.set()

        flusher = DebouncedFlusher(flush, delay=0.05, lock=threading.RLock())
        for _ in range(5):
            flusher.mark_dirty()

        assert flushed.wait(2.0)
        flusher.close()
        assert calls == [1]
        assert not flusher.dirty

    def test_flush_now_without_changes_is_a_no_op(self):
        calls = []
        flusher = DebouncedFlusher(lambda: calls.append(1), delay=10, lock=threading.RLock())
        assert flusher.flush_now() is True
        assert calls == []

    def test_failed_flush_is_retried_once(self):
        attempts = []

        def flush():
            attempts.append(1)
            if len(attempts) == 1:
                raise PersistenceWriteError("disk full")

        flusher = DebouncedFlusher(flush, delay=10, lock=threading.RLock())
        flusher.mark_dirty()

        assert flusher.flush_now() is True
        assert len(attempts) == 2
        assert flusher.failed_flushes == 0

    def test_persistent_failure_is_logged_not_raised(self):
        def flush():
            raise PersistenceWriteError("read-only")

        flusher = DebouncedFlusher(flush, delay=10, lock=threading.RLock())
        flusher.mark_dirty()

        assert flusher.flush_now() is False
        assert flusher.failed_flushes == 1
        assert flusher.dirty

    def test_close_flushes_pending_changes(self):
        calls = []
        flusher = DebouncedFlusher(lambda: calls.append(1), delay=10, lock=threading.RLock())
        flusher.mark_dirty()

        assert flusher.close() is True
        assert calls == [1]
        flusher.mark_dirty()
        assert not flusher.dirty


class TestBackgroundOptimizer:
    def test_run_once(self):
        calls = []
        optimizer = BackgroundOptimizer(lambda: calls.append(1), interval=10, lock=threading.RLock())
        optimizer.run_once()

        assert calls == [1]
        assert optimizer.runs == 1

    def test_periodic_runs(self):
        ran = threading.Event()
        optimizer = BackgroundOptimizer(ran.set, interval=0.02, lock=threading.RLock())
        optimizer.start()
        try:
            assert ran.wait(2.0)
        finally:
            optimizer.stop()
