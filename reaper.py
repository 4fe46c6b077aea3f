"""
Background release of stale pending orders.

The loop only runs while someone is watching the order book (an admin
order view); ``acquire``/``release`` are reference counted.
"""
import logging
import os
import threading
from contextlib import contextmanager

logger = logging.getLogger(__name__)

AUTO_RELEASE_INTERVAL_SECONDS = float(os.getenv("AUTO_RELEASE_INTERVAL_SECONDS", "60"))


class StaleOrderReaper:
    def __init__(self, engine, interval: float = AUTO_RELEASE_INTERVAL_SECONDS):
        self.engine = engine
        self.interval = interval
        self._lock = threading.Lock()
        self._watchers = 0
        self._stop = None
        self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def watchers(self) -> int:
        return self._watchers

    def tick(self) -> int:
        try:
            return self.engine.auto_release_stale()
        except Exception:
            logger.warning("Auto-release pass failed", exc_info=True)
            return 0

    def _run(self, stop: threading.Event):
        while True:
            self.tick()
            if stop.wait(self.interval):
                return

    def acquire(self):
        with self._lock:
            self._watchers += 1
            if self._watchers == 1:
                self._stop = threading.Event()
                self._thread = threading.Thread(
                    target=self._run, args=(self._stop,), name="stale-order-reaper", daemon=True)
                self._thread.start()
                logger.debug("Stale order reaper started (every %ss)", self.interval)

    def release(self):
        with self._lock:
            if self._watchers == 0:
                return
            self._watchers -= 1
            if self._watchers == 0:
                self._halt()

    def stop(self):
        with self._lock:
            self._watchers = 0
            self._halt()

    def _halt(self):
        if self._thread is None:
            return
        self._stop.set()
        if self._thread is not threading.current_thread():
            self._thread.join(timeout=max(self.interval, 1.0))
        self._thread = None
        logger.debug("Stale order reaper stopped")

    @contextmanager
    def watching(self):
        self.acquire()
        try:
            yield self
        finally:
            self.release()
