"""
Periodic purge of expired retained messages.
"""
import threading
import time
import logging
from typing import Optional

from .store import MessageStore


logger = logging.getLogger(__name__)


class ExpirySweeper:
    """Removes expired messages from the store on a fixed period"""

    def __init__(self, store: MessageStore, interval_ms: int = 1000):
        if interval_ms < 1:
            raise ValueError("interval_ms must be at least 1")
        self.store = store
        self.interval = interval_ms / 1000.0

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._sweep_worker,
            daemon=True,
            name="ExpirySweeper"
        )
        self._thread.start()
        logger.info(f"Expiry sweeper started (every {self.interval:.3f}s)")

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5)
        logger.info("Expiry sweeper stopped")

    def sweep(self, now: Optional[float] = None) -> int:
        """Run one sweep immediately"""
        removed = self.store.sweep_expired(now if now is not None else time.time())
        if removed:
            logger.info(f"Swept {removed} expired messages")
        return removed

    def _sweep_worker(self) -> None:
        while not self._stop_event.wait(self.interval):
            try:
                self.sweep()
            except Exception as e:
                logger.error(f"Error in expiry sweeper: {e}")
