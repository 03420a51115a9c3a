from __future__ import annotations

import logging
import threading
from typing import Optional, Protocol, Sequence

logger = logging.getLogger(__name__)


class Sweepable(Protocol):
    def sweep(self) -> int:
        """Purge expired entries; return how many were removed."""


class ExpirySweeper:
    """
    Background thread that periodically purges expired entries from the handoff stores.

    Lookups already drop expired entries lazily; this thread bounds memory for ids that
    are never touched again (abandoned logins, unused tokens).
    """

    def __init__(self, stores: Sequence[Sweepable], interval_seconds: float):
        if interval_seconds <= 0:
            raise ValueError("sweep interval must be positive")
        self._stores = list(stores)
        self._interval = float(interval_seconds)
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        t = self._thread
        return t is not None and t.is_alive()

    def sweep_once(self) -> int:
        """Run one sweep over every store. A failing store does not stop the others."""
        removed = 0
        for store in self._stores:
            try:
                removed += int(store.sweep() or 0)
            except Exception:
                logger.exception("Expiry sweep failed for %s", type(store).__name__)
        return removed

    def start(self) -> None:
        with self._lock:
            if self.running:
                return
            self._stop.clear()
            self._thread = threading.Thread(target=self._run, name="handoff-expiry-sweeper", daemon=True)
            self._thread.start()
        logger.info("Expiry sweeper started (interval=%.1fs)", self._interval)

    def stop(self, timeout: float = 5.0) -> None:
        with self._lock:
            thread = self._thread
            self._thread = None
            self._stop.set()
        if thread is not None:
            thread.join(timeout=timeout)
            logger.info("Expiry sweeper stopped")

    def _run(self) -> None:
        # Event.wait returns True once stop() is called.
        while not self._stop.wait(self._interval):
            removed = self.sweep_once()
            if removed:
                logger.debug("Expiry sweeper removed %d entries", removed)
