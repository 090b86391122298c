"""Background removal of expired shares."""

import logging
import threading
from typing import Optional

from prometheus_client import Counter

from .limiter import RateLimiterRegistry
from .share_store_base import ShareStore, StorageError

logger = logging.getLogger(__name__)

MET_SWEEP_REMOVED = Counter("relay_sweep_removed_total", "Expired shares removed by the sweeper")
MET_SWEEP_FAILURES = Counter("relay_sweep_failures_total", "Sweeper runs that failed")
MET_LIMITERS_EVICTED = Counter("relay_limiters_evicted_total", "Idle rate limiters evicted")


class ExpirySweeper:
    """Periodically purges expired shares from a store.

    Runs on a daemon thread until `stop()` sets the stop event. A failed
    sweep is logged and retried on the next tick. When a limiter registry is
    given, idle limiters are evicted on the same cadence.
    """

    def __init__(
        self,
        store: ShareStore,
        interval: float = 30.0,
        limiter: Optional[RateLimiterRegistry] = None,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.store = store
        self.interval = interval
        self.limiter = limiter
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> int:
        """Run a single sweep and return the number of shares removed."""
        try:
            removed = self.store.purge_expired()
        except StorageError as e:
            MET_SWEEP_FAILURES.inc()
            logger.error("Cleanup error: %s", e)
            removed = 0
        else:
            if removed > 0:
                MET_SWEEP_REMOVED.inc(removed)
                logger.info("Cleaned up %d expired shares", removed)

        if self.limiter is not None:
            evicted = self.limiter.evict_idle()
            if evicted:
                MET_LIMITERS_EVICTED.inc(evicted)
                logger.debug("Evicted %d idle rate limiters", evicted)
        return removed

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.run_once()
            except Exception:  # pylint: disable=broad-except
                MET_SWEEP_FAILURES.inc()
                logger.exception("Unexpected error during expiry sweep")

    def start(self) -> None:
        if self.running:
            if self._stop.is_set():
                logger.warning("Expiry sweeper is still stopping; not restarting")
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="relay-expiry-sweeper", daemon=True)
        self._thread.start()
        logger.debug("Expiry sweeper started (interval=%ss)", self.interval)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                # keep the reference so start() cannot clear the event under it
                logger.warning("Expiry sweeper did not stop within %ss", timeout)
                return
            self._thread = None
        logger.debug("Expiry sweeper stopped")
