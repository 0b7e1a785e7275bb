"""Background pruning of usage entries past the retention horizon."""

from __future__ import annotations

import threading
import time
from typing import Callable, Optional

from quotakeeper._logging import get_logger
from quotakeeper.usage.ledger import UsageLedger
from quotakeeper.usage.windows import HOUR_S, MONTH_S

logger = get_logger("QuotaKeeper.Sweeper")

DEFAULT_RETENTION_S = MONTH_S
DEFAULT_SWEEP_INTERVAL_S = HOUR_S


class RetentionSweeper:
    """Periodically drops ledger entries older than *horizon_s*.

    ``sweep()`` can also be called directly; it is idempotent.

    Usage::

        sweeper = RetentionSweeper(ledger)
        sweeper.start()
        ...
        sweeper.stop()
    """

    def __init__(
        self,
        ledger: UsageLedger,
        horizon_s: float = DEFAULT_RETENTION_S,
        interval_s: float = DEFAULT_SWEEP_INTERVAL_S,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if horizon_s <= 0:
            raise ValueError(f"horizon_s must be positive, got {horizon_s}")
        if interval_s <= 0:
            raise ValueError(f"interval_s must be positive, got {interval_s}")
        self._ledger = ledger
        self.horizon_s = horizon_s
        self.interval_s = interval_s
        self._clock = clock
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def sweep(self, now: Optional[float] = None) -> int:
        """Prune aged entries now.  Returns the number removed."""
        now = self._clock() if now is None else now
        removed = self._ledger.prune(now, self.horizon_s)
        if removed:
            days = self.horizon_s / 86400
            logger.info(
                f"Cleaned up {removed} expired usage entries "
                f"(older than {days:g} days)"
            )
        return removed

    def start(self) -> None:
        """Sweep every ``interval_s`` seconds on a daemon thread."""
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="QuotaKeeper-Sweeper", daemon=True
        )
        self._thread.start()
        logger.info(f"Started retention sweeper (interval {self.interval_s:g}s)")

    def stop(self, timeout: float = 3.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
            logger.info("Retention sweeper stopped")

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval_s):
            try:
                self.sweep()
            except Exception:
                logger.exception("Retention sweep failed; will retry next cycle")
