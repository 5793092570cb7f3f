"""Expiry sweeper.

Finds tickets whose response window has passed and applies the configured
no-response outcome through TicketEngine.expire_ticket(). Each ticket is
re-checked inside its own unit of work, so overlapping sweeps (or a sweep
racing a late response) act on a deadline at most once.
"""

import logging
import threading

from protocol import EngineError, SchedulerSkip

logger = logging.getLogger(__name__)


class ExpirySweeper:
    def __init__(self, engine, interval: float | None = None, clock=None):
        self.engine = engine
        self.interval = interval if interval is not None else engine.config.sweep_interval
        self.clock = clock or engine.clock
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def sweep_once(self, limit: int = 200) -> dict:
        """One pass over overdue tickets, then retry any queued payouts."""
        now = self.clock()
        summary = {"expired": 0, "skipped": 0, "failed": 0, "payouts": 0}
        for due in self.engine.store.due_tickets(now, limit):
            try:
                self.engine.expire_ticket(due["id"])
                summary["expired"] += 1
            except SchedulerSkip as e:
                logger.debug("sweep skip %s: %s", due["id"], e.message)
                summary["skipped"] += 1
            except EngineError as e:
                logger.warning("sweep could not expire %s %s: %s", due["kind"], due["id"], e.message)
                summary["failed"] += 1
        summary["payouts"] = self.engine.escrow.dispatch_pending()
        if summary["expired"] or summary["failed"] or summary["payouts"]:
            logger.info("sweep: %(expired)d expired, %(skipped)d skipped, "
                        "%(failed)d failed, %(payouts)d payouts sent", summary)
        return summary

    def run_forever(self):
        """Background loop: sweep, sleep, repeat until stop()."""
        logger.info("expiry sweeper running every %ss", self.interval)
        while not self._stop.wait(self.interval):
            try:
                self.sweep_once()
            except Exception:
                logger.exception("sweep crashed; retrying next interval")

    def start(self) -> threading.Thread:
        self._stop.clear()
        self._thread = threading.Thread(target=self.run_forever, name="expiry-sweeper", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, timeout: float | None = None):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
