# Bountyline Dispute-Window Scheduler
# One sweeper thread. Each pass:
#   1. auto-releases delivered transactions whose dispute window has elapsed
#   2. retries funding for transactions still pending after a rail failure
#   3. refreshes reputation entries older than the cache max age
#
# A sweep is safe to run concurrently with itself and with request handlers:
# every release goes through the same locked compare-and-set as a buyer
# release, so a transaction is paid out at most once.

import logging
import os
import threading
import time
from typing import Callable, Optional

from errors import MarketError, RailFailure
from escrow import EscrowService, get_escrow_service
from reputation import ReputationEngine

LOG_FILE = os.environ.get("BOUNTYLINE_LOG_FILE", "bountyline.log")
SWEEP_INTERVAL_SEC = int(os.environ.get("BOUNTYLINE_SWEEP_INTERVAL_SEC", "300"))


def setup_logging(log_file=None, level=logging.INFO):
    """Console + file handlers on the "bountyline" logger. Idempotent."""
    log_file = log_file or LOG_FILE
    logger = logging.getLogger("bountyline")

    if logger.handlers:
        return logger

    logger.setLevel(level)
    fmt = logging.Formatter(
        "[%(asctime)s] %(levelname)-8s %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
    )

    fh = logging.FileHandler(log_file)
    fh.setLevel(level)
    fh.setFormatter(fmt)
    logger.addHandler(fh)

    ch = logging.StreamHandler()
    ch.setLevel(level)
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    return logger


log = logging.getLogger("bountyline")


class DisputeWindowScheduler:
    def __init__(self, escrow: Optional[EscrowService] = None,
                 reputation: Optional[ReputationEngine] = None,
                 interval_sec: int = SWEEP_INTERVAL_SEC,
                 clock: Optional[Callable[[], float]] = None):
        self.escrow = escrow or get_escrow_service()
        self.reputation = reputation or self.escrow.reputation
        self.interval_sec = interval_sec
        self.clock = clock or self.escrow.clock
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._sweep_lock = threading.Lock()

    def sweep(self, now: Optional[float] = None) -> dict:
        now = self.clock() if now is None else now
        summary = {
            "swept_at": now,
            "auto_released": [],
            "release_failed": [],
            "funded": [],
            "funding_deferred": 0,
            "reputation_refreshed": 0,
        }

        with self._sweep_lock:
            for tx_id in self.escrow.due_for_auto_release(now):
                try:
                    if self.escrow.auto_release(tx_id, now=now):
                        summary["auto_released"].append(tx_id)
                except RailFailure as e:
                    summary["release_failed"].append(tx_id)
                    log.warning("AUTO-RELEASE deferred tx=%s | %s", tx_id, e.message)
                except MarketError as e:
                    log.info("AUTO-RELEASE skipped tx=%s | %s", tx_id, e.message)

            for tx_id in self.escrow.pending_funding():
                try:
                    self.escrow.fund(tx_id)
                    summary["funded"].append(tx_id)
                except RailFailure as e:
                    summary["funding_deferred"] += 1
                    log.debug("FUNDING deferred tx=%s | %s", tx_id, e.message)
                except MarketError as e:
                    log.info("FUNDING skipped tx=%s | %s", tx_id, e.message)

            summary["reputation_refreshed"] = self.reputation.refresh_stale(now)

        if summary["auto_released"] or summary["release_failed"] or summary["funded"]:
            log.info("SWEEP released=%d failed=%d funded=%d deferred=%d rep=%d",
                     len(summary["auto_released"]), len(summary["release_failed"]),
                     len(summary["funded"]), summary["funding_deferred"],
                     summary["reputation_refreshed"])
        return summary

    def _loop(self):
        log.info("SWEEPER started (interval=%ds)", self.interval_sec)
        while not self._stop.is_set():
            try:
                self.sweep()
            except Exception as e:
                log.error("SWEEP FAILED: %s", e)
            self._stop.wait(self.interval_sec)
        log.info("SWEEPER stopped")

    def start(self) -> threading.Thread:
        if self._thread and self._thread.is_alive():
            return self._thread
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="dispute-sweeper", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, timeout: float = 5.0):
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())


_scheduler: Optional[DisputeWindowScheduler] = None


def get_scheduler() -> DisputeWindowScheduler:
    global _scheduler
    if _scheduler is None:
        _scheduler = DisputeWindowScheduler()
    return _scheduler


def run_forever():
    """Foreground sweeper for `cli.py sweeper`."""
    setup_logging()
    scheduler = get_scheduler()
    scheduler.start()
    try:
        while scheduler.running:
            time.sleep(1)
    except KeyboardInterrupt:
        scheduler.stop()
