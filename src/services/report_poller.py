from __future__ import annotations

import logging
import random
import threading
from datetime import timedelta
from typing import Protocol

from services.compliance_scheduler import ScanResult

logger = logging.getLogger(__name__)


class DueReportProcessor(Protocol):
    def process_due_reports(self) -> ScanResult: ...


class ReportPoller:
    """Runs the compliance scan once on start and then on a fixed interval.

    Each wait gets up to ``jitter`` of random extra delay. After a failed scan the wait
    doubles, capped at ``max_backoff``, and resets once a scan succeeds. A cycle that
    starts late does one ordinary scan; missed cycles are not caught up.
    """

    def __init__(
        self,
        scheduler: DueReportProcessor,
        *,
        interval: timedelta = timedelta(minutes=30),
        jitter: timedelta = timedelta(seconds=60),
        max_backoff: timedelta = timedelta(hours=4),
        rng: random.Random | None = None,
    ) -> None:
        if interval <= timedelta(0):
            msg = "interval must be positive"
            raise ValueError(msg)
        self.scheduler = scheduler
        self.interval = interval
        self.jitter = jitter
        self.max_backoff = max(max_backoff, interval)
        self._rng = rng or random.Random()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._consecutive_failures = 0

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="report-poller", daemon=True)
        self._thread.start()
        logger.info("Report poller started interval=%s", self.interval)

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Report poller stopped")

    def run_once(self) -> ScanResult | None:
        """Run one scan. Returns None when the scan itself raised."""
        try:
            result = self.scheduler.process_due_reports()
        except Exception:
            self._consecutive_failures += 1
            logger.exception("Compliance scan failed (%d in a row)", self._consecutive_failures)
            return None
        self._consecutive_failures = 0
        return result

    def next_delay(self) -> timedelta:
        base = self.interval * 2**self._consecutive_failures if self._consecutive_failures else self.interval
        base = min(base, self.max_backoff)
        extra = self._rng.uniform(0, self.jitter.total_seconds()) if self.jitter > timedelta(0) else 0.0
        return base + timedelta(seconds=extra)

    def _run(self) -> None:
        while not self._stop.is_set():
            self.run_once()
            delay = self.next_delay()
            logger.debug("Next compliance scan in %s", delay)
            if self._stop.wait(delay.total_seconds()):
                break
