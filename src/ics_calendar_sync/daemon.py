"""
Periodic sync driver.
"""

import logging
import signal
import threading
from collections.abc import Callable

from ics_calendar_sync.models import CalendarSyncError
from ics_calendar_sync.models import SyncInProgressError
from ics_calendar_sync.models import SyncResult

logger = logging.getLogger(__name__)


class SyncDaemon:
    """Runs ``run_once`` at startup and then every ``interval_minutes``.

    ``stop()`` only takes effect between runs: a sync in progress always
    finishes, and no new one starts once a stop has been requested.
    """

    def __init__(
        self,
        run_once: Callable[[], SyncResult],
        interval_minutes: int,
        stop_event: threading.Event | None = None,
    ):
        self.run_once = run_once
        self.interval_seconds = max(1, interval_minutes) * 60
        self._stop_event = stop_event or threading.Event()
        self.runs = 0
        self.failures = 0

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def stop(self) -> None:
        if not self._stop_event.is_set():
            logger.info("Stopping daemon...")
        self._stop_event.set()

    def install_signal_handlers(self) -> None:
        def _handler(signum, frame):
            logger.info(f"Received {signal.Signals(signum).name}")
            self.stop()

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)

    def _tick(self) -> None:
        logger.info("Starting scheduled sync...")
        self.runs += 1
        try:
            result = self.run_once()
        except SyncInProgressError as e:
            logger.warning(f"Skipping scheduled sync: {e}")
            return
        except CalendarSyncError as e:
            self.failures += 1
            logger.error(f"Sync failed: {e}")
            return
        except Exception:
            self.failures += 1
            logger.exception("Unexpected error during scheduled sync")
            return

        if result.has_errors:
            logger.warning(f"Sync completed with {len(result.errors)} errors")

    def run(self) -> None:
        """Block until stopped."""
        logger.info(f"Starting daemon with {self.interval_seconds // 60} minute sync interval")
        if not self.stopping:
            self._tick()
        while not self._stop_event.wait(timeout=self.interval_seconds):
            self._tick()
        logger.info("Daemon stopped")
