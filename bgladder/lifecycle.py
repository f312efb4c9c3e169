# bgladder/lifecycle.py

from __future__ import annotations

import logging
import threading
from typing import Optional

from bgladder.config import SeasonLabeler
from bgladder.coordinator import ScanCoordinator
from bgladder.database import SeasonStore
from bgladder.scanner import LeaderboardScanner

logger = logging.getLogger(__name__)


class SeasonLifecycleDetector:
    """
    Watch for the next season to open upstream and rotate to it.

    This is the only writer of the catalog's current-season pointer.
    """

    def __init__(
        self,
        store: SeasonStore,
        scanner: LeaderboardScanner,
        coordinator: ScanCoordinator,
        labeler: SeasonLabeler,
        interval_seconds: float = 3600.0,
    ):
        self.store = store
        self.scanner = scanner
        self.coordinator = coordinator
        self.labeler = labeler
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def check_once(self) -> Optional[int]:
        """
        Probe page 1 of the season after the current one. Returns the new
        season id when a rotation happened, otherwise None.
        """
        catalog = self.store.get_catalog()
        if catalog is None:
            logger.warning("Season catalog missing; skipping lifecycle probe")
            return None

        outgoing = catalog.current_season_id
        candidate = outgoing + 1
        rows = self.scanner.probe(candidate)
        if rows == 0:
            logger.debug("Season %s not open yet", candidate)
            return None

        logger.info("Season %s is live upstream (%d rows on page 1); closing season %s", candidate, rows, outgoing)
        with self.coordinator.hold_season(outgoing):
            final = self.coordinator.run_scan(outgoing, is_current=True)
            if final is None:
                logger.warning("Final scan of season %s returned nothing; archiving last known data", outgoing)
            self.store.archive_season(outgoing)

            # Re-read in case the catalog changed while the final scan ran.
            catalog = self.store.get_catalog() or catalog
            self.store.save_catalog(catalog.with_new_current(candidate, self.labeler.label_for(candidate)))

        logger.info("Current season is now %s (%s)", candidate, self.labeler.label_for(candidate))
        self.coordinator.ensure_scanned(candidate)
        return candidate

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.check_once()
            except Exception:
                logger.exception("Season lifecycle check failed")
            if self._stop.wait(self.interval_seconds):
                break

    def start(self) -> None:
        """Run one check immediately, then every ``interval_seconds`` on a daemon thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="season-lifecycle", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
