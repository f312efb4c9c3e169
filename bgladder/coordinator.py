# bgladder/coordinator.py

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Executor, ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

from bgladder.database import SeasonStore
from bgladder.errors import RosterLoadError, ScanInProgressError, SeasonUnavailableError, UnknownSeasonError
from bgladder.models import RankEntry, SeasonCatalog, SeasonRecord
from bgladder.ranking import missing_targets, with_placeholders
from bgladder.roster import RosterStore
from bgladder.scanner import LeaderboardScanner

logger = logging.getLogger(__name__)


@dataclass
class SeasonView:
    """What the read path hands back for one season."""

    season_id: int
    is_current: bool
    last_scan_at: Optional[float]
    updating: bool
    entries: List[RankEntry] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "season_id": self.season_id,
            "is_current": self.is_current,
            "last_scan_at": self.last_scan_at,
            "updating": self.updating,
            "entries": [entry.to_dict() for entry in self.entries],
        }


class ScanCoordinator:
    """
    Serve season rankings and decide when to scan.

    Each season id is either idle or has exactly one scan in flight; the
    in-progress map guarded by ``_lock`` is the only coordination point.
    Background scans run on a bounded pool and never hold up the caller.
    """

    def __init__(
        self,
        store: SeasonStore,
        scanner: LeaderboardScanner,
        roster: RosterStore,
        cache_ttl_seconds: float = 600.0,
        executor: Optional[Executor] = None,
        max_workers: int = 2,
        wait_timeout_seconds: Optional[float] = 300.0,
        backfill_retry_seconds: float = 300.0,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.scanner = scanner
        self.roster = roster
        self.cache_ttl_seconds = cache_ttl_seconds
        self.wait_timeout_seconds = wait_timeout_seconds
        self.backfill_retry_seconds = backfill_retry_seconds
        self._clock = clock
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="season-scan")
        self._lock = threading.Lock()
        self._in_progress: Dict[int, threading.Event] = {}
        # season id -> earliest time another empty-handed backfill may run
        self._backfill_retry_after: Dict[int, float] = {}

    # --- In-progress permits ---

    def _try_acquire(self, season_id: int) -> Optional[threading.Event]:
        with self._lock:
            if season_id in self._in_progress:
                return None
            event = threading.Event()
            self._in_progress[season_id] = event
            return event

    def _release(self, season_id: int, event: threading.Event) -> None:
        with self._lock:
            if self._in_progress.get(season_id) is event:
                del self._in_progress[season_id]
        event.set()

    def _wait_for(self, season_id: int) -> bool:
        """Block until the in-flight scan for ``season_id`` (if any) finishes."""
        with self._lock:
            event = self._in_progress.get(season_id)
        if event is None:
            return True
        return event.wait(self.wait_timeout_seconds)

    def is_scanning(self, season_id: int) -> bool:
        with self._lock:
            return season_id in self._in_progress

    def in_progress(self) -> List[int]:
        with self._lock:
            return sorted(self._in_progress)

    @contextmanager
    def hold_season(self, season_id: int) -> Iterator[None]:
        """Hold the season's permit, waiting out any scan already running."""
        while True:
            event = self._try_acquire(season_id)
            if event is not None:
                break
            if not self._wait_for(season_id):
                raise ScanInProgressError(f"Timed out waiting for season {season_id} scan")
        try:
            yield
        finally:
            self._release(season_id, event)

    # --- Read path ---

    def _catalog(self) -> SeasonCatalog:
        catalog = self.store.get_catalog()
        if catalog is None:
            raise RuntimeError("Season catalog has not been initialized")
        return catalog

    def current_season_id(self) -> int:
        return self._catalog().current_season_id

    def require_known(self, season_id: int) -> SeasonCatalog:
        """Return the catalog, or raise UnknownSeasonError if it does not list ``season_id``."""
        catalog = self._catalog()
        if not catalog.has(season_id):
            raise UnknownSeasonError(f"Season {season_id} is not in the season catalog")
        return catalog

    def get_season(self, season_id: Optional[int] = None) -> SeasonView:
        if season_id is None:
            season_id = self.current_season_id()
        catalog = self.require_known(season_id)
        if season_id == catalog.current_season_id:
            return self._get_current(season_id)
        return self._get_past(season_id)

    def _get_current(self, season_id: int) -> SeasonView:
        record = self.store.get_current_record(season_id)
        if record is None:
            record = self._scan_sync_or_wait(season_id, is_current=True)
            return self._view(record, updating=False)

        if self.is_stale(record):
            self._launch_background(season_id, None, is_current=True)
        return self._view(record, updating=self.is_scanning(season_id))

    def _get_past(self, season_id: int) -> SeasonView:
        record = self.store.get_archived_record(season_id)
        if record is None:
            record = self._scan_sync_or_wait(season_id, is_current=False)
            return self._view(record, updating=False)

        try:
            targets = self.roster.load_targets()
        except RosterLoadError as e:
            logger.error("Serving season %s archive without backfill check: %s", season_id, e)
            return self._view(record, updating=False)

        missing = missing_targets(record.entries, targets)
        if not missing:
            return self._view(record, updating=self.is_scanning(season_id))

        if self._backfill_allowed(season_id):
            self._launch_background(season_id, [t.player_id for t in missing], is_current=False)
        return SeasonView(
            season_id=season_id,
            is_current=False,
            last_scan_at=record.last_scan_at,
            updating=self.is_scanning(season_id),
            entries=with_placeholders(record.entries, missing),
        )

    def _backfill_allowed(self, season_id: int) -> bool:
        with self._lock:
            retry_after = self._backfill_retry_after.get(season_id)
        return retry_after is None or self._clock() >= retry_after

    def is_stale(self, record: SeasonRecord) -> bool:
        if self._clock() - record.last_scan_at > self.cache_ttl_seconds:
            return True
        try:
            return record.roster_fingerprint != self.roster.fingerprint()
        except RosterLoadError as e:
            logger.warning("Roster fingerprint unavailable: %s", e)
            return False

    @staticmethod
    def _view(record: SeasonRecord, updating: bool) -> SeasonView:
        return SeasonView(
            season_id=record.season_id,
            is_current=record.is_current,
            last_scan_at=record.last_scan_at,
            updating=updating,
            entries=list(record.entries),
        )

    # --- Scanning ---

    def run_scan(
        self,
        season_id: int,
        player_ids: Optional[Sequence[str]] = None,
        is_current: Optional[bool] = None,
    ) -> Optional[SeasonRecord]:
        """
        Scan and persist. The caller must hold the season's permit.

        Returns None, leaving stored data alone, when the upstream produced
        no rows at all.
        """
        if is_current is None:
            is_current = season_id == self.current_season_id()
        result = self.scanner.scan(season_id, player_ids)
        if not result.has_data:
            logger.warning(
                "Season %s scan returned no upstream rows (%d pages, %d failed); keeping stored data",
                season_id,
                result.pages_fetched,
                len(result.failed_pages),
            )
            return None
        scanned_at = self._clock()
        record = self.store.merge_results(
            season_id,
            result.entries,
            targeted=result.targeted,
            is_current=is_current,
            roster_fingerprint=result.roster_fingerprint,
            scanned_at=scanned_at,
        )
        if is_current and not result.targeted:
            try:
                self.store.record_rating_snapshots(season_id, record.entries, scanned_at)
            except RuntimeError as e:
                logger.warning("Season %s rating snapshot not recorded: %s", season_id, e)
        return record

    def scan_now(self, season_id: int, player_ids: Optional[Sequence[str]] = None) -> Optional[SeasonRecord]:
        """Synchronous scan that waits for any running scan of the season first."""
        self.require_known(season_id)
        with self.hold_season(season_id):
            return self.run_scan(season_id, player_ids)

    def ensure_scanned(self, season_id: int) -> Optional[SeasonRecord]:
        """
        Like ``scan_now`` for the whole roster, but reuse a record that another
        caller stored while we waited for the permit.
        """
        is_current = season_id == self.require_known(season_id).current_season_id
        with self.hold_season(season_id):
            record = self.store.get_record(season_id, is_current)
            if record is not None:
                logger.debug("Season %s already scanned; skipping", season_id)
                return record
            return self.run_scan(season_id, is_current=is_current)

    def _scan_sync_or_wait(self, season_id: int, is_current: bool) -> SeasonRecord:
        event = self._try_acquire(season_id)
        if event is None:
            logger.debug("Season %s scan already running; waiting for it", season_id)
            self._wait_for(season_id)
            # A rotation may have archived the season while we waited.
            record = self.store.get_record(season_id, is_current) or self.store.get_record(season_id, not is_current)
            if record is None:
                raise SeasonUnavailableError(f"No data available for season {season_id}")
            return record

        try:
            # Another caller may have finished a scan between our read and the acquire.
            record = self.store.get_record(season_id, is_current)
            if record is None:
                record = self.run_scan(season_id, is_current=is_current)
        except RosterLoadError as e:
            raise SeasonUnavailableError(f"Roster unavailable for season {season_id}: {e}") from e
        finally:
            self._release(season_id, event)
        if record is None:
            raise SeasonUnavailableError(f"Upstream returned no data for season {season_id}")
        return record

    def _launch_background(self, season_id: int, player_ids: Optional[List[str]], is_current: bool) -> bool:
        event = self._try_acquire(season_id)
        if event is None:
            return False
        try:
            self._executor.submit(self._background_scan, season_id, player_ids, is_current, event)
        except RuntimeError as e:
            self._release(season_id, event)
            logger.warning("Could not schedule season %s scan: %s", season_id, e)
            return False
        logger.info(
            "Season %s: background %s scan scheduled",
            season_id,
            f"targeted ({len(player_ids)} players)" if player_ids is not None else "full",
        )
        return True

    def _background_scan(
        self,
        season_id: int,
        player_ids: Optional[List[str]],
        is_current: bool,
        event: threading.Event,
    ) -> None:
        try:
            record = self.run_scan(season_id, player_ids, is_current=is_current)
            if player_ids is not None:
                self._note_backfill(season_id, succeeded=record is not None)
        except Exception:
            logger.exception("Background scan for season %s failed", season_id)
        finally:
            self._release(season_id, event)

    def _note_backfill(self, season_id: int, succeeded: bool) -> None:
        with self._lock:
            if succeeded:
                self._backfill_retry_after.pop(season_id, None)
                return
            self._backfill_retry_after[season_id] = self._clock() + self.backfill_retry_seconds
        logger.info("Season %s backfill found no upstream rows; next attempt in %.0fs",
                    season_id, self.backfill_retry_seconds)

    def force_rescan(self, season_id: int) -> SeasonView:
        """
        Admin rescan: a synchronous full scan whose result replaces the stored
        record. Fails fast if a scan for the season is already running.
        """
        self.require_known(season_id)
        event = self._try_acquire(season_id)
        if event is None:
            raise ScanInProgressError(f"A scan for season {season_id} is already running")
        try:
            record = self.run_scan(season_id)
        except RosterLoadError as e:
            raise SeasonUnavailableError(f"Roster unavailable for season {season_id}: {e}") from e
        finally:
            self._release(season_id, event)
        if record is None:
            raise SeasonUnavailableError(f"Upstream returned no data for season {season_id}")
        return self._view(record, updating=False)

    def shutdown(self, wait: bool = True) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=wait, cancel_futures=True)
