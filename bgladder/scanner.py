# bgladder/scanner.py

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from bgladder.api_client import LadderAPIClient
from bgladder.errors import UpstreamError
from bgladder.matching import IDENTIFIER_EXTRACTORS, Extractor, apply_rows
from bgladder.models import RankEntry, ScanJob, ScanResult
from bgladder.roster import RosterStore

logger = logging.getLogger(__name__)

PageResult = Tuple[int, List[Dict[str, Any]], bool]


class LeaderboardScanner:
    """
    One bounded sweep of the upstream ladder for a season.

    Pages are fetched in batches of ``batch_width`` concurrent requests and
    batches are consumed strictly in page order. The sweep stops when a whole
    batch comes back empty, when every target is resolved, or when the page
    budget runs out. A failed page counts as an empty page.
    """

    def __init__(
        self,
        client: LadderAPIClient,
        roster: RosterStore,
        page_budget: int = 100,
        batch_width: int = 5,
        batch_delay_seconds: float = 0.5,
        extractors: Sequence[Extractor] = IDENTIFIER_EXTRACTORS,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if batch_width < 1:
            raise ValueError("batch_width must be at least 1")
        self.client = client
        self.roster = roster
        self.page_budget = page_budget
        self.batch_width = batch_width
        self.batch_delay_seconds = batch_delay_seconds
        self.extractors = list(extractors)
        self._sleep = sleep

    # --- Entry points ---

    def scan(self, season_id: int, player_ids: Optional[Iterable[str]] = None) -> ScanResult:
        """
        Scan ``season_id`` for the whole roster, or only for ``player_ids``.

        Raises RosterLoadError if the roster cannot be read; nothing else
        escapes.
        """
        fingerprint = self.roster.fingerprint()
        targets = self.roster.load_targets()
        targeted = player_ids is not None
        if targeted:
            wanted = {str(p).lower() for p in player_ids}
            targets = [t for t in targets if t.full_key in wanted]

        job = ScanJob(
            season_id=season_id,
            targets=tuple(targets),
            targeted=targeted,
            page_budget=self.page_budget,
            concurrency_width=self.batch_width,
            inter_batch_delay=self.batch_delay_seconds,
        )
        return self.run_job(job, roster_fingerprint=fingerprint)

    def run_job(self, job: ScanJob, roster_fingerprint: Optional[str] = None) -> ScanResult:
        entries: Dict[str, RankEntry] = {t.full_key: RankEntry.unresolved(t) for t in job.targets}
        result = ScanResult(
            season_id=job.season_id,
            entries=[entries[t.full_key] for t in job.targets],
            targeted=job.targeted,
            roster_fingerprint=roster_fingerprint,
        )
        if not job.targets:
            logger.info("Season %s: nothing to scan", job.season_id)
            return result

        started = time.monotonic()
        logger.info(
            "Season %s: %s scan for %d players (budget=%d, width=%d)",
            job.season_id,
            "targeted" if job.targeted else "full",
            len(job.targets),
            job.page_budget,
            job.concurrency_width,
        )

        with ThreadPoolExecutor(max_workers=job.concurrency_width) as executor:
            for first_page in range(1, job.page_budget + 1, job.concurrency_width):
                last_page = min(first_page + job.concurrency_width - 1, job.page_budget)
                pages = list(range(first_page, last_page + 1))
                batch = list(executor.map(lambda p: self._fetch_page_safe(job.season_id, p), pages))

                batch_rows = 0
                for page, rows, ok in batch:
                    result.pages_fetched += 1
                    if not ok:
                        result.failed_pages.append(page)
                    batch_rows += len(rows)
                    apply_rows(rows, job.targets, entries, self.extractors)
                result.rows_seen += batch_rows

                if batch_rows == 0:
                    logger.debug("Season %s: pages %d-%d empty, stopping", job.season_id, first_page, last_page)
                    break
                if all(entry.found for entry in result.entries):
                    logger.debug("Season %s: all targets resolved by page %d", job.season_id, last_page)
                    break
                if last_page < job.page_budget and job.inter_batch_delay > 0:
                    self._sleep(job.inter_batch_delay)

        logger.info(
            "Season %s: scan finished in %.1fs (pages=%d, rows=%d, failed=%d, resolved=%d/%d)",
            job.season_id,
            time.monotonic() - started,
            result.pages_fetched,
            result.rows_seen,
            len(result.failed_pages),
            result.resolved_count,
            len(result.entries),
        )
        return result

    def probe(self, season_id: int) -> int:
        """Return the number of rows on page 1 of ``season_id`` (0 on failure)."""
        _, rows, _ = self._fetch_page_safe(season_id, 1)
        return len(rows)

    # --- Helpers ---

    def _fetch_page_safe(self, season_id: int, page: int) -> PageResult:
        try:
            return page, self.client.fetch_page(season_id, page), True
        except UpstreamError as e:
            logger.warning("Season %s page %s failed, treating as empty: %s", season_id, page, e)
            return page, [], False
