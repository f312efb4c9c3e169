# bgladder/service.py

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from bgladder.api_client import LadderAPIClient
from bgladder.config import Settings, resolve_path
from bgladder.coordinator import ScanCoordinator
from bgladder.database import SeasonStore
from bgladder.lifecycle import SeasonLifecycleDetector
from bgladder.live_status import LiveStatusEnricher
from bgladder.player_stats import PlayerStats
from bgladder.roster import RosterStore
from bgladder.scanner import LeaderboardScanner
from bgladder.stream_client import TwitchClient

logger = logging.getLogger(__name__)


@dataclass
class LadderService:
    settings: Settings
    store: SeasonStore
    roster: RosterStore
    scanner: LeaderboardScanner
    coordinator: ScanCoordinator
    detector: SeasonLifecycleDetector
    enricher: LiveStatusEnricher
    player_stats: Optional[PlayerStats] = None

    def __post_init__(self):
        if self.player_stats is None:
            self.player_stats = PlayerStats(self.store)

    @classmethod
    def build(cls, settings: Optional[Settings] = None) -> "LadderService":
        settings = settings or Settings.from_env()
        store = SeasonStore(settings.db_path)
        store.ensure_catalog(settings.initial_season_id, settings.season_labeler, settings.past_season_ids)

        roster = RosterStore(resolve_path(settings.roster_path))
        client = LadderAPIClient(
            api_base=settings.api_base,
            region=settings.region,
            leaderboard_id=settings.leaderboard_id,
            timeout_seconds=settings.page_timeout_seconds,
        )
        scanner = LeaderboardScanner(
            client,
            roster,
            page_budget=settings.max_pages,
            batch_width=settings.batch_width,
            batch_delay_seconds=settings.batch_delay_seconds,
        )
        coordinator = ScanCoordinator(
            store,
            scanner,
            roster,
            cache_ttl_seconds=settings.cache_ttl_seconds,
            max_workers=settings.background_workers,
            backfill_retry_seconds=settings.backfill_retry_seconds,
        )
        detector = SeasonLifecycleDetector(
            store,
            scanner,
            coordinator,
            settings.season_labeler,
            interval_seconds=settings.detector_interval_seconds,
        )
        enricher = LiveStatusEnricher(
            TwitchClient(settings.twitch_client_id, settings.twitch_token, settings.stream_timeout_seconds),
            store,
            batch_width=settings.stream_batch_width,
        )
        logger.info("Ladder service ready (db=%s, roster=%s)", store.db_path, roster.path)
        return cls(settings, store, roster, scanner, coordinator, detector, enricher)

    def start(self) -> None:
        self.detector.start()

    def stop(self) -> None:
        self.detector.stop()
        self.coordinator.shutdown(wait=True)
        self.store.close()
