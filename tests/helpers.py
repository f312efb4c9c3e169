# tests/helpers.py

import json
import threading

from bgladder.errors import UpstreamError
from bgladder.models import RankEntry
from bgladder.roster import RosterStore
from bgladder.scanner import LeaderboardScanner


class FakeLadderClient:
    """In-memory stand-in for LadderAPIClient keyed by (season_id, page)."""

    def __init__(self, pages=None, failing=None, gate=None):
        self.pages = pages or {}
        self.failing = set(failing or ())
        self.gate = gate
        self.calls = []
        self._lock = threading.Lock()

    def fetch_page(self, season_id, page):
        with self._lock:
            self.calls.append((season_id, page))
        if self.gate is not None:
            self.gate.wait(5)
        if (season_id, page) in self.failing:
            raise UpstreamError(f"boom on page {page}")
        return [dict(row) for row in self.pages.get(season_id, {}).get(page, [])]

    def pages_called(self, season_id):
        with self._lock:
            return sorted(p for s, p in self.calls if s == season_id)


def row(identifier, rank, rating, field="accountid"):
    return {field: identifier, "rank": rank, "rating": rating}


def write_roster(path, items) -> RosterStore:
    path.write_text(json.dumps(items), encoding="utf-8")
    return RosterStore(str(path))


def make_scanner(client, roster, page_budget=10, batch_width=1) -> LeaderboardScanner:
    return LeaderboardScanner(
        client,
        roster,
        page_budget=page_budget,
        batch_width=batch_width,
        batch_delay_seconds=0,
    )


def entry(player_id, rank=None, rating=None, local_rank=0):
    found = rank is not None
    return RankEntry(
        player_id=player_id,
        found=found,
        external_rank=rank,
        rating=rating if rating is not None else ("no-data" if not found else 0),
        local_rank=local_rank,
    )
