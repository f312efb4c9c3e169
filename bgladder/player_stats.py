# bgladder/player_stats.py

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from bgladder.database import SeasonStore
from bgladder.models import RankEntry, SeasonRecord


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass
class SeasonStanding:
    season_id: int
    local_rank: int
    external_rank: Optional[int]
    rating: Any

    @classmethod
    def from_entry(cls, season_id: int, entry: RankEntry) -> "SeasonStanding":
        return cls(season_id, entry.local_rank, entry.external_rank, entry.rating)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "season_id": self.season_id,
            "local_rank": self.local_rank,
            "external_rank": self.external_rank,
            "rating": self.rating,
        }


class PlayerStats:
    """
    Per-player views over stored data: standings across archived seasons, the
    current standing, peak rating and daily rating history. Read-only; never
    triggers a scan.
    """

    def __init__(self, store: SeasonStore):
        self.store = store

    @staticmethod
    def _standing(record: Optional[SeasonRecord], key: str) -> Optional[SeasonStanding]:
        if record is None:
            return None
        for entry in record.entries:
            if entry.key == key and entry.found:
                return SeasonStanding.from_entry(record.season_id, entry)
        return None

    def history(self, player_id: str) -> List[Dict[str, Any]]:
        return self.store.get_rating_history(player_id)

    def summary(self, player_id: str) -> Dict[str, Any]:
        key = player_id.strip().lower()

        historical = []
        for record in self.store.list_archived_records():
            standing = self._standing(record, key)
            if standing is not None:
                historical.append(standing)

        current = None
        catalog = self.store.get_catalog()
        if catalog is not None:
            current = self._standing(self.store.get_current_record(catalog.current_season_id), key)

        ratings = [s.rating for s in historical if _is_number(s.rating)]
        if current is not None and _is_number(current.rating):
            ratings.append(current.rating)
        ratings.extend(point["rating"] for point in self.history(player_id))

        return {
            "player_id": player_id,
            "peak": max(ratings) if ratings else None,
            "current": current.to_dict() if current else None,
            "historical": [s.to_dict() for s in historical],
        }
