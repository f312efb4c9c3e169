# bgladder/models.py

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from bgladder.config import NO_DATA_RATING

Rating = Union[int, float, str]


@dataclass(frozen=True)
class PlayerTarget:
    """A tracked player as loaded from the roster for the duration of one scan."""

    player_id: str
    full_key: str
    name_key: str
    stream_handle: Optional[str] = None

    @classmethod
    def from_identifier(cls, identifier: str, stream_handle: Optional[str] = None) -> "PlayerTarget":
        player_id = str(identifier).strip()
        full_key = player_id.lower()
        name_key = full_key.split("#", 1)[0]
        handle = str(stream_handle).strip() if stream_handle else None
        return cls(player_id=player_id, full_key=full_key, name_key=name_key, stream_handle=handle or None)

    @property
    def has_discriminator(self) -> bool:
        return self.full_key != self.name_key


@dataclass
class RankEntry:
    player_id: str
    found: bool = False
    external_rank: Optional[int] = None
    rating: Rating = NO_DATA_RATING
    local_rank: int = 0
    stream_handle: Optional[str] = None
    live: bool = False
    avatar_ref: Optional[str] = None
    badges: List[str] = field(default_factory=list)

    @property
    def key(self) -> str:
        return self.player_id.lower()

    @classmethod
    def unresolved(cls, target: PlayerTarget, rating: Rating = NO_DATA_RATING) -> "RankEntry":
        return cls(player_id=target.player_id, rating=rating, stream_handle=target.stream_handle)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "player_id": self.player_id,
            "found": self.found,
            "external_rank": self.external_rank,
            "rating": self.rating,
            "local_rank": self.local_rank,
            "stream_handle": self.stream_handle,
            "live": self.live,
            "avatar_ref": self.avatar_ref,
            "badges": list(self.badges),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RankEntry":
        return cls(
            player_id=str(data["player_id"]),
            found=bool(data.get("found", False)),
            external_rank=data.get("external_rank"),
            rating=data.get("rating", NO_DATA_RATING),
            local_rank=int(data.get("local_rank") or 0),
            stream_handle=data.get("stream_handle"),
            live=bool(data.get("live", False)),
            avatar_ref=data.get("avatar_ref"),
            badges=list(data.get("badges") or []),
        )


@dataclass
class SeasonRecord:
    season_id: int
    is_current: bool
    last_scan_at: float
    roster_fingerprint: Optional[str]
    entries: List[RankEntry] = field(default_factory=list)


@dataclass(frozen=True)
class SeasonInfo:
    season_id: int
    display_name: str


@dataclass
class SeasonCatalog:
    """Known seasons, oldest first, plus the pointer to the current one."""

    current_season_id: int
    seasons: List[SeasonInfo] = field(default_factory=list)

    def has(self, season_id: int) -> bool:
        return any(s.season_id == season_id for s in self.seasons)

    def with_new_current(self, season_id: int, display_name: str) -> "SeasonCatalog":
        seasons = [s for s in self.seasons if s.season_id != season_id]
        seasons.append(SeasonInfo(season_id, display_name))
        seasons.sort(key=lambda s: s.season_id)
        return SeasonCatalog(current_season_id=season_id, seasons=seasons)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current_season": self.current_season_id,
            "seasons": [
                {
                    "id": s.season_id,
                    "name": s.display_name,
                    "is_current": s.season_id == self.current_season_id,
                }
                for s in self.seasons
            ],
        }


@dataclass(frozen=True)
class ScanJob:
    season_id: int
    targets: Tuple[PlayerTarget, ...]
    targeted: bool = False
    page_budget: int = 100
    concurrency_width: int = 5
    inter_batch_delay: float = 0.5


@dataclass
class ScanResult:
    season_id: int
    entries: List[RankEntry]
    targeted: bool
    roster_fingerprint: Optional[str] = None
    pages_fetched: int = 0
    rows_seen: int = 0
    failed_pages: List[int] = field(default_factory=list)

    @property
    def resolved_count(self) -> int:
        return sum(1 for entry in self.entries if entry.found)

    @property
    def has_data(self) -> bool:
        return self.rows_seen > 0
