# bgladder/config.py

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Tuple

PROJECT_ROOT = Path(__file__).resolve().parents[1]

DEFAULT_API_BASE = "https://hearthstone.blizzard.com/en-us/api/community/leaderboardsData"

# Rating placeholders shown instead of a number.
NO_DATA_RATING = "no-data"
UPDATING_RATING = "updating"


def resolve_path(raw: str) -> str:
    """Return an absolute path anchored to project root when relative."""
    path = Path(raw)
    if path.is_absolute():
        return str(path)
    return str(PROJECT_ROOT / path)


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}")


def _env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {value!r}")


def _env_int_list(name: str) -> Tuple[int, ...]:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return ()
    try:
        return tuple(int(part) for part in value.split(",") if part.strip())
    except ValueError:
        raise ValueError(f"{name} must be a comma-separated list of integers, got {value!r}")


class SeasonLabeler:
    """
    Map upstream season ids to display names.

    Upstream ids and the community's "Season N" numbering do not line up, and
    the gap has moved over time, so the mapping lives in configuration:
    explicit overrides first, then ``template.format(number=season_id + offset)``.
    """

    def __init__(
        self,
        template: str = "Season {number}",
        offset: int = 0,
        overrides: Optional[Dict[int, str]] = None,
    ):
        self.template = template
        self.offset = offset
        self.overrides = dict(overrides or {})

    def label_for(self, season_id: int) -> str:
        if season_id in self.overrides:
            return self.overrides[season_id]
        return self.template.format(number=season_id + self.offset, id=season_id)

    @staticmethod
    def parse_overrides(raw: Optional[str]) -> Dict[int, str]:
        if not raw or not raw.strip():
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValueError(f"Season label overrides are not valid JSON: {e}")
        if not isinstance(data, dict):
            raise ValueError("Season label overrides must be a JSON object")
        return {int(key): str(value) for key, value in data.items()}


@dataclass
class Settings:
    db_path: str = "data/bgladder.db"
    roster_path: str = "data/players.json"

    api_base: str = DEFAULT_API_BASE
    region: str = "EU"
    leaderboard_id: str = "battlegrounds"
    initial_season_id: int = 17
    past_season_ids: Tuple[int, ...] = ()

    max_pages: int = 100
    batch_width: int = 5
    batch_delay_seconds: float = 0.5
    page_timeout_seconds: float = 10.0

    cache_ttl_seconds: float = 600.0
    detector_interval_seconds: float = 3600.0
    background_workers: int = 2
    backfill_retry_seconds: float = 300.0

    season_labeler: SeasonLabeler = field(default_factory=SeasonLabeler)

    twitch_client_id: Optional[str] = None
    twitch_token: Optional[str] = None
    stream_timeout_seconds: float = 4.0
    stream_batch_width: int = 3

    @classmethod
    def from_env(cls) -> "Settings":
        labeler = SeasonLabeler(
            template=os.environ.get("BGLADDER_SEASON_LABEL_TEMPLATE", "Season {number}"),
            offset=_env_int("BGLADDER_SEASON_LABEL_OFFSET", 0),
            overrides=SeasonLabeler.parse_overrides(os.environ.get("BGLADDER_SEASON_LABELS")),
        )
        return cls(
            db_path=os.environ.get("BGLADDER_DB_PATH", "data/bgladder.db"),
            roster_path=os.environ.get("BGLADDER_ROSTER_PATH", "data/players.json"),
            api_base=os.environ.get("BGLADDER_API_BASE", DEFAULT_API_BASE),
            region=os.environ.get("BGLADDER_REGION", "EU"),
            leaderboard_id=os.environ.get("BGLADDER_LEADERBOARD_ID", "battlegrounds"),
            initial_season_id=_env_int("BGLADDER_INITIAL_SEASON", 17),
            past_season_ids=_env_int_list("BGLADDER_PAST_SEASONS"),
            max_pages=_env_int("BGLADDER_MAX_PAGES", 100),
            batch_width=_env_int("BGLADDER_BATCH_WIDTH", 5),
            batch_delay_seconds=_env_float("BGLADDER_BATCH_DELAY", 0.5),
            page_timeout_seconds=_env_float("BGLADDER_PAGE_TIMEOUT", 10.0),
            cache_ttl_seconds=_env_float("BGLADDER_CACHE_TTL", 600.0),
            detector_interval_seconds=_env_float("BGLADDER_DETECTOR_INTERVAL", 3600.0),
            background_workers=_env_int("BGLADDER_BACKGROUND_WORKERS", 2),
            backfill_retry_seconds=_env_float("BGLADDER_BACKFILL_RETRY", 300.0),
            season_labeler=labeler,
            twitch_client_id=os.environ.get("TWITCH_CLIENT_ID") or None,
            twitch_token=os.environ.get("TWITCH_TOKEN") or None,
            stream_timeout_seconds=_env_float("BGLADDER_STREAM_TIMEOUT", 4.0),
            stream_batch_width=_env_int("BGLADDER_STREAM_WIDTH", 3),
        )
