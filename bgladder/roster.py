# bgladder/roster.py

from __future__ import annotations

import json
import logging
import os
from typing import Any, List

from bgladder.errors import RosterLoadError
from bgladder.models import PlayerTarget

logger = logging.getLogger(__name__)


class RosterStore:
    """
    Read the tracked-player roster from a JSON file.

    Items are either a bare identifier (``"Name#1234"``) or an object with a
    ``battleTag`` and an optional ``twitch`` handle. The file's mtime/size pair
    is the change fingerprint used to invalidate season caches.
    """

    def __init__(self, path: str):
        self.path = path

    def fingerprint(self) -> str:
        try:
            stat = os.stat(self.path)
        except OSError as e:
            raise RosterLoadError(f"Cannot stat roster file '{self.path}': {e}")
        return f"{stat.st_mtime_ns}:{stat.st_size}"

    def load_targets(self) -> List[PlayerTarget]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error("Failed to load roster from %s: %s", self.path, e)
            raise RosterLoadError(f"Cannot load roster file '{self.path}': {e}")

        if not isinstance(raw, list):
            raise RosterLoadError(f"Roster file '{self.path}' must contain a JSON array")

        targets: List[PlayerTarget] = []
        seen = set()
        for item in raw:
            target = self._parse_item(item)
            if target is None:
                logger.warning("Skipping malformed roster item: %r", item)
                continue
            if target.full_key in seen:
                continue
            seen.add(target.full_key)
            targets.append(target)

        logger.debug("Loaded %d roster players from %s", len(targets), self.path)
        return targets

    @staticmethod
    def _parse_item(item: Any):
        if isinstance(item, str):
            return PlayerTarget.from_identifier(item) if item.strip() else None
        if isinstance(item, dict):
            identifier = item.get("battleTag") or item.get("player_id") or item.get("id")
            if not identifier or not str(identifier).strip():
                return None
            return PlayerTarget.from_identifier(str(identifier), item.get("twitch") or item.get("stream_handle"))
        return None
