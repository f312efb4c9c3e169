# bgladder/live_status.py

from __future__ import annotations

import copy
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Iterable, List, Sequence

from bgladder.database import SeasonStore
from bgladder.errors import StreamStatusError
from bgladder.models import RankEntry
from bgladder.stream_client import StreamStatus, TwitchClient

logger = logging.getLogger(__name__)


class LiveStatusEnricher:
    """
    Best-effort live/avatar annotation for entries with a streaming handle.

    A failed lookup falls back to the last avatar we saw for that handle with
    ``live=False``; nothing here ever raises into the read path.
    """

    def __init__(self, client: TwitchClient, store: SeasonStore, batch_width: int = 3):
        self.client = client
        self.store = store
        self.batch_width = max(1, batch_width)

    def _fallback_map(self) -> Dict[str, str]:
        try:
            return self.store.get_avatar_cache()
        except RuntimeError as e:
            logger.warning("Avatar fallback cache unavailable: %s", e)
            return {}

    def _lookup_one(self, handle: str, fallback: Dict[str, str]) -> StreamStatus:
        try:
            status = self.client.lookup(handle)
        except StreamStatusError as e:
            logger.debug("Live status lookup for %s failed: %s", handle, e)
            return StreamStatus(handle=handle, live=False, avatar_ref=fallback.get(handle.lower()))
        if status.avatar_ref is None:
            return StreamStatus(handle=handle, live=status.live, avatar_ref=fallback.get(handle.lower()))
        return status

    def lookup_handles(self, handles: Iterable[str]) -> Dict[str, StreamStatus]:
        unique: List[str] = []
        seen = set()
        for handle in handles:
            if handle and handle.lower() not in seen:
                seen.add(handle.lower())
                unique.append(handle)
        if not unique:
            return {}

        fallback = self._fallback_map()
        if not self.client.configured:
            return {
                h.lower(): StreamStatus(handle=h, live=False, avatar_ref=fallback.get(h.lower()))
                for h in unique
            }
        with ThreadPoolExecutor(max_workers=self.batch_width) as executor:
            statuses = list(executor.map(lambda h: self._lookup_one(h, fallback), unique))

        fresh = {
            s.handle.lower(): s.avatar_ref
            for s in statuses
            if s.avatar_ref and fallback.get(s.handle.lower()) != s.avatar_ref
        }
        try:
            self.store.save_avatars(fresh)
        except RuntimeError as e:
            logger.warning("Could not persist avatar fallback cache: %s", e)
        return {s.handle.lower(): s for s in statuses}

    def enrich(self, entries: Sequence[RankEntry]) -> List[RankEntry]:
        """Return copies of ``entries`` with ``live`` and ``avatar_ref`` filled in."""
        statuses = self.lookup_handles(e.stream_handle for e in entries if e.stream_handle)
        enriched = []
        for entry in entries:
            entry = copy.deepcopy(entry)
            status = statuses.get(entry.stream_handle.lower()) if entry.stream_handle else None
            if status is not None:
                entry.live = status.live
                entry.avatar_ref = status.avatar_ref
            enriched.append(entry)
        return enriched
