# bgladder/ranking.py

from __future__ import annotations

import copy
import math
from typing import Iterable, List, Sequence

from bgladder.config import UPDATING_RATING
from bgladder.models import PlayerTarget, RankEntry


def _sort_key(entry: RankEntry):
    if not entry.found:
        return (1, 0.0)
    rank = entry.external_rank
    return (0, float(rank) if rank is not None else math.inf)


def rerank(entries: Iterable[RankEntry]) -> List[RankEntry]:
    """
    Order resolved entries by upstream rank, unresolved after them in their
    existing order, then assign dense local ranks 1..N.
    """
    ordered = sorted(entries, key=_sort_key)
    for index, entry in enumerate(ordered):
        entry.local_rank = index + 1
    return ordered


def merge_entries(
    existing: Sequence[RankEntry],
    new_entries: Sequence[RankEntry],
    targeted: bool,
) -> List[RankEntry]:
    """
    Combine a scan result with stored entries.

    A full scan replaces everything. A targeted scan replaces only the
    players it carries, keeps every other stored entry as-is, and appends
    players that had no stored entry.
    """
    if not targeted:
        return rerank(list(new_entries))

    incoming = {entry.key: entry for entry in new_entries}
    merged: List[RankEntry] = []
    for entry in existing:
        merged.append(incoming.pop(entry.key, entry))
    merged.extend(entry for entry in new_entries if entry.key in incoming)
    return rerank(merged)


def missing_targets(entries: Iterable[RankEntry], targets: Iterable[PlayerTarget]) -> List[PlayerTarget]:
    present = {entry.key for entry in entries}
    return [t for t in targets if t.full_key not in present]


def with_placeholders(entries: Sequence[RankEntry], missing: Sequence[PlayerTarget]) -> List[RankEntry]:
    """Response-only view: stored entries plus "updating" rows for ``missing``."""
    view = [copy.deepcopy(entry) for entry in entries]
    view.extend(RankEntry.unresolved(target, rating=UPDATING_RATING) for target in missing)
    return rerank(view)
