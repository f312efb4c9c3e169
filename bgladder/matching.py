# bgladder/matching.py
"""
Match upstream ranking rows against tracked players.

The upstream has exposed the account identifier under different fields
across seasons (``accountid``, ``battleTag``, ``name``), sometimes with the
``#1234`` discriminator and sometimes without. Extraction is an ordered list
of strategies so the matching rule never has to know which one applied.
"""

from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from bgladder.models import PlayerTarget, RankEntry

Extractor = Callable[[Dict[str, Any]], Optional[str]]


def _field(name: str) -> Extractor:
    def extract(row: Dict[str, Any]) -> Optional[str]:
        value = row.get(name)
        if value is None or isinstance(value, (dict, list)):
            return None
        text = str(value).strip()
        return text or None

    extract.__name__ = f"field_{name}"
    return extract


def _nested_player(row: Dict[str, Any]) -> Optional[str]:
    player = row.get("player")
    if not isinstance(player, dict):
        return None
    for key in ("battleTag", "accountid", "name"):
        value = player.get(key)
        if value:
            return str(value).strip() or None
    return None


IDENTIFIER_EXTRACTORS: List[Extractor] = [
    _field("accountid"),
    _field("battleTag"),
    _field("battletag"),
    _field("name"),
    _nested_player,
]


def extract_identifier(row: Dict[str, Any], extractors: Sequence[Extractor] = IDENTIFIER_EXTRACTORS) -> Optional[str]:
    """Return the lowercased identifier from the first strategy that yields one."""
    for extractor in extractors:
        value = extractor(row)
        if value:
            return value.lower()
    return None


def _to_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _to_rating(value: Any, default: Any) -> Any:
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return value
    try:
        return int(str(value).strip())
    except ValueError:
        try:
            return float(str(value).strip())
        except ValueError:
            return default


def find_target(identifier: str, targets: Iterable[PlayerTarget], entries: Dict[str, RankEntry]) -> Optional[PlayerTarget]:
    """
    Pick the unresolved target a row identifier belongs to.

    An exact full-identifier match wins. Otherwise the first unresolved target
    whose name portion equals the row's name portion is taken, as long as one
    side carries no discriminator: two different discriminators are two
    different accounts.
    """
    pending = [t for t in targets if not entries[t.full_key].found]
    for target in pending:
        if identifier == target.full_key:
            return target
    name, tagged = _split_identifier(identifier)
    for target in pending:
        if target.name_key != name:
            continue
        if tagged and target.has_discriminator:
            continue
        return target
    return None


def _split_identifier(identifier: str):
    name, sep, _ = identifier.partition("#")
    return name, bool(sep)


def apply_rows(
    rows: Iterable[Dict[str, Any]],
    targets: Sequence[PlayerTarget],
    entries: Dict[str, RankEntry],
    extractors: Sequence[Extractor] = IDENTIFIER_EXTRACTORS,
) -> int:
    """
    Resolve entries from a batch of upstream rows in order; returns how many
    targets were newly resolved. A resolved entry is never reassigned.
    """
    resolved = 0
    for row in rows:
        identifier = extract_identifier(row, extractors)
        if identifier is None:
            continue
        target = find_target(identifier, targets, entries)
        if target is None:
            continue
        entry = entries[target.full_key]
        entry.found = True
        entry.external_rank = _to_int(row.get("rank"))
        entry.rating = _to_rating(row.get("rating"), entry.rating)
        resolved += 1
        if all(entries[t.full_key].found for t in targets):
            break
    return resolved
