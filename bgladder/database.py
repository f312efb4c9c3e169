# bgladder/database.py

import copy
import json
import logging
import os
import sqlite3
import threading
import time
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from bgladder.config import SeasonLabeler, resolve_path
from bgladder.models import RankEntry, SeasonCatalog, SeasonInfo, SeasonRecord
from bgladder.ranking import merge_entries

logger = logging.getLogger(__name__)


class SeasonStore:
    """
    Two-tier season persistence.

    The current season lives in memory and in a single-row on-disk snapshot
    so a restart can serve it immediately. Closed seasons live in a separate
    archive keyed by season id. The catalog and the streaming avatar
    fallback map share the same sqlite file.

    Stored records are never mutated in place: writers build a new record and
    swap it in, so readers can hold on to what they got.
    """

    def __init__(self, db_path: str = 'data/bgladder.db'):
        self.db_path = resolve_path(db_path)
        self.conn = None
        self._lock = threading.RLock()
        self._current: Optional[SeasonRecord] = None
        self.init_database()
        self._current = self._load_snapshot()

    def init_database(self):
        """Create tables if they don't exist."""
        try:
            db_dir = os.path.dirname(self.db_path)
            if db_dir:
                try:
                    os.makedirs(db_dir, exist_ok=True)
                except OSError as e:
                    raise RuntimeError(f"Failed to create database directory '{db_dir}': {e}")

            self.conn = sqlite3.connect(self.db_path, timeout=30.0, check_same_thread=False)
            self.conn.row_factory = sqlite3.Row
            self.conn.execute("PRAGMA busy_timeout = 30000")
            self._set_wal_mode_best_effort()

            cursor = self.conn.cursor()

            # Exactly one row: the current season.
            cursor.execute("""
                CREATE TABLE IF NOT EXISTS current_season_snapshot (
                    slot INTEGER PRIMARY KEY CHECK (slot = 1),
                    season_id INTEGER NOT NULL,
                    last_scan_at REAL NOT NULL,
                    roster_fingerprint TEXT,
                    entries_json TEXT NOT NULL,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS season_archive (
                    season_id INTEGER PRIMARY KEY,
                    last_scan_at REAL NOT NULL,
                    roster_fingerprint TEXT,
                    entries_json TEXT NOT NULL,
                    archived_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS season_catalog (
                    season_id INTEGER PRIMARY KEY,
                    display_name TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS catalog_state (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS stream_avatar_cache (
                    handle TEXT PRIMARY KEY,
                    avatar_ref TEXT NOT NULL,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS rating_snapshots (
                    player_key TEXT NOT NULL,
                    snapshot_date TEXT NOT NULL,
                    season_id INTEGER NOT NULL,
                    rating REAL NOT NULL,
                    PRIMARY KEY (player_key, snapshot_date)
                )
            """)

            self._commit_with_retry(context="init schema commit")
        except sqlite3.Error as e:
            raise RuntimeError(f"Failed to initialize database at '{self.db_path}': {e}")

    def _commit_with_retry(self, retries: int = 8, delay_seconds: float = 0.25, context: str = "commit") -> None:
        """
        Retry commit on transient SQLITE_BUSY/locked errors.
        """
        last_error = None
        for attempt in range(retries):
            try:
                self.conn.commit()
                return
            except sqlite3.OperationalError as e:
                last_error = e
                if "locked" not in str(e).lower() and "busy" not in str(e).lower():
                    raise
                if attempt == retries - 1:
                    break
                time.sleep(delay_seconds)
        raise RuntimeError(
            f"Failed to {context}: database remained locked after {retries} attempts ({last_error})"
        )

    def _set_wal_mode_best_effort(self, retries: int = 5, delay_seconds: float = 0.2) -> None:
        """Try to enable WAL without failing startup if the DB is temporarily locked."""
        for attempt in range(retries):
            try:
                self.conn.execute("PRAGMA journal_mode = WAL")
                return
            except sqlite3.OperationalError as e:
                msg = str(e).lower()
                if "locked" not in msg and "busy" not in msg:
                    raise
                if attempt == retries - 1:
                    logger.warning("Could not enable WAL mode (database locked); continuing. (%s)", e)
                    return
                time.sleep(delay_seconds)

    @staticmethod
    def _entries_to_json(entries: Sequence[RankEntry]) -> str:
        return json.dumps([entry.to_dict() for entry in entries])

    @staticmethod
    def _entries_from_json(raw: str) -> List[RankEntry]:
        return [RankEntry.from_dict(item) for item in json.loads(raw or "[]")]

    # --- Season records ---

    def _load_snapshot(self) -> Optional[SeasonRecord]:
        try:
            cursor = self.conn.cursor()
            cursor.execute("SELECT * FROM current_season_snapshot WHERE slot = 1")
            row = cursor.fetchone()
        except sqlite3.Error as e:
            raise RuntimeError(f"Failed to load current season snapshot: {e}")
        if not row:
            return None
        record = SeasonRecord(
            season_id=row["season_id"],
            is_current=True,
            last_scan_at=row["last_scan_at"],
            roster_fingerprint=row["roster_fingerprint"],
            entries=self._entries_from_json(row["entries_json"]),
        )
        logger.info("Restored season %s snapshot (%d entries)", record.season_id, len(record.entries))
        return record

    def get_current_record(self, season_id: int) -> Optional[SeasonRecord]:
        with self._lock:
            record = self._current
        if record is not None and record.season_id == season_id:
            return record
        return None

    def get_archived_record(self, season_id: int) -> Optional[SeasonRecord]:
        with self._lock:
            try:
                cursor = self.conn.cursor()
                cursor.execute("SELECT * FROM season_archive WHERE season_id = ?", (season_id,))
                row = cursor.fetchone()
            except sqlite3.Error as e:
                raise RuntimeError(f"Failed to load archive for season {season_id}: {e}")
        if not row:
            return None
        return SeasonRecord(
            season_id=row["season_id"],
            is_current=False,
            last_scan_at=row["last_scan_at"],
            roster_fingerprint=row["roster_fingerprint"],
            entries=self._entries_from_json(row["entries_json"]),
        )

    def get_record(self, season_id: int, is_current: bool) -> Optional[SeasonRecord]:
        if is_current:
            return self.get_current_record(season_id)
        return self.get_archived_record(season_id)

    def save_record(self, record: SeasonRecord) -> None:
        """Write a current record to memory + snapshot, a closed one to the archive."""
        payload = self._entries_to_json(record.entries)
        with self._lock:
            try:
                cursor = self.conn.cursor()
                if record.is_current:
                    cursor.execute(
                        """
                        INSERT INTO current_season_snapshot
                            (slot, season_id, last_scan_at, roster_fingerprint, entries_json, updated_at)
                        VALUES (1, ?, ?, ?, ?, CURRENT_TIMESTAMP)
                        ON CONFLICT(slot) DO UPDATE SET
                            season_id = excluded.season_id,
                            last_scan_at = excluded.last_scan_at,
                            roster_fingerprint = excluded.roster_fingerprint,
                            entries_json = excluded.entries_json,
                            updated_at = CURRENT_TIMESTAMP
                        """,
                        (record.season_id, record.last_scan_at, record.roster_fingerprint, payload),
                    )
                else:
                    self._write_archive(cursor, record.season_id, record.last_scan_at,
                                        record.roster_fingerprint, payload)
                self._commit_with_retry(context=f"save season {record.season_id}")
            except sqlite3.Error as e:
                self.conn.rollback()
                raise RuntimeError(f"Failed to save season {record.season_id}: {e}")
            if record.is_current:
                self._current = record

    @staticmethod
    def _write_archive(cursor, season_id: int, last_scan_at: float, fingerprint: Optional[str], payload: str) -> None:
        cursor.execute(
            """
            INSERT INTO season_archive (season_id, last_scan_at, roster_fingerprint, entries_json, archived_at)
            VALUES (?, ?, ?, ?, CURRENT_TIMESTAMP)
            ON CONFLICT(season_id) DO UPDATE SET
                last_scan_at = excluded.last_scan_at,
                roster_fingerprint = excluded.roster_fingerprint,
                entries_json = excluded.entries_json,
                archived_at = CURRENT_TIMESTAMP
            """,
            (season_id, last_scan_at, fingerprint, payload),
        )

    def merge_results(
        self,
        season_id: int,
        new_entries: Sequence[RankEntry],
        targeted: bool,
        is_current: bool,
        roster_fingerprint: Optional[str] = None,
        scanned_at: Optional[float] = None,
    ) -> SeasonRecord:
        """
        Fold a scan result into the stored season and re-rank it.

        Full scans replace the entry list; targeted scans only touch the
        players they carry. The stored fingerprint only moves forward on a
        full scan, since a targeted scan does not prove the rest is current.
        """
        existing = self.get_record(season_id, is_current)
        existing_entries = copy.deepcopy(existing.entries) if existing else []
        merged = merge_entries(existing_entries, copy.deepcopy(list(new_entries)), targeted)

        fingerprint = roster_fingerprint
        last_scan_at = scanned_at if scanned_at is not None else time.time()
        if targeted and existing is not None:
            fingerprint = existing.roster_fingerprint
            if is_current:
                last_scan_at = existing.last_scan_at

        record = SeasonRecord(
            season_id=season_id,
            is_current=is_current,
            last_scan_at=last_scan_at,
            roster_fingerprint=fingerprint,
            entries=merged,
        )
        self.save_record(record)
        return record

    def archive_season(self, season_id: int) -> Optional[SeasonRecord]:
        """Move the current-season record for ``season_id`` into the archive."""
        with self._lock:
            record = self.get_current_record(season_id)
            if record is None:
                return None
            payload = self._entries_to_json(record.entries)
            try:
                cursor = self.conn.cursor()
                self._write_archive(cursor, season_id, record.last_scan_at, record.roster_fingerprint, payload)
                cursor.execute("DELETE FROM current_season_snapshot WHERE slot = 1 AND season_id = ?", (season_id,))
                self._commit_with_retry(context=f"archive season {season_id}")
            except sqlite3.Error as e:
                self.conn.rollback()
                raise RuntimeError(f"Failed to archive season {season_id}: {e}")
            self._current = None
        logger.info("Archived season %s (%d entries)", season_id, len(record.entries))
        return self.get_archived_record(season_id)

    def scan_times(self) -> Dict[int, float]:
        """Last scan timestamp per stored season."""
        with self._lock:
            try:
                cursor = self.conn.cursor()
                cursor.execute("SELECT season_id, last_scan_at FROM season_archive")
                times = {row["season_id"]: row["last_scan_at"] for row in cursor.fetchall()}
            except sqlite3.Error as e:
                raise RuntimeError(f"Failed to list season scan times: {e}")
            if self._current is not None:
                times[self._current.season_id] = self._current.last_scan_at
        return times

    def list_archived_records(self) -> List[SeasonRecord]:
        """Every archived season, oldest first."""
        with self._lock:
            try:
                cursor = self.conn.cursor()
                cursor.execute("SELECT * FROM season_archive ORDER BY season_id")
                rows = cursor.fetchall()
            except sqlite3.Error as e:
                raise RuntimeError(f"Failed to list season archive: {e}")
        return [
            SeasonRecord(
                season_id=row["season_id"],
                is_current=False,
                last_scan_at=row["last_scan_at"],
                roster_fingerprint=row["roster_fingerprint"],
                entries=self._entries_from_json(row["entries_json"]),
            )
            for row in rows
        ]

    # --- Rating history ---

    def record_rating_snapshots(self, season_id: int, entries: Sequence[RankEntry], scanned_at: float) -> int:
        """
        Store one rating per player per UTC day; a later scan on the same day
        overwrites the earlier value. Entries without a numeric rating are skipped.
        """
        snapshot_date = datetime.fromtimestamp(scanned_at, tz=timezone.utc).date().isoformat()
        rows = [
            (entry.key, snapshot_date, season_id, float(entry.rating))
            for entry in entries
            if entry.found and isinstance(entry.rating, (int, float)) and not isinstance(entry.rating, bool)
        ]
        if not rows:
            return 0
        with self._lock:
            try:
                cursor = self.conn.cursor()
                cursor.executemany(
                    """
                    INSERT INTO rating_snapshots (player_key, snapshot_date, season_id, rating)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(player_key, snapshot_date) DO UPDATE SET
                        season_id = excluded.season_id,
                        rating = excluded.rating
                    """,
                    rows,
                )
                self._commit_with_retry(context=f"record season {season_id} rating snapshots")
            except sqlite3.Error as e:
                self.conn.rollback()
                raise RuntimeError(f"Failed to record rating snapshots: {e}")
        return len(rows)

    def get_rating_history(self, player_id: str) -> List[Dict]:
        with self._lock:
            try:
                cursor = self.conn.cursor()
                cursor.execute(
                    """
                    SELECT snapshot_date, season_id, rating FROM rating_snapshots
                    WHERE player_key = ?
                    ORDER BY snapshot_date
                    """,
                    (player_id.strip().lower(),),
                )
                rows = cursor.fetchall()
            except sqlite3.Error as e:
                raise RuntimeError(f"Failed to load rating history for {player_id}: {e}")
        return [
            {
                "date": row["snapshot_date"],
                "season_id": row["season_id"],
                "rating": int(row["rating"]) if float(row["rating"]).is_integer() else row["rating"],
            }
            for row in rows
        ]

    # --- Season catalog ---

    def get_catalog(self) -> Optional[SeasonCatalog]:
        with self._lock:
            try:
                cursor = self.conn.cursor()
                cursor.execute("SELECT value FROM catalog_state WHERE key = 'current_season_id'")
                state = cursor.fetchone()
                if not state:
                    return None
                cursor.execute("SELECT season_id, display_name FROM season_catalog ORDER BY season_id")
                seasons = [SeasonInfo(row["season_id"], row["display_name"]) for row in cursor.fetchall()]
            except sqlite3.Error as e:
                raise RuntimeError(f"Failed to load season catalog: {e}")
        return SeasonCatalog(current_season_id=int(state["value"]), seasons=seasons)

    def save_catalog(self, catalog: SeasonCatalog) -> None:
        with self._lock:
            try:
                cursor = self.conn.cursor()
                cursor.execute("DELETE FROM season_catalog")
                cursor.executemany(
                    "INSERT INTO season_catalog (season_id, display_name) VALUES (?, ?)",
                    [(s.season_id, s.display_name) for s in catalog.seasons],
                )
                cursor.execute(
                    """
                    INSERT INTO catalog_state (key, value) VALUES ('current_season_id', ?)
                    ON CONFLICT(key) DO UPDATE SET value = excluded.value
                    """,
                    (str(catalog.current_season_id),),
                )
                self._commit_with_retry(context="save season catalog")
            except sqlite3.Error as e:
                self.conn.rollback()
                raise RuntimeError(f"Failed to save season catalog: {e}")

    def ensure_catalog(
        self,
        initial_season_id: int,
        labeler: SeasonLabeler,
        past_season_ids: Sequence[int] = (),
    ) -> SeasonCatalog:
        """
        Return the stored catalog, seeding it with ``initial_season_id`` when
        empty. Configured past seasons older than the current one are added if
        the catalog does not list them yet.
        """
        with self._lock:
            catalog = self.get_catalog()
            seeded = catalog is None
            if seeded:
                catalog = SeasonCatalog(current_season_id=initial_season_id, seasons=[])
            known = {s.season_id for s in catalog.seasons}
            wanted = [catalog.current_season_id] + [
                sid for sid in past_season_ids if sid < catalog.current_season_id
            ]
            added = [SeasonInfo(sid, labeler.label_for(sid)) for sid in dict.fromkeys(wanted) if sid not in known]
            if not added:
                return catalog
            catalog = SeasonCatalog(
                current_season_id=catalog.current_season_id,
                seasons=sorted(catalog.seasons + added, key=lambda s: s.season_id),
            )
            self.save_catalog(catalog)
        if seeded:
            logger.info("Seeded season catalog with season %s", catalog.current_season_id)
        else:
            logger.info("Added seasons %s to the catalog", [s.season_id for s in added])
        return catalog

    # --- Streaming avatar fallback ---

    def get_avatar_cache(self) -> Dict[str, str]:
        with self._lock:
            try:
                cursor = self.conn.cursor()
                cursor.execute("SELECT handle, avatar_ref FROM stream_avatar_cache")
                return {row["handle"]: row["avatar_ref"] for row in cursor.fetchall()}
            except sqlite3.Error as e:
                raise RuntimeError(f"Failed to load avatar cache: {e}")

    def save_avatars(self, avatars: Dict[str, str]) -> None:
        if not avatars:
            return
        with self._lock:
            try:
                cursor = self.conn.cursor()
                cursor.executemany(
                    """
                    INSERT INTO stream_avatar_cache (handle, avatar_ref, updated_at)
                    VALUES (?, ?, CURRENT_TIMESTAMP)
                    ON CONFLICT(handle) DO UPDATE SET
                        avatar_ref = excluded.avatar_ref,
                        updated_at = CURRENT_TIMESTAMP
                    """,
                    list(avatars.items()),
                )
                self._commit_with_retry(context="save avatar cache")
            except sqlite3.Error as e:
                self.conn.rollback()
                raise RuntimeError(f"Failed to save avatar cache: {e}")

    def close(self):
        """Close database connection."""
        with self._lock:
            if self.conn:
                self.conn.close()
                self.conn = None
