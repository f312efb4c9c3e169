# tests/test_database.py

import os
import tempfile

import pytest

from bgladder.config import SeasonLabeler
from bgladder.database import SeasonStore
from bgladder.models import SeasonCatalog, SeasonInfo, SeasonRecord
from tests.helpers import entry


class TestSeasonStore:
    """Test suite for season persistence."""

    @pytest.fixture
    def db_path(self):
        fd, db_path = tempfile.mkstemp(suffix='.db')
        os.close(fd)
        yield db_path
        for suffix in ('', '-wal', '-shm'):
            if os.path.exists(db_path + suffix):
                os.remove(db_path + suffix)

    @pytest.fixture
    def store(self, db_path):
        store = SeasonStore(db_path)
        yield store
        store.close()

    def test_empty_store(self, store):
        assert store.get_current_record(17) is None
        assert store.get_archived_record(16) is None
        assert store.get_catalog() is None

    def test_full_merge_writes_current_tier(self, store):
        record = store.merge_results(
            17, [entry("B#2"), entry("A#1", rank=4)], targeted=False, is_current=True,
            roster_fingerprint="fp1", scanned_at=1000.0,
        )
        assert [e.player_id for e in record.entries] == ["A#1", "B#2"]
        assert [e.local_rank for e in record.entries] == [1, 2]

        stored = store.get_current_record(17)
        assert stored is record
        assert stored.roster_fingerprint == "fp1"
        assert stored.last_scan_at == 1000.0
        assert store.get_archived_record(17) is None

    def test_current_snapshot_survives_restart(self, db_path):
        first = SeasonStore(db_path)
        first.merge_results(17, [entry("A#1", rank=4)], targeted=False, is_current=True,
                            roster_fingerprint="fp1", scanned_at=1000.0)
        first.close()

        second = SeasonStore(db_path)
        try:
            restored = second.get_current_record(17)
            assert restored is not None
            assert restored.is_current
            assert restored.entries[0].player_id == "A#1"
            assert restored.entries[0].external_rank == 4
            assert second.get_current_record(18) is None
        finally:
            second.close()

    def test_past_season_goes_to_archive(self, store):
        store.merge_results(15, [entry("A#1", rank=8)], targeted=False, is_current=False,
                            roster_fingerprint="fp1", scanned_at=500.0)
        assert store.get_current_record(15) is None
        archived = store.get_archived_record(15)
        assert archived is not None
        assert not archived.is_current
        assert archived.entries[0].found

    def test_targeted_merge_keeps_other_archive_entries(self, store):
        store.merge_results(15, [entry("C#3", rank=10), entry("D#4")], targeted=False, is_current=False,
                            roster_fingerprint="fp1", scanned_at=500.0)
        before = {e.player_id: e.to_dict() for e in store.get_archived_record(15).entries}

        store.merge_results(15, [entry("A#1", rank=50)], targeted=True, is_current=False,
                            roster_fingerprint="fp2", scanned_at=900.0)
        after = store.get_archived_record(15)
        by_id = {e.player_id: e for e in after.entries}

        assert set(by_id) == {"A#1", "C#3", "D#4"}
        assert by_id["C#3"].to_dict() == before["C#3"]
        assert by_id["D#4"].to_dict()["rating"] == before["D#4"]["rating"]
        assert after.roster_fingerprint == "fp1"

    def test_targeted_merge_on_current_keeps_scan_time(self, store):
        store.merge_results(17, [entry("A#1", rank=1)], targeted=False, is_current=True,
                            roster_fingerprint="fp1", scanned_at=1000.0)
        record = store.merge_results(17, [entry("B#2", rank=2)], targeted=True, is_current=True,
                                     roster_fingerprint="fp2", scanned_at=2000.0)
        assert record.last_scan_at == 1000.0
        assert record.roster_fingerprint == "fp1"
        assert len(record.entries) == 2

    def test_merge_never_mutates_previous_record(self, store):
        first = store.merge_results(17, [entry("A#1", rank=9)], targeted=False, is_current=True,
                                    roster_fingerprint="fp1", scanned_at=1000.0)
        store.merge_results(17, [entry("B#2", rank=1)], targeted=True, is_current=True,
                            roster_fingerprint="fp1", scanned_at=1100.0)
        assert [e.player_id for e in first.entries] == ["A#1"]
        assert first.entries[0].local_rank == 1

    def test_archive_season_moves_current_record(self, store, db_path):
        store.merge_results(17, [entry("A#1", rank=3)], targeted=False, is_current=True,
                            roster_fingerprint="fp1", scanned_at=1000.0)
        archived = store.archive_season(17)

        assert archived is not None
        assert not archived.is_current
        assert archived.entries[0].external_rank == 3
        assert store.get_current_record(17) is None

        reopened = SeasonStore(db_path)
        try:
            assert reopened.get_current_record(17) is None
            assert reopened.get_archived_record(17) is not None
        finally:
            reopened.close()

    def test_archive_season_without_current_record(self, store):
        assert store.archive_season(17) is None

    def test_save_record_direct(self, store):
        record = SeasonRecord(season_id=14, is_current=False, last_scan_at=1.0,
                              roster_fingerprint=None, entries=[entry("A#1")])
        store.save_record(record)
        assert store.get_record(14, is_current=False).entries[0].player_id == "A#1"

    def test_catalog_round_trip(self, store):
        catalog = SeasonCatalog(
            current_season_id=17,
            seasons=[SeasonInfo(16, "Temporada 11"), SeasonInfo(17, "Temporada 12")],
        )
        store.save_catalog(catalog)
        loaded = store.get_catalog()
        assert loaded.current_season_id == 17
        assert [s.display_name for s in loaded.seasons] == ["Temporada 11", "Temporada 12"]

    def test_ensure_catalog_seeds_once(self, store):
        labeler = SeasonLabeler(template="Temporada {number}", offset=-5)
        seeded = store.ensure_catalog(17, labeler)
        assert seeded.current_season_id == 17
        assert seeded.seasons == [SeasonInfo(17, "Temporada 12")]

        again = store.ensure_catalog(99, labeler)
        assert again.current_season_id == 17

    def test_scan_times(self, store):
        store.merge_results(15, [entry("A#1", rank=1)], targeted=False, is_current=False,
                            roster_fingerprint="fp", scanned_at=500.0)
        store.merge_results(17, [entry("A#1", rank=1)], targeted=False, is_current=True,
                            roster_fingerprint="fp", scanned_at=1000.0)
        assert store.scan_times() == {15: 500.0, 17: 1000.0}

    def test_avatar_cache(self, store):
        assert store.get_avatar_cache() == {}
        store.save_avatars({"barstreams": "https://img/1.png"})
        store.save_avatars({"barstreams": "https://img/2.png", "other": "https://img/3.png"})
        assert store.get_avatar_cache() == {
            "barstreams": "https://img/2.png",
            "other": "https://img/3.png",
        }

    def test_relative_path_is_anchored_at_project_root(self, monkeypatch, tmp_path):
        import bgladder.config as config_module

        monkeypatch.setattr(config_module, "PROJECT_ROOT", tmp_path)
        store = SeasonStore("data/nested/ladder.db")
        try:
            assert store.db_path == str(tmp_path / "data" / "nested" / "ladder.db")
            assert os.path.exists(store.db_path)
        finally:
            store.close()

    def test_ensure_catalog_adds_configured_past_seasons(self, store):
        labeler = SeasonLabeler(template="Temporada {number}", offset=-5)
        catalog = store.ensure_catalog(17, labeler, past_season_ids=[15, 16, 17, 20])
        assert catalog.current_season_id == 17
        assert [s.season_id for s in catalog.seasons] == [15, 16, 17]
        assert catalog.seasons[0] == SeasonInfo(15, "Temporada 10")

        grown = store.ensure_catalog(17, labeler, past_season_ids=[14, 16])
        assert [s.season_id for s in grown.seasons] == [14, 15, 16, 17]
        assert [s.season_id for s in store.get_catalog().seasons] == [14, 15, 16, 17]

    def test_list_archived_records_oldest_first(self, store):
        for season_id in (16, 14):
            store.merge_results(season_id, [entry("A#1", rank=season_id)], targeted=False, is_current=False,
                                roster_fingerprint="fp", scanned_at=500.0)
        store.merge_results(17, [entry("A#1", rank=1)], targeted=False, is_current=True,
                            roster_fingerprint="fp", scanned_at=1000.0)

        archived = store.list_archived_records()

        assert [r.season_id for r in archived] == [14, 16]
        assert all(not r.is_current for r in archived)
        assert archived[1].entries[0].external_rank == 16

    def test_rating_snapshots_keep_one_value_per_day(self, store):
        entries = [entry("A#1", rank=1, rating=9000), entry("B#2"), entry("C#3", rank=2, rating="no-data")]
        assert store.record_rating_snapshots(17, entries, scanned_at=100.0) == 1
        assert store.record_rating_snapshots(17, [entry("A#1", rank=1, rating=9250)], scanned_at=200.0) == 1
        assert store.record_rating_snapshots(17, [entry("A#1", rank=1, rating=9100.5)], scanned_at=86400.0) == 1

        assert store.get_rating_history("a#1") == [
            {"date": "1970-01-01", "season_id": 17, "rating": 9250},
            {"date": "1970-01-02", "season_id": 17, "rating": 9100.5},
        ]
        assert store.get_rating_history("B#2") == []
        assert store.get_rating_history("C#3") == []
