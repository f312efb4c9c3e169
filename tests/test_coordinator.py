import threading
import time

import pytest

from bgladder.coordinator import ScanCoordinator
from bgladder.database import SeasonStore
from bgladder.errors import ScanInProgressError, SeasonUnavailableError, UnknownSeasonError
from bgladder.models import SeasonCatalog, SeasonInfo
from bgladder.scanner import LeaderboardScanner
from tests.helpers import FakeLadderClient, row, write_roster


class ManualExecutor:
    """Collects submitted jobs so tests decide when background work runs."""

    def __init__(self):
        self.jobs = []

    def submit(self, fn, *args):
        self.jobs.append((fn, args))

    def run_all(self):
        jobs, self.jobs = self.jobs, []
        for fn, args in jobs:
            fn(*args)

    def shutdown(self, wait=True, cancel_futures=False):
        pass


class CountingScanner(LeaderboardScanner):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.calls = []
        self._calls_lock = threading.Lock()

    def scan(self, season_id, player_ids=None):
        with self._calls_lock:
            self.calls.append((season_id, None if player_ids is None else sorted(player_ids)))
        return super().scan(season_id, player_ids)


class Clock:
    def __init__(self, now=10_000.0):
        self.now = now

    def __call__(self):
        return self.now


PAGES = {
    16: {1: [row("Foo#111", 40, 9400), row("Bar#222", 12, 10100)]},
    17: {1: [row("Bar#222", 5, 9000)]},
}


@pytest.fixture
def env(tmp_path):
    roster_path = tmp_path / "players.json"
    roster = write_roster(roster_path, ["Foo#111", "Bar#222"])
    store = SeasonStore(str(tmp_path / "ladder.db"))
    store.save_catalog(
        SeasonCatalog(
            current_season_id=17,
            seasons=[SeasonInfo(16, "Season 16"), SeasonInfo(17, "Season 17")],
        )
    )
    client = FakeLadderClient({season: dict(pages) for season, pages in PAGES.items()})
    scanner = CountingScanner(client, roster, page_budget=10, batch_width=1, batch_delay_seconds=0)
    executor = ManualExecutor()
    clock = Clock()
    coordinator = ScanCoordinator(
        store, scanner, roster, cache_ttl_seconds=600, executor=executor, clock=clock,
        wait_timeout_seconds=5,
    )

    class Env:
        pass

    e = Env()
    e.roster_path, e.roster, e.store, e.client = roster_path, roster, store, client
    e.scanner, e.executor, e.clock, e.coordinator = scanner, executor, clock, coordinator
    yield e
    store.close()


def test_cold_start_scans_synchronously(env):
    view = env.coordinator.get_season(17)

    assert view.is_current
    assert not view.updating
    assert [(e.player_id, e.found, e.external_rank, e.local_rank) for e in view.entries] == [
        ("Bar#222", True, 5, 1),
        ("Foo#111", False, None, 2),
    ]
    assert view.entries[1].rating == "no-data"
    assert env.scanner.calls == [(17, None)]
    assert env.store.get_current_record(17) is not None
    assert env.coordinator.in_progress() == []


def test_default_season_is_current(env):
    assert env.coordinator.get_season().season_id == 17


def test_cold_start_with_no_upstream_data_is_an_error(env):
    env.client.pages = {}
    with pytest.raises(SeasonUnavailableError):
        env.coordinator.get_season(17)
    assert env.store.get_current_record(17) is None
    assert env.coordinator.in_progress() == []


def test_cold_start_with_broken_roster_is_an_error(env):
    env.roster_path.unlink()
    with pytest.raises(SeasonUnavailableError):
        env.coordinator.get_season(17)
    assert env.coordinator.in_progress() == []


def test_fresh_cache_is_served_without_scanning(env):
    env.coordinator.get_season(17)
    env.clock.now += 60

    view = env.coordinator.get_season(17)

    assert len(env.scanner.calls) == 1
    assert env.executor.jobs == []
    assert not view.updating


def test_expired_cache_is_served_then_refreshed_in_background(env):
    env.coordinator.get_season(17)
    env.client.pages[17] = {1: [row("Foo#111", 2, 13000), row("Bar#222", 3, 12900)]}
    env.clock.now += 601

    view = env.coordinator.get_season(17)

    assert view.updating
    assert view.entries[0].player_id == "Bar#222"
    assert len(env.executor.jobs) == 1
    assert env.coordinator.in_progress() == [17]

    env.executor.run_all()

    assert env.coordinator.in_progress() == []
    refreshed = env.coordinator.get_season(17)
    assert [(e.player_id, e.external_rank) for e in refreshed.entries] == [("Foo#111", 2), ("Bar#222", 3)]
    assert env.scanner.calls == [(17, None), (17, None)]


def test_roster_change_inside_ttl_triggers_background_rescan(env):
    env.coordinator.get_season(17)
    env.clock.now += 5
    env.roster_path.write_text('["Foo#111", "Bar#222", "Baz#333"]', encoding="utf-8")

    env.coordinator.get_season(17)

    assert len(env.executor.jobs) == 1
    env.executor.run_all()
    record = env.store.get_current_record(17)
    assert {e.player_id for e in record.entries} == {"Foo#111", "Bar#222", "Baz#333"}
    assert record.roster_fingerprint == env.roster.fingerprint()


def test_concurrent_stale_reads_start_one_scan(env):
    env.coordinator.get_season(17)
    env.clock.now += 601
    barrier = threading.Barrier(8)
    views = []

    def read():
        barrier.wait()
        views.append(env.coordinator.get_season(17))

    threads = [threading.Thread(target=read) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(5)

    assert len(views) == 8
    assert len(env.executor.jobs) == 1


def test_concurrent_cold_start_runs_one_scan(env):
    gate = threading.Event()
    env.client.gate = gate
    results = []

    def read():
        results.append(env.coordinator.get_season(17))

    first = threading.Thread(target=read)
    first.start()
    deadline = time.monotonic() + 5
    while not env.coordinator.is_scanning(17) and time.monotonic() < deadline:
        time.sleep(0.01)
    second = threading.Thread(target=read)
    second.start()
    time.sleep(0.05)
    gate.set()
    first.join(5)
    second.join(5)

    assert len(results) == 2
    assert env.scanner.calls == [(17, None)]
    assert [e.player_id for e in results[0].entries] == [e.player_id for e in results[1].entries]


def test_background_outage_keeps_previous_data(env):
    env.coordinator.get_season(17)
    original = env.store.get_current_record(17)
    env.client.pages = {}
    env.clock.now += 601

    env.coordinator.get_season(17)
    env.executor.run_all()

    assert env.store.get_current_record(17) is original
    assert env.coordinator.in_progress() == []


def test_background_roster_failure_clears_in_progress(env):
    env.coordinator.get_season(17)
    env.clock.now += 601
    env.coordinator.get_season(17)
    env.roster_path.unlink()

    env.executor.run_all()

    assert env.coordinator.in_progress() == []
    assert env.store.get_current_record(17) is not None


def test_past_season_without_archive_scans_and_archives(env):
    view = env.coordinator.get_season(16)

    assert not view.is_current
    assert [(e.player_id, e.external_rank) for e in view.entries] == [("Bar#222", 12), ("Foo#111", 40)]
    assert env.store.get_archived_record(16) is not None
    assert env.store.get_current_record(16) is None


def test_past_season_with_complete_archive_never_rescans(env):
    env.coordinator.get_season(16)
    env.clock.now += 10 * 86400

    view = env.coordinator.get_season(16)

    assert not view.updating
    assert env.scanner.calls == [(16, None)]
    assert env.executor.jobs == []


def test_new_roster_player_triggers_one_targeted_backfill(env):
    env.coordinator.get_season(16)
    before = {e.player_id: e.to_dict() for e in env.store.get_archived_record(16).entries}
    env.roster_path.write_text('["Foo#111", "Bar#222", "Newbie#777"]', encoding="utf-8")
    env.client.pages[16][2] = [row("Newbie#777", 90, 8900)]

    view = env.coordinator.get_season(16)
    env.coordinator.get_season(16)

    assert view.updating
    assert [(e.player_id, e.rating) for e in view.entries][-1] == ("Newbie#777", "updating")
    assert len(env.executor.jobs) == 1

    env.executor.run_all()

    assert env.scanner.calls == [(16, None), (16, ["Newbie#777"])]
    archived = {e.player_id: e for e in env.store.get_archived_record(16).entries}
    assert archived["Newbie#777"].found
    assert archived["Newbie#777"].external_rank == 90
    for player_id in ("Foo#111", "Bar#222"):
        assert archived[player_id].to_dict() == before[player_id]

    assert not env.coordinator.get_season(16).updating
    assert env.executor.jobs == []


def test_force_rescan_replaces_record(env):
    env.coordinator.get_season(17)
    env.client.pages[17] = {1: [row("Foo#111", 1, 14000)]}

    view = env.coordinator.force_rescan(17)

    assert [(e.player_id, e.found) for e in view.entries] == [("Foo#111", True), ("Bar#222", False)]
    assert env.coordinator.get_season(17).entries[0].player_id == "Foo#111"


def test_force_rescan_refuses_to_overlap(env):
    env.coordinator.get_season(17)
    env.clock.now += 601
    env.coordinator.get_season(17)

    with pytest.raises(ScanInProgressError):
        env.coordinator.force_rescan(17)


def test_force_rescan_without_data_keeps_previous(env):
    env.coordinator.get_season(17)
    original = env.store.get_current_record(17)
    env.client.pages = {}

    with pytest.raises(SeasonUnavailableError):
        env.coordinator.force_rescan(17)
    assert env.store.get_current_record(17) is original


def test_scan_now_targeted(env):
    record = env.coordinator.scan_now(17, ["Foo#111"])
    assert [e.player_id for e in record.entries] == ["Foo#111"]
    assert env.scanner.calls == [(17, ["Foo#111"])]


def test_season_missing_from_catalog_is_refused(env):
    env.client.pages[18] = {1: [row("Foo#111", 1, 15000)]}

    with pytest.raises(UnknownSeasonError):
        env.coordinator.get_season(18)
    with pytest.raises(UnknownSeasonError):
        env.coordinator.get_season(3)

    assert env.scanner.calls == []
    assert env.store.get_archived_record(18) is None
    assert env.coordinator.in_progress() == []


def test_force_rescan_of_unknown_season_is_refused(env):
    with pytest.raises(UnknownSeasonError):
        env.coordinator.force_rescan(18)
    assert env.scanner.calls == []


def test_empty_backfill_waits_before_retrying(env):
    env.coordinator.get_season(16)
    env.roster_path.write_text('["Foo#111", "Bar#222", "Newbie#777"]', encoding="utf-8")
    env.client.pages[16] = {}

    env.coordinator.get_season(16)
    env.executor.run_all()
    assert env.scanner.calls == [(16, None), (16, ["Newbie#777"])]

    env.clock.now += 60
    view = env.coordinator.get_season(16)
    assert env.executor.jobs == []
    assert not view.updating
    assert [(e.player_id, e.rating) for e in view.entries][-1] == ("Newbie#777", "updating")

    env.clock.now += 300
    env.coordinator.get_season(16)
    assert len(env.executor.jobs) == 1


def test_full_current_scan_records_daily_rating(env):
    env.coordinator.get_season(17)
    assert env.store.get_rating_history("Bar#222") == [
        {"date": "1970-01-01", "season_id": 17, "rating": 9000},
    ]
    assert env.store.get_rating_history("Foo#111") == []


def test_past_season_scan_records_no_rating_history(env):
    env.coordinator.get_season(16)
    assert env.store.get_rating_history("Bar#222") == []


def test_ensure_scanned_reuses_a_stored_record(env):
    stored = env.coordinator.get_season(17)

    record = env.coordinator.ensure_scanned(17)

    assert [e.player_id for e in record.entries] == [e.player_id for e in stored.entries]
    assert env.scanner.calls == [(17, None)]
