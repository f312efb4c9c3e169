# main.py

import argparse
import logging
import sys
from datetime import datetime

from bgladder.errors import LadderError
from bgladder.models import RankEntry
from bgladder.service import LadderService


def _safe_print(message: str) -> None:
    """Print with Unicode fallback for restricted terminal encodings."""
    try:
        print(message)
    except UnicodeEncodeError:
        print(message.encode("ascii", "replace").decode("ascii"))


def _format_ts(ts) -> str:
    if not ts:
        return "never"
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M:%S")


def _print_entries(entries: list[RankEntry]) -> None:
    _safe_print(f"{'#':>3}  {'Player':<24} {'Ladder':>7} {'Rating':>8}")
    _safe_print("-" * 46)
    for entry in entries:
        ladder = str(entry.external_rank) if entry.external_rank is not None else "-"
        _safe_print(f"{entry.local_rank:>3}  {entry.player_id:<24} {ladder:>7} {str(entry.rating):>8}")


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("web.app:app", host=args.host, port=args.port)
    return 0


def cmd_scan(service: LadderService, args: argparse.Namespace) -> int:
    season_id = args.season if args.season is not None else service.coordinator.current_season_id()
    players = args.player or None
    scope = f"{len(players)} players" if players else "full roster"
    _safe_print(f"Scanning season {season_id} ({scope})...")
    record = service.coordinator.scan_now(season_id, players)
    if record is None:
        _safe_print("Upstream returned no data; stored ranking left unchanged.")
        return 1
    _safe_print(f"Season {record.season_id} scanned at {_format_ts(record.last_scan_at)}")
    _print_entries(record.entries)
    return 0


def cmd_seasons(service: LadderService, args: argparse.Namespace) -> int:
    catalog = service.store.get_catalog()
    scan_times = service.store.scan_times()
    for info in catalog.seasons:
        marker = "*" if info.season_id == catalog.current_season_id else " "
        _safe_print(
            f"{marker} {info.season_id:>4}  {info.display_name:<20} last scan: {_format_ts(scan_times.get(info.season_id))}"
        )
    return 0


def cmd_detect(service: LadderService, args: argparse.Namespace) -> int:
    new_season = service.detector.check_once()
    if new_season is None:
        _safe_print("No new season detected.")
    else:
        _safe_print(f"Rotated to season {new_season}.")
    return 0


def cmd_player(service: LadderService, args: argparse.Namespace) -> int:
    summary = service.player_stats.summary(args.player_id)
    _safe_print(f"{summary['player_id']}  peak: {summary['peak'] if summary['peak'] is not None else '-'}")
    current = summary["current"]
    if current:
        _safe_print(f"  current season {current['season_id']}: #{current['local_rank']} ({current['rating']})")
    for standing in summary["historical"]:
        _safe_print(f"  season {standing['season_id']}: #{standing['local_rank']} ({standing['rating']})")
    for point in service.player_stats.history(args.player_id)[-7:]:
        _safe_print(f"  {point['date']}  {point['rating']}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Battlegrounds ladder tracker")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=5000)

    scan = sub.add_parser("scan", help="Scan a season now and store the result")
    scan.add_argument("season", type=int, nargs="?", default=None, help="Season id (default: current)")
    scan.add_argument("--player", action="append", help="Limit to this roster player (repeatable)")

    sub.add_parser("seasons", help="List known seasons")
    sub.add_parser("detect", help="Probe for a new season once")

    player = sub.add_parser("player", help="Show stored standings and rating history for one player")
    player.add_argument("player_id")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if args.command == "serve":
        return cmd_serve(args)

    handlers = {"scan": cmd_scan, "seasons": cmd_seasons, "detect": cmd_detect, "player": cmd_player}
    service = LadderService.build()
    try:
        return handlers[args.command](service, args)
    except LadderError as e:
        _safe_print(f"Error: {e}")
        return 1
    finally:
        service.stop()


if __name__ == "__main__":
    sys.exit(main())
