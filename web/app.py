from contextlib import asynccontextmanager
import asyncio
import logging
import os
import sys
from typing import Optional

from fastapi import FastAPI, HTTPException

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from bgladder.errors import RosterLoadError, ScanInProgressError, SeasonUnavailableError, UnknownSeasonError
from bgladder.service import LadderService

logger = logging.getLogger("bgladder.web")

service: Optional[LadderService] = None

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging() -> None:
    """Root logging for the server process; a no-op if handlers already exist."""
    level = os.environ.get("BGLADDER_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=LOG_FORMAT)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    global service
    configure_logging()
    owns_service = service is None
    if owns_service:
        service = LadderService.build()
        service.start()
        logger.info("Season lifecycle detector started")
    try:
        yield
    finally:
        if owns_service and service is not None:
            service.stop()
            service = None


app = FastAPI(lifespan=lifespan)


def _service() -> LadderService:
    if service is None:
        raise HTTPException(status_code=503, detail="Service is starting up")
    return service


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}


@app.get("/api/ranking")
async def ranking(season: Optional[int] = None, enrich: bool = True) -> dict:
    svc = _service()
    try:
        view = await asyncio.to_thread(svc.coordinator.get_season, season)
    except UnknownSeasonError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except SeasonUnavailableError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except Exception as e:
        logger.exception("Ranking request for season %s failed", season)
        raise HTTPException(status_code=500, detail=f"Failed to load ranking: {str(e)}")

    if enrich:
        try:
            view.entries = await asyncio.to_thread(svc.enricher.enrich, view.entries)
        except Exception:
            logger.exception("Live status enrichment failed; serving plain ranking")
    return view.to_dict()


@app.get("/api/seasons")
async def seasons() -> dict:
    svc = _service()
    try:
        catalog = await asyncio.to_thread(svc.store.get_catalog)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to load seasons: {str(e)}")
    if catalog is None:
        raise HTTPException(status_code=503, detail="Season catalog is not initialized")
    return catalog.to_dict()


@app.post("/api/admin/rescan/{season_id}")
async def admin_rescan(season_id: int) -> dict:
    svc = _service()
    try:
        view = await asyncio.to_thread(svc.coordinator.force_rescan, season_id)
        return {"ok": True, "ranking": view.to_dict()}
    except UnknownSeasonError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ScanInProgressError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except SeasonUnavailableError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except Exception as e:
        logger.exception("Forced rescan of season %s failed", season_id)
        raise HTTPException(status_code=500, detail=f"Failed to rescan season: {str(e)}")


@app.get("/api/live-status")
async def live_status() -> dict:
    svc = _service()
    try:
        targets = await asyncio.to_thread(svc.roster.load_targets)
    except RosterLoadError as e:
        logger.warning("Live status skipped: %s", e)
        return {"players": []}

    streamers = [t for t in targets if t.stream_handle]
    statuses = await asyncio.to_thread(svc.enricher.lookup_handles, [t.stream_handle for t in streamers])
    players = []
    for target in streamers:
        status = statuses.get(target.stream_handle.lower())
        players.append(
            {
                "player_id": target.player_id,
                "stream_handle": target.stream_handle,
                "live": bool(status and status.live),
                "avatar_ref": status.avatar_ref if status else None,
            }
        )
    return {"players": players}


@app.get("/api/roster")
async def roster() -> dict:
    svc = _service()
    try:
        targets = await asyncio.to_thread(svc.roster.load_targets)
        fingerprint = await asyncio.to_thread(svc.roster.fingerprint)
    except RosterLoadError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {
        "fingerprint": fingerprint,
        "players": [{"player_id": t.player_id, "stream_handle": t.stream_handle} for t in targets],
        "count": len(targets),
    }


@app.get("/api/player-summary")
async def player_summary(player: str) -> dict:
    svc = _service()
    if not player.strip():
        raise HTTPException(status_code=400, detail="player is required")
    try:
        return await asyncio.to_thread(svc.player_stats.summary, player)
    except Exception as e:
        logger.exception("Player summary for %s failed", player)
        raise HTTPException(status_code=500, detail=f"Failed to load player summary: {str(e)}")


@app.get("/api/history")
async def history(player: str) -> list:
    svc = _service()
    if not player.strip():
        raise HTTPException(status_code=400, detail="player is required")
    try:
        return await asyncio.to_thread(svc.player_stats.history, player)
    except Exception as e:
        logger.exception("Rating history for %s failed", player)
        raise HTTPException(status_code=500, detail=f"Failed to load rating history: {str(e)}")


@app.get("/api/status")
async def status() -> dict:
    svc = _service()
    try:
        current = await asyncio.to_thread(svc.coordinator.current_season_id)
        scan_times = await asyncio.to_thread(svc.store.scan_times)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to load status: {str(e)}")
    return {
        "current_season": current,
        "scans_in_progress": svc.coordinator.in_progress(),
        "last_scan": {str(season_id): ts for season_id, ts in sorted(scan_times.items())},
    }


if __name__ == "__main__":
    import uvicorn

    configure_logging()
    print("Starting ladder web server...")
    print("Open http://localhost:5000/api/ranking in your browser")
    uvicorn.run(app, host="127.0.0.1", port=5000)
