# bgladder/api_client.py

from __future__ import annotations

import json
import logging
import time
from http.client import HTTPException
from typing import Any, Dict, List
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from bgladder.config import DEFAULT_API_BASE
from bgladder.errors import UpstreamError

logger = logging.getLogger(__name__)


class LadderAPIClient:
    """Read-only client for the paginated community leaderboard endpoint."""

    HEADERS = {
        "User-Agent": (
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
            "AppleWebKit/537.36 (KHTML, like Gecko) "
            "Chrome/120.0.0.0 Safari/537.36"
        ),
        "Accept": "application/json, text/plain, */*",
        "Accept-Language": "en-US,en;q=0.9",
    }

    def __init__(
        self,
        api_base: str = DEFAULT_API_BASE,
        region: str = "EU",
        leaderboard_id: str = "battlegrounds",
        timeout_seconds: float = 10.0,
        retry_pause_seconds: float = 10.0,
    ):
        self.api_base = api_base
        self.region = region
        self.leaderboard_id = leaderboard_id
        self.timeout_seconds = timeout_seconds
        self.retry_pause_seconds = retry_pause_seconds

    def _get_json(self, url: str, retry_429: bool = True) -> Dict[str, Any]:
        req = Request(url, headers=self.HEADERS, method="GET")
        try:
            with urlopen(req, timeout=self.timeout_seconds) as resp:
                return json.loads(resp.read().decode("utf-8"))
        except HTTPError as exc:
            if exc.code == 429 and retry_429:
                time.sleep(self.retry_pause_seconds)
                return self._get_json(url, retry_429=False)
            raise UpstreamError(f"HTTP {exc.code} from {url}") from exc
        except (URLError, HTTPException, OSError) as exc:
            raise UpstreamError(f"Transport error for {url}: {exc}") from exc
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise UpstreamError(f"Undecodable payload from {url}: {exc}") from exc

    def page_url(self, season_id: int, page: int) -> str:
        params = {
            "region": self.region,
            "leaderboardId": self.leaderboard_id,
            "page": page,
            "seasonId": season_id,
        }
        return f"{self.api_base}?{urlencode(params)}"

    @staticmethod
    def parse_leaderboard_page(payload: Any) -> List[Dict[str, Any]]:
        """Return the ranking rows of one page, or [] for any unexpected shape."""
        if not isinstance(payload, dict):
            return []
        board = payload.get("leaderboard")
        rows = board.get("rows") if isinstance(board, dict) else payload.get("rows")
        if not isinstance(rows, list):
            return []
        return [row for row in rows if isinstance(row, dict)]

    def fetch_page(self, season_id: int, page: int) -> List[Dict[str, Any]]:
        url = self.page_url(season_id, page)
        payload = self._get_json(url)
        rows = self.parse_leaderboard_page(payload)
        logger.debug("Season %s page %s: %d rows", season_id, page, len(rows))
        return rows
