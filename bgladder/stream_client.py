# bgladder/stream_client.py

from __future__ import annotations

import json
from dataclasses import dataclass
from http.client import HTTPException
from typing import Any, Dict, Optional
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from bgladder.errors import StreamStatusError


@dataclass(frozen=True)
class StreamStatus:
    handle: str
    live: bool
    avatar_ref: Optional[str]


class TwitchClient:
    """Per-handle live/avatar lookups against the Twitch Helix API."""

    BASE = "https://api.twitch.tv/helix"

    def __init__(self, client_id: Optional[str], token: Optional[str], timeout_seconds: float = 4.0):
        self.client_id = client_id
        self.token = token
        self.timeout_seconds = timeout_seconds

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.token)

    def _get_json(self, path: str, params: Dict[str, str]) -> Dict[str, Any]:
        if not self.configured:
            raise StreamStatusError("Twitch credentials are not configured")
        url = f"{self.BASE}/{path}?{urlencode(params)}"
        req = Request(
            url,
            headers={
                "Client-Id": self.client_id,
                "Authorization": f"Bearer {self.token}",
                "Accept": "application/json",
            },
            method="GET",
        )
        try:
            with urlopen(req, timeout=self.timeout_seconds) as resp:
                return json.loads(resp.read().decode("utf-8"))
        except HTTPError as exc:
            raise StreamStatusError(f"HTTP {exc.code} from {path}") from exc
        except (URLError, HTTPException, OSError) as exc:
            raise StreamStatusError(f"Transport error for {path}: {exc}") from exc
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise StreamStatusError(f"Undecodable payload from {path}: {exc}") from exc

    @staticmethod
    def _first(payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        data = payload.get("data") if isinstance(payload, dict) else None
        if isinstance(data, list) and data and isinstance(data[0], dict):
            return data[0]
        return None

    def lookup(self, handle: str) -> StreamStatus:
        login = handle.strip().lower()
        user = self._first(self._get_json("users", {"login": login}))
        stream = self._first(self._get_json("streams", {"user_login": login}))
        avatar = user.get("profile_image_url") if user else None
        live = bool(stream) and stream.get("type", "live") == "live"
        return StreamStatus(handle=handle, live=live, avatar_ref=avatar or None)
