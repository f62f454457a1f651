"""
REST client for the media hub (Jellyfin / Emby API surface).

Only the handful of endpoints the bridge needs:

    POST /Users/AuthenticateByName         username/password → token + user id
    GET  /Users/{uid}/Items/{id}           item metadata
    GET  /Shows/{series}/Episodes          season listing for next/prev
    POST /Sessions/Playing                 playback start
    POST /Sessions/Playing/Progress        playback progress
    POST /Sessions/Playing/Stopped         playback stop
    POST /Users/{uid}/PlayedItems/{id}     mark played
    POST /Sessions/Capabilities/Full       advertise as a remote-control target
    GET  /System/Info                      cheap authenticated liveness check

Failures are raised as HubAuthError (HTTP 401) or HubError (anything else,
including timeouts and connection errors) so callers can tell an expired
token from a network outage.
"""

import asyncio
import logging

import aiohttp

from .store import CredentialStore

logger = logging.getLogger(__name__)

CLIENT_VERSION = "2.0.0"
INFO_TIMEOUT = 3.0
EPISODE_FIELDS = "Path,IndexNumber,ParentIndexNumber,SeriesName,Name,UserData"

CAPABILITIES = {
    "PlayableMediaTypes": ["Audio", "Video"],
    "SupportedCommands": ["Play", "Playstate", "PlayNext", "PlayMediaSource"],
    "SupportsMediaControl": True,
    "SupportsPersistentIdentifier": True,
    "SupportsSync": False,
    "SupportsContentUploading": False,
    "SupportsRemoteControl": True,
}


class HubError(Exception):
    """Hub unreachable or returned an error status."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class HubAuthError(HubError):
    """Bad credentials or expired token (HTTP 401)."""


class HubClient:
    """Thin async wrapper over the hub's REST API."""

    def __init__(self, server_url: str, device_name: str, device_id: str,
                 credentials: CredentialStore, username: str = "",
                 password: str = "", timeout: float = 10.0):
        self.server_url = server_url.rstrip("/")
        self.device_name = device_name
        self.device_id = device_id
        self.credentials = credentials
        self.username = username
        self.password = password
        self.timeout = timeout
        self._session: aiohttp.ClientSession | None = None

    # ── Session lifecycle ──

    async def start(self):
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={"User-Agent": f"hubbridge/{CLIENT_VERSION}"},
            )

    async def close(self):
        if self._session:
            await self._session.close()
            self._session = None

    # ── Headers / URLs ──

    @property
    def authorization(self) -> str:
        return (f'MediaBrowser Client="{self.device_name}", '
                f'Device="{self.device_name}", '
                f'DeviceId="{self.device_id}", '
                f'Version="{CLIENT_VERSION}"')

    def _headers(self) -> dict:
        headers = {"X-Emby-Authorization": self.authorization}
        if self.credentials.access_token:
            headers["X-Emby-Token"] = self.credentials.access_token
        return headers

    def stream_url(self, item_id: str) -> str:
        return (f"{self.server_url}/Videos/{item_id}/stream"
                f"?static=true&api_key={self.credentials.access_token}")

    def socket_url(self) -> str:
        if self.server_url.startswith("https://"):
            base = "wss://" + self.server_url[len("https://"):]
        else:
            base = "ws://" + self.server_url.removeprefix("http://")
        return (f"{base}/socket?api_key={self.credentials.access_token}"
                f"&deviceId={self.device_id}")

    # ── Request plumbing ──

    async def _request(self, method: str, path: str, *, json=None, params=None,
                       timeout: float | None = None):
        if self._session is None:
            await self.start()
        url = f"{self.server_url}{path}"
        kwargs = {"headers": self._headers()}
        if json is not None:
            kwargs["json"] = json
        if params is not None:
            kwargs["params"] = params
        if timeout is not None:
            kwargs["timeout"] = aiohttp.ClientTimeout(total=timeout)
        try:
            async with self._session.request(method, url, **kwargs) as resp:
                if resp.status == 401:
                    raise HubAuthError(f"{method} {path}: unauthorized", status=401)
                if resp.status >= 400:
                    raise HubError(f"{method} {path}: HTTP {resp.status}", status=resp.status)
                if resp.status == 204 or resp.content_length == 0:
                    return None
                if resp.content_type == "application/json":
                    return await resp.json()
                return await resp.text()
        except asyncio.TimeoutError as e:
            raise HubError(f"{method} {path}: timeout") from e
        except aiohttp.ClientError as e:
            raise HubError(f"{method} {path}: {e}") from e
        except ValueError as e:
            raise HubError(f"{method} {path}: unreadable response body") from e

    # ── Authentication ──

    async def authenticate(self) -> bool:
        """Log in with username/password and persist the new token."""
        logger.info("Authenticating as %s", self.username)
        try:
            data = await self._request(
                "POST", "/Users/AuthenticateByName",
                json={"Username": self.username, "Pw": self.password},
            )
        except HubError as e:
            logger.error("Authentication failed: %s", e)
            return False
        if not isinstance(data, dict):
            logger.error("Authentication response is not a JSON object")
            return False
        token = data.get("AccessToken")
        user = data.get("User")
        user_id = user.get("Id") if isinstance(user, dict) else None
        if not token or not user_id:
            logger.error("Authentication response missing token or user id")
            return False
        self.credentials.save(token, user_id)
        logger.info("Authenticated, user id %s", user_id)
        return True

    async def server_info(self):
        """Lightweight authenticated liveness check (raises HubAuthError on 401)."""
        return await self._request("GET", "/System/Info", timeout=INFO_TIMEOUT)

    # ── Library ──

    async def get_item(self, item_id: str) -> dict:
        uid = self.credentials.user_id
        data = await self._request("GET", f"/Users/{uid}/Items/{item_id}")
        if not isinstance(data, dict):
            raise HubError(f"Item {item_id}: expected a JSON object")
        return data

    async def get_episodes(self, series_id: str, season_id: str | None) -> list[dict]:
        params = {"userId": self.credentials.user_id, "fields": EPISODE_FIELDS}
        if season_id:
            params["seasonId"] = season_id
        data = await self._request("GET", f"/Shows/{series_id}/Episodes", params=params)
        if not isinstance(data, dict):
            raise HubError(f"Episodes of {series_id}: expected a JSON object")
        items = data.get("Items")
        if not isinstance(items, list):
            return []
        return [item for item in items if isinstance(item, dict)]

    async def mark_played(self, item_id: str):
        uid = self.credentials.user_id
        await self._request("POST", f"/Users/{uid}/PlayedItems/{item_id}", json={})
        logger.info("Item %s marked played", item_id)

    # ── Playback reporting ──

    async def report_start(self, item_id: str, position_ticks: int, play_session_id: str):
        await self._request("POST", "/Sessions/Playing", json={
            "ItemId": item_id,
            "PositionTicks": position_ticks,
            "IsPaused": False,
            "IsMuted": False,
            "VolumeLevel": 100,
            "PlayMethod": "DirectPlay",
            "PlaySessionId": play_session_id,
            "CanSeek": True,
        })

    async def report_progress(self, item_id: str, position_ticks: int,
                              play_session_id: str, paused: bool = False):
        await self._request("POST", "/Sessions/Playing/Progress", json={
            "ItemId": item_id,
            "PositionTicks": position_ticks,
            "IsPaused": paused,
            "IsMuted": False,
            "VolumeLevel": 100,
            "PlayMethod": "DirectPlay",
            "PlaySessionId": play_session_id,
        })

    async def report_stop(self, item_id: str, position_ticks: int, play_session_id: str):
        await self._request("POST", "/Sessions/Playing/Stopped", json={
            "ItemId": item_id,
            "PositionTicks": position_ticks,
            "PlaySessionId": play_session_id,
        })
        logger.info("Playback stop reported (%.2fs)", position_ticks / 10_000_000)

    async def report_capabilities(self):
        await self._request("POST", "/Sessions/Capabilities/Full", json=CAPABILITIES)
