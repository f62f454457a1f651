"""
Atomic JSON storage for the hub credential and saved playback positions.

Both documents live in the data directory and are keyed by device id, so two
bridges sharing a directory never overwrite each other:

    hub_token_<deviceId>.json           {"AccessToken": ..., "User": {"Id": ...}}
    playback_positions_<deviceId>.json  {"<itemId>": {"positionTicks": N,
                                                      "lastUpdated": ISO}}

Writes are atomic (temp file + rename) so a crash mid-write never leaves a
half-written credential or position map behind.
"""

import json
import logging
import os
import tempfile
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

TICKS_PER_SECOND = 10_000_000

# Positions at or below this are restart noise and are never persisted
MIN_SAVE_SECONDS = 10


def write_json_atomic(path: str, data) -> None:
    """Write *data* as JSON to *path* via temp file + os.replace."""
    d = os.path.dirname(path) or "."
    os.makedirs(d, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=d, suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            json.dump(data, f, indent=2)
            f.write("\n")
        os.replace(tmp, path)
    except Exception:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


def read_json(path: str):
    """Read a JSON document, None if missing or unreadable."""
    try:
        with open(path) as f:
            return json.load(f)
    except FileNotFoundError:
        return None
    except (json.JSONDecodeError, OSError) as e:
        logger.warning("Could not read %s: %s", path, e)
        return None


class CredentialStore:
    """Cached access token + user id, persisted per device."""

    def __init__(self, data_dir: str, device_id: str):
        self.path = os.path.join(data_dir, f"hub_token_{device_id}.json")
        self.access_token: str | None = None
        self.user_id: str | None = None

    @property
    def is_valid(self) -> bool:
        return bool(self.access_token and self.user_id)

    def load(self) -> bool:
        """Load the saved credential. Returns True only for a complete record."""
        data = read_json(self.path)
        if not isinstance(data, dict):
            return False
        token = data.get("AccessToken")
        user_id = (data.get("User") or {}).get("Id")
        if not token or not user_id:
            logger.warning("Credential file %s is incomplete, ignoring it", self.path)
            return False
        self.access_token = token
        self.user_id = user_id
        logger.info("Saved hub token loaded")
        return True

    def save(self, access_token: str, user_id: str) -> None:
        """Replace the credential. Both fields are required."""
        if not access_token or not user_id:
            raise ValueError("Credential needs both an access token and a user id")
        write_json_atomic(self.path, {
            "AccessToken": access_token,
            "User": {"Id": user_id},
            "updated_at": datetime.now(timezone.utc).isoformat(),
        })
        self.access_token = access_token
        self.user_id = user_id
        logger.info("Hub token saved")

    def clear(self) -> None:
        self.access_token = None
        self.user_id = None
        try:
            os.unlink(self.path)
        except FileNotFoundError:
            pass


class PositionStore:
    """Last known playback offset per item, for resuming where we left off."""

    def __init__(self, data_dir: str, device_id: str):
        self.path = os.path.join(data_dir, f"playback_positions_{device_id}.json")
        self._positions: dict[str, dict] = {}

    def load(self) -> dict:
        data = read_json(self.path)
        self._positions = data if isinstance(data, dict) else {}
        logger.info("Loaded %d saved positions", len(self._positions))
        return self._positions

    def get_ticks(self, item_id: str) -> int:
        record = self._positions.get(item_id)
        if not isinstance(record, dict):
            return 0
        try:
            return int(record.get("positionTicks") or 0)
        except (TypeError, ValueError):
            return 0

    def save(self, item_id: str, seconds: float) -> bool:
        """Persist *seconds* for *item_id*. Returns False when under the floor."""
        if not item_id or seconds <= MIN_SAVE_SECONDS:
            return False
        ticks = round(seconds * TICKS_PER_SECOND)
        self._positions[item_id] = {
            "positionTicks": ticks,
            "lastUpdated": datetime.now(timezone.utc).isoformat(),
        }
        try:
            write_json_atomic(self.path, self._positions)
        except OSError as e:
            logger.error("Could not save position for %s: %s", item_id, e)
            return False
        logger.info("Position saved locally: %.2fs for %s", seconds, item_id)
        return True

    def clear(self, item_id: str) -> bool:
        """Drop the saved position (item fully watched)."""
        if item_id not in self._positions:
            return False
        del self._positions[item_id]
        try:
            write_json_atomic(self.path, self._positions)
        except OSError as e:
            logger.error("Could not clear position for %s: %s", item_id, e)
            return False
        logger.info("Local position cleared for %s (watched)", item_id)
        return True

    def __contains__(self, item_id: str) -> bool:
        return item_id in self._positions
