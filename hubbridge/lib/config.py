"""
Shared configuration loader for hubbridge.

Loads a single JSON config file per device.  Search order:
  1. $HUBBRIDGE_CONFIG              (explicit override, also set by --config)
  2. /etc/hubbridge/config.json     (deployed install)
  3. config.json                    (working directory, for local dev)

The hub password stays out of the file when possible: HUB_PASSWORD in the
environment wins over hub.password (systemd EnvironmentFile).

Usage:
    from hubbridge.lib.config import cfg

    server_url  = cfg("hub", "server_url", default="http://localhost:8096")
    mpv_path    = cfg("player", "mpv_path", default="mpv")
    device_name = cfg("device", "name", default="hubbridge")
"""

import json
import logging
import os

logger = logging.getLogger(__name__)

_config: dict | None = None

_SEARCH_PATHS = [
    "/etc/hubbridge/config.json",
    "config.json",
]


def _search_paths() -> list[str]:
    override = os.environ.get("HUBBRIDGE_CONFIG")
    if override:
        return [override] + _SEARCH_PATHS
    return list(_SEARCH_PATHS)


def _validate(config: dict, path: str) -> None:
    """Warn about missing or suspicious config values."""
    hub = config.get("hub") or {}
    if not hub.get("server_url"):
        logger.warning("Config %s: missing hub.server_url", path)
    elif not str(hub["server_url"]).startswith(("http://", "https://")):
        logger.warning("Config %s: hub.server_url '%s' is not an http(s) URL",
                       path, hub["server_url"])
    if not hub.get("username"):
        logger.warning("Config %s: missing hub.username, authentication will fail", path)
    if not hub.get("password") and not os.environ.get("HUB_PASSWORD"):
        logger.warning("Config %s: no hub.password and HUB_PASSWORD unset", path)
    device = config.get("device") or {}
    if not device.get("id"):
        logger.warning("Config %s: missing device.id, a random id is used and "
                       "saved positions will not survive a restart", path)
    player = config.get("player") or {}
    if not player.get("mpv_path"):
        logger.info("Config %s: player.mpv_path not set, using 'mpv' from PATH", path)


def load_config() -> dict:
    """Load config from the first JSON file found. Cached after first call."""
    global _config
    if _config is not None:
        return _config

    for path in _search_paths():
        try:
            with open(path) as f:
                _config = json.load(f)
                logger.info("Config loaded from %s", path)
                _validate(_config, path)
                return _config
        except FileNotFoundError:
            continue
        except json.JSONDecodeError as e:
            logger.error("Invalid JSON in %s: %s", path, e)
            continue

    logger.warning("No config.json found, using empty config")
    _config = {}
    return _config


def cfg(section: str, key: str | None = None, *, default=None):
    """Read a config value.

    cfg("device")                        → config["device"]
    cfg("hub", "server_url")             → config["hub"]["server_url"]
    cfg("player", "load_delay_ms", default=100)
    """
    config = load_config()
    val = config.get(section)
    if key is None:
        return val if val is not None else default
    if isinstance(val, dict):
        return val.get(key, default)
    return default


def hub_password() -> str:
    """Hub password: HUB_PASSWORD env secret first, config second."""
    return os.environ.get("HUB_PASSWORD") or cfg("hub", "password", default="")


def reload_config():
    """Force re-read from disk (for testing or hot-reload)."""
    global _config
    _config = None
    return load_config()
