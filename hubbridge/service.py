"""
hubbridge service entry point.

Wires the pieces together and runs until SIGINT/SIGTERM:

    HubClient ──▶ ControlChannel ──commands──▶ Orchestrator ──▶ mpv
        ▲                                           │
        └────────── start / progress / stop ────────┘

Startup needs a usable hub token: a stored one is reused, otherwise we log in
with the configured username/password.  If that fails there is nothing useful
to do and the process exits with status 1.
"""

import argparse
import asyncio
import logging
import os
import signal
import sys
import tempfile
import uuid

from . import __version__
from .control import ControlChannel
from .lib.config import cfg, hub_password, reload_config
from .lib.hub_client import HubClient
from .lib.store import CredentialStore, PositionStore
from .lib.watchdog import watchdog_loop
from .orchestrator import IPC_CONNECT_DELAY, LOAD_DELAY, Orchestrator

logger = logging.getLogger("hubbridge")

DEFAULT_DATA_DIR = os.path.expanduser("~/.local/share/hubbridge")
MAX_SOCKET_PATH = 107  # sun_path is 108 bytes including the NUL


def ipc_socket_path(data_dir: str, device_id: str) -> str:
    """mpv IPC socket path, moved to the runtime dir when too long to bind."""
    name = f"mpv-{device_id}.sock"
    path = os.path.join(data_dir, name)
    if len(os.fsencode(path)) <= MAX_SOCKET_PATH:
        return path
    runtime_dir = os.environ.get("XDG_RUNTIME_DIR") or tempfile.gettempdir()
    fallback = os.path.join(runtime_dir, name)
    if len(os.fsencode(fallback)) > MAX_SOCKET_PATH:
        fallback = os.path.join(runtime_dir, f"hubbridge-{os.getpid()}.sock")
    logger.warning("IPC socket path %s is too long for a Unix socket, using %s",
                   path, fallback)
    return fallback


class BridgeService:
    """Owns the hub client, control channel and orchestrator for one device."""

    def __init__(self):
        self.server_url = cfg("hub", "server_url", default="http://localhost:8096")
        self.device_name = cfg("device", "name", default="hubbridge")
        self.device_id = cfg("device", "id", default="")
        if not self.device_id:
            self.device_id = f"mpv-{uuid.uuid4().hex[:12]}"
            logger.warning("No device.id configured, using %s for this run", self.device_id)
        self.data_dir = os.path.expanduser(cfg("paths", "data_dir", default=DEFAULT_DATA_DIR))

        self.credentials = CredentialStore(self.data_dir, self.device_id)
        self.positions = PositionStore(self.data_dir, self.device_id)
        self.hub = HubClient(
            self.server_url,
            self.device_name,
            self.device_id,
            self.credentials,
            username=cfg("hub", "username", default=""),
            password=hub_password(),
        )
        self.orchestrator = Orchestrator(
            self.hub,
            self.positions,
            mpv_path=cfg("player", "mpv_path", default="mpv"),
            ipc_path=ipc_socket_path(self.data_dir, self.device_id),
            extra_args=cfg("player", "extra_args", default=[]),
            title_prefix=cfg("player", "title", default="Jellyfin"),
            load_delay=cfg("player", "load_delay_ms", default=LOAD_DELAY * 1000) / 1000,
            ipc_connect_delay=cfg("player", "ipc_connect_delay_ms",
                                  default=IPC_CONNECT_DELAY * 1000) / 1000,
        )
        self.channel = ControlChannel(self.hub, self.orchestrator.on_hub_command)
        self._stop = asyncio.Event()

    async def authenticate(self) -> bool:
        """Reuse the stored token when there is one, otherwise log in."""
        if self.credentials.load():
            logger.info("Using stored hub token for user %s", self.credentials.user_id)
            return True
        return await self.hub.authenticate()

    def request_stop(self):
        logger.info("Signal received, shutting down")
        self._stop.set()

    async def run(self) -> int:
        logger.info("hubbridge %s starting (device %s, hub %s)",
                    __version__, self.device_id, self.server_url)
        loop = asyncio.get_running_loop()
        signals = (signal.SIGINT, signal.SIGTERM)
        await self.hub.start()
        try:
            if not await self.authenticate():
                logger.error("Could not authenticate with the hub, exiting")
                return 1

            self.positions.load()

            for sig in signals:
                loop.add_signal_handler(sig, self.request_stop)

            await self.orchestrator.start()
            await self.channel.connect()
            watchdog = asyncio.create_task(
                watchdog_loop(lambda: self.orchestrator.running))

            await self._stop.wait()

            watchdog.cancel()
            await self.orchestrator.shutdown()
            await self.channel.close()
            logger.info("Shutdown complete")
            return 0
        finally:
            for sig in signals:
                loop.remove_signal_handler(sig)
            await self.hub.close()


def main():
    parser = argparse.ArgumentParser(
        description="Play media from a Jellyfin hub in a local mpv window")
    parser.add_argument("--config", help="path to config.json")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(asctime)s] %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    if args.config:
        os.environ["HUBBRIDGE_CONFIG"] = args.config
        reload_config()
    if str(cfg("logging", "level", default="")).upper() == "DEBUG":
        logging.getLogger().setLevel(logging.DEBUG)

    service = BridgeService()
    sys.exit(asyncio.run(service.run()))


if __name__ == "__main__":
    main()
