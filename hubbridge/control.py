"""
Control channel: the hub's event socket.

Keeps one websocket to the hub open so "Play on <device>" commands reach us:

  • on open: register the session (SessionsStart), advertise capabilities,
    then re-send KeepAlive + capabilities every 30 s
  • inbound Play / Playstate messages are parsed and handed to the
    orchestrator; KeepAlive replies are not needed (we already send our own)
  • on loss: capped exponential backoff.  Each reconnect cycle first checks
    GET /System/Info so a dead network costs one cheap request instead of a
    websocket handshake, and an expired token is fixed by re-authenticating.

Backoff per attempt: 5, 5, 10, 20, 30, 30, ... seconds.
"""

import asyncio
import enum
import json
import logging

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .events import parse_hub_message
from .lib.hub_client import HubAuthError, HubClient, HubError

logger = logging.getLogger(__name__)

KEEPALIVE_INTERVAL = 30
OPEN_TIMEOUT = 10
BACKOFF_FIRST = 5
BACKOFF_MAX = 30

SESSIONS_START = {"MessageType": "SessionsStart", "Data": "0,1500"}
KEEPALIVE = {"MessageType": "KeepAlive"}
IGNORED_TYPES = {"KeepAlive", "ForceKeepAlive"}


class ConnectionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


def backoff_delay(attempt: int) -> int:
    """Seconds to wait before reconnect *attempt* (1-based)."""
    if attempt <= 1:
        return BACKOFF_FIRST
    return min(BACKOFF_MAX, BACKOFF_FIRST * 2 ** (attempt - 2))


class ControlChannel:
    """Persistent, self-healing websocket to the hub."""

    def __init__(self, hub: HubClient, on_command, *,
                 keepalive_interval: float = KEEPALIVE_INTERVAL,
                 connect=None):
        self.hub = hub
        self._on_command = on_command
        self.keepalive_interval = keepalive_interval
        self._connect = connect or websockets.connect
        self.state = ConnectionState.DISCONNECTED
        self.attempts = 0
        self._ws = None
        self._reader_task: asyncio.Task | None = None
        self._keepalive_task: asyncio.Task | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()
        self._closing = False

    @property
    def connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    # ── Connect ──

    async def connect(self) -> bool:
        """Open the socket, scheduling a reconnect on failure. True when connected."""
        if self._closing or self.state is not ConnectionState.DISCONNECTED:
            return self.connected
        if await self._open():
            return True
        self.schedule_reconnect()
        return False

    async def _open(self) -> bool:
        if self._closing:
            return False
        self.state = ConnectionState.CONNECTING
        await self._drop_socket()

        logger.info("Connecting to hub event socket at %s", self.hub.server_url)
        try:
            ws = await self._connect(self.hub.socket_url(), open_timeout=OPEN_TIMEOUT)
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            logger.warning("Hub socket connect failed: %s", e)
            self.state = ConnectionState.DISCONNECTED
            return False

        self._ws = ws
        self.state = ConnectionState.CONNECTED
        self.attempts = 0
        self._cancel_reconnect()
        logger.info("Hub socket connected")

        try:
            await ws.send(json.dumps(SESSIONS_START))
            logger.info("SessionsStart sent")
        except ConnectionClosed as e:
            logger.warning("Hub socket closed during registration: %s", e)

        self._report_capabilities()
        self._keepalive_task = asyncio.create_task(self._keepalive_loop(ws))
        self._reader_task = asyncio.create_task(self._read_loop(ws))
        return True

    async def close(self):
        """Stop for good: no reconnects, all timers cancelled."""
        self._closing = True
        self._cancel_reconnect()
        await self._drop_socket()
        for task in list(self._background):
            task.cancel()
        self.state = ConnectionState.DISCONNECTED
        logger.info("Control channel closed")

    async def _drop_socket(self):
        for task in (self._keepalive_task, self._reader_task):
            if task and task is not asyncio.current_task():
                task.cancel()
                try:
                    await task
                except (asyncio.CancelledError, Exception):
                    pass
        self._keepalive_task = None
        self._reader_task = None
        if self._ws is not None:
            try:
                await self._ws.close()
            except Exception as e:
                logger.debug("Error closing hub socket: %s", e)
            self._ws = None

    def _on_disconnected(self):
        if self._closing:
            return
        logger.warning("Disconnected from hub")
        self.state = ConnectionState.DISCONNECTED
        if self._keepalive_task:
            self._keepalive_task.cancel()
            self._keepalive_task = None
        self._ws = None
        self.schedule_reconnect()

    # ── Reconnect ──

    def schedule_reconnect(self):
        """Start a reconnect cycle unless one is already pending."""
        if self._closing or self.reconnect_pending:
            return
        self.attempts += 1
        delay = backoff_delay(self.attempts)
        logger.info("Reconnecting in %ds (attempt %d)", delay, self.attempts)
        self._reconnect_task = asyncio.create_task(self._reconnect_cycle(delay))

    def _cancel_reconnect(self):
        task = self._reconnect_task
        self._reconnect_task = None
        if task and task is not asyncio.current_task():
            task.cancel()

    def _next_cycle(self):
        self._reconnect_task = None
        self.schedule_reconnect()

    async def _reconnect_cycle(self, delay: float):
        me = asyncio.current_task()
        try:
            while not self._closing:
                await asyncio.sleep(delay)
                if self.connected:
                    return

                logger.info("Checking hub before reconnecting")
                try:
                    await self.hub.server_info()
                except HubAuthError:
                    logger.info("Hub token rejected, re-authenticating")
                    if not await self.hub.authenticate():
                        logger.error("Re-authentication failed, next try in %ds", delay)
                        continue
                except HubError as e:
                    logger.warning("Hub unreachable (%s)", e)
                    self._next_cycle()
                    return

                if await self._open():
                    return
                self._next_cycle()
                return
        except asyncio.CancelledError:
            pass
        finally:
            if self._reconnect_task is me:
                self._reconnect_task = None

    # ── Keepalive ──

    async def _keepalive_loop(self, ws):
        try:
            while True:
                await asyncio.sleep(self.keepalive_interval)
                try:
                    await ws.send(json.dumps(KEEPALIVE))
                except ConnectionClosed as e:
                    logger.warning("Keep-alive failed: %s", e)
                    return
                self._report_capabilities()
        except asyncio.CancelledError:
            return

    def _report_capabilities(self):
        task = asyncio.create_task(self._post_capabilities())
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _post_capabilities(self):
        try:
            await self.hub.report_capabilities()
        except HubAuthError:
            # the reconnect cycle deals with expired tokens
            logger.debug("Capabilities rejected (401)")
        except HubError as e:
            logger.error("Could not report capabilities: %s", e)

    # ── Inbound ──

    async def _read_loop(self, ws):
        try:
            async for raw in ws:
                self.handle_raw(raw)
        except asyncio.CancelledError:
            return
        except ConnectionClosed as e:
            logger.warning("Hub socket closed: %s", e)
        except Exception as e:
            logger.error("Hub socket error: %s", e)
        self._on_disconnected()

    def handle_raw(self, raw):
        """Parse one socket frame and forward any command it carries."""
        try:
            msg = json.loads(raw)
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning("Invalid JSON from hub: %s", e)
            return
        if not isinstance(msg, dict):
            return
        kind = msg.get("MessageType")
        if kind in IGNORED_TYPES:
            return
        command = parse_hub_message(msg)
        if command is None:
            logger.debug("Ignoring hub message %s", kind)
            return
        logger.info("Hub command: %s", kind)
        self._on_command(command)
