"""
mpv JSON IPC client over the --input-ipc-server Unix socket.

Protocol: one JSON object per line in both directions.

    → {"command": ["set_property", "pause", true], "request_id": 7}
    ← {"request_id": 7, "error": "success", "data": null}
    ← {"event": "property-change", "id": 2, "name": "time-pos", "data": 12.3}
    ← {"event": "client-message", "args": ["hubbridge-next"]}

Replies and unsolicited events share the stream, so every complete line is
handed to the on_message callback as-is; the caller decides what matters.
A line that fails to parse is dropped on its own and never affects the next.
"""

import asyncio
import json
import logging

logger = logging.getLogger(__name__)

READ_CHUNK = 4096


class MpvIpcClient:
    """One connection to a running mpv's IPC socket."""

    def __init__(self, socket_path: str, on_message=None, on_close=None):
        self.socket_path = socket_path
        self._on_message = on_message
        self._on_close = on_close
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._read_task: asyncio.Task | None = None
        self._buffer = b""
        self._next_request_id = 1

    @property
    def connected(self) -> bool:
        return self._writer is not None and not self._writer.is_closing()

    @property
    def next_request_id(self) -> int:
        return self._next_request_id

    async def connect(self):
        """Open the socket and start reading. Raises OSError on failure."""
        self._reader, self._writer = await asyncio.open_unix_connection(self.socket_path)
        self._buffer = b""
        self._read_task = asyncio.create_task(self._read_loop())
        logger.info("Connected to mpv IPC at %s", self.socket_path)

    async def close(self):
        if self._read_task:
            self._read_task.cancel()
            try:
                await self._read_task
            except asyncio.CancelledError:
                pass
            self._read_task = None
        if self._writer:
            try:
                self._writer.close()
                await self._writer.wait_closed()
            except Exception as e:
                logger.debug("mpv IPC close: %s", e)
        self._reader = None
        self._writer = None
        self._buffer = b""

    # ── Outbound ──

    async def send(self, name: str, *args) -> bool:
        """Send one command. The request id advances even if the send fails."""
        request_id = self._next_request_id
        self._next_request_id += 1
        if not self.connected:
            logger.debug("mpv IPC not connected, dropping %s", name)
            return False
        try:
            line = json.dumps({"command": [name, *args], "request_id": request_id})
            self._writer.write(line.encode() + b"\n")
            await self._writer.drain()
            return True
        except (TypeError, ValueError) as e:
            logger.error("mpv IPC could not encode %s: %s", name, e)
        except (ConnectionError, OSError) as e:
            logger.error("mpv IPC send error (%s): %s", name, e)
        return False

    # ── Inbound ──

    def feed(self, data: bytes) -> list[dict]:
        """Buffer *data*, return every complete line parsed as a JSON object.

        The trailing partial line (no newline yet) stays buffered for the
        next read.
        """
        self._buffer += data
        *lines, self._buffer = self._buffer.split(b"\n")
        messages = []
        for line in lines:
            if not line.strip():
                continue
            try:
                msg = json.loads(line)
            except (json.JSONDecodeError, UnicodeDecodeError):
                logger.debug("mpv IPC: discarding unparseable line %r", line[:200])
                continue
            if not isinstance(msg, dict):
                continue
            error = msg.get("error")
            if error and error != "success":
                logger.warning("mpv error for request %s: %s",
                               msg.get("request_id"), error)
            messages.append(msg)
        return messages

    async def _read_loop(self):
        try:
            while self._reader:
                data = await self._reader.read(READ_CHUNK)
                if not data:
                    break  # EOF, mpv closed the socket
                for msg in self.feed(data):
                    if self._on_message:
                        self._on_message(msg)
        except asyncio.CancelledError:
            return
        except Exception as e:
            logger.debug("mpv IPC reader ended: %s", e)
        logger.info("Disconnected from mpv IPC")
        if self._on_close:
            self._on_close()
