"""
mpv process lifecycle.

mpv is started idle with a window and an IPC socket; the orchestrator loads
the stream over IPC once the socket answers.  mpv's own resume-on-quit is
disabled because saved positions are kept by the bridge.
"""

import asyncio
import logging
import os

logger = logging.getLogger(__name__)

TERMINATE_GRACE = 2.0  # seconds between SIGTERM and SIGKILL


def build_mpv_args(ipc_path: str, title: str, extra_args=None) -> list[str]:
    args = [
        "--idle=yes",
        "--force-window=immediate",
        f"--title={title}",
        "--keep-open=no",
        "--ontop",
        f"--input-ipc-server={ipc_path}",
        "--save-position-on-quit=no",
        "--hwdec=auto-safe",
        "--vo=gpu",
        "--cache=yes",
        "--demuxer-max-bytes=150M",
        "--demuxer-max-back-bytes=75M",
    ]
    args.extend(extra_args or [])
    return args


class MpvProcess:
    """One spawned mpv.  on_exit(returncode) fires once when it exits."""

    def __init__(self, mpv_path: str, ipc_path: str, on_exit=None):
        self.mpv_path = mpv_path
        self.ipc_path = ipc_path
        self._on_exit = on_exit
        self._proc: asyncio.subprocess.Process | None = None
        self._wait_task: asyncio.Task | None = None

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc else None

    @property
    def alive(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    async def start(self, title: str, extra_args=None):
        """Spawn mpv. Raises OSError if the binary can't be executed."""
        try:
            os.unlink(self.ipc_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Could not remove stale IPC socket %s: %s", self.ipc_path, e)

        args = build_mpv_args(self.ipc_path, title, extra_args)
        logger.debug("mpv args: %s", " ".join(args))
        self._proc = await asyncio.create_subprocess_exec(
            self.mpv_path, *args,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        logger.info("mpv started with PID %d", self._proc.pid)
        self._wait_task = asyncio.create_task(self._watch_exit())

    async def _watch_exit(self):
        try:
            code = await self._proc.wait()
        except asyncio.CancelledError:
            return
        if code == 1:
            logger.error("mpv exited with an error, check player.mpv_path, "
                         "player.extra_args and the display/video driver")
        else:
            logger.info("mpv exited (code %s)", code)
        if self._on_exit:
            self._on_exit(code)

    async def terminate(self):
        """Stop mpv without firing on_exit: SIGTERM, then SIGKILL after the grace."""
        if self._wait_task:
            self._wait_task.cancel()
            self._wait_task = None
        proc = self._proc
        if proc is None or proc.returncode is not None:
            return
        try:
            proc.terminate()
            await asyncio.wait_for(proc.wait(), TERMINATE_GRACE)
        except ProcessLookupError:
            pass
        except asyncio.TimeoutError:
            logger.warning("mpv ignored SIGTERM, killing PID %d", proc.pid)
            proc.kill()
            await proc.wait()
        logger.info("mpv terminated")
