"""
Playback session orchestrator.

Owns the one active Session and everything attached to it: the mpv process,
the mpv IPC connection, and the session timers (progress reports, IPC
connect retries, deferred loadfile).  Hub commands, mpv events, mpv exit and
timer ticks all arrive through post() and are handled one at a time by the
dispatch loop, so handlers never interleave.

    IDLE ──Play──▶ STARTING ──file-loaded──▶ PLAYING ⇄ PAUSED
      ▲                                         │
      └──────────── STOPPING ◀── Stop / EOF / exit / superseded

Starting a session always tears the previous one down first (process
terminated, IPC closed, timers cancelled, stop reported) before anything
new is spawned.  Stop is reported at most once per session.
"""

import asyncio
import enum
import logging

from .events import (
    ControlMessage,
    PlayCommand,
    PlayerDisconnected,
    PlayerEvent,
    PlaystateCommand,
    ProcessExited,
    TimerFired,
    TimerKind,
)
from .lib.hub_client import HubClient, HubError
from .lib.mpv_ipc import MpvIpcClient
from .lib.reporter import Reporter
from .lib.store import MIN_SAVE_SECONDS, PositionStore
from .player import MpvProcess
from .session import ItemInfo, SeriesContext, Session, ticks_to_seconds

logger = logging.getLogger(__name__)

PROGRESS_INTERVAL = 10.0
IPC_CONNECT_DELAY = 0.5
IPC_RETRY_DELAY = 0.5
IPC_MAX_ATTEMPTS = 10
LOAD_DELAY = 0.1
RESTART_THRESHOLD = 30.0   # "previous" past this restarts the current episode
COMPLETION_RATIO = 0.9     # watched if mpv exits past this share of the runtime
SHUTDOWN_DRAIN_TIMEOUT = 10.0

NEXT_MESSAGE = "hubbridge-next"
PREV_MESSAGE = "hubbridge-prev"
OBSERVED_PROPERTIES = ("eof-reached", "time-pos", "pause", "duration")
KEY_BINDINGS = (
    ("MEDIA_NEXT", NEXT_MESSAGE),
    ("MEDIA_PREV", PREV_MESSAGE),
    (">", NEXT_MESSAGE),
    ("<", PREV_MESSAGE),
)


class PlaybackState(enum.Enum):
    IDLE = "idle"
    STARTING = "starting"
    PLAYING = "playing"
    PAUSED = "paused"
    STOPPING = "stopping"


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class Orchestrator:
    """The playback state machine."""

    def __init__(self, hub: HubClient, positions: PositionStore, *,
                 mpv_path: str = "mpv",
                 ipc_path: str = "/tmp/hubbridge-mpv.sock",
                 extra_args=None,
                 title_prefix: str = "Jellyfin",
                 load_delay: float = LOAD_DELAY,
                 ipc_connect_delay: float = IPC_CONNECT_DELAY,
                 process_factory=None,
                 ipc_factory=None,
                 reporter: Reporter | None = None):
        self.hub = hub
        self.positions = positions
        self.reporter = reporter or Reporter()
        self.extra_args = list(extra_args or [])
        self.title_prefix = title_prefix
        self.load_delay = load_delay
        self.ipc_connect_delay = ipc_connect_delay

        self.state = PlaybackState.IDLE
        self.session: Session | None = None
        self._process = None
        self._ipc = None
        self._ipc_attempts = 0
        self._generation = 0
        self._timers: dict[TimerKind, asyncio.TimerHandle] = {}
        self._queue: asyncio.Queue = asyncio.Queue()
        self._loop_task: asyncio.Task | None = None

        self._process_factory = process_factory or (
            lambda on_exit: MpvProcess(mpv_path, ipc_path, on_exit=on_exit))
        self._ipc_factory = ipc_factory or (
            lambda on_message, on_close: MpvIpcClient(ipc_path, on_message, on_close))

    # ── Event loop ──

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def ipc_attempts(self) -> int:
        return self._ipc_attempts

    def post(self, event):
        self._queue.put_nowait(event)

    def on_hub_command(self, command):
        """Control channel callback."""
        self.post(ControlMessage(command))

    async def start(self):
        self._loop_task = asyncio.create_task(self._run())
        logger.info("Orchestrator ready")

    async def _run(self):
        while True:
            event = await self._queue.get()
            try:
                await self.dispatch(event)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Error handling %s", type(event).__name__)

    async def shutdown(self):
        """Stop the loop, end any session (its stop report included) and drain."""
        if self._loop_task:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
        self._cancel_timers()
        await self.force_stop("shutdown")
        await self.reporter.drain(timeout=SHUTDOWN_DRAIN_TIMEOUT)

    async def dispatch(self, event):
        """Handle exactly one event."""
        if isinstance(event, ControlMessage):
            await self._handle_command(event.command)
        elif isinstance(event, PlayerEvent):
            if self._is_current(event.generation):
                await self._handle_player_message(event.message)
        elif isinstance(event, PlayerDisconnected):
            if self._is_current(event.generation) and self._ipc is not None:
                logger.info("mpv IPC stream closed")
                await self._close_ipc()
        elif isinstance(event, ProcessExited):
            if self._is_current(event.generation):
                await self._handle_process_exit(event.returncode)
        elif isinstance(event, TimerFired):
            if self._is_current(event.generation):
                await self._handle_timer(event.kind)
        else:
            logger.warning("Unknown event %r", event)

    def _is_current(self, generation: int) -> bool:
        return self.session is not None and self.session.generation == generation

    # ── Timers ──

    def _schedule(self, kind: TimerKind, delay: float):
        self._cancel_timer(kind)
        event = TimerFired(kind, self.session.generation)
        self._timers[kind] = asyncio.get_running_loop().call_later(delay, self.post, event)

    def _cancel_timer(self, kind: TimerKind):
        handle = self._timers.pop(kind, None)
        if handle:
            handle.cancel()

    def _cancel_timers(self):
        for kind in list(self._timers):
            self._cancel_timer(kind)

    def timer_pending(self, kind: TimerKind) -> bool:
        return kind in self._timers

    async def _handle_timer(self, kind: TimerKind):
        self._timers.pop(kind, None)
        if kind is TimerKind.PROGRESS:
            self._report_progress()
        elif kind is TimerKind.IPC_CONNECT:
            await self._attempt_ipc_connect()
        elif kind is TimerKind.LOAD_FILE:
            if self.session.stream_url:
                logger.info("Loading stream into mpv")
                await self._ipc_send("loadfile", self.session.stream_url, "replace")

    # ── Hub commands ──

    async def _handle_command(self, command):
        if isinstance(command, PlayCommand):
            if not command.item_ids:
                logger.warning("Play command without item ids")
                return
            item_id = command.item_ids[0]
            start_ticks = command.start_ticks
            if start_ticks == 0:
                saved = self.positions.get_ticks(item_id)
                if saved > 0:
                    logger.info("Resuming from locally saved position %.2fs",
                                ticks_to_seconds(saved))
                    start_ticks = saved
            await self.play(item_id, start_ticks)
        elif isinstance(command, PlaystateCommand):
            await self._handle_playstate(command)

    async def _handle_playstate(self, command: PlaystateCommand):
        name = command.command
        if self.session is None:
            logger.info("Playstate %s ignored, nothing is playing", name)
            return
        if name == "Stop":
            await self.force_stop("remote stop")
        elif name == "Pause":
            await self._ipc_send("set_property", "pause", True)
        elif name == "Unpause":
            await self._ipc_send("set_property", "pause", False)
        elif name == "PlayPause":
            await self._ipc_send("set_property", "pause", not self.session.paused)
        elif name == "Seek":
            if command.seek_ticks is None:
                return
            seconds = ticks_to_seconds(command.seek_ticks)
            logger.info("Seek to %.2fs", seconds)
            await self._ipc_send("seek", seconds, "absolute")
        elif name == "NextTrack":
            await self.next_episode()
        elif name == "PreviousTrack":
            await self.previous_episode()
        else:
            logger.debug("Unsupported playstate command %s", name)

    # ── Session start ──

    async def play(self, item_id: str, start_ticks: int = 0):
        await self.force_stop("superseded")
        info = await self._fetch_info(item_id)
        self.state = PlaybackState.STARTING
        self._generation += 1
        start = ticks_to_seconds(start_ticks)
        session = Session(
            item_id=item_id,
            generation=self._generation,
            info=info,
            position=start,
            pending_seek=start,
            stream_url=self.hub.stream_url(item_id),
        )
        self.session = session
        self._ipc_attempts = 0

        generation = session.generation
        process = self._process_factory(
            lambda code: self.post(ProcessExited(generation, code)))
        title = f"{self.title_prefix} - {info.title}"
        logger.info("Starting mpv for %s (%s) at %.2fs", item_id, info.title, start)
        try:
            await process.start(title, self.extra_args)
        except OSError as e:
            logger.error("Could not start mpv: %s", e)
            self.session = None
            self.state = PlaybackState.IDLE
            return
        self._process = process

        play_session_id = session.play_session_id
        self.reporter.submit(
            "start", lambda: self.hub.report_start(item_id, start_ticks, play_session_id))
        self._schedule(TimerKind.PROGRESS, PROGRESS_INTERVAL)
        self._schedule(TimerKind.IPC_CONNECT, self.ipc_connect_delay)

    async def _fetch_info(self, item_id: str) -> ItemInfo:
        try:
            item = await self.hub.get_item(item_id)
        except HubError as e:
            logger.warning("Could not fetch item %s: %s", item_id, e)
            return ItemInfo(item_id=item_id)

        runtime = ticks_to_seconds(item.get("RunTimeTicks"))
        series = None
        if item.get("Type") == "Episode" and item.get("SeriesId"):
            try:
                listing = await self.hub.get_episodes(item["SeriesId"], item.get("SeasonId"))
                series = SeriesContext.build(item, listing)
                logger.info("Episode: %s S%sE%s (%d in season)",
                            series.series_name, series.season_number,
                            series.episode_number, len(series.episodes))
            except HubError as e:
                logger.warning("Could not fetch episode list: %s", e)
        return ItemInfo(item_id=item_id, name=item.get("Name") or "",
                        runtime=runtime, series=series)

    # ── mpv IPC ──

    async def _attempt_ipc_connect(self):
        if self._process is None or not self._process.alive:
            logger.info("mpv is not running, giving up on IPC")
            return
        await self._close_ipc()

        self._ipc_attempts += 1
        logger.info("Connecting to mpv IPC (attempt %d/%d)",
                    self._ipc_attempts, IPC_MAX_ATTEMPTS)
        generation = self.session.generation
        ipc = self._ipc_factory(
            lambda msg: self.post(PlayerEvent(generation, msg)),
            lambda: self.post(PlayerDisconnected(generation)))
        try:
            await ipc.connect()
        except OSError as e:
            logger.warning("mpv IPC connect failed: %s", e)
            if self._ipc_attempts >= IPC_MAX_ATTEMPTS:
                logger.error("mpv IPC unreachable after %d attempts", IPC_MAX_ATTEMPTS)
                await self.force_stop("mpv IPC unreachable")
            else:
                self._schedule(TimerKind.IPC_CONNECT, IPC_RETRY_DELAY)
            return

        self._ipc = ipc
        self._schedule(TimerKind.LOAD_FILE, self.load_delay)
        for prop_id, name in enumerate(OBSERVED_PROPERTIES, start=1):
            await self._ipc_send("observe_property", prop_id, name)
        for key, message in KEY_BINDINGS:
            await self._ipc_send("keybind", key, f"script-message {message}")
        logger.info("mpv key bindings installed")

    async def _ipc_send(self, name: str, *args) -> bool:
        if self._ipc is None:
            logger.debug("No mpv IPC, dropping %s", name)
            return False
        return await self._ipc.send(name, *args)

    async def _close_ipc(self):
        if self._ipc is not None:
            ipc = self._ipc
            self._ipc = None
            await ipc.close()

    async def _handle_player_message(self, msg: dict):
        session = self.session
        event = msg.get("event")

        if event == "file-loaded":
            if self.state is PlaybackState.STARTING:
                self.state = PlaybackState.PLAYING
            if session.pending_seek > 0:
                logger.info("File loaded, seeking to %.2fs", session.pending_seek)
                await self._ipc_send("seek", session.pending_seek, "absolute")
                session.pending_seek = 0.0
            return

        if event == "property-change":
            name = msg.get("name")
            data = msg.get("data")
            if name == "time-pos" and _is_number(data):
                session.position = float(data)
            elif name == "pause" and isinstance(data, bool):
                session.paused = data
                if self.state in (PlaybackState.PLAYING, PlaybackState.PAUSED):
                    self.state = PlaybackState.PAUSED if data else PlaybackState.PLAYING
            elif name == "duration" and _is_number(data):
                session.duration = float(data)
            elif name == "eof-reached" and data is True:
                await self._on_end_of_stream()
            return

        if event == "client-message":
            args = msg.get("args") or []
            if not args:
                return
            if args[0] == NEXT_MESSAGE:
                logger.info("Next episode requested (key)")
                await self.next_episode()
            elif args[0] == PREV_MESSAGE:
                logger.info("Previous episode requested (key)")
                await self.previous_episode()

    # ── Navigation ──

    async def _on_end_of_stream(self):
        session = self.session
        logger.info("End of file reached for %s", session.item_id)
        if not session.stop_reported:
            self._mark_watched(session)
        nxt = session.series.next_episode if session.series else None
        if nxt is None:
            await self.force_stop("end of stream")
            return
        logger.info("Playing next episode: %s", nxt.label())
        await self.play(nxt.id, 0)

    async def next_episode(self):
        session = self.session
        if session is None or session.series is None:
            logger.info("Not a series, ignoring next")
            return
        nxt = session.series.next_episode
        if nxt is None:
            logger.info("No more episodes in this season")
            await self.force_stop("last episode")
            return
        logger.info("Playing next episode: %s", nxt.label())
        await self.play(nxt.id, 0)

    async def previous_episode(self):
        session = self.session
        if session is None or session.series is None:
            logger.info("Not a series, ignoring previous")
            return
        if session.position > RESTART_THRESHOLD:
            logger.info("Restarting current episode")
            await self.play(session.item_id, 0)
            return
        prev = session.series.previous_episode
        if prev is None:
            logger.info("Already at the first episode of the season")
            return
        logger.info("Playing previous episode: %s", prev.label())
        await self.play(prev.id, 0)

    # ── Reporting / persistence ──

    def _report_progress(self):
        session = self.session
        item_id = session.item_id
        ticks = session.position_ticks
        play_session_id = session.play_session_id
        paused = session.paused
        self.reporter.submit(
            "progress",
            lambda: self.hub.report_progress(item_id, ticks, play_session_id, paused),
            quiet=True)
        if session.position > MIN_SAVE_SECONDS and not session.watched:
            self.positions.save(item_id, session.position)
        self._schedule(TimerKind.PROGRESS, PROGRESS_INTERVAL)

    def _mark_watched(self, session: Session):
        if session.watched:
            return
        session.watched = True
        item_id = session.item_id

        async def mark():
            await self.hub.mark_played(item_id)
            self.positions.clear(item_id)

        self.reporter.submit("mark played", mark)

    def _report_stop(self, session: Session):
        if session.stop_reported:
            return
        session.stop_reported = True
        item_id = session.item_id
        ticks = session.position_ticks
        play_session_id = session.play_session_id
        self.reporter.submit(
            "stop", lambda: self.hub.report_stop(item_id, ticks, play_session_id))

    def _check_completion(self, session: Session):
        """Mark watched when mpv quit past the completion share of the runtime."""
        if session.stop_reported:
            return
        runtime = session.runtime
        if runtime > 0 and session.position >= runtime * COMPLETION_RATIO:
            self._mark_watched(session)

    def _persist(self, session: Session):
        if session.position > 0 and not session.watched:
            self.positions.save(session.item_id, session.position)

    # ── Teardown ──

    async def force_stop(self, reason: str = "stop"):
        """End the current session and release its process, IPC and timers."""
        session = self.session
        if session is None and self._process is None and self._ipc is None:
            return
        logger.info("Stopping playback (%s)", reason)
        self.state = PlaybackState.STOPPING
        self._cancel_timers()
        await self._close_ipc()
        exited = False
        if self._process is not None:
            process = self._process
            self._process = None
            # mpv may have quit on its own with ProcessExited still queued
            exited = not process.alive
            await process.terminate()
        if session is not None:
            if exited:
                self._check_completion(session)
            self._report_stop(session)
            self._persist(session)
        self.session = None
        self.state = PlaybackState.IDLE

    async def _handle_process_exit(self, returncode):
        session = self.session
        logger.info("mpv closed (code %s) at %.2fs", returncode, session.position)
        self.state = PlaybackState.STOPPING
        self._cancel_timers()
        await self._close_ipc()
        self._process = None
        self._check_completion(session)
        self._report_stop(session)
        self._persist(session)
        self.session = None
        self.state = PlaybackState.IDLE
