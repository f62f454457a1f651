"""Shared fakes for the hub, the mpv process and the mpv IPC connection."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from hubbridge.events import (
    ControlMessage,
    PlayCommand,
    PlayerEvent,
    PlaystateCommand,
    ProcessExited,
    TimerFired,
    TimerKind,
)
from hubbridge.lib.store import PositionStore
from hubbridge.orchestrator import Orchestrator

TICKS = 10_000_000


def episode(n, runtime=1000):
    return {
        "Id": f"e{n}",
        "Name": f"Episode {n}",
        "Type": "Episode",
        "SeriesId": "show",
        "SeasonId": "season1",
        "SeriesName": "Show",
        "ParentIndexNumber": 1,
        "IndexNumber": n,
        "RunTimeTicks": runtime * TICKS,
    }


MOVIE = {"Id": "movie", "Name": "A Movie", "Type": "Movie", "RunTimeTicks": 1000 * TICKS}
EPISODES = [episode(3), episode(1), episode(2)]  # hub order is not episode order
ITEMS = {item["Id"]: item for item in [MOVIE, *EPISODES]}


class FakeProcess:
    def __init__(self, on_exit):
        self.on_exit = on_exit
        self.alive = False
        self.terminated = False
        self.title = None

    async def start(self, title, extra_args=None):
        self.alive = True
        self.title = title

    async def terminate(self):
        self.alive = False
        self.terminated = True


class FakeIpc:
    def __init__(self, on_message, on_close, fail=False):
        self.on_message = on_message
        self.on_close = on_close
        self.fail = fail
        self.sent = []
        self.closed = False

    async def connect(self):
        if self.fail:
            raise ConnectionRefusedError("no socket yet")

    async def send(self, name, *args):
        self.sent.append([name, *args])
        return True

    async def close(self):
        self.closed = True


def make_hub(calls):
    """Hub mock that records every report, in order, into *calls*."""
    hub = MagicMock()
    hub.stream_url.side_effect = lambda item_id: f"http://hub/Videos/{item_id}/stream"

    async def get_item(item_id):
        return dict(ITEMS[item_id])

    async def get_episodes(series_id, season_id):
        return [dict(ep) for ep in EPISODES]

    hub.get_item = AsyncMock(side_effect=get_item)
    hub.get_episodes = AsyncMock(side_effect=get_episodes)
    for name in ("report_start", "report_progress", "report_stop", "mark_played"):
        def record(*args, _name=name):
            calls.append((_name, args))
        setattr(hub, name, AsyncMock(side_effect=record))
    return hub


class Harness:
    """Drives an Orchestrator one event at a time, no dispatch loop running."""

    def __init__(self, tmp_path):
        self.calls = []
        self.hub = make_hub(self.calls)
        self.positions = PositionStore(str(tmp_path), "test")
        self.processes = []
        self.ipcs = []
        self.ipc_failures = 0
        self.orch = Orchestrator(
            self.hub,
            self.positions,
            process_factory=self._make_process,
            ipc_factory=self._make_ipc,
        )

    def _make_process(self, on_exit):
        process = FakeProcess(on_exit)
        self.processes.append(process)
        return process

    def _make_ipc(self, on_message, on_close):
        fail = self.ipc_failures > 0
        if fail:
            self.ipc_failures -= 1
        ipc = FakeIpc(on_message, on_close, fail=fail)
        self.ipcs.append(ipc)
        return ipc

    @property
    def session(self):
        return self.orch.session

    @property
    def process(self):
        return self.processes[-1]

    @property
    def ipc(self):
        return self.ipcs[-1]

    def alive_processes(self):
        return [p for p in self.processes if p.alive]

    def reported(self, name):
        return [args for call, args in self.calls if call == name]

    async def play(self, item_id, start_ticks=0):
        await self.orch.dispatch(ControlMessage(PlayCommand((item_id,), start_ticks)))

    async def playstate(self, command, seek_ticks=None):
        await self.orch.dispatch(ControlMessage(PlaystateCommand(command, seek_ticks)))

    async def timer(self, kind: TimerKind):
        await self.orch.dispatch(TimerFired(kind, self.session.generation))

    async def connect_ipc(self):
        await self.timer(TimerKind.IPC_CONNECT)

    async def player(self, message):
        await self.orch.dispatch(PlayerEvent(self.session.generation, message))

    async def prop(self, name, data):
        await self.player({"event": "property-change", "name": name, "data": data})

    async def exit(self, code=0):
        await self.orch.dispatch(ProcessExited(self.session.generation, code))

    async def settle(self):
        await self.orch.reporter.drain(timeout=2)


@pytest.fixture
async def harness(tmp_path):
    h = Harness(tmp_path)
    yield h
    await h.orch.force_stop("test teardown")
    await h.settle()
