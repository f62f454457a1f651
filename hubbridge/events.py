"""
Everything the orchestrator reacts to arrives as one of these events.

The control channel, the mpv IPC reader, the mpv exit watcher and the
orchestrator's own timers all post into the same queue, and the dispatch
loop handles them one at a time.  Events tied to a session carry its
generation so anything left over from a torn-down session is ignored.
"""

import enum
from dataclasses import dataclass, field


class TimerKind(enum.Enum):
    PROGRESS = "progress"
    IPC_CONNECT = "ipc_connect"
    LOAD_FILE = "load_file"


@dataclass(frozen=True)
class PlayCommand:
    item_ids: tuple[str, ...]
    start_ticks: int = 0


@dataclass(frozen=True)
class PlaystateCommand:
    command: str
    seek_ticks: int | None = None


@dataclass(frozen=True)
class ControlMessage:
    command: PlayCommand | PlaystateCommand


@dataclass(frozen=True)
class PlayerEvent:
    generation: int
    message: dict = field(default_factory=dict)


@dataclass(frozen=True)
class PlayerDisconnected:
    generation: int


@dataclass(frozen=True)
class ProcessExited:
    generation: int
    returncode: int | None = None


@dataclass(frozen=True)
class TimerFired:
    kind: TimerKind
    generation: int


def parse_hub_message(msg: dict) -> PlayCommand | PlaystateCommand | None:
    """Turn a hub socket message into a command, None for anything else."""
    if not isinstance(msg, dict):
        return None
    kind = msg.get("MessageType")
    data = msg.get("Data")
    if not isinstance(data, dict):
        data = {}

    if kind == "Play":
        item_ids = tuple(str(i) for i in (data.get("ItemIds") or []) if i)
        try:
            start = int(data.get("StartPositionTicks") or 0)
        except (TypeError, ValueError):
            start = 0
        return PlayCommand(item_ids=item_ids, start_ticks=start)

    if kind == "Playstate":
        seek = data.get("SeekPositionTicks")
        try:
            seek = int(seek) if seek is not None else None
        except (TypeError, ValueError):
            seek = None
        return PlaystateCommand(command=str(data.get("Command") or ""), seek_ticks=seek)

    return None
