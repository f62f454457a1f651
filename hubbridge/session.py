"""
Playback session values.

A Session is the one active playback: which item, which play-session id the
hub knows it by, where mpv currently is, and whether the stop has already
been reported.  SeriesContext is the season listing around an episode, built
once when the session starts and never changed afterwards.
"""

import uuid
from dataclasses import dataclass, field

TICKS_PER_SECOND = 10_000_000


def ticks_to_seconds(ticks) -> float:
    try:
        return int(ticks or 0) / TICKS_PER_SECOND
    except (TypeError, ValueError):
        return 0.0


def seconds_to_ticks(seconds: float) -> int:
    return round((seconds or 0) * TICKS_PER_SECOND)


@dataclass(frozen=True)
class Episode:
    id: str
    name: str = ""
    index: int | None = None
    season: int | None = None

    @classmethod
    def from_item(cls, item: dict) -> "Episode":
        return cls(
            id=item.get("Id", ""),
            name=item.get("Name") or "",
            index=item.get("IndexNumber"),
            season=item.get("ParentIndexNumber"),
        )

    def label(self) -> str:
        return f"S{self.season or 0}E{self.index or 0} - {self.name}"


@dataclass(frozen=True)
class SeriesContext:
    episodes: tuple[Episode, ...]
    current_index: int
    series_name: str = ""
    season_number: int | None = None
    episode_number: int | None = None
    runtime: float = 0.0

    @property
    def next_episode(self) -> Episode | None:
        if self.current_index < 0:
            return None
        if self.current_index + 1 < len(self.episodes):
            return self.episodes[self.current_index + 1]
        return None

    @property
    def previous_episode(self) -> Episode | None:
        if self.current_index > 0:
            return self.episodes[self.current_index - 1]
        return None

    @classmethod
    def build(cls, item: dict, listing: list[dict]) -> "SeriesContext":
        """Order *listing* by episode number and locate *item* in it.

        Python's sort is stable, so equal episode numbers keep the order the
        hub listed them in.  Episodes without a number go last.
        """
        ordered = sorted(
            listing,
            key=lambda ep: (ep.get("IndexNumber") is None, ep.get("IndexNumber") or 0),
        )
        episodes = tuple(Episode.from_item(ep) for ep in ordered)
        item_id = item.get("Id")
        current = next((i for i, ep in enumerate(episodes) if ep.id == item_id), -1)
        return cls(
            episodes=episodes,
            current_index=current,
            series_name=item.get("SeriesName") or "",
            season_number=item.get("ParentIndexNumber"),
            episode_number=item.get("IndexNumber"),
            runtime=ticks_to_seconds(item.get("RunTimeTicks")),
        )


@dataclass(frozen=True)
class ItemInfo:
    """What the hub told us about the item being played."""
    item_id: str
    name: str = ""
    runtime: float = 0.0
    series: SeriesContext | None = None

    @property
    def title(self) -> str:
        if self.series:
            return (f"{self.series.series_name} "
                    f"{self.series.season_number}x{self.series.episode_number}")
        return self.name or self.item_id


@dataclass
class Session:
    item_id: str
    generation: int
    info: ItemInfo
    position: float = 0.0
    paused: bool = False
    stop_reported: bool = False
    watched: bool = False
    pending_seek: float = 0.0
    duration: float = 0.0
    stream_url: str = ""
    play_session_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def series(self) -> SeriesContext | None:
        return self.info.series

    @property
    def runtime(self) -> float:
        """Hub runtime, or mpv's reported duration when the hub had none."""
        return self.info.runtime or self.duration

    @property
    def position_ticks(self) -> int:
        return seconds_to_ticks(self.position)
