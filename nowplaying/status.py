"""
Status values pushed to subscribers.

A Status is either Playing or NotPlaying. Both are frozen dataclasses so the
poll loop can diff them with plain ``==`` (variant and every field compared).
"""
import math
from dataclasses import dataclass
from typing import Optional, Union


@dataclass(frozen=True, eq=True)
class NotPlaying:
    def as_dict(self) -> dict:
        return {"is_playing": False}


@dataclass(frozen=True, eq=True)
class Playing:
    song: str
    album: str
    artist: str
    album_art: Optional[str]
    track_id: str
    total: int
    start: int

    def as_dict(self) -> dict:
        return {
            "is_playing": True,
            "song": self.song,
            "album": self.album,
            "artist": self.artist,
            "album_art": self.album_art,
            "track_id": self.track_id,
            "total": self.total,
            "start": self.start,
        }


Status = Union[Playing, NotPlaying]

NOT_PLAYING = NotPlaying()


def estimate_start(now_ms: float, progress_ms: float) -> int:
    """
    Estimate the epoch second playback started at.

    Start times landing within 100ms of a whole second get a half-second
    bias before flooring, so jitter between polls doesn't flip the result
    back and forth across the boundary.
    """
    start_ms = now_ms - progress_ms
    ms = start_ms % 1000
    error = 1000 - ms if ms > 500 else ms
    bias = 500 if error < 100 else 0
    return math.floor((start_ms + bias) / 1000)
