"""Core modules for score following and accompaniment scheduling."""

from interactive_accompaniment.core.clock import AsyncioClock, ManualClock
from interactive_accompaniment.core.engine import AccompanimentEngine
from interactive_accompaniment.core.events import Event, EventBus, EventType
from interactive_accompaniment.core.follower import ScoreFollower
from interactive_accompaniment.core.playback import PlaybackEngine
from interactive_accompaniment.core.scheduler import AccompanimentScheduler

__all__ = [
    "AccompanimentEngine",
    "AccompanimentScheduler",
    "AsyncioClock",
    "Event",
    "EventBus",
    "EventType",
    "ManualClock",
    "PlaybackEngine",
    "ScoreFollower",
]
