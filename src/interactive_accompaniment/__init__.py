"""
Interactive Accompaniment - Score-following accompaniment with lead/follow roles.

Tracks a live soloist against a parsed score and plays the remaining parts
in time, leading or following as the score's rehearsal marks direct.
"""

__version__ = "1.0.0"
__author__ = "Interactive Accompaniment Team"

from interactive_accompaniment.core.engine import AccompanimentEngine
from interactive_accompaniment.core.follower import ScoreFollower
from interactive_accompaniment.core.playback import PlaybackEngine
from interactive_accompaniment.core.roles import resolve_role
from interactive_accompaniment.core.scheduler import AccompanimentScheduler

__all__ = [
    "AccompanimentEngine",
    "ScoreFollower",
    "AccompanimentScheduler",
    "PlaybackEngine",
    "resolve_role",
]
