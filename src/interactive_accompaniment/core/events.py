"""
Per-engine publish/subscribe channel.

Each engine owns its own bus so that several engines (or tests) never share
subscribers.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

logger = logging.getLogger(__name__)


class EventType(Enum):
    MIDI_NOTE = "midi_note"
    SCORE_POSITION = "score_position"
    ROLE_CHANGE = "role_change"
    MOTION_CUE = "motion_cue"
    REHEARSAL_COMMAND = "rehearsal_command"
    ENGINE_STATE = "engine_state"
    TEMPO_CHANGE = "tempo_change"
    PLAYBACK_START = "playback_start"
    PLAYBACK_STOP = "playback_stop"


@dataclass
class Event:
    type: EventType
    data: Any = None


Handler = Callable[[Event], None]


class EventBus:
    """Synchronous observer registry keyed by event type."""

    def __init__(self):
        self._handlers: dict[EventType, list[Handler]] = {}

    def on(self, event_type: EventType, handler: Handler) -> Callable[[], None]:
        """
        Subscribe ``handler`` to ``event_type``.

        Returns:
            A callable that removes the subscription.
        """
        handlers = self._handlers.setdefault(event_type, [])
        if handler not in handlers:
            handlers.append(handler)

        def unsubscribe() -> None:
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def emit(self, event: Event) -> None:
        """Deliver ``event`` to its subscribers in subscription order."""
        for handler in list(self._handlers.get(event.type, ())):
            try:
                handler(event)
            except Exception:
                logger.exception(f"Error in handler for {event.type.value}")

    def off(self, event_type: EventType) -> None:
        self._handlers.pop(event_type, None)

    def clear(self) -> None:
        self._handlers.clear()

    def subscriber_count(self, event_type: EventType) -> int:
        return len(self._handlers.get(event_type, ()))
