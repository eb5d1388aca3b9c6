"""
Fixed-tempo score playback.

Plays the accompaniment at a set tempo without listening to the performer,
used for practice runs and for checking a score before a session.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Optional

from interactive_accompaniment.core.clock import Clock, TimerHandle
from interactive_accompaniment.core.events import Event, EventBus, EventType
from interactive_accompaniment.core.scheduler import AccompanimentScheduler, NoteCallback, SchedulerMode
from interactive_accompaniment.core.types import EngineState, ParsedScore
from interactive_accompaniment.utils.config import EngineConfig

logger = logging.getLogger(__name__)


@dataclass
class PlaybackState:
    engine_state: EngineState
    current_measure: int
    current_beat: float
    tempo: float


class PlaybackEngine:
    """
    Plays every selected part at a fixed, user-set tempo.
    """

    def __init__(
        self,
        clock: Clock,
        config: Optional[EngineConfig] = None,
        bus: Optional[EventBus] = None,
    ):
        self.clock = clock
        self.config = config or EngineConfig()
        self.bus = bus or EventBus()

        self._muted: set[int] = set()
        self.scheduler = AccompanimentScheduler(
            SchedulerMode.FIXED, self.config, is_muted=self.is_muted
        )
        self._score: Optional[ParsedScore] = None
        self._state = EngineState.IDLE
        self._measure = 0
        self._ticker: Optional[TimerHandle] = None
        self._last_publish_ms: Optional[float] = None

        self._on_note_output: Optional[NoteCallback] = None
        self._on_state_change: Optional[Callable[[PlaybackState], None]] = None

    def load_score(
        self,
        score: ParsedScore,
        exclude_solo: bool = False,
        exclude_part_index: Optional[int] = None,
    ) -> None:
        """
        Load a score for playback.

        Args:
            score: Parsed score.
            exclude_solo: Leave out parts flagged as solo.
            exclude_part_index: Leave out this part (takes precedence).
        """
        self._stop_ticker()
        self._score = score
        self._muted.clear()

        if exclude_part_index is not None:
            parts = [p for i, p in enumerate(score.parts) if i != exclude_part_index]
        elif exclude_solo:
            parts = [p for p in score.parts if not p.is_solo]
        else:
            parts = list(score.parts)

        self.scheduler.load(
            [note for part in parts for note in part.notes],
            score.tempo,
            score.beats_per_measure,
            score.playback_order,
            score.measure_numbers,
        )
        self._measure = self.scheduler.first_measure
        self._state = EngineState.IDLE
        logger.info(f"Loaded '{score.title}' for playback ({len(parts)} parts)")
        self._publish()

    def set_note_output_callback(self, callback: NoteCallback) -> None:
        self._on_note_output = callback

    def set_state_change_callback(self, callback: Callable[[PlaybackState], None]) -> None:
        self._on_state_change = callback

    @property
    def state(self) -> EngineState:
        return self._state

    def get_tempo(self) -> float:
        return self.scheduler.tempo

    def set_tempo(self, bpm: float) -> float:
        """Set the playback tempo, clamped to 0.25x-4x of the score tempo."""
        tempo = self.scheduler.set_tempo(bpm)
        self.bus.emit(Event(EventType.TEMPO_CHANGE, {"tempo": tempo}))
        self._publish()
        return tempo

    def get_state(self) -> PlaybackState:
        return PlaybackState(
            engine_state=self._state,
            current_measure=self._measure,
            current_beat=self.scheduler.beat,
            tempo=self.scheduler.tempo,
        )

    def start(self) -> None:
        if self._score is None:
            logger.warning("start() called without a score")
            return
        self._state = EngineState.PLAYING
        self._stop_ticker()
        self._ticker = self.clock.call_every(self.config.tick_ms / 1000.0, self._on_tick)
        self.scheduler.emit_due(self._on_note_output)
        self.bus.emit(Event(EventType.PLAYBACK_START))
        self._publish()

    def stop(self) -> None:
        self._state = EngineState.IDLE
        self._stop_ticker()
        self.scheduler.reset()
        self._measure = self.scheduler.first_measure if self._score else 0
        self.bus.emit(Event(EventType.PLAYBACK_STOP))
        self._publish()

    def mute_part(self, part_index: int) -> None:
        self._muted.add(part_index)

    def unmute_part(self, part_index: int) -> None:
        self._muted.discard(part_index)

    def is_muted(self, part_index: int) -> bool:
        return part_index in self._muted

    def muted_parts(self) -> set[int]:
        return set(self._muted)

    def _on_tick(self) -> None:
        if self._state != EngineState.PLAYING:
            return

        index = self.scheduler.advance(self.config.tick_ms)
        if self.scheduler.is_finished(index):
            logger.info("Playback reached end of score")
            self.stop()
            return

        self._measure = self.scheduler.current_measure
        self.scheduler.emit_due(self._on_note_output)
        self._publish_throttled()

    def _stop_ticker(self) -> None:
        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None

    def _publish(self) -> None:
        self._last_publish_ms = self.clock.now_ms()
        self._deliver()

    def _publish_throttled(self) -> None:
        now = self.clock.now_ms()
        if (
            self._last_publish_ms is not None
            and now - self._last_publish_ms < self.config.state_throttle_ms
        ):
            return
        self._last_publish_ms = now
        self._deliver()

    def _deliver(self) -> None:
        state = self.get_state()
        if self._on_state_change:
            self._on_state_change(state)
        self.bus.emit(Event(EventType.ENGINE_STATE, state))
