"""
Accompaniment scheduling on a virtual beat clock.

The scheduler owns the playback position in beats. A periodic tick moves
it forward at the effective tempo; tracker updates pull it toward the
performer. Notes are handed out ahead of time together with the delay at
which they should sound.
"""

from __future__ import annotations

import logging
import math
from enum import Enum
from typing import Callable, Optional

from interactive_accompaniment.core.types import NoteEvent, measure_at_index
from interactive_accompaniment.utils.config import EngineConfig

logger = logging.getLogger(__name__)

NoteCallback = Callable[[NoteEvent, float], None]

# Explicit tempo settings in fixed-tempo playback
FIXED_MIN_TEMPO_RATIO = 0.25
FIXED_MAX_TEMPO_RATIO = 4.0


class SchedulerMode(Enum):
    ADAPTIVE = "adaptive"  # Tempo blended with the score follower
    FIXED = "fixed"  # Plain playback at a set tempo


class AccompanimentScheduler:
    """
    Virtual playback clock plus a forward-only cursor into the note list.

    The cursor never moves backward while running; only :meth:`reset`
    rewinds it.
    """

    def __init__(
        self,
        mode: SchedulerMode = SchedulerMode.ADAPTIVE,
        config: Optional[EngineConfig] = None,
        is_muted: Optional[Callable[[int], bool]] = None,
    ):
        """
        Initialize the scheduler.

        Args:
            mode: Adaptive (tracker-blended) or fixed-tempo playback.
            config: Engine timing configuration.
            is_muted: Predicate on part index; muted parts are never emitted.
        """
        self.mode = mode
        self.config = config or EngineConfig()
        self._is_muted = is_muted or (lambda _part: False)

        self._notes: list[NoteEvent] = []
        self._base_tempo = 120.0
        self._tempo = 120.0
        self._beats_per_measure = 4
        self._playback_order: list[int] = []
        self._measure_numbers: list[int] = []

        self._beat = 0.0
        self._cursor = 0

    def load(
        self,
        notes: list[NoteEvent],
        base_tempo: float,
        beats_per_measure: int,
        playback_order: list[int],
        measure_numbers: list[int],
    ) -> None:
        """Load accompaniment notes and the playback timeline."""
        self._notes = sorted(notes, key=lambda n: n.start_beat)
        self._base_tempo = float(base_tempo)
        self._tempo = float(base_tempo)
        self._beats_per_measure = beats_per_measure
        self._playback_order = list(playback_order)
        self._measure_numbers = list(measure_numbers)
        self.reset()
        logger.debug(f"Scheduler loaded {len(self._notes)} notes ({self.mode.value})")

    def reset(self) -> None:
        """Rewind the clock and the cursor to the beginning."""
        self._beat = 0.0
        self._cursor = 0

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def beat(self) -> float:
        return self._beat

    @property
    def tempo(self) -> float:
        return self._tempo

    @property
    def base_tempo(self) -> float:
        return self._base_tempo

    @property
    def cursor(self) -> int:
        return self._cursor

    @property
    def notes(self) -> list[NoteEvent]:
        return list(self._notes)

    @property
    def lookahead_beats(self) -> float:
        if self.mode == SchedulerMode.FIXED:
            return self.config.fixed_lookahead_beats
        return self.config.adaptive_lookahead_beats

    @property
    def tempo_bounds(self) -> tuple[float, float]:
        if self.mode == SchedulerMode.FIXED:
            return (
                self._base_tempo * FIXED_MIN_TEMPO_RATIO,
                self._base_tempo * FIXED_MAX_TEMPO_RATIO,
            )
        return (
            self._base_tempo * self.config.min_tempo_ratio,
            self._base_tempo * self.config.max_tempo_ratio,
        )

    @property
    def beats_per_measure(self) -> int:
        return self._beats_per_measure

    @property
    def playback_index(self) -> int:
        return math.floor(self._beat / self._beats_per_measure)

    @property
    def current_measure(self) -> int:
        return measure_at_index(
            self._playback_order, self._measure_numbers, self.playback_index
        )

    @property
    def first_measure(self) -> int:
        return self.slot_measure(0)

    def slot_measure(self, playback_index: int) -> int:
        """Measure number played in the given playback slot."""
        return measure_at_index(self._playback_order, self._measure_numbers, playback_index)

    # ------------------------------------------------------------------
    # Tempo
    # ------------------------------------------------------------------

    def clamp_tempo(self, bpm: float) -> float:
        low, high = self.tempo_bounds
        return min(max(bpm, low), high)

    def set_tempo(self, bpm: float) -> float:
        """Set the playback tempo (clamped) and return the value applied."""
        self._tempo = self.clamp_tempo(bpm)
        return self._tempo

    def blend_tempo(self, tracker_tempo: float, factor: float) -> float:
        """
        Mix the base tempo with the tracked tempo.

        Args:
            tracker_tempo: Performer tempo estimate in BPM.
            factor: Weight of the base tempo (role factor).

        Returns:
            The clamped effective tempo, which also becomes the current tempo.
        """
        blended = self._base_tempo * factor + tracker_tempo * (1 - factor)
        return self.set_tempo(blended)

    # ------------------------------------------------------------------
    # Clock
    # ------------------------------------------------------------------

    def seek(self, beat: float) -> None:
        """Move the clock without touching the cursor."""
        self._beat = max(0.0, beat)

    def correct(self, tracker_beat: float, tracker_weight: float) -> float:
        """Pull the clock toward the tracker: ``beat*w + tracker_beat*(1-w)``."""
        self._beat = self._beat * tracker_weight + tracker_beat * (1 - tracker_weight)
        return self._beat

    def advance(self, tick_ms: float) -> int:
        """
        Advance the clock by one tick at the (clamped) current tempo.

        Returns:
            The playback index after advancing.
        """
        effective = self.clamp_tempo(self._tempo)
        self._beat += (effective / 60000.0) * tick_ms
        return self.playback_index

    def is_finished(self, playback_index: Optional[int] = None) -> bool:
        """True once the clock has run past the last playback slot."""
        index = self.playback_index if playback_index is None else playback_index
        if self._playback_order:
            return index >= len(self._playback_order)
        if self._notes:
            last = self._notes[-1]
            return self._beat >= last.start_beat + last.duration_beats
        return False

    # ------------------------------------------------------------------
    # Note emission
    # ------------------------------------------------------------------

    def emit_due(
        self,
        on_note: Optional[NoteCallback],
        horizon_beat: Optional[float] = None,
    ) -> int:
        """
        Emit every pending note starting before ``beat + lookahead``.

        Notes already behind the clock go out with zero delay. Muted notes
        are passed over for good.

        Args:
            on_note: Receives each note with its delay in milliseconds.
            horizon_beat: Notes at or after this beat are held back even
                when they fall inside the lookahead window.

        Returns:
            Number of notes emitted.
        """
        target = self._beat + self.lookahead_beats
        if horizon_beat is not None:
            target = min(target, horizon_beat)
        ms_per_beat = 60000.0 / self._tempo
        emitted = 0

        while self._cursor < len(self._notes) and self._notes[self._cursor].start_beat < target:
            note = self._notes[self._cursor]
            self._cursor += 1
            if self._is_muted(note.part_index):
                continue
            delay_ms = max(0.0, (note.start_beat - self._beat) * ms_per_beat)
            if on_note is not None:
                on_note(note, delay_ms)
            emitted += 1

        return emitted
