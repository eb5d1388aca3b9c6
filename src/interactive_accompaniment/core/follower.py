"""
Score following over a monophonic solo line.

A small discrete Bayesian filter: each hypothesis pairs a position in the
expected note sequence with a tempo. Every performer note-on advances the
hypotheses by elapsed time, weights them by how well the played pitch
matches the note they landed on, and renormalizes.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

import numpy as np

from interactive_accompaniment.core.clock import Clock
from interactive_accompaniment.core.events import Event, EventBus, EventType
from interactive_accompaniment.core.types import (
    FollowerState,
    HypothesisState,
    MidiNoteMessage,
    NoteEvent,
    RoleDirective,
    RoleMode,
    measure_at_index,
)
from interactive_accompaniment.utils.config import TrackerConfig

logger = logging.getLogger(__name__)


def _monotonic_ms() -> float:
    return time.perf_counter() * 1000.0


class ScoreFollower:
    """
    Tracks the performer's position and tempo in the solo part.

    The follower is inert until a note sequence is loaded and :meth:`start`
    is called; while inert, :meth:`process_note` returns None.
    """

    def __init__(
        self,
        config: Optional[TrackerConfig] = None,
        clock: Optional[Clock] = None,
        bus: Optional[EventBus] = None,
    ):
        """
        Initialize the follower.

        Args:
            config: Filter parameters. Defaults to TrackerConfig().
            clock: Time source used when a note carries no timestamp.
            bus: Event bus receiving SCORE_POSITION updates.
        """
        self.config = config or TrackerConfig()
        self._now = clock.now_ms if clock is not None else _monotonic_ms
        self._bus = bus

        self._notes: list[NoteEvent] = []
        self._beats = np.zeros(0, dtype=np.float64)
        self._pitches = np.zeros(0, dtype=np.int64)
        self._base_tempo = 120.0
        self._beats_per_measure = 4
        self._playback_order: list[int] = []
        self._measure_numbers: list[int] = []

        self._position = 0
        self._last_note_ms = 0.0
        self._active = False
        self._paused = False
        self._on_update: Optional[Callable[[FollowerState], None]] = None

        self._init_states()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def load_score(
        self,
        solo_notes: list[NoteEvent],
        tempo: float,
        beats_per_measure: int,
        playback_order: Optional[list[int]] = None,
        measure_numbers: Optional[list[int]] = None,
    ) -> None:
        """Load the expected solo sequence and reset the hypotheses."""
        self._notes = sorted(solo_notes, key=lambda n: n.start_beat)
        self._beats = np.array([n.start_beat for n in self._notes], dtype=np.float64)
        self._pitches = np.array([n.pitch for n in self._notes], dtype=np.int64)
        self._base_tempo = float(tempo)
        self._beats_per_measure = beats_per_measure
        self._playback_order = list(playback_order or [])
        self._measure_numbers = list(measure_numbers or [])
        self.reset()
        logger.debug(
            f"Loaded {len(self._notes)} solo notes at {tempo:.1f} BPM, "
            f"{beats_per_measure} beats/measure"
        )

    def unload(self) -> None:
        """Drop the expected sequence; subsequent notes are ignored."""
        self._notes = []
        self._beats = np.zeros(0, dtype=np.float64)
        self._pitches = np.zeros(0, dtype=np.int64)
        self._active = False
        self.reset()

    def set_state_update_callback(self, callback: Callable[[FollowerState], None]) -> None:
        self._on_update = callback

    def start(self) -> None:
        self._active = True
        self._paused = False
        self._last_note_ms = self._now()

    def stop(self) -> None:
        self._active = False
        self.reset()

    def pause(self) -> None:
        self._paused = True

    def resume(self) -> None:
        self._paused = False
        self._last_note_ms = self._now()

    def reset(self) -> None:
        self._position = 0
        self._last_note_ms = self._now()
        self._init_states()

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def is_loaded(self) -> bool:
        return len(self._notes) > 0

    @property
    def is_active(self) -> bool:
        return self._active and not self._paused

    @property
    def base_tempo(self) -> float:
        return self._base_tempo

    @property
    def position(self) -> int:
        return self._position

    @property
    def current_beat(self) -> float:
        if self._position < len(self._beats):
            return float(self._beats[self._position])
        return 0.0

    @property
    def estimated_tempo(self) -> float:
        return float(self._tempos[self._best_index()])

    @property
    def confidence(self) -> float:
        return float(self._probabilities[self._best_index()])

    @property
    def hypotheses(self) -> list[HypothesisState]:
        """Snapshot of the hypothesis array."""
        return [
            HypothesisState(int(p), float(t), float(pr))
            for p, t, pr in zip(self._positions, self._tempos, self._probabilities)
        ]

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    def process_note(
        self,
        msg: MidiNoteMessage,
        role: RoleDirective,
    ) -> Optional[FollowerState]:
        """
        Incorporate one performer note event.

        Args:
            msg: Performer note; only note-on events are used.
            role: Active role; lead mode adapts tempo more slowly.

        Returns:
            Updated FollowerState, or None when the event was ignored.
        """
        if not self.is_active or not msg.is_note_on or not self.is_loaded:
            return None

        now = msg.timestamp if msg.timestamp is not None else self._now()
        delta_ms = now - self._last_note_ms
        self._last_note_ms = now

        observations = self._compute_observation(msg.note)
        self._advance_states(delta_ms, role)
        self._update_with_observation(observations)
        self._normalize()

        best = self._best_index()
        self._position = int(self._positions[best])

        current_beat = self.current_beat
        playback_index = int(current_beat // self._beats_per_measure)
        state = FollowerState(
            current_beat=current_beat,
            current_measure=measure_at_index(
                self._playback_order, self._measure_numbers, playback_index
            ),
            estimated_tempo=float(self._tempos[best]),
            confidence=float(self._probabilities[best]),
            is_playing=self._active,
        )

        logger.debug(
            f"note {msg.note} dt={delta_ms:.0f}ms -> pos={self._position} "
            f"beat={state.current_beat:.2f} tempo={state.estimated_tempo:.1f} "
            f"conf={state.confidence:.2f}"
        )

        if self._on_update:
            self._on_update(state)
        if self._bus:
            self._bus.emit(Event(EventType.SCORE_POSITION, state))
        return state

    def _init_states(self) -> None:
        n = self.config.num_hypotheses
        spread = self.config.tempo_range
        ratios = np.linspace(1 - spread, 1 + spread, n) if n > 1 else np.ones(1)
        self._positions = np.zeros(n, dtype=np.int64)
        self._tempos = self._base_tempo * ratios
        self._probabilities = np.full(n, 1.0 / n)

    def _compute_observation(self, pitch: int) -> dict[int, float]:
        """Pitch likelihood for each note in the window around the current position."""
        cfg = self.config
        start = max(0, self._position - cfg.window_behind)
        end = min(len(self._notes), self._position + cfg.window_ahead)

        observations: dict[int, float] = {}
        for i in range(start, end):
            distance = abs(int(self._pitches[i]) - pitch)
            if distance == 0:
                observations[i] = cfg.match_prob
            elif distance <= cfg.near_semitones:
                observations[i] = cfg.near_prob
            else:
                observations[i] = cfg.miss_prob
        return observations

    def _advance_states(self, delta_ms: float, role: RoleDirective) -> None:
        cfg = self.config
        adapt_rate = (
            cfg.follow_adapt_rate if role.mode == RoleMode.FOLLOW else cfg.lead_adapt_rate
        )
        min_tempo = self._base_tempo * cfg.min_tempo_ratio
        max_tempo = self._base_tempo * cfg.max_tempo_ratio
        last = len(self._notes) - 1

        for i in range(len(self._positions)):
            position = int(self._positions[i])
            expected_beats = self._tempos[i] / 60000.0 * delta_ms
            target_beat = self._beats[position] + expected_beats

            search_end = min(last, position + cfg.search_ahead)
            candidates = self._beats[position : search_end + 1]
            new_position = position + int(np.argmin(np.abs(candidates - target_beat)))
            self._positions[i] = new_position

            if delta_ms <= 0 or new_position == position:
                continue
            actual_beats = self._beats[new_position] - self._beats[position]
            if actual_beats <= 0:
                continue
            implied = actual_beats / delta_ms * 60000.0
            clamped = min(max(implied, min_tempo), max_tempo)
            self._tempos[i] = self._tempos[i] * (1 - adapt_rate) + clamped * adapt_rate

    def _update_with_observation(self, observations: dict[int, float]) -> None:
        miss = self.config.miss_prob
        likelihood = np.array(
            [observations.get(int(p), miss) for p in self._positions],
            dtype=np.float64,
        )
        self._probabilities *= likelihood

    def _normalize(self) -> None:
        total = float(self._probabilities.sum())
        if total > np.finfo(np.float64).tiny and np.isfinite(total):
            self._probabilities /= total
        else:
            logger.debug("Hypothesis probabilities collapsed, resetting to uniform")
            self._probabilities.fill(1.0 / len(self._probabilities))

    def _best_index(self) -> int:
        # argmax returns the first maximum, so ties go to the lower array index
        return int(np.argmax(self._probabilities))
