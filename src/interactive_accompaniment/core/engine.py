"""
Accompaniment engine with dynamic lead/follow role switching.

Coordinates the score follower, the role annotations and the scheduler:

- Lead: the accompaniment keeps close to the base tempo
- Follow: the accompaniment adopts the performer's tempo
- Wait: playback halts until a timer, a note or a motion cue
- Listen: short hand-over from wait to playing while the follower locks on
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from interactive_accompaniment.core.clock import Clock, TimerHandle
from interactive_accompaniment.core.events import Event, EventBus, EventType
from interactive_accompaniment.core.follower import ScoreFollower
from interactive_accompaniment.core.reference import ReferenceProfile
from interactive_accompaniment.core.roles import DEFAULT_ROLE, MeasureAnnotations
from interactive_accompaniment.core.scheduler import AccompanimentScheduler, NoteCallback, SchedulerMode
from interactive_accompaniment.core.types import (
    AccompanimentState,
    EngineState,
    FollowerState,
    MeasureAnnotation,
    MidiNoteMessage,
    MotionCue,
    ParsedScore,
    RehearsalCommand,
    RoleDirective,
    WaitDirective,
)
from interactive_accompaniment.utils.config import EngineConfig, TrackerConfig

logger = logging.getLogger(__name__)

WAIT_TRIGGER_CUES = frozenset({"breath", "nod", "preparation"})
ACTIVE_STATES = frozenset({EngineState.LISTENING, EngineState.PLAYING})


class AccompanimentEngine:
    """
    Event-driven accompaniment state machine.

    All work happens synchronously inside note, cue, command and timer
    callbacks. Deferred transitions are cancellable handles owned by the
    engine; leaving a state cancels whatever that state had scheduled.
    """

    def __init__(
        self,
        clock: Clock,
        config: Optional[EngineConfig] = None,
        tracker_config: Optional[TrackerConfig] = None,
        bus: Optional[EventBus] = None,
    ):
        """
        Initialize the engine.

        Args:
            clock: Time source and timer factory.
            config: Engine timing configuration.
            tracker_config: Score follower parameters.
            bus: Event bus; a private one is created when omitted.
        """
        self.clock = clock
        self.config = config or EngineConfig()
        self.bus = bus or EventBus()

        self._muted: set[int] = set()
        self.follower = ScoreFollower(tracker_config, clock=clock, bus=self.bus)
        self.follower.set_state_update_callback(self._on_follower_update)
        self.scheduler = AccompanimentScheduler(
            SchedulerMode.ADAPTIVE, self.config, is_muted=self.is_muted
        )

        self._score: Optional[ParsedScore] = None
        self._solo_part_index: Optional[int] = None
        self._annotations = MeasureAnnotations()

        self._state = EngineState.IDLE
        self._role = DEFAULT_ROLE
        self._lead_follow_ratio = DEFAULT_ROLE.factor
        self._measure = 1
        self._last_playback_index = 0
        self._waited_index: Optional[int] = None
        self._reference: Optional[ReferenceProfile] = None

        self._deferred: Optional[TimerHandle] = None
        self._ticker: Optional[TimerHandle] = None
        self._last_publish_ms: Optional[float] = None

        self._on_note_output: Optional[NoteCallback] = None
        self._on_state_change: Optional[Callable[[AccompanimentState], None]] = None

        self.bus.on(EventType.MOTION_CUE, lambda event: self.handle_motion_cue(event.data))

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def score(self) -> Optional[ParsedScore]:
        return self._score

    @property
    def annotations(self) -> MeasureAnnotations:
        return self._annotations

    @property
    def current_role(self) -> RoleDirective:
        return self._role

    @property
    def audio_reference(self) -> Optional[ReferenceProfile]:
        return self._reference

    def get_state(self) -> AccompanimentState:
        return AccompanimentState(
            engine_state=self._state,
            current_role=self._role,
            current_measure=self._measure,
            current_beat=self.scheduler.beat,
            tempo=self.scheduler.tempo,
            lead_follow_ratio=self._lead_follow_ratio,
        )

    def set_note_output_callback(self, callback: NoteCallback) -> None:
        self._on_note_output = callback

    def set_state_change_callback(self, callback: Callable[[AccompanimentState], None]) -> None:
        self._on_state_change = callback

    # ------------------------------------------------------------------
    # Score
    # ------------------------------------------------------------------

    def load_score(self, score: ParsedScore, solo_part_index: Optional[int] = None) -> None:
        """
        Load a parsed score.

        Args:
            score: The score; it is not modified.
            solo_part_index: Part played by the performer. Defaults to the
                part flagged ``is_solo``.
        """
        self._halt_timers()
        self._score = score
        self._solo_part_index = solo_part_index
        self._muted.clear()

        if solo_part_index is not None:
            solo = score.parts[solo_part_index] if 0 <= solo_part_index < len(score.parts) else None
            accompaniment = [p for i, p in enumerate(score.parts) if i != solo_part_index]
        else:
            solo = score.solo_part
            accompaniment = [p for p in score.parts if not p.is_solo]

        if solo is not None and solo.notes:
            self.follower.load_score(
                solo.notes,
                score.tempo,
                score.beats_per_measure,
                score.playback_order,
                score.measure_numbers,
            )
        else:
            self.follower.unload()
            logger.warning(f"No solo part in '{score.title}', score following disabled")

        self.scheduler.load(
            [note for part in accompaniment for note in part.notes],
            score.tempo,
            score.beats_per_measure,
            score.playback_order,
            score.measure_numbers,
        )

        self._annotations = MeasureAnnotations(score.measures)
        self._measure = self.scheduler.first_measure
        self._last_playback_index = 0
        self._waited_index = None
        self._role = DEFAULT_ROLE
        self._lead_follow_ratio = DEFAULT_ROLE.factor
        self._refresh_role()

        first_wait = self._annotations.wait_for(self._measure)
        self._set_state(EngineState.WAITING if first_wait else EngineState.IDLE)

        logger.info(
            f"Loaded '{score.title}': {score.tempo:.0f} BPM, "
            f"{score.time_signature.beats}/{score.time_signature.beat_type}, "
            f"{len(self.scheduler.notes)} accompaniment notes"
        )
        self._publish()

    def set_audio_reference(self, profile: Optional[ReferenceProfile]) -> None:
        """
        Drive the playback clock from a reference performance.

        While a profile is set, every tick takes its tempo from the profile
        at the current beat (still clamped to the engine's tempo range).
        Passing None returns the clock to the score tempo.
        """
        self._reference = profile
        if profile is None:
            self.scheduler.set_tempo(self.scheduler.base_tempo)
            logger.info("Audio reference cleared")
        else:
            logger.info(
                f"Audio reference set: {len(profile.tempo_curve)} tempo points, "
                f"average {profile.average_tempo:.1f} BPM"
            )
        self._publish()

    def update_measure_annotation(self, annotation: MeasureAnnotation) -> None:
        """Patch a measure's role or wait directive (rehearsal edits)."""
        if self._score is None:
            return
        self._annotations.apply(annotation)
        self._refresh_role()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._score is None:
            logger.warning("start() called without a score")
            return
        if self._state in ACTIVE_STATES:
            logger.debug(f"start() ignored while {self._state.value}")
            return

        index = self.scheduler.playback_index
        wait = self._annotations.wait_for(self._measure)
        if wait is not None:
            self._enter_waiting(wait, index)
        else:
            self.follower.start()
            self._begin_playing()

        self.bus.emit(Event(EventType.PLAYBACK_START))
        self._publish()

    def stop(self) -> None:
        """Return to idle, cancel every timer and rewind to the start."""
        self._halt_timers()
        self._set_state(EngineState.IDLE)
        self.follower.stop()
        self.scheduler.reset()
        self._measure = self.scheduler.first_measure if self._score else 1
        self._last_playback_index = 0
        self._waited_index = None
        self._refresh_role()

        self.bus.emit(Event(EventType.PLAYBACK_STOP))
        self._publish()

    # ------------------------------------------------------------------
    # Parts
    # ------------------------------------------------------------------

    def mute_part(self, part_index: int) -> None:
        self._muted.add(part_index)

    def unmute_part(self, part_index: int) -> None:
        self._muted.discard(part_index)

    def is_muted(self, part_index: int) -> bool:
        return part_index in self._muted

    def muted_parts(self) -> set[int]:
        return set(self._muted)

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    def process_midi_note(self, msg: MidiNoteMessage) -> None:
        """Handle a performer note event."""
        if self._state == EngineState.WAITING and msg.is_note_on:
            self._begin_listening(self.config.note_listen_delay_ms)

        if self._state in ACTIVE_STATES:
            self.follower.process_note(msg, self._role)

        self.bus.emit(Event(EventType.MIDI_NOTE, msg))

    def handle_motion_cue(self, cue: MotionCue) -> None:
        """React to a gesture: leave a wait, or nudge the tempo on a breath."""
        if self._state == EngineState.WAITING:
            if cue.type in WAIT_TRIGGER_CUES and cue.confidence > self.config.cue_confidence_threshold:
                logger.info(f"Motion cue '{cue.type}' ({cue.confidence:.2f}) ends wait")
                self._begin_listening(self.config.cue_listen_delay_ms)
            return

        if self._state == EngineState.PLAYING and cue.type == "breath":
            base = self.scheduler.base_tempo
            nudged = self.scheduler.tempo + (cue.confidence - 0.5) * 2
            nudged = min(
                max(nudged, base * self.config.breath_min_ratio),
                base * self.config.breath_max_ratio,
            )
            tempo = self.scheduler.set_tempo(nudged)
            self.bus.emit(Event(EventType.TEMPO_CHANGE, {"tempo": tempo}))
            self._publish()

    def apply_command(self, command: RehearsalCommand) -> None:
        """Apply a structured rehearsal command."""
        self.bus.emit(Event(EventType.REHEARSAL_COMMAND, command))

        if command.type == "set_role":
            if command.measure_number is None or command.role is None:
                logger.warning(f"Incomplete set_role command: {command}")
                return
            self.update_measure_annotation(
                MeasureAnnotation(command.measure_number, role=command.role)
            )
            logger.info(f"Measure {command.measure_number} role -> {command.role}")

        elif command.type == "set_wait":
            if command.measure_number is None or command.wait is None:
                logger.warning(f"Incomplete set_wait command: {command}")
                return
            self.update_measure_annotation(
                MeasureAnnotation(command.measure_number, wait=command.wait)
            )
            logger.info(f"Measure {command.measure_number} wait -> {command.wait}")

        elif command.type == "set_tempo":
            if command.tempo is None:
                logger.warning("set_tempo command without a tempo")
                return
            relative = command.relative
            if relative is None:
                relative = abs(command.tempo) <= self.config.relative_tempo_limit
            target = self.scheduler.tempo + command.tempo if relative else command.tempo
            tempo = self.scheduler.set_tempo(target)
            logger.info(f"Tempo set to {tempo:.1f} BPM")
            self.bus.emit(Event(EventType.TEMPO_CHANGE, {"tempo": tempo}))
            self._publish()

        elif command.type == "reset":
            if self._score is not None:
                self.stop()
                self.load_score(self._score, self._solo_part_index)

        else:
            logger.warning(f"Unknown rehearsal command: {command.type}")

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _set_state(self, new_state: EngineState) -> None:
        if new_state == self._state:
            return
        self._cancel_deferred()
        logger.info(f"Engine {self._state.value} -> {new_state.value} (measure {self._measure})")
        self._state = new_state

    def _enter_waiting(self, wait: WaitDirective, playback_index: int) -> None:
        self._set_state(EngineState.WAITING)
        self._stop_ticker()
        self._waited_index = playback_index
        if wait.is_timed:
            self._defer(wait.duration, self._on_wait_elapsed)

    def _on_wait_elapsed(self) -> None:
        if self._state != EngineState.WAITING:
            return
        self._begin_listening(self.config.note_listen_delay_ms)

    def _begin_listening(self, delay_ms: float) -> None:
        self._set_state(EngineState.LISTENING)
        self.follower.start()
        self._defer(delay_ms / 1000.0, self._on_listen_elapsed)
        self._publish()

    def _on_listen_elapsed(self) -> None:
        if self._state != EngineState.LISTENING:
            return
        self._begin_playing()
        self._publish()

    def _begin_playing(self) -> None:
        self._set_state(EngineState.PLAYING)
        self._start_ticker()
        self._schedule()

    def _defer(self, delay_s: float, action: Callable[[], None]) -> None:
        self._cancel_deferred()
        self._deferred = self.clock.call_later(delay_s, action)

    def _cancel_deferred(self) -> None:
        if self._deferred is not None:
            self._deferred.cancel()
            self._deferred = None

    def _start_ticker(self) -> None:
        self._stop_ticker()
        self._ticker = self.clock.call_every(self.config.tick_ms / 1000.0, self._on_tick)

    def _stop_ticker(self) -> None:
        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None

    def _halt_timers(self) -> None:
        self._cancel_deferred()
        self._stop_ticker()

    # ------------------------------------------------------------------
    # Clock and tracker
    # ------------------------------------------------------------------

    def _on_tick(self) -> None:
        if self._state not in ACTIVE_STATES:
            return

        if self._reference is not None:
            self.scheduler.set_tempo(self._reference.tempo_at_beat(self.scheduler.beat))
        index = self.scheduler.advance(self.config.tick_ms)
        if self.scheduler.is_finished(index):
            logger.info("End of score reached")
            self.stop()
            return

        if index != self._last_playback_index:
            self._last_playback_index = index
            self._measure = self.scheduler.current_measure
            self._refresh_role()

            wait = self._annotations.wait_for(self._measure)
            if wait is not None and self._waited_index != index:
                self._enter_waiting(wait, index)
                self._publish()
                return

        self._schedule()
        self._publish_throttled()

    def _on_follower_update(self, state: FollowerState) -> None:
        running = self._state == EngineState.PLAYING and self._ticker is not None
        if running:
            if state.confidence > self.config.confidence_threshold:
                self.scheduler.correct(state.current_beat, self._lead_follow_ratio)
        else:
            self.scheduler.seek(state.current_beat)

        self._measure = self.scheduler.current_measure
        self._refresh_role()

        tempo = self.scheduler.blend_tempo(state.estimated_tempo, self._lead_follow_ratio)
        self.bus.emit(Event(EventType.TEMPO_CHANGE, {"tempo": tempo}))

        self._schedule()
        self._publish()

    def _refresh_role(self) -> None:
        role = self._annotations.role_for(self._measure)
        if role != self._role:
            logger.info(f"Measure {self._measure}: role {self._role} -> {role}")
            self._role = role
            self._lead_follow_ratio = role.factor
            self.bus.emit(Event(EventType.ROLE_CHANGE, role))

    def _schedule(self) -> None:
        if self._state not in ACTIVE_STATES:
            return
        self.scheduler.emit_due(self._on_note_output, self._wait_horizon())

    def _wait_horizon(self) -> Optional[float]:
        """Start beat of the first upcoming slot whose wait is still pending."""
        beats = self.scheduler.beats_per_measure
        end = self.scheduler.beat + self.scheduler.lookahead_beats
        index = self.scheduler.playback_index
        while index * beats < end and not self.scheduler.is_finished(index):
            wait = self._annotations.wait_for(self.scheduler.slot_measure(index))
            if wait is not None and index != self._waited_index:
                return float(index * beats)
            index += 1
        return None

    # ------------------------------------------------------------------
    # State publication
    # ------------------------------------------------------------------

    def _publish(self) -> None:
        self._last_publish_ms = self.clock.now_ms()
        self._deliver(self.get_state())

    def _publish_throttled(self) -> None:
        now = self.clock.now_ms()
        if (
            self._last_publish_ms is not None
            and now - self._last_publish_ms < self.config.state_throttle_ms
        ):
            return
        self._last_publish_ms = now
        self._deliver(self.get_state())

    def _deliver(self, state: AccompanimentState) -> None:
        if self._on_state_change:
            self._on_state_change(state)
        self.bus.emit(Event(EventType.ENGINE_STATE, state))
