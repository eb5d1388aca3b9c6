from __future__ import annotations

import pytest

from interactive_accompaniment.core.clock import ManualClock
from interactive_accompaniment.core.engine import AccompanimentEngine
from interactive_accompaniment.core.events import Event, EventType
from interactive_accompaniment.core.reference import ReferenceProfile, TempoPoint
from interactive_accompaniment.core.roles import DEFAULT_ROLE, role_directive
from interactive_accompaniment.core.types import (
    EngineState,
    MeasureAnnotation,
    MidiNoteMessage,
    MotionCue,
    RehearsalCommand,
    WaitDirective,
    WaitType,
)
from interactive_accompaniment.utils.config import TrackerConfig

from conftest import solo_pitch


class Recorder:
    def __init__(self, engine: AccompanimentEngine):
        self.notes = []
        self.states = []
        engine.set_note_output_callback(lambda note, delay: self.notes.append((note, delay)))
        engine.set_state_change_callback(self.states.append)

    def engine_states(self) -> list[str]:
        """State sequence with consecutive duplicates collapsed."""
        out: list[str] = []
        for state in self.states:
            value = state.engine_state.value
            if not out or out[-1] != value:
                out.append(value)
        return out


@pytest.fixture
def engine(clock: ManualClock) -> AccompanimentEngine:
    return AccompanimentEngine(clock)


def note_on(pitch: int) -> MidiNoteMessage:
    return MidiNoteMessage("noteon", pitch, 80)


def wait(duration=None, kind: WaitType = WaitType.WAIT) -> WaitDirective:
    return WaitDirective(kind, duration)


def set_tempo(tempo: float, relative=None) -> RehearsalCommand:
    return RehearsalCommand("set_tempo", tempo=tempo, relative=relative)


# ----------------------------------------------------------------------
# Loading and transport
# ----------------------------------------------------------------------


def test_load_without_wait_is_idle(engine: AccompanimentEngine, make_score) -> None:
    engine.load_score(make_score())

    state = engine.get_state()
    assert state.engine_state == EngineState.IDLE
    assert state.current_measure == 1
    assert state.current_beat == 0.0
    assert state.tempo == 120.0
    assert state.current_role == DEFAULT_ROLE
    assert state.lead_follow_ratio == pytest.approx(0.3)


def test_start_without_score_does_nothing(engine: AccompanimentEngine, clock: ManualClock) -> None:
    engine.start()
    assert engine.state == EngineState.IDLE
    assert clock.pending == 0


def test_start_plays_and_schedules(engine: AccompanimentEngine, make_score) -> None:
    rec = Recorder(engine)
    engine.load_score(make_score())

    engine.start()

    assert engine.state == EngineState.PLAYING
    assert sorted((n.part_index, n.start_beat) for n, _ in rec.notes) == [
        (1, 0.0), (1, 1.0), (2, 0.0), (2, 1.0),
    ]
    assert sorted(d for _, d in rec.notes) == pytest.approx([0.0, 0.0, 500.0, 500.0])


def test_second_start_is_ignored(engine: AccompanimentEngine, make_score) -> None:
    starts = []
    engine.bus.on(EventType.PLAYBACK_START, starts.append)
    engine.load_score(make_score())

    engine.start()
    engine.start()

    assert len(starts) == 1


def test_playback_advances_through_measures(
    engine: AccompanimentEngine, clock: ManualClock, make_score
) -> None:
    rec = Recorder(engine)
    engine.load_score(make_score())
    engine.start()

    clock.advance(2.3)

    state = engine.get_state()
    assert state.current_beat == pytest.approx(4.6)
    assert state.current_measure == 2
    # Everything up to two beats ahead has been handed out
    assert max(n.start_beat for n, _ in rec.notes) == 6.0


def test_explicit_solo_part(engine: AccompanimentEngine, make_score) -> None:
    rec = Recorder(engine)
    engine.load_score(make_score(), solo_part_index=1)
    engine.start()

    assert {n.part_index for n, _ in rec.notes} == {0, 2}


def test_score_without_solo_still_plays(
    engine: AccompanimentEngine, clock: ManualClock, make_score
) -> None:
    positions = []
    engine.bus.on(EventType.SCORE_POSITION, positions.append)
    rec = Recorder(engine)
    engine.load_score(make_score(with_solo=False))
    engine.start()

    engine.process_midi_note(note_on(60))
    clock.advance(1.0)

    assert positions == []
    assert engine.state == EngineState.PLAYING
    assert len(rec.notes) > 4


# ----------------------------------------------------------------------
# Wait / listen gating
# ----------------------------------------------------------------------


def test_timed_wait_on_first_measure(
    engine: AccompanimentEngine, clock: ManualClock, make_score
) -> None:
    rec = Recorder(engine)
    engine.load_score(make_score(annotations=[MeasureAnnotation(1, wait=wait(2.0))]))
    assert engine.state == EngineState.WAITING

    engine.start()
    assert engine.state == EngineState.WAITING
    assert rec.notes == []

    clock.advance(1.9)
    assert engine.state == EngineState.WAITING

    clock.advance(0.1)
    assert engine.state == EngineState.LISTENING

    clock.advance(0.5)
    assert engine.state == EngineState.PLAYING
    assert rec.engine_states() == ["waiting", "listening", "playing"]
    assert rec.notes


def test_note_on_ends_untimed_wait(
    engine: AccompanimentEngine, clock: ManualClock, make_score
) -> None:
    engine.load_score(make_score(annotations=[MeasureAnnotation(1, wait=wait())]))
    engine.start()

    clock.advance(10.0)
    assert engine.state == EngineState.WAITING

    engine.process_midi_note(MidiNoteMessage("noteoff", 48, 0))
    assert engine.state == EngineState.WAITING

    engine.process_midi_note(note_on(solo_pitch(0)))
    assert engine.state == EngineState.LISTENING

    clock.advance(0.49)
    assert engine.state == EngineState.LISTENING
    clock.advance(0.01)
    assert engine.state == EngineState.PLAYING


def test_listen_directive_waits_for_performer(
    engine: AccompanimentEngine, clock: ManualClock, make_score
) -> None:
    engine.load_score(
        make_score(annotations=[MeasureAnnotation(1, wait=wait(3.0, WaitType.LISTEN))])
    )
    engine.start()

    clock.advance(5.0)
    assert engine.state == EngineState.WAITING


def test_motion_cues_end_wait(
    engine: AccompanimentEngine, clock: ManualClock, make_score
) -> None:
    engine.load_score(make_score(annotations=[MeasureAnnotation(1, wait=wait())]))
    engine.start()

    engine.handle_motion_cue(MotionCue("sway", 0.0, 0.95))
    assert engine.state == EngineState.WAITING
    engine.handle_motion_cue(MotionCue("nod", 0.0, 0.6))
    assert engine.state == EngineState.WAITING

    engine.handle_motion_cue(MotionCue("breath", 0.0, 0.61))
    assert engine.state == EngineState.LISTENING

    clock.advance(0.3)
    assert engine.state == EngineState.PLAYING


def test_motion_cue_from_bus(engine: AccompanimentEngine, make_score) -> None:
    engine.load_score(make_score(annotations=[MeasureAnnotation(1, wait=wait())]))
    engine.start()

    engine.bus.emit(Event(EventType.MOTION_CUE, MotionCue("preparation", 0.0, 0.9)))

    assert engine.state == EngineState.LISTENING


def test_follower_positions_clock_while_listening(
    engine: AccompanimentEngine, clock: ManualClock, make_score
) -> None:
    engine.load_score(make_score(annotations=[MeasureAnnotation(1, wait=wait())]))
    engine.start()

    engine.process_midi_note(note_on(solo_pitch(0)))
    clock.advance(0.4)
    engine.process_midi_note(note_on(solo_pitch(1)))

    assert engine.state == EngineState.LISTENING
    assert engine.get_state().current_beat == 1.0


def test_wait_reached_during_playback(
    engine: AccompanimentEngine, clock: ManualClock, make_score
) -> None:
    score = make_score(
        measure_numbers=[1, 2],
        playback_order=[0, 1, 0, 1],
        annotations=[MeasureAnnotation(2, wait=wait(1.0))],
    )
    engine.load_score(score)
    engine.start()

    clock.advance(2.2)
    assert engine.state == EngineState.WAITING
    assert engine.get_state().current_measure == 2
    beat = engine.get_state().current_beat

    clock.advance(1.5)
    assert engine.state == EngineState.PLAYING
    # The clock held still while waiting
    assert engine.get_state().current_beat < beat + 0.5

    clock.advance(3.0)
    assert engine.state == EngineState.PLAYING
    assert engine.get_state().current_measure == 1

    # The repeat brings measure 2 around again
    clock.advance(1.2)
    assert engine.state == EngineState.WAITING
    assert engine.get_state().current_measure == 2


def test_wait_measure_is_held_back_until_wait_ends(
    engine: AccompanimentEngine, clock: ManualClock, make_score
) -> None:
    emitted = []
    engine.set_note_output_callback(
        lambda note, delay: emitted.append((clock.now_ms(), note.start_beat))
    )
    engine.load_score(
        make_score(measures=3, annotations=[MeasureAnnotation(2, wait=wait(5.0))])
    )
    engine.start()

    # Measure 2 starts at beat 4, two seconds in
    clock.advance(2.1)
    assert engine.state == EngineState.WAITING
    assert emitted
    assert all(beat < 4.0 for _, beat in emitted)

    clock.advance(5.0)
    assert engine.state == EngineState.LISTENING
    assert all(beat < 4.0 for _, beat in emitted)

    clock.advance(0.5)
    assert engine.state == EngineState.PLAYING
    wait_measure = [(at, beat) for at, beat in emitted if beat >= 4.0]
    assert wait_measure
    assert all(at >= 7000.0 for at, _ in wait_measure)
    # Held notes are played once the wait ends, not dropped
    assert sum(1 for _, beat in emitted if beat == 4.0) == 2


def test_repeated_wait_measure_is_held_back_again(
    engine: AccompanimentEngine, clock: ManualClock, make_score
) -> None:
    emitted = []
    engine.set_note_output_callback(lambda note, delay: emitted.append(note.start_beat))
    score = make_score(
        measure_numbers=[1, 2],
        playback_order=[0, 1, 0, 1],
        annotations=[MeasureAnnotation(2, wait=wait(1.0))],
    )
    engine.load_score(score)
    engine.start()

    # First wait ends at 3.0s, playing again from 3.5s; slot 3 starts at beat 12
    clock.advance(7.9)
    assert engine.state == EngineState.WAITING
    assert engine.get_state().current_measure == 2
    assert max(emitted) < 12.0


# ----------------------------------------------------------------------
# Stop and cancellation
# ----------------------------------------------------------------------


def test_stop_cancels_wait_timer(
    engine: AccompanimentEngine, clock: ManualClock, make_score
) -> None:
    engine.load_score(make_score(annotations=[MeasureAnnotation(1, wait=wait(2.0))]))
    engine.start()
    assert clock.pending == 1

    engine.stop()

    assert engine.state == EngineState.IDLE
    assert clock.pending == 0
    clock.advance(5.0)
    assert engine.state == EngineState.IDLE


def test_stop_during_listening(
    engine: AccompanimentEngine, clock: ManualClock, make_score
) -> None:
    engine.load_score(make_score(annotations=[MeasureAnnotation(1, wait=wait())]))
    engine.start()
    engine.process_midi_note(note_on(solo_pitch(0)))
    assert engine.state == EngineState.LISTENING

    engine.stop()
    clock.advance(1.0)

    assert engine.state == EngineState.IDLE
    assert clock.pending == 0


def test_stop_rewinds(engine: AccompanimentEngine, clock: ManualClock, make_score) -> None:
    stops = []
    engine.bus.on(EventType.PLAYBACK_STOP, stops.append)
    engine.load_score(make_score())
    engine.start()
    clock.advance(2.5)
    assert clock.pending == 1

    engine.stop()

    state = engine.get_state()
    assert state.engine_state == EngineState.IDLE
    assert state.current_beat == 0.0
    assert state.current_measure == 1
    assert engine.scheduler.cursor == 0
    assert engine.follower.position == 0
    assert clock.pending == 0
    assert len(stops) == 1


def test_reload_after_stop_leaves_no_stale_timers(
    engine: AccompanimentEngine, clock: ManualClock, make_score
) -> None:
    score = make_score(annotations=[MeasureAnnotation(1, wait=wait(2.0))])
    engine.load_score(score)
    engine.start()
    engine.stop()
    engine.load_score(score)

    clock.advance(3.0)

    assert engine.state == EngineState.WAITING
    assert clock.pending == 0


def test_end_of_score_returns_to_idle(
    engine: AccompanimentEngine, clock: ManualClock, make_score
) -> None:
    stops = []
    engine.bus.on(EventType.PLAYBACK_STOP, stops.append)
    engine.load_score(make_score(measure_numbers=[0, 1, 2, 3]))
    engine.start()
    engine.apply_command(set_tempo(240.0, relative=False))

    clock.advance(5.0)

    state = engine.get_state()
    assert state.engine_state == EngineState.IDLE
    assert state.current_beat == 0.0
    assert state.current_measure == 0
    assert clock.pending == 0
    assert len(stops) == 1


# ----------------------------------------------------------------------
# Parts
# ----------------------------------------------------------------------


def test_muted_part_is_silent(engine: AccompanimentEngine, clock: ManualClock, make_score) -> None:
    rec = Recorder(engine)
    engine.load_score(make_score())
    engine.mute_part(2)
    engine.start()

    clock.advance(3.0)
    assert rec.notes
    assert all(n.part_index != 2 for n, _ in rec.notes)

    engine.unmute_part(2)
    rec.notes.clear()
    clock.advance(2.0)
    assert {n.part_index for n, _ in rec.notes} == {1, 2}


def test_mute_bookkeeping(engine: AccompanimentEngine, make_score) -> None:
    engine.mute_part(99)
    engine.mute_part(1)
    assert engine.muted_parts() == {1, 99}
    assert engine.is_muted(99)

    engine.unmute_part(42)
    engine.load_score(make_score())
    assert engine.muted_parts() == set()


# ----------------------------------------------------------------------
# Tempo
# ----------------------------------------------------------------------


def test_tempo_commands(engine: AccompanimentEngine, make_score) -> None:
    changes = []
    engine.bus.on(EventType.TEMPO_CHANGE, lambda event: changes.append(event.data["tempo"]))
    engine.load_score(make_score())

    engine.apply_command(set_tempo(10.0))
    assert engine.get_state().tempo == 130.0
    engine.apply_command(set_tempo(-10.0))
    assert engine.get_state().tempo == 120.0
    engine.apply_command(set_tempo(100.0))
    assert engine.get_state().tempo == 100.0
    # An explicit flag overrides the magnitude rule
    engine.apply_command(set_tempo(20.0, relative=False))
    assert engine.get_state().tempo == 60.0
    engine.apply_command(set_tempo(40.0, relative=True))
    assert engine.get_state().tempo == 100.0

    assert changes == [130.0, 120.0, 100.0, 60.0, 100.0]


def test_tempo_commands_are_clamped(engine: AccompanimentEngine, make_score) -> None:
    engine.load_score(make_score())

    engine.apply_command(set_tempo(1000.0))
    assert engine.get_state().tempo == 240.0
    engine.apply_command(set_tempo(35.0))
    assert engine.get_state().tempo == 60.0


def test_breath_nudges_tempo_while_playing(engine: AccompanimentEngine, make_score) -> None:
    engine.load_score(make_score())
    engine.handle_motion_cue(MotionCue("breath", 0.0, 1.0))
    assert engine.get_state().tempo == 120.0

    engine.start()
    engine.handle_motion_cue(MotionCue("breath", 0.0, 1.0))
    assert engine.get_state().tempo == pytest.approx(121.0)
    engine.handle_motion_cue(MotionCue("breath", 0.0, 0.5))
    assert engine.get_state().tempo == pytest.approx(121.0)
    engine.handle_motion_cue(MotionCue("nod", 0.0, 1.0))
    assert engine.get_state().tempo == pytest.approx(121.0)

    engine.apply_command(set_tempo(200.0))
    engine.handle_motion_cue(MotionCue("breath", 0.0, 1.0))
    assert engine.get_state().tempo == pytest.approx(156.0)


def test_confident_update_pulls_clock_toward_performer(
    clock: ManualClock, make_score
) -> None:
    engine = AccompanimentEngine(clock, tracker_config=TrackerConfig(num_hypotheses=1))
    engine.load_score(make_score())
    engine.start()
    engine.apply_command(set_tempo(60.0, relative=False))

    clock.advance(1.0)
    assert engine.get_state().current_beat == pytest.approx(1.0)

    # The performer is two beats in after one second at 120 BPM
    engine.process_midi_note(note_on(solo_pitch(2)))

    state = engine.get_state()
    assert state.current_beat == pytest.approx(1.0 * 0.3 + 2.0 * 0.7)
    assert state.tempo == pytest.approx(120.0)


def test_unconfident_update_keeps_clock(
    engine: AccompanimentEngine, clock: ManualClock, make_score
) -> None:
    engine.load_score(make_score())
    engine.start()
    clock.advance(1.0)
    beat = engine.get_state().current_beat

    engine.process_midi_note(note_on(20))

    assert engine.follower.confidence == pytest.approx(0.2)
    assert engine.get_state().current_beat == beat
    low, high = engine.scheduler.tempo_bounds
    assert low <= engine.get_state().tempo <= high


def test_reference_profile_drives_clock(
    engine: AccompanimentEngine, clock: ManualClock, make_score
) -> None:
    engine.set_audio_reference(
        ReferenceProfile(60.0, [TempoPoint(0.0, 60.0), TempoPoint(16.0, 60.0)])
    )
    engine.load_score(make_score())
    engine.start()

    clock.advance(1.0)

    state = engine.get_state()
    assert state.current_beat == pytest.approx(1.0)
    assert state.tempo == pytest.approx(60.0)


def test_reference_tempo_is_clamped(
    engine: AccompanimentEngine, clock: ManualClock, make_score
) -> None:
    engine.load_score(make_score())
    engine.set_audio_reference(ReferenceProfile(average_tempo=1000.0))
    engine.start()

    clock.advance(0.5)

    assert engine.get_state().tempo == 240.0
    assert engine.get_state().current_beat == pytest.approx(2.0)


def test_clearing_reference_restores_score_tempo(
    engine: AccompanimentEngine, clock: ManualClock, make_score
) -> None:
    engine.load_score(make_score())
    engine.set_audio_reference(ReferenceProfile(average_tempo=60.0))
    engine.start()
    clock.advance(0.5)
    beat = engine.get_state().current_beat

    engine.set_audio_reference(None)
    clock.advance(0.5)

    assert engine.audio_reference is None
    assert engine.get_state().tempo == 120.0
    assert engine.get_state().current_beat == pytest.approx(beat + 1.0)


def test_notes_ignored_while_idle(engine: AccompanimentEngine, make_score) -> None:
    positions, notes = [], []
    engine.bus.on(EventType.SCORE_POSITION, positions.append)
    engine.bus.on(EventType.MIDI_NOTE, notes.append)
    engine.load_score(make_score())

    engine.process_midi_note(note_on(solo_pitch(0)))

    assert positions == []
    assert len(notes) == 1
    assert engine.state == EngineState.IDLE


# ----------------------------------------------------------------------
# Roles and rehearsal commands
# ----------------------------------------------------------------------


def test_role_changes_with_measure(
    engine: AccompanimentEngine, clock: ManualClock, make_score
) -> None:
    changes = []
    engine.bus.on(EventType.ROLE_CHANGE, lambda event: changes.append(event.data))
    engine.load_score(
        make_score(
            annotations=[
                MeasureAnnotation(1, role=role_directive("follow", "moderate")),
                MeasureAnnotation(3, role=role_directive("lead", "strong")),
            ]
        )
    )
    engine.start()

    clock.advance(3.5)
    assert engine.current_role == DEFAULT_ROLE

    clock.advance(0.7)
    assert engine.current_role == role_directive("lead", "strong")
    assert engine.get_state().lead_follow_ratio == pytest.approx(0.9)
    assert changes == [role_directive("lead", "strong")]


def test_set_role_command_applies_immediately(engine: AccompanimentEngine, make_score) -> None:
    commands = []
    engine.bus.on(EventType.REHEARSAL_COMMAND, commands.append)
    engine.load_score(make_score())

    engine.apply_command(
        RehearsalCommand("set_role", measure_number=1, role=role_directive("lead", "light"))
    )

    assert engine.current_role == role_directive("lead", "light")
    assert engine.get_state().lead_follow_ratio == pytest.approx(0.6)
    assert len(commands) == 1


def test_set_wait_command(engine: AccompanimentEngine, clock: ManualClock, make_score) -> None:
    engine.load_score(make_score())
    engine.apply_command(RehearsalCommand("set_wait", measure_number=2, wait=wait(1.0)))
    engine.start()

    clock.advance(2.2)

    assert engine.state == EngineState.WAITING


def test_incomplete_commands_are_ignored(engine: AccompanimentEngine, make_score) -> None:
    engine.load_score(make_score())

    engine.apply_command(RehearsalCommand("set_role", measure_number=3))
    engine.apply_command(RehearsalCommand("set_wait", wait=wait()))
    engine.apply_command(RehearsalCommand("set_tempo"))
    engine.apply_command(RehearsalCommand("transpose"))

    assert len(engine.annotations) == 0
    assert engine.get_state().tempo == 120.0


def test_reset_restores_score_annotations(
    engine: AccompanimentEngine, clock: ManualClock, make_score
) -> None:
    score = make_score(annotations=[MeasureAnnotation(2, role=role_directive("lead", "strong"))])
    engine.load_score(score)
    engine.apply_command(
        RehearsalCommand("set_role", measure_number=4, role=role_directive("follow", "strong"))
    )
    engine.apply_command(RehearsalCommand("set_wait", measure_number=3, wait=wait()))
    engine.start()
    clock.advance(1.0)

    engine.apply_command(RehearsalCommand("reset"))

    assert engine.state == EngineState.IDLE
    assert engine.annotations.measure_numbers() == [2]
    assert len(score.measures) == 1
    assert engine.get_state().current_beat == 0.0
    assert clock.pending == 0


# ----------------------------------------------------------------------
# State publication
# ----------------------------------------------------------------------


def test_tick_publication_is_throttled(
    engine: AccompanimentEngine, clock: ManualClock, make_score
) -> None:
    rec = Recorder(engine)
    engine.load_score(make_score())
    engine.start()
    published = len(rec.states)

    clock.advance(0.15)
    assert len(rec.states) == published
    # The clock itself moves on every tick
    assert engine.get_state().current_beat == pytest.approx(0.3)

    clock.advance(0.85)
    assert len(rec.states) == published + 5


def test_state_callback_and_bus_agree(engine: AccompanimentEngine, make_score) -> None:
    rec = Recorder(engine)
    published = []
    engine.bus.on(EventType.ENGINE_STATE, lambda event: published.append(event.data))

    engine.load_score(make_score(annotations=[MeasureAnnotation(1, wait=wait(1.0))]))
    engine.start()

    assert published == rec.states
    assert rec.states[-1].to_dict()["engineState"] == "waiting"
