from __future__ import annotations

import numpy as np
import pytest

from interactive_accompaniment.core.clock import ManualClock
from interactive_accompaniment.core.events import EventBus, EventType
from interactive_accompaniment.core.follower import ScoreFollower
from interactive_accompaniment.core.roles import DEFAULT_ROLE, role_directive
from interactive_accompaniment.core.types import MidiNoteMessage, NoteEvent
from interactive_accompaniment.utils.config import TrackerConfig

from conftest import solo_pitch

LEAD = role_directive("lead", "strong")
FOLLOW = role_directive("follow", "moderate")


def quarter_notes(count: int) -> list[NoteEvent]:
    return [NoteEvent(solo_pitch(i), float(i), 1.0) for i in range(count)]


def note_on(pitch: int, timestamp: float) -> MidiNoteMessage:
    return MidiNoteMessage("noteon", pitch, 80, timestamp)


@pytest.fixture
def follower(clock: ManualClock) -> ScoreFollower:
    f = ScoreFollower(clock=clock)
    f.load_score(quarter_notes(32), 120.0, 4, list(range(8)), list(range(1, 9)))
    f.start()
    return f


def test_initial_hypotheses_span_tempo_range() -> None:
    f = ScoreFollower()
    f.load_score(quarter_notes(4), 100.0, 4)

    hypotheses = f.hypotheses
    assert len(hypotheses) == 5
    assert [h.tempo for h in hypotheses] == pytest.approx([70, 85, 100, 115, 130])
    assert [h.probability for h in hypotheses] == pytest.approx([0.2] * 5)
    assert all(h.position == 0 for h in hypotheses)


def test_inactive_follower_ignores_notes(clock: ManualClock) -> None:
    f = ScoreFollower(clock=clock)
    # Nothing loaded
    f.start()
    assert f.process_note(note_on(48, 0), DEFAULT_ROLE) is None

    f.load_score(quarter_notes(8), 120.0, 4)
    f.stop()
    assert f.process_note(note_on(48, 0), DEFAULT_ROLE) is None

    f.start()
    f.pause()
    assert f.process_note(note_on(48, 0), DEFAULT_ROLE) is None

    f.resume()
    assert f.process_note(MidiNoteMessage("noteoff", 48, 0, 0), DEFAULT_ROLE) is None
    assert f.process_note(note_on(48, 0), DEFAULT_ROLE) is not None


def test_single_note_scenario() -> None:
    clock = ManualClock()
    f = ScoreFollower(clock=clock)
    f.load_score([NoteEvent(66, 24.0, 1.0)], 50.0, 3, list(range(12)), list(range(1, 13)))
    f.start()

    state = f.process_note(note_on(66, 1000.0), DEFAULT_ROLE)

    assert f.position == 0
    assert state.current_beat == 24.0
    assert state.current_measure == 9
    # Every hypothesis lands on the only note: 0.8 / (5 * 0.8)
    assert state.confidence == pytest.approx(0.2)
    assert state.is_playing


def test_tracks_performer_at_base_tempo(follower: ScoreFollower) -> None:
    for i in range(12):
        state = follower.process_note(note_on(solo_pitch(i), i * 500.0), FOLLOW)
        assert follower.position == i
        assert state.current_beat == float(i)

    assert state.current_measure == 3
    assert 84.0 <= state.estimated_tempo <= 156.0


def test_follow_mode_adapts_faster_than_lead() -> None:
    results = {}
    for name, role in (("follow", FOLLOW), ("lead", LEAD)):
        f = ScoreFollower(clock=ManualClock())
        f.load_score(quarter_notes(8), 120.0, 4)
        f.start()
        f.process_note(note_on(solo_pitch(0), 0.0), role)
        # One beat in 400ms implies 150 BPM
        f.process_note(note_on(solo_pitch(1), 400.0), role)
        results[name] = [h.tempo for h in f.hypotheses]

    assert results["follow"][2] == pytest.approx(120 * 0.7 + 150 * 0.3)
    assert results["lead"][2] == pytest.approx(120 * 0.9 + 150 * 0.1)
    assert results["follow"][0] == pytest.approx(84 * 0.7 + 150 * 0.3)


def test_probabilities_stay_normalized_for_random_input(follower: ScoreFollower) -> None:
    rng = np.random.default_rng(7)
    now = 0.0
    for _ in range(200):
        now += float(rng.uniform(1.0, 3000.0))
        pitch = int(rng.integers(30, 100))
        role = LEAD if rng.random() < 0.5 else FOLLOW
        follower.process_note(note_on(pitch, now), role)

        total = sum(h.probability for h in follower.hypotheses)
        assert abs(total - 1.0) < 1e-9
        for h in follower.hypotheses:
            assert 0.3 * 120 - 1e-9 <= h.tempo <= 3.0 * 120 + 1e-9


def test_all_miss_sequence_keeps_distribution_uniform(follower: ScoreFollower) -> None:
    for i in range(50):
        follower.process_note(note_on(20, i * 500.0), FOLLOW)

    assert [h.probability for h in follower.hypotheses] == pytest.approx([0.2] * 5)


def test_underflowing_probabilities_reset_to_uniform(clock: ManualClock) -> None:
    # Below the smallest normal double, so a single miss underflows the total
    f = ScoreFollower(TrackerConfig(miss_prob=1e-310), clock=clock)
    f.load_score(quarter_notes(32), 120.0, 4)
    f.start()
    f.process_note(note_on(solo_pitch(0), 0.0), FOLLOW)

    # After one second the hypotheses land on beats 1, 2, 2, 2 and 3; only beat 2 matches
    f.process_note(note_on(solo_pitch(2), 1000.0), FOLLOW)
    probabilities = [h.probability for h in f.hypotheses]
    assert probabilities[0] < 1e-300
    assert probabilities[2] == pytest.approx(1 / 3)

    f.process_note(note_on(20, 1500.0), FOLLOW)

    assert [h.probability for h in f.hypotheses] == pytest.approx([0.2] * 5)


def test_slow_tempo_estimates_are_clamped(clock: ManualClock) -> None:
    f = ScoreFollower(clock=clock)
    # Sixteenth notes played a minute apart drive the implied tempo far below range
    f.load_score([NoteEvent(solo_pitch(i), i * 0.25, 0.25) for i in range(64)], 120.0, 4)
    f.start()
    for i in range(30):
        f.process_note(note_on(solo_pitch(i), i * 60000.0), FOLLOW)
    assert f.position == 63
    assert min(h.tempo for h in f.hypotheses) >= 36.0 - 1e-9
    assert min(h.tempo for h in f.hypotheses) < 84.0


def test_custom_hypothesis_count() -> None:
    f = ScoreFollower(TrackerConfig(num_hypotheses=3, tempo_range=0.5))
    f.load_score(quarter_notes(4), 100.0, 4)
    assert [h.tempo for h in f.hypotheses] == pytest.approx([50, 100, 150])


def test_stop_resets_hypotheses(follower: ScoreFollower) -> None:
    for i in range(4):
        follower.process_note(note_on(solo_pitch(i), i * 400.0), FOLLOW)
    assert follower.position > 0

    follower.stop()

    assert follower.position == 0
    assert [h.tempo for h in follower.hypotheses] == pytest.approx([84, 102, 120, 138, 156])
    assert not follower.is_active


def test_updates_reach_callback_and_bus(clock: ManualClock) -> None:
    bus = EventBus()
    f = ScoreFollower(clock=clock, bus=bus)
    f.load_score(quarter_notes(8), 120.0, 4)
    f.start()

    seen, published = [], []
    f.set_state_update_callback(seen.append)
    bus.on(EventType.SCORE_POSITION, lambda event: published.append(event.data))

    clock.advance(0.5)
    state = f.process_note(MidiNoteMessage("noteon", solo_pitch(1)), FOLLOW)

    assert seen == [state]
    assert published == [state]
    assert state.current_beat == 1.0
