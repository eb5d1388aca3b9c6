from __future__ import annotations

from typing import Optional

import pytest

from interactive_accompaniment.core.clock import ManualClock
from interactive_accompaniment.core.types import (
    MeasureAnnotation,
    NoteEvent,
    ParsedScore,
    ScorePart,
    TimeSignature,
)


def solo_pitch(index: int) -> int:
    # Three semitones apart, so neighbouring notes never count as near misses
    return 48 + 3 * (index % 16)


def build_score(
    tempo: float = 120.0,
    beats: int = 4,
    measures: int = 4,
    annotations: Optional[list[MeasureAnnotation]] = None,
    measure_numbers: Optional[list[int]] = None,
    playback_order: Optional[list[int]] = None,
    with_solo: bool = True,
) -> ParsedScore:
    """
    Score with a quarter-note solo line (part 0) and two accompaniment
    parts playing on every beat: piano (part 1, pitch 60) and bass
    (part 2, pitch 36).
    """
    numbers = measure_numbers or list(range(1, measures + 1))
    order = playback_order or list(range(len(numbers)))
    total_beats = len(order) * beats

    parts = []
    if with_solo:
        parts.append(
            ScorePart(
                "P1",
                "Violin",
                is_solo=True,
                notes=[NoteEvent(solo_pitch(i), float(i), 1.0, 80, 0) for i in range(total_beats)],
            )
        )
    offset = len(parts)
    parts.append(
        ScorePart(
            "P2",
            "Piano",
            notes=[NoteEvent(60, float(i), 1.0, 70, offset) for i in range(total_beats)],
        )
    )
    parts.append(
        ScorePart(
            "P3",
            "Bass",
            notes=[NoteEvent(36, float(i), 1.0, 90, offset + 1) for i in range(total_beats)],
        )
    )

    return ParsedScore(
        title="Test Piece",
        tempo=tempo,
        time_signature=TimeSignature(beats, 4),
        parts=parts,
        measures=list(annotations or []),
        total_measures=len(set(numbers)),
        total_beats=float(total_beats),
        playback_order=order,
        measure_numbers=numbers,
    )


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def make_score():
    return build_score
