"""
Tempo profiles taken from a reference recording.

A profile maps score beats to the tempo (and loudness) a reference
performance took there, so the accompaniment can mirror a favourite
interpretation instead of the tracked tempo.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence

import numpy as np

logger = logging.getLogger(__name__)

DEFAULT_TEMPO = 120.0

# Inter-onset intervals outside this range (seconds) are not beats
MIN_IOI = 0.15
MAX_IOI = 3.0


@dataclass
class TempoPoint:
    beat: float
    tempo: float


@dataclass
class DynamicsPoint:
    beat: float
    level: float  # 0-1, relative to the loudest window


@dataclass
class ReferenceProfile:
    """Beat-indexed tempo and dynamics curves of a reference performance."""
    average_tempo: float = DEFAULT_TEMPO
    tempo_curve: list[TempoPoint] = field(default_factory=list)
    dynamics_curve: list[DynamicsPoint] = field(default_factory=list)
    total_beats: float = 0.0
    total_duration: float = 0.0

    def tempo_at_beat(self, beat: float) -> float:
        """Linearly interpolated tempo; the end values hold outside the curve."""
        if not self.tempo_curve:
            return self.average_tempo
        return float(
            np.interp(
                beat,
                [p.beat for p in self.tempo_curve],
                [p.tempo for p in self.tempo_curve],
            )
        )

    def dynamics_at_beat(self, beat: float) -> float:
        if not self.dynamics_curve:
            return 0.5
        return float(
            np.interp(
                beat,
                [p.beat for p in self.dynamics_curve],
                [p.level for p in self.dynamics_curve],
            )
        )

    @classmethod
    def from_dict(cls, data: dict) -> ReferenceProfile:
        tempo_curve = sorted(
            (TempoPoint(float(p["beat"]), float(p["tempo"])) for p in data.get("tempoCurve", [])),
            key=lambda p: p.beat,
        )
        dynamics_curve = sorted(
            (
                DynamicsPoint(float(p["beat"]), float(p["level"]))
                for p in data.get("dynamicsCurve", [])
            ),
            key=lambda p: p.beat,
        )
        return cls(
            average_tempo=float(data.get("averageTempo", DEFAULT_TEMPO)),
            tempo_curve=tempo_curve,
            dynamics_curve=dynamics_curve,
            total_beats=float(data.get("totalBeats", 0.0)),
            total_duration=float(data.get("totalDuration", 0.0)),
        )

    def to_dict(self) -> dict:
        return {
            "averageTempo": self.average_tempo,
            "tempoCurve": [{"beat": p.beat, "tempo": p.tempo} for p in self.tempo_curve],
            "dynamicsCurve": [{"beat": p.beat, "level": p.level} for p in self.dynamics_curve],
            "totalBeats": self.total_beats,
            "totalDuration": self.total_duration,
        }


def tempo_curve_from_onsets(onsets: Sequence[float], window: int = 8) -> list[TempoPoint]:
    """
    Estimate a tempo curve from onset times, one point per plausible beat.

    Each usable inter-onset interval counts as one beat. Once ``window``
    onsets have gone by, the tempo is the mean over the last ``window``
    usable intervals.

    Args:
        onsets: Onset times in seconds, ascending.
        window: Smoothing window in intervals.

    Returns:
        Tempo points at beats 1, 2, ...; empty with fewer than three onsets.
    """
    times = np.asarray(onsets, dtype=np.float64)
    if len(times) < 3:
        return []

    iois = np.diff(times)
    usable = (iois > MIN_IOI) & (iois < MAX_IOI)

    curve: list[TempoPoint] = []
    beat = 0
    for i in range(1, len(times)):
        if not usable[i - 1]:
            continue
        beat += 1
        if i >= window:
            lo = max(1, i - window)
            local = iois[lo - 1 : i][usable[lo - 1 : i]]
            tempo = float(np.mean(60.0 / local))
        else:
            tempo = 60.0 / float(iois[i - 1])
        curve.append(TempoPoint(float(beat), tempo))
    return curve


def analyse_reference(audio_data: np.ndarray, sample_rate: int) -> ReferenceProfile:
    """
    Build a reference profile from a recording with librosa.

    Args:
        audio_data: Mono audio samples.
        sample_rate: Sample rate of ``audio_data`` in Hz.

    Returns:
        The profile; its tempo curve is empty when too few onsets were found.
    """
    import librosa

    audio_data = np.asarray(audio_data, dtype=np.float32)
    onsets = librosa.onset.onset_detect(y=audio_data, sr=sample_rate, units="time")
    tempo_curve = tempo_curve_from_onsets(onsets)
    average = (
        float(np.mean([p.tempo for p in tempo_curve])) if tempo_curve else DEFAULT_TEMPO
    )

    # Half-second RMS windows every quarter second
    frame_length = int(sample_rate * 0.5)
    hop_length = int(sample_rate * 0.25)
    dynamics_curve: list[DynamicsPoint] = []
    if len(audio_data) >= frame_length:
        rms = librosa.feature.rms(
            y=audio_data, frame_length=frame_length, hop_length=hop_length, center=False
        )[0]
        peak = float(rms.max())
        if peak > 0:
            times = librosa.frames_to_time(
                np.arange(len(rms)), sr=sample_rate, hop_length=hop_length
            )
            dynamics_curve = [
                DynamicsPoint(float(t) * average / 60.0, float(level) / peak)
                for t, level in zip(times, rms)
            ]

    duration = len(audio_data) / sample_rate
    profile = ReferenceProfile(
        average_tempo=average,
        tempo_curve=tempo_curve,
        dynamics_curve=dynamics_curve,
        total_beats=average * duration / 60.0,
        total_duration=duration,
    )
    logger.info(
        f"Reference: {len(onsets)} onsets, {len(tempo_curve)} beats, "
        f"average {average:.1f} BPM over {duration:.1f}s"
    )
    return profile


def load_reference(path: Path | str, sample_rate: int = 22050) -> ReferenceProfile:
    """
    Load a saved profile (``.json``) or analyse an audio recording.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If a JSON profile cannot be read.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Reference file not found: {path}")

    if path.suffix.lower() == ".json":
        with open(path, encoding="utf-8") as f:
            try:
                return ReferenceProfile.from_dict(json.load(f))
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                raise ValueError(f"Invalid reference profile {path}: {e}") from e

    from interactive_accompaniment.core.recorder import load_audio_file

    return analyse_reference(load_audio_file(str(path), sample_rate=sample_rate), sample_rate)


def save_reference(profile: ReferenceProfile, path: Path | str) -> None:
    path = Path(path)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(profile.to_dict(), f, indent=2)
    logger.info(f"Saved reference profile to {path}")
