"""
Monophonic note extraction from audio.

Turns a frame-wise pitch track (Aubio, MIDI units) into the note-on/off
stream the score follower consumes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import numpy as np

from interactive_accompaniment.core.types import MidiNoteMessage

logger = logging.getLogger(__name__)


class PitchAlgorithm(Enum):
    """Available pitch detection algorithms."""
    DEFAULT = "default"  # Aubio default (YIN-based)
    YIN = "yin"
    YINFFT = "yinfft"
    MCOMB = "mcomb"
    FCOMB = "fcomb"
    SCHMITT = "schmitt"
    SPECACF = "specacf"


@dataclass
class PitchResult:
    """Result of pitch detection for a single frame."""
    pitch: float  # MIDI note number (fractional), 0 if silent
    confidence: float  # 0-1
    energy: float  # RMS energy


class NoteSegmenter:
    """
    Segments a pitch track into discrete notes.

    A new pitch must hold for ``min_note_ms`` before it counts as a note-on
    (its timestamp is back-dated to where it started). An unvoiced frame
    ends the sounding note.
    """

    def __init__(
        self,
        min_confidence: float = 0.7,
        min_note_ms: float = 60.0,
        velocity: int = 80,
    ):
        self.min_confidence = min_confidence
        self.min_note_ms = min_note_ms
        self.velocity = velocity

        self._current: Optional[int] = None
        self._candidate: Optional[int] = None
        self._candidate_start = 0.0

    @property
    def current_note(self) -> Optional[int]:
        return self._current

    def feed(self, pitch: float, confidence: float, time_ms: float) -> list[MidiNoteMessage]:
        """
        Consume one pitch frame.

        Args:
            pitch: MIDI pitch of the frame, 0 or less when unvoiced.
            confidence: Detector confidence for the frame.
            time_ms: Frame time in milliseconds.

        Returns:
            Note events completed by this frame (possibly empty).
        """
        if pitch <= 0 or confidence < self.min_confidence:
            self._candidate = None
            return self._release(time_ms)

        note = int(round(pitch))
        if note == self._current:
            self._candidate = None
            return []

        if note != self._candidate:
            self._candidate = note
            self._candidate_start = time_ms

        if time_ms - self._candidate_start < self.min_note_ms:
            return []

        events = self._release(self._candidate_start)
        events.append(
            MidiNoteMessage("noteon", note, self.velocity, self._candidate_start)
        )
        self._current = note
        self._candidate = None
        return events

    def flush(self, time_ms: float) -> list[MidiNoteMessage]:
        """End any sounding note."""
        self._candidate = None
        return self._release(time_ms)

    def _release(self, time_ms: float) -> list[MidiNoteMessage]:
        if self._current is None:
            return []
        event = MidiNoteMessage("noteoff", self._current, 0, time_ms)
        self._current = None
        return [event]


class PitchDetector:
    """
    Aubio pitch detector reporting MIDI pitches.

    The Aubio object is created once and reused across frames.
    """

    def __init__(
        self,
        sample_rate: int = 44100,
        block_size: int = 1024,
        algorithm: PitchAlgorithm = PitchAlgorithm.YINFFT,
        silence_threshold: float = -40.0,
    ):
        """
        Initialize the pitch detector.

        Args:
            sample_rate: Audio sample rate in Hz.
            block_size: Number of samples per analysis frame.
            algorithm: Pitch detection algorithm to use.
            silence_threshold: Silence threshold in dB.
        """
        import aubio

        self.sample_rate = sample_rate
        self.block_size = block_size
        self.algorithm = algorithm
        self.silence_threshold = silence_threshold

        self._detector = aubio.pitch(
            algorithm.value,
            block_size * 2,  # win_size
            block_size,  # hop_size
            sample_rate,
        )
        self._detector.set_unit("midi")
        self._detector.set_silence(silence_threshold)

        logger.debug(
            f"Initialized PitchDetector: sr={sample_rate}, "
            f"block={block_size}, algo={algorithm.value}"
        )

    @property
    def frame_ms(self) -> float:
        return self.block_size * 1000.0 / self.sample_rate

    def detect_pitch(self, audio_block: np.ndarray) -> PitchResult:
        """
        Detect pitch from a single audio block.

        Args:
            audio_block: Audio samples as float32 numpy array.

        Returns:
            PitchResult with MIDI pitch, confidence, and energy.
        """
        if audio_block.dtype != np.float32:
            audio_block = audio_block.astype(np.float32)

        if len(audio_block) < self.block_size:
            audio_block = np.pad(
                audio_block,
                (0, self.block_size - len(audio_block)),
                mode="constant",
            )

        pitch = float(self._detector(audio_block)[0])
        confidence = float(self._detector.get_confidence())
        energy = float(np.sqrt(np.mean(audio_block ** 2)))

        return PitchResult(pitch=pitch, confidence=confidence, energy=energy)

    def extract_notes(
        self,
        audio_data: np.ndarray,
        segmenter: Optional[NoteSegmenter] = None,
        start_ms: float = 0.0,
    ) -> list[MidiNoteMessage]:
        """
        Run a whole signal through the detector and segmenter.

        Args:
            audio_data: Full audio signal as numpy array.
            segmenter: Note segmenter; a default one is used when omitted.
            start_ms: Timestamp of the first sample.

        Returns:
            Note events in time order.
        """
        segmenter = segmenter or NoteSegmenter()
        if audio_data.dtype != np.float32:
            audio_data = audio_data.astype(np.float32)

        events: list[MidiNoteMessage] = []
        time_ms = start_ms
        for i in range(0, len(audio_data), self.block_size):
            result = self.detect_pitch(audio_data[i : i + self.block_size])
            time_ms = start_ms + i * 1000.0 / self.sample_rate
            events.extend(segmenter.feed(result.pitch, result.confidence, time_ms))

        events.extend(segmenter.flush(time_ms + self.frame_ms))
        logger.info(
            f"Extracted {sum(1 for e in events if e.is_note_on)} notes "
            f"from {len(audio_data) / self.sample_rate:.1f}s of audio"
        )
        return events
