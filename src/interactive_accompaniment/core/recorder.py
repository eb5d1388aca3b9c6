"""
Live microphone note input.

PyAudio delivers blocks on its own thread; detected note events are handed
back to the engine's event loop so that all engine work stays on one thread.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

import numpy as np

from interactive_accompaniment.core.pitch import NoteSegmenter, PitchDetector
from interactive_accompaniment.core.types import MidiNoteMessage

logger = logging.getLogger(__name__)

NoteHandler = Callable[[MidiNoteMessage], None]


class AudioNoteInput:
    """
    Streams microphone audio through pitch detection into note events.
    """

    def __init__(
        self,
        detector: PitchDetector,
        segmenter: Optional[NoteSegmenter] = None,
        channels: int = 1,
        device_index: Optional[int] = None,
    ):
        """
        Initialize the audio input.

        Args:
            detector: PitchDetector instance (defines rate and block size).
            segmenter: Note segmenter; defaults to NoteSegmenter().
            channels: Number of audio channels.
            device_index: Input device index. None for default.
        """
        self.detector = detector
        self.segmenter = segmenter or NoteSegmenter()
        self.channels = channels
        self.device_index = device_index

        self._pyaudio = None
        self._stream = None

    @property
    def is_running(self) -> bool:
        return self._stream is not None

    def process_block(self, samples: np.ndarray, time_ms: float) -> list[MidiNoteMessage]:
        """Detect pitch in one block and return completed note events."""
        if self.channels > 1:
            samples = samples.reshape(-1, self.channels).mean(axis=1)
        result = self.detector.detect_pitch(samples)
        return self.segmenter.feed(result.pitch, result.confidence, time_ms)

    def start(
        self,
        on_note: NoteHandler,
        loop: asyncio.AbstractEventLoop,
        now_ms: Callable[[], float],
    ) -> None:
        """
        Open the input stream.

        Args:
            on_note: Called on ``loop`` for every note event.
            loop: Event loop running the engine.
            now_ms: Engine clock, used to timestamp blocks.
        """
        import pyaudio

        if self._stream is not None:
            return

        def callback(in_data, frame_count, time_info, status):
            samples = np.frombuffer(in_data, dtype=np.float32)
            for event in self.process_block(samples, now_ms()):
                loop.call_soon_threadsafe(on_note, event)
            return (None, pyaudio.paContinue)

        self._pyaudio = pyaudio.PyAudio()
        try:
            self._stream = self._pyaudio.open(
                format=pyaudio.paFloat32,
                channels=self.channels,
                rate=self.detector.sample_rate,
                input=True,
                frames_per_buffer=self.detector.block_size,
                input_device_index=self.device_index,
                stream_callback=callback,
            )
        except Exception:
            self.stop()
            raise

        self._stream.start_stream()
        logger.info(f"Listening on audio device {self.device_index}")

    def stop(self) -> None:
        """Close the stream and release PyAudio."""
        if self._stream is not None:
            self._stream.stop_stream()
            self._stream.close()
            self._stream = None
        if self._pyaudio is not None:
            self._pyaudio.terminate()
            self._pyaudio = None


def load_audio_file(
    path: str,
    sample_rate: int = 44100,
    mono: bool = True,
) -> np.ndarray:
    """
    Load audio from file using librosa.

    Args:
        path: Path to audio file.
        sample_rate: Target sample rate.
        mono: Whether to convert to mono.

    Returns:
        Audio data as float32 numpy array.
    """
    import librosa

    audio_data, sr = librosa.load(path, sr=sample_rate, mono=mono)
    logger.info(f"Loaded {path}: {len(audio_data)} samples at {sr}Hz")

    return audio_data.astype(np.float32)
