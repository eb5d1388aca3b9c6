"""
Configuration management for the interactive accompaniment system.

Supports environment variables, config files, and programmatic configuration.
"""

from __future__ import annotations

import os
import json
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass
class TrackerConfig:
    """Score follower (tempo hypothesis filter) parameters."""
    num_hypotheses: int = 5
    tempo_range: float = 0.3
    match_prob: float = 0.8
    near_prob: float = 0.15
    miss_prob: float = 0.05
    near_semitones: int = 2
    window_behind: int = 2
    window_ahead: int = 10
    search_ahead: int = 5
    follow_adapt_rate: float = 0.3
    lead_adapt_rate: float = 0.1
    min_tempo_ratio: float = 0.3
    max_tempo_ratio: float = 3.0

    @classmethod
    def from_env(cls) -> TrackerConfig:
        """Load tracker config from environment variables."""
        return cls(
            num_hypotheses=int(os.getenv("IA_NUM_HYPOTHESES", "5")),
            tempo_range=float(os.getenv("IA_TEMPO_RANGE", "0.3")),
            follow_adapt_rate=float(os.getenv("IA_FOLLOW_ADAPT_RATE", "0.3")),
            lead_adapt_rate=float(os.getenv("IA_LEAD_ADAPT_RATE", "0.1")),
        )


@dataclass
class EngineConfig:
    """Accompaniment engine timing and thresholds."""
    tick_ms: float = 50.0
    state_throttle_ms: float = 200.0
    note_listen_delay_ms: float = 500.0
    cue_listen_delay_ms: float = 300.0
    confidence_threshold: float = 0.3
    cue_confidence_threshold: float = 0.6
    adaptive_lookahead_beats: float = 2.0
    fixed_lookahead_beats: float = 4.0
    min_tempo_ratio: float = 0.5
    max_tempo_ratio: float = 2.0
    breath_min_ratio: float = 0.7
    breath_max_ratio: float = 1.3
    relative_tempo_limit: float = 30.0

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load engine config from environment variables."""
        return cls(
            tick_ms=float(os.getenv("IA_TICK_MS", "50")),
            state_throttle_ms=float(os.getenv("IA_STATE_THROTTLE_MS", "200")),
            note_listen_delay_ms=float(os.getenv("IA_NOTE_LISTEN_DELAY_MS", "500")),
            cue_listen_delay_ms=float(os.getenv("IA_CUE_LISTEN_DELAY_MS", "300")),
            confidence_threshold=float(os.getenv("IA_CONFIDENCE_THRESHOLD", "0.3")),
        )


@dataclass
class AudioConfig:
    """Microphone input and pitch tracking configuration."""
    sample_rate: int = 44100
    block_size: int = 1024
    channels: int = 1
    silence_threshold: float = -40.0
    min_confidence: float = 0.7
    min_note_ms: float = 60.0
    input_device_index: Optional[int] = None

    @classmethod
    def from_env(cls) -> AudioConfig:
        """Load audio config from environment variables."""
        device_index = os.getenv("IA_AUDIO_DEVICE")
        return cls(
            sample_rate=int(os.getenv("IA_SAMPLE_RATE", "44100")),
            block_size=int(os.getenv("IA_BLOCK_SIZE", "1024")),
            channels=int(os.getenv("IA_CHANNELS", "1")),
            silence_threshold=float(os.getenv("IA_SILENCE_THRESHOLD", "-40.0")),
            min_confidence=float(os.getenv("IA_MIN_PITCH_CONFIDENCE", "0.7")),
            min_note_ms=float(os.getenv("IA_MIN_NOTE_MS", "60")),
            input_device_index=int(device_index) if device_index else None,
        )


@dataclass
class MidiConfig:
    """MIDI port configuration."""
    input_port: Optional[str] = None
    output_port: Optional[str] = None
    channel: int = 0

    @classmethod
    def from_env(cls) -> MidiConfig:
        """Load MIDI config from environment variables."""
        return cls(
            input_port=os.getenv("IA_MIDI_IN") or None,
            output_port=os.getenv("IA_MIDI_OUT") or None,
            channel=int(os.getenv("IA_MIDI_CHANNEL", "0")),
        )


@dataclass
class Config:
    """Main configuration container."""
    tracker: TrackerConfig = field(default_factory=TrackerConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    audio: AudioConfig = field(default_factory=AudioConfig)
    midi: MidiConfig = field(default_factory=MidiConfig)
    debug: bool = False

    @classmethod
    def from_env(cls) -> Config:
        """Load all configuration from environment variables."""
        return cls(
            tracker=TrackerConfig.from_env(),
            engine=EngineConfig.from_env(),
            audio=AudioConfig.from_env(),
            midi=MidiConfig.from_env(),
            debug=os.getenv("IA_DEBUG", "false").lower() == "true",
        )

    @classmethod
    def from_file(cls, path: Path | str) -> Config:
        """Load configuration from a JSON file."""
        path = Path(path)
        if not path.exists():
            logger.warning(f"Config file not found: {path}, using defaults")
            return cls()

        with open(path) as f:
            data = json.load(f)

        return cls(
            tracker=TrackerConfig(**data.get("tracker", {})),
            engine=EngineConfig(**data.get("engine", {})),
            audio=AudioConfig(**data.get("audio", {})),
            midi=MidiConfig(**data.get("midi", {})),
            debug=data.get("debug", False),
        )

    def save(self, path: Path | str) -> None:
        """Save configuration to a JSON file."""
        path = Path(path)
        with open(path, "w") as f:
            json.dump(asdict(self), f, indent=2)

        logger.info(f"Configuration saved to {path}")


# Global config instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        config_path = Path(os.getenv("IA_CONFIG_FILE", "config.json"))
        if config_path.exists():
            _config = Config.from_file(config_path)
        else:
            _config = Config.from_env()
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration instance."""
    global _config
    _config = config
