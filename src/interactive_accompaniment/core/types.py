"""
Core data types shared by the tracker, scheduler and engine.

Dict conversion accepts the camelCase keys produced by the score-parsing
collaborator as well as snake_case keys.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


def _get(data: dict, snake: str, camel: str, default: Any = None) -> Any:
    if snake in data:
        return data[snake]
    return data.get(camel, default)


class RoleMode(Enum):
    """Who drives the tempo."""
    LEAD = "lead"
    FOLLOW = "follow"


class RoleStrength(Enum):
    STRONG = "strong"
    MODERATE = "moderate"
    LIGHT = "light"


class WaitType(Enum):
    WAIT = "wait"
    LISTEN = "listen"


class EngineState(Enum):
    """Lifecycle of the accompaniment engine."""
    IDLE = "idle"
    WAITING = "waiting"
    LISTENING = "listening"
    PLAYING = "playing"


@dataclass(frozen=True)
class NoteEvent:
    """A single score note on the repeat-expanded beat timeline."""
    pitch: int  # MIDI 0-127
    start_beat: float
    duration_beats: float
    velocity: int = 80
    part_index: int = 0

    @classmethod
    def from_dict(cls, data: dict) -> NoteEvent:
        return cls(
            pitch=int(data["pitch"]),
            start_beat=float(_get(data, "start_beat", "startBeat", 0.0)),
            duration_beats=float(_get(data, "duration_beats", "durationBeats", 1.0)),
            velocity=int(data.get("velocity", 80)),
            part_index=int(_get(data, "part_index", "partIndex", 0)),
        )

    def to_dict(self) -> dict:
        return {
            "pitch": self.pitch,
            "startBeat": self.start_beat,
            "durationBeats": self.duration_beats,
            "velocity": self.velocity,
            "partIndex": self.part_index,
        }


@dataclass(frozen=True)
class RoleDirective:
    """
    Lead/follow role for a span of measures.

    ``factor`` is the weight of the base tempo in tempo blending:
    1.0 plays strictly at the base tempo, 0.0 takes the tracked tempo.
    """
    mode: RoleMode
    strength: RoleStrength
    factor: float

    def __str__(self) -> str:
        return f"{self.mode.value}:{self.strength.value} ({self.factor:.2f})"

    @classmethod
    def from_dict(cls, data: dict) -> RoleDirective:
        from interactive_accompaniment.core.roles import role_directive

        mode = RoleMode(str(data["mode"]).lower())
        strength = RoleStrength(str(data.get("strength", "moderate")).lower())
        if data.get("factor") is None:
            return role_directive(mode, strength)
        return cls(mode=mode, strength=strength, factor=float(data["factor"]))

    def to_dict(self) -> dict:
        return {
            "mode": self.mode.value,
            "strength": self.strength.value,
            "factor": self.factor,
        }


@dataclass(frozen=True)
class WaitDirective:
    """Pause before a measure; ``duration`` in seconds, None means wait for a cue."""
    type: WaitType = WaitType.WAIT
    duration: Optional[float] = None

    @property
    def is_timed(self) -> bool:
        return self.type == WaitType.WAIT and bool(self.duration)

    @classmethod
    def from_dict(cls, data: dict) -> WaitDirective:
        duration = data.get("duration")
        return cls(
            type=WaitType(str(data.get("type", "wait")).lower()),
            duration=float(duration) if duration is not None else None,
        )

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"type": self.type.value}
        if self.duration is not None:
            data["duration"] = self.duration
        return data


@dataclass
class MeasureAnnotation:
    measure_number: int
    role: Optional[RoleDirective] = None
    wait: Optional[WaitDirective] = None

    @classmethod
    def from_dict(cls, data: dict) -> MeasureAnnotation:
        from interactive_accompaniment.core.roles import parse_role_text, parse_wait_text

        role = data.get("role")
        wait = data.get("wait")
        # Annotation text as written in the score ("Lead:strong", "wait:2sec")
        if isinstance(role, str):
            role = parse_role_text(role)
        elif isinstance(role, dict):
            role = RoleDirective.from_dict(role)
        if isinstance(wait, str):
            wait = parse_wait_text(wait)
        elif isinstance(wait, dict):
            wait = WaitDirective.from_dict(wait)
        return cls(
            measure_number=int(_get(data, "measure_number", "measureNumber")),
            role=role,
            wait=wait,
        )

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"measureNumber": self.measure_number}
        if self.role is not None:
            data["role"] = self.role.to_dict()
        if self.wait is not None:
            data["wait"] = self.wait.to_dict()
        return data


@dataclass
class TimeSignature:
    beats: int = 4
    beat_type: int = 4


@dataclass
class ScorePart:
    id: str
    name: str
    is_solo: bool = False
    notes: list[NoteEvent] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict, part_index: Optional[int] = None) -> ScorePart:
        notes = []
        for note_data in data.get("notes", []):
            if part_index is not None and not (
                "part_index" in note_data or "partIndex" in note_data
            ):
                note_data = {**note_data, "part_index": part_index}
            notes.append(NoteEvent.from_dict(note_data))
        notes.sort(key=lambda n: n.start_beat)
        return cls(
            id=str(data.get("id", f"P{(part_index or 0) + 1}")),
            name=str(data.get("name", "")),
            is_solo=bool(_get(data, "is_solo", "isSolo", False)),
            notes=notes,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "isSolo": self.is_solo,
            "notes": [n.to_dict() for n in self.notes],
        }


@dataclass
class ParsedScore:
    """
    A fully parsed score.

    ``playback_order`` lists slot indices with repeats expanded and
    ``measure_numbers`` maps a slot to its printed measure number, so beat
    ``b`` lives in measure ``measure_numbers[playback_order[b // beats]]``.
    """
    title: str
    tempo: float
    time_signature: TimeSignature = field(default_factory=TimeSignature)
    parts: list[ScorePart] = field(default_factory=list)
    measures: list[MeasureAnnotation] = field(default_factory=list)
    total_measures: int = 0
    total_beats: float = 0.0
    playback_order: list[int] = field(default_factory=list)
    measure_numbers: list[int] = field(default_factory=list)

    @property
    def beats_per_measure(self) -> int:
        return self.time_signature.beats

    @property
    def first_measure(self) -> int:
        """Measure number of the first playback slot."""
        if self.playback_order and self.measure_numbers:
            return self.slot_measure(self.playback_order[0])
        if self.measure_numbers:
            return self.measure_numbers[0]
        return 1

    def slot_measure(self, slot: int) -> int:
        if 0 <= slot < len(self.measure_numbers):
            return self.measure_numbers[slot]
        return 0

    def playback_index(self, beat: float) -> int:
        return math.floor(beat / self.beats_per_measure)

    def measure_at_index(self, playback_index: int) -> int:
        return measure_at_index(self.playback_order, self.measure_numbers, playback_index)

    def measure_at_beat(self, beat: float) -> int:
        return self.measure_at_index(self.playback_index(beat))

    @property
    def solo_part(self) -> Optional[ScorePart]:
        return next((p for p in self.parts if p.is_solo), None)

    @classmethod
    def from_dict(cls, data: dict) -> ParsedScore:
        ts = _get(data, "time_signature", "timeSignature", {}) or {}
        parts = [
            ScorePart.from_dict(p, part_index=i)
            for i, p in enumerate(data.get("parts", []))
        ]
        measures = sorted(
            (MeasureAnnotation.from_dict(m) for m in data.get("measures", [])),
            key=lambda m: m.measure_number,
        )
        total_measures = int(_get(data, "total_measures", "totalMeasures", 0) or 0)
        measure_numbers = list(_get(data, "measure_numbers", "measureNumbers", []) or [])
        playback_order = list(_get(data, "playback_order", "playbackOrder", []) or [])
        if not measure_numbers and total_measures:
            measure_numbers = list(range(1, total_measures + 1))
        if not playback_order and measure_numbers:
            playback_order = list(range(len(measure_numbers)))
        beats = int(ts.get("beats", 4))
        total_beats = _get(data, "total_beats", "totalBeats")
        return cls(
            title=str(data.get("title", "Untitled")),
            tempo=float(data.get("tempo", 120.0)),
            time_signature=TimeSignature(
                beats=beats,
                beat_type=int(_get(ts, "beat_type", "beatType", 4)),
            ),
            parts=parts,
            measures=measures,
            total_measures=total_measures or len(set(measure_numbers)),
            total_beats=float(total_beats) if total_beats is not None else float(len(playback_order) * beats),
            playback_order=playback_order,
            measure_numbers=measure_numbers,
        )

    def to_dict(self) -> dict:
        return {
            "title": self.title,
            "tempo": self.tempo,
            "timeSignature": {
                "beats": self.time_signature.beats,
                "beatType": self.time_signature.beat_type,
            },
            "parts": [p.to_dict() for p in self.parts],
            "measures": [m.to_dict() for m in self.measures],
            "totalMeasures": self.total_measures,
            "totalBeats": self.total_beats,
            "playbackOrder": list(self.playback_order),
            "measureNumbers": list(self.measure_numbers),
        }


def measure_at_index(
    playback_order: list[int],
    measure_numbers: list[int],
    playback_index: int,
) -> int:
    """Map a playback index to a printed measure number (index + 1 without a map)."""
    if not playback_order or not measure_numbers:
        return playback_index + 1
    if not 0 <= playback_index < len(playback_order):
        return 0
    slot = playback_order[playback_index]
    if 0 <= slot < len(measure_numbers):
        return measure_numbers[slot]
    return 0


@dataclass
class MidiNoteMessage:
    """Performer input; ``timestamp`` in milliseconds on the engine clock."""
    type: str  # "noteon" | "noteoff"
    note: int
    velocity: int = 80
    timestamp: Optional[float] = None

    @property
    def is_note_on(self) -> bool:
        return self.type == "noteon"

    @classmethod
    def from_dict(cls, data: dict) -> MidiNoteMessage:
        timestamp = data.get("timestamp")
        return cls(
            type=str(data.get("type", "noteon")),
            note=int(data["note"]),
            velocity=int(data.get("velocity", 80)),
            timestamp=float(timestamp) if timestamp is not None else None,
        )


@dataclass
class MotionCue:
    type: str  # "breath" | "nod" | "sway" | "preparation"
    timestamp: float
    confidence: float

    @classmethod
    def from_dict(cls, data: dict) -> MotionCue:
        return cls(
            type=str(data["type"]),
            timestamp=float(data.get("timestamp", 0.0)),
            confidence=float(data.get("confidence", 0.0)),
        )


@dataclass
class RehearsalCommand:
    """
    Structured rehearsal instruction from the command collaborator.

    ``relative`` disambiguates ``set_tempo``; when None the magnitude
    decides (``abs(tempo) <= 30`` is a nudge).
    """
    type: str  # "set_role" | "set_wait" | "set_tempo" | "reset"
    measure_number: Optional[int] = None
    role: Optional[RoleDirective] = None
    wait: Optional[WaitDirective] = None
    tempo: Optional[float] = None
    relative: Optional[bool] = None
    raw_text: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> RehearsalCommand:
        role = data.get("role")
        wait = data.get("wait")
        measure = _get(data, "measure_number", "measureNumber")
        tempo = data.get("tempo")
        return cls(
            type=str(data["type"]),
            measure_number=int(measure) if measure is not None else None,
            role=RoleDirective.from_dict(role) if role else None,
            wait=WaitDirective.from_dict(wait) if wait else None,
            tempo=float(tempo) if tempo is not None else None,
            relative=data.get("relative"),
            raw_text=str(_get(data, "raw_text", "rawText", "")),
        )


@dataclass
class HypothesisState:
    """One (position, tempo) candidate of the score follower."""
    position: int
    tempo: float
    probability: float


@dataclass
class FollowerState:
    current_beat: float
    current_measure: int
    estimated_tempo: float
    confidence: float
    is_playing: bool


@dataclass
class AccompanimentState:
    """Consolidated snapshot published to state subscribers."""
    engine_state: EngineState
    current_role: RoleDirective
    current_measure: int
    current_beat: float
    tempo: float
    lead_follow_ratio: float

    def to_dict(self) -> dict:
        return {
            "engineState": self.engine_state.value,
            "currentRole": self.current_role.to_dict(),
            "currentMeasure": self.current_measure,
            "currentBeat": self.current_beat,
            "tempo": self.tempo,
            "leadFollowRatio": self.lead_follow_ratio,
        }
