"""
MIDI input and output through mido.

Input callbacks arrive on the backend's thread and are marshalled onto the
engine's event loop. Output honours the scheduled delay through the engine
clock.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional

import mido

from interactive_accompaniment.core.clock import Clock, TimerHandle
from interactive_accompaniment.core.types import MidiNoteMessage, NoteEvent

logger = logging.getLogger(__name__)


def list_input_ports() -> list[str]:
    return list(mido.get_input_names())


def list_output_ports() -> list[str]:
    return list(mido.get_output_names())


def to_note_message(msg: mido.Message, timestamp: Optional[float] = None) -> Optional[MidiNoteMessage]:
    """Convert a mido message; None for anything but note on/off."""
    if msg.type == "note_on" and msg.velocity > 0:
        return MidiNoteMessage("noteon", msg.note, msg.velocity, timestamp)
    if msg.type == "note_off" or (msg.type == "note_on" and msg.velocity == 0):
        return MidiNoteMessage("noteoff", msg.note, 0, timestamp)
    return None


class MidiNoteInput:
    """Performer input from a MIDI port."""

    def __init__(self, port_name: Optional[str] = None):
        self.port_name = port_name
        self._port: Any = None

    def start(
        self,
        on_note: Callable[[MidiNoteMessage], None],
        loop: asyncio.AbstractEventLoop,
        now_ms: Callable[[], float],
    ) -> None:
        if self._port is not None:
            return
        if self.port_name is not None and self.port_name not in list_input_ports():
            raise ValueError(f"MIDI input port '{self.port_name}' not found")

        def callback(msg: mido.Message) -> None:
            event = to_note_message(msg, now_ms())
            if event is not None:
                loop.call_soon_threadsafe(on_note, event)

        self._port = mido.open_input(self.port_name, callback=callback)
        logger.info(f"Listening on MIDI input '{self._port.name}'")

    def stop(self) -> None:
        if self._port is not None:
            self._port.close()
            self._port = None


class MidiNoteOutput:
    """
    Sends scheduled accompaniment notes to a MIDI port.

    Use :meth:`send` as the engine's note output callback.
    """

    def __init__(
        self,
        clock: Clock,
        tempo: Callable[[], float],
        port_name: Optional[str] = None,
        channel: int = 0,
        port: Any = None,
    ):
        """
        Initialize the output.

        Args:
            clock: Engine clock used to delay note-on and note-off.
            tempo: Current playback tempo, used for note lengths.
            port_name: Output port name; default port when None.
            channel: MIDI channel (0-15).
            port: Already opened port (anything with ``send``).
        """
        self.clock = clock
        self.tempo = tempo
        self.port_name = port_name
        self.channel = channel
        self._port = port
        self._pending: set[TimerHandle] = set()
        self._sounding: set[int] = set()

    def open(self) -> None:
        if self._port is not None:
            return
        if self.port_name is not None and self.port_name not in list_output_ports():
            raise ValueError(f"MIDI output port '{self.port_name}' not found")
        self._port = mido.open_output(self.port_name)
        logger.info(f"Sending accompaniment to '{self._port.name}'")

    def send(self, note: NoteEvent, delay_ms: float) -> None:
        """Schedule ``note`` to start after ``delay_ms``."""
        if self._port is None:
            self.open()
        length_s = note.duration_beats * 60.0 / self.tempo()
        self._later(delay_ms / 1000.0, lambda: self._note_on(note))
        self._later(delay_ms / 1000.0 + length_s, lambda: self._note_off(note))

    @property
    def pending(self) -> int:
        return len(self._pending)

    def panic(self) -> None:
        """Cancel pending notes and silence everything that sounds."""
        for handle in list(self._pending):
            handle.cancel()
        self._pending.clear()
        if self._port is not None:
            for pitch in sorted(self._sounding):
                self._port.send(mido.Message("note_off", note=pitch, channel=self.channel))
        self._sounding.clear()

    def close(self) -> None:
        if self._port is not None:
            self.panic()
            self._port.close()
            self._port = None

    def _note_on(self, note: NoteEvent) -> None:
        self._port.send(
            mido.Message("note_on", note=note.pitch, velocity=note.velocity, channel=self.channel)
        )
        self._sounding.add(note.pitch)

    def _note_off(self, note: NoteEvent) -> None:
        self._port.send(mido.Message("note_off", note=note.pitch, channel=self.channel))
        self._sounding.discard(note.pitch)

    def _later(self, delay_s: float, action: Callable[[], None]) -> None:
        handle: Optional[TimerHandle] = None

        def run() -> None:
            self._pending.discard(handle)
            action()

        handle = self.clock.call_later(delay_s, run)
        self._pending.add(handle)
