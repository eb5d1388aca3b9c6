"""
Device discovery for performer input and accompaniment output.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass
class InputDevice:
    """An audio input the performer can be recorded from."""
    index: int
    name: str
    channels: int
    default_sample_rate: float
    host_api: str = ""

    def __str__(self) -> str:
        details = [f"{self.channels} ch", f"{self.default_sample_rate:.0f}Hz"]
        if self.host_api:
            details.append(self.host_api)
        return f"[{self.index}] {self.name} ({', '.join(details)})"


def list_input_devices() -> list[InputDevice]:
    """Input-capable audio devices as PyAudio reports them."""
    try:
        import pyaudio
    except ImportError:
        logger.error("PyAudio not installed. Run: pip install 'interactive-accompaniment[audio]'")
        return []

    p = pyaudio.PyAudio()
    devices = []
    try:
        for i in range(p.get_device_count()):
            info = p.get_device_info_by_index(i)
            channels = int(info["maxInputChannels"])
            if channels == 0:
                continue
            host_api = p.get_host_api_info_by_index(info["hostApi"])["name"]
            devices.append(
                InputDevice(
                    index=i,
                    name=info["name"],
                    channels=channels,
                    default_sample_rate=float(info["defaultSampleRate"]),
                    host_api=host_api,
                )
            )
    finally:
        p.terminate()

    return devices


def input_format_supported(device_index: int, sample_rate: int, channels: int) -> bool:
    """Whether the device can stream float32 blocks at ``sample_rate``."""
    import pyaudio

    p = pyaudio.PyAudio()
    try:
        return bool(
            p.is_format_supported(
                sample_rate,
                input_device=device_index,
                input_channels=channels,
                input_format=pyaudio.paFloat32,
            )
        )
    except ValueError:
        # PyAudio reports unsupported formats by raising
        return False
    finally:
        p.terminate()


def check_input_device(device_index: int, sample_rate: int, channels: int = 1) -> InputDevice:
    """
    Find an input device able to feed the pitch tracker.

    Args:
        device_index: PyAudio device index.
        sample_rate: Rate the pitch detector runs at.
        channels: Channels the recorder will open.

    Returns:
        The matching device.

    Raises:
        ValueError: If the device is missing, has too few input channels
            or cannot record at ``sample_rate``.
    """
    device = next((d for d in list_input_devices() if d.index == device_index), None)
    if device is None:
        raise ValueError(f"Audio input device {device_index} not found")
    if device.channels < channels:
        raise ValueError(
            f"Audio input device {device_index} has {device.channels} channel(s), "
            f"{channels} needed"
        )
    if not input_format_supported(device_index, sample_rate, channels):
        raise ValueError(f"Audio input device {device_index} cannot record at {sample_rate}Hz")

    logger.debug(f"Using audio input {device}")
    return device


def list_midi_ports() -> dict[str, list[str]]:
    """Available MIDI ports, keyed by ``inputs`` and ``outputs``."""
    from interactive_accompaniment.core.midi_io import list_input_ports, list_output_ports

    try:
        return {"inputs": list_input_ports(), "outputs": list_output_ports()}
    except Exception as e:
        # mido raises backend-specific errors when no MIDI backend is installed
        logger.error(f"MIDI backend unavailable: {e}")
        return {"inputs": [], "outputs": []}


def note_name(pitch: int) -> str:
    """MIDI note number to name, e.g. 60 -> C4."""
    names = ["C", "C#", "D", "D#", "E", "F", "F#", "G", "G#", "A", "A#", "B"]
    return f"{names[pitch % 12]}{pitch // 12 - 1}"
