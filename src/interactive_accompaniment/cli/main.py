"""
Command-line interface for the interactive accompaniment system.

Provides commands for:
- Following a live soloist from MIDI or microphone input
- Replaying recorded performances offline
- Fixed-tempo playback of a score
- Inspecting scores and score libraries
- Managing configuration
- Listing audio and MIDI devices
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Optional

import click

from interactive_accompaniment.utils.config import Config, get_config, set_config

# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

AUDIO_EXTENSIONS = {".mp3", ".wav", ".flac", ".m4a", ".ogg"}


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=False),
    help="Path to config file",
)
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, config: Optional[str], debug: bool) -> None:
    """Interactive Accompaniment - Score-following accompaniment system."""
    ctx.ensure_object(dict)

    # Load configuration
    if config:
        cfg = Config.from_file(Path(config))
    else:
        cfg = get_config()

    cfg.debug = debug
    set_config(cfg)
    ctx.obj["config"] = cfg

    if debug:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.debug("Debug mode enabled")


def _load_score_or_exit(path: str):
    from interactive_accompaniment.core.score_store import load_score_file

    try:
        return load_score_file(path)
    except (FileNotFoundError, ValueError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


def _load_reference_or_exit(path: Optional[str], sample_rate: int):
    if path is None:
        return None
    from interactive_accompaniment.core.reference import load_reference

    try:
        return load_reference(path, sample_rate=sample_rate)
    except (FileNotFoundError, ValueError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


def _describe_state(state) -> str:
    return (
        f"{state.engine_state.value:<9} measure {state.current_measure:>3}  "
        f"beat {state.current_beat:7.2f}  {state.tempo:6.1f} BPM  "
        f"{state.current_role}"
    )


@cli.command()
@click.argument("score_file", type=click.Path(exists=True))
@click.option(
    "--input",
    "-i",
    "input_mode",
    type=click.Choice(["midi", "audio"]),
    default="midi",
    help="Performer input source",
)
@click.option("--midi-in", help="MIDI input port name")
@click.option("--midi-out", help="MIDI output port name")
@click.option("--device", "-d", type=int, help="Audio input device index")
@click.option("--solo-part", "-s", type=int, help="Index of the part the performer plays")
@click.option(
    "--reference",
    "-r",
    type=click.Path(exists=True),
    help="Follow the tempo of a reference recording or saved profile",
)
@click.option("--mute", "-m", type=int, multiple=True, help="Part index to mute (repeatable)")
@click.option(
    "--duration",
    "-t",
    type=float,
    help="Stop after this many seconds (default: end of score)",
)
@click.pass_context
def follow(
    ctx: click.Context,
    score_file: str,
    input_mode: str,
    midi_in: Optional[str],
    midi_out: Optional[str],
    device: Optional[int],
    solo_part: Optional[int],
    mute: tuple[int, ...],
    reference: Optional[str],
    duration: Optional[float],
) -> None:
    """Accompany a live performer."""
    cfg = ctx.obj["config"]
    score = _load_score_or_exit(score_file)
    profile = _load_reference_or_exit(reference, cfg.audio.sample_rate)

    if input_mode == "audio":
        from interactive_accompaniment.utils.audio import check_input_device

        device_idx = device if device is not None else cfg.audio.input_device_index
        if device_idx is not None:
            try:
                check_input_device(device_idx, cfg.audio.sample_rate, cfg.audio.channels)
            except ValueError as e:
                click.echo(f"Error: {e}", err=True)
                sys.exit(1)

    click.echo(f"Following '{score.title}' ({input_mode} input)")
    click.echo("Press Ctrl+C to stop")

    try:
        asyncio.run(
            _run_follow(
                cfg,
                score,
                input_mode=input_mode,
                midi_in=midi_in or cfg.midi.input_port,
                midi_out=midi_out or cfg.midi.output_port,
                device=device if device is not None else cfg.audio.input_device_index,
                solo_part=solo_part,
                mute=mute,
                profile=profile,
                duration=duration,
            )
        )
    except KeyboardInterrupt:
        click.echo("\nStopped")
    except (ValueError, OSError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


async def _run_follow(
    cfg: Config,
    score,
    input_mode: str,
    midi_in: Optional[str],
    midi_out: Optional[str],
    device: Optional[int],
    solo_part: Optional[int],
    mute: tuple[int, ...],
    profile,
    duration: Optional[float],
) -> None:
    from interactive_accompaniment.core.clock import AsyncioClock
    from interactive_accompaniment.core.engine import AccompanimentEngine
    from interactive_accompaniment.core.events import EventType
    from interactive_accompaniment.core.midi_io import MidiNoteInput, MidiNoteOutput

    loop = asyncio.get_running_loop()
    clock = AsyncioClock(loop)
    engine = AccompanimentEngine(clock, cfg.engine, cfg.tracker)
    if profile is not None:
        engine.set_audio_reference(profile)

    output = MidiNoteOutput(
        clock,
        tempo=lambda: engine.scheduler.tempo,
        port_name=midi_out,
        channel=cfg.midi.channel,
    )
    output.open()
    engine.set_note_output_callback(output.send)

    last_line = ""

    def on_state(state) -> None:
        nonlocal last_line
        line = f"{state.engine_state.value} m{state.current_measure} {state.current_role}"
        if line != last_line:
            last_line = line
            click.echo(_describe_state(state))

    engine.set_state_change_callback(on_state)

    if input_mode == "audio":
        from interactive_accompaniment.core.pitch import NoteSegmenter, PitchDetector
        from interactive_accompaniment.core.recorder import AudioNoteInput

        detector = PitchDetector(
            sample_rate=cfg.audio.sample_rate,
            block_size=cfg.audio.block_size,
            silence_threshold=cfg.audio.silence_threshold,
        )
        performer = AudioNoteInput(
            detector,
            NoteSegmenter(cfg.audio.min_confidence, cfg.audio.min_note_ms),
            channels=cfg.audio.channels,
            device_index=device,
        )
    else:
        performer = MidiNoteInput(midi_in)

    finished = asyncio.Event()
    engine.bus.on(EventType.PLAYBACK_STOP, lambda event: finished.set())

    engine.load_score(score, solo_part)
    for part_index in mute:
        engine.mute_part(part_index)

    performer.start(engine.process_midi_note, loop, clock.now_ms)
    try:
        engine.start()
        try:
            await asyncio.wait_for(finished.wait(), timeout=duration)
        except asyncio.TimeoutError:
            logger.info(f"Stopping after {duration}s")
    finally:
        performer.stop()
        engine.stop()
        output.close()


@cli.command()
@click.argument("score_file", type=click.Path(exists=True))
@click.argument("events_file", type=click.Path(exists=True))
@click.option("--solo-part", "-s", type=int, help="Index of the part the performer plays")
@click.option(
    "--reference",
    "-r",
    type=click.Path(exists=True),
    help="Follow the tempo of a reference recording or saved profile",
)
@click.option("--mute", "-m", type=int, multiple=True, help="Part index to mute (repeatable)")
@click.option(
    "--tail",
    type=float,
    default=2.0,
    help="Seconds to keep running after the last event",
)
@click.option(
    "--output",
    "-o",
    type=click.Path(),
    help="Write the scheduled notes to a JSON file",
)
@click.pass_context
def simulate(
    ctx: click.Context,
    score_file: str,
    events_file: str,
    solo_part: Optional[int],
    mute: tuple[int, ...],
    reference: Optional[str],
    tail: float,
    output: Optional[str],
) -> None:
    """
    Replay a recorded performance against a score in virtual time.

    EVENTS_FILE is either an audio recording of the soloist or a JSON list
    of timed events, each with a ``time`` in seconds and one of ``note``,
    ``cue``, ``command`` or ``action`` ("start"/"stop").
    """
    from interactive_accompaniment.core.clock import ManualClock
    from interactive_accompaniment.core.engine import AccompanimentEngine
    from interactive_accompaniment.utils.audio import note_name

    cfg = ctx.obj["config"]
    score = _load_score_or_exit(score_file)
    profile = _load_reference_or_exit(reference, cfg.audio.sample_rate)

    if Path(events_file).suffix.lower() in AUDIO_EXTENSIONS:
        events = _events_from_audio(cfg, events_file)
    else:
        try:
            events = _events_from_json(events_file)
        except ValueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)

    clock = ManualClock()
    engine = AccompanimentEngine(clock, cfg.engine, cfg.tracker)
    if profile is not None:
        engine.set_audio_reference(profile)
    scheduled: list[dict] = []

    def on_note(note, delay_ms: float) -> None:
        at_ms = clock.now_ms() + delay_ms
        scheduled.append({**note.to_dict(), "timeMs": at_ms})
        click.echo(
            f"  {at_ms / 1000:8.3f}s  play {note_name(note.pitch):<4} "
            f"beat {note.start_beat:7.2f}  part {note.part_index}"
        )

    last_line = ""

    def on_state(state) -> None:
        nonlocal last_line
        line = f"{state.engine_state.value} m{state.current_measure} {state.current_role}"
        if line != last_line:
            last_line = line
            click.echo(f"{clock.now_ms() / 1000:10.3f}s  {_describe_state(state)}")

    engine.set_note_output_callback(on_note)
    engine.set_state_change_callback(on_state)
    engine.load_score(score, solo_part)
    for part_index in mute:
        engine.mute_part(part_index)

    if not any(e.get("action") == "start" for e in events):
        engine.start()

    for event in events:
        clock.advance(max(0.0, event["time"] - clock.now_ms() / 1000.0))
        _dispatch(engine, event, clock.now_ms())

    clock.advance(tail)
    engine.stop()

    click.echo(f"\nReplayed {len(events)} events, scheduled {len(scheduled)} notes")
    if output:
        with open(output, "w") as f:
            json.dump(scheduled, f, indent=2)
        click.echo(f"Scheduled notes saved to {output}")


def _events_from_json(path: str) -> list[dict]:
    with open(path) as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid events JSON in {path}: {e}") from e

    if not isinstance(data, list):
        raise ValueError(f"Events file must contain a list: {path}")

    events = []
    for entry in data:
        if not isinstance(entry, dict) or "time" not in entry:
            raise ValueError(f"Event without a time: {entry}")
        events.append({**entry, "time": float(entry["time"])})
    events.sort(key=lambda e: e["time"])
    return events


def _events_from_audio(cfg: Config, path: str) -> list[dict]:
    from interactive_accompaniment.core.pitch import NoteSegmenter, PitchDetector
    from interactive_accompaniment.core.recorder import load_audio_file

    click.echo(f"Extracting notes from {path}")
    detector = PitchDetector(
        sample_rate=cfg.audio.sample_rate,
        block_size=cfg.audio.block_size,
        silence_threshold=cfg.audio.silence_threshold,
    )
    audio_data = load_audio_file(path, sample_rate=cfg.audio.sample_rate)
    segmenter = NoteSegmenter(cfg.audio.min_confidence, cfg.audio.min_note_ms)
    return [
        {
            "time": msg.timestamp / 1000.0,
            "note": {"type": msg.type, "note": msg.note, "velocity": msg.velocity},
        }
        for msg in detector.extract_notes(audio_data, segmenter)
    ]


def _dispatch(engine, event: dict, now_ms: float) -> None:
    from interactive_accompaniment.core.types import MidiNoteMessage, MotionCue, RehearsalCommand

    if "note" in event:
        msg = MidiNoteMessage.from_dict(event["note"])
        msg.timestamp = now_ms
        engine.process_midi_note(msg)
    elif "cue" in event:
        engine.handle_motion_cue(MotionCue.from_dict({"timestamp": now_ms, **event["cue"]}))
    elif "command" in event:
        engine.apply_command(RehearsalCommand.from_dict(event["command"]))
    elif event.get("action") == "start":
        engine.start()
    elif event.get("action") == "stop":
        engine.stop()
    else:
        logger.warning(f"Ignoring unrecognised event: {event}")


@cli.command()
@click.argument("score_file", type=click.Path(exists=True))
@click.option("--tempo", "-t", type=float, help="Playback tempo in BPM (default: score tempo)")
@click.option("--midi-out", help="MIDI output port name")
@click.option(
    "--exclude-solo/--include-solo",
    default=False,
    help="Leave out the solo part",
)
@click.option("--mute", "-m", type=int, multiple=True, help="Part index to mute (repeatable)")
@click.pass_context
def play(
    ctx: click.Context,
    score_file: str,
    tempo: Optional[float],
    midi_out: Optional[str],
    exclude_solo: bool,
    mute: tuple[int, ...],
) -> None:
    """Play a score at a fixed tempo."""
    cfg = ctx.obj["config"]
    score = _load_score_or_exit(score_file)

    click.echo(f"Playing '{score.title}'")
    click.echo("Press Ctrl+C to stop")

    try:
        asyncio.run(
            _run_playback(cfg, score, tempo, midi_out or cfg.midi.output_port, exclude_solo, mute)
        )
    except KeyboardInterrupt:
        click.echo("\nStopped")
    except (ValueError, OSError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


async def _run_playback(
    cfg: Config,
    score,
    tempo: Optional[float],
    midi_out: Optional[str],
    exclude_solo: bool,
    mute: tuple[int, ...],
) -> None:
    from interactive_accompaniment.core.clock import AsyncioClock
    from interactive_accompaniment.core.events import EventType
    from interactive_accompaniment.core.midi_io import MidiNoteOutput
    from interactive_accompaniment.core.playback import PlaybackEngine

    loop = asyncio.get_running_loop()
    clock = AsyncioClock(loop)
    player = PlaybackEngine(clock, cfg.engine)

    output = MidiNoteOutput(clock, tempo=player.get_tempo, port_name=midi_out, channel=cfg.midi.channel)
    output.open()
    player.set_note_output_callback(output.send)

    finished = asyncio.Event()
    player.bus.on(EventType.PLAYBACK_STOP, lambda event: finished.set())

    player.load_score(score, exclude_solo=exclude_solo)
    for part_index in mute:
        player.mute_part(part_index)
    if tempo is not None:
        click.echo(f"Tempo: {player.set_tempo(tempo):.1f} BPM")

    try:
        player.start()
        await finished.wait()
    finally:
        player.stop()
        output.close()


@cli.command()
@click.argument("audio_file", type=click.Path(exists=True))
@click.option(
    "--output",
    "-o",
    type=click.Path(),
    help="Profile JSON path (default: next to the recording)",
)
@click.pass_context
def reference(ctx: click.Context, audio_file: str, output: Optional[str]) -> None:
    """Extract a tempo profile from a reference recording."""
    from interactive_accompaniment.core.reference import save_reference

    cfg = ctx.obj["config"]
    profile = _load_reference_or_exit(audio_file, cfg.audio.sample_rate)
    out_path = Path(output) if output else Path(audio_file).with_suffix(".json")

    click.echo(f"Average tempo: {profile.average_tempo:.1f} BPM")
    click.echo(f"Tempo points: {len(profile.tempo_curve)}")
    click.echo(f"Duration: {profile.total_duration:.1f}s ({profile.total_beats:.1f} beats)")
    save_reference(profile, out_path)
    click.echo(f"Profile saved to {out_path}")


@cli.command()
@click.argument("score_file", type=click.Path(exists=True))
def info(score_file: str) -> None:
    """Show a summary of a parsed score."""
    from interactive_accompaniment.core.score_store import score_summary

    score = _load_score_or_exit(score_file)
    s = score_summary(score)

    click.echo(f"Score: {s['title']}")
    click.echo("-" * 40)
    click.echo(f"Tempo: {s['tempo']:.0f} BPM")
    click.echo(f"Time signature: {s['time_signature']}")
    click.echo(f"Measures: {s['measures']} ({s['playback_slots']} with repeats)")
    click.echo(f"Parts: {s['parts']}")
    for i, part in enumerate(score.parts):
        marker = " (solo)" if part.is_solo else ""
        click.echo(f"  [{i}] {part.name or part.id}: {len(part.notes)} notes{marker}")

    if score.measures:
        click.echo("\nAnnotations:")
        for annotation in score.measures:
            details = []
            if annotation.role is not None:
                details.append(str(annotation.role))
            if annotation.wait is not None:
                wait = annotation.wait
                details.append(
                    f"{wait.type.value} {wait.duration}s" if wait.is_timed else wait.type.value
                )
            click.echo(f"  m{annotation.measure_number}: {', '.join(details)}")


@cli.command()
@click.argument("directory", type=click.Path(exists=True, file_okay=False))
@click.option("--search", "-s", "pattern", help="Only list scores matching this pattern")
def library(directory: str, pattern: Optional[str]) -> None:
    """Show the scores in a directory."""
    from interactive_accompaniment.core.score_store import ScoreLibrary

    lib = ScoreLibrary(directory)
    s = lib.stats()

    click.echo(f"Library: {directory}")
    click.echo("-" * 40)
    click.echo(f"Scores: {s['count']}")

    if s["count"] > 0:
        click.echo(f"Total notes: {s['total_notes']}")
        click.echo(f"Avg notes/score: {s['avg_notes_per_score']:.0f}")

        names = lib.search(pattern) if pattern else lib.list_scores()
        click.echo("\nScores:")
        for name in names:
            score = lib[name]
            click.echo(f"  - {name}: {score.title} ({score.total_measures} measures)")


@cli.command()
@click.pass_context
def devices(ctx: click.Context) -> None:
    """List audio inputs and MIDI ports."""
    from interactive_accompaniment.utils.audio import (
        input_format_supported,
        list_input_devices,
        list_midi_ports,
    )

    cfg = ctx.obj["config"]
    rate = cfg.audio.sample_rate
    inputs = list_input_devices()
    ports = list_midi_ports()

    click.echo("Audio input devices:")
    click.echo("-" * 50)
    if not inputs:
        click.echo("  (none)")
    for device in inputs:
        usable = input_format_supported(device.index, rate, cfg.audio.channels)
        click.echo(f"  {device}")
        click.echo(f"      Records at {rate}Hz: {'yes' if usable else 'no'}")

    click.echo("\nMIDI inputs:")
    for name in ports["inputs"] or ["(none)"]:
        click.echo(f"  {name}")
    click.echo("MIDI outputs:")
    for name in ports["outputs"] or ["(none)"]:
        click.echo(f"  {name}")


@cli.command()
@click.option(
    "--output",
    "-o",
    type=click.Path(),
    default="config.json",
    help="Output config file path",
)
@click.pass_context
def init_config(ctx: click.Context, output: str) -> None:
    """Generate a default configuration file."""
    cfg = Config()
    cfg.save(output)
    click.echo(f"Configuration saved to {output}")
    click.echo("Edit this file to customize settings.")


def main():
    """Main entry point."""
    cli(obj={})


if __name__ == "__main__":
    main()
