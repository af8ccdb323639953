"""Write generated exercises as Standard MIDI Files.

Modification summary
--------------------
* ``create_midi_file`` takes :class:`MelodyEvent` lists instead of note names
  and renders the tie-merged playback view, so tied repeats sound as one
  held note.
* Velocities are fixed (with a downbeat accent) rather than randomised so the
  same exercise always produces the same file.
* An optional chord track renders the harmony spine as sustained triads in
  the octave below middle C.
* Imports from ``mido`` are deferred inside ``create_midi_file`` so the module
  can load even when the optional dependency is missing.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional, Sequence, Tuple

from .finalize import render_playback
from .models import HarmonyEvent, MelodyEvent

if TYPE_CHECKING:
    # ``MidiFile`` is only needed for type checking to avoid requiring the
    # optional dependency at import time.
    from mido import MidiFile

__all__ = ["create_midi_file", "TICKS_PER_BEAT"]

logger = logging.getLogger(__name__)

TICKS_PER_BEAT = 480
BASE_VELOCITY = 64
DOWNBEAT_ACCENT = 10
CHORD_VELOCITY = 48
CHORD_CHANNEL = 1
# Chord tones are voiced from C3 upward.
CHORD_BASE_MIDI = 48


def create_midi_file(
    events: Sequence[MelodyEvent],
    bpm: int,
    time_signature: Tuple[int, int],
    output_file: str,
    program: int = 0,
    harmony: Optional[Sequence[HarmonyEvent]] = None,
) -> "MidiFile":
    """Write ``events`` to ``output_file`` as a MIDI file.

    Only attacks are written; tied continuations extend the sounding note.
    Notes starting a measure receive a small velocity accent.  The parent
    directory of ``output_file`` is created automatically.

    Parameters
    ----------
    events:
        Final melody events.
    bpm:
        Tempo in quarter notes per minute.  Must be positive.
    time_signature:
        ``(numerator, denominator)`` written as a meta message.  The
        numerator also sets the measure length used for the timeline.
    output_file:
        Destination path.
    program:
        General MIDI program for the melody track.
    harmony:
        When given, a second track holds one triad per harmony event.

    Returns
    -------
    MidiFile
        In-memory representation of the written file.

    Raises
    ------
    ValueError
        If ``bpm`` or the time signature is invalid.
    """
    try:
        import mido
        from mido import Message, MidiFile, MidiTrack
    except ModuleNotFoundError as exc:
        raise ImportError(
            "mido is required to create MIDI files; install it with 'pip install mido'"
        ) from exc

    if bpm <= 0:
        raise ValueError("bpm must be a positive integer")
    valid_denoms = {1, 2, 4, 8, 16}
    if time_signature[0] <= 0 or time_signature[1] not in valid_denoms:
        raise ValueError(
            "time_signature denominator must be one of 1, 2, 4, 8 or 16 and numerator must be > 0"
        )
    beats_per_measure = time_signature[0]

    mid = MidiFile(ticks_per_beat=TICKS_PER_BEAT)
    track = MidiTrack()
    mid.tracks.append(track)
    track.append(mido.MetaMessage("set_tempo", tempo=mido.bpm2tempo(bpm)))
    track.append(
        mido.MetaMessage(
            "time_signature", numerator=time_signature[0], denominator=time_signature[1]
        )
    )
    track.append(Message("program_change", program=program, time=0))

    cursor = 0
    for note in render_playback(events, beats_per_measure):
        start = int(round(note.start_beats * TICKS_PER_BEAT))
        duration = int(round(note.duration_beats * TICKS_PER_BEAT))
        velocity = BASE_VELOCITY
        if abs(note.onset_beat - 1) < 1e-6:
            velocity = min(BASE_VELOCITY + DOWNBEAT_ACCENT, 127)
        track.append(Message("note_on", note=note.midi, velocity=velocity, time=max(0, start - cursor)))
        track.append(Message("note_off", note=note.midi, velocity=velocity, time=duration))
        cursor = start + duration

    if harmony:
        mid.tracks.append(_chord_track(harmony, beats_per_measure, events))

    path = Path(output_file)
    path.parent.mkdir(parents=True, exist_ok=True)
    mid.save(str(path))
    logger.info("MIDI file saved to %s", path)
    return mid


def _chord_track(harmony: Sequence[HarmonyEvent], beats_per_measure: int, events: Sequence[MelodyEvent]):
    from mido import Message, MidiTrack

    last_measure = max((e.measure for e in events), default=0)
    total_beats = last_measure * beats_per_measure
    starts = [(h.measure - 1) * beats_per_measure + h.beat - 1 for h in harmony]

    timeline: List[Tuple[int, int, Message]] = []
    for i, chord in enumerate(harmony):
        begin = starts[i]
        end = starts[i + 1] if i + 1 < len(harmony) else total_beats
        if end <= begin:
            continue
        notes = sorted(CHORD_BASE_MIDI + pc % 12 for pc in chord.chord_pcs)
        for midi in notes:
            on_tick = int(round(begin * TICKS_PER_BEAT))
            off_tick = int(round(end * TICKS_PER_BEAT))
            # Offs sort before ons at the same tick so repeated tones re-strike.
            timeline.append((on_tick, 1, Message("note_on", note=midi, velocity=CHORD_VELOCITY, channel=CHORD_CHANNEL)))
            timeline.append((off_tick, 0, Message("note_off", note=midi, velocity=CHORD_VELOCITY, channel=CHORD_CHANNEL)))

    track = MidiTrack()
    cursor = 0
    for tick, _, message in sorted(timeline, key=lambda item: (item[0], item[1])):
        track.append(message.copy(time=tick - cursor))
        cursor = tick
    return track
