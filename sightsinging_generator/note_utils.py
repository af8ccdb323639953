"""Pitch helpers translating between MIDI numbers, names and scale degrees.

The functions here are small and pure so both the planning stages and the
repair passes can share them without pulling in heavier modules.  Anything
that depends only on ``(tonic, mode)`` is memoised with
:func:`functools.lru_cache` because the same few keys are queried thousands
of times per exercise.

Example
-------
>>> from sightsinging_generator.note_utils import note_to_midi, midi_to_degree
>>> note_to_midi("C4")
60
>>> midi_to_degree(64, key_scale_pcs(0, "major"))
3
"""

# Modification Summary
# ---------------------
# * ``note_to_midi`` and ``midi_to_note`` validate the MIDI range and raise a
#   descriptive ``ValueError`` instead of clamping.
# * Added scale-degree helpers (``key_scale_pcs``, ``midi_to_degree``,
#   ``chord_for_degree``) and register search helpers used by the skeleton
#   builder and the repair passes.

from __future__ import annotations

import logging
import math
import re
from functools import lru_cache
from typing import Iterable, List, Optional, Sequence, Tuple

from . import KEY_TO_PC, MODE_SCALES, NOTE_NAMES, TRIAD_QUALITIES

__all__ = [
    "note_to_midi",
    "midi_to_note",
    "pitch_name",
    "octave_of",
    "pc_of",
    "key_scale_pcs",
    "midi_to_degree",
    "degree_to_pc",
    "chord_for_degree",
    "quality_for_degree",
    "parse_register",
    "chord_tone_candidates",
    "collect_midis_from_pcs",
    "degree_candidates",
    "nearest_pc_within_leap_cap",
    "nearest_allowed_pc_within_leap_cap",
    "next_scale_step",
    "nearest_midi_with_pc",
    "nearest_chord_tone",
    "js_round",
]

logger = logging.getLogger(__name__)


@lru_cache(maxsize=None)
def note_to_midi(note: str) -> int:
    """Convert a note string such as ``C#4`` into a MIDI number.

    Parameters
    ----------
    note:
        Note name including octave. Flats are accepted and normalised to
        their sharp equivalents.

    Returns
    -------
    int
        MIDI note number in the range ``0-127``.

    Raises
    ------
    ValueError
        If ``note`` is not properly formatted or falls outside ``0-127``.
    """

    match = re.fullmatch(r"([A-Ga-g][#b]?)(-?\d+)", note)
    if not match:
        logger.error("Invalid note format: %s", note)
        raise ValueError(f"Invalid note format: {note}")

    name, octave_str = match.groups()
    name = name[0].upper() + name[1:]
    if name not in KEY_TO_PC:
        raise ValueError(f"Unknown note name: {name}")
    # MIDI octave numbers are offset by one relative to scientific pitch
    # notation, hence the ``+ 1``.
    midi_val = KEY_TO_PC[name] + (int(octave_str) + 1) * 12
    if not 0 <= midi_val <= 127:
        logger.error("MIDI value out of range: %s -> %d", note, midi_val)
        raise ValueError(
            f"Computed MIDI value {midi_val} out of range 0-127 for note {note}"
        )
    return midi_val


def midi_to_note(midi_note: int) -> str:
    """Convert a MIDI number into a note name using sharps.

    Raises
    ------
    ValueError
        If ``midi_note`` is outside the inclusive ``0-127`` range.

    Examples
    --------
    >>> midi_to_note(61)
    'C#4'
    """

    if not 0 <= midi_note <= 127:
        raise ValueError(f"MIDI note {midi_note} out of range 0-127")
    return f"{pitch_name(midi_note)}{octave_of(midi_note)}"


def pc_of(midi: int) -> int:
    """Return the pitch class (0-11) of ``midi``."""

    return midi % 12


def pitch_name(midi_or_pc: int) -> str:
    """Return the sharp spelling for a MIDI number or pitch class."""

    return NOTE_NAMES[midi_or_pc % 12]


def octave_of(midi: int) -> int:
    """Return the scientific octave number of ``midi``."""

    return midi // 12 - 1


def js_round(value: float) -> int:
    """Round half up, matching the behaviour of ``Math.round``."""

    return math.floor(value + 0.5)


@lru_cache(maxsize=None)
def key_scale_pcs(tonic_pc: int, mode: str) -> Tuple[int, ...]:
    """Return the seven pitch classes of the ``mode`` scale on ``tonic_pc``."""

    return tuple((tonic_pc + step) % 12 for step in MODE_SCALES[mode])


def midi_to_degree(midi: int, key_scale: Sequence[int]) -> int:
    """Return the 1-based scale degree of ``midi``.

    Chromatic pitches fall back to degree ``1`` so downstream tables always
    receive a valid index.
    """

    pc = midi % 12
    try:
        return list(key_scale).index(pc) + 1
    except ValueError:
        return 1


def degree_to_pc(degree: int, key_scale: Sequence[int]) -> int:
    """Return the pitch class of scale ``degree`` (wrapping modulo 7)."""

    return key_scale[(degree - 1) % 7]


@lru_cache(maxsize=None)
def chord_for_degree(tonic_pc: int, mode: str, degree: int) -> Tuple[int, int, int]:
    """Return ``(root, third, fifth)`` pitch classes of the diatonic triad."""

    scale = MODE_SCALES[mode]
    root = (tonic_pc + scale[(degree - 1) % 7]) % 12
    third = (tonic_pc + scale[(degree + 1) % 7]) % 12
    fifth = (tonic_pc + scale[(degree + 3) % 7]) % 12
    return root, third, fifth


def quality_for_degree(mode: str, degree: int) -> str:
    """Return ``major``, ``minor`` or ``diminished`` for a diatonic triad."""

    return TRIAD_QUALITIES[mode][(degree - 1) % 7]


def parse_register(
    tonic_pc: int,
    mode: str,
    low_degree: int,
    low_octave: int,
    high_degree: int,
    high_octave: int,
) -> Tuple[int, int]:
    """Return ``(min_midi, max_midi)`` for a register given in scale degrees.

    Each bound is ``(octave + 1) * 12 + pitch_class``.  The bounds are
    swapped when supplied in descending order.
    """

    scale = key_scale_pcs(tonic_pc, mode)
    low_midi = (low_octave + 1) * 12 + scale[(low_degree - 1) % 7]
    high_midi = (high_octave + 1) * 12 + scale[(high_degree - 1) % 7]
    return (low_midi, high_midi) if low_midi <= high_midi else (high_midi, low_midi)


def collect_midis_from_pcs(pcs: Iterable[int], range_min: int, range_max: int) -> List[int]:
    """Return every MIDI number in the register whose pitch class is in ``pcs``."""

    allowed = {pc % 12 for pc in pcs}
    return [midi for midi in range(range_min, range_max + 1) if midi % 12 in allowed]


def chord_tone_candidates(chord_pcs: Sequence[int], range_min: int, range_max: int) -> List[int]:
    """Return the chord tones of ``chord_pcs`` inside the register."""

    return collect_midis_from_pcs(chord_pcs, range_min, range_max)


def degree_candidates(degree: int, key_scale: Sequence[int], range_min: int, range_max: int) -> List[int]:
    """Return every pitch of scale ``degree`` inside the register."""

    return collect_midis_from_pcs([degree_to_pc(degree, key_scale)], range_min, range_max)


def nearest_allowed_pc_within_leap_cap(
    allowed_pcs: Iterable[int],
    target_midi: int,
    prev_midi: int,
    range_min: int,
    range_max: int,
    max_leap: int,
) -> Optional[int]:
    """Return the pitch closest to ``target_midi`` reachable from ``prev_midi``.

    Candidates must carry one of ``allowed_pcs`` and lie within ``max_leap``
    semitones of ``prev_midi``.  Distance to the target dominates the score;
    the leap size only breaks ties.
    """

    allowed = {pc % 12 for pc in allowed_pcs}
    best: Optional[int] = None
    best_score = float("inf")
    for midi in range(range_min, range_max + 1):
        if midi % 12 not in allowed:
            continue
        leap = abs(midi - prev_midi)
        if leap > max_leap:
            continue
        score = abs(midi - target_midi) * 10 + leap
        if score < best_score:
            best_score = score
            best = midi
    return best


def nearest_pc_within_leap_cap(
    target_midi: int, prev_midi: int, range_min: int, range_max: int, max_leap: int
) -> Optional[int]:
    """Return the octave of ``target_midi``'s pitch class nearest the target."""

    return nearest_allowed_pc_within_leap_cap(
        [target_midi % 12], target_midi, prev_midi, range_min, range_max, max_leap
    )


def next_scale_step(
    current_midi: int, direction: int, key_scale: Sequence[int], range_min: int, range_max: int
) -> Optional[int]:
    """Return the next scale tone from ``current_midi`` in ``direction``."""

    scale = set(key_scale)
    midi = current_midi + direction
    while range_min <= midi <= range_max:
        if midi % 12 in scale:
            return midi
        midi += direction
    return None


def nearest_midi_with_pc(pc: int, target_midi: int, min_midi: int, max_midi: int) -> Optional[int]:
    """Return the pitch of class ``pc`` nearest ``target_midi`` in the register."""

    candidates = collect_midis_from_pcs([pc], min_midi, max_midi)
    if not candidates:
        return None
    # ``min`` keeps the first (lowest) candidate on equal distance.
    return min(candidates, key=lambda midi: abs(midi - target_midi))


def nearest_chord_tone(chord_pcs: Sequence[int], reference_midi: int, range_min: int, range_max: int) -> int:
    """Return the chord tone nearest ``reference_midi``.

    When the register contains no chord tone at all the reference is clamped
    into the register instead.
    """

    candidates = chord_tone_candidates(chord_pcs, range_min, range_max)
    if not candidates:
        return max(range_min, min(range_max, reference_midi))
    return min(candidates, key=lambda midi: abs(midi - reference_midi))
