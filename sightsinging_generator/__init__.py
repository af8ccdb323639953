#!/usr/bin/env python3
"""Sight-Singing Exercise Generator library.

This package builds short melodic exercises for sight-singing practice.  A
typical workflow constructs an :class:`ExerciseSpec` describing the key,
meter, phrase structure, register and any forbidden degrees or intervals,
then calls :func:`generate_exercise` with an integer seed.  The returned
:class:`GenerationResult` holds the final note events which can be written to
disk with :func:`create_midi_file` or serialised to JSON for a front-end.

Underlying Algorithm
--------------------
Generation runs as a chain of small deterministic stages.  A functional
harmony walk produces one chord per half measure, a phrase planner sketches
the contour, a rhythm grid planner assigns one template per measure and a
skeleton builder picks strong-beat anchors by minimising a cost function.
Embellishment fills the gaps between anchors and a series of repair passes
enforce the hard rules (measure sums, legal durations, leap caps, register,
paired eighths and the user's illegal degrees/intervals/transitions).

Algorithm Pseudocode
--------------------
The following outlines what :func:`generate_exercise` does::

    spec = normalize_and_validate(spec)
    check_feasibility(spec)            # may return a "no solution" result
    harmony = build_harmony_spine(spec, rng(seed + 101))
    for variant in range(3):
        for phrase in spec.phrases:
            plan = generate_phrase_plan(...)
            grid = generate_phrase_grid(...)
            anchors = build_skeleton(plan, grid, harmony)
            events = realize_grid(anchors, grid)
            events = run_phrase_passes(events)
        events = finalize(repair(events))
    return best_scoring(variants)

Every stage receives its own :class:`SeededRng` derived from the caller's
seed so the same ``(spec, seed)`` pair always yields the same exercise.

Author: Austin Boone
Modified: October 18, 2026
"""

__version__ = "0.1.0"

# ---------------------------------------------------------------
# Modification Summary
# ---------------------------------------------------------------
# * Replaced the free-form melody generator with a deterministic sight-singing
#   exercise engine.  Random draws now come from an explicit LCG handle rather
#   than the global ``random`` module so results are reproducible across
#   platforms.
# * Key, mode and triad tables live here so every stage shares one source of
#   truth for pitch-class arithmetic.
# * ``load_settings``/``save_settings`` persist CLI defaults in a JSON file
#   whose location can be overridden with ``SIGHTSINGING_SETTINGS_FILE``.
# ---------------------------------------------------------------

import json
import logging
import os
from pathlib import Path
from typing import Dict, List

# Default path for storing user preferences.
# The file lives in the user's home directory so settings persist
# between runs of the application.
env_path = os.environ.get("SIGHTSINGING_SETTINGS_FILE")
if env_path:
    DEFAULT_SETTINGS_FILE = Path(env_path).expanduser()
else:
    DEFAULT_SETTINGS_FILE = Path.home() / ".sightsinging_generator_settings.json"

# Pitch class of each supported tonic.  Both sharp and flat spellings map to
# the same semitone so callers may use either.
KEY_TO_PC: Dict[str, int] = {
    "C": 0,
    "C#": 1,
    "Db": 1,
    "D": 2,
    "D#": 3,
    "Eb": 3,
    "E": 4,
    "F": 5,
    "F#": 6,
    "Gb": 6,
    "G": 7,
    "G#": 8,
    "Ab": 8,
    "A": 9,
    "A#": 10,
    "Bb": 10,
    "B": 11,
}

# Sharp spellings used when rendering pitch names.
NOTE_NAMES: List[str] = ["C", "C#", "D", "D#", "E", "F", "F#", "G", "G#", "A", "A#", "B"]

# Semitone offsets of the seven scale degrees for each supported mode.
MODE_SCALES: Dict[str, List[int]] = {
    "major": [0, 2, 4, 5, 7, 9, 11],
    "minor": [0, 2, 3, 5, 7, 8, 10],
}

# Triad quality built on each scale degree.  Major keys carry the diminished
# triad on the leading tone while natural minor places it on the supertonic.
TRIAD_QUALITIES: Dict[str, List[str]] = {
    "major": ["major", "minor", "minor", "major", "major", "minor", "diminished"],
    "minor": ["minor", "diminished", "major", "minor", "minor", "major", "major"],
}

# Note value codes used by the rhythm layer mapped to their length in beats.
NOTE_VALUE_BEATS: Dict[str, float] = {"EE": 0.5, "Q": 1.0, "H": 2.0, "W": 4.0}

# Duration class names written into ``MelodyEvent.duration``.
DURATION_NAMES: Dict[float, str] = {0.5: "eighth", 1.0: "quarter", 2.0: "half", 4.0: "whole"}

# ``MIN_OCTAVE`` and ``MAX_OCTAVE`` bound the register octaves accepted in an
# exercise so every pitch stays inside the MIDI range.
MIN_OCTAVE = 0
MAX_OCTAVE = 8


def canonical_key(name: str) -> str:
    """Return the canonical spelling of ``name`` from :data:`KEY_TO_PC`.

    Lowercase input such as ``"bb"`` is accepted.  Unknown names raise
    ``ValueError``.
    """

    cleaned = name.strip()
    if not cleaned:
        raise ValueError("Unknown key: ''")
    candidate = cleaned[0].upper() + cleaned[1:]
    if candidate not in KEY_TO_PC:
        raise ValueError(f"Unknown key: {name}")
    return candidate


def load_settings(path: Path = DEFAULT_SETTINGS_FILE) -> dict:
    """Load saved user settings from ``path`` if it exists.

    @param path (Path): Location of the settings file.
    @returns dict: Loaded settings or an empty dictionary when unavailable.
    """
    # Prefer the user's saved options but fall back to an empty
    # dictionary when the settings file is missing or unreadable.
    if path.is_file():
        try:
            with open(path, "r", encoding="utf-8") as fh:
                return json.load(fh)
        except (OSError, ValueError) as exc:
            logging.error(f"Could not load settings: {exc}")
    return {}


def save_settings(settings: dict, path: Path = DEFAULT_SETTINGS_FILE) -> None:
    """Save user ``settings`` to ``path`` as JSON.

    @param settings (dict): Options to be persisted.
    @param path (Path): Destination file path.
    @returns None: Function does not return a value.
    """
    # Any IOError is logged but ignored so failing to save
    # preferences never prevents exercise generation.
    try:
        with open(path, "w", encoding="utf-8") as fh:
            json.dump(settings, fh, indent=2)
    except OSError as exc:
        logging.error(f"Could not save settings: {exc}")


from .rng import SeededRng, deterministic_unit  # noqa: E402,F401
from .note_utils import note_to_midi, midi_to_note  # noqa: E402,F401
from .models import (  # noqa: E402,F401
    ExerciseSpec,
    FunctionTag,
    GenerationResult,
    HarmonyEvent,
    IllegalTransition,
    MelodyEvent,
    NoSolution,
    PhraseSpec,
    RegisterRange,
    RhythmWeights,
    UserConstraints,
)
from .errors import (  # noqa: E402,F401
    InputValidationError,
    MelodyNoSolutionError,
    Pass4AssertionError,
    PlaybackMismatchError,
)
from .generator import (  # noqa: E402,F401
    apply_pitch_edits,
    create_melody_candidates,
    events_to_json,
    generate_exercise,
)
from .spec_io import (  # noqa: E402,F401
    exercise_spec_from_dict,
    exercise_spec_to_dict,
    load_exercise_spec,
)
from .midi_io import create_midi_file  # noqa: E402,F401


def main() -> None:
    """Entry point for the ``sightsinging-generator`` console script."""

    from .cli import main as _main

    _main()
