"""Command line helpers for the Sight-Singing Exercise Generator.

Modification summary
--------------------
* Options describe an exercise request (key, mode, meter, phrase plan,
  register and the user's forbidden degrees, intervals and transitions)
  instead of a chord progression and note count.
* ``--spec-file`` loads a JSON exercise spec; options given on the command
  line override the matching fields of the file.
* ``--settings-file`` points at the JSON settings file whose values become
  the option defaults.
* A "no solution" outcome is reported with its suggestions and a non-zero
  exit code instead of a traceback.

Example
-------
Running ``python -m sightsinging_generator --key G --mode major --timesig 3/4 \
    --measures 4 --phrases "A:half,A':authentic" --seed 11 --output ex.mid``
writes an eight-measure G major exercise to ``ex.mid``.  Add ``--json -`` to
print the generated events as JSON.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional, Tuple

from . import KEY_TO_PC, DEFAULT_SETTINGS_FILE, load_settings
from .models import ExerciseSpec, IllegalTransition, PhraseSpec, RhythmWeights, UserConstraints

__all__ = ["build_parser", "build_spec_from_args", "run_cli", "main"]

DEFAULT_BPM = 90
# Settings keys that may provide option defaults.
SETTINGS_DEFAULTS = ("key", "mode", "timesig", "measures", "bpm", "low", "high", "max_leap", "seed")


def _parse_phrases(text: str) -> List[PhraseSpec]:
    """Parse ``"A:authentic,A':half"`` into phrase specs.

    A trailing apostrophe on the label marks a prime (varied) repeat.  The
    cadence defaults to ``authentic`` when omitted.
    """

    phrases = []
    for item in text.split(","):
        item = item.strip()
        if not item:
            continue
        label, _, cadence = item.partition(":")
        label = label.strip()
        prime = label.endswith("'")
        label = label.rstrip("'") or "A"
        phrases.append(PhraseSpec(label=label, prime=prime, cadence=cadence.strip() or "authentic"))
    if not phrases:
        raise ValueError(f"Invalid phrase plan: {text!r}")
    return phrases


def _parse_register_bound(text: str) -> Tuple[int, int]:
    """Parse ``"degree@octave"`` such as ``"5@3"``."""

    degree, sep, octave = str(text).partition("@")
    if not sep:
        raise ValueError(f"Register bound must look like degree@octave: {text!r}")
    return int(degree), int(octave)


def _parse_int_list(text: str) -> List[int]:
    return [int(part) for part in text.split(",") if part.strip()]


def _parse_transitions(text: str) -> List[IllegalTransition]:
    transitions = []
    for item in text.split(","):
        item = item.strip()
        if not item:
            continue
        a, sep, b = item.partition("-")
        if not sep:
            raise ValueError(f"Illegal transition must look like a-b: {item!r}")
        transitions.append(IllegalTransition(int(a), int(b)))
    return transitions


def _parse_rhythm(text: str) -> Tuple[float, float, float, float]:
    """Parse ``"W,H,Q,EE"`` percentages."""

    parts = [float(part) for part in text.split(",")]
    if len(parts) != 4:
        raise ValueError("Rhythm mix must list four percentages: W,H,Q,EE")
    return parts[0], parts[1], parts[2], parts[3]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Generate a sight-singing exercise and save it as MIDI and/or JSON."
    )
    parser.add_argument("--list-keys", action="store_true", help="List all supported keys and exit")
    parser.add_argument("--spec-file", type=str, help="JSON exercise spec used as the starting point")
    parser.add_argument("--settings-file", type=str, help="JSON settings file providing option defaults")
    parser.add_argument("--key", type=str, help="Tonic of the exercise (e.g. C, F#, Bb).")
    parser.add_argument("--mode", type=str, choices=["major", "minor"], help="Mode of the exercise.")
    parser.add_argument("--timesig", type=str, help="Time signature: 2/4, 3/4 or 4/4.")
    parser.add_argument("--measures", type=int, help="Measures per phrase.")
    parser.add_argument(
        "--phrases",
        type=str,
        help="Comma-separated phrase plan as label:cadence, e.g. \"A:half,A':authentic\".",
    )
    parser.add_argument("--low", type=str, help="Lowest pitch as degree@octave (e.g. 5@3).")
    parser.add_argument("--high", type=str, help="Highest pitch as degree@octave (e.g. 1@5).")
    parser.add_argument("--illegal-degrees", type=str, help="Comma-separated scale degrees to avoid.")
    parser.add_argument("--illegal-intervals", type=str, help="Comma-separated interval sizes in semitones to avoid.")
    parser.add_argument("--illegal-transitions", type=str, help="Comma-separated a-b degree moves to avoid.")
    parser.add_argument("--max-leap", type=int, help="Largest melodic interval in semitones.")
    parser.add_argument("--min-eighth-pairs", type=int, help="Minimum eighth-note pairs per phrase.")
    parser.add_argument("--allowed-values", type=str, help="Comma-separated note values from EE,Q,H,W.")
    parser.add_argument("--rhythm", type=str, help="Target rhythm mix as W,H,Q,EE percentages.")
    parser.add_argument("--start-degree", type=int, help="Lock the first note to this scale degree.")
    parser.add_argument("--hard-start-do", action="store_true", help="Force the first note to be do.")
    parser.add_argument("--seed", type=int, help="Random seed for reproducible output (default: 0)")
    parser.add_argument("--output", type=str, help="Output MIDI file path.")
    parser.add_argument("--json", type=str, metavar="PATH", help="Write the result as JSON ('-' for stdout).")
    parser.add_argument("--bpm", type=int, help=f"Tempo of the MIDI file (default: {DEFAULT_BPM}).")
    parser.add_argument("--verbose", action="store_true", help="Log pipeline details at DEBUG level")
    return parser


def build_spec_from_args(args: argparse.Namespace, base: Optional[ExerciseSpec] = None) -> ExerciseSpec:
    """Return an :class:`ExerciseSpec` combining ``base`` with ``args``.

    Only options that were supplied override the base spec.

    Raises
    ------
    ValueError
        If an option value cannot be parsed.
    """

    spec = base or ExerciseSpec()
    if args.key is not None:
        spec.key = args.key
    if args.mode is not None:
        spec.mode = args.mode
    if args.timesig is not None:
        spec.time_sig = args.timesig
    if args.measures is not None:
        spec.phrase_length_measures = args.measures
    if args.phrases:
        spec.phrases = _parse_phrases(args.phrases)
    if args.low:
        spec.range.low_degree, spec.range.low_octave = _parse_register_bound(args.low)
    if args.high:
        spec.range.high_degree, spec.range.high_octave = _parse_register_bound(args.high)
    if args.illegal_degrees:
        spec.illegal_degrees = _parse_int_list(args.illegal_degrees)
    if args.illegal_intervals:
        spec.illegal_intervals_semis = _parse_int_list(args.illegal_intervals)
    if args.illegal_transitions:
        spec.illegal_transitions = _parse_transitions(args.illegal_transitions)
    if args.rhythm:
        whole, half, quarter, eighth = _parse_rhythm(args.rhythm)
        weights = spec.rhythm_weights or RhythmWeights()
        weights.whole, weights.half, weights.quarter, weights.eighth = whole, half, quarter, eighth
        spec.rhythm_weights = weights
    if args.start_degree is not None:
        spec.starting_degree = args.start_degree

    user = spec.user_constraints or UserConstraints()
    if args.start_degree is not None:
        user.start_degree_locked = True
    if args.hard_start_do:
        user.hard_start_do = True
    if args.max_leap is not None:
        user.max_leap_semitones = args.max_leap
    if args.min_eighth_pairs is not None:
        user.min_eighth_pairs_per_phrase = args.min_eighth_pairs
    if args.allowed_values:
        user.allowed_note_values = [v.strip().upper() for v in args.allowed_values.split(",") if v.strip()]
    spec.user_constraints = user
    return spec


def _apply_settings(parser: argparse.ArgumentParser, settings_file: Optional[str]) -> None:
    path = Path(settings_file).expanduser() if settings_file else DEFAULT_SETTINGS_FILE
    settings = load_settings(path)
    defaults = {name: settings[name] for name in SETTINGS_DEFAULTS if name in settings}
    if defaults:
        logging.debug("Using defaults from %s: %s", path, sorted(defaults))
        parser.set_defaults(**defaults)


def run_cli(argv: Optional[List[str]] = None) -> None:
    """Parse CLI arguments, generate an exercise and write the outputs.

    Invalid options and unwritable output paths are logged and terminate
    the process with exit status ``1``.  An infeasible request prints the
    suggestions of the "no solution" result and also exits with ``1``.
    """

    argv = sys.argv[1:] if argv is None else argv
    if "--list-keys" in argv:
        print("\n".join(sorted(KEY_TO_PC.keys())))
        return

    parser = build_parser()
    pre_args, _ = parser.parse_known_args(argv)
    _apply_settings(parser, pre_args.settings_file)
    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)
    if args.bpm is not None and args.bpm <= 0:
        logging.error("BPM must be a positive integer.")
        sys.exit(1)
    if args.measures is not None and args.measures <= 0:
        logging.error("Number of measures must be a positive integer.")
        sys.exit(1)
    if not args.output and not args.json:
        logging.error("Nothing to write: pass --output and/or --json.")
        sys.exit(1)

    from . import (
        create_midi_file,
        events_to_json,
        generate_exercise,
        load_exercise_spec,
    )
    from .validation import validate_time_signature

    try:
        base = load_exercise_spec(args.spec_file) if args.spec_file else None
        spec = build_spec_from_args(args, base)
        numerator, denominator = validate_time_signature(spec.time_sig)
        result = generate_exercise(spec, args.seed if args.seed is not None else 0)
    except OSError as exc:
        logging.error("Could not read spec file: %s", exc)
        sys.exit(1)
    except ValueError as exc:
        logging.error("Invalid exercise settings: %s", exc)
        sys.exit(1)

    if args.json:
        payload = json.dumps(events_to_json(result), indent=2)
        if args.json == "-":
            print(payload)
        else:
            try:
                path = Path(args.json)
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_text(payload, encoding="utf-8")
            except OSError as exc:
                logging.error("Could not write JSON file: %s", exc)
                sys.exit(1)

    if not result.ok:
        info = result.no_solution
        logging.error(info.title)
        logging.error(info.message)
        for suggestion in info.suggestions:
            logging.error("  - %s", suggestion)
        sys.exit(1)

    if args.output:
        try:
            create_midi_file(
                result.events,
                args.bpm or DEFAULT_BPM,
                (numerator, denominator),
                args.output,
                harmony=result.harmony,
            )
        except OSError as exc:
            logging.error("Could not write MIDI file: %s", exc)
            sys.exit(1)
    logging.info("Exercise generation complete (score %.2f).", result.score)


def main() -> None:
    """Configure logging and run the command line interface."""

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    run_cli()
