"""Input validation shared by the engine, the CLI and the web API.

:func:`normalize_and_validate` is the first stage of every generation call.
It rejects impossible requests before any random draw happens and returns a
copy of the exercise spec with every optional setting filled in, so later stages
never have to decide defaults themselves.

Failures raise :class:`~sightsinging_generator.errors.InputValidationError`
whose message is a stable code string (``input_invalid_...``) followed by
optional ``key=value`` details.

Usage Example
-------------
>>> validate_time_signature("3/4")
(3, 4)
>>> from sightsinging_generator.models import ExerciseSpec
>>> normalize_and_validate(ExerciseSpec()).user_constraints.cadence_type
'authentic'

Revision Summary
----------------
* Time signatures are limited to the 2/4, 3/4 and 4/4 meters the rhythm
  templates cover.
* Allowed note values are checked against the template catalog here so an
  unusable set fails before the first phrase is planned.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import List, Tuple

from . import KEY_TO_PC, MAX_OCTAVE, MIN_OCTAVE, MODE_SCALES, NOTE_VALUE_BEATS, canonical_key
from .errors import InputValidationError
from .models import ExerciseSpec, PhraseSpec, RhythmWeights, UserConstraints
from .note_utils import parse_register
from .phrase_grid import TEMPLATE_IDS, template_uses_only_allowed
from .repair import MAX_MELODIC_LEAP

__all__ = [
    "CADENCE_TYPES",
    "SUPPORTED_METERS",
    "validate_time_signature",
    "register_bounds",
    "normalize_and_validate",
]

logger = logging.getLogger(__name__)

CADENCE_TYPES = ("authentic", "plagal", "half")
SUPPORTED_METERS = (2, 3, 4)
DEFAULT_ALLOWED_NOTE_VALUES = ["EE", "Q", "H"]
DEFAULT_MAX_LARGE_LEAPS = 1


def validate_time_signature(ts: str) -> Tuple[int, int]:
    """Parse and validate a time signature string.

    Parameters
    ----------
    ts:
        Time signature in ``"NUM/DEN"`` form. Whitespace around the
        separator is ignored.

    Returns
    -------
    tuple[int, int]
        ``(numerator, denominator)`` when ``ts`` is valid.

    Raises
    ------
    InputValidationError
        If ``ts`` is malformed or not one of 2/4, 3/4 or 4/4.
    """

    parts = (ts or "").strip().split("/")
    if len(parts) != 2:
        raise InputValidationError(f"input_invalid_time_signature value={ts}")
    try:
        numerator = int(parts[0])
        denominator = int(parts[1])
    except ValueError as exc:
        raise InputValidationError(f"input_invalid_time_signature value={ts}") from exc
    if numerator not in SUPPORTED_METERS or denominator != 4:
        raise InputValidationError(f"input_invalid_time_signature value={ts}")
    return numerator, denominator


def register_bounds(spec: ExerciseSpec) -> Tuple[int, int]:
    """Return the ``(min_midi, max_midi)`` register of ``spec``."""

    return parse_register(
        KEY_TO_PC[spec.key],
        spec.mode,
        spec.range.low_degree,
        spec.range.low_octave,
        spec.range.high_degree,
        spec.range.high_octave,
    )


def _validate_register(spec: ExerciseSpec) -> None:
    reg = spec.range
    for degree in (reg.low_degree, reg.high_degree):
        if not 1 <= int(degree) <= 7:
            raise InputValidationError(f"input_invalid_register degree={degree}")
    for octave in (reg.low_octave, reg.high_octave):
        if not MIN_OCTAVE <= int(octave) <= MAX_OCTAVE:
            raise InputValidationError(f"input_invalid_register octave={octave}")
    low, high = register_bounds(spec)
    if low == high:
        raise InputValidationError(f"input_invalid_register low={low} high={high}")


def _validate_phrases(phrases: List[PhraseSpec]) -> None:
    for phrase in phrases:
        if phrase.cadence not in CADENCE_TYPES:
            raise InputValidationError(f"input_invalid_cadence value={phrase.cadence}")


def _validate_allowed_values(allowed: List[str], beats_per_measure: int) -> None:
    unknown = [value for value in allowed if value not in NOTE_VALUE_BEATS]
    if unknown:
        raise InputValidationError(f"input_invalid_allowed_note_values_unknown values={unknown}")
    if len(allowed) == 4:
        raise InputValidationError("input_invalid_allowed_note_values_max_three")
    if not allowed:
        raise InputValidationError("input_invalid_allowed_note_values_empty")
    if not any(template_uses_only_allowed(tid, allowed, beats_per_measure) for tid in TEMPLATE_IDS):
        raise InputValidationError("input_invalid_allowed_note_values_no_template_match")


def normalize_and_validate(spec: ExerciseSpec) -> ExerciseSpec:
    """Return a validated copy of ``spec`` with every default resolved.

    The returned spec always carries ``rhythm_weights``, a non-empty phrase
    list and a :class:`UserConstraints` whose optional fields are set:

    * ``cadence_type`` defaults to ``"half"`` when the last phrase ends on a
      half cadence and ``"authentic"`` otherwise;
    * ``end_on_do_hard`` defaults to ``True`` unless the cadence is half;
    * ``max_leap_semitones`` defaults to an octave and is at least ``1``;
    * ``max_large_leaps_per_phrase`` defaults to ``1``;
    * ``min_eighth_pairs_per_phrase`` falls back to the rhythm weights;
    * ``allowed_note_values`` defaults to eighths, quarters and halves;
    * ``rhythm_dist`` defaults to the rhythm weights.

    Raises
    ------
    InputValidationError
        For an unknown key or mode, an unsupported meter, a bad register or
        phrase length, rhythm weights not totalling 100, an unusable allowed
        note-value set or an eighth-pair quota that eighths cannot meet.
    """

    try:
        key = canonical_key(spec.key)
    except ValueError as exc:
        raise InputValidationError(f"input_invalid_key value={spec.key}") from exc
    if spec.mode not in MODE_SCALES:
        raise InputValidationError(f"input_invalid_mode value={spec.mode}")
    beats_per_measure, _ = validate_time_signature(spec.time_sig)
    if int(spec.phrase_length_measures) < 1:
        raise InputValidationError(f"input_invalid_phrase_length value={spec.phrase_length_measures}")

    phrases = list(spec.phrases) or [PhraseSpec()]
    _validate_phrases(phrases)

    weights = replace(spec.rhythm_weights) if spec.rhythm_weights is not None else RhythmWeights()
    total = weights.total
    if abs(total - 100) > 1e-6:
        raise InputValidationError(f"input_invalid_rhythm_weight_total expected=100 actual={total:g}")

    given = spec.user_constraints or UserConstraints()
    cadence_type = given.cadence_type
    if cadence_type is None:
        cadence_type = "half" if phrases[-1].cadence == "half" else "authentic"
    elif cadence_type not in CADENCE_TYPES:
        raise InputValidationError(f"input_invalid_cadence value={cadence_type}")

    requested = given.allowed_note_values
    allowed = list(dict.fromkeys(requested if requested is not None else DEFAULT_ALLOWED_NOTE_VALUES))
    _validate_allowed_values(allowed, beats_per_measure)

    min_pairs = given.min_eighth_pairs_per_phrase
    if min_pairs is None:
        min_pairs = weights.min_eighth_pairs_per_phrase or 0
    min_pairs = max(0, int(min_pairs))
    if min_pairs > 0 and "EE" not in allowed:
        if given.min_eighth_pairs_per_phrase is None and spec.rhythm_weights is None:
            # The built-in default quota yields to an explicit allowed set.
            min_pairs = 0
        else:
            raise InputValidationError(
                f"input_invalid_min_eighth_pairs_without_eighths min={min_pairs} allowed={allowed}"
            )

    large_leaps = given.max_large_leaps_per_phrase
    user = UserConstraints(
        start_degree_locked=bool(given.start_degree_locked),
        hard_start_do=bool(given.hard_start_do),
        cadence_type=cadence_type,
        end_on_do_hard=given.end_on_do_hard if given.end_on_do_hard is not None else cadence_type != "half",
        max_leap_semitones=max(1, int(given.max_leap_semitones or MAX_MELODIC_LEAP)),
        max_large_leaps_per_phrase=max(0, int(large_leaps)) if large_leaps is not None else DEFAULT_MAX_LARGE_LEAPS,
        min_eighth_pairs_per_phrase=min_pairs,
        rhythm_dist=dict(given.rhythm_dist) if given.rhythm_dist is not None else weights.as_distribution(),
        allowed_note_values=allowed,
    )

    normalized = replace(
        spec,
        key=key,
        phrases=phrases,
        rhythm_weights=weights,
        user_constraints=user,
        illegal_degrees=sorted(set(spec.illegal_degrees)),
        illegal_intervals_semis=sorted(set(spec.illegal_intervals_semis)),
        illegal_transitions=list(spec.illegal_transitions),
    )
    _validate_register(normalized)
    logger.debug(
        "normalized spec key=%s mode=%s meter=%s cadence=%s minEE=%d allowed=%s",
        normalized.key,
        normalized.mode,
        normalized.time_sig,
        cadence_type,
        min_pairs,
        allowed,
    )
    return normalized
