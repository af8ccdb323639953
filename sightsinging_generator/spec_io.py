"""JSON (de)serialisation of :class:`ExerciseSpec`.

Spec files and the web API use the camelCase field names of the front-end
schema (``timeSig``, ``illegalDegrees`` ...).  Snake-case names are
accepted too so hand-written files may follow the Python attribute names.

Example
-------
>>> spec = exercise_spec_from_dict({"key": "G", "timeSig": "3/4"})
>>> spec.key, spec.beats_per_measure
('G', 3)
>>> exercise_spec_to_dict(spec)["timeSig"]
'3/4'
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from .errors import InputValidationError
from .models import ExerciseSpec, IllegalTransition, PhraseSpec, RegisterRange, RhythmWeights, UserConstraints

__all__ = ["exercise_spec_from_dict", "exercise_spec_to_dict", "load_exercise_spec", "save_exercise_spec"]

logger = logging.getLogger(__name__)


def _get(data: Mapping[str, Any], camel: str, default: Any = None) -> Any:
    if camel in data:
        return data[camel]
    snake = "".join(f"_{c.lower()}" if c.isupper() else c for c in camel)
    return data.get(snake, default)


def _int_list(values: Optional[List[Any]], field_name: str) -> List[int]:
    try:
        return [int(v) for v in (values or [])]
    except (TypeError, ValueError) as exc:
        raise InputValidationError(f"input_invalid_spec_field field={field_name}") from exc


def _register(data: Optional[Mapping[str, Any]]) -> RegisterRange:
    if not data:
        return RegisterRange()
    defaults = RegisterRange()
    return RegisterRange(
        low_degree=int(_get(data, "lowDegree", defaults.low_degree)),
        high_degree=int(_get(data, "highDegree", defaults.high_degree)),
        low_octave=int(_get(data, "lowOctave", defaults.low_octave)),
        high_octave=int(_get(data, "highOctave", defaults.high_octave)),
    )


def _phrases(items: Optional[List[Mapping[str, Any]]]) -> List[PhraseSpec]:
    if not items:
        return [PhraseSpec()]
    return [
        PhraseSpec(
            label=str(item.get("label", "A")),
            prime=bool(item.get("prime", False)),
            cadence=str(item.get("cadence", "authentic")),
        )
        for item in items
    ]


def _transitions(items: Optional[List[Any]]) -> List[IllegalTransition]:
    result = []
    for item in items or []:
        if isinstance(item, Mapping):
            result.append(IllegalTransition(int(item["a"]), int(item["b"]), str(item.get("mode", "adjacent"))))
        elif isinstance(item, (list, tuple)) and len(item) == 2:
            result.append(IllegalTransition(int(item[0]), int(item[1])))
        else:
            raise InputValidationError(f"input_invalid_spec_field field=illegalTransitions value={item!r}")
    return result


def _rhythm_weights(data: Optional[Mapping[str, Any]]) -> Optional[RhythmWeights]:
    if data is None:
        return None
    defaults = RhythmWeights()
    return RhythmWeights(
        whole=float(data.get("whole", defaults.whole)),
        half=float(data.get("half", defaults.half)),
        quarter=float(data.get("quarter", defaults.quarter)),
        eighth=float(data.get("eighth", defaults.eighth)),
        min_eighth_pairs_per_phrase=int(_get(data, "minEighthPairsPerPhrase", defaults.min_eighth_pairs_per_phrase)),
        prefer_eighth_in_pre_climax=bool(_get(data, "preferEighthInPreClimax", defaults.prefer_eighth_in_pre_climax)),
    )


def _user_constraints(data: Optional[Mapping[str, Any]]) -> Optional[UserConstraints]:
    if data is None:
        return None

    def optional_int(name: str) -> Optional[int]:
        value = _get(data, name)
        return None if value is None else int(value)

    end_on_do = _get(data, "endOnDoHard")
    allowed = _get(data, "allowedNoteValues")
    dist = _get(data, "rhythmDist")
    return UserConstraints(
        start_degree_locked=bool(_get(data, "startDegreeLocked", False)),
        hard_start_do=bool(_get(data, "hardStartDo", False)),
        cadence_type=_get(data, "cadenceType"),
        end_on_do_hard=None if end_on_do is None else bool(end_on_do),
        max_leap_semitones=optional_int("maxLeapSemitones"),
        max_large_leaps_per_phrase=optional_int("maxLargeLeapsPerPhrase"),
        min_eighth_pairs_per_phrase=optional_int("minEighthPairsPerPhrase"),
        rhythm_dist={str(k): float(v) for k, v in dist.items()} if dist is not None else None,
        allowed_note_values=[str(v) for v in allowed] if allowed is not None else None,
    )


def exercise_spec_from_dict(data: Mapping[str, Any]) -> ExerciseSpec:
    """Build an :class:`ExerciseSpec` from a JSON-style mapping.

    Missing fields take the dataclass defaults.  Only the shape is checked
    here; musical validity is checked when generating.

    Raises
    ------
    InputValidationError
        If a field has the wrong type.
    """

    if not isinstance(data, Mapping):
        raise InputValidationError("input_invalid_spec_field field=<root>")
    defaults = ExerciseSpec()
    try:
        return ExerciseSpec(
            key=str(data.get("key", defaults.key)),
            mode=str(data.get("mode", defaults.mode)),
            range=_register(data.get("range")),
            phrases=_phrases(data.get("phrases")),
            phrase_length_measures=int(_get(data, "phraseLengthMeasures", defaults.phrase_length_measures)),
            time_sig=str(_get(data, "timeSig", defaults.time_sig)),
            chromatic=bool(data.get("chromatic", defaults.chromatic)),
            starting_degree=int(_get(data, "startingDegree", defaults.starting_degree)),
            clef=str(data.get("clef", defaults.clef)),
            title=str(data.get("title", defaults.title)),
            illegal_degrees=_int_list(_get(data, "illegalDegrees"), "illegalDegrees"),
            illegal_intervals_semis=_int_list(_get(data, "illegalIntervalsSemis"), "illegalIntervalsSemis"),
            illegal_transitions=_transitions(_get(data, "illegalTransitions")),
            rhythm_weights=_rhythm_weights(_get(data, "rhythmWeights")),
            user_constraints=_user_constraints(_get(data, "userConstraints")),
        )
    except InputValidationError:
        raise
    except (TypeError, ValueError, KeyError, AttributeError) as exc:
        raise InputValidationError(f"input_invalid_spec_field detail={exc}") from exc


def exercise_spec_to_dict(spec: ExerciseSpec) -> Dict[str, Any]:
    """Return the camelCase mapping accepted by :func:`exercise_spec_from_dict`."""

    result: Dict[str, Any] = {
        "key": spec.key,
        "mode": spec.mode,
        "range": {
            "lowDegree": spec.range.low_degree,
            "highDegree": spec.range.high_degree,
            "lowOctave": spec.range.low_octave,
            "highOctave": spec.range.high_octave,
        },
        "phrases": [{"label": p.label, "prime": p.prime, "cadence": p.cadence} for p in spec.phrases],
        "phraseLengthMeasures": spec.phrase_length_measures,
        "timeSig": spec.time_sig,
        "chromatic": spec.chromatic,
        "startingDegree": spec.starting_degree,
        "clef": spec.clef,
        "title": spec.title,
        "illegalDegrees": list(spec.illegal_degrees),
        "illegalIntervalsSemis": list(spec.illegal_intervals_semis),
        "illegalTransitions": [{"a": t.a, "b": t.b, "mode": t.mode} for t in spec.illegal_transitions],
    }
    if spec.rhythm_weights is not None:
        weights = spec.rhythm_weights
        result["rhythmWeights"] = {
            "whole": weights.whole,
            "half": weights.half,
            "quarter": weights.quarter,
            "eighth": weights.eighth,
            "minEighthPairsPerPhrase": weights.min_eighth_pairs_per_phrase,
            "preferEighthInPreClimax": weights.prefer_eighth_in_pre_climax,
        }
    if spec.user_constraints is not None:
        user = spec.user_constraints
        constraints = {
            "startDegreeLocked": user.start_degree_locked,
            "hardStartDo": user.hard_start_do,
            "cadenceType": user.cadence_type,
            "endOnDoHard": user.end_on_do_hard,
            "maxLeapSemitones": user.max_leap_semitones,
            "maxLargeLeapsPerPhrase": user.max_large_leaps_per_phrase,
            "minEighthPairsPerPhrase": user.min_eighth_pairs_per_phrase,
            "rhythmDist": dict(user.rhythm_dist) if user.rhythm_dist is not None else None,
            "allowedNoteValues": list(user.allowed_note_values) if user.allowed_note_values is not None else None,
        }
        result["userConstraints"] = {k: v for k, v in constraints.items() if v is not None}
    return result


def load_exercise_spec(path: Union[str, Path]) -> ExerciseSpec:
    """Load an exercise spec from the JSON file at ``path``.

    Raises
    ------
    OSError
        If the file cannot be read.
    InputValidationError
        If the file is not valid JSON or has malformed fields.
    """

    with open(path, "r", encoding="utf-8") as fh:
        try:
            data = json.load(fh)
        except ValueError as exc:
            raise InputValidationError(f"input_invalid_spec_json path={path}") from exc
    logger.debug("Loaded exercise spec from %s", path)
    return exercise_spec_from_dict(data)


def save_exercise_spec(spec: ExerciseSpec, path: Union[str, Path]) -> None:
    with open(path, "w", encoding="utf-8") as fh:
        json.dump(exercise_spec_to_dict(spec), fh, indent=2)
