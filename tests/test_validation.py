"""Tests for request validation and default resolution."""

import importlib
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

validation = importlib.import_module("sightsinging_generator.validation")
models = importlib.import_module("sightsinging_generator.models")
errors = importlib.import_module("sightsinging_generator.errors")

InputValidationError = errors.InputValidationError


@pytest.mark.parametrize("text, expected", [("3/4", (3, 4)), (" 4/4 ", (4, 4)), ("2/4", (2, 4))])
def test_valid_time_signatures(text, expected):
    assert validation.validate_time_signature(text) == expected


@pytest.mark.parametrize("text", ["6/8", "4/2", "abc", "4/x", ""])
def test_invalid_time_signatures(text):
    with pytest.raises(InputValidationError):
        validation.validate_time_signature(text)


def test_defaults_are_resolved():
    spec = models.ExerciseSpec(key="g")
    normalized = validation.normalize_and_validate(spec)
    user = normalized.user_constraints
    assert normalized.key == "G"
    assert user.cadence_type == "authentic"
    assert user.end_on_do_hard is True
    assert user.max_leap_semitones == 12
    assert user.max_large_leaps_per_phrase == 1
    assert user.min_eighth_pairs_per_phrase == 1
    assert user.allowed_note_values == ["EE", "Q", "H"]
    assert user.rhythm_dist == {"EE": 43.75, "Q": 31.25, "H": 18.75, "W": 6.25}
    assert spec.user_constraints is None


def test_half_cadence_phrase_sets_defaults():
    spec = models.ExerciseSpec(phrases=[models.PhraseSpec(cadence="half")])
    user = validation.normalize_and_validate(spec).user_constraints
    assert user.cadence_type == "half"
    assert user.end_on_do_hard is False


def test_illegal_lists_are_deduplicated():
    spec = models.ExerciseSpec(illegal_degrees=[4, 4, 2], illegal_intervals_semis=[6, 1, 6])
    normalized = validation.normalize_and_validate(spec)
    assert normalized.illegal_degrees == [2, 4]
    assert normalized.illegal_intervals_semis == [1, 6]


@pytest.mark.parametrize(
    "spec, code",
    [
        (models.ExerciseSpec(key="H"), "input_invalid_key"),
        (models.ExerciseSpec(mode="dorian"), "input_invalid_mode"),
        (models.ExerciseSpec(phrase_length_measures=0), "input_invalid_phrase_length"),
        (models.ExerciseSpec(phrases=[models.PhraseSpec(cadence="deceptive")]), "input_invalid_cadence"),
        (models.ExerciseSpec(rhythm_weights=models.RhythmWeights(10, 10, 10, 10)), "input_invalid_rhythm_weight_total"),
        (models.ExerciseSpec(range=models.RegisterRange(1, 1, 4, 4)), "input_invalid_register"),
        (models.ExerciseSpec(range=models.RegisterRange(9, 1, 4, 5)), "input_invalid_register"),
    ],
)
def test_invalid_requests(spec, code):
    with pytest.raises(InputValidationError) as excinfo:
        validation.normalize_and_validate(spec)
    assert str(excinfo.value).startswith(code)


def test_allowed_note_value_rules():
    four = models.UserConstraints(allowed_note_values=["EE", "Q", "H", "W"])
    with pytest.raises(InputValidationError, match="max_three"):
        validation.normalize_and_validate(models.ExerciseSpec(user_constraints=four))
    unknown = models.UserConstraints(allowed_note_values=["S"])
    with pytest.raises(InputValidationError, match="unknown"):
        validation.normalize_and_validate(models.ExerciseSpec(user_constraints=unknown))


def test_eighth_quota_needs_eighths():
    no_eighths = models.UserConstraints(allowed_note_values=["Q", "H"])
    relaxed = validation.normalize_and_validate(models.ExerciseSpec(user_constraints=no_eighths))
    assert relaxed.user_constraints.min_eighth_pairs_per_phrase == 0

    explicit = models.UserConstraints(allowed_note_values=["Q", "H"], min_eighth_pairs_per_phrase=2)
    with pytest.raises(InputValidationError, match="min_eighth_pairs_without_eighths"):
        validation.normalize_and_validate(models.ExerciseSpec(user_constraints=explicit))
