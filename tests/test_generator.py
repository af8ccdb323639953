"""End-to-end tests for exercise generation."""

import importlib
import json
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

generator = importlib.import_module("sightsinging_generator.generator")
models = importlib.import_module("sightsinging_generator.models")
errors = importlib.import_module("sightsinging_generator.errors")
repair = importlib.import_module("sightsinging_generator.repair")
note_utils = importlib.import_module("sightsinging_generator.note_utils")

C_MAJOR = (0, 2, 4, 5, 7, 9, 11)


def _measure_sums(events):
    sums = {}
    for event in events:
        sums[event.measure] = sums.get(event.measure, 0) + event.duration_beats
    return sums


@pytest.mark.parametrize("seed", [1, 2, 3, 4, 5])
@pytest.mark.parametrize("time_sig", ["3/4", "4/4"])
def test_measures_are_filled_with_legal_values(seed, time_sig):
    spec = models.ExerciseSpec(time_sig=time_sig)
    result = generator.generate_exercise(spec, seed)
    assert result.ok
    bpm = spec.beats_per_measure
    assert result.events
    for total in _measure_sums(result.events).values():
        assert total == pytest.approx(bpm)
    assert all(repair.is_legal_duration(e.duration_beats, bpm) for e in result.events)


@pytest.mark.parametrize("seed", [1, 2, 3, 4, 5])
def test_register_opening_and_final(seed):
    result = generator.generate_exercise(models.ExerciseSpec(), seed)
    midis = [e.midi for e in result.events]
    assert all(60 <= m <= 72 for m in midis)
    assert all(abs(b - a) <= 12 for a, b in zip(midis, midis[1:]))
    assert note_utils.midi_to_degree(midis[0], C_MAJOR) in (1, 3)
    assert note_utils.midi_to_degree(midis[-1], C_MAJOR) == 1


def test_same_seed_same_exercise():
    spec = models.ExerciseSpec(key="D", time_sig="3/4")
    first = generator.generate_exercise(spec, 42)
    second = generator.generate_exercise(spec, 42)
    assert [e.to_dict() for e in first.events] == [e.to_dict() for e in second.events]
    assert first.score == second.score


def test_best_variant_is_selected():
    result = generator.generate_exercise(models.ExerciseSpec(), 9)
    assert len(result.candidates) == generator.VARIANT_COUNT
    assert result.score == max(c.score for c in result.candidates)
    assert [c.id for c in result.candidates] == ["variant-1", "variant-2", "variant-3"]


def test_harmony_spine_covers_every_phrase():
    spec = models.ExerciseSpec(phrases=[models.PhraseSpec(cadence="half"), models.PhraseSpec(cadence="authentic")])
    result = generator.generate_exercise(spec, 3)
    assert result.ok
    assert len(result.harmony) == 2 * 4 * 2
    assert max(e.measure for e in result.events) == 8


def test_infeasible_rules_return_no_solution():
    spec = models.ExerciseSpec(illegal_degrees=[2, 3, 4, 5, 6, 7])
    result = generator.generate_exercise(spec, 1)
    assert not result.ok
    assert result.status == "no_solution"
    assert result.no_solution.reason_code == "constraints_too_strict"
    assert result.no_solution.illegal_degrees == [2, 3, 4, 5, 6, 7]
    payload = generator.events_to_json(result)
    assert payload["error"]["reasonCode"] == "constraints_too_strict"
    assert payload["error"]["suggestions"]


def test_candidates_raise_for_infeasible_rules():
    spec = models.ExerciseSpec(illegal_degrees=[2, 3, 4, 5, 6, 7])
    with pytest.raises(errors.MelodyNoSolutionError):
        generator.create_melody_candidates(spec, [], 1)


def test_invalid_request_raises():
    with pytest.raises(errors.InputValidationError):
        generator.generate_exercise(models.ExerciseSpec(time_sig="5/4"), 1)


def test_json_payload_is_serialisable():
    result = generator.generate_exercise(models.ExerciseSpec(), 5)
    payload = generator.events_to_json(result)
    assert payload["status"] == "ok"
    assert payload["events"][0]["measure"] == 1
    assert {"pitch", "octave", "duration"} <= set(payload["events"][0])
    json.dumps(payload)


def test_pitch_edits_follow_attack_identity(caplog):
    events = [
        models.MelodyEvent(60, 1, 1, 2, chord_id="m1-b1-d1"),
        models.MelodyEvent(64, 1, 3, 2, chord_id="m1-b3-d1"),
    ]
    key = events[1].identity(1)
    with caplog.at_level("WARNING"):
        edited = generator.apply_pitch_edits(events, {key: 65, (9, 1.0, "x", 7): 60})
    assert "does not match any attack" in caplog.text
    assert edited[1].midi == 65
    assert edited[1].original_midi == 64
    assert edited[1].is_edited
    assert events[1].midi == 64
    with pytest.raises(ValueError):
        generator.apply_pitch_edits(events, {key: 200})


def _attack_intervals(events):
    midis = [e.midi for e in events]
    return [abs(b - a) for a, b in zip(midis, midis[1:])]


@pytest.mark.parametrize("seed", [1, 2, 3])
@pytest.mark.parametrize("time_sig", ["2/4", "3/4", "4/4"])
@pytest.mark.parametrize("cap", [5, 7, 12])
@pytest.mark.parametrize("lock", [True, False])
def test_leap_cap_and_measure_rules_hold_for_every_setting(seed, time_sig, cap, lock):
    spec = models.ExerciseSpec(time_sig=time_sig, user_constraints=models.UserConstraints(max_leap_semitones=cap))
    result = generator.generate_exercise(spec, seed, lock_final_rhythm=lock)
    assert result.ok
    bpm = spec.beats_per_measure
    for total in _measure_sums(result.events).values():
        assert total == pytest.approx(bpm)
    assert all(repair.is_legal_duration(e.duration_beats, bpm) for e in result.events)
    assert max(_attack_intervals(result.events)) <= cap


def test_locked_default_melody_respects_seven_semitone_cap():
    spec = models.ExerciseSpec(user_constraints=models.UserConstraints(max_leap_semitones=7))
    result = generator.generate_exercise(spec, 3)
    assert result.ok
    assert all(interval <= 7 for interval in _attack_intervals(result.events))


@pytest.mark.parametrize("seed", [1, 2, 3, 4])
def test_three_four_never_holds_a_dotted_half(seed):
    spec = models.ExerciseSpec(
        time_sig="3/4", user_constraints=models.UserConstraints(allowed_note_values=["EE", "Q"])
    )
    result = generator.generate_exercise(spec, seed)
    assert result.ok
    assert all(e.duration_beats != pytest.approx(3) for e in result.events)
    assert all(repair.is_legal_duration(e.duration_beats, 3) for e in result.events)


@pytest.mark.parametrize("seed", [1, 2, 3, 4])
def test_unlocked_three_four_keeps_quarter_and_half_values(seed):
    user = models.UserConstraints(allowed_note_values=["Q", "H"], min_eighth_pairs_per_phrase=0)
    spec = models.ExerciseSpec(time_sig="3/4", user_constraints=user)
    result = generator.generate_exercise(spec, seed, lock_final_rhythm=False)
    assert result.ok
    assert {e.duration_beats for e in result.events} <= {1, 2}


@pytest.mark.parametrize("seed", [1, 2, 3])
def test_unlocked_quarter_half_request_has_no_eighths(seed):
    user = models.UserConstraints(
        allowed_note_values=["Q", "H"],
        min_eighth_pairs_per_phrase=0,
        rhythm_dist={"EE": 60, "Q": 20, "H": 20, "W": 0},
    )
    result = generator.generate_exercise(models.ExerciseSpec(user_constraints=user), seed, lock_final_rhythm=False)
    assert result.ok
    assert all(e.duration_beats != 0.5 for e in result.events)


@pytest.mark.parametrize("seed", [1, 2])
def test_unlocked_small_interval_ban_does_not_raise(seed):
    spec = models.ExerciseSpec(time_sig="3/4", illegal_intervals_semis=[1, 2])
    result = generator.generate_exercise(spec, seed, lock_final_rhythm=False)
    assert result.status in ("ok", "no_solution")
