"""Tests for illegal-rule candidate filtering and the feasibility check."""

import importlib
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

selection = importlib.import_module("sightsinging_generator.pitch_selection")
models = importlib.import_module("sightsinging_generator.models")
MelodyNoSolutionError = importlib.import_module("sightsinging_generator.errors").MelodyNoSolutionError

C_MAJOR = (0, 2, 4, 5, 7, 9, 11)
IllegalRules = selection.IllegalRules


def test_illegal_degree_and_chromatic_pruned():
    out = selection.filter_candidates(60, [61, 62, 65, 67], C_MAJOR, IllegalRules(degrees=[4]))
    assert out.candidates == [62, 67]
    assert out.tier == 0
    assert [s.step for s in out.steps][:3] == ["start", "pruneKey", "pruneIllegalTier0"]


def test_illegal_interval_pruned():
    out = selection.filter_candidates(60, [62, 64, 67], C_MAJOR, IllegalRules(intervals=[2]))
    assert out.candidates == [64, 67]


def test_transitions_relax_first():
    rules = IllegalRules(transitions=[models.IllegalTransition(2, 1)])
    # Searching treats the rule as blocking both directions.
    out = selection.filter_candidates(60, [62], C_MAJOR, rules)
    assert out.candidates == [62]
    assert out.tier == 1
    assert out.relaxed_rules == ["illegalTransitions"]


def test_intervals_relax_only_to_keep_a_step():
    out = selection.filter_candidates(60, [62], C_MAJOR, IllegalRules(intervals=[2]))
    assert (out.candidates, out.tier) == ([62], 3)
    assert "illegalIntervalsSemis" in out.relaxed_rules

    out = selection.filter_candidates(60, [67], C_MAJOR, IllegalRules(intervals=[7]))
    assert out.exhausted
    assert out.steps[-1].step == "noSolution"


def test_first_note_ignores_motion_rules():
    out = selection.filter_candidates(None, [60, 62], C_MAJOR, IllegalRules(intervals=[2], degrees=[2]))
    assert out.candidates == [60]


def test_chord_preference_and_tier_two():
    out = selection.filter_candidates(60, [62, 64, 67], C_MAJOR, IllegalRules(), chord_pcs=(0, 4, 7))
    assert out.candidates == [64, 67]
    out = selection.filter_candidates(60, [62, 64], C_MAJOR, IllegalRules(), chord_pcs=(1,))
    assert out.candidates == [62, 64]
    assert out.tier == 2
    assert out.relaxed_rules == ["harmonyPreference"]


def test_feasibility_check_accepts_unrestricted_register():
    result = selection.check_feasibility(IllegalRules(), 60, 72, C_MAJOR)
    assert result.tier == 0


def test_feasibility_check_raises_when_only_octaves_remain():
    rules = IllegalRules(degrees=[2, 3, 4, 5, 6, 7])
    with pytest.raises(MelodyNoSolutionError) as info:
        selection.check_feasibility(rules, 60, 72, C_MAJOR)
    assert info.value.illegal_degrees == [2, 3, 4, 5, 6, 7]


def test_rules_from_spec():
    spec = models.ExerciseSpec(illegal_degrees=[4], illegal_intervals_semis=[6])
    rules = IllegalRules.from_spec(spec)
    assert not rules.empty
    assert IllegalRules().empty
    assert rules.to_error().illegal_intervals_semis == [6]
