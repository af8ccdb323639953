"""Unit tests for the phrase contour planner."""

import importlib
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

planner = importlib.import_module("sightsinging_generator.phrase_planner")
RegisterRange = importlib.import_module("sightsinging_generator.models").RegisterRange
generate_phrase_plan = planner.generate_phrase_plan


def test_invalid_measures_raise():
    with pytest.raises(ValueError):
        generate_phrase_plan(0)


@pytest.mark.parametrize("seed", range(8))
def test_plan_opening_peak_and_cadence_targets(seed):
    plan = generate_phrase_plan(4, "4/4", seed=seed)
    first = plan.targets[0]
    assert (first.measure, first.beat, first.priority) == (1, 1, "high")
    assert first.degree == plan.start_degree
    assert plan.start_degree in (1, 3)
    assert plan.peak_measure in (2, 3)
    assert plan.cadence_degrees[-1] == 1
    final = plan.target_at(4, 4)
    assert final is not None and final.degree == 1


@pytest.mark.parametrize("meter,last_beat", [("2/4", 2), ("3/4", 3)])
def test_half_cadence_targets_dominant_on_last_beat(meter, last_beat):
    plan = generate_phrase_plan(4, meter, seed=3, cadence="half")
    assert plan.cadence_degrees[-1] == 5
    assert plan.target_at(4, last_beat).degree == 5


def test_locked_start_degree_is_used():
    plan = generate_phrase_plan(4, seed=11, start_degree=5, start_degree_locked=True)
    assert plan.start_degree == 5
    assert plan.targets[0].degree == 5


def test_difficulty_one_is_always_arch():
    for seed in range(10):
        assert generate_phrase_plan(4, seed=seed, difficulty=1).direction == "arch"


def test_narrow_register_clamps_target_degrees():
    register = RegisterRange(low_degree=1, high_degree=5, low_octave=4, high_octave=4)
    for seed in range(10):
        plan = generate_phrase_plan(4, seed=seed, register=register)
        assert all(1 <= t.degree <= 5 for t in plan.targets)


def test_plan_is_deterministic():
    a = generate_phrase_plan(8, "3/4", seed=99, difficulty=4)
    b = generate_phrase_plan(8, "3/4", seed=99, difficulty=4)
    assert a == b
    assert a.peak_measure in (4, 5)
