"""Tests for the functional harmony walk and the pitch-class graph."""

import importlib
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

harmony = importlib.import_module("sightsinging_generator.harmony_generator")
tonnetz = importlib.import_module("sightsinging_generator.tonnetz")
models = importlib.import_module("sightsinging_generator.models")
SeededRng = importlib.import_module("sightsinging_generator.rng").SeededRng


def _spine(spec, seed=1):
    return harmony.build_harmony_spine(spec, tonnetz.build_tonnetz(spec.key), SeededRng(seed))


def test_tonnetz_edges_and_distance():
    graph = tonnetz.build_tonnetz("C")
    assert graph.one_step[0] == frozenset({7, 4, 3})
    assert graph.distance(0, 0) == 0
    assert graph.distance(0, 7) == 1
    assert graph.distance(0, 2) == 2


@pytest.mark.parametrize("seed", [1, 2, 3, 17, 250])
def test_spine_shape_and_authentic_cadence(seed):
    spec = models.ExerciseSpec(key="D", phrases=[models.PhraseSpec("A"), models.PhraseSpec("B")])
    spine = _spine(spec, seed)
    assert len(spine) == 16
    assert spine[0].degree == 1
    assert [e.measure for e in spine[:4]] == [1, 1, 2, 2]
    assert [e.beat for e in spine[:2]] == [1, 3]
    for end in (8, 16):
        assert [e.degree for e in spine[end - 2:end]] == [5, 1]


@pytest.mark.parametrize("seed", [4, 5, 6])
def test_half_and_plagal_cadences(seed):
    spec = models.ExerciseSpec(
        phrases=[models.PhraseSpec("A", cadence="half"), models.PhraseSpec("B", cadence="plagal")]
    )
    spine = _spine(spec, seed)
    assert spine[7].degree == 5
    assert [e.degree for e in spine[-2:]] == [4, 1]


def test_three_four_slots_split_the_bar():
    spine = _spine(models.ExerciseSpec(time_sig="3/4"))
    assert [e.beat for e in spine[:2]] == [1, 2.5]


def test_spine_is_deterministic():
    spec = models.ExerciseSpec(key="Bb", mode="minor")
    assert _spine(spec, 9) == _spine(spec, 9)


def test_chord_pcs_match_degree():
    spec = models.ExerciseSpec(key="G")
    for event in _spine(spec, 3):
        assert event.root_pc == event.chord_pcs[0]
        assert event.root_pc == (7 + [0, 2, 4, 5, 7, 9, 11][event.degree - 1]) % 12


def test_role_helpers():
    assert harmony.degree_to_role(6) == "T"
    assert harmony.degree_to_role(3) == "X"
    assert not harmony.allowed_role_transition("D", "PD")
    assert harmony.cadence_role_requirement("authentic", 6, 8) == "D"
    assert harmony.weighted_pick([(1, 0), (2, -1)], SeededRng(1)) is None
