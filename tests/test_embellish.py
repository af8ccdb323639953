"""Tests for realizing a rhythm grid between skeleton anchors."""

import importlib
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

embellish = importlib.import_module("sightsinging_generator.embellish")
models = importlib.import_module("sightsinging_generator.models")
planner = importlib.import_module("sightsinging_generator.phrase_planner")
grid_module = importlib.import_module("sightsinging_generator.phrase_grid")
skeleton_module = importlib.import_module("sightsinging_generator.skeleton")
harmony_generator = importlib.import_module("sightsinging_generator.harmony_generator")
tonnetz = importlib.import_module("sightsinging_generator.tonnetz")
SeededRng = importlib.import_module("sightsinging_generator.rng").SeededRng

C_MAJOR = (0, 2, 4, 5, 7, 9, 11)


def _realize(seed, time_sig="4/4"):
    spec = models.ExerciseSpec(time_sig=time_sig)
    bpm = spec.beats_per_measure
    spine = harmony_generator.build_harmony_spine(spec, tonnetz.build_tonnetz("C"), SeededRng(seed))
    plan = planner.generate_phrase_plan(4, time_sig, seed=seed)
    grid = grid_module.generate_phrase_grid(plan, models.PhraseSpec(), 1, 4, bpm, models.RhythmWeights(), seed=seed)
    skeleton = skeleton_module.build_skeleton(
        spine, plan, models.PhraseSpec(), 0, 4, bpm, "C", "major", 60, 72, 12, seed=seed, grid=grid
    )
    events, trace = embellish.realize_phrase_grid_pitches(
        spec, models.PhraseSpec(), 0, 4, grid, spine, skeleton, 60, 72, 12, seed=seed
    )
    return grid, events, trace


def test_passing_tone_between_third():
    chord = models.HarmonyEvent(1, 1, 1, 0, (0, 4, 7), "major")
    assert embellish.build_weak_beat_non_harmonic(60, 64, chord, C_MAJOR, 48, 84, 3) == (62, "embellish_passingTone")
    assert embellish.build_weak_beat_non_harmonic(60, None, chord, C_MAJOR, 48, 84, 3) is None


@pytest.mark.parametrize("seed", [1, 2, 3, 4])
@pytest.mark.parametrize("time_sig", ["3/4", "4/4"])
def test_every_grid_onset_is_pitched(seed, time_sig):
    grid, events, trace = _realize(seed, time_sig)
    expected = [(m.measure, float(o)) for m in grid.measures for o in m.onsets]
    assert [(e.measure, float(e.onset_beat)) for e in events] == expected
    assert all(e.is_attack for e in events)
    assert all(60 <= e.midi <= 72 for e in events)
    assert trace


@pytest.mark.parametrize("seed", [1, 2, 3])
def test_measure_durations_fill_the_bar(seed):
    grid, events, _ = _realize(seed)
    for measure in grid.measures:
        total = sum(e.duration_beats for e in events if e.measure == measure.measure)
        assert total == pytest.approx(4)


def test_roles_match_chord_membership_for_span_notes():
    _, events, _ = _realize(5)
    for event in events:
        if event.reason.startswith("pass4_edge_") and event.reason != "pass4_edge_fallback":
            assert event.non_harmonic_tone == (event.role == "NonHarmonicTone")


@pytest.mark.parametrize("seed", [0, 3, 8])
def test_suspension_needs_harmony_change_under_held_note(seed):
    c_chord = models.HarmonyEvent(1, 3, 1, 0, (0, 4, 7), "major")
    f_chord = models.HarmonyEvent(1, 1, 4, 5, (5, 9, 0), "major")
    assert embellish.build_weak_beat_non_harmonic(65, 64, c_chord, C_MAJOR, 48, 84, seed) is None
    assert (
        embellish.build_weak_beat_non_harmonic(65, 64, c_chord, C_MAJOR, 48, 84, seed, prev_harmony=c_chord) is None
    )
    assert embellish.build_weak_beat_non_harmonic(65, 64, c_chord, C_MAJOR, 48, 84, seed, prev_harmony=f_chord) == (
        65,
        "embellish_suspension",
    )
