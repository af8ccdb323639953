"""Tests for the structural skeleton builder."""

import importlib
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

skeleton = importlib.import_module("sightsinging_generator.skeleton")
models = importlib.import_module("sightsinging_generator.models")
planner = importlib.import_module("sightsinging_generator.phrase_planner")
grid_module = importlib.import_module("sightsinging_generator.phrase_grid")
harmony_generator = importlib.import_module("sightsinging_generator.harmony_generator")
tonnetz = importlib.import_module("sightsinging_generator.tonnetz")
SeededRng = importlib.import_module("sightsinging_generator.rng").SeededRng
IllegalRules = importlib.import_module("sightsinging_generator.pitch_selection").IllegalRules

HarmonyEvent = models.HarmonyEvent


def _build(seed, rules=None):
    spec = models.ExerciseSpec()
    spine = harmony_generator.build_harmony_spine(spec, tonnetz.build_tonnetz("C"), SeededRng(seed))
    plan = planner.generate_phrase_plan(4, "4/4", seed=seed)
    grid = grid_module.generate_phrase_grid(plan, models.PhraseSpec(), 1, 4, 4, models.RhythmWeights(), seed=seed)
    return skeleton.build_skeleton(
        spine, plan, models.PhraseSpec(), 0, 4, 4, "C", "major", 60, 72, 12, seed=seed, rules=rules, grid=grid
    )


def test_cadence_tails():
    assert skeleton.resolve_cadence_tail("authentic") == (5, 1)
    assert skeleton.resolve_cadence_tail("plagal") == (4, 1)
    assert skeleton.resolve_cadence_tail("half") == (2, 5)


def test_active_harmony_and_chord_id():
    spine = [
        HarmonyEvent(1, 1, 1, 0, (0, 4, 7), "major"),
        HarmonyEvent(1, 3, 5, 7, (7, 11, 2), "major"),
    ]
    assert skeleton.active_harmony_for_beat(spine, 1, 2).degree == 1
    assert skeleton.active_harmony_for_beat(spine, 1, 3.5).degree == 5
    assert skeleton.active_harmony_for_beat(spine, 9, 1) is spine[-1]
    assert skeleton.chord_id_for(spine[1]) == "m1-b3-d5"


def test_cadence_chord_forced_on_last_beats():
    spine = [HarmonyEvent(4, 1, 6, 9, (9, 0, 4), "minor"), HarmonyEvent(4, 3, 6, 9, (9, 0, 4), "minor")]
    event = skeleton.resolve_harmony_event(spine, 4, 4, 4, 4, models.PhraseSpec(), 0, "major")
    assert event.degree == 1
    event = skeleton.resolve_harmony_event(spine, 4, 3, 4, 4, models.PhraseSpec(cadence="half"), 0, "major")
    assert event.degree == 2


@pytest.mark.parametrize("seed", [1, 2, 3, 4, 5])
def test_skeleton_notes_follow_slots(seed):
    result = _build(seed)
    assert len(result.notes) == len(result.slots) == len(result.trace)
    assert all(60 <= note.midi <= 72 for note in result.notes)
    for note, slot in zip(result.notes, result.slots):
        assert (note.measure, note.onset_beat) == (slot.measure, slot.beat)
        assert note.has_tag(models.FunctionTag.ANCHOR)
        assert note.has_tag(models.FunctionTag.STRUCTURAL)
    assert result.end_midi == result.notes[-1].midi
    assert result.slots[-1].cadence_slot == "final"
    assert 0 <= result.climax_index < len(result.slots)


def test_skeleton_is_deterministic():
    a = _build(7)
    b = _build(7)
    assert [n.midi for n in a.notes] == [n.midi for n in b.notes]


def test_skeleton_reports_relaxation_tier():
    rules = IllegalRules(degrees=[4, 6, 7])
    result = _build(2, rules)
    assert result.relaxation_tier >= 0
    assert all(note.midi % 12 not in (5, 9, 11) for note in result.notes)
