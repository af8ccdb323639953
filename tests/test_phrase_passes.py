"""Tests for the per-phrase melodic passes."""

import importlib
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

passes = importlib.import_module("sightsinging_generator.phrase_passes")
models = importlib.import_module("sightsinging_generator.models")
IllegalRules = importlib.import_module("sightsinging_generator.pitch_selection").IllegalRules

C_MAJOR = (0, 2, 4, 5, 7, 9, 11)


def ev(midi, measure, onset, duration, chord_id="m1-b1-d1", tags=None):
    return models.MelodyEvent(
        midi=midi,
        measure=measure,
        onset_beat=onset,
        duration_beats=duration,
        chord_id=chord_id,
        key_id="C-major",
        tags=tags if tags is not None else models.FunctionTag.NONE,
    )


def test_illegal_degree_is_retuned_to_nearest_legal_tone():
    events = [ev(60, 1, 1, 1), ev(65, 1, 2, 1), ev(64, 1, 3, 2)]
    out = passes.apply_illegal_rules_adjacency_pass(events, IllegalRules(degrees=[4]), C_MAJOR, 60, 72, 12)
    assert [e.midi for e in out] == [60, 64, 64]
    assert "illegalRuleRepair" in out[1].reason
    assert events[1].midi == 65


def test_empty_rules_only_copy():
    events = [ev(60, 1, 1, 4)]
    out = passes.apply_illegal_rules_adjacency_pass(events, IllegalRules(), C_MAJOR, 60, 72, 12)
    assert out[0].midi == 60 and out[0] is not events[0]


def test_fa_resolves_to_mi_over_dominant():
    events = [ev(65, 1, 1, 2, chord_id="m1-b1-d5"), ev(67, 1, 3, 2, chord_id="m1-b3-d1")]
    out = passes.apply_dominant_tendency_pass(events, IllegalRules(), C_MAJOR, 60, 72, 12)
    assert out[1].midi == 64
    assert "vl_fa_to_mi" in out[1].reason


def test_ti_resolves_up_to_do():
    events = [ev(71, 1, 1, 2, chord_id="m1-b1-d5"), ev(67, 1, 3, 2, chord_id="m1-b3-d1")]
    out = passes.apply_dominant_tendency_pass(events, IllegalRules(), C_MAJOR, 60, 72, 12)
    assert out[1].midi == 72


def test_tendency_yields_to_user_rules():
    events = [ev(65, 1, 1, 2, chord_id="m1-b1-d5"), ev(67, 1, 3, 2, chord_id="m1-b3-d1")]
    out = passes.apply_dominant_tendency_pass(events, IllegalRules(degrees=[3]), C_MAJOR, 60, 72, 12)
    assert out[1].midi == 67


def test_leap_budget_repairs_second_leap_and_recovers_by_step():
    events = [ev(60, 1, 1, 4), ev(67, 2, 1, 4), ev(60, 3, 1, 4), ev(64, 4, 1, 4)]
    log = []
    out = passes.enforce_leap_budget_per_phrase(events, 4, 60, 72, 12, 1, log)
    assert [e.midi for e in out] == [60, 67, 65, 64]
    codes = [entry.code for entry in log]
    assert "pass5_leapBudget_repair" in codes
    assert "pass5_leapBudget_recovery" in codes


def test_wide_eighth_pair_is_clamped():
    events = [ev(60, 1, 1, 1, ""), ev(60, 1, 2, 0.5, ""), ev(67, 1, 2.5, 0.5, ""), ev(64, 1, 3, 2, "")]
    out = passes.enforce_ee_pair_melodic_rules(events, 60, 72)
    assert [e.midi for e in out] == [60, 60, 62, 64]
    assert "eePairIntervalRepair" in out[2].reason


def test_third_in_pair_resolves_by_step():
    events = [ev(60, 1, 1, 1, ""), ev(60, 1, 2, 0.5, ""), ev(64, 1, 2.5, 0.5, ""), ev(69, 1, 3, 2, "")]
    out = passes.enforce_ee_pair_melodic_rules(events, 60, 72)
    assert [e.midi for e in out] == [60, 60, 64, 65]
