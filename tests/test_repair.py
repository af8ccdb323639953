"""Tests for the measure, rhythm and pitch repair blocks."""

import importlib
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

repair = importlib.import_module("sightsinging_generator.repair")
models = importlib.import_module("sightsinging_generator.models")
errors = importlib.import_module("sightsinging_generator.errors")

FunctionTag = models.FunctionTag


def ev(midi, measure, onset, duration, tags=None, chord_id=""):
    return models.MelodyEvent(
        midi=midi,
        measure=measure,
        onset_beat=onset,
        duration_beats=duration,
        chord_id=chord_id,
        key_id="C-major",
        tags=tags if tags is not None else FunctionTag.NONE,
    )


def codes(log):
    return [entry.code for entry in log]


def test_legal_durations_are_the_four_note_values():
    assert repair.legal_durations(3) == (0.5, 1.0, 2.0, 4.0)
    assert not repair.is_legal_duration(3, 3)
    assert repair.is_legal_duration(4, 4)
    assert not repair.is_legal_duration(3, 4)
    assert not repair.is_legal_duration(1.5, 4)


@pytest.mark.parametrize("bpm, expected", [(2, [1]), (3, [1, 2]), (4, [1, 2, 3])])
def test_allowed_eighth_beats(bpm, expected):
    assert repair.allowed_eighth_beats(bpm) == expected


def test_ensure_measure_validity_snaps_off_grid_onset():
    events = [ev(60, 1, 1, 1), ev(62, 1, 2.5, 1)]
    log = []
    repair.ensure_measure_validity(events, 4, log)
    assert [(e.onset_beat, e.duration_beats) for e in events] == [(1, 2), (3, 2)]
    assert "must0_quantize_onset" in codes(log)


def test_pair_count_and_value_histogram():
    events = [ev(60, 1, 1, 1), ev(62, 1, 2, 0.5), ev(64, 1, 2.5, 0.5), ev(65, 1, 3, 2)]
    assert repair.count_ee_pairs(events, 4) == 1
    assert repair.note_value_counts(events) == {"W": 0, "H": 1, "Q": 1, "EE": 2}


def test_unpaired_half_onset_is_demoted():
    events = [ev(60, 1, 1, 2.5), ev(62, 1, 3.5, 0.5)]
    log = []
    repair.enforce_no_lone_eighths(events, 4, [1, 2, 3], 0, log)
    assert "must1_remove_unpaired_half_onset" in codes(log)
    assert not events[1].is_attack and events[1].tie_stop
    assert events[0].duration_beats == 4


def test_eighth_quota_respaces_a_four_note_measure():
    events = [ev(60, 1, 1, 1), ev(62, 1, 2, 1), ev(64, 1, 3, 1), ev(65, 1, 4, 1)]
    log = []
    repair.enforce_no_lone_eighths(events, 4, [1, 2, 3], 1, log)
    assert [e.onset_beat for e in events] == [1, 2, 2.5, 3]
    assert [e.duration_beats for e in events] == [1, 0.5, 0.5, 2]
    assert "must1_force_ee_pair" in codes(log)


def test_hard_start_do_moves_first_note():
    events = [ev(62, 1, 1, 4)]
    log = []
    repair.enforce_hard_start_do(events, 60, 72, False, log)
    assert events[0].midi == 62 and log == []
    repair.enforce_hard_start_do(events, 60, 72, True, log)
    assert events[0].midi == 60
    assert codes(log) == ["must2_hard_start_do_pc"]


def test_default_opening_prefers_nearest_do_or_mi():
    events = [ev(65, 1, 1, 4)]
    log = []
    repair.enforce_default_opening_do_or_mi(events, 60, 72, False, log)
    assert events[0].midi == 64
    assert codes(log) == ["pass10_default_start_do_or_mi"]

    already_mi = [ev(64, 1, 1, 4)]
    repair.enforce_default_opening_do_or_mi(already_mi, 60, 72, False, log)
    assert already_mi[0].midi == 64


def test_tessitura_shifts_by_octave():
    events = [ev(50, 1, 1, 4)]
    log = []
    repair.enforce_tessitura(events, 60, 72, log)
    assert events[0].midi == 62
    assert codes(log) == ["must4_tessitura_octave_shift"]


def test_max_leap_prefers_octave_repair():
    events = [ev(60, 1, 1, 4), ev(74, 2, 1, 4)]
    log = []
    repair.enforce_max_leap(events, 60, 76, log, 7)
    assert events[1].midi == 62
    assert codes(log) == ["must3_interval_octave_repair"]


def test_cadence_rule_lands_on_do_by_step():
    events = [ev(67, 1, 1, 4), ev(64, 2, 1, 4)]
    log = []
    repair.apply_cadence_should_rule(events, "authentic", 60, 72, log, end_on_do=True)
    assert [e.midi for e in events] == [62, 60]
    assert codes(log) == ["should1_final_to_do_or_mi", "should1_penult_step_to_final"]


def test_half_cadence_is_left_alone():
    events = [ev(67, 1, 1, 4), ev(64, 2, 1, 4)]
    log = []
    repair.apply_cadence_should_rule(events, "half", 60, 72, log)
    assert [e.midi for e in events] == [67, 64]
    assert log == []


def test_tagged_climax_is_raised_above_peak():
    events = [ev(62, 1, 1, 4, tags=FunctionTag.CLIMAX), ev(71, 2, 1, 4), ev(69, 3, 1, 4)]
    log = []
    repair.apply_climax_should_rule(events, 60, 76, log, 12)
    assert events[0].midi == 74
    assert "should2_raise_tagged_climax" in codes(log)


def test_repeated_pitch_is_tied():
    events = [ev(60, 1, 1, 2), ev(60, 1, 3, 2)]
    log = []
    repair.tie_merge_repeated_attacks(events, 4, [1, 2, 3], log)
    assert events[0].tie_start and not events[1].is_attack
    assert events[0].duration_beats == 4
    assert "should3_tie_merge_repeat" in codes(log)


def test_repeated_eighth_pair_is_not_tied():
    events = [ev(60, 1, 1, 1), ev(62, 1, 2, 0.5), ev(62, 1, 2.5, 0.5), ev(64, 1, 3, 2)]
    log = []
    repair.tie_merge_repeated_attacks(events, 4, [1, 2, 3], log)
    assert all(e.is_attack for e in events)
    assert log == []


def test_assert_repaired_reports_the_broken_rule():
    ctx = repair.ConstraintContext()
    with pytest.raises(errors.Pass4AssertionError) as excinfo:
        repair.assert_repaired([ev(60, 1, 1, 2)], ctx)
    assert excinfo.value.code == "pass4_assert_measure_sum"

    ctx = repair.ConstraintContext(max_leap=7)
    with pytest.raises(errors.Pass4AssertionError) as excinfo:
        repair.assert_repaired([ev(60, 1, 1, 4), ev(72, 2, 1, 4)], ctx)
    assert excinfo.value.code == "pass4_assert_interval"

    ctx = repair.ConstraintContext(hard_start_do=True)
    with pytest.raises(errors.Pass4AssertionError) as excinfo:
        repair.assert_repaired([ev(62, 1, 1, 4)], ctx)
    assert excinfo.value.code == "pass4_assert_hard_start_do"


def test_repair_pass_leaves_clean_melody_untouched():
    events = [ev(60, 1, 1, 2), ev(64, 1, 3, 2), ev(62, 2, 1, 2), ev(60, 2, 3, 2)]
    final, log = repair.repair_pass(events, repair.ConstraintContext())
    assert [(e.midi, e.measure, e.onset_beat) for e in final] == [(60, 1, 1), (64, 1, 3), (62, 2, 1), (60, 2, 3)]
    assert log == []
    assert final[0] is not events[0]


def test_repair_pass_closes_leaps_and_copies_input():
    events = [ev(60, 1, 1, 4), ev(72, 2, 1, 4), ev(64, 3, 1, 4), ev(60, 4, 1, 4)]
    final, log = repair.repair_pass(events, repair.ConstraintContext(max_leap=7))
    midis = [e.midi for e in final]
    assert all(abs(b - a) <= 7 for a, b in zip(midis, midis[1:]))
    assert "must3_interval_octave_repair" in codes(log)
    assert [e.midi for e in events] == [60, 72, 64, 60]


def test_lone_three_four_bar_is_split_into_tied_quarter_and_half():
    events = [ev(64, 1, 1, 3)]
    log = []
    repair.ensure_measure_validity(events, 3, log)
    attacks = repair.attack_events(events)
    assert [(e.midi, e.onset_beat, e.duration_beats) for e in attacks] == [(64, 1, 1), (64, 2, 2)]
    assert attacks[0].tie_start and attacks[1].tie_stop
    assert "must0_split_whole_bar" in codes(log)


def test_tie_merge_keeps_two_attacks_in_three_four():
    events = [ev(60, 1, 1, 1), ev(60, 1, 2, 2)]
    log = []
    repair.tie_merge_repeated_attacks(events, 3, [1, 2], log)
    assert all(e.is_attack for e in events)
    assert log == []


def test_max_leap_retunes_locked_note_to_scale_tone():
    events = [ev(60, 1, 1, 4), ev(71, 2, 1, 4, tags=FunctionTag.STRUCTURAL), ev(64, 3, 1, 4)]
    log = []
    repair.enforce_max_leap(events, 60, 72, log, 5, allow_demotion=False)
    assert events[1].midi == 65
    assert codes(log) == ["must3_interval_locked_scale_swap"]


def test_max_leap_never_retunes_the_closing_note():
    events = [ev(60, 1, 1, 4), ev(71, 2, 1, 4, tags=FunctionTag.CADENCE)]
    log = []
    repair.enforce_max_leap(events, 60, 72, log, 5, allow_demotion=False)
    assert events[1].midi == 71
    assert codes(log) == ["must3_unresolved_without_demotion"]


def test_interval_caps_retune_locked_leap():
    ctx = repair.ConstraintContext(max_leap=5)
    events = [ev(60, 1, 1, 2), ev(69, 1, 3, 2, tags=FunctionTag.STRUCTURAL), ev(64, 2, 1, 2), ev(60, 2, 3, 2)]
    log = []
    repair.enforce_interval_caps(events, ctx, log)
    assert [e.midi for e in events] == [60, 65, 64, 60]
    assert codes(log) == ["must3_interval_sweep_retune"]
    assert repair.find_violation(events, ctx) is None


def test_interval_caps_keep_the_final_reachable():
    ctx = repair.ConstraintContext(max_leap=5)
    events = [ev(60, 1, 1, 2), ev(65, 1, 3, 2), ev(69, 2, 1, 2), ev(60, 2, 3, 2)]
    log = []
    repair.enforce_interval_caps(events, ctx, log)
    midis = [e.midi for e in events]
    assert midis == [60, 65, 65, 60]
    assert all(abs(b - a) <= 5 for a, b in zip(midis, midis[1:]))


def test_interval_caps_resolve_eighth_pair_third_by_step():
    ctx = repair.ConstraintContext()
    events = [ev(60, 1, 1, 1), ev(62, 1, 2, 0.5), ev(65, 1, 2.5, 0.5), ev(69, 1, 3, 2), ev(64, 2, 1, 4)]
    assert repair.find_violation(events, ctx)[0] == "pass4_assert_ee_resolution"
    log = []
    repair.enforce_interval_caps(events, ctx, log)
    assert [e.midi for e in events] == [60, 62, 65, 67, 64]
    assert repair.find_violation(events, ctx) is None


def test_pair_on_beat_four_needs_any_pair_beat():
    ctx = repair.ConstraintContext()
    events = [
        ev(60, 1, 1, 2),
        ev(62, 1, 3, 0.5),
        ev(64, 1, 3.5, 0.5),
        ev(65, 1, 4, 0.5),
        ev(67, 1, 4.5, 0.5),
        ev(60, 2, 1, 4),
    ]
    assert repair.find_violation(events, ctx)[0] == "pass4_assert_lone_eighth"
    assert repair.find_violation(events, ctx, any_pair_beat=True) is None


def test_repair_pass_is_idempotent():
    ctx = repair.ConstraintContext(max_leap=7)
    events = [ev(60, 1, 1, 4), ev(72, 2, 1, 4), ev(64, 3, 1, 4), ev(60, 4, 1, 4)]
    first, _ = repair.repair_pass(events, ctx)
    second, log = repair.repair_pass(first, ctx)
    shape = [(e.midi, e.measure, e.onset_beat, e.duration_beats) for e in first]
    assert [(e.midi, e.measure, e.onset_beat, e.duration_beats) for e in second] == shape
    assert [e.midi for e in first] == [60, 60, 62, 60]
    assert log == []


@pytest.mark.parametrize("cap", [2, 3, 5, 7])
def test_repair_pass_meets_small_caps(cap):
    ctx = repair.ConstraintContext(max_leap=cap, beats_per_measure=4, range_min=60, range_max=76)
    events = [
        ev(60, 1, 1, 1),
        ev(67, 1, 2, 0.5),
        ev(72, 1, 2.5, 0.5),
        ev(64, 1, 3, 2),
        ev(76, 2, 1, 2),
        ev(62, 2, 3, 2),
        ev(60, 3, 1, 4),
    ]
    final, _ = repair.repair_pass(events, ctx)
    assert repair.find_violation(final, ctx) is None
