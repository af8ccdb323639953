"""Tests for the final enforcement of user options."""

import importlib
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

uc = importlib.import_module("sightsinging_generator.user_constraints")
repair = importlib.import_module("sightsinging_generator.repair")
models = importlib.import_module("sightsinging_generator.models")


def ev(midi, measure, onset, duration, chord_id="m1-b1-d1"):
    return models.MelodyEvent(
        midi=midi, measure=measure, onset_beat=onset, duration_beats=duration, chord_id=chord_id, key_id="C-major"
    )


def test_duration_allowed_by_value_code():
    assert uc.is_duration_allowed(0.5, ["EE"])
    assert uc.is_duration_allowed(4, ["W"])
    assert not uc.is_duration_allowed(2, ["Q"])
    assert not uc.is_duration_allowed(1.5, ["EE", "Q", "H"])


def test_dotted_half_is_never_an_allowed_value():
    assert not uc.is_duration_allowed(3, ["Q", "H"])
    assert not uc.is_duration_allowed(3, ["H", "W"])


def test_pick_nearest_legal_retune_prefers_chord_tone():
    ctx = repair.ConstraintContext(illegal_degrees=[4])
    choice = uc.pick_nearest_legal_retune(ev(65, 2, 1, 4), ev(64, 1, 1, 4), ev(62, 3, 1, 4), ctx, True)
    assert choice == 64


def test_illegal_degree_retuned_with_locked_rhythm():
    ctx = repair.ConstraintContext(illegal_degrees=[4], cadence_type="half")
    events = [ev(60, 1, 1, 4), ev(65, 2, 1, 4), ev(64, 3, 1, 4)]
    log = []
    uc.enforce_illegal_degrees(events, ctx, log)
    assert [e.midi for e in events] == [60, 64, 64]
    assert log[0].code == "pass10_illegal_degree_retune_chord"


def test_validate_all_must_reports_without_raising():
    ctx = repair.ConstraintContext(illegal_degrees=[1])
    result = uc.validate_all_must([ev(60, 1, 1, 2)], ctx)
    assert not result.ok
    assert result.violations == ["measure_sum m1=2"]
    assert result.illegal_counts["illegal_degree"] == 1


def test_locked_rhythm_keeps_clean_melody():
    events = [ev(60, 1, 1, 2), ev(64, 1, 3, 2), ev(62, 2, 1, 2), ev(60, 2, 3, 2)]
    final, log = uc.apply_user_constraints(events, repair.ConstraintContext())
    assert [(e.midi, e.measure, e.onset_beat) for e in final] == [(60, 1, 1), (64, 1, 3), (62, 2, 1), (60, 2, 3)]
    assert log[0].code == "pass10_rhythm_locked_from_pass2"
    assert "pass10_must_violation" not in [entry.code for entry in log]


def test_unlocked_rhythm_splits_disallowed_values():
    ctx = repair.ConstraintContext(lock_final_rhythm=False, allowed_note_values=["Q"])
    events = [ev(60, 1, 1, 4), ev(60, 2, 1, 4)]
    final, log = uc.apply_user_constraints(events, ctx)
    assert len(final) == 8
    assert all(e.duration_beats == 1 for e in final)
    assert "pass10_enforce_allowed_note_values" in [entry.code for entry in log]
    assert len(events) == 2


def test_rhythm_nudge_writes_whole_note_cadence():
    ctx = repair.ConstraintContext(rhythm_dist={"W": 50, "H": 10, "Q": 20, "EE": 20})
    events = [ev(60, 1, 1, 2), ev(64, 1, 3, 2), ev(62, 2, 1, 2), ev(60, 2, 3, 2)]
    log = []
    out = uc.nudge_rhythm_distribution(events, ctx, log)
    last = [e for e in repair.attack_events(out) if e.measure == 2]
    assert [(e.midi, e.duration_beats) for e in last] == [(62, 4)]
    assert "pass10_rhythm_nudge_cadence_whole" in [entry.code for entry in log]


def test_rhythm_nudge_skips_eighths_when_not_allowed():
    ctx = repair.ConstraintContext(
        allowed_note_values=["Q", "H"], rhythm_dist={"EE": 60, "Q": 40, "H": 0, "W": 0}, lock_final_rhythm=False
    )
    events = [ev(60 + i % 3, m, b, 1) for m in (1, 2, 3) for i, b in enumerate((1, 2, 3, 4))]
    log = []
    out = uc.nudge_rhythm_distribution(events, ctx, log)
    assert all(e.duration_beats != 0.5 for e in repair.attack_events(out))
    assert "pass10_rhythm_nudge_force_ee_grid" not in [entry.code for entry in log]


def test_rhythm_nudge_never_writes_dotted_half_cadence():
    ctx = repair.ConstraintContext(beats_per_measure=3, rhythm_dist={"W": 50, "H": 10, "Q": 20, "EE": 20})
    events = [ev(60, 1, 1, 1), ev(64, 1, 2, 1), ev(62, 1, 3, 1), ev(62, 2, 1, 1), ev(60, 2, 2, 2)]
    log = []
    out = uc.nudge_rhythm_distribution(events, ctx, log)
    assert all(e.duration_beats != 3 for e in repair.attack_events(out))
    assert "pass10_rhythm_nudge_cadence_whole" not in [entry.code for entry in log]
