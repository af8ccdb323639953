"""Tests for the cadence voice-leading policy."""

import importlib
import math
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

policy = importlib.import_module("sightsinging_generator.cadence_policy")
Candidate = policy.CadenceCandidate


def test_leading_tone_must_resolve_to_tonic():
    result = policy.apply_cadence_policy(
        "authentic", 7, [Candidate(72, 1), Candidate(64, 3), Candidate(69, 6)], "final"
    )
    assert result.applied_hard
    assert [c.degree for c in result.candidates] == [1]
    assert result.candidates[0].bonus == 0.0


def test_mi_to_fa_is_pruned_in_authentic_window():
    result = policy.apply_cadence_policy(
        "authentic", 3, [Candidate(65, 4), Candidate(62, 2)], "penultimate"
    )
    assert [c.degree for c in result.candidates] == [2]
    assert "denyRule=mi_to_fa_pruned" in result.debug


def test_mi_to_fa_kept_when_it_is_the_only_option():
    result = policy.apply_cadence_policy("authentic", 3, [Candidate(65, 4)], "penultimate")
    assert [c.degree for c in result.candidates] == [4]
    assert "cadence_illegal_only_option" in result.debug


def test_final_slot_requires_step_except_dominant_drop():
    result = policy.apply_cadence_policy(
        "authentic", 5, [Candidate(60, 1), Candidate(64, 3), Candidate(65, 4)], "final"
    )
    assert sorted(c.degree for c in result.candidates) == [1, 4]
    tonic = next(c for c in result.candidates if c.degree == 1)
    assert math.isclose(tonic.bonus, math.log(0.6) * policy.W_CADENCE)


def test_half_cadence_avoid_option_is_penalised():
    result = policy.apply_cadence_policy(
        "half", 1, [Candidate(65, 4), Candidate(62, 2)], "penultimate"
    )
    by_degree = {c.degree: c.bonus for c in result.candidates}
    assert by_degree[4] < by_degree[2] - policy.AVOID_PENALTY + 1e-9


def test_hard_option_unavailable_falls_back_to_weights():
    result = policy.apply_cadence_policy("plagal", 6, [Candidate(60, 1)], "penultimate")
    assert not result.applied_hard
    assert result.debug.startswith("cadence_hard_failed_fallback_weighted")


def test_degree_step_distance_wraps():
    assert policy.degree_step_distance(7, 1) == 1
    assert policy.degree_step_distance(1, 5) == 3
