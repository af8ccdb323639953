"""Tests for melody scoring."""

import importlib
import math
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

scoring = importlib.import_module("sightsinging_generator.scoring")
models = importlib.import_module("sightsinging_generator.models")


def melody(midis, duration=1):
    per_measure = int(4 / duration)
    return [
        models.MelodyEvent(
            midi=m,
            measure=i // per_measure + 1,
            onset_beat=1 + (i % per_measure) * duration,
            duration_beats=duration,
            key_id="C-major",
        )
        for i, m in enumerate(midis)
    ]


def metrics(result):
    return {metric.name: metric.value for metric in result.metrics}


def test_empty_melody_scores_negative_infinity():
    result = scoring.score_melody([], models.ExerciseSpec())
    assert result.score == -math.inf
    assert metrics(result)["empty_penalty"] == -1000


def test_stepwise_melody_metrics():
    result = scoring.score_melody(melody([60, 62, 64, 62, 60]), models.ExerciseSpec())
    values = metrics(result)
    assert values["stepwise_ratio"] == 1.0
    assert values["leap_count"] == 0
    assert values["range_span"] == 4
    assert values["backtrack_count"] == 1


def test_stepwise_beats_leaping():
    spec = models.ExerciseSpec()
    smooth = scoring.score_melody(melody([60, 62, 64, 62, 60]), spec)
    jumpy = scoring.score_melody(melody([60, 72, 60, 72, 60]), spec)
    assert smooth.score > jumpy.score
    assert metrics(jumpy)["leap_penalty"] == 20


def test_rhythm_fit_against_target_mix():
    quarters = melody([60, 62, 64, 65])
    assert scoring.rhythm_fit(quarters, models.ExerciseSpec()) == pytest.approx(0.5)
    spec = models.ExerciseSpec(rhythm_weights=models.RhythmWeights(0, 0, 100, 0))
    assert scoring.rhythm_fit(quarters, spec) == pytest.approx(1.0)


def test_cadence_compliance_uses_hard_options():
    spec = models.ExerciseSpec(phrase_length_measures=1)
    good = melody([71, 72], duration=2)
    bad = melody([71, 64], duration=2)
    assert scoring.cadence_compliance(good, spec) == 1.0
    assert scoring.cadence_compliance(bad, spec) == 0.0
    assert scoring.cadence_compliance(good[:1], spec) == 0.5


def test_scoring_works_without_numpy(monkeypatch):
    notes = melody([60, 62, 64, 65, 67, 65, 64, 62, 60, 64, 62, 60])
    expected = scoring.score_melody(notes, models.ExerciseSpec()).score
    monkeypatch.setattr(scoring, "np", None)
    assert scoring._intervals([60, 67, 64]) == [7, -3]
    assert scoring.score_melody(notes, models.ExerciseSpec()).score == pytest.approx(expected)
