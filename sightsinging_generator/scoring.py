"""Melody scoring used to pick the best of several generated variants.

The score is a weighted sum of singability terms (stepwise motion, variety,
chord tones on strong beats, resolved non-harmonic tones, a gentle contour,
idiomatic cadences and a good fit to the requested rhythm mix) minus
penalties for large leaps, backtracking and unrepaired skips.  Every term is
also reported as an :class:`~sightsinging_generator.models.AssayMetric` so
front-ends can explain the choice.

Interval statistics use :mod:`numpy` when it is installed and a plain loop
otherwise.

Example
-------
>>> from sightsinging_generator.models import ExerciseSpec, MelodyEvent
>>> result = score_melody([], ExerciseSpec())
>>> result.score
-inf
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, List, Sequence

from . import KEY_TO_PC
from .cadence_policy import get_cadence_transition_spec
from .models import AssayMetric, ExerciseSpec, MelodyEvent
from .note_utils import key_scale_pcs, midi_to_degree

try:
    import numpy as np  # type: ignore
except Exception:  # pragma: no cover - optional
    np = None

__all__ = ["CandidateScore", "score_melody", "cadence_compliance", "rhythm_fit"]

ALLOWED_SKIPS = {3, 4, 5, 7}
STRONG_BEATS = (1, 3)

# Weights of the positive terms
W_STEPWISE = 20
W_VARIETY = 24
W_STRONG_BEAT_CHORD = 16
W_NHT_RESOLUTION = 20
W_CONTOUR = 14
W_CADENCE = 18
W_RHYTHM = 50
SKIP_WINDOW_BONUS = 8
PEAK_WEIGHT = 0.9

# Penalty weights
LEAP_PENALTY = 4.2
BACKTRACK_PENALTY = 5.5
UNREPAIRED_LEAP_PENALTY = 7
HIGH_EE_NO_OUTPUT_PENALTY = 80
SPAN_PENALTY = 1.1
MAX_COMFORTABLE_SPAN = 18


@dataclass
class CandidateScore:
    score: float
    metrics: List[AssayMetric]


def _sign(value: float) -> int:
    return (value > 0) - (value < 0)


def _intervals(midis: Sequence[int]) -> List[int]:
    if np is None:
        return [b - a for a, b in zip(midis, midis[1:])]
    return np.diff(np.asarray(midis, dtype=np.int16)).tolist()


def _target_percents(spec: ExerciseSpec) -> Dict[str, float]:
    weights = spec.rhythm_weights
    if weights is None or weights.total <= 0:
        return {"whole": 0.0, "half": 0.0, "quarter": 0.0, "eighth": 0.0}
    total = weights.total
    return {
        "whole": weights.whole / total * 100,
        "half": weights.half / total * 100,
        "quarter": weights.quarter / total * 100,
        "eighth": weights.eighth / total * 100,
    }


def _actual_percents(melody: Sequence[MelodyEvent]) -> Dict[str, float]:
    counts = {"whole": 0, "half": 0, "quarter": 0, "eighth": 0}
    for event in melody:
        name = event.duration
        if name in counts:
            counts[name] += 1
    total = sum(counts.values())
    if total <= 0:
        return {name: 0.0 for name in counts}
    return {name: count / total * 100 for name, count in counts.items()}


def rhythm_fit(melody: Sequence[MelodyEvent], spec: ExerciseSpec) -> float:
    """Return ``1 - L1/200`` between the realised and requested rhythm mix."""

    target = _target_percents(spec)
    actual = _actual_percents(melody)
    distance = sum(abs(actual[name] - target[name]) for name in target)
    return max(0.0, 1 - distance / 200)


def cadence_compliance(melody: Sequence[MelodyEvent], spec: ExerciseSpec) -> float:
    """Average how well each phrase ending follows the cadence transition table.

    Hard options score ``1`` or ``0``; soft options score their weight.
    Phrases that cannot be judged are skipped and ``0.5`` is returned when
    none can be.
    """

    if len(melody) < 2 or not spec.phrases:
        return 0.5
    key, _, mode = melody[0].key_id.partition("-")
    scale = key_scale_pcs(KEY_TO_PC.get(key, 0), "minor" if mode == "minor" else "major")
    length = spec.phrase_length_measures
    total = 0.0
    count = 0
    for index, phrase in enumerate(spec.phrases):
        end_measure = (index + 1) * length
        in_phrase = [e for e in melody if e.measure <= end_measure]
        if len(in_phrase) < 2 or in_phrase[-1].measure != end_measure:
            continue
        from_degree = midi_to_degree(in_phrase[-2].midi, scale)
        to_degree = midi_to_degree(in_phrase[-1].midi, scale)
        options = get_cadence_transition_spec(phrase.cadence).get(from_degree, [])
        compliance = 0.5
        if options:
            hard = [option for option in options if option.hard]
            if hard:
                compliance = 1.0 if any(option.degree == to_degree for option in hard) else 0.0
            else:
                matched = next((option for option in options if option.degree == to_degree), None)
                compliance = min(1.0, max(0.0, matched.weight)) if matched else 0.0
        total += compliance
        count += 1
    return total / count if count else 0.5


def _nht_resolution_rate(melody: Sequence[MelodyEvent]) -> float:
    indices = [i for i, event in enumerate(melody) if event.role == "NonHarmonicTone"]
    if not indices:
        return 1.0
    resolved = 0
    for index in indices:
        for later in melody[index + 1:]:
            if later.onset_beat in STRONG_BEATS:
                resolved += later.role == "ChordTone"
                break
    return resolved / len(indices)


def score_melody(melody: Sequence[MelodyEvent], spec: ExerciseSpec) -> CandidateScore:
    """Score an attack-only melody.

    Parameters
    ----------
    melody:
        Sounding attacks in order.
    spec:
        The exercise request, used for the phrase cadences and rhythm target.

    Returns
    -------
    CandidateScore
        ``score`` is ``-inf`` for an empty melody.
    """

    if not melody:
        return CandidateScore(
            -math.inf,
            [
                AssayMetric("empty_penalty", -1000),
                AssayMetric("stepwise_ratio", 0),
                AssayMetric("range_span", 0),
            ],
        )

    midis = [event.midi for event in melody]
    deltas = _intervals(midis)
    intervals = [abs(d) for d in deltas]
    directions = [_sign(d) for d in deltas]
    moves = max(1, len(melody) - 1)

    stepwise = sum(1 for i in intervals if i <= 2)
    skips = sum(1 for i in intervals if i in ALLOWED_SKIPS)
    leap_count = sum(1 for i in intervals if i >= 3)
    leap_penalty = sum(i - 7 for i in intervals if i > 7)
    backtracks = sum(
        1 for i in range(2, len(midis)) if midis[i] == midis[i - 2] and midis[i - 1] != midis[i]
    )

    changes = 0
    previous = 0
    for direction in directions:
        if direction and previous and direction != previous:
            changes += 1
        if direction:
            previous = direction

    unrepaired = 0
    for i, interval in enumerate(intervals):
        if interval < 3:
            continue
        if i + 1 >= len(intervals):
            unrepaired += 1
            continue
        if not (intervals[i + 1] <= 2 and directions[i + 1] != 0 and directions[i + 1] == -directions[i]):
            unrepaired += 1

    stepwise_ratio = stepwise / moves
    skip_rate = skips / moves
    span = max(midis) - min(midis)
    variety = len(set(midis)) / len(melody)
    peak = max(midis) - (midis[0] + midis[-1]) / 2

    strong = [e for e in melody if e.onset_beat in STRONG_BEATS]
    strong_rate = sum(e.role == "ChordTone" for e in strong) / len(strong) if strong else 1.0
    nht_rate = _nht_resolution_rate(melody)

    contour = max(0.0, 1 - abs(changes - 2) / 6)
    skip_low = (0.1 - skip_rate) * 140 if skip_rate < 0.1 else 0.0
    skip_high = (skip_rate - 0.45) * 120 if skip_rate > 0.45 else 0.0
    skip_bonus = SKIP_WINDOW_BONUS if 0.15 <= skip_rate <= 0.35 else 0
    cadence = cadence_compliance(melody, spec)
    fit = rhythm_fit(melody, spec)
    target_eighth = _target_percents(spec)["eighth"]
    actual_eighth = _actual_percents(melody)["eighth"]
    no_ee_penalty = HIGH_EE_NO_OUTPUT_PENALTY if target_eighth >= 40 and actual_eighth == 0 else 0

    score = (
        stepwise_ratio * W_STEPWISE
        + variety * W_VARIETY
        + strong_rate * W_STRONG_BEAT_CHORD
        + nht_rate * W_NHT_RESOLUTION
        + contour * W_CONTOUR
        + cadence * W_CADENCE
        + fit * W_RHYTHM
        + skip_bonus
        + min(peak, 12) * PEAK_WEIGHT
        - leap_penalty * LEAP_PENALTY
        - backtracks * BACKTRACK_PENALTY
        - unrepaired * UNREPAIRED_LEAP_PENALTY
        - skip_low
        - skip_high
        - no_ee_penalty
        - max(0, span - MAX_COMFORTABLE_SPAN) * SPAN_PENALTY
    )

    metrics = [
        AssayMetric("stepwise_ratio", round(stepwise_ratio, 3)),
        AssayMetric("skip_rate", round(skip_rate, 3)),
        AssayMetric("skip_rate_low_penalty", round(skip_low, 3)),
        AssayMetric("skip_rate_high_penalty", round(skip_high, 3)),
        AssayMetric("leap_count", leap_count),
        AssayMetric("variety_ratio", round(variety, 3)),
        AssayMetric("unique_pitch_classes", len({m % 12 for m in midis})),
        AssayMetric("backtrack_count", backtracks),
        AssayMetric("unrepaired_leap_count", unrepaired),
        AssayMetric("contour_direction_changes", changes),
        AssayMetric("contour_score", round(contour, 3)),
        AssayMetric("peak_prominence", round(peak, 3)),
        AssayMetric("strong_beat_chord_tone_rate", round(strong_rate, 3)),
        AssayMetric("nht_resolution_rate", round(nht_rate, 3)),
        AssayMetric("cadence_compliance", round(cadence, 3)),
        AssayMetric("rhythm_fit", round(fit, 3)),
        AssayMetric("rhythm_target_eighth_pct", round(target_eighth, 1)),
        AssayMetric("rhythm_actual_eighth_pct", round(actual_eighth, 1)),
        AssayMetric("rhythm_high_ee_no_output_penalty", no_ee_penalty),
        AssayMetric("leap_penalty", leap_penalty),
        AssayMetric("range_span", span),
        AssayMetric("overall_score", round(score, 3)),
    ]
    return CandidateScore(score, metrics)
