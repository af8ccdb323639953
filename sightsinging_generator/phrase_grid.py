"""Rhythm grid planning: one rhythmic template per measure of a phrase.

Each measure receives a template from a small fixed catalog describing its
attack onsets.  The final measure always takes a cadence template, the climax
measure a simple two-note template, a quota of measures before the climax is
forced to contain an eighth-note pair, and the remaining measures are chosen
to bring the phrase's note-value histogram close to the requested
distribution.

Example
-------
>>> from sightsinging_generator.phrase_planner import generate_phrase_plan
>>> from sightsinging_generator.models import PhraseSpec, RhythmWeights
>>> plan = generate_phrase_plan(4, seed=3)
>>> grid = generate_phrase_grid(plan, PhraseSpec(), 1, 4, 4, RhythmWeights(), seed=3)
>>> grid.measures[-1].template_id in ("CADENCE_W", "CADENCE_HH")
True
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence

from .errors import InputValidationError
from .models import PhraseSpec, RhythmWeights
from .phrase_planner import PhrasePlan
from .rng import SeededRng

__all__ = [
    "TEMPLATE_IDS",
    "MeasureGrid",
    "PhraseGridPlan",
    "template_onsets_for_meter",
    "ee_window_beat_for_template",
    "duration_counts_from_onsets",
    "template_uses_only_allowed",
    "generate_phrase_grid",
]

logger = logging.getLogger(__name__)

TEMPLATE_IDS = (
    "STABLE",
    "SMOOTH_BEAT1",
    "SMOOTH_BEAT2",
    "SMOOTH_BEAT3",
    "RUN_EEEEH",
    "RUN_HEEEE",
    "CADENCE_W",
    "CADENCE_HH",
    "CLIMAX_SIMPLE",
)

# Onsets of every template in 4/4.
_TEMPLATE_ONSETS_4: Dict[str, List[float]] = {
    "STABLE": [1, 2, 3, 4],
    "SMOOTH_BEAT1": [1, 1.5, 2, 3, 4],
    "SMOOTH_BEAT2": [1, 2, 2.5, 3, 4],
    "SMOOTH_BEAT3": [1, 2, 3, 3.5, 4],
    "RUN_EEEEH": [1, 1.5, 2, 2.5, 3],
    "RUN_HEEEE": [1, 3, 3.5, 4, 4.5],
    "CADENCE_W": [1],
    "CADENCE_HH": [1, 3],
    "CLIMAX_SIMPLE": [1, 3],
}

_TEMPLATE_ONSETS_3: Dict[str, List[float]] = {
    "STABLE": [1, 2, 3],
    "SMOOTH_BEAT1": [1, 1.5, 2, 3],
    "SMOOTH_BEAT2": [1, 2, 2.5, 3],
    "SMOOTH_BEAT3": [1, 2, 3],
    "RUN_EEEEH": [1, 1.5, 2, 2.5, 3],
    "RUN_HEEEE": [1, 2, 2.5, 3],
    "CADENCE_W": [1, 3],
    "CADENCE_HH": [1, 2],
    "CLIMAX_SIMPLE": [1, 2],
}

_TEMPLATE_ONSETS_2: Dict[str, List[float]] = {
    "STABLE": [1, 2],
    "SMOOTH_BEAT1": [1, 1.5, 2],
    "SMOOTH_BEAT2": [1, 1.5, 2],
    "SMOOTH_BEAT3": [1, 1.5, 2],
    "RUN_EEEEH": [1, 1.5, 2],
    "RUN_HEEEE": [1, 1.5, 2],
    "CADENCE_W": [1],
    "CADENCE_HH": [1],
    "CLIMAX_SIMPLE": [1],
}

_EE_WINDOW: Dict[str, int] = {
    "SMOOTH_BEAT1": 1,
    "RUN_EEEEH": 1,
    "SMOOTH_BEAT2": 2,
    "SMOOTH_BEAT3": 3,
    "RUN_HEEEE": 3,
}

_FLEX_EE_TEMPLATES = ["SMOOTH_BEAT1", "SMOOTH_BEAT2", "SMOOTH_BEAT3", "RUN_EEEEH", "RUN_HEEEE"]


@dataclass
class MeasureGrid:
    measure: int
    template_id: str
    onsets: List[float]
    anchor_onsets: List[float]
    is_cadence_measure: bool = False
    is_climax_measure: bool = False
    ee_window_beat: Optional[int] = None


@dataclass
class PhraseGridPlan:
    """Per-measure rhythm plan for one phrase."""

    measures: List[MeasureGrid]
    climax_measure: int
    climax_onset: float
    ee_measures: List[int] = field(default_factory=list)
    note_value_counts: Dict[str, int] = field(default_factory=dict)

    def measure_plan(self, measure: int) -> Optional[MeasureGrid]:
        for plan in self.measures:
            if plan.measure == measure:
                return plan
        return None


def template_onsets_for_meter(template_id: str, beats_per_measure: int) -> List[float]:
    """Return the onsets of ``template_id`` adapted to the meter."""

    if beats_per_measure == 4:
        return list(_TEMPLATE_ONSETS_4[template_id])
    if beats_per_measure == 3:
        return list(_TEMPLATE_ONSETS_3[template_id])
    if beats_per_measure == 2:
        return list(_TEMPLATE_ONSETS_2[template_id])
    return [float(beat) for beat in range(1, max(1, beats_per_measure) + 1)]


def ee_window_beat_for_template(template_id: str, beats_per_measure: int) -> Optional[int]:
    """Return the beat on which the template's eighth pair starts, if any."""

    onsets = template_onsets_for_meter(template_id, beats_per_measure)
    preferred = _EE_WINDOW.get(template_id)
    if preferred is not None and preferred in onsets and preferred + 0.5 in onsets:
        return preferred
    for beat in (1, 2, 3, 4):
        if beat in onsets and beat + 0.5 in onsets:
            return beat
    return None


_NOTE_VALUE_BEATS = (("W", 4), ("H", 2), ("Q", 1), ("EE", 0.5))


def _note_values(onsets: Iterable[float], beats_per_measure: int) -> List[Optional[str]]:
    # ``None`` marks a length with no note value, e.g. a dotted half.
    values: List[Optional[str]] = []
    ordered = sorted(onsets)
    for index, onset in enumerate(ordered):
        following = ordered[index + 1] if index + 1 < len(ordered) else beats_per_measure + 1
        duration = round(following - onset, 3)
        values.append(next((name for name, beats in _NOTE_VALUE_BEATS if abs(duration - beats) < 1e-6), None))
    return values


def duration_counts_from_onsets(onsets: Iterable[float], beats_per_measure: int) -> Dict[str, int]:
    """Return the ``W/H/Q/EE`` histogram implied by one measure's onsets."""

    counts = {"W": 0, "H": 0, "Q": 0, "EE": 0}
    for value in _note_values(onsets, beats_per_measure):
        if value is not None:
            counts[value] += 1
    return counts


def template_uses_only_allowed(template_id: str, allowed: Iterable[str], beats_per_measure: int) -> bool:
    """Return ``True`` when every note of the template has an allowed value.

    A note whose length is not a note value at all never qualifies.
    """

    allowed_set = set(allowed)
    values = _note_values(template_onsets_for_meter(template_id, beats_per_measure), beats_per_measure)
    return all(value in allowed_set for value in values)


def _anchor_onsets(onsets: Sequence[float]) -> List[float]:
    anchors = [onset for onset in onsets if abs(onset - 1) < 1e-3 or abs(onset - 3) < 1e-3]
    return anchors or [onsets[0] if onsets else 1]


def _assign(plan: MeasureGrid, template_id: str, beats_per_measure: int) -> None:
    plan.template_id = template_id
    plan.onsets = template_onsets_for_meter(template_id, beats_per_measure)
    plan.anchor_onsets = _anchor_onsets(plan.onsets)
    plan.ee_window_beat = ee_window_beat_for_template(template_id, beats_per_measure)


def generate_phrase_grid(
    phrase_plan: PhrasePlan,
    phrase_spec: PhraseSpec,
    phrase_start_measure: int,
    phrase_length_measures: int,
    beats_per_measure: int,
    rhythm_weights: RhythmWeights,
    rhythm_dist: Optional[Dict[str, float]] = None,
    min_eighth_pairs: Optional[int] = None,
    lock_rhythm_constraints: bool = True,
    allowed_note_values: Optional[Sequence[str]] = None,
    seed: int = 0,
) -> PhraseGridPlan:
    """Assign a rhythm template to every measure of one phrase.

    Parameters
    ----------
    phrase_plan:
        Contour plan; its ``peak_measure`` locates the climax measure.
    phrase_spec:
        Phrase description (cadence type).
    phrase_start_measure, phrase_length_measures:
        Absolute first measure and length of the phrase.
    beats_per_measure:
        Meter numerator.
    rhythm_weights, rhythm_dist:
        Target note-value distribution.  ``rhythm_dist`` (EE/Q/H/W percent)
        wins over the weights when both are supplied.
    min_eighth_pairs:
        Number of measures before the climax that must carry an eighth pair.
    lock_rhythm_constraints:
        Optimise flexible measures against the distribution.
    allowed_note_values:
        Subset of ``{"EE", "Q", "H", "W"}``.  Defaults to ``EE/Q/H``.
    seed:
        Base seed; the grid mixes in the phrase position.

    Raises
    ------
    InputValidationError
        When the allowed set is empty, contains all four values or admits no
        template in this meter.
    """

    rng = SeededRng(seed + phrase_start_measure * 97 + phrase_length_measures * 31)
    final_measure = phrase_start_measure + phrase_length_measures - 1
    climax_measure = max(
        phrase_start_measure,
        min(final_measure, phrase_start_measure + phrase_plan.peak_measure - 1),
    )
    if min_eighth_pairs is None:
        min_eighth_pairs = rhythm_weights.min_eighth_pairs_per_phrase
    min_ee_pairs = max(0, min_eighth_pairs or 0)

    allowed = list(dict.fromkeys(allowed_note_values if allowed_note_values is not None else ["EE", "Q", "H"]))
    if len(allowed) == 4:
        raise InputValidationError("input_invalid_allowed_note_values_max_three")
    if not allowed:
        raise InputValidationError("input_invalid_allowed_note_values_empty")
    allowed_set = set(allowed)
    target = dict(rhythm_dist) if rhythm_dist is not None else rhythm_weights.as_distribution()

    def usable(template_id: str) -> bool:
        return template_uses_only_allowed(template_id, allowed_set, beats_per_measure)

    def fallback_template(candidates: Sequence[str]) -> str:
        filtered = [tid for tid in candidates if usable(tid)]
        if not filtered:
            filtered = [tid for tid in TEMPLATE_IDS if usable(tid)]
        if not filtered:
            raise InputValidationError("input_invalid_allowed_note_values_no_template_match")
        return filtered[rng.int(0, len(filtered) - 1)]

    if usable("STABLE"):
        default_template = "STABLE"
    elif usable("CADENCE_HH"):
        default_template = "CADENCE_HH"
    else:
        default_template = "CADENCE_W"

    measures: List[MeasureGrid] = []
    for measure in range(phrase_start_measure, final_measure + 1):
        template_id = default_template
        if measure == final_measure:
            template_id = "CADENCE_W" if target.get("W", 0) >= target.get("H", 0) else "CADENCE_HH"
            if not usable(template_id):
                template_id = fallback_template(["CADENCE_W", "CADENCE_HH"])
        elif measure == climax_measure:
            if usable("CLIMAX_SIMPLE"):
                template_id = "CLIMAX_SIMPLE"
            else:
                template_id = fallback_template([t for t in TEMPLATE_IDS if t != "CLIMAX_SIMPLE"])
        elif not usable(template_id):
            template_id = fallback_template(
                ["STABLE", "CADENCE_HH", "CADENCE_W"] + _FLEX_EE_TEMPLATES
            )
        plan = MeasureGrid(measure, template_id, [], [], measure == final_measure, measure == climax_measure)
        _assign(plan, template_id, beats_per_measure)
        measures.append(plan)

    effective_min_ee = min_ee_pairs if "EE" in allowed_set else 0
    ee_heavy = target.get("EE", 0) >= max(target.get("Q", 0), target.get("H", 0), target.get("W", 0))
    ee_templates = (
        ["RUN_EEEEH", "RUN_HEEEE", "SMOOTH_BEAT3", "SMOOTH_BEAT2", "SMOOTH_BEAT1"]
        if ee_heavy
        else ["SMOOTH_BEAT2", "SMOOTH_BEAT3", "SMOOTH_BEAT1", "RUN_HEEEE", "RUN_EEEEH"]
    )
    forced_ee = set()
    placed = 0
    for plan in measures:
        if placed >= effective_min_ee:
            break
        if plan.is_cadence_measure or plan.measure >= climax_measure:
            continue
        preferred = ee_templates[(placed + rng.int(0, len(ee_templates) - 1)) % len(ee_templates)]
        chosen = preferred if usable(preferred) else next((t for t in ee_templates if usable(t)), None)
        if chosen is None:
            continue
        _assign(plan, chosen, beats_per_measure)
        forced_ee.add(plan.measure)
        placed += 1

    def template_counts(template_id: str) -> Dict[str, int]:
        return duration_counts_from_onsets(template_onsets_for_meter(template_id, beats_per_measure), beats_per_measure)

    def dist_error(plans: Sequence[MeasureGrid]) -> float:
        totals = {"W": 0, "H": 0, "Q": 0, "EE": 0}
        for item in plans:
            for value, count in template_counts(item.template_id).items():
                totals[value] += count
        total = max(1, sum(totals.values()))
        return sum(abs(totals[value] / total * 100 - target.get(value, 0)) for value in totals)

    if lock_rhythm_constraints:
        flexible = [p for p in measures if not p.is_cadence_measure and not p.is_climax_measure]
        for index, plan in enumerate(flexible):
            if plan.measure in forced_ee:
                continue
            candidates = [tid for tid in ["STABLE"] + _FLEX_EE_TEMPLATES if usable(tid)]
            if not candidates:
                continue
            original = plan.template_id
            scored = []
            best_template = original
            best_error = float("inf")
            for candidate in candidates:
                plan.template_id = candidate
                err = dist_error(measures)
                scored.append((candidate, err))
                if err < best_error:
                    best_error = err
                    best_template = candidate
            plan.template_id = original

            near_best = [(tid, err) for tid, err in scored if err <= best_error + 4]
            prev_template = flexible[index - 1].template_id if index > 0 else None
            if len(near_best) > 1:
                weighted = []
                for tid, err in near_best:
                    bonus = 1.18 if tid in ("RUN_EEEEH", "RUN_HEEEE", "SMOOTH_BEAT2", "SMOOTH_BEAT3") and target.get(
                        "EE", 0
                    ) >= target.get("Q", 0) else 1.0
                    repeat = 0.58 if prev_template == tid else 1.0
                    weighted.append((tid, (1 / (1 + (err - best_error))) * bonus * repeat))
                total_weight = sum(weight for _, weight in weighted)
                cursor = rng.next() * total_weight
                for tid, weight in weighted:
                    cursor -= weight
                    if cursor <= 0:
                        best_template = tid
                        break
            _assign(plan, best_template, beats_per_measure)

    climax_plan = next((p for p in measures if p.measure == climax_measure), None)
    if climax_plan is None:
        climax_onset = 1.0
    elif 3 in climax_plan.onsets:
        climax_onset = 3.0
    else:
        climax_onset = float(climax_plan.onsets[-1]) if climax_plan.onsets else 1.0

    counts = {"W": 0, "H": 0, "Q": 0, "EE": 0}
    for plan in measures:
        for value, count in duration_counts_from_onsets(plan.onsets, beats_per_measure).items():
            counts[value] += count

    grid = PhraseGridPlan(
        measures=measures,
        climax_measure=climax_measure,
        climax_onset=climax_onset,
        ee_measures=[p.measure for p in measures if p.ee_window_beat is not None],
        note_value_counts=counts,
    )
    logger.debug(
        "[phrase-grid] plan=%s counts(W/H/Q/EE)=%d/%d/%d/%d",
        " ".join(f"m{p.measure}:{p.template_id}{p.onsets}" for p in measures),
        counts["W"],
        counts["H"],
        counts["Q"],
        counts["EE"],
    )
    return grid
