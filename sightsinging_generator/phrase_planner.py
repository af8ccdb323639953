"""Phrase contour planning for sight-singing exercises.

A :class:`PhrasePlan` describes the melodic outline of one phrase before any
pitch is chosen:

``direction``
    Overall contour shape: ``ascending``, ``descending``, ``arch``,
    ``invertedArch`` or ``wave``.
``peak_measure`` / ``peak_degree``
    Where the melodic high point falls and which scale degree it targets.
``start_degree`` / ``cadence_degrees``
    Opening degree and the ``(penultimate, final)`` degree pair.
``targets``
    Weighted ``(measure, beat, degree, priority)`` goals the skeleton
    builder steers towards.

Example
-------
>>> plan = generate_phrase_plan(measures=4, time_signature="4/4", seed=7)
>>> plan.targets[0].measure, plan.targets[0].priority
(1, 'high')
"""

# Modification Summary
# --------------------
# * Tension-curve plans were replaced by degree targets so the skeleton
#   builder can score candidate pitches directly against them.
# * ``difficulty`` selects the pool of contour shapes and peak degrees.
# * Low registers receive a bridge target between adjacent Do -> Ti targets
#   so the melody does not leap down to the leading tone below the tonic.

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Sequence, Tuple

from .models import RegisterRange
from .note_utils import js_round
from .rng import SeededRng

__all__ = ["PhraseTarget", "PhrasePlan", "generate_phrase_plan", "PRIORITY_WEIGHT"]

logger = logging.getLogger(__name__)

PRIORITY_WEIGHT: Dict[str, int] = {"low": 1, "medium": 2, "high": 3}

DIRECTIONS = ("ascending", "descending", "arch", "invertedArch", "wave")


@dataclass(frozen=True)
class PhraseTarget:
    measure: int
    beat: float
    degree: int
    priority: str = "medium"


@dataclass
class PhrasePlan:
    """Container for the contour decisions of one phrase."""

    direction: str
    peak_measure: int
    peak_degree: int
    start_degree: int
    cadence_degrees: List[int]
    targets: List[PhraseTarget] = field(default_factory=list)

    def target_at(self, measure: int, beat: float) -> Optional[PhraseTarget]:
        """Return the target at ``(measure, beat)`` or ``None``."""

        for target in self.targets:
            if target.measure == measure and abs(target.beat - beat) < 1e-6:
                return target
        return None


def _degree_bounds(register: Optional[RegisterRange]) -> Tuple[int, int]:
    # A register spanning at least an octave admits every degree.  Narrower
    # registers restrict targets to the degrees between the two bounds.
    if register is None or register.high_octave > register.low_octave:
        return 1, 7
    low = min(register.low_degree, register.high_degree)
    high = max(register.low_degree, register.high_degree)
    return low, high


def _clamp(degree: int, bounds: Tuple[int, int]) -> int:
    return max(bounds[0], min(bounds[1], degree))


def _cadence_options(cadence: str) -> List[List[int]]:
    if cadence == "half":
        return [[2, 5], [4, 5]]
    if cadence == "plagal":
        return [[4, 1]]
    return [[2, 1], [7, 1]]


def _direction_for(difficulty: int, rng: SeededRng) -> str:
    if difficulty <= 1:
        return "arch"
    if difficulty == 2:
        return rng.pick(["arch", "ascending"])
    if difficulty == 3:
        return rng.pick(["arch", "ascending", "descending"])
    return rng.pick(["arch", "ascending", "descending", "wave", "invertedArch"])


def _default_peak_measure(measures: int, rng: SeededRng) -> int:
    if measures == 4:
        return rng.pick([2, 3])
    if measures == 8:
        return rng.pick([4, 5])
    a = max(2, measures // 2)
    b = min(measures - 1, a + 1)
    return rng.pick([a, b])


def _interpolate(
    direction: str,
    measure: int,
    measures: int,
    start: int,
    peak: int,
    cadence_lead: int,
    peak_measure: int,
) -> int:
    def lerp(a: float, b: float, t: float) -> float:
        return a + (b - a) * t

    span = max(1, measures - 1)
    if direction == "ascending":
        return js_round(lerp(start, max(peak, cadence_lead), (measure - 1) / span))
    if direction == "descending":
        return js_round(lerp(max(start, peak), cadence_lead, (measure - 1) / span))
    if direction == "invertedArch":
        if measure <= peak_measure:
            return js_round(lerp(start, cadence_lead, (measure - 1) / max(1, peak_measure - 1)))
        return js_round(lerp(cadence_lead, peak, (measure - peak_measure) / max(1, measures - peak_measure)))
    if direction == "wave":
        wave = math.sin((measure - 1) / span * math.pi * 2)
        mid = (start + cadence_lead) / 2
        amp = max(1, abs(peak - mid))
        return js_round(mid + amp * wave)
    # arch
    if measure <= peak_measure:
        return js_round(lerp(start, peak, (measure - 1) / max(1, peak_measure - 1)))
    return js_round(lerp(peak, cadence_lead, (measure - peak_measure) / max(1, measures - peak_measure)))


def generate_phrase_plan(
    measures: int,
    time_signature: str = "4/4",
    seed: int = 0,
    register: Optional[RegisterRange] = None,
    cadence: str = "authentic",
    difficulty: int = 2,
    start_degree: Optional[int] = None,
    start_degree_locked: bool = False,
) -> PhrasePlan:
    """Create a :class:`PhrasePlan` for a phrase of ``measures`` bars.

    Parameters
    ----------
    measures:
        Phrase length in measures. Must be positive.
    time_signature:
        Meter string such as ``"3/4"``; the numerator places the cadence
        targets on the last two beats.
    seed:
        Seed for the plan's private random source.
    register:
        Register bounds; narrow registers restrict the target degrees.
    cadence:
        Cadence type closing the phrase.
    difficulty:
        ``1`` keeps to arches, higher values unlock more contour shapes and
        the submediant as a peak degree.
    start_degree, start_degree_locked:
        When locked, ``start_degree`` is used verbatim (after clamping);
        otherwise the opening is drawn with a strong bias toward Do.

    Raises
    ------
    ValueError
        If ``measures`` is not positive.
    """

    if measures <= 0:
        raise ValueError("measures must be positive")

    rng = SeededRng(seed)
    difficulty = max(1, int(difficulty))
    try:
        beats_per_measure = max(1, int(time_signature.split("/")[0]))
    except (ValueError, IndexError):
        beats_per_measure = 4
    bounds = _degree_bounds(register)

    direction = _direction_for(difficulty, rng)

    if start_degree_locked and start_degree is not None:
        start = _clamp(start_degree, bounds)
    else:
        start = _clamp(rng.pick([1, 1, 1, 1, 1, 3, 3]), bounds)

    peak_measure = _default_peak_measure(measures, rng)

    peak_options = [3, 5] if difficulty <= 1 else [5] if difficulty == 2 else [5, 6]
    peak_degree = _clamp(rng.pick(peak_options), bounds)
    if peak_degree == start:
        peak_degree = _clamp(min(7, peak_degree + 1), bounds)

    cadence_degrees = [_clamp(d, bounds) for d in rng.pick(_cadence_options(cadence))]
    cadence_lead = cadence_degrees[0] if cadence_degrees else 1

    raw: List[PhraseTarget] = []
    for measure in range(1, measures + 1):
        degree = _clamp(
            _interpolate(direction, measure, measures, start, peak_degree, cadence_lead, peak_measure),
            bounds,
        )
        raw.append(
            PhraseTarget(
                measure,
                1,
                start if measure == 1 else degree,
                "high" if measure == 1 else "medium",
            )
        )

    raw.append(PhraseTarget(peak_measure, 1, peak_degree, "high"))

    if measures >= 4:
        mid_measure = max(2, min(measures - 1, (measures + 1) // 2))
        raw.append(PhraseTarget(mid_measure, 1, _clamp(js_round((start + peak_degree) / 2), bounds), "medium"))

    raw.append(PhraseTarget(measures, max(1, beats_per_measure - 1), cadence_lead, "high"))
    raw.append(PhraseTarget(measures, beats_per_measure, cadence_degrees[-1] if cadence_degrees else 1, "high"))

    dedup: Dict[Tuple[int, float], PhraseTarget] = {}
    for target in raw:
        key = (target.measure, float(target.beat))
        prev = dedup.get(key)
        if prev is None or PRIORITY_WEIGHT[target.priority] >= PRIORITY_WEIGHT[prev.priority]:
            dedup[key] = replace(target, degree=_clamp(target.degree, bounds))

    ordered = sorted(dedup.values(), key=lambda t: (t.measure, t.beat))

    # Bridge Do -> Ti targets in low registers with a Re/Mi target.
    bridge_degree = _clamp(2 if rng.next() < 0.5 else 3, bounds)
    if register is not None and register.low_octave <= 3:
        _insert_bridges(dedup, ordered, bridge_degree)

    plan = PhrasePlan(
        direction=direction,
        peak_measure=peak_measure,
        peak_degree=peak_degree,
        start_degree=start,
        cadence_degrees=cadence_degrees,
        targets=sorted(dedup.values(), key=lambda t: (t.measure, t.beat)),
    )
    logger.debug(
        "[phrase-plan] direction=%s start=%d peakM=%d peakDeg=%d cadence=%s targets=%s",
        plan.direction,
        plan.start_degree,
        plan.peak_measure,
        plan.peak_degree,
        plan.cadence_degrees,
        "|".join(f"{t.measure}.{t.beat}:{t.degree}:{t.priority}" for t in plan.targets),
    )
    return plan


def _insert_bridges(
    dedup: Dict[Tuple[int, float], PhraseTarget],
    ordered: Sequence[PhraseTarget],
    bridge_degree: int,
) -> None:
    def upsert(measure: int, beat: float) -> None:
        key = (measure, float(beat))
        existing = dedup.get(key)
        if existing is None:
            dedup[key] = PhraseTarget(measure, beat, bridge_degree, "medium")
            return
        priority = "high" if existing.priority == "high" else "medium"
        dedup[key] = replace(existing, degree=bridge_degree, priority=priority)

    for prev, current in zip(ordered, ordered[1:]):
        if prev.degree != 1 or current.degree != 7:
            continue
        if prev.measure < current.measure:
            upsert(min(current.measure - 1, prev.measure + 1), 1)
        elif prev.measure == current.measure and prev.beat + 1 < current.beat:
            upsert(prev.measure, prev.beat + 1)
        else:
            key = (current.measure, float(current.beat))
            dedup[key] = replace(current, degree=bridge_degree)
