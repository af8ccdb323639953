"""Candidate filtering under the user's illegal degree/interval/transition rules.

When the rules leave no candidate the filter relaxes them one tier at a time:

* tier 0 - every rule applies;
* tier 1 - illegal transitions are ignored;
* tier 3 - illegal intervals are ignored as well, but only when that
  relaxation restores at least one stepwise option;
* tier 2 - the harmony preference is dropped so any key tone may be used
  (applied by the caller after the rule tiers).

Illegal degrees are never relaxed.  When nothing survives the result is
``exhausted`` and the caller decides whether to raise
:class:`~sightsinging_generator.errors.MelodyNoSolutionError`.

Example
-------
>>> rules = IllegalRules(degrees=[4])
>>> out = filter_candidates(60, [62, 65, 67], (0, 2, 4, 5, 7, 9, 11), rules)
>>> out.candidates, out.tier
([62, 67], 0)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence

from .errors import MelodyNoSolutionError
from .models import ExerciseSpec, IllegalTransition, SelectionStep
from .note_utils import collect_midis_from_pcs, midi_to_degree

__all__ = ["IllegalRules", "FilterResult", "filter_candidates", "check_feasibility"]

logger = logging.getLogger(__name__)

# Largest motion (a perfect fifth) the feasibility check accepts as singable.
MAX_FEASIBLE_MOTION = 7


@dataclass
class IllegalRules:
    """The three user rule sets bundled together."""

    degrees: List[int] = field(default_factory=list)
    intervals: List[int] = field(default_factory=list)
    transitions: List[IllegalTransition] = field(default_factory=list)

    @classmethod
    def from_spec(cls, spec: ExerciseSpec) -> "IllegalRules":
        return cls(
            list(spec.illegal_degrees),
            list(spec.illegal_intervals_semis),
            list(spec.illegal_transitions),
        )

    @property
    def empty(self) -> bool:
        return not (self.degrees or self.intervals or self.transitions)

    def to_error(self) -> MelodyNoSolutionError:
        return MelodyNoSolutionError(self.degrees, self.intervals, self.transitions)


@dataclass
class FilterResult:
    candidates: List[int]
    tier: int = 0
    relaxed_rules: List[str] = field(default_factory=list)
    steps: List[SelectionStep] = field(default_factory=list)

    @property
    def exhausted(self) -> bool:
        return not self.candidates


def _transition_blocked(prev_degree: int, degree: int, transitions: Iterable[IllegalTransition]) -> bool:
    # Either direction counts while searching; the repair passes apply the
    # rules directionally.
    for rule in transitions:
        if rule.mode != "adjacent":
            continue
        if (rule.a == prev_degree and rule.b == degree) or (rule.b == prev_degree and rule.a == degree):
            return True
    return False


def _apply_tier(
    prev_midi: Optional[int],
    candidates: Sequence[int],
    key_scale: Sequence[int],
    rules: IllegalRules,
    use_transitions: bool,
    use_intervals: bool,
) -> List[int]:
    illegal_degrees = set(rules.degrees)
    illegal_intervals = set(rules.intervals)
    prev_degree = midi_to_degree(prev_midi, key_scale) if prev_midi is not None else None
    kept = []
    for midi in candidates:
        degree = midi_to_degree(midi, key_scale)
        if degree in illegal_degrees:
            continue
        if prev_midi is not None:
            if use_intervals and abs(midi - prev_midi) in illegal_intervals:
                continue
            if use_transitions and _transition_blocked(prev_degree, degree, rules.transitions):
                continue
        kept.append(midi)
    return kept


def filter_candidates(
    prev_midi: Optional[int],
    candidates: Sequence[int],
    key_scale: Sequence[int],
    rules: IllegalRules,
    chord_pcs: Optional[Sequence[int]] = None,
) -> FilterResult:
    """Return the candidates legal after ``prev_midi``, relaxing as needed.

    Parameters
    ----------
    prev_midi:
        Previous pitch, or ``None`` for the first note (only degree rules
        apply then).
    candidates:
        Pitches under consideration, already limited to the register.
    key_scale:
        Pitch classes of the key.  Chromatic candidates are pruned first.
    rules:
        Illegal rule sets.
    chord_pcs:
        When given, the surviving pitches are narrowed to chord tones.  An
        empty chord intersection keeps the key tones and reports tier 2.
    """

    scale = set(key_scale)
    steps = [SelectionStep("start", len(candidates), "candidatesInRange")]
    key_candidates = [midi for midi in candidates if midi % 12 in scale]
    steps.append(SelectionStep("pruneKey", len(key_candidates), "candidates∩keyPitchSet"))

    tier = 0
    relaxed: List[str] = []
    kept = _apply_tier(prev_midi, key_candidates, key_scale, rules, True, True)
    steps.append(
        SelectionStep("pruneIllegalTier0", len(kept), "illegalDegrees+illegalIntervals+illegalTransitions")
    )

    if not kept:
        tier = 1
        relaxed.append("illegalTransitions")
        kept = _apply_tier(prev_midi, key_candidates, key_scale, rules, False, True)
        steps.append(SelectionStep("relaxTier1", len(kept), "ignored illegalTransitions"))

    if not kept and prev_midi is not None:
        degrees_only = _apply_tier(prev_midi, key_candidates, key_scale, rules, False, False)
        if any(abs(midi - prev_midi) <= 2 for midi in degrees_only):
            tier = 3
            relaxed.append("illegalIntervalsSemis")
            kept = degrees_only
            steps.append(
                SelectionStep("relaxTier3", len(kept), "relaxed illegalIntervals to preserve stepwise options")
            )

    if not kept:
        steps.append(SelectionStep("noSolution", 0, "constraints_too_strict"))
        return FilterResult([], tier, relaxed, steps)

    if chord_pcs is not None:
        chord = {pc % 12 for pc in chord_pcs}
        chord_kept = [midi for midi in kept if midi % 12 in chord]
        steps.append(SelectionStep("pruneHarmony", len(chord_kept), "candidates∩harmonyPitchSet"))
        if chord_kept:
            kept = chord_kept
        else:
            tier = max(tier, 2)
            relaxed.append("harmonyPreference")

    return FilterResult(kept, tier, relaxed, steps)


def check_feasibility(
    rules: IllegalRules,
    range_min: int,
    range_max: int,
    key_scale: Sequence[int],
) -> FilterResult:
    """Check that the rules admit at least one singable melodic motion.

    Every legal key tone in the register is tried as a previous pitch and the
    relaxation tiers are run against the rest of the register.  The check
    succeeds as soon as some pair of different legal pitches lies at most a
    perfect fifth apart.

    Returns
    -------
    FilterResult
        The least relaxed outcome found, so callers can report the tier.

    Raises
    ------
    MelodyNoSolutionError
        When no such motion exists.
    """

    register = collect_midis_from_pcs(key_scale, range_min, range_max)
    starts = _apply_tier(None, register, key_scale, rules, False, False)
    best: Optional[FilterResult] = None
    for start in starts:
        nearby = [midi for midi in register if midi != start and abs(midi - start) <= MAX_FEASIBLE_MOTION]
        result = filter_candidates(start, nearby, key_scale, rules)
        if result.exhausted:
            continue
        if best is None or result.tier < best.tier:
            best = result
        if best.tier == 0:
            break
    if best is None:
        logger.warning(
            "No legal motion: degrees=%s intervals=%s transitions=%d",
            rules.degrees,
            rules.intervals,
            len(rules.transitions),
        )
        raise rules.to_error()
    logger.debug("feasibility check tier=%d relaxed=%s", best.tier, best.relaxed_rules)
    return best
