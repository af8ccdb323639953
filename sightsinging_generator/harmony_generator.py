"""Functional harmony generator producing the chord spine of an exercise.

The spine contains one :class:`~sightsinging_generator.models.HarmonyEvent`
per harmonic slot (two per measure).  Chord roots are chosen by a weighted
random walk over the diatonic triads reachable on the pitch-class adjacency
graph, nudged by classical tonal function: tonic (T), predominant (PD) and
dominant (D).  The end of every phrase is then overwritten with a fixed
cadence formula so the harmonic close is always valid regardless of where the
walk wandered.

Example
-------
>>> from sightsinging_generator.models import ExerciseSpec
>>> from sightsinging_generator.rng import SeededRng
>>> from sightsinging_generator.tonnetz import build_tonnetz
>>> spine = build_harmony_spine(ExerciseSpec(), build_tonnetz("C"), SeededRng(1))
>>> [event.degree for event in spine][-2:]
[5, 1]
"""

# 2026-10-02: Replaced the pop-progression lookup and BLSTM predictor with a
# functional walk over the adjacency graph.  Transition weights favour
# T->PD->D->T motion and penalise (rather than forbid) retrograde moves
# outside the cadence window.
# 2026-10-09: Cadence tails are drawn per phrase so multi-phrase exercises
# end each phrase with the progression requested for it.

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence, Tuple

from . import KEY_TO_PC
from .models import ExerciseSpec, HarmonyEvent
from .note_utils import chord_for_degree, quality_for_degree
from .rng import MAX_SAFE_INTEGER, SeededRng
from .tonnetz import TonnetzGraph

__all__ = [
    "CADENCE_TAIL_PATTERNS",
    "build_harmony_spine",
    "degree_to_role",
    "allowed_role_transition",
    "cadence_role_requirement",
    "phrase_stage_for_slot",
    "slot_beats_for_meter",
    "weighted_pick",
]

logger = logging.getLogger(__name__)

# Three-slot progressions forced onto the end of each phrase.
CADENCE_TAIL_PATTERNS: Dict[str, List[List[int]]] = {
    "authentic": [[2, 5, 1], [1, 5, 1], [4, 5, 1]],
    "plagal": [[1, 4, 1], [6, 4, 1]],
    "half": [[4, 1, 5], [5, 1, 5]],
}

# Multipliers applied to a candidate transition.
_W_ILLEGAL_TRANSITION = 0.08
_W_T_TO_PD = 1.45
_W_PD_TO_D = 1.6
_W_D_TO_T = 1.75
_W_X_ROLE = 0.55
_W_REQUIRED_ROLE = 2.2
_W_OVERLAP_PER_TONE = 0.2


def degree_to_role(degree: int) -> str:
    """Return the tonal function of a scale degree.

    Degrees 1 and 6 are tonic, 2 and 4 predominant, 5 and 7 dominant.  The
    mediant is classified ``X`` (ambiguous) in both modes.
    """

    d = (degree - 1) % 7 + 1
    if d in (1, 6):
        return "T"
    if d in (2, 4):
        return "PD"
    if d in (5, 7):
        return "D"
    return "X"


def allowed_role_transition(prev_role: str, next_role: str) -> bool:
    """Return ``True`` when ``prev_role -> next_role`` follows tonal syntax."""

    if prev_role == "PD":
        return next_role in ("D", "PD", "X")
    if prev_role == "D":
        return next_role in ("T", "D", "X")
    return True


def cadence_role_requirement(cadence: str, local_slot: int, slots_per_phrase: int) -> Optional[str]:
    """Return the function the cadence demands at ``local_slot`` (or ``None``)."""

    last = slots_per_phrase - 1
    penult = max(0, last - 1)
    if cadence == "half":
        return "D" if local_slot == last else None
    if cadence == "plagal":
        if local_slot == penult:
            return "PD"
        return "T" if local_slot == last else None
    if local_slot == penult:
        return "D"
    return "T" if local_slot == last else None


def phrase_stage_for_slot(cadence: str, local_slot: int, slots_per_phrase: int) -> str:
    """Classify ``local_slot`` as ``opening``, ``middle``, ``preCadence`` or ``cadence``."""

    cadence_slots = 1 if cadence == "half" else 2
    if local_slot <= 1:
        return "opening"
    if local_slot >= slots_per_phrase - cadence_slots:
        return "cadence"
    if local_slot >= max(0, slots_per_phrase - cadence_slots - 2):
        return "preCadence"
    return "middle"


def slot_beats_for_meter(beats_per_measure: int) -> List[float]:
    """Return the beats carrying a harmony change in one measure."""

    if beats_per_measure == 2:
        return [1, 2]
    return [1, 1 + beats_per_measure / 2]


def weighted_pick(items: Sequence[Tuple[int, float]], rng: SeededRng) -> Optional[int]:
    """Draw one item from ``(item, weight)`` pairs; ``None`` if no weight is positive."""

    positive = [(item, weight) for item, weight in items if weight > 0]
    if not positive:
        return None
    total = sum(weight for _, weight in positive)
    cursor = rng.next() * total
    for item, weight in positive:
        cursor -= weight
        if cursor <= 0:
            return item
    return positive[-1][0]


def build_harmony_spine(spec: ExerciseSpec, tonnetz: TonnetzGraph, rng: SeededRng) -> List[HarmonyEvent]:
    """Return one chord event per harmonic slot for the whole exercise.

    Parameters
    ----------
    spec:
        Exercise description providing key, mode, meter and phrase cadences.
    tonnetz:
        Adjacency graph defining which chord roots are "near" each other.
    rng:
        Random source.  The walk and the cadence-tail choice both draw from
        it so the spine is reproducible for a given seed.

    Returns
    -------
    list[HarmonyEvent]
        Events ordered by slot, covering every measure contiguously.
    """

    beats_per_measure = spec.beats_per_measure
    slot_beats = slot_beats_for_meter(beats_per_measure)
    slots_per_measure = len(slot_beats)
    phrase_count = max(1, len(spec.phrases))
    total_measures = max(1, spec.phrase_length_measures * phrase_count)
    total_slots = max(2, total_measures * slots_per_measure)
    slots_per_phrase = max(2, spec.phrase_length_measures * slots_per_measure)
    tonic_pc = KEY_TO_PC.get(spec.key, 0)

    degree_to_root: Dict[int, int] = {}
    root_to_degree: Dict[int, int] = {}
    chord_by_root: Dict[int, Tuple[int, int, int]] = {}
    for degree in range(1, 8):
        chord = chord_for_degree(tonic_pc, spec.mode, degree)
        degree_to_root[degree] = chord[0]
        root_to_degree[chord[0]] = degree
        chord_by_root[chord[0]] = chord
    diatonic_roots = list(chord_by_root)

    transition_map: Dict[int, List[int]] = {}
    for src in diatonic_roots:
        targets = {src}
        for dst in diatonic_roots:
            if dst in tonnetz.one_step[src] or dst in tonnetz.two_step[src]:
                targets.add(dst)
        transition_map[src] = sorted(targets)

    def degree_of(root: int) -> int:
        return root_to_degree.get(root, 1)

    def overlap_weight(a: int, b: int) -> float:
        shared = len(set(chord_by_root.get(a, ())) & set(chord_by_root.get(b, ())))
        return 1 + shared * _W_OVERLAP_PER_TONE

    def cadence_fallback_root(required_role: str, prev_root: int) -> int:
        targets = [root for root in diatonic_roots if degree_to_role(degree_of(root)) == required_role]
        if not targets:
            return tonic_pc
        for reach in (tonnetz.one_step, tonnetz.two_step):
            near = [root for root in targets if root in reach[prev_root]]
            if near:
                return near[0]
        return targets[0]

    root_path: List[int] = [tonic_pc]
    for slot in range(1, total_slots):
        prev_root = root_path[slot - 1]
        prev_role = degree_to_role(degree_of(prev_root))
        phrase_index = min(phrase_count - 1, slot // slots_per_phrase)
        cadence = spec.phrases[phrase_index].cadence if spec.phrases else "authentic"
        local_slot = slot % slots_per_phrase
        stage = phrase_stage_for_slot(cadence, local_slot, slots_per_phrase)
        required_role = cadence_role_requirement(cadence, local_slot, slots_per_phrase)
        strict_window = stage in ("preCadence", "cadence")

        raw_candidates = rng.shuffle(transition_map.get(prev_root, diatonic_roots))
        scored: List[Tuple[int, float]] = []
        for candidate in raw_candidates:
            role = degree_to_role(degree_of(candidate))
            transition_ok = allowed_role_transition(prev_role, role)
            if required_role and role != required_role:
                continue
            if not transition_ok and strict_window:
                continue
            weight = 1.0
            if not transition_ok:
                weight *= _W_ILLEGAL_TRANSITION
            if prev_role == "T" and role == "PD":
                weight *= _W_T_TO_PD
            elif prev_role == "PD" and role == "D":
                weight *= _W_PD_TO_D
            elif prev_role == "D" and role == "T":
                weight *= _W_D_TO_T
            elif prev_role == role:
                if role in ("T", "PD"):
                    weight *= 1.05 if stage == "opening" else 0.5
                elif role == "D":
                    weight *= 0.6 if stage == "opening" else 0.3
            if role == "X":
                weight *= _W_X_ROLE
            if required_role and role == required_role:
                weight *= _W_REQUIRED_ROLE
            weight *= overlap_weight(prev_root, candidate)
            scored.append((candidate, weight))

        chosen = weighted_pick(scored, rng)
        forced_fallback = chosen is None
        if chosen is None:
            if required_role:
                chosen = cadence_fallback_root(required_role, prev_root)
            else:
                fallback = transition_map.get(prev_root, diatonic_roots)
                chosen = fallback[0] if fallback else tonic_pc
        root_path.append(chosen)

        logger.debug(
            "[harmony] phrase=%d slot=%d/%d m=%d b=%s stage=%s degree=%d candidates=%d->%d forcedFallback=%s",
            phrase_index + 1,
            local_slot + 1,
            slots_per_phrase,
            slot // slots_per_measure + 1,
            slot_beats[slot % slots_per_measure],
            stage,
            degree_of(chosen),
            len(raw_candidates),
            len(scored),
            forced_fallback,
        )

    for phrase_index in range(phrase_count):
        cadence = spec.phrases[phrase_index].cadence if spec.phrases else "authentic"
        patterns = CADENCE_TAIL_PATTERNS.get(cadence, CADENCE_TAIL_PATTERNS["authentic"])
        if slots_per_phrase < 3:
            continue
        pick = (rng.int(0, MAX_SAFE_INTEGER) + phrase_index * 17) % len(patterns)
        pattern = patterns[pick]
        cadence_start = phrase_index * slots_per_phrase + slots_per_phrase - 3
        for offset, degree in enumerate(pattern):
            slot = cadence_start + offset
            if 0 <= slot < len(root_path):
                root_path[slot] = degree_to_root.get(degree, tonic_pc)
        logger.debug(
            "[harmony-cadence-tail] phrase=%d cadence=%s pattern=%s",
            phrase_index + 1,
            cadence,
            pattern,
        )

    events: List[HarmonyEvent] = []
    for index, root in enumerate(root_path):
        degree = degree_of(root)
        events.append(
            HarmonyEvent(
                measure=index // slots_per_measure + 1,
                beat=slot_beats[index % slots_per_measure],
                degree=degree,
                root_pc=root,
                chord_pcs=chord_by_root.get(root, chord_for_degree(tonic_pc, spec.mode, degree)),
                quality=quality_for_degree(spec.mode, degree),
            )
        )
    return events
