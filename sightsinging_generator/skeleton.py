"""Structural skeleton selection.

The skeleton fixes one chord tone on every strong anchor onset of a phrase
(beats 1 and 3 of the rhythm grid).  Each slot is filled greedily by
minimising a cost that combines

* distance to an arch-shaped *envelope* target across the phrase,
* voice-leading distance from the previous skeleton pitch,
* endpoint preferences (open on Do/Mi, close on Do or Mi),
* climax shaping (approach from below, recover downward afterwards),
* leap recovery (a leap must be followed by a step the other way).

After the greedy walk a post-pass makes the chosen climax slot the unique
highest pitch of the phrase.

Example
-------
>>> resolve_cadence_tail("half")
(2, 5)
"""

# Modification Summary
# --------------------
# * Illegal degree/interval/transition filtering goes through
#   :func:`pitch_selection.filter_candidates` so the relaxation tier reached
#   while building the skeleton is reported with the exercise.
# * Equal-cost candidates are ordered by a seeded unit draw after the
#   voice-leading tie-break, keeping the walk deterministic per seed.

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from . import KEY_TO_PC
from .cadence_policy import CadenceCandidate, apply_cadence_policy
from .models import FunctionTag, HarmonyEvent, MelodyEvent, PhraseSpec, SelectionStep, SelectionTrace
from .note_utils import (
    chord_for_degree,
    chord_tone_candidates,
    collect_midis_from_pcs,
    degree_candidates,
    key_scale_pcs,
    midi_to_degree,
    nearest_chord_tone,
    nearest_pc_within_leap_cap,
    pitch_name,
    quality_for_degree,
)
from .phrase_grid import PhraseGridPlan
from .phrase_planner import PhrasePlan
from .pitch_selection import IllegalRules, filter_candidates
from .rng import deterministic_unit

__all__ = [
    "StructuralSlot",
    "SkeletonResult",
    "resolve_cadence_tail",
    "active_harmony_for_beat",
    "resolve_harmony_event",
    "chord_id_for",
    "find_climax_index",
    "choose_climax_index",
    "build_skeleton",
]

logger = logging.getLogger(__name__)

# Cost weights.
W_ENVELOPE = 1.3
W_VOICE_LEADING = 0.42
W_NON_CHORD = 9
W_UP_AFTER_CLIMAX = 1.8
W_NEAR_CEILING = 4
W_FINAL_NOT_DO_MI = 120
W_FINAL_SOL = 220
W_HALF_FINAL_SOL = -12
W_HALF_FINAL_OTHER = 7
W_START_DO = -5
W_START_SOL = 5
W_START_LOCKED_MISS = 10000
W_LEAP_INTO_CLIMAX = -6
W_STEP_INTO_CLIMAX = -2
W_CLIMAX_LEAP = -5
W_LEAP_FROM_PEAK = 14
W_DROP_FROM_PEAK = 24
W_STEP_FROM_PEAK = -7
W_UNRECOVERED_LEAP = 12

ENVELOPE_AMPLITUDE = 6
CLIMAX_LEAPS = (7, 8, 9, 12)

_RUN_TEMPLATES = ("SMOOTH_BEAT1", "RUN_EEEEH", "RUN_HEEEE")
_SMOOTH_TEMPLATES = ("SMOOTH_BEAT1", "SMOOTH_BEAT2", "SMOOTH_BEAT3", "RUN_EEEEH", "RUN_HEEEE")


@dataclass
class StructuralSlot:
    """One anchor onset of the phrase awaiting a skeleton pitch."""

    index: int
    local_measure: int
    measure: int
    beat: float
    harmony: HarmonyEvent
    envelope_target: float
    duration_to_next: float = 1.0
    cadence_slot: Optional[str] = None


@dataclass
class SkeletonResult:
    slots: List[StructuralSlot]
    notes: List[MelodyEvent]
    trace: List[SelectionTrace]
    climax_index: int
    end_midi: int
    relaxation_tier: int = 0
    relaxed_rules: List[str] = field(default_factory=list)


def resolve_cadence_tail(cadence: str) -> Tuple[int, int]:
    """Return the ``(penultimate, final)`` chord degrees closing a phrase."""

    if cadence == "plagal":
        return 4, 1
    if cadence == "half":
        return 2, 5
    return 5, 1


def active_harmony_for_beat(harmony: Sequence[HarmonyEvent], measure: int, beat: float) -> HarmonyEvent:
    """Return the chord sounding at ``(measure, beat)``."""

    in_measure = sorted((event for event in harmony if event.measure == measure), key=lambda e: e.beat)
    if not in_measure:
        return harmony[-1]
    on_or_before = [event for event in in_measure if event.beat <= beat]
    return on_or_before[-1] if on_or_before else in_measure[0]


def resolve_harmony_event(
    harmony: Sequence[HarmonyEvent],
    measure: int,
    beat: float,
    phrase_length_measures: int,
    beats_per_measure: int,
    phrase_spec: PhraseSpec,
    tonic_pc: int,
    mode: str,
) -> HarmonyEvent:
    """Return the chord for a slot, forcing the cadence tail on the last beats.

    The last two beats of a phrase always carry the cadence chords
    (V-I, IV-I or ii-V) regardless of what the harmony spine chose there.
    """

    local_measure = (measure - 1) % phrase_length_measures + 1
    if local_measure == phrase_length_measures and beats_per_measure >= 2:
        penult, final = resolve_cadence_tail(phrase_spec.cadence)
        degree = None
        if beat == beats_per_measure - 1:
            degree = penult
        elif beat == beats_per_measure:
            degree = final
        if degree is not None:
            chord = chord_for_degree(tonic_pc, mode, degree)
            return HarmonyEvent(measure, beat, degree, chord[0], chord, quality_for_degree(mode, degree))
    return active_harmony_for_beat(harmony, measure, beat)


def chord_id_for(event: HarmonyEvent) -> str:
    return f"m{event.measure}-b{event.beat:g}-d{event.degree}"


def find_climax_index(slots: Sequence[StructuralSlot], peak_measure: int) -> int:
    """Return the slot nearest beat 1 of the planned peak measure."""

    for slot in slots:
        if slot.local_measure == peak_measure and slot.beat == 1:
            return slot.index
    best = 0
    best_distance = float("inf")
    for slot in slots:
        distance = abs(slot.local_measure - peak_measure) * 4 + abs(slot.beat - 1)
        if distance < best_distance:
            best, best_distance = slot.index, distance
    return best


def _runs_into_climax(slot: StructuralSlot, grid: Optional[PhraseGridPlan], phrase_start_measure: int) -> bool:
    if grid is None:
        return False
    plan = grid.measure_plan(slot.measure)
    if plan is not None:
        if plan.template_id in _RUN_TEMPLATES:
            return True
        if plan.template_id == "SMOOTH_BEAT2" and slot.beat == 3:
            return True
        if plan.template_id == "SMOOTH_BEAT3" and slot.beat == 4:
            return True
    if slot.measure > phrase_start_measure:
        prev_plan = grid.measure_plan(slot.measure - 1)
        if prev_plan is not None and prev_plan.template_id in _SMOOTH_TEMPLATES:
            return True
    return False


def choose_climax_index(
    slots: Sequence[StructuralSlot],
    peak_measure: int,
    grid: Optional[PhraseGridPlan] = None,
    phrase_start_measure: int = 1,
) -> int:
    """Pick the climax slot, preferring long notes reached by a smooth run.

    Slots near the planned peak measure and near beat 3 score best; a note of
    two beats or more and a slot entered through an eighth run earn bonuses
    while the final slot is penalised.
    """

    if not slots:
        return 0

    def score(slot: StructuralSlot) -> float:
        value = abs(slot.local_measure - peak_measure) * 10 + abs(slot.beat - 3) * 2
        if slot.duration_to_next >= 2:
            value -= 8
        if _runs_into_climax(slot, grid, phrase_start_measure):
            value -= 5
        if slot.index == len(slots) - 1:
            value += 6
        return value

    best = find_climax_index(slots, peak_measure)
    best_score = score(slots[best])
    for slot in slots:
        value = score(slot)
        if value < best_score:
            best, best_score = slot.index, value
    return best


def _build_slots(
    grid: Optional[PhraseGridPlan],
    harmony: Sequence[HarmonyEvent],
    phrase_spec: PhraseSpec,
    phrase_start_measure: int,
    phrase_length_measures: int,
    beats_per_measure: int,
    tonic_pc: int,
    mode: str,
    range_min: int,
    range_max: int,
) -> List[StructuralSlot]:
    final_beat = 3 if beats_per_measure >= 3 else 1
    penult_beat = 1 if final_beat == 3 else None
    positions: List[Tuple[int, float, Optional[str]]] = []
    for local in range(1, phrase_length_measures + 1):
        measure = phrase_start_measure + local - 1
        plan = grid.measure_plan(measure) if grid is not None else None
        anchors = list(plan.anchor_onsets) if plan is not None and plan.anchor_onsets else []
        if not anchors:
            anchors = [beat for beat in (1, 3) if beat <= beats_per_measure]
        for beat in anchors:
            tag = None
            if local == phrase_length_measures:
                if beat == final_beat:
                    tag = "final"
                elif penult_beat is not None and beat == penult_beat:
                    tag = "penultimate"
            positions.append((local, float(beat), tag))

    count = max(1, phrase_length_measures * (2 if beats_per_measure >= 3 else 1))
    center = (range_min + range_max) / 2
    end = phrase_length_measures * beats_per_measure
    slots: List[StructuralSlot] = []
    for index, (local, beat, tag) in enumerate(positions):
        measure = phrase_start_measure + local - 1
        t = index / (count - 1) if count > 1 else 0.0
        if index + 1 < len(positions):
            next_local, next_beat, _ = positions[index + 1]
            next_position = (next_local - 1) * beats_per_measure + next_beat - 1
        else:
            next_position = end
        position = (local - 1) * beats_per_measure + beat - 1
        slots.append(
            StructuralSlot(
                index=index,
                local_measure=local,
                measure=measure,
                beat=beat,
                harmony=resolve_harmony_event(
                    harmony, measure, beat, phrase_length_measures, beats_per_measure, phrase_spec, tonic_pc, mode
                ),
                envelope_target=center + ENVELOPE_AMPLITUDE * math.sin(math.pi * t),
                duration_to_next=round(max(0.5, next_position - position), 3),
                cadence_slot=tag,
            )
        )
    return slots


def _endpoint_cost(
    slot: StructuralSlot,
    degree: int,
    is_last: bool,
    cadence: str,
    start_locked: bool,
    start_degree: int,
) -> float:
    cost = 0.0
    if is_last:
        if cadence != "half":
            if degree not in (1, 3):
                cost += W_FINAL_NOT_DO_MI
            if degree == 5:
                cost += W_FINAL_SOL
        else:
            cost += W_HALF_FINAL_SOL if degree == 5 else W_HALF_FINAL_OTHER
    if slot.index == 0:
        if start_locked:
            cost += 0 if degree == start_degree else W_START_LOCKED_MISS
        elif degree == 1:
            cost += W_START_DO
        elif degree == 5:
            cost += W_START_SOL
    return cost


def _climax_transition_cost(
    index: int,
    climax_index: int,
    midi: int,
    prev_midi: int,
    envelope: float,
    prev_is_highest: bool,
) -> float:
    motion = midi - prev_midi
    cost = 0.0
    if index < climax_index:
        if index >= climax_index - 1 and motion >= 3 and abs(midi - envelope) <= 2:
            cost += W_LEAP_INTO_CLIMAX
        if 1 <= motion <= 2:
            cost += W_STEP_INTO_CLIMAX
    elif index == climax_index:
        if motion in CLIMAX_LEAPS:
            cost += W_CLIMAX_LEAP
    elif index == climax_index + 1 and prev_is_highest:
        if abs(motion) >= 3:
            cost += W_LEAP_FROM_PEAK
        if motion < -7:
            cost += W_DROP_FROM_PEAK
        if -2 <= motion < 0:
            cost += W_STEP_FROM_PEAK
    return cost


def _leap_recovery_cost(prev_interval: Optional[int], motion: int) -> float:
    if prev_interval is None or abs(prev_interval) < 3:
        return 0.0
    opposite_step = 1 <= abs(motion) <= 2 and (motion > 0) != (prev_interval > 0)
    return 0.0 if opposite_step else W_UNRECOVERED_LEAP


def _legal_climax_pitch(
    chord_pcs: Sequence[int],
    key_scale: Sequence[int],
    rules: IllegalRules,
    range_min: int,
    range_max: int,
    cap: int,
    neighbours: Sequence[Optional[int]],
    floor: Optional[int] = None,
) -> Optional[int]:
    """Return the highest (or, with ``floor``, lowest above it) usable chord tone."""

    illegal = set(rules.degrees)
    pool = [
        midi
        for midi in chord_tone_candidates(chord_pcs, range_min, range_max)
        if midi_to_degree(midi, key_scale) not in illegal
        and all(other is None or abs(midi - other) <= cap for other in neighbours)
    ]
    if floor is not None:
        above = [midi for midi in pool if midi > floor]
        return min(above) if above else None
    return max(pool) if pool else None


def build_skeleton(
    harmony: Sequence[HarmonyEvent],
    phrase_plan: PhrasePlan,
    phrase_spec: PhraseSpec,
    phrase_index: int,
    phrase_length_measures: int,
    beats_per_measure: int,
    key: str,
    mode: str,
    range_min: int,
    range_max: int,
    max_leap: int,
    seed: int = 0,
    prev_midi: Optional[int] = None,
    start_degree_locked: bool = False,
    rules: Optional[IllegalRules] = None,
    grid: Optional[PhraseGridPlan] = None,
) -> SkeletonResult:
    """Choose the structural pitches of one phrase.

    Parameters
    ----------
    harmony:
        Full harmony spine of the exercise (absolute measures).
    phrase_plan:
        Contour plan; supplies the start degree and the peak measure.
    phrase_spec:
        Cadence type of the phrase.
    phrase_index:
        Zero-based phrase position; the phrase starts at measure
        ``phrase_index * phrase_length_measures + 1``.
    key, mode, range_min, range_max, max_leap:
        Tonality, register bounds and leap cap.
    seed:
        Tie-break seed for equal-cost candidates.
    prev_midi:
        Last pitch of the previous phrase (or the variant's start pitch).
    start_degree_locked:
        When ``True`` the first slot must carry ``phrase_plan.start_degree``.
    rules:
        User illegal rules; relaxed tier by tier when they leave nothing.
    grid:
        Rhythm grid of the phrase; its anchor onsets become the slots.

    Returns
    -------
    SkeletonResult
        Slots, skeleton notes tagged ``ANCHOR | STRUCTURAL`` and a selection
        trace per slot.
    """

    rules = rules or IllegalRules()
    tonic_pc = KEY_TO_PC.get(key, 0)
    key_scale = key_scale_pcs(tonic_pc, mode)
    key_id = f"{key}-{mode}"
    cap = max(1, int(max_leap))
    phrase_start_measure = phrase_index * phrase_length_measures + 1
    if prev_midi is None:
        prev_midi = max(range_min, min(range_max, 60))
    prev_midi = max(range_min, min(range_max, prev_midi))

    slots = _build_slots(
        grid,
        harmony,
        phrase_spec,
        phrase_start_measure,
        phrase_length_measures,
        beats_per_measure,
        tonic_pc,
        mode,
        range_min,
        range_max,
    )
    climax_index = choose_climax_index(slots, phrase_plan.peak_measure, grid, phrase_start_measure)
    key_candidates = collect_midis_from_pcs(key_scale, range_min, range_max)

    notes: List[MelodyEvent] = []
    trace: List[SelectionTrace] = []
    tier = 0
    relaxed: List[str] = []
    prev = prev_midi
    for i, slot in enumerate(slots):
        is_last = i == len(slots) - 1
        from_degree = midi_to_degree(prev, key_scale)
        prev_interval = notes[i - 1].midi - notes[i - 2].midi if i >= 2 else None
        prev_is_highest = i > 0 and all(note.midi <= prev for note in notes)
        steps: List[SelectionStep] = []

        candidates = chord_tone_candidates(slot.harmony.chord_pcs, range_min, range_max)
        if i == 0 and start_degree_locked:
            locked = degree_candidates(phrase_plan.start_degree, key_scale, range_min, range_max)
            if not locked and phrase_plan.start_degree == 1:
                low_octave = range_min // 12 - 1
                high_octave = range_max // 12 - 1
                locked = [(octave + 1) * 12 + tonic_pc for octave in range(low_octave, high_octave + 1)]
            candidates = locked or candidates
        elif i == 0:
            opening = [midi for midi in candidates if midi_to_degree(midi, key_scale) in (1, 3)]
            candidates = opening or candidates

        if slot.cadence_slot is not None:
            policy = apply_cadence_policy(
                phrase_spec.cadence,
                from_degree,
                [CadenceCandidate(midi, midi_to_degree(midi, key_scale)) for midi in candidates],
                slot.cadence_slot,
            )
            candidates = [c.midi for c in policy.candidates] or candidates
            steps.append(SelectionStep("cadencePolicy", len(candidates), policy.debug))

        filter_prev = prev if (i > 0 or phrase_index > 0) else None
        filtered = filter_candidates(filter_prev, candidates, key_scale, rules)
        steps.extend(filtered.steps)
        if filtered.exhausted:
            filtered = filter_candidates(filter_prev, key_candidates, key_scale, rules)
            steps.append(SelectionStep("relaxTier2", len(filtered.candidates), "ignored harmonyPreference"))
            if not filtered.exhausted:
                filtered.tier = max(filtered.tier, 2)
                filtered.relaxed_rules.append("harmonyPreference")
        if not filtered.exhausted:
            candidates = filtered.candidates
            tier = max(tier, filtered.tier)
            relaxed.extend(rule for rule in filtered.relaxed_rules if rule not in relaxed)

        if i > 0:
            within = [midi for midi in candidates if abs(midi - prev) <= cap]
            candidates = within or candidates
        if not candidates:
            candidates = [nearest_chord_tone(slot.harmony.chord_pcs, prev, range_min, range_max)]
        if i == climax_index + 1 and prev_is_highest:
            gentle = [midi for midi in candidates if 0 < prev - midi <= 4]
            candidates = gentle or candidates

        chord = set(slot.harmony.chord_pcs)

        def cost(midi: int) -> float:
            degree = midi_to_degree(midi, key_scale)
            motion = midi - prev
            value = W_ENVELOPE * abs(midi - slot.envelope_target)
            value += W_VOICE_LEADING * abs(motion)
            value += W_NON_CHORD if midi % 12 not in chord else 0
            if i > climax_index and motion > 0:
                value += W_UP_AFTER_CLIMAX * motion
            if i != climax_index and midi >= range_max - 1:
                value += W_NEAR_CEILING
            value += _endpoint_cost(slot, degree, is_last, phrase_spec.cadence, start_degree_locked, phrase_plan.start_degree)
            value += _climax_transition_cost(i, climax_index, midi, prev, slot.envelope_target, prev_is_highest)
            value += _leap_recovery_cost(prev_interval, motion)
            return value

        ranked = sorted(
            candidates,
            key=lambda midi: (cost(midi), abs(midi - prev), deterministic_unit(seed + midi * 7 + i)),
        )
        chosen = ranked[0]
        if i == climax_index:
            peak = _legal_climax_pitch(
                slot.harmony.chord_pcs, key_scale, rules, range_min, range_max, cap, [prev if i > 0 else None]
            )
            if peak is not None:
                chosen = peak
        if i > 0 and abs(chosen - prev) > cap:
            chosen = nearest_pc_within_leap_cap(chosen, prev, range_min, range_max, cap) or chosen

        steps.append(
            SelectionStep(
                "structuralSelect",
                len(candidates),
                f"envelopeTarget={slot.envelope_target:.2f} climaxIndex={climax_index}",
                pitch_name(chosen),
            )
        )
        trace.append(SelectionTrace(slot.measure, slot.beat, steps))
        notes.append(
            MelodyEvent(
                midi=chosen,
                measure=slot.measure,
                onset_beat=slot.beat,
                duration_beats=1,
                role="ChordTone",
                reason="structuralSkeleton_chordTone",
                chord_id=chord_id_for(slot.harmony),
                key_id=key_id,
                phrase_index=phrase_index + 1,
                tags=FunctionTag.ANCHOR | FunctionTag.STRUCTURAL,
            )
        )
        prev = chosen

    _shape_climax(notes, slots, climax_index, key_scale, rules, range_min, range_max, cap)

    logger.debug(
        "[skeleton] phrase=%d climax=%d notes=%s tier=%d",
        phrase_index + 1,
        climax_index,
        [note.midi for note in notes],
        tier,
    )
    return SkeletonResult(
        slots=slots,
        notes=notes,
        trace=trace,
        climax_index=climax_index,
        end_midi=notes[-1].midi if notes else prev_midi,
        relaxation_tier=tier,
        relaxed_rules=relaxed,
    )


def _shape_climax(
    notes: List[MelodyEvent],
    slots: Sequence[StructuralSlot],
    climax_index: int,
    key_scale: Sequence[int],
    rules: IllegalRules,
    range_min: int,
    range_max: int,
    cap: int,
) -> None:
    """Make the climax slot the unique highest skeleton pitch."""

    if not notes or climax_index >= len(notes):
        return
    slot = slots[climax_index]
    neighbours = [
        notes[climax_index - 1].midi if climax_index > 0 else None,
        notes[climax_index + 1].midi if climax_index + 1 < len(notes) else None,
    ]
    climax = notes[climax_index]
    peak = _legal_climax_pitch(slot.harmony.chord_pcs, key_scale, rules, range_min, range_max, cap, neighbours)
    if peak is not None and peak > climax.midi:
        climax.midi = peak

    others = [note.midi for j, note in enumerate(notes) if j != climax_index]
    if others and climax.midi <= max(others):
        raised = _legal_climax_pitch(
            slot.harmony.chord_pcs, key_scale, rules, range_min, range_max, 127, [], floor=max(others)
        )
        if raised is not None:
            climax.midi = raised

    for j, note in enumerate(notes):
        if j == climax_index or note.midi < climax.midi:
            continue
        chord_pcs = slots[j].harmony.chord_pcs
        below = [
            midi
            for midi in chord_tone_candidates(chord_pcs, range_min, climax.midi - 1)
            if midi_to_degree(midi, key_scale) not in rules.degrees
        ]
        if below:
            note.midi = min(below, key=lambda midi: abs(midi - note.midi))
            note.role = "ChordTone"
            note.non_harmonic_tone = False
