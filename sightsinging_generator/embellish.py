"""Fill a phrase's rhythm grid with pitches between the skeleton anchors.

Every onset of the :class:`~sightsinging_generator.phrase_grid.PhraseGridPlan`
receives an attack.  Anchor onsets (beats 1 and 3, the climax onset and the
whole cadence measure) take their pitch from the skeleton; the onsets between
two anchors are composed as a *span* whose intent depends on the interval
between its ends:

``neighbor_return``
    Both anchors share a pitch: alternate a step above and below.
``step_chain``
    A step apart: fill by step.
``third_bridge``
    A third apart: allow one skip inside the span.
``smoothing_run``
    Anything wider: interpolate evenly toward the landing anchor.

Example
-------
>>> from sightsinging_generator.models import HarmonyEvent
>>> chord = HarmonyEvent(1, 1, 1, 0, (0, 4, 7), "major")
>>> build_weak_beat_non_harmonic(60, 64, chord, (0, 2, 4, 5, 7, 9, 11), 48, 84, 3)
(62, 'embellish_passingTone')
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from . import KEY_TO_PC
from .models import ExerciseSpec, FunctionTag, HarmonyEvent, MelodyEvent, PhraseSpec, SelectionStep, SelectionTrace
from .note_utils import (
    chord_tone_candidates,
    collect_midis_from_pcs,
    key_scale_pcs,
    midi_to_degree,
    nearest_chord_tone,
    nearest_pc_within_leap_cap,
    next_scale_step,
)
from .phrase_grid import PhraseGridPlan
from .repair import attack_events, retune_event
from .rng import deterministic_unit
from .skeleton import SkeletonResult, chord_id_for, resolve_harmony_event

__all__ = ["GridSlot", "build_weak_beat_non_harmonic", "realize_phrase_grid_pitches"]

logger = logging.getLogger(__name__)

_EPS = 1e-3


@dataclass(frozen=True)
class GridSlot:
    measure: int
    onset: float
    is_anchor: bool
    is_climax: bool
    is_cadence: bool

    @property
    def key(self) -> Tuple[int, float]:
        return self.measure, round(self.onset, 3)

    @property
    def structural(self) -> bool:
        return self.is_anchor or self.is_climax or self.is_cadence


def _is_strong_beat(beat: float) -> bool:
    return beat == 1 or beat == 3


def build_weak_beat_non_harmonic(
    prev_midi: int,
    next_structural_midi: Optional[int],
    harmony: HarmonyEvent,
    key_scale: Sequence[int],
    range_min: int,
    range_max: int,
    seed: int,
    prev_harmony: Optional[HarmonyEvent] = None,
) -> Optional[Tuple[int, str]]:
    """Return ``(midi, reason)`` for a non-harmonic tone, or ``None``.

    Passing, neighbour, suspension and escape tones are considered; one of
    the applicable figures is picked with a seeded draw.  A suspension needs
    ``prev_harmony``: the held note must belong to that chord and the
    harmony must change under it.
    """

    if next_structural_midi is None:
        return None
    chord = set(harmony.chord_pcs)
    options: List[Tuple[int, str]] = []

    direction = (next_structural_midi > prev_midi) - (next_structural_midi < prev_midi)
    if direction:
        step = next_scale_step(prev_midi, direction, key_scale, range_min, range_max)
        if step is not None and abs(next_structural_midi - step) <= 2 and step % 12 not in chord:
            options.append((step, "embellish_passingTone"))

    if next_structural_midi == prev_midi:
        up = next_scale_step(prev_midi, 1, key_scale, range_min, range_max)
        down = next_scale_step(prev_midi, -1, key_scale, range_min, range_max)
        pick = up if deterministic_unit(seed) < 0.5 else down
        if pick is not None and pick % 12 not in chord:
            options.append((pick, "embellish_neighborTone"))

    held_over = (
        prev_harmony is not None
        and tuple(prev_harmony.chord_pcs) != tuple(harmony.chord_pcs)
        and prev_midi % 12 in prev_harmony.chord_pcs
    )
    if held_over and prev_midi % 12 not in chord and 0 < prev_midi - next_structural_midi <= 2:
        options.append((prev_midi, "embellish_suspension"))

    escape_dir = 1 if deterministic_unit(seed + 11) < 0.5 else -1
    step = next_scale_step(prev_midi, escape_dir, key_scale, range_min, range_max)
    if step is not None:
        leap_to_next = next_structural_midi - step
        first_motion = step - prev_midi
        opposite = (first_motion > 0) != (leap_to_next > 0)
        if abs(leap_to_next) >= 3 and opposite and step % 12 not in chord:
            options.append((step, "embellish_escapeTone"))

    if not options:
        return None
    return options[int(deterministic_unit(seed + 29) * len(options))]


def _grid_slots(grid: PhraseGridPlan) -> List[GridSlot]:
    slots = []
    for plan in grid.measures:
        for onset in plan.onsets:
            slots.append(
                GridSlot(
                    measure=plan.measure,
                    onset=onset,
                    is_anchor=any(abs(anchor - onset) < _EPS for anchor in plan.anchor_onsets),
                    is_climax=plan.is_climax_measure and abs(onset - grid.climax_onset) < _EPS,
                    is_cadence=plan.is_cadence_measure,
                )
            )
    slots.sort(key=lambda slot: (slot.measure, slot.onset))
    return slots


def _span_intent(interval: int) -> str:
    size = abs(interval)
    if size == 0:
        return "neighbor_return"
    if size <= 2:
        return "step_chain"
    if size <= 4:
        return "third_bridge"
    return "smoothing_run"


def _resolve_third_skips(span: List[int], target: int, key_scale: Sequence[int], range_min: int, range_max: int) -> None:
    # span holds the start anchor followed by the composed inner pitches.
    for i in range(1, len(span) - 1):
        leap = abs(span[i] - span[i - 1])
        if leap < 3 or leap > 4 or abs(span[i + 1] - span[i]) <= 2:
            continue
        direction = 1 if target >= span[i] else -1
        step = next_scale_step(span[i], direction, key_scale, range_min, range_max)
        if step is not None and abs(step - span[i]) <= 2:
            span[i + 1] = step


def _enforce_pair_motion_during_fill(
    measure_events: List[MelodyEvent], key_scale: Sequence[int], range_min: int, range_max: int
) -> None:
    ordered = sorted(measure_events, key=lambda e: e.onset_beat)

    def at(onset: float) -> Optional[MelodyEvent]:
        for event in ordered:
            if abs(event.onset_beat - onset) < _EPS:
                return event
        return None

    for start in (2, 3):
        first, second = at(start), at(start + 0.5)
        if first is None or second is None:
            continue
        delta = abs(second.midi - first.midi)
        if delta > 4:
            direction = 1 if second.midi >= first.midi else -1
            step = next_scale_step(first.midi, direction, key_scale, range_min, range_max)
            if step is not None:
                retune_event(second, step)
            delta = abs(second.midi - first.midi)
        if delta in (3, 4):
            index = ordered.index(second)
            following = ordered[index + 1] if index + 1 < len(ordered) else None
            if following is not None and abs(following.midi - second.midi) > 2 and not following.is_locked:
                direction = 1 if following.midi >= second.midi else -1
                step = next_scale_step(second.midi, direction, key_scale, range_min, range_max)
                if step is not None:
                    retune_event(following, step)


def realize_phrase_grid_pitches(
    spec: ExerciseSpec,
    phrase_spec: PhraseSpec,
    phrase_index: int,
    phrase_length_measures: int,
    grid: PhraseGridPlan,
    harmony: Sequence[HarmonyEvent],
    skeleton: SkeletonResult,
    range_min: int,
    range_max: int,
    max_leap: int,
    seed: int = 0,
) -> Tuple[List[MelodyEvent], List[SelectionTrace]]:
    """Return the attacks of one phrase with every grid onset pitched.

    Parameters
    ----------
    spec:
        Exercise description (key, mode, meter and illegal degrees).
    phrase_spec, phrase_index, phrase_length_measures:
        Phrase being realized and its position.
    grid:
        Rhythm grid; each onset becomes one attack.
    harmony:
        Harmony spine for chord lookup.
    skeleton:
        Anchor pitches from :func:`~sightsinging_generator.skeleton.build_skeleton`.
    range_min, range_max, max_leap:
        Register and leap cap.
    seed:
        Seed for the weak-beat figure draws of fallback slots.

    Returns
    -------
    tuple
        ``(events, trace)`` with events sorted by position and durations
        running to the next onset (or the barline).
    """

    tonic_pc = KEY_TO_PC.get(spec.key, 0)
    key_scale = key_scale_pcs(tonic_pc, spec.mode)
    bpm = spec.beats_per_measure
    key_id = spec.key_id
    illegal_degrees = set(spec.illegal_degrees)
    trace = list(skeleton.trace)

    def harmony_at(measure: int, onset: float) -> HarmonyEvent:
        return resolve_harmony_event(
            harmony, measure, onset, phrase_length_measures, bpm, phrase_spec, tonic_pc, spec.mode
        )

    skeleton_by_slot: Dict[Tuple[int, float], MelodyEvent] = {
        (note.measure, round(note.onset_beat, 3)): note for note in skeleton.notes
    }
    slots = _grid_slots(grid)
    anchors = [slot for slot in slots if slot.structural]
    by_slot: Dict[Tuple[int, float], MelodyEvent] = {}

    for slot in anchors:
        note = skeleton_by_slot.get(slot.key)
        if note is None:
            continue
        event = note.copy()
        event.onset_beat = slot.onset
        event.is_attack = True
        event.tags |= FunctionTag.ANCHOR | FunctionTag.STRUCTURAL
        if slot.is_climax:
            event.tags |= FunctionTag.CLIMAX
        if slot.is_cadence:
            event.tags |= FunctionTag.CADENCE
        by_slot[slot.key] = event

    scale_pool = collect_midis_from_pcs(key_scale, range_min, range_max)

    def choose_edge(
        prev: int, target: int, remaining: int, slot: GridSlot, intent: str, desired: float, direction: int, allow_third: bool
    ) -> int:
        chord_event = harmony_at(slot.measure, slot.onset)
        chord_pool = set(chord_tone_candidates(chord_event.chord_pcs, range_min, range_max))
        strong = _is_strong_beat(slot.onset)
        base_cap = 4 if intent == "third_bridge" else 2
        caps = [min(base_cap, max_leap), min(4, max_leap)] if allow_third else [min(2, max_leap), min(4, max_leap)]
        for cap in caps:
            best: Optional[int] = None
            best_score = float("inf")
            for midi in scale_pool:
                leap = abs(midi - prev)
                if leap == 0 or leap > cap or leap > max_leap:
                    continue
                if midi_to_degree(midi, key_scale) in illegal_degrees:
                    continue
                if (direction > 0 and midi < prev) or (direction < 0 and midi > prev):
                    continue
                if abs(target - midi) > max_leap * max(1, remaining):
                    continue
                chord_tone = midi in chord_pool
                toward = (target > prev) - (target < prev) == (midi > prev) - (midi < prev)
                score = abs(midi - desired) * 3 + leap
                if strong and not chord_tone:
                    score += 4
                if not strong and chord_tone:
                    score += 1.5
                if not toward:
                    score += 3
                if score < best_score:
                    best, best_score = midi, score
            if best is not None:
                return best
        return nearest_chord_tone(chord_event.chord_pcs, prev, range_min, range_max)

    for index, (start, end) in enumerate(zip(anchors, anchors[1:])):
        start_event = by_slot.get(start.key)
        end_event = by_slot.get(end.key)
        if start_event is None or end_event is None:
            continue
        inner = [
            slot
            for slot in slots
            if not slot.structural and (start.measure, start.onset) < (slot.measure, slot.onset) < (end.measure, end.onset)
        ]
        if not inner:
            continue

        interval = end_event.midi - start_event.midi
        direction = (interval > 0) - (interval < 0)
        if not start.is_climax and end.is_climax and end_event.midi >= start_event.midi:
            direction = 1
        elif end.is_cadence and end_event.midi <= start_event.midi:
            direction = -1
        intent = _span_intent(interval)

        span = [start_event.midi]
        prev = start_event.midi
        for j, slot in enumerate(inner):
            if intent == "neighbor_return":
                desired: float = start_event.midi + (1 if j % 2 == 0 else -1)
            else:
                desired = round(start_event.midi + interval * (j + 1) / (len(inner) + 1))
            midi = choose_edge(
                prev,
                end_event.midi,
                len(inner) - j,
                slot,
                intent,
                desired,
                direction,
                intent != "step_chain" and j > 0,
            )
            if abs(midi - prev) > max_leap:
                midi = nearest_pc_within_leap_cap(midi, prev, range_min, range_max, max_leap) or midi
            span.append(midi)
            prev = midi

        _resolve_third_skips(span, end_event.midi, key_scale, range_min, range_max)

        for slot, midi in zip(inner, span[1:]):
            chord_event = harmony_at(slot.measure, slot.onset)
            chord_tone = midi % 12 in chord_event.chord_pcs
            tags = FunctionTag.NONE
            if intent == "smoothing_run":
                tags |= FunctionTag.SMOOTHING_RUN
            if not chord_tone:
                tags |= FunctionTag.CONNECTIVE_NHT
            by_slot[slot.key] = MelodyEvent(
                midi=midi,
                measure=slot.measure,
                onset_beat=slot.onset,
                duration_beats=1,
                role="ChordTone" if chord_tone else "NonHarmonicTone",
                reason=f"pass4_edge_{intent}",
                chord_id=chord_id_for(chord_event),
                key_id=key_id,
                phrase_index=phrase_index + 1,
                non_harmonic_tone=not chord_tone,
                tags=tags,
            )
        logger.debug(
            "[pass4-edge] span=%d A=%d->B=%d intent=%s mids=%s",
            index + 1,
            start_event.midi,
            end_event.midi,
            intent,
            span[1:],
        )

    melody: List[MelodyEvent] = []
    prev_midi = skeleton.notes[0].midi if skeleton.notes else skeleton.end_midi
    prev_slot: Optional[GridSlot] = None
    for slot in slots:
        event = by_slot.get(slot.key)
        if event is None:
            event = _fallback_event(
                slot,
                prev_midi,
                skeleton,
                harmony_at(slot.measure, slot.onset),
                key_scale,
                key_id,
                phrase_index,
                range_min,
                range_max,
                seed,
                harmony_at(prev_slot.measure, prev_slot.onset) if prev_slot is not None else None,
            )
            trace.append(
                SelectionTrace(slot.measure, slot.onset, [SelectionStep("embellish", 1, event.reason, event.pitch)])
            )
            by_slot[slot.key] = event
        melody.append(event)
        prev_midi = event.midi
        prev_slot = slot

    by_measure: Dict[int, List[MelodyEvent]] = {}
    for event in melody:
        by_measure.setdefault(event.measure, []).append(event)
    for events in by_measure.values():
        events.sort(key=lambda e: e.onset_beat)
        _enforce_pair_motion_during_fill(events, key_scale, range_min, range_max)
        for i, event in enumerate(events):
            next_onset = events[i + 1].onset_beat if i + 1 < len(events) else bpm + 1
            event.duration_beats = round(next_onset - event.onset_beat, 3)

    return attack_events(melody), trace


def _fallback_event(
    slot: GridSlot,
    prev_midi: int,
    skeleton: SkeletonResult,
    chord_event: HarmonyEvent,
    key_scale: Sequence[int],
    key_id: str,
    phrase_index: int,
    range_min: int,
    range_max: int,
    seed: int,
    prev_harmony: Optional[HarmonyEvent] = None,
) -> MelodyEvent:
    """Pitch a slot no span could compose, trying a weak-beat figure first."""

    following = [
        note.midi for note in skeleton.notes if (note.measure, note.onset_beat) > (slot.measure, slot.onset)
    ]
    figure = None
    if not _is_strong_beat(slot.onset) and not slot.is_cadence:
        figure = build_weak_beat_non_harmonic(
            prev_midi,
            following[0] if following else None,
            chord_event,
            key_scale,
            range_min,
            range_max,
            seed + slot.measure * 31 + int(slot.onset * 2) * 17,
            prev_harmony,
        )
    if figure is not None:
        midi, reason = figure
        nht = True
    else:
        reference = skeleton.notes[0].midi if skeleton.notes else prev_midi
        midi = nearest_chord_tone(chord_event.chord_pcs, reference, range_min, range_max)
        reason = "pass4_edge_fallback"
        nht = False
    return MelodyEvent(
        midi=midi,
        measure=slot.measure,
        onset_beat=slot.onset,
        duration_beats=1,
        role="NonHarmonicTone" if nht else "ChordTone",
        reason=reason,
        chord_id=chord_id_for(chord_event),
        key_id=key_id,
        phrase_index=phrase_index + 1,
        non_harmonic_tone=nht,
    )
