"""Rhythm and pitch repair passes shared by the finishing stages.

The building blocks in this module work **in place** on a working list of
:class:`~sightsinging_generator.models.MelodyEvent` objects and append a
:class:`~sightsinging_generator.models.RepairLogEntry` for every change they
make.  Only the entry point :func:`repair_pass` copies its input; it runs the
blocks in a fixed order and finishes with :func:`assert_repaired`.

Rules enforced here:

* every measure sums to the meter and uses legal durations on a safe grid;
* no eighth note appears without its partner (and the per-phrase eighth-pair
  quota is met where a measure can host one);
* the opening is Do when requested, otherwise Do or Mi is preferred;
* leaps stay within the cap and pitches stay in the register;
* an eighth pair moves by at most a major third and a third resolves by step;
* the cadence lands on Do (or Mi) and is approached by step;
* the tagged climax is the unique peak;
* repeated pitches are tied unless that would break a required eighth pair.

Example
-------
>>> from sightsinging_generator.models import MelodyEvent
>>> events = [MelodyEvent(60, 1, 1, 1), MelodyEvent(62, 1, 2.5, 1)]
>>> log = []
>>> ensure_measure_validity(events, 4, log)
>>> [(e.onset_beat, e.duration_beats) for e in events]
[(1, 2), (3, 2)]

Design Notes
------------
- Demoted attacks stay in the working list with ``is_attack=False`` so their
  identity survives; renderable output is always taken through
  :func:`attack_events`.
- Legal note lengths are the eighth, quarter, half and whole only.  A 3/4
  bar left with a single attack is split into a quarter tied to a half.
- :func:`enforce_interval_caps` is the last pitch pass before the
  assertion.  It sweeps forward and keeps every note close enough to the
  final to reach it within the cap, so no later note is stranded.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from itertools import combinations
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from . import KEY_TO_PC
from .errors import Pass4AssertionError
from .models import FunctionTag, IllegalTransition, MelodyEvent, RepairLogEntry, is_illegal_transition
from .note_utils import (
    chord_for_degree,
    chord_tone_candidates,
    degree_to_pc,
    key_scale_pcs,
    midi_to_degree,
    nearest_allowed_pc_within_leap_cap,
    nearest_midi_with_pc,
    nearest_pc_within_leap_cap,
    next_scale_step,
)

__all__ = [
    "MAX_MELODIC_LEAP",
    "ConstraintContext",
    "legal_durations",
    "is_legal_duration",
    "allowed_eighth_beats",
    "safe_grids",
    "choose_best_grid",
    "choose_best_grid_slots",
    "event_priority",
    "attack_events",
    "demote_event",
    "parse_key",
    "chord_degree_from_chord_id",
    "chord_pcs_for_event",
    "retune_event",
    "recompute_measure_durations",
    "split_unrepresentable_measure",
    "quantize_measure",
    "ensure_measure_validity",
    "ee_pair_exists",
    "count_ee_pairs",
    "note_value_counts",
    "enforce_no_lone_eighths",
    "enforce_hard_start_do",
    "enforce_default_opening_do_or_mi",
    "enforce_tessitura",
    "enforce_max_leap",
    "harmony_aware_step_toward",
    "enforce_ee_motion_law",
    "enforce_interval_caps",
    "apply_cadence_should_rule",
    "apply_climax_should_rule",
    "tie_merge_repeated_attacks",
    "find_violation",
    "assert_repaired",
    "repair_pass",
]

logger = logging.getLogger(__name__)

MAX_MELODIC_LEAP = 12
SETTLE_ROUNDS = 4

_BASE_DURATIONS = (0.5, 1.0, 2.0, 4.0)
_EPS = 1e-6
_ONSET_EPS = 1e-3


@dataclass
class ConstraintContext:
    """Hard-rule settings shared by the repair and user-constraint passes."""

    beats_per_measure: int = 4
    range_min: int = 60
    range_max: int = 72
    hard_start_do: bool = False
    cadence_type: str = "authentic"
    end_on_do_hard: Optional[bool] = None
    min_eighth_pairs: int = 0
    max_leap: int = MAX_MELODIC_LEAP
    allow_eighth_beats: Optional[Sequence[int]] = None
    illegal_degrees: List[int] = field(default_factory=list)
    illegal_intervals: List[int] = field(default_factory=list)
    illegal_transitions: List[IllegalTransition] = field(default_factory=list)
    allowed_note_values: Optional[List[str]] = None
    lock_final_rhythm: bool = True
    rhythm_dist: Optional[Dict[str, float]] = None

    @property
    def eighth_beats(self) -> List[int]:
        by_meter = allowed_eighth_beats(self.beats_per_measure)
        if self.allow_eighth_beats is None:
            return by_meter
        chosen = [beat for beat in self.allow_eighth_beats if beat in by_meter]
        return chosen or by_meter

    @property
    def leap_cap(self) -> int:
        return max(1, int(self.max_leap))

    @property
    def final_must_be_do(self) -> bool:
        if self.end_on_do_hard is not None:
            return self.end_on_do_hard
        return self.cadence_type != "half"


# ---------------------------------------------------------------------------
# Grid helpers
# ---------------------------------------------------------------------------


def legal_durations(beats_per_measure: int) -> Tuple[float, ...]:
    """Return the note lengths allowed in a measure of ``beats_per_measure``.

    Every meter shares the same four lengths; a full 3/4 bar has no single
    note value.
    """

    return _BASE_DURATIONS


def is_legal_duration(duration: float, beats_per_measure: int) -> bool:
    return any(abs(duration - legal) < _EPS for legal in legal_durations(beats_per_measure))


def allowed_eighth_beats(beats_per_measure: int) -> List[int]:
    """Return the beats that may start an eighth pair in this meter."""

    return [beat for beat in (1, 2, 3, 4) if beat + 0.5 <= beats_per_measure + _EPS]


def safe_grids(beats_per_measure: int) -> List[List[float]]:
    """Return the quarter grid plus one grid per eighth-pair window."""

    quarter = [float(beat) for beat in range(1, max(1, int(beats_per_measure)) + 1)]
    grids = [quarter]
    for base in allowed_eighth_beats(beats_per_measure):
        with_pair = list(quarter)
        index = with_pair.index(float(base))
        with_pair.insert(index + 1, base + 0.5)
        grids.append(with_pair)
    return grids


def choose_best_grid(onsets: Sequence[float], beats_per_measure: int) -> List[float]:
    grids = safe_grids(beats_per_measure)
    best = grids[0]
    best_cost = float("inf")
    for grid in grids:
        if len(onsets) > len(grid):
            continue
        cost = sum(abs(onset - grid[min(i, len(grid) - 1)]) for i, onset in enumerate(onsets))
        if cost < best_cost:
            best, best_cost = grid, cost
    return best


def choose_best_grid_slots(onsets: Sequence[float], grid: Sequence[float], beats_per_measure: int) -> List[float]:
    """Pick ``len(onsets)`` grid slots closest to ``onsets``.

    The chosen slots must start on beat 1 and produce only legal durations
    when the last note runs to the end of the measure.
    """

    need = len(onsets)
    if need <= 0:
        return []
    if need >= len(grid):
        return list(grid)
    best = list(grid[:need])
    best_cost = float("inf")
    end = beats_per_measure + 1
    for picked in combinations(grid, need):
        if abs(picked[0] - 1) > _ONSET_EPS:
            continue
        bounds = list(picked[1:]) + [end]
        if not all(is_legal_duration(b - a, beats_per_measure) for a, b in zip(picked, bounds)):
            continue
        cost = sum(abs(onset - slot) for onset, slot in zip(onsets, picked))
        if cost < best_cost:
            best_cost = cost
            best = list(picked)
    return best


def event_priority(event: MelodyEvent) -> int:
    """Return how strongly an attack should survive grid reduction."""

    if event.has_tag(FunctionTag.CADENCE):
        return 100
    if event.has_tag(FunctionTag.CLIMAX):
        return 95
    if event.has_tag(FunctionTag.ANCHOR | FunctionTag.STRUCTURAL):
        return 90
    if event.has_tag(FunctionTag.SMOOTHING_RUN):
        return 60
    if event.has_tag(FunctionTag.CONNECTIVE_NHT):
        return 40
    return 20


def attack_events(events: Iterable[MelodyEvent]) -> List[MelodyEvent]:
    """Return the sounding attacks ordered by ``(measure, onset)``."""

    return sorted((e for e in events if e.is_attack), key=lambda e: (e.measure, e.onset_beat))


def _measure_attacks(events: Iterable[MelodyEvent], measure: int) -> List[MelodyEvent]:
    return sorted((e for e in events if e.measure == measure and e.is_attack), key=lambda e: e.onset_beat)


def _measures(events: Iterable[MelodyEvent]) -> List[int]:
    return sorted({e.measure for e in events})


def demote_event(event: MelodyEvent) -> None:
    event.is_attack = False
    event.tie_stop = True


# ---------------------------------------------------------------------------
# Key helpers
# ---------------------------------------------------------------------------


def parse_key(key_id: str) -> Tuple[int, str, Tuple[int, ...]]:
    """Split ``"C-major"`` into ``(tonic_pc, mode, key_scale)``."""

    key, _, mode = (key_id or "C-major").partition("-")
    mode = "minor" if mode == "minor" else "major"
    tonic_pc = KEY_TO_PC.get(key, 0)
    return tonic_pc, mode, key_scale_pcs(tonic_pc, mode)


_CHORD_ID_DEGREE = re.compile(r"-d(\d+)$")


def chord_degree_from_chord_id(chord_id: str) -> Optional[int]:
    match = _CHORD_ID_DEGREE.search(chord_id or "")
    return int(match.group(1)) if match else None


def chord_pcs_for_event(event: MelodyEvent) -> List[int]:
    """Return the chord under ``event`` (empty when the chord id is unknown)."""

    tonic_pc, mode, _ = parse_key(event.key_id)
    degree = chord_degree_from_chord_id(event.chord_id)
    return list(chord_for_degree(tonic_pc, mode, degree)) if degree else []


def retune_event(event: MelodyEvent, midi: int) -> None:
    event.midi = midi


# ---------------------------------------------------------------------------
# Measure validity
# ---------------------------------------------------------------------------


def recompute_measure_durations(
    events: List[MelodyEvent], measure: int, beats_per_measure: int, log: List[RepairLogEntry]
) -> None:
    attacks = _measure_attacks(events, measure)
    for index, curr in enumerate(attacks):
        next_onset = attacks[index + 1].onset_beat if index + 1 < len(attacks) else beats_per_measure + 1
        new_duration = next_onset - curr.onset_beat
        if abs(curr.duration_beats - new_duration) > _EPS:
            log.append(
                RepairLogEntry(
                    "must0_recompute_duration",
                    f"m{measure} onset={curr.onset_beat} from={curr.duration_beats} to={new_duration}",
                )
            )
        curr.duration_beats = new_duration


def split_unrepresentable_measure(
    events: List[MelodyEvent], measure: int, beats_per_measure: int, log: List[RepairLogEntry]
) -> None:
    """Split a lone whole-bar attack the meter cannot notate as one note.

    The bar becomes a quarter tied to a held note of the same pitch.  A
    continuation already sitting on the split beat is re-struck instead of
    adding a new event.
    """

    bpm = beats_per_measure
    if is_legal_duration(bpm, bpm):
        return
    attacks = _measure_attacks(events, measure)
    if len(attacks) != 1:
        return
    only = attacks[0]
    only.onset_beat = 1
    split_at = float(bpm - 1)
    held = next(
        (e for e in events if e.measure == measure and not e.is_attack and abs(e.onset_beat - split_at) < _ONSET_EPS),
        None,
    )
    if held is None:
        held = only.copy()
        held.onset_beat = split_at
        events.append(held)
    held.midi = only.midi
    held.is_attack = True
    held.tie_start = False
    held.tie_stop = True
    only.tie_start = True
    log.append(RepairLogEntry("must0_split_whole_bar", f"m{measure} at={split_at} midi={only.midi}"))
    recompute_measure_durations(events, measure, bpm, log)


def _grid_for_onsets(onsets: Sequence[float], beats_per_measure: int) -> List[float]:
    if any(abs(onset - 2.5) < _ONSET_EPS for onset in onsets):
        grid = [1, 2, 2.5, 3, 4]
    elif any(abs(onset - 3.5) < _ONSET_EPS for onset in onsets):
        grid = [1, 2, 3, 3.5, 4]
    else:
        grid = choose_best_grid(onsets, beats_per_measure)
    return [onset for onset in grid if onset <= beats_per_measure + _EPS]


def quantize_measure(
    events: List[MelodyEvent], measure: int, beats_per_measure: int, log: List[RepairLogEntry]
) -> None:
    """Snap the attacks of ``measure`` onto a safe grid.

    When the measure holds more attacks than the grid has slots, the lowest
    priority unlocked attacks are demoted to ties first.
    """

    attacks = _measure_attacks(events, measure)
    if not attacks:
        return
    grid = _grid_for_onsets([e.onset_beat for e in attacks], beats_per_measure)
    while len(attacks) > len(grid):
        removable = sorted((e for e in attacks if not e.is_locked), key=event_priority)
        if not removable:
            break
        victim = removable[0]
        demote_event(victim)
        log.append(
            RepairLogEntry(
                "must0_demote_attack_for_grid", f"m{measure} onset={victim.onset_beat} midi={victim.midi}"
            )
        )
        attacks = _measure_attacks(events, measure)
        grid = _grid_for_onsets([e.onset_beat for e in attacks], beats_per_measure)

    slots = choose_best_grid_slots([e.onset_beat for e in attacks], grid, beats_per_measure)
    for index, attack in enumerate(attacks):
        target = slots[min(index, len(slots) - 1)]
        if abs(attack.onset_beat - target) > _EPS:
            log.append(
                RepairLogEntry(
                    "must0_quantize_onset", f"m{measure} from={attack.onset_beat} to={target} midi={attack.midi}"
                )
            )
        attack.onset_beat = target
    recompute_measure_durations(events, measure, beats_per_measure, log)
    split_unrepresentable_measure(events, measure, beats_per_measure, log)


def ensure_measure_validity(events: List[MelodyEvent], beats_per_measure: int, log: List[RepairLogEntry]) -> None:
    """Quantize every measure and clamp stray onsets into the bar."""

    for measure in _measures(events):
        quantize_measure(events, measure, beats_per_measure, log)
        for attack in _measure_attacks(events, measure):
            onset = attack.onset_beat
            if not 1 <= onset < beats_per_measure + 1:
                clamped = max(1, min(beats_per_measure, int(onset + 0.5)))
                log.append(RepairLogEntry("must0_onset_clamp", f"m{measure} from={onset} to={clamped}"))
                attack.onset_beat = clamped
        recompute_measure_durations(events, measure, beats_per_measure, log)


# ---------------------------------------------------------------------------
# Eighth pairs
# ---------------------------------------------------------------------------


def ee_pair_exists(events: Iterable[MelodyEvent], measure: int, base: int) -> bool:
    onsets = [e.onset_beat for e in events if e.measure == measure and e.is_attack]
    has_a = any(abs(onset - base) < _ONSET_EPS for onset in onsets)
    has_b = any(abs(onset - (base + 0.5)) < _ONSET_EPS for onset in onsets)
    return has_a and has_b


def count_ee_pairs(events: Sequence[MelodyEvent], beats_per_measure: int) -> int:
    attacks = attack_events(events)
    return sum(
        1
        for measure in _measures(attacks)
        for base in allowed_eighth_beats(beats_per_measure)
        if ee_pair_exists(attacks, measure, base)
    )


def note_value_counts(events: Iterable[MelodyEvent]) -> Dict[str, int]:
    """Return the ``W/H/Q/EE`` histogram of the sounding attacks."""

    counts = {"W": 0, "H": 0, "Q": 0, "EE": 0}
    for event in attack_events(events):
        for value, beats in (("W", 4), ("H", 2), ("Q", 1), ("EE", 0.5)):
            if abs(event.duration_beats - beats) < _EPS:
                counts[value] += 1
                break
    return counts


def enforce_no_lone_eighths(
    events: List[MelodyEvent],
    beats_per_measure: int,
    eighth_beats: Sequence[int],
    min_pairs: int,
    log: List[RepairLogEntry],
) -> None:
    """Demote unpaired eighths, then top up the eighth-pair quota.

    A quota pair is written into the first measure with at least four
    attacks by re-spacing them as ``[1, b, b + 0.5, b + 1]``.  Measures with
    fewer attacks are never split, so the quota may remain short; the caller
    logs the shortfall.
    """

    for measure in _measures(events):
        attacks = _measure_attacks(events, measure)
        active = {round(e.onset_beat, 3) for e in attacks}
        changed = False
        for event in attacks:
            onset = event.onset_beat
            if abs(onset % 1 - 0.5) >= _ONSET_EPS:
                continue
            valid_half = any(abs(onset - (base + 0.5)) < _ONSET_EPS for base in eighth_beats)
            has_pair = round(onset - 0.5, 3) in active
            if not valid_half or not has_pair:
                demote_event(event)
                changed = True
                code = "must1_remove_disallowed_half_onset" if not valid_half else "must1_remove_unpaired_half_onset"
                log.append(RepairLogEntry(code, f"m{measure} onset={onset} midi={event.midi}"))
        if changed:
            quantize_measure(events, measure, beats_per_measure, log)

        attacks = _measure_attacks(events, measure)
        onsets = [e.onset_beat for e in attacks]
        for attack in attacks:
            if abs(attack.duration_beats - 0.5) > _EPS:
                continue
            onset = attack.onset_beat
            if any(abs(onset - base) < _ONSET_EPS for base in eighth_beats):
                paired = any(abs(other - (onset + 0.5)) < _ONSET_EPS for other in onsets)
            else:
                paired = any(abs(onset - (base + 0.5)) < _ONSET_EPS for base in eighth_beats) and any(
                    abs(other - (onset - 0.5)) < _ONSET_EPS for other in onsets
                )
            if paired:
                continue
            demote_event(attack)
            log.append(RepairLogEntry("must1_demote_lone_eighth", f"m{measure} onset={onset} midi={attack.midi}"))
            quantize_measure(events, measure, beats_per_measure, log)
            break

    pair_count = sum(
        1 for measure in _measures(events) for base in eighth_beats if ee_pair_exists(events, measure, base)
    )
    if min_pairs <= pair_count:
        return
    bases = [base for base in (2, 3) if base in eighth_beats and base + 1 <= beats_per_measure]
    if not bases:
        return
    base = bases[0]
    for measure in _measures(events):
        if pair_count >= min_pairs:
            break
        attacks = _measure_attacks(events, measure)
        if len(attacks) < 4 or ee_pair_exists(events, measure, base):
            continue
        for attack, onset in zip(attacks, (1, base, base + 0.5, base + 1)):
            attack.onset_beat = onset
        log.append(RepairLogEntry("must1_force_ee_pair", f"m{measure} onsets=[1,{base},{base + 0.5},{base + 1}]"))
        recompute_measure_durations(events, measure, beats_per_measure, log)
        pair_count += 1


# ---------------------------------------------------------------------------
# Pitch rules
# ---------------------------------------------------------------------------


def enforce_hard_start_do(
    events: List[MelodyEvent], range_min: int, range_max: int, hard_start_do: bool, log: List[RepairLogEntry]
) -> None:
    if not hard_start_do:
        return
    attacks = attack_events(events)
    if not attacks:
        return
    first = attacks[0]
    tonic_pc, _, _ = parse_key(first.key_id)
    target = nearest_midi_with_pc(tonic_pc, first.midi, range_min, range_max)
    if target is not None and target != first.midi:
        code = "must2_hard_start_do_octave" if first.midi % 12 == tonic_pc else "must2_hard_start_do_pc"
        log.append(RepairLogEntry(code, f"from={first.midi} to={target}"))
        retune_event(first, target)


def enforce_default_opening_do_or_mi(
    events: List[MelodyEvent], range_min: int, range_max: int, hard_start_do: bool, log: List[RepairLogEntry]
) -> None:
    """Move a non-Do/Mi opening to the nearest Do or Mi."""

    if hard_start_do:
        return
    attacks = attack_events(events)
    if not attacks:
        return
    first = attacks[0]
    tonic_pc, _, scale = parse_key(first.key_id)
    if midi_to_degree(first.midi, scale) in (1, 3):
        return
    targets = [
        midi
        for midi in (
            nearest_midi_with_pc(tonic_pc, first.midi, range_min, range_max),
            nearest_midi_with_pc(degree_to_pc(3, scale), first.midi, range_min, range_max),
        )
        if midi is not None
    ]
    if not targets:
        return
    chosen = min(targets, key=lambda midi: abs(midi - first.midi))
    if chosen != first.midi:
        log.append(RepairLogEntry("pass10_default_start_do_or_mi", f"from={first.midi} to={chosen}"))
        retune_event(first, chosen)


def enforce_tessitura(events: List[MelodyEvent], range_min: int, range_max: int, log: List[RepairLogEntry]) -> None:
    for event in [e for e in events if e.is_attack]:
        if range_min <= event.midi <= range_max:
            continue
        shifted = nearest_midi_with_pc(event.midi % 12, event.midi, range_min, range_max)
        if shifted is not None:
            log.append(
                RepairLogEntry(
                    "must4_tessitura_octave_shift", f"m{event.measure} onset={event.onset_beat} from={event.midi} to={shifted}"
                )
            )
            retune_event(event, shifted)
            continue
        tonic_pc, _, _ = parse_key(event.key_id)
        chord = chord_pcs_for_event(event) or [tonic_pc]
        in_range = sorted(chord_tone_candidates(chord, range_min, range_max), key=lambda m: abs(m - event.midi))
        if in_range:
            log.append(
                RepairLogEntry(
                    "must4_tessitura_chord_swap", f"m{event.measure} onset={event.onset_beat} from={event.midi} to={in_range[0]}"
                )
            )
            retune_event(event, in_range[0])


def enforce_max_leap(
    events: List[MelodyEvent],
    range_min: int,
    range_max: int,
    log: List[RepairLogEntry],
    max_leap: int,
    allow_demotion: bool = True,
) -> None:
    """Bring every melodic interval within ``max_leap`` semitones.

    Strategies are tried in order: the same pitch class in another octave,
    a chord tone (unlocked notes only), demotion to a tie (when allowed and
    unlocked) and finally the nearest scale tone, which may retune a locked
    note.  The closing note is never retuned here; a leap into it is left
    for :func:`enforce_interval_caps`.
    """

    attacks = attack_events(events)
    for index, (prev, curr) in enumerate(zip(attacks, attacks[1:]), start=1):
        if not curr.is_attack or abs(curr.midi - prev.midi) <= max_leap:
            continue
        same_pc = nearest_pc_within_leap_cap(curr.midi, prev.midi, range_min, range_max, max_leap)
        if same_pc is not None:
            log.append(RepairLogEntry("must3_interval_octave_repair", f"from={curr.midi} to={same_pc} prev={prev.midi}"))
            retune_event(curr, same_pc)
            continue
        if not curr.is_locked:
            chord_repair = nearest_allowed_pc_within_leap_cap(
                chord_pcs_for_event(curr), curr.midi, prev.midi, range_min, range_max, max_leap
            )
            if chord_repair is not None:
                log.append(
                    RepairLogEntry("must3_interval_chord_swap", f"from={curr.midi} to={chord_repair} prev={prev.midi}")
                )
                retune_event(curr, chord_repair)
                continue
        detail = f"m{curr.measure} onset={curr.onset_beat} midi={curr.midi} prev={prev.midi}"
        if allow_demotion and not curr.is_locked:
            demote_event(curr)
            log.append(RepairLogEntry("must3_demote_unrepairable_attack", detail))
            continue
        _, _, scale = parse_key(curr.key_id)
        scale_repair = None
        if index < len(attacks) - 1:
            scale_repair = nearest_allowed_pc_within_leap_cap(scale, curr.midi, prev.midi, range_min, range_max, max_leap)
        if scale_repair is not None:
            code = "must3_interval_locked_scale_swap" if curr.is_locked else "must3_interval_scale_swap"
            log.append(RepairLogEntry(code, f"{detail} to={scale_repair}"))
            retune_event(curr, scale_repair)
        elif not allow_demotion:
            log.append(RepairLogEntry("must3_unresolved_without_demotion", detail))
            logger.debug("leap left unresolved: %s", detail)


def harmony_aware_step_toward(
    from_midi: int, target_midi: int, reference: MelodyEvent, range_min: int, range_max: int
) -> int:
    """Return a chord tone within a major third of ``from_midi`` nearest the target.

    Falls back to the next scale step toward the target (or away from it when
    the register ends) and finally to ``from_midi`` itself.
    """

    _, _, scale = parse_key(reference.key_id)
    direction = 1 if target_midi >= from_midi else -1
    direct = next_scale_step(from_midi, direction, scale, range_min, range_max)
    reverse = next_scale_step(from_midi, -direction, scale, range_min, range_max)
    base = direct if direct is not None else reverse if reverse is not None else from_midi
    chord = chord_pcs_for_event(reference)
    if not chord:
        return base
    near = [m for m in chord_tone_candidates(chord, range_min, range_max) if abs(m - from_midi) <= 4]
    if not near:
        return base
    return min(near, key=lambda m: abs(m - target_midi))


def _is_ee_window_pair(first: MelodyEvent, second: MelodyEvent) -> bool:
    a, b = first.onset_beat, second.onset_beat
    return (abs(a - 2) < _ONSET_EPS and abs(b - 2.5) < _ONSET_EPS) or (
        abs(a - 3) < _ONSET_EPS and abs(b - 3.5) < _ONSET_EPS
    )


def enforce_ee_motion_law(events: List[MelodyEvent], range_min: int, range_max: int, log: List[RepairLogEntry]) -> None:
    """Keep eighth pairs within a major third and resolve thirds by step."""

    attacks = attack_events(events)
    for index in range(len(attacks) - 1):
        e1, e2 = attacks[index], attacks[index + 1]
        if e1.measure != e2.measure or not _is_ee_window_pair(e1, e2):
            continue
        following = attacks[index + 2] if index + 2 < len(attacks) else None
        delta = abs(e2.midi - e1.midi)
        if delta > 4:
            target = following.midi if following is not None else e2.midi
            step = harmony_aware_step_toward(e1.midi, target, e2, range_min, range_max)
            log.append(
                RepairLogEntry("must5_pair_interval_repair", f"m{e1.measure} from={e2.midi} to={step} e1={e1.midi}")
            )
            retune_event(e2, step)
            delta = abs(e2.midi - e1.midi)
        if delta not in (3, 4) or following is None or abs(following.midi - e2.midi) <= 2:
            continue
        if following.is_locked:
            stepwise = harmony_aware_step_toward(e1.midi, following.midi, e2, range_min, range_max)
            if abs(stepwise - e1.midi) <= 2:
                log.append(
                    RepairLogEntry(
                        "must5_forbid_third_locked_next", f"m{e1.measure} from={e2.midi} to={stepwise} next={following.midi}"
                    )
                )
                retune_event(e2, stepwise)
        else:
            _, _, scale = parse_key(following.key_id)
            direction = 1 if following.midi >= e2.midi else -1
            step = next_scale_step(e2.midi, direction, scale, range_min, range_max)
            if step is not None:
                log.append(
                    RepairLogEntry("must5_resolve_third_with_next", f"m{e1.measure} from={following.midi} to={step}")
                )
                retune_event(following, step)


def _pair_bases(ctx: ConstraintContext, any_pair_beat: bool) -> List[int]:
    if any_pair_beat:
        return list(range(1, ctx.beats_per_measure + 1))
    return ctx.eighth_beats


def _pair_seconds(attacks: Sequence[MelodyEvent], eighth_beats: Sequence[int]) -> List[bool]:
    flags = [False] * len(attacks)
    for index in range(1, len(attacks)):
        first, second = attacks[index - 1], attacks[index]
        if first.measure != second.measure:
            continue
        flags[index] = any(
            abs(first.onset_beat - base) < _ONSET_EPS and abs(second.onset_beat - (base + 0.5)) < _ONSET_EPS
            for base in eighth_beats
        )
    return flags


def _capped_choice(
    curr: MelodyEvent, prev_midi: int, limit: int, final_midi: int, reach: int, ctx: ConstraintContext
) -> int:
    _, _, scale = parse_key(curr.key_id)
    chord = chord_pcs_for_event(curr)
    lo = max(ctx.range_min, prev_midi - limit, final_midi - reach)
    hi = min(ctx.range_max, prev_midi + limit, final_midi + reach)
    if lo > hi:
        lo = max(ctx.range_min, prev_midi - limit)
        hi = min(ctx.range_max, prev_midi + limit)
    prev_degree = midi_to_degree(prev_midi, scale)

    def rank(midi: int) -> Tuple:
        degree = midi_to_degree(midi, scale)
        return (
            midi % 12 not in scale,
            degree in ctx.illegal_degrees,
            abs(midi - prev_midi) in ctx.illegal_intervals,
            is_illegal_transition(prev_degree, degree, ctx.illegal_transitions),
            abs(midi - final_midi) > reach,
            abs(midi - curr.midi),
            midi % 12 not in chord,
            midi,
        )

    return min(range(lo, hi + 1), key=rank)


def enforce_interval_caps(
    events: List[MelodyEvent], ctx: ConstraintContext, log: List[RepairLogEntry], any_pair_beat: bool = False
) -> None:
    """Retune attacks so every interval, eighth-pair skip and third resolution holds.

    One forward sweep keeps the first and last attacks.  A step into the
    second note of an eighth pair, or out of a pair that skips a third, is
    limited to a whole tone when the note has to move; any other step may
    use the full leap cap.  Each kept or chosen note must still reach the
    final within the sum of the limits that follow it, so the sweep never
    strands the closing note.  Scale tones that respect the illegal degree,
    interval and transition rules are preferred, then the pitch nearest the
    original.  ``any_pair_beat`` treats a pair on any beat as a pair, see
    :func:`find_violation`.
    """

    attacks = attack_events(events)
    count = len(attacks)
    if count < 2:
        return
    cap = ctx.leap_cap
    step = min(cap, 2)
    seconds = _pair_seconds(attacks, _pair_bases(ctx, any_pair_beat))
    limits = [0] * count
    for index in range(1, count):
        limits[index] = step if seconds[index] or seconds[index - 1] else cap
    reach = [0] * count
    for index in range(count - 2, -1, -1):
        reach[index] = reach[index + 1] + limits[index + 1]

    final_midi = attacks[-1].midi
    for index in range(1, count - 1):
        prev, curr = attacks[index - 1], attacks[index]
        if seconds[index]:
            keep = min(cap, 4)
        elif seconds[index - 1] and abs(prev.midi - attacks[index - 2].midi) >= 3:
            keep = step
        else:
            keep = cap
        if abs(curr.midi - prev.midi) <= keep and abs(curr.midi - final_midi) <= reach[index]:
            continue
        choice = _capped_choice(curr, prev.midi, limits[index], final_midi, reach[index], ctx)
        if choice == curr.midi:
            continue
        log.append(
            RepairLogEntry(
                "must3_interval_sweep_retune",
                f"m{curr.measure} onset={curr.onset_beat} from={curr.midi} to={choice} prev={prev.midi}",
            )
        )
        if curr.tie_stop and choice != prev.midi:
            curr.tie_stop = False
            prev.tie_start = False
        retune_event(curr, choice)

    last, before = attacks[-1], attacks[-2]
    if abs(last.midi - before.midi) > limits[-1]:
        logger.debug("closing interval left open: %s -> %s", before.midi, last.midi)


def apply_cadence_should_rule(
    events: List[MelodyEvent],
    cadence_type: str,
    range_min: int,
    range_max: int,
    log: List[RepairLogEntry],
    end_on_do: bool = False,
) -> None:
    """Land the final note on Do (or Mi) and approach it by step.

    Half cadences are left alone.  With ``end_on_do`` only Do is accepted as
    the final.  The penultimate note is retuned to Re or Ti when that gives a
    step into the final, otherwise to the nearest scale step; locked
    penultimates are unlocked for this and the unlock is logged.
    """

    if cadence_type == "half":
        return
    attacks = attack_events(events)
    if not attacks:
        return
    last = attacks[-1]
    penult = attacks[-2] if len(attacks) > 1 else None
    tonic_pc, _, scale = parse_key(last.key_id)
    final_pcs = [tonic_pc] if end_on_do else [tonic_pc, degree_to_pc(3, scale)]
    targets = [m for m in (nearest_midi_with_pc(pc, last.midi, range_min, range_max) for pc in final_pcs) if m is not None]
    final_degree = midi_to_degree(last.midi, scale)
    accepted = (1,) if end_on_do else (1, 3)
    if targets and final_degree not in accepted:
        target = min(targets, key=lambda m: abs(m - last.midi))
        log.append(RepairLogEntry("should1_final_to_do_or_mi", f"from={last.midi} to={target}"))
        retune_event(last, target)

    if penult is None or abs(last.midi - penult.midi) <= 2:
        return
    leading = [
        m
        for m in (nearest_midi_with_pc(degree_to_pc(d, scale), penult.midi, range_min, range_max) for d in (2, 7))
        if m is not None and abs(last.midi - m) <= 2
    ]
    if leading:
        if penult.is_locked:
            log.append(RepairLogEntry("should1_cadence_unlock_penult", f"from={penult.midi} to={leading[0]}"))
        log.append(
            RepairLogEntry("should1_penult_step_to_final", f"from={penult.midi} to={leading[0]} final={last.midi}")
        )
        retune_event(penult, leading[0])
        return

    steps = [
        m
        for m in (
            next_scale_step(last.midi, 1, scale, range_min, range_max),
            next_scale_step(last.midi, -1, scale, range_min, range_max),
        )
        if m is not None and abs(last.midi - m) <= 2
    ]
    if steps:
        steps.sort(key=lambda m: abs(m - penult.midi))
        if penult.is_locked:
            log.append(RepairLogEntry("should1_cadence_unlock_penult_fallback", f"from={penult.midi} to={steps[0]}"))
        retune_event(penult, steps[0])


def apply_climax_should_rule(
    events: List[MelodyEvent], range_min: int, range_max: int, log: List[RepairLogEntry], max_leap: int
) -> None:
    """Make the tagged climax the unique peak and smooth the descent after it."""

    attacks = attack_events(events)
    if not attacks:
        return
    peak = max(e.midi for e in attacks)
    tagged = [e for e in attacks if e.has_tag(FunctionTag.CLIMAX)]
    if tagged and tagged[0].midi < peak:
        target = tagged[0]
        raised = nearest_midi_with_pc(target.midi % 12, peak + 1, range_min, range_max)
        if raised is not None and raised > target.midi:
            log.append(RepairLogEntry("should2_raise_tagged_climax", f"from={target.midi} to={raised}"))
            retune_event(target, raised)

    peak = max(e.midi for e in attacks)
    at_peak = [e for e in attacks if e.midi == peak]
    for event in at_peak[1:]:
        if event.is_locked:
            continue
        down = nearest_midi_with_pc(event.midi % 12, event.midi - 1, range_min, range_max)
        if down is not None and down < event.midi:
            log.append(RepairLogEntry("should2_reduce_competing_peak", f"m{event.measure} from={event.midi} to={down}"))
            retune_event(event, down)

    climax_index = max(range(len(attacks)), key=lambda i: (attacks[i].midi, -i))
    for prev, curr in zip(attacks[climax_index:], attacks[climax_index + 1 :]):
        if abs(curr.midi - prev.midi) <= 4 or curr.is_locked:
            continue
        preferred = nearest_pc_within_leap_cap(curr.midi, prev.midi, range_min, range_max, max_leap)
        if preferred is not None:
            log.append(RepairLogEntry("should2_smooth_post_climax", f"from={curr.midi} to={preferred} prev={prev.midi}"))
            retune_event(curr, preferred)


def tie_merge_repeated_attacks(
    events: List[MelodyEvent], beats_per_measure: int, eighth_beats: Sequence[int], log: List[RepairLogEntry]
) -> None:
    """Tie repeated pitches inside a measure unless they form an eighth pair.

    A merge that would leave a bar the meter cannot hold as one note is
    skipped.
    """

    keep_two = not is_legal_duration(beats_per_measure, beats_per_measure)
    for measure in _measures(events):
        attacks = _measure_attacks(events, measure)
        remaining = len(attacks)
        for prev, curr in zip(attacks, attacks[1:]):
            if prev.midi != curr.midi:
                continue
            if keep_two and remaining <= 2:
                continue
            if any(
                abs(prev.onset_beat - base) < _ONSET_EPS and abs(curr.onset_beat - (base + 0.5)) < _ONSET_EPS
                for base in eighth_beats
            ):
                continue
            curr.is_attack = False
            prev.tie_start = True
            curr.tie_stop = True
            remaining -= 1
            log.append(RepairLogEntry("should3_tie_merge_repeat", f"m{measure} onset={curr.onset_beat} midi={curr.midi}"))
        quantize_measure(events, measure, beats_per_measure, log)


# ---------------------------------------------------------------------------
# Assertions and the full pass
# ---------------------------------------------------------------------------


def find_violation(
    events: Sequence[MelodyEvent], ctx: ConstraintContext, any_pair_beat: bool = False
) -> Optional[Tuple[str, str]]:
    """Return ``(code, detail)`` for the first broken hard invariant, else ``None``.

    With ``any_pair_beat`` an eighth pair may start on any beat, as the grid
    templates allow when the rhythm is locked; the pairing and pair-motion
    rules still apply to it.
    """

    bpm = ctx.beats_per_measure
    attacks = attack_events(events)
    eighth_beats = _pair_bases(ctx, any_pair_beat)
    for measure in _measures(attacks):
        in_measure = _measure_attacks(attacks, measure)
        total = sum(e.duration_beats for e in in_measure)
        if abs(total - bpm) > _EPS:
            return "pass4_assert_measure_sum", f"m{measure} sum={total:.6f} expected={bpm}"
        for event in in_measure:
            onset = event.onset_beat
            if not is_legal_duration(event.duration_beats, bpm):
                return "pass4_assert_duration", f"m{measure} onset={onset} dur={event.duration_beats}"
            if not 1 <= onset < bpm + 1:
                return "pass4_assert_onset_bounds", f"m{measure} onset={onset}"
            if not ctx.range_min <= event.midi <= ctx.range_max:
                return "pass4_assert_tessitura", f"m{measure} onset={onset} midi={event.midi}"

    for index in range(1, len(attacks)):
        interval = abs(attacks[index].midi - attacks[index - 1].midi)
        if interval > ctx.leap_cap:
            return "pass4_assert_interval", f"idx={index} interval={interval}"

    for measure in _measures(attacks):
        in_measure = _measure_attacks(attacks, measure)
        onsets = [e.onset_beat for e in in_measure]
        for event in in_measure:
            if abs(event.duration_beats - 0.5) > _EPS:
                continue
            onset = event.onset_beat
            fraction = onset % 1
            if abs(fraction) < _ONSET_EPS:
                ok = any(abs(onset - b) < _ONSET_EPS for b in eighth_beats) and any(
                    abs(o - (onset + 0.5)) < _ONSET_EPS for o in onsets
                )
            elif abs(fraction - 0.5) < _ONSET_EPS:
                ok = any(abs(onset - (b + 0.5)) < _ONSET_EPS for b in eighth_beats) and any(
                    abs(o - (onset - 0.5)) < _ONSET_EPS for o in onsets
                )
            else:
                ok = False
            if not ok:
                return "pass4_assert_lone_eighth", f"m{measure} onset={onset}"
        for base in eighth_beats:
            e1 = next((e for e in in_measure if abs(e.onset_beat - base) < _ONSET_EPS), None)
            e2 = next((e for e in in_measure if abs(e.onset_beat - (base + 0.5)) < _ONSET_EPS), None)
            if e1 is None or e2 is None:
                continue
            delta = abs(e2.midi - e1.midi)
            if delta > 4:
                return "pass4_assert_ee_motion", f"m{measure} beat={base} delta={delta}"
            if delta in (3, 4):
                position = attacks.index(e2)
                following = attacks[position + 1] if position + 1 < len(attacks) else None
                if following is not None and abs(following.midi - e2.midi) > 2:
                    return "pass4_assert_ee_resolution", f"m{measure} beat={base}"

    if ctx.hard_start_do and attacks:
        tonic_pc, _, _ = parse_key(attacks[0].key_id)
        if attacks[0].midi % 12 != tonic_pc:
            return "pass4_assert_hard_start_do", f"midi={attacks[0].midi} tonicPc={tonic_pc}"
    return None


def assert_repaired(events: Sequence[MelodyEvent], ctx: ConstraintContext, any_pair_beat: bool = False) -> None:
    """Raise :class:`Pass4AssertionError` when a hard invariant is broken."""

    found = find_violation(events, ctx, any_pair_beat)
    if found is not None:
        raise Pass4AssertionError(*found)


def _enforce_ee_motion_all_windows(events: List[MelodyEvent], ctx: ConstraintContext, log: List[RepairLogEntry]) -> None:
    # Windows on beats 1 and 4 are not covered by the beat 2/3 law; clamp
    # them to a scale step so the assertion holds in every window.
    enforce_ee_motion_law(events, ctx.range_min, ctx.range_max, log)
    for measure in _measures(events):
        in_measure = _measure_attacks(events, measure)
        for base in ctx.eighth_beats:
            if base in (2, 3):
                continue
            e1 = next((e for e in in_measure if abs(e.onset_beat - base) < _ONSET_EPS), None)
            e2 = next((e for e in in_measure if abs(e.onset_beat - (base + 0.5)) < _ONSET_EPS), None)
            if e1 is None or e2 is None or abs(e2.midi - e1.midi) <= 2:
                continue
            _, _, scale = parse_key(e2.key_id)
            step = next_scale_step(e1.midi, 1 if e2.midi >= e1.midi else -1, scale, ctx.range_min, ctx.range_max)
            if step is not None:
                log.append(RepairLogEntry("must5_pair_step_clamp", f"m{measure} beat={base} from={e2.midi} to={step}"))
                retune_event(e2, step)


def repair_pass(events: Sequence[MelodyEvent], ctx: ConstraintContext) -> Tuple[List[MelodyEvent], List[RepairLogEntry]]:
    """Run every repair block in order and assert the result.

    Parameters
    ----------
    events:
        Input events; they are copied, never mutated.
    ctx:
        Meter, register and user settings.

    Returns
    -------
    tuple
        ``(attacks, log)`` where ``attacks`` are the sounding events ordered
        by position and ``log`` lists every change made.

    Raises
    ------
    Pass4AssertionError
        If the repaired melody still breaks a hard invariant.
    """

    bpm = ctx.beats_per_measure
    eighth_beats = ctx.eighth_beats
    min_pairs = max(0, ctx.min_eighth_pairs)
    lo, hi = ctx.range_min, ctx.range_max
    working = [e.copy() for e in events]
    log: List[RepairLogEntry] = []

    ensure_measure_validity(working, bpm, log)
    enforce_hard_start_do(working, lo, hi, ctx.hard_start_do, log)
    apply_cadence_should_rule(working, ctx.cadence_type, lo, hi, log, ctx.final_must_be_do)
    enforce_no_lone_eighths(working, bpm, eighth_beats, min_pairs, log)

    enforce_max_leap(working, lo, hi, log, ctx.leap_cap)
    ensure_measure_validity(working, bpm, log)

    enforce_tessitura(working, lo, hi, log)
    _enforce_ee_motion_all_windows(working, ctx, log)

    enforce_hard_start_do(working, lo, hi, ctx.hard_start_do, log)
    apply_cadence_should_rule(working, ctx.cadence_type, lo, hi, log, ctx.final_must_be_do)
    enforce_no_lone_eighths(working, bpm, eighth_beats, min_pairs, log)
    ensure_measure_validity(working, bpm, log)

    apply_climax_should_rule(working, lo, hi, log, ctx.leap_cap)

    if min_pairs <= 0:
        tie_merge_repeated_attacks(working, bpm, eighth_beats, log)
    ensure_measure_validity(working, bpm, log)
    # Earlier retunes can reopen a leap or an eighth-pair skip.
    for _ in range(SETTLE_ROUNDS):
        enforce_no_lone_eighths(working, bpm, eighth_beats, min_pairs, log)
        ensure_measure_validity(working, bpm, log)
        enforce_max_leap(working, lo, hi, log, ctx.leap_cap, allow_demotion=False)
        _enforce_ee_motion_all_windows(working, ctx, log)
        apply_cadence_should_rule(working, ctx.cadence_type, lo, hi, log, ctx.final_must_be_do)
        enforce_interval_caps(working, ctx, log)
        if find_violation(working, ctx) is None:
            break

    final = attack_events(working)
    if min_pairs > 0:
        pairs = count_ee_pairs(final, bpm)
        if pairs < min_pairs:
            log.append(RepairLogEntry("must1_min_ee_shortfall", f"required={min_pairs} actual={pairs}"))
    for entry in log:
        logger.debug("[repair] %s", entry)
    assert_repaired(final, ctx)
    return final, log
