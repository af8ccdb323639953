"""Final enforcement of the user's hard options on a finished melody.

:func:`apply_user_constraints` is the last pitch-changing stage.  With the
rhythm locked (the default) the attacks produced by the phrase stages are
kept on their grid and only pitches move; with the rhythm unlocked the full
:func:`~sightsinging_generator.repair.repair_pass` runs first and the rhythm
is nudged toward the requested note-value distribution.

The illegal degree, interval and transition loops retune offending attacks
to the nearest legal chord tone, then the nearest legal scale tone, and
finally demote the attack when the rhythm may change.  Anything left is
logged and accepted.  The leap cap is stricter: a closing sweep with
:func:`~sightsinging_generator.repair.enforce_interval_caps` retunes any
note, locked or not, until every interval fits.

Example
-------
>>> from sightsinging_generator.repair import ConstraintContext
>>> is_duration_allowed(3, ["Q", "H"])
False
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .models import MelodyEvent, RepairLogEntry, is_illegal_transition
from .note_utils import midi_to_degree
from .repair import (
    ConstraintContext,
    apply_cadence_should_rule,
    attack_events,
    chord_pcs_for_event,
    count_ee_pairs,
    demote_event,
    enforce_default_opening_do_or_mi,
    enforce_hard_start_do,
    enforce_interval_caps,
    enforce_max_leap,
    enforce_no_lone_eighths,
    enforce_tessitura,
    ensure_measure_validity,
    is_legal_duration,
    note_value_counts,
    parse_key,
    repair_pass,
    retune_event,
)

__all__ = [
    "DEFAULT_ALLOWED_NOTE_VALUES",
    "MustValidation",
    "is_duration_allowed",
    "pick_nearest_legal_retune",
    "enforce_illegal_degrees",
    "enforce_illegal_intervals",
    "enforce_illegal_transitions",
    "enforce_allowed_note_values",
    "nudge_rhythm_distribution",
    "stabilize_after_illegal_repair",
    "validate_all_must",
    "apply_user_constraints",
]

logger = logging.getLogger(__name__)

DEFAULT_ALLOWED_NOTE_VALUES = ("EE", "Q", "H")
ILLEGAL_LOOP_GUARD = 128
NOTE_VALUE_GUARD = 16

_EPS = 1e-6


@dataclass
class MustValidation:
    violations: List[str] = field(default_factory=list)
    illegal_counts: Dict[str, int] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.violations


def _allowed(ctx: ConstraintContext) -> List[str]:
    return list(ctx.allowed_note_values or DEFAULT_ALLOWED_NOTE_VALUES)


def is_duration_allowed(duration: float, allowed: Sequence[str]) -> bool:
    """Return ``True`` when ``duration`` belongs to an allowed note value.

    Lengths outside the four note values, such as a dotted half, are never
    allowed.
    """

    allowed = set(allowed)
    if abs(duration - 4) < _EPS:
        return "W" in allowed
    if abs(duration - 2) < _EPS:
        return "H" in allowed
    if abs(duration - 1) < _EPS:
        return "Q" in allowed
    if abs(duration - 0.5) < _EPS:
        return "EE" in allowed
    return False


# ---------------------------------------------------------------------------
# Illegal rule loops
# ---------------------------------------------------------------------------


def pick_nearest_legal_retune(
    curr: MelodyEvent,
    prev: Optional[MelodyEvent],
    nxt: Optional[MelodyEvent],
    ctx: ConstraintContext,
    prefer_chord_tone: bool,
) -> Optional[int]:
    """Return the nearest pitch that satisfies every rule against both neighbours."""

    _, _, scale = parse_key(curr.key_id)
    chord = chord_pcs_for_event(curr)
    allowed_pcs = set(chord) if prefer_chord_tone and chord else set(scale)
    illegal_degrees = set(ctx.illegal_degrees)
    illegal_intervals = set(ctx.illegal_intervals)
    cap = ctx.leap_cap

    best: Optional[int] = None
    best_score = float("inf")
    for midi in range(ctx.range_min, ctx.range_max + 1):
        if midi % 12 not in allowed_pcs:
            continue
        degree = midi_to_degree(midi, scale)
        if degree in illegal_degrees:
            continue
        if prev is not None:
            interval = abs(midi - prev.midi)
            if interval > cap or interval in illegal_intervals:
                continue
            if is_illegal_transition(midi_to_degree(prev.midi, scale), degree, ctx.illegal_transitions):
                continue
        if nxt is not None:
            interval = abs(nxt.midi - midi)
            if interval > cap or interval in illegal_intervals:
                continue
            if is_illegal_transition(degree, midi_to_degree(nxt.midi, scale), ctx.illegal_transitions):
                continue
        score = abs(midi - curr.midi) * 10
        score += abs(midi - prev.midi) if prev is not None else 0
        score += abs(nxt.midi - midi) if nxt is not None else 0
        if score < best_score:
            best, best_score = midi, score
    return best


def _enforce_illegal(
    kind: str,
    events: List[MelodyEvent],
    ctx: ConstraintContext,
    log: List[RepairLogEntry],
    violation: Callable[[MelodyEvent, Optional[MelodyEvent]], Optional[str]],
    first_index: int,
) -> None:
    allow_demotion = not ctx.lock_final_rhythm
    for _ in range(ILLEGAL_LOOP_GUARD):
        attacks = attack_events(events)
        changed = False
        for i in range(first_index, len(attacks)):
            curr = attacks[i]
            prev = attacks[i - 1] if i > 0 else None
            found = violation(curr, prev)
            if found is None:
                continue
            nxt = attacks[i + 1] if i + 1 < len(attacks) else None
            where = f"m{curr.measure} onset={curr.onset_beat}"
            chord_retune = pick_nearest_legal_retune(curr, prev, nxt, ctx, True)
            if chord_retune is not None:
                retune_event(curr, chord_retune)
                log.append(RepairLogEntry(f"pass10_illegal_{kind}_retune_chord", f"{found} to={chord_retune}"))
                changed = True
                break
            scale_retune = pick_nearest_legal_retune(curr, prev, nxt, ctx, False)
            if scale_retune is not None:
                retune_event(curr, scale_retune)
                log.append(RepairLogEntry(f"pass10_illegal_{kind}_retune_scale", f"{found} to={scale_retune}"))
                changed = True
                break
            if allow_demotion and not curr.is_locked:
                demote_event(curr)
                log.append(RepairLogEntry(f"pass10_illegal_{kind}_demote", f"{where} {found}"))
                changed = True
                break
            suffix = "unresolved_locked" if allow_demotion else "unresolved_rhythm_locked"
            log.append(RepairLogEntry(f"pass10_illegal_{kind}_{suffix}", f"{where} {found}"))
        if not changed:
            return
        stabilize_after_illegal_repair(events, ctx, log)


def enforce_illegal_degrees(events: List[MelodyEvent], ctx: ConstraintContext, log: List[RepairLogEntry]) -> None:
    if not ctx.illegal_degrees:
        return
    illegal = set(ctx.illegal_degrees)

    def violation(curr: MelodyEvent, prev: Optional[MelodyEvent]) -> Optional[str]:
        _, _, scale = parse_key(curr.key_id)
        degree = midi_to_degree(curr.midi, scale)
        return f"fromDegree={degree}" if degree in illegal else None

    _enforce_illegal("degree", events, ctx, log, violation, 0)


def enforce_illegal_intervals(events: List[MelodyEvent], ctx: ConstraintContext, log: List[RepairLogEntry]) -> None:
    if not ctx.illegal_intervals:
        return
    illegal = set(ctx.illegal_intervals)

    def violation(curr: MelodyEvent, prev: Optional[MelodyEvent]) -> Optional[str]:
        interval = abs(curr.midi - prev.midi)
        return f"fromInterval={interval}" if interval in illegal else None

    _enforce_illegal("interval", events, ctx, log, violation, 1)


def enforce_illegal_transitions(events: List[MelodyEvent], ctx: ConstraintContext, log: List[RepairLogEntry]) -> None:
    if not ctx.illegal_transitions:
        return

    def violation(curr: MelodyEvent, prev: Optional[MelodyEvent]) -> Optional[str]:
        _, _, scale = parse_key(curr.key_id)
        a, b = midi_to_degree(prev.midi, scale), midi_to_degree(curr.midi, scale)
        return f"fromTransition={a}->{b}" if is_illegal_transition(a, b, ctx.illegal_transitions) else None

    _enforce_illegal("transition", events, ctx, log, violation, 1)


def stabilize_after_illegal_repair(events: List[MelodyEvent], ctx: ConstraintContext, log: List[RepairLogEntry]) -> None:
    """Re-assert the hard rules a retune or demotion may have broken."""

    bpm = ctx.beats_per_measure
    unlocked = not ctx.lock_final_rhythm
    if unlocked:
        ensure_measure_validity(events, bpm, log)
        enforce_no_lone_eighths(events, bpm, ctx.eighth_beats, max(0, ctx.min_eighth_pairs), log)
    enforce_max_leap(events, ctx.range_min, ctx.range_max, log, ctx.leap_cap, allow_demotion=unlocked)
    enforce_tessitura(events, ctx.range_min, ctx.range_max, log)
    enforce_hard_start_do(events, ctx.range_min, ctx.range_max, ctx.hard_start_do, log)
    apply_cadence_should_rule(events, ctx.cadence_type, ctx.range_min, ctx.range_max, log, ctx.final_must_be_do)
    if unlocked:
        ensure_measure_validity(events, bpm, log)


# ---------------------------------------------------------------------------
# Rhythm options (unlocked rhythm only)
# ---------------------------------------------------------------------------


def enforce_allowed_note_values(events: List[MelodyEvent], ctx: ConstraintContext, log: List[RepairLogEntry]) -> None:
    """Split notes whose value the user did not allow.

    Whole notes become two halves (or four quarters), halves and whole-measure
    notes become quarters.  The new attacks are clones of the split note.
    """

    allowed = _allowed(ctx)
    bpm = ctx.beats_per_measure
    for measure in sorted({e.measure for e in events if e.is_attack}):
        for _ in range(NOTE_VALUE_GUARD):
            attacks = sorted((e for e in events if e.measure == measure and e.is_attack), key=lambda e: e.onset_beat)
            changed = False
            for i, curr in enumerate(attacks):
                onset = curr.onset_beat
                next_onset = attacks[i + 1].onset_beat if i + 1 < len(attacks) else bpm + 1
                duration = round(next_onset - onset, 3)
                if is_duration_allowed(duration, allowed):
                    continue

                def insert_at(new_onset: float) -> bool:
                    if any(abs(a.onset_beat - new_onset) < _EPS for a in attacks):
                        return False
                    clone = curr.copy()
                    clone.onset_beat = new_onset
                    clone.is_attack = True
                    clone.tie_start = False
                    clone.tie_stop = False
                    clone.reason = f"{curr.reason}|pass10_allowed_note_values_split"
                    events.append(clone)
                    return True

                if abs(duration - 4) < _EPS and "H" in allowed:
                    changed = insert_at(onset + 2) or changed
                elif duration >= 2 - _EPS and "Q" in allowed:
                    for offset in range(1, int(round(duration))):
                        changed = insert_at(onset + offset) or changed
                if changed:
                    log.append(
                        RepairLogEntry(
                            "pass10_enforce_allowed_note_values",
                            f"m{measure} onset={onset} duration={duration} allowed={allowed}",
                        )
                    )
                    break
            if not changed:
                break
            ensure_measure_validity(events, bpm, log)
            enforce_no_lone_eighths(events, bpm, ctx.eighth_beats, max(0, ctx.min_eighth_pairs), log)
            ensure_measure_validity(events, bpm, log)


def nudge_rhythm_distribution(
    events: Sequence[MelodyEvent], ctx: ConstraintContext, log: List[RepairLogEntry]
) -> List[MelodyEvent]:
    """Move the final measure and one eighth-pair measure toward ``ctx.rhythm_dist``.

    Only note values in the allowed set are introduced: the whole-bar
    cadence needs the bar length to be an allowed value and the eighth-pair
    measure needs ``EE``.
    """

    working = [e.copy() for e in events]
    target = ctx.rhythm_dist
    if not target:
        return working
    attacks = attack_events(working)
    if not attacks:
        return working
    bpm = ctx.beats_per_measure
    weights = {name: float(target.get(name, 0)) for name in ("EE", "Q", "H", "W")}
    measures = sorted({e.measure for e in attacks})
    final_measure = measures[-1]
    final_attacks = [e for e in attacks if e.measure == final_measure]
    min_pairs = max(0, ctx.min_eighth_pairs)
    allowed = _allowed(ctx)

    if weights["W"] > weights["H"] and ctx.cadence_type != "half" and is_duration_allowed(bpm, allowed):
        final_attacks[0].onset_beat = 1
        for event in final_attacks[1:]:
            if not event.is_locked:
                demote_event(event)
        log.append(RepairLogEntry("pass10_rhythm_nudge_cadence_whole", f"m{final_measure}"))
        ensure_measure_validity(working, bpm, log)
    elif weights["H"] > weights["W"] and len(final_attacks) >= 2 and bpm >= 4 and "H" in allowed:
        final_attacks[0].onset_beat = 1
        final_attacks[1].onset_beat = 3
        log.append(RepairLogEntry("pass10_rhythm_nudge_cadence_half_half", f"m{final_measure}"))
        ensure_measure_validity(working, bpm, log)

    if "EE" in allowed and weights["EE"] >= max(weights["Q"], weights["H"], weights["W"]):
        if count_ee_pairs(working, bpm) < max(1, min_pairs) and bpm >= 3:
            for measure in measures:
                if measure == final_measure:
                    continue
                in_measure = [e for e in attack_events(working) if e.measure == measure]
                if len(in_measure) < 4:
                    continue
                for event, onset in zip(in_measure, (1, 2, 2.5, 3)):
                    event.onset_beat = onset
                log.append(RepairLogEntry("pass10_rhythm_nudge_force_ee_grid", f"m{measure} onsets=[1,2,2.5,3]"))
                break
            ensure_measure_validity(working, bpm, log)
            enforce_no_lone_eighths(working, bpm, ctx.eighth_beats, max(1, min_pairs), log)
            ensure_measure_validity(working, bpm, log)
    elif note_value_counts(working).get("EE", 0) > 0 and weights["EE"] == 0:
        enforce_no_lone_eighths(working, bpm, ctx.eighth_beats, 0, log)
        ensure_measure_validity(working, bpm, log)
    return working


# ---------------------------------------------------------------------------
# Validation and the entry point
# ---------------------------------------------------------------------------


def _illegal_counts(attacks: Sequence[MelodyEvent], ctx: ConstraintContext) -> Dict[str, int]:
    counts = {"illegal_degree": 0, "illegal_interval": 0, "illegal_transition": 0}
    for i, curr in enumerate(attacks):
        _, _, scale = parse_key(curr.key_id)
        degree = midi_to_degree(curr.midi, scale)
        if degree in ctx.illegal_degrees:
            counts["illegal_degree"] += 1
        if i == 0:
            continue
        prev = attacks[i - 1]
        if abs(curr.midi - prev.midi) in ctx.illegal_intervals:
            counts["illegal_interval"] += 1
        if is_illegal_transition(midi_to_degree(prev.midi, scale), degree, ctx.illegal_transitions):
            counts["illegal_transition"] += 1
    return counts


def validate_all_must(events: Sequence[MelodyEvent], ctx: ConstraintContext) -> MustValidation:
    """Report (without raising) every hard rule the melody still breaks."""

    allowed = _allowed(ctx)
    bpm = ctx.beats_per_measure
    attacks = attack_events(events)
    result = MustValidation()
    for measure in sorted({e.measure for e in attacks}):
        in_measure = [e for e in attacks if e.measure == measure]
        total = sum(e.duration_beats for e in in_measure)
        if abs(total - bpm) > _EPS:
            result.violations.append(f"measure_sum m{measure}={total:g}")
        for event in in_measure:
            where = f"m{measure} onset={event.onset_beat:g}"
            if not is_legal_duration(event.duration_beats, bpm):
                result.violations.append(f"duration {where} dur={event.duration_beats:g}")
            if not is_duration_allowed(event.duration_beats, allowed):
                result.violations.append(f"allowed_note_values {where} dur={event.duration_beats:g}")
            if not ctx.range_min <= event.midi <= ctx.range_max:
                result.violations.append(f"tessitura {where} midi={event.midi}")
    for i in range(1, len(attacks)):
        if abs(attacks[i].midi - attacks[i - 1].midi) > ctx.leap_cap:
            result.violations.append(f"max_leap idx={i}")
    result.illegal_counts = _illegal_counts(attacks, ctx)
    return result


def apply_user_constraints(
    events: Sequence[MelodyEvent], ctx: ConstraintContext
) -> Tuple[List[MelodyEvent], List[RepairLogEntry]]:
    """Return ``(attacks, log)`` with the user's hard options enforced.

    The input list is not modified.
    """

    bpm = ctx.beats_per_measure
    lock = ctx.lock_final_rhythm
    lo, hi = ctx.range_min, ctx.range_max
    log: List[RepairLogEntry] = []

    if lock:
        working = []
        for event in attack_events(events):
            clone = event.copy()
            clone.is_attack = True
            working.append(clone)
        log.append(RepairLogEntry("pass10_rhythm_locked_from_pass2", f"events={len(working)}"))
    else:
        working, repair_log = repair_pass(events, ctx)
        log.extend(repair_log)
        working = nudge_rhythm_distribution(working, ctx, log)

    enforce_illegal_degrees(working, ctx, log)
    enforce_illegal_intervals(working, ctx, log)
    enforce_illegal_transitions(working, ctx, log)
    stabilize_after_illegal_repair(working, ctx, log)
    if not lock:
        enforce_allowed_note_values(working, ctx, log)
    stabilize_after_illegal_repair(working, ctx, log)

    enforce_default_opening_do_or_mi(working, lo, hi, ctx.hard_start_do, log)
    enforce_hard_start_do(working, lo, hi, ctx.hard_start_do, log)
    apply_cadence_should_rule(working, ctx.cadence_type, lo, hi, log, ctx.final_must_be_do)
    if not lock:
        enforce_no_lone_eighths(working, bpm, ctx.eighth_beats, max(0, ctx.min_eighth_pairs), log)
        ensure_measure_validity(working, bpm, log)
    enforce_max_leap(working, lo, hi, log, ctx.leap_cap, allow_demotion=not lock)
    if not lock:
        enforce_no_lone_eighths(working, bpm, ctx.eighth_beats, max(0, ctx.min_eighth_pairs), log)
        ensure_measure_validity(working, bpm, log)
    enforce_interval_caps(working, ctx, log, any_pair_beat=lock)

    validation = validate_all_must(working, ctx)
    if not validation.ok:
        log.append(
            RepairLogEntry(
                "pass10_must_violation",
                f"violations={validation.violations} illegalCounts={validation.illegal_counts}",
            )
        )
        logger.debug("pass10 violations: %s", validation.violations)
    return attack_events(working), log
