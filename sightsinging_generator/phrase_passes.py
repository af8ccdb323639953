"""Melodic passes applied to each realized phrase.

The generator runs these in order on the attacks of a single phrase:

1. :func:`apply_illegal_rules_adjacency_pass` - retune notes that break the
   user's illegal degree, interval or transition rules.
2. :func:`apply_dominant_tendency_pass` - over a dominant chord Fa falls to
   Mi and Ti rises to Do.
3. :func:`enforce_leap_budget_per_phrase` - at most ``max_large_leaps``
   leaps wider than a major third per phrase, each followed by a step.
4. :func:`enforce_ee_pair_melodic_rules` - an eighth pair moves by at most a
   major third and a third resolves by step.

Every pass copies its input and returns the new list.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence

from .models import FunctionTag, MelodyEvent, RepairLogEntry, is_illegal_transition
from .note_utils import (
    chord_tone_candidates,
    collect_midis_from_pcs,
    degree_candidates,
    midi_to_degree,
    nearest_allowed_pc_within_leap_cap,
    next_scale_step,
)
from .pitch_selection import IllegalRules
from .repair import (
    attack_events,
    chord_degree_from_chord_id,
    chord_pcs_for_event,
    demote_event,
    ensure_measure_validity,
    enforce_max_leap,
    harmony_aware_step_toward,
    parse_key,
    retune_event,
)

__all__ = [
    "LARGE_LEAP_THRESHOLD",
    "nearest_legal_midi",
    "apply_illegal_rules_adjacency_pass",
    "apply_dominant_tendency_pass",
    "enforce_leap_budget_per_phrase",
    "enforce_ee_pair_melodic_rules",
]

logger = logging.getLogger(__name__)

LARGE_LEAP_THRESHOLD = 4
ILLEGAL_REPAIR_ROUNDS = 3
LEAP_BUDGET_GUARD = 64
NON_CHORD_REPAIR_PENALTY = 35


def _copy(events: Sequence[MelodyEvent]) -> List[MelodyEvent]:
    return [event.copy() for event in events]


def _violates(
    midi: int, prev: Optional[int], key_scale: Sequence[int], rules: IllegalRules
) -> bool:
    degree = midi_to_degree(midi, key_scale)
    if degree in rules.degrees:
        return True
    if prev is None:
        return False
    if abs(midi - prev) in rules.intervals:
        return True
    return is_illegal_transition(midi_to_degree(prev, key_scale), degree, rules.transitions)


def nearest_legal_midi(
    event: MelodyEvent,
    prev: Optional[MelodyEvent],
    following: Optional[MelodyEvent],
    rules: IllegalRules,
    key_scale: Sequence[int],
    range_min: int,
    range_max: int,
    max_leap: int,
) -> Optional[int]:
    """Return the legal chord or scale tone nearest ``event`` (or ``None``)."""

    pool = sorted(
        set(chord_tone_candidates(chord_pcs_for_event(event), range_min, range_max))
        | set(collect_midis_from_pcs(key_scale, range_min, range_max))
    )
    legal = []
    for midi in pool:
        if _violates(midi, prev.midi if prev else None, key_scale, rules):
            continue
        if prev is not None and abs(midi - prev.midi) > max_leap:
            continue
        if following is not None:
            gap = abs(following.midi - midi)
            if gap > max_leap or gap in rules.intervals:
                continue
            if is_illegal_transition(
                midi_to_degree(midi, key_scale), midi_to_degree(following.midi, key_scale), rules.transitions
            ):
                continue
        legal.append(midi)
    if not legal:
        return None
    return min(legal, key=lambda midi: abs(midi - event.midi))


def apply_illegal_rules_adjacency_pass(
    events: Sequence[MelodyEvent],
    rules: IllegalRules,
    key_scale: Sequence[int],
    range_min: int,
    range_max: int,
    max_leap: int,
) -> List[MelodyEvent]:
    """Retune every attack that breaks a user rule against its predecessor."""

    working = _copy(events)
    if rules.empty:
        return working
    for _ in range(ILLEGAL_REPAIR_ROUNDS):
        attacks = attack_events(working)
        changed = False
        for i, curr in enumerate(attacks):
            prev = attacks[i - 1] if i > 0 else None
            if not _violates(curr.midi, prev.midi if prev else None, key_scale, rules):
                continue
            following = attacks[i + 1] if i + 1 < len(attacks) else None
            retune = nearest_legal_midi(curr, prev, following, rules, key_scale, range_min, range_max, max_leap)
            if retune is not None and retune != curr.midi:
                retune_event(curr, retune)
                curr.reason = f"{curr.reason}|illegalRuleRepair"
                changed = True
        if not changed:
            break
    return working


def _tendency_overridden(source: int, target: int, rules: IllegalRules) -> bool:
    if source in rules.degrees or target in rules.degrees:
        return True
    if 1 in rules.intervals or 2 in rules.intervals:
        return True
    return is_illegal_transition(source, target, rules.transitions)


def apply_dominant_tendency_pass(
    events: Sequence[MelodyEvent],
    rules: IllegalRules,
    key_scale: Sequence[int],
    range_min: int,
    range_max: int,
    max_leap: int,
) -> List[MelodyEvent]:
    """Resolve Fa down to Mi and Ti up to Do over dominant harmony.

    Only the note *after* the tendency tone is retuned.  A user rule that
    forbids the resolution (the degree, a step interval or the transition)
    leaves the pair alone.
    """

    working = _copy(events)
    attacks = attack_events(working)
    for i in range(len(attacks) - 1):
        curr, nxt = attacks[i], attacks[i + 1]
        after = attacks[i + 2] if i + 2 < len(attacks) else None
        if chord_degree_from_chord_id(curr.chord_id) not in (5, 7):
            continue
        degree = midi_to_degree(curr.midi, key_scale)
        if degree == 4:
            target, direction, rule = 3, -1, "fa_to_mi"
        elif degree == 7:
            target, direction, rule = 1, 1, "ti_to_do"
        else:
            continue
        if _tendency_overridden(degree, target, rules):
            continue

        interval = nxt.midi - curr.midi
        if (
            midi_to_degree(nxt.midi, key_scale) == target
            and 0 < abs(interval) <= 2
            and (interval > 0) == (direction > 0)
        ):
            continue

        next_chord = set(chord_pcs_for_event(nxt))
        options = [
            midi
            for midi in degree_candidates(target, key_scale, range_min, range_max)
            if 0 < (midi - curr.midi) * direction <= 2
            and abs(midi - curr.midi) <= max_leap
            and (after is None or abs(after.midi - midi) <= max_leap)
        ]
        if not options:
            continue
        chosen = min(options, key=lambda midi: (0 if midi % 12 in next_chord else 1, abs(midi - nxt.midi)))
        if chosen != nxt.midi:
            logger.debug(
                "[pass4-voiceLeading] %s m%db%.1f -> m%db%.1f from=%d to=%d",
                rule,
                curr.measure,
                curr.onset_beat,
                nxt.measure,
                nxt.onset_beat,
                curr.midi,
                chosen,
            )
            retune_event(nxt, chosen)
            nxt.reason = f"{nxt.reason}|vl_{rule}"
    return working


def _large_leap_indices(attacks: Sequence[MelodyEvent]) -> List[int]:
    return [
        i for i in range(1, len(attacks)) if abs(attacks[i].midi - attacks[i - 1].midi) > LARGE_LEAP_THRESHOLD
    ]


def _kept_large_leaps(attacks: Sequence[MelodyEvent], indices: Sequence[int], allowed: int) -> List[int]:
    if allowed <= 0 or not indices:
        return []
    preferred = next(
        (
            i
            for i in indices
            if attacks[i].has_tag(FunctionTag.CLIMAX) and attacks[i].midi > attacks[i - 1].midi
        ),
        None,
    )
    ordered = list(indices) if preferred is None else [preferred] + [i for i in indices if i != preferred]
    return ordered[:allowed]


def enforce_leap_budget_per_phrase(
    events: Sequence[MelodyEvent],
    beats_per_measure: int,
    range_min: int,
    range_max: int,
    max_leap: int,
    max_large_leaps: int,
    log: List[RepairLogEntry],
) -> List[MelodyEvent]:
    """Limit leaps wider than a major third to ``max_large_leaps`` per phrase.

    Excess leaps are repaired by retuning the landing note (chord tone first,
    then scale tone, then the same pitch class in another octave) or, as a
    last resort, by demoting it to a tie.  Each surviving large leap is then
    followed by a step, preferably in the opposite direction.
    """

    working = _copy(events)
    cap = max(1, int(max_leap))
    allowed = max(0, int(max_large_leaps))
    phrase_ids = sorted({event.phrase_index or 1 for event in attack_events(working)}) or [1]

    def phrase_attacks(phrase_id: int) -> List[MelodyEvent]:
        return [event for event in attack_events(working) if (event.phrase_index or 1) == phrase_id]

    def fits(midi: int, prev: MelodyEvent, following: Optional[MelodyEvent]) -> bool:
        step_in = abs(midi - prev.midi)
        if step_in > LARGE_LEAP_THRESHOLD or step_in > cap:
            return False
        return following is None or abs(following.midi - midi) <= cap

    def retune_candidate(curr: MelodyEvent, prev: MelodyEvent, following: Optional[MelodyEvent]) -> Optional[int]:
        _, _, scale = parse_key(curr.key_id)
        scored = []
        for midi in chord_tone_candidates(chord_pcs_for_event(curr), range_min, range_max):
            if fits(midi, prev, following):
                scored.append((abs(midi - curr.midi) * 10 + abs(midi - prev.midi), midi))
        for midi in collect_midis_from_pcs(scale, range_min, range_max):
            if fits(midi, prev, following):
                scored.append((abs(midi - curr.midi) * 10 + abs(midi - prev.midi) + NON_CHORD_REPAIR_PENALTY, midi))
        return min(scored)[1] if scored else None

    def octave_candidate(curr: MelodyEvent, prev: MelodyEvent, following: Optional[MelodyEvent]) -> Optional[int]:
        options = [
            midi
            for midi in collect_midis_from_pcs([curr.midi % 12], range_min, range_max)
            if fits(midi, prev, following)
        ]
        return min(options, key=lambda midi: abs(midi - curr.midi) * 10 + abs(midi - prev.midi)) if options else None

    for phrase_id in phrase_ids:
        for _ in range(LEAP_BUDGET_GUARD):
            attacks = phrase_attacks(phrase_id)
            large = _large_leap_indices(attacks)
            if len(large) <= allowed:
                break
            kept = _kept_large_leaps(attacks, large, allowed)
            offending = next((i for i in large if i not in kept), None)
            if offending is None:
                break
            prev, curr = attacks[offending - 1], attacks[offending]
            following = attacks[offending + 1] if offending + 1 < len(attacks) else None
            original = curr.midi
            detail = f"phrase={phrase_id} idx={offending} prev={prev.midi} from={original}"

            if curr.is_locked:
                log.append(RepairLogEntry("pass5_leapBudget_repair_unresolved", f"{detail} locked"))
                break
            candidate = retune_candidate(curr, prev, following)
            reason = "retune_harmony_or_scale"
            if candidate is None or candidate == curr.midi:
                candidate = octave_candidate(curr, prev, following)
                reason = "octave_same_pc"
            if candidate is not None and candidate != curr.midi:
                retune_event(curr, candidate)
                log.append(RepairLogEntry("pass5_leapBudget_repair", f"{detail} to={candidate} reason={reason}"))
                continue
            relaxed = nearest_allowed_pc_within_leap_cap(
                chord_pcs_for_event(curr), curr.midi, prev.midi, range_min, range_max, cap
            )
            if relaxed is not None and relaxed != curr.midi and abs(relaxed - prev.midi) <= LARGE_LEAP_THRESHOLD:
                retune_event(curr, relaxed)
                log.append(
                    RepairLogEntry("pass5_leapBudget_repair", f"{detail} to={relaxed} reason=shortfall_relaxed_to_maxLeap")
                )
                continue
            demote_event(curr)
            ensure_measure_validity(working, beats_per_measure, log)
            log.append(RepairLogEntry("pass5_leapBudget_repair", f"{detail} to=None reason=demote_attack"))

        attacks = phrase_attacks(phrase_id)
        for i in _large_leap_indices(attacks):
            if i + 1 >= len(attacks):
                continue
            prev, curr, following = attacks[i - 1], attacks[i], attacks[i + 1]
            after = attacks[i + 2] if i + 2 < len(attacks) else None
            out = following.midi - curr.midi
            if 0 < abs(out) <= 2:
                continue
            if not following.is_locked:
                step = _stepwise_recovery(prev, curr, following, after, range_min, range_max, cap)
                if step is not None and step != following.midi:
                    log.append(
                        RepairLogEntry(
                            "pass5_leapBudget_recovery", f"phrase={phrase_id} after={i} from={following.midi} to={step}"
                        )
                    )
                    retune_event(following, step)
            elif not curr.is_locked:
                _, _, scale = parse_key(curr.key_id)
                pool = sorted(
                    set(chord_tone_candidates(chord_pcs_for_event(curr), range_min, range_max))
                    | set(collect_midis_from_pcs(scale, range_min, range_max))
                )
                options = [
                    midi
                    for midi in pool
                    if abs(midi - prev.midi) <= cap and 0 < abs(following.midi - midi) <= 2
                ]
                if options:
                    chosen = min(options, key=lambda midi: abs(midi - curr.midi))
                    if chosen != curr.midi:
                        log.append(
                            RepairLogEntry(
                                "pass5_leapBudget_recovery", f"phrase={phrase_id} after={i} from={curr.midi} to={chosen}"
                            )
                        )
                        retune_event(curr, chosen)

    enforce_max_leap(working, range_min, range_max, log, cap, allow_demotion=False)
    ensure_measure_validity(working, beats_per_measure, log)
    return working


def _stepwise_recovery(
    prev: MelodyEvent,
    curr: MelodyEvent,
    following: MelodyEvent,
    after: Optional[MelodyEvent],
    range_min: int,
    range_max: int,
    cap: int,
) -> Optional[int]:
    _, _, scale = parse_key(following.key_id)
    preferred = -1 if curr.midi >= prev.midi else 1
    options = []
    for direction in (preferred, -preferred):
        step = next_scale_step(curr.midi, direction, scale, range_min, range_max)
        if step is not None:
            options.append(step)
    for delta in (-2, -1, 1, 2):
        midi = curr.midi + delta
        if range_min <= midi <= range_max and midi % 12 in scale:
            options.append(midi)
    valid = [
        midi
        for midi in dict.fromkeys(options)
        if abs(midi - curr.midi) <= min(2, cap) and (after is None or abs(after.midi - midi) <= cap)
    ]
    if not valid:
        return None
    return min(
        valid,
        key=lambda midi: (0 if (midi > curr.midi) == (preferred > 0) else 1, abs(midi - following.midi)),
    )


def _pair_window(onset: float) -> Optional[int]:
    for window in (2, 3):
        if abs(onset - window) < 1e-3 or abs(onset - (window + 0.5)) < 1e-3:
            return window
    return None


def enforce_ee_pair_melodic_rules(
    events: Sequence[MelodyEvent], range_min: int, range_max: int
) -> List[MelodyEvent]:
    """Clamp eighth pairs to a major third and resolve a third by step."""

    working = _copy(events)
    attacks = attack_events(working)
    for i in range(len(attacks) - 1):
        e1, e2 = attacks[i], attacks[i + 1]
        if e1.measure != e2.measure:
            continue
        window = _pair_window(e1.onset_beat)
        if window is None or abs(e2.onset_beat - (window + 0.5)) > 1e-3:
            continue
        following = attacks[i + 2] if i + 2 < len(attacks) else None
        _, _, scale = parse_key(e2.key_id)

        delta = abs(e2.midi - e1.midi)
        if delta > 4:
            target = following.midi if following is not None else e2.midi
            rewritten = harmony_aware_step_toward(e1.midi, target, e2, range_min, range_max)
            if rewritten != e2.midi:
                logger.debug(
                    "[rhythm-ee-repair] pairIntervalClamp m%d window=%d from=%d to=%d delta=%d target=%d",
                    e1.measure,
                    window,
                    e2.midi,
                    rewritten,
                    delta,
                    target,
                )
                retune_event(e2, rewritten)
                e2.reason = f"{e2.reason}|eePairIntervalRepair"

        delta = abs(e2.midi - e1.midi)
        if delta in (3, 4) and following is not None and abs(following.midi - e2.midi) > 2:
            if not following.is_locked:
                direction = 1 if following.midi >= e2.midi else -1
                resolved = next_scale_step(e2.midi, direction, scale, range_min, range_max)
                if resolved is not None:
                    logger.debug(
                        "[rhythm-ee-repair] thirdResolutionNext m%d window=%d nextFrom=%d nextTo=%d",
                        e1.measure,
                        window,
                        following.midi,
                        resolved,
                    )
                    retune_event(following, resolved)
                    following.reason = f"{following.reason}|eeThirdResolutionRepair"
            else:
                stepwise = harmony_aware_step_toward(e1.midi, following.midi, e2, range_min, range_max)
                if abs(stepwise - e1.midi) <= 2 and stepwise != e2.midi:
                    logger.debug(
                        "[rhythm-ee-repair] thirdForbiddenLockedNext m%d window=%d from=%d to=%d",
                        e1.measure,
                        window,
                        e2.midi,
                        stepwise,
                    )
                    retune_event(e2, stepwise)
                    e2.reason = f"{e2.reason}|eeThirdToStepRepair"

        if abs(e2.midi - e1.midi) > 4:
            direction = 1 if e2.midi >= e1.midi else -1
            step = next_scale_step(e1.midi, direction, scale, range_min, range_max)
            retune_event(e2, step if step is not None else e1.midi)
            e2.reason = f"{e2.reason}|eePairHardClamp"
            logger.debug("[rhythm-ee-repair] hardClamp m%d onsets=%s,%s", e1.measure, e1.onset_beat, e2.onset_beat)
    return working
