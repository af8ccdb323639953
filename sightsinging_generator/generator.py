"""Exercise engine tying the generation stages together.

``generate_exercise`` is the public entry point.  It validates the request,
checks whether the user's illegal rules leave any singable motion, builds
one harmony spine and then generates three independent melody variants.
Each variant walks the phrases in order::

    plan -> rhythm grid -> skeleton -> embellishment -> phrase passes

and is finished by the user-constraint pass, the playback sweep and the tie
merge.  A last interval sweep runs on the finished attacks and any variant
that still breaks a hard invariant is dropped.  The best scoring variant is
returned; ties go to the earlier one.

Phrases sharing a label are reused: a plain repeat copies the first phrase
with that label, while a ``prime`` phrase keeps the first half of it and
generates a new second half.

Example
-------
>>> from sightsinging_generator.models import ExerciseSpec
>>> result = generate_exercise(ExerciseSpec(), seed=7)
>>> result.status
'ok'

Design Notes
------------
Every stage takes a seed derived from the caller's seed and the variant and
phrase indices, so a ``(spec, seed)`` pair always reproduces the same
exercise.  The multipliers below must not change or saved seeds will
generate different melodies.
"""

from __future__ import annotations

# ---------------------------------------------------------------
# Modification Summary
# ---------------------------------------------------------------
# * Candidate generation raises ``MelodyNoSolutionError`` internally and
#   ``generate_exercise`` converts it into a ``NoSolution`` result so callers
#   never need a try/except for infeasible rule sets.
# * Manual pitch edits are keyed by attack identity and can be re-applied
#   after regeneration with ``apply_pitch_edits``.
# * Finished variants are swept against the leap cap and checked with
#   ``find_violation``; a variant that fails is dropped with a warning.
# ---------------------------------------------------------------

import logging
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from . import KEY_TO_PC
from .embellish import realize_phrase_grid_pitches
from .errors import MelodyNoSolutionError, Pass4AssertionError
from .finalize import build_playback_array, remove_stray_phrase_start_trailing_eighths, render_playback
from .harmony_generator import build_harmony_spine
from .models import (
    CandidateExercise,
    ExerciseSpec,
    GenerationResult,
    HarmonyEvent,
    MelodyEvent,
    NoSolution,
    RepairLogEntry,
    SelectionStep,
    SelectionTrace,
)
from .note_utils import key_scale_pcs, midi_to_degree
from .phrase_grid import generate_phrase_grid
from .phrase_passes import (
    apply_dominant_tendency_pass,
    apply_illegal_rules_adjacency_pass,
    enforce_ee_pair_melodic_rules,
    enforce_leap_budget_per_phrase,
)
from .phrase_planner import generate_phrase_plan
from .pitch_selection import IllegalRules, check_feasibility
from .repair import ConstraintContext, enforce_interval_caps, find_violation
from .rng import SeededRng
from .scoring import score_melody
from .skeleton import build_skeleton
from .tonnetz import build_tonnetz
from .user_constraints import apply_user_constraints, validate_all_must
from .validation import normalize_and_validate, register_bounds

__all__ = [
    "VARIANT_COUNT",
    "create_melody_candidates",
    "generate_exercise",
    "apply_pitch_edits",
    "events_to_json",
]

logger = logging.getLogger(__name__)

VARIANT_COUNT = 3

# Sub-seed multipliers: (variant, phrase)
PLAN_SEED = (131, 977)
GRID_SEED = (577, 43)
SKELETON_SEED = (193, 17)
REALIZE_SEED = (811, 31)
HARMONY_SEED_OFFSET = 101


def _sub_seed(seed: int, factors: Tuple[int, int], variant: int, phrase: int) -> int:
    return seed + variant * factors[0] + phrase * factors[1]


def _to_relative(events: Sequence[MelodyEvent], start_measure: int) -> List[MelodyEvent]:
    relative = []
    for event in events:
        clone = event.copy()
        clone.measure = event.measure - start_measure + 1
        relative.append(clone)
    return relative


def _to_absolute(events: Sequence[MelodyEvent], start_measure: int, phrase_number: int) -> List[MelodyEvent]:
    absolute = []
    for event in events:
        clone = event.copy()
        clone.measure = event.measure + start_measure - 1
        clone.phrase_index = phrase_number
        absolute.append(clone)
    return absolute


def _merge_prime(
    generated: Sequence[MelodyEvent],
    base: Sequence[MelodyEvent],
    phrase_length_measures: int,
    beats_per_measure: int,
) -> List[MelodyEvent]:
    """Keep the first half of ``base`` and the second half of ``generated``."""

    half = phrase_length_measures * beats_per_measure / 2

    def position(event: MelodyEvent) -> float:
        return (event.measure - 1) * beats_per_measure + event.onset_beat - 1

    merged = [e.copy() for e in base if position(e) < half]
    merged.extend(e.copy() for e in generated if position(e) >= half)
    merged.sort(key=lambda e: (e.measure, e.onset_beat))
    return merged


def _phrase_passes(
    events: Sequence[MelodyEvent],
    rules: IllegalRules,
    key_scale: Sequence[int],
    range_min: int,
    range_max: int,
    max_leap: int,
    max_large_leaps: int,
    beats_per_measure: int,
    log: List[RepairLogEntry],
) -> List[MelodyEvent]:
    events = apply_illegal_rules_adjacency_pass(events, rules, key_scale, range_min, range_max, max_leap)
    events = apply_dominant_tendency_pass(events, rules, key_scale, range_min, range_max, max_leap)
    events = enforce_leap_budget_per_phrase(
        events, beats_per_measure, range_min, range_max, max_leap, max_large_leaps, log
    )
    return enforce_ee_pair_melodic_rules(events, range_min, range_max)


def create_melody_candidates(
    spec: ExerciseSpec,
    harmony: Sequence[HarmonyEvent],
    seed: int,
    lock_final_rhythm: bool = True,
) -> List[CandidateExercise]:
    """Generate and score every melody variant for ``spec``.

    Parameters
    ----------
    spec:
        Exercise request.  It is validated and normalised first.
    harmony:
        Harmony spine covering every phrase.
    seed:
        Base seed; each stage derives its own sub-seed from it.
    lock_final_rhythm:
        Keep the rhythm chosen by the grid planner.  When ``False`` the full
        repair pass may re-quantise measures and the rhythm is nudged toward
        the requested distribution.

    Returns
    -------
    list[CandidateExercise]
        One candidate per variant in generation order.

    Raises
    ------
    InputValidationError
        When ``spec`` is invalid.
    MelodyNoSolutionError
        When the illegal rules leave no singable motion in the register.
    Pass4AssertionError
        When no variant keeps the hard invariants after the final sweep.
        Variants that break one are dropped with a warning.
    """

    spec = normalize_and_validate(spec)
    user = spec.user_constraints
    range_min, range_max = register_bounds(spec)
    bpm = spec.beats_per_measure
    length = spec.phrase_length_measures
    phrases = spec.phrases
    key_scale = key_scale_pcs(KEY_TO_PC[spec.key], spec.mode)
    rules = IllegalRules.from_spec(spec)
    max_leap = user.max_leap_semitones
    max_large_leaps = user.max_large_leaps_per_phrase
    min_pairs = user.min_eighth_pairs_per_phrase
    feasibility = check_feasibility(rules, range_min, range_max, key_scale)

    ctx = ConstraintContext(
        beats_per_measure=bpm,
        range_min=range_min,
        range_max=range_max,
        hard_start_do=user.hard_start_do,
        cadence_type=user.cadence_type,
        end_on_do_hard=user.end_on_do_hard,
        min_eighth_pairs=min_pairs,
        max_leap=max_leap,
        illegal_degrees=list(spec.illegal_degrees),
        illegal_intervals=list(spec.illegal_intervals_semis),
        illegal_transitions=list(spec.illegal_transitions),
        allowed_note_values=list(user.allowed_note_values),
        lock_final_rhythm=lock_final_rhythm,
        rhythm_dist=None if lock_final_rhythm else user.rhythm_dist,
    )

    candidates: List[CandidateExercise] = []
    failure: Optional[Pass4AssertionError] = None
    for variant in range(VARIANT_COUNT):
        melody: List[MelodyEvent] = []
        trace: List[SelectionTrace] = []
        log: List[RepairLogEntry] = []
        label_cache: Dict[str, List[MelodyEvent]] = {}
        relaxation_tier = feasibility.tier
        relaxed_rules = list(feasibility.relaxed_rules)
        prev_midi = max(range_min, min(range_max, 60 + variant))

        for index, phrase in enumerate(phrases):
            start_measure = index * length + 1
            cached = label_cache.get(phrase.label)
            if cached is not None and not phrase.prime:
                copied = _to_absolute(cached, start_measure, index + 1)
                melody.extend(copied)
                if copied:
                    prev_midi = copied[-1].midi
                trace.append(
                    SelectionTrace(
                        start_measure,
                        1,
                        [SelectionStep("phraseReuse", len(copied), f"reused_label={phrase.label}")],
                    )
                )
                continue

            plan = generate_phrase_plan(
                length,
                spec.time_sig,
                seed=_sub_seed(seed, PLAN_SEED, variant, index),
                register=spec.range,
                cadence=phrase.cadence,
                difficulty=2,
                start_degree=spec.starting_degree,
                start_degree_locked=user.start_degree_locked,
            )
            logger.debug(
                "[plan] phrase=%d direction=%s start=%d peak=m%d:%d cadence=%s",
                index + 1,
                plan.direction,
                plan.start_degree,
                plan.peak_measure,
                plan.peak_degree,
                plan.cadence_degrees,
            )
            grid = generate_phrase_grid(
                plan,
                phrase,
                start_measure,
                length,
                bpm,
                spec.rhythm_weights,
                rhythm_dist=user.rhythm_dist,
                min_eighth_pairs=min_pairs,
                lock_rhythm_constraints=True,
                allowed_note_values=user.allowed_note_values,
                seed=_sub_seed(seed, GRID_SEED, variant, index),
            )
            logger.debug(
                "[grid] phrase=%d plan=%s",
                index + 1,
                " ".join(f"m{m.measure}:{m.template_id}" for m in grid.measures),
            )
            skeleton = build_skeleton(
                harmony,
                plan,
                phrase,
                index,
                length,
                bpm,
                spec.key,
                spec.mode,
                range_min,
                range_max,
                max_leap,
                seed=_sub_seed(seed, SKELETON_SEED, variant, index),
                prev_midi=prev_midi,
                start_degree_locked=user.start_degree_locked,
                rules=rules,
                grid=grid,
            )
            if skeleton.relaxation_tier > relaxation_tier:
                relaxation_tier = skeleton.relaxation_tier
            for rule in skeleton.relaxed_rules:
                if rule not in relaxed_rules:
                    relaxed_rules.append(rule)

            events, realized_trace = realize_phrase_grid_pitches(
                spec,
                phrase,
                index,
                length,
                grid,
                harmony,
                skeleton,
                range_min,
                range_max,
                max_leap,
                seed=_sub_seed(seed, REALIZE_SEED, variant, index),
            )
            if phrase.prime and cached is not None:
                merged = _merge_prime(_to_relative(events, start_measure), cached, length, bpm)
                events = _to_absolute(merged, start_measure, index + 1)

            events = _phrase_passes(
                events, rules, key_scale, range_min, range_max, max_leap, max_large_leaps, bpm, log
            )
            melody.extend(events)
            trace.extend(realized_trace)
            if events:
                prev_midi = events[-1].midi
            if phrase.label not in label_cache:
                label_cache[phrase.label] = _to_relative(events, start_measure)

        playback = build_playback_array(melody, bpm)
        constrained, constraint_log = apply_user_constraints(playback, ctx)
        log.extend(constraint_log)
        final = build_playback_array(constrained, bpm)
        final = remove_stray_phrase_start_trailing_eighths(final, length, bpm)
        # Dropped attacks can join two notes across a wider leap.
        enforce_interval_caps(final, ctx, log, any_pair_beat=lock_final_rhythm)
        render_playback(final, bpm)
        violation = find_violation(final, ctx, any_pair_beat=lock_final_rhythm)
        if violation is not None:
            failure = Pass4AssertionError(*violation)
            logger.warning("Dropping variant %d: %s", variant + 1, failure)
            continue

        validation = validate_all_must(final, ctx)
        first = midi_to_degree(final[0].midi, key_scale) if final else None
        last = midi_to_degree(final[-1].midi, key_scale) if final else None
        logger.debug(
            "[final] variant=%d startDeg=%s endDeg=%s events=%d mustViolations=%d",
            variant + 1,
            first,
            last,
            len(final),
            len(validation.violations),
        )

        scored = score_melody(final, spec)
        candidates.append(
            CandidateExercise(
                id=f"variant-{variant + 1}",
                harmony=list(harmony),
                events=final,
                trace=trace,
                metrics=scored.metrics,
                score=scored.score,
                relaxation_tier=relaxation_tier,
                relaxed_rules=relaxed_rules,
                logs=[str(entry) for entry in log],
            )
        )
    if not candidates and failure is not None:
        raise failure
    return candidates


def generate_exercise(spec: ExerciseSpec, seed: int, lock_final_rhythm: bool = True) -> GenerationResult:
    """Generate a complete exercise for ``spec``.

    Parameters
    ----------
    spec:
        Exercise request.
    seed:
        Integer seed.  Identical ``(spec, seed)`` pairs give identical
        results.
    lock_final_rhythm:
        See :func:`create_melody_candidates`.

    Returns
    -------
    GenerationResult
        ``status`` is ``"ok"`` with the best variant, or ``"no_solution"``
        with a :class:`NoSolution` naming the blocking rule sets.

    Raises
    ------
    InputValidationError
        When ``spec`` is invalid.  Infeasible rule sets are returned, not
        raised.
    """

    normalized = normalize_and_validate(spec)
    logs: List[str] = []
    try:
        harmony = build_harmony_spine(
            normalized, build_tonnetz(normalized.key), SeededRng(seed + HARMONY_SEED_OFFSET)
        )
        candidates = create_melody_candidates(normalized, harmony, seed, lock_final_rhythm)
    except MelodyNoSolutionError as exc:
        logger.warning("No melody satisfies the illegal rules: %s", exc)
        logs.append(f"no_solution degrees={exc.illegal_degrees} intervals={exc.illegal_intervals_semis}")
        return GenerationResult(
            status="no_solution",
            seed=seed,
            logs=logs,
            no_solution=NoSolution(
                illegal_degrees=list(exc.illegal_degrees),
                illegal_intervals_semis=list(exc.illegal_intervals_semis),
                illegal_transitions=list(exc.illegal_transitions),
            ),
        )

    best = candidates[0]
    for candidate in candidates[1:]:
        if candidate.score > best.score:
            best = candidate
    logger.info("Selected %s score=%.3f of %d variants", best.id, best.score, len(candidates))

    logs.extend(best.logs)
    return GenerationResult(
        status="ok",
        seed=seed,
        events=best.events,
        harmony=best.harmony,
        trace=best.trace,
        metrics=best.metrics,
        score=best.score,
        candidates=candidates,
        relaxation_tier=best.relaxation_tier,
        relaxed_rules=list(best.relaxed_rules),
        logs=logs,
    )


def apply_pitch_edits(
    events: Sequence[MelodyEvent],
    edits: Mapping[Tuple[int, float, str, int], int],
) -> List[MelodyEvent]:
    """Return a copy of ``events`` with manual pitch edits applied.

    ``edits`` maps an attack identity ``(measure, onset, chord_id, index)``
    (see :meth:`MelodyEvent.identity`, where ``index`` counts attacks) to
    the new MIDI note.  Identities that no longer exist are skipped with a
    warning so edits survive regeneration where the attack does.

    Raises
    ------
    ValueError
        If an edited pitch lies outside the MIDI range.
    """

    for midi in edits.values():
        if not 0 <= int(midi) <= 127:
            raise ValueError(f"MIDI note out of range: {midi}")
    result = [e.copy() for e in events]
    matched = set()
    index = 0
    for event in result:
        if not event.is_attack:
            continue
        identity = event.identity(index)
        index += 1
        if identity not in edits:
            continue
        new_midi = int(edits[identity])
        if event.original_midi is None:
            event.original_midi = event.midi
        event.edited_midi = new_midi
        event.midi = new_midi
        event.is_edited = new_midi != event.original_midi
        matched.add(identity)
    for identity in edits:
        if identity not in matched:
            logger.warning("Pitch edit %s does not match any attack", identity)
    return result


def _harmony_to_dict(event: HarmonyEvent) -> dict:
    return {
        "measure": event.measure,
        "beat": event.beat,
        "degree": event.degree,
        "rootPc": event.root_pc,
        "chordPcs": list(event.chord_pcs),
        "quality": event.quality,
    }


def _trace_to_dict(entry: SelectionTrace) -> dict:
    return {
        "measure": entry.measure,
        "beat": entry.beat,
        "steps": [
            {
                "step": step.step,
                "remainingCandidateCount": step.remaining_candidate_count,
                "reason": step.reason,
                "chosenPitch": step.chosen_pitch,
            }
            for step in entry.steps
        ],
    }


def events_to_json(result: GenerationResult) -> dict:
    """Return a JSON-serialisable payload for ``result``."""

    if not result.ok:
        info: Optional[NoSolution] = result.no_solution
        details = {
            "illegalDegrees": list(info.illegal_degrees) if info else [],
            "illegalIntervalsSemis": list(info.illegal_intervals_semis) if info else [],
            "illegalTransitions": [
                {"a": t.a, "b": t.b, "mode": t.mode} for t in (info.illegal_transitions if info else [])
            ],
        }
        return {
            "status": result.status,
            "seed": result.seed,
            "error": {
                "title": info.title if info else "",
                "message": info.message if info else "",
                "suggestions": list(info.suggestions) if info else [],
                "reasonCode": info.reason_code if info else "",
                "details": details,
            },
            "logs": list(result.logs),
        }
    return {
        "status": result.status,
        "seed": result.seed,
        "score": round(result.score, 3),
        "events": [event.to_dict() for event in result.events],
        "harmony": [_harmony_to_dict(h) for h in result.harmony],
        "metrics": [{"name": m.name, "value": m.value} for m in result.metrics],
        "trace": [_trace_to_dict(t) for t in result.trace],
        "relaxationTier": result.relaxation_tier,
        "relaxedRules": list(result.relaxed_rules),
        "logs": list(result.logs),
    }
