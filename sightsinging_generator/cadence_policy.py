"""Voice-leading rules for the last two melody slots of a phrase.

The policy maps ``(cadence type, degree of the previous note)`` to the scale
degrees the melody may move to.  Options marked ``hard`` must be honoured when
any candidate satisfies them; otherwise every candidate receives a
log-weighted bonus so the cost model can still prefer idiomatic endings.

Example
-------
>>> out = apply_cadence_policy(
...     "authentic",
...     from_degree=7,
...     candidates=[CadenceCandidate(72, 1), CadenceCandidate(64, 3)],
...     slot_tag="final",
... )
>>> [c.degree for c in out.candidates]
[1]
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

__all__ = [
    "CadenceOption",
    "CadenceCandidate",
    "CadencePolicyResult",
    "get_cadence_transition_spec",
    "apply_cadence_policy",
    "degree_step_distance",
]

logger = logging.getLogger(__name__)

W_CADENCE = 9
AVOID_PENALTY = 12


@dataclass(frozen=True)
class CadenceOption:
    degree: int
    weight: float
    hard: bool = False
    avoid: bool = False


@dataclass
class CadenceCandidate:
    midi: int
    degree: int
    bonus: float = 0.0
    option: Optional[CadenceOption] = None


@dataclass
class CadencePolicyResult:
    candidates: List[CadenceCandidate]
    debug: str
    applied_hard: bool


_AUTHENTIC: Dict[int, List[CadenceOption]] = {
    7: [CadenceOption(1, 1.0, hard=True)],
    2: [CadenceOption(1, 0.65), CadenceOption(3, 0.35)],
    4: [CadenceOption(3, 1.0, hard=True)],
    5: [CadenceOption(1, 0.6), CadenceOption(5, 0.4)],
}

_PLAGAL: Dict[int, List[CadenceOption]] = {
    6: [CadenceOption(5, 1.0, hard=True)],
    4: [CadenceOption(3, 1.0, hard=True)],
    1: [CadenceOption(1, 1.0, hard=True)],
}

_HALF: Dict[int, List[CadenceOption]] = {
    1: [
        CadenceOption(7, 0.4),
        CadenceOption(2, 0.35),
        CadenceOption(5, 0.25),
        CadenceOption(4, 0.05, avoid=True),
    ],
    3: [CadenceOption(2, 0.6), CadenceOption(4, 0.3), CadenceOption(5, 0.1)],
    5: [CadenceOption(5, 0.6), CadenceOption(7, 0.2), CadenceOption(2, 0.2)],
}


def get_cadence_transition_spec(cadence_type: str) -> Dict[int, List[CadenceOption]]:
    """Return the ``from_degree -> options`` table for ``cadence_type``."""

    if cadence_type == "plagal":
        return _PLAGAL
    if cadence_type == "half":
        return _HALF
    return _AUTHENTIC


def degree_step_distance(a: int, b: int) -> int:
    """Return the circular distance between two scale degrees (0-3)."""

    a_norm = (a - 1) % 7
    b_norm = (b - 1) % 7
    return min((b_norm - a_norm) % 7, (a_norm - b_norm) % 7)


def _bonus(weight: float) -> float:
    return math.log(max(weight, 0.0001)) * W_CADENCE


def apply_cadence_policy(
    cadence_type: str,
    from_degree: int,
    candidates: Sequence[CadenceCandidate],
    slot_tag: str,
    tonic_degree: int = 1,
) -> CadencePolicyResult:
    """Filter and weight cadence-slot ``candidates``.

    Parameters
    ----------
    cadence_type:
        ``authentic``, ``plagal`` or ``half``.
    from_degree:
        Scale degree of the note preceding the slot.
    candidates:
        Pitches under consideration with their scale degrees.
    slot_tag:
        ``penultimate`` or ``final``.  The final slot must be reached by step
        except for the dominant-to-tonic drop ``5 -> 1``.

    Returns
    -------
    CadencePolicyResult
        Surviving candidates with their bonus and the option they matched.
        Filtering never empties the list: a rule that would remove every
        candidate is skipped and noted in ``debug``.
    """

    options = get_cadence_transition_spec(cadence_type).get(from_degree, [])
    working = list(candidates)
    deny_triggered = False
    deny_fallback = False
    step_triggered = False
    step_fallback = False

    # Mi -> Fa is not allowed inside an authentic cadence window.
    if cadence_type == "authentic" and from_degree == 3:
        if any(c.degree == 4 for c in working):
            deny_triggered = True
            legal = [c for c in working if c.degree != 4]
            if legal:
                working = legal
            else:
                deny_fallback = True

    if slot_tag == "final":
        step_triggered = True
        stepwise = [
            c
            for c in working
            if degree_step_distance(from_degree, c.degree) == 1
            or (cadence_type != "half" and from_degree == 5 and c.degree == tonic_degree)
        ]
        if stepwise:
            working = stepwise
        else:
            step_fallback = True

    def enrich(pool: Sequence[CadenceCandidate], disable_avoid_penalty: bool) -> List[CadenceCandidate]:
        by_degree = {option.degree: option for option in reversed(options)}
        has_non_avoid = any(
            c.degree in by_degree and not by_degree[c.degree].avoid for c in pool
        )
        enriched: List[CadenceCandidate] = []
        for c in pool:
            option = by_degree.get(c.degree)
            if option is None:
                enriched.append(CadenceCandidate(c.midi, c.degree, 0.0, None))
                continue
            bonus = _bonus(option.weight)
            if option.avoid and has_non_avoid and not disable_avoid_penalty:
                bonus -= AVOID_PENALTY
            enriched.append(CadenceCandidate(c.midi, c.degree, bonus, option))
        return enriched

    flags = (
        f"denyTriggered={deny_triggered} denyOnlyOptionFallback={deny_fallback} "
        f"stepRuleTriggered={step_triggered} stepRuleFallback={step_fallback}"
    )
    hard_degrees = {option.degree for option in options if option.hard}
    if hard_degrees:
        matched = [c for c in working if c.degree in hard_degrees]
        if matched:
            return CadencePolicyResult(
                enrich(matched, True),
                f"cadence_policy hard slot={slot_tag} from={from_degree} {flags}",
                True,
            )
        logger.debug("cadence hard option unavailable slot=%s from=%d", slot_tag, from_degree)
        return CadencePolicyResult(
            enrich(working, False),
            f"cadence_hard_failed_fallback_weighted slot={slot_tag} from={from_degree} {flags}",
            False,
        )

    suffix = ""
    if deny_triggered:
        suffix += " denyRule=cadence_illegal_only_option" if deny_fallback else " denyRule=mi_to_fa_pruned"
    if step_triggered:
        suffix += " stepRule=final_step_fallback" if step_fallback else " stepRule=final_step_enforced"
    return CadencePolicyResult(
        enrich(working, False),
        f"cadence_policy weighted slot={slot_tag} from={from_degree}{suffix}",
        False,
    )
