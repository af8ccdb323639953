"""Data model shared by every generation stage.

The classes below are plain :mod:`dataclasses`.  Input records
(:class:`ExerciseSpec` and friends) describe what the caller wants, stage
records (:class:`HarmonyEvent`) are frozen once produced, and
:class:`MelodyEvent` is the mutable unit the repair passes rewrite.

Example
-------
>>> spec = ExerciseSpec(key="G", mode="major", time_sig="3/4")
>>> spec.beats_per_measure
3

Design Notes
------------
- Function tags are an :class:`enum.Flag` so tag membership checks are
  bitwise and the set of tags is closed.
- Every attack keeps a stable identity ``(measure, onset, chord_id, index)``
  so manual pitch edits can be re-applied after regeneration.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Tuple

from . import DURATION_NAMES
from .note_utils import octave_of, pitch_name

__all__ = [
    "FunctionTag",
    "LOCKING_TAGS",
    "IllegalTransition",
    "PhraseSpec",
    "RegisterRange",
    "RhythmWeights",
    "UserConstraints",
    "ExerciseSpec",
    "HarmonyEvent",
    "MelodyEvent",
    "SelectionStep",
    "SelectionTrace",
    "RepairLogEntry",
    "AssayMetric",
    "CandidateExercise",
    "NoSolution",
    "GenerationResult",
    "duration_name",
    "is_illegal_transition",
]


class FunctionTag(enum.Flag):
    """Structural role markers attached to melody events."""

    NONE = 0
    ANCHOR = enum.auto()
    STRUCTURAL = enum.auto()
    CLIMAX = enum.auto()
    CADENCE = enum.auto()
    CONNECTIVE_NHT = enum.auto()
    SMOOTHING_RUN = enum.auto()


# Tags that make an attack "locked": repair passes may not retune or demote
# such notes unless a rule explicitly unlocks them.
LOCKING_TAGS = FunctionTag.ANCHOR | FunctionTag.STRUCTURAL | FunctionTag.CLIMAX | FunctionTag.CADENCE


def duration_name(beats: float) -> str:
    """Return the duration class name (``quarter`` etc.) for ``beats``."""

    if beats >= 4:
        return "whole"
    if beats >= 2:
        return "half"
    if beats <= 0.5:
        return "eighth"
    return DURATION_NAMES.get(float(beats), "quarter")


@dataclass(frozen=True)
class IllegalTransition:
    """Forbid moving directly from degree ``a`` to degree ``b``."""

    a: int
    b: int
    mode: str = "adjacent"

    def blocks(self, prev_degree: int, next_degree: int) -> bool:
        return self.mode == "adjacent" and self.a == prev_degree and self.b == next_degree


def is_illegal_transition(prev_degree: int, next_degree: int, rules) -> bool:
    """Return ``True`` when any rule in ``rules`` forbids the move."""

    return any(rule.blocks(prev_degree, next_degree) for rule in rules)


@dataclass(frozen=True)
class PhraseSpec:
    """One phrase of the exercise.

    ``prime`` marks a varied repeat of an earlier phrase sharing ``label``.
    """

    label: str = "A"
    prime: bool = False
    cadence: str = "authentic"


@dataclass
class RegisterRange:
    """Register bounds expressed as scale degree plus octave."""

    low_degree: int = 1
    high_degree: int = 1
    low_octave: int = 4
    high_octave: int = 5


@dataclass
class RhythmWeights:
    """Target note-value distribution in percent (must total 100)."""

    whole: float = 6.25
    half: float = 18.75
    quarter: float = 31.25
    eighth: float = 43.75
    min_eighth_pairs_per_phrase: int = 1
    prefer_eighth_in_pre_climax: bool = True

    @property
    def total(self) -> float:
        return self.whole + self.half + self.quarter + self.eighth

    def as_distribution(self) -> Dict[str, float]:
        return {"EE": self.eighth, "Q": self.quarter, "H": self.half, "W": self.whole}


@dataclass
class UserConstraints:
    """Hard options chosen by the user.  ``None`` means "use the default"."""

    start_degree_locked: bool = False
    hard_start_do: bool = False
    cadence_type: Optional[str] = None
    end_on_do_hard: Optional[bool] = None
    max_leap_semitones: Optional[int] = None
    max_large_leaps_per_phrase: Optional[int] = None
    min_eighth_pairs_per_phrase: Optional[int] = None
    rhythm_dist: Optional[Dict[str, float]] = None
    allowed_note_values: Optional[List[str]] = None


@dataclass
class ExerciseSpec:
    """Complete description of an exercise request."""

    key: str = "C"
    mode: str = "major"
    range: RegisterRange = field(default_factory=RegisterRange)
    phrases: List[PhraseSpec] = field(default_factory=lambda: [PhraseSpec()])
    phrase_length_measures: int = 4
    time_sig: str = "4/4"
    chromatic: bool = False
    starting_degree: int = 1
    clef: str = "treble"
    title: str = "Sight-Singing Exercise"
    illegal_degrees: List[int] = field(default_factory=list)
    illegal_intervals_semis: List[int] = field(default_factory=list)
    illegal_transitions: List[IllegalTransition] = field(default_factory=list)
    rhythm_weights: Optional[RhythmWeights] = None
    user_constraints: Optional[UserConstraints] = None

    @property
    def beats_per_measure(self) -> int:
        try:
            return max(1, int(self.time_sig.split("/")[0]))
        except (ValueError, IndexError):
            return 4

    @property
    def key_id(self) -> str:
        return f"{self.key}-{self.mode}"


@dataclass(frozen=True)
class HarmonyEvent:
    """One chord of the harmony spine."""

    measure: int
    beat: float
    degree: int
    root_pc: int
    chord_pcs: Tuple[int, int, int]
    quality: str


@dataclass
class MelodyEvent:
    """A single note (or tied continuation) of the melody.

    ``is_attack`` is ``False`` for continuations that extend the previous
    attack instead of re-striking.  ``tags`` drive locking decisions in the
    repair passes.
    """

    midi: int
    measure: int
    onset_beat: float
    duration_beats: float
    role: str = "ChordTone"
    reason: str = ""
    chord_id: str = ""
    key_id: str = ""
    phrase_index: Optional[int] = None
    non_harmonic_tone: bool = False
    is_attack: bool = True
    tie_start: bool = False
    tie_stop: bool = False
    tags: FunctionTag = FunctionTag.NONE
    original_midi: Optional[int] = None
    edited_midi: Optional[int] = None
    is_edited: bool = False

    @property
    def pitch(self) -> str:
        return pitch_name(self.midi)

    @property
    def octave(self) -> int:
        return octave_of(self.midi)

    @property
    def beat(self) -> float:
        return self.onset_beat

    @property
    def duration(self) -> str:
        return duration_name(self.duration_beats)

    @property
    def is_locked(self) -> bool:
        return bool(self.tags & LOCKING_TAGS)

    def has_tag(self, tag: FunctionTag) -> bool:
        return bool(self.tags & tag)

    def copy(self) -> "MelodyEvent":
        return replace(self)

    def identity(self, index: int) -> Tuple[int, float, str, int]:
        """Return the stable ``(measure, onset, chord_id, index)`` key."""

        return (self.measure, round(self.onset_beat, 3), self.chord_id, index)

    def to_dict(self) -> dict:
        return {
            "pitch": self.pitch,
            "octave": self.octave,
            "midi": self.midi,
            "duration": self.duration,
            "measure": self.measure,
            "beat": self.onset_beat,
            "onsetBeat": self.onset_beat,
            "durationBeats": self.duration_beats,
            "isAttack": self.is_attack,
            "tieStart": self.tie_start,
            "tieStop": self.tie_stop,
            "role": self.role,
            "reason": self.reason,
            "chordId": self.chord_id,
            "keyId": self.key_id,
            "phraseIndex": self.phrase_index,
            "nonHarmonicTone": self.non_harmonic_tone,
            "functionTags": [tag.name.lower() for tag in FunctionTag if tag and tag in self.tags],
            "isEdited": self.is_edited,
        }


@dataclass
class SelectionStep:
    step: str
    remaining_candidate_count: int
    reason: str
    chosen_pitch: Optional[str] = None


@dataclass
class SelectionTrace:
    """Diagnostic record of how one structural slot was filled."""

    measure: int
    beat: float
    steps: List[SelectionStep] = field(default_factory=list)


@dataclass
class RepairLogEntry:
    code: str
    detail: str = ""

    def __str__(self) -> str:
        return f"{self.code} {self.detail}".strip()


@dataclass
class AssayMetric:
    name: str
    value: float


@dataclass
class CandidateExercise:
    """One fully generated and scored variant."""

    id: str
    harmony: List[HarmonyEvent]
    events: List[MelodyEvent]
    trace: List[SelectionTrace]
    metrics: List[AssayMetric]
    score: float
    relaxation_tier: int = 0
    relaxed_rules: List[str] = field(default_factory=list)
    logs: List[str] = field(default_factory=list)


@dataclass
class NoSolution:
    """User-facing description of an infeasible constraint set."""

    illegal_degrees: List[int]
    illegal_intervals_semis: List[int]
    illegal_transitions: List[IllegalTransition]
    title: str = "We couldn’t build a melody with these settings."
    message: str = (
        "It looks like the note and interval limits are too tight to create a complete phrase."
    )
    suggestions: List[str] = field(
        default_factory=lambda: [
            "Allow at least one step up or down",
            "Let the melody use one more note (like Re or Ti)",
            "Remove one of the “no before/after” rules",
            "Expand the range slightly",
            "Then try again.",
        ]
    )
    reason_code: str = "constraints_too_strict"


@dataclass
class GenerationResult:
    """Outcome of :func:`~sightsinging_generator.generator.generate_exercise`."""

    status: str
    seed: int
    events: List[MelodyEvent] = field(default_factory=list)
    harmony: List[HarmonyEvent] = field(default_factory=list)
    trace: List[SelectionTrace] = field(default_factory=list)
    metrics: List[AssayMetric] = field(default_factory=list)
    score: float = 0.0
    candidates: List[CandidateExercise] = field(default_factory=list)
    relaxation_tier: int = 0
    relaxed_rules: List[str] = field(default_factory=list)
    logs: List[str] = field(default_factory=list)
    no_solution: Optional[NoSolution] = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    @property
    def attacks(self) -> List[MelodyEvent]:
        return [event for event in self.events if event.is_attack]
