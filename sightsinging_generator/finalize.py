"""Final clean-up of a melody and its playback view.

The notation view is the list of attacks; the playback view merges tied
repeats into single sounding notes.  :func:`render_playback` builds the
playback view and checks that every sounding note starts where an attack
in the notation does, raising :class:`PlaybackMismatchError` otherwise.

Example
-------
>>> from sightsinging_generator.models import MelodyEvent
>>> notes = [MelodyEvent(60, 1, 1, 2), MelodyEvent(60, 1, 3, 2, tie_stop=True)]
>>> [p.duration_beats for p in render_playback(notes, 4)]
[4]
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Sequence

from .errors import PlaybackMismatchError
from .models import FunctionTag, MelodyEvent, RepairLogEntry
from .repair import attack_events, demote_event, is_legal_duration, split_unrepresentable_measure

__all__ = [
    "PlaybackEvent",
    "build_playback_array",
    "remove_stray_phrase_start_trailing_eighths",
    "merge_tied_playback",
    "render_playback",
]

logger = logging.getLogger(__name__)

_EPS = 1e-3
_DURATION_GUARD = 16


@dataclass
class PlaybackEvent:
    """A sounding note; ``start_beats`` counts from the first downbeat."""

    midi: int
    measure: int
    onset_beat: float
    duration_beats: float
    start_beats: float


def build_playback_array(events: Sequence[MelodyEvent], beats_per_measure: int) -> List[MelodyEvent]:
    """Return copies of the attacks with durations recomputed from onsets.

    Half-beat attacks without their on-beat partner are dropped, then the
    attack following any note of illegal length is removed until every
    duration in the measure is legal.  A 3/4 bar left with one attack is
    split into a quarter tied to a half.
    """

    bpm = beats_per_measure
    result: List[MelodyEvent] = []
    attacks = [e.copy() for e in attack_events(events)]
    for measure in sorted({e.measure for e in attacks}):
        in_measure = [e for e in attacks if e.measure == measure]
        onsets = {round(e.onset_beat, 3) for e in in_measure}
        in_measure = [
            e
            for e in in_measure
            if abs(round(e.onset_beat, 3) % 1 - 0.5) >= _EPS or round(e.onset_beat - 0.5, 3) in onsets
        ]

        for _ in range(_DURATION_GUARD):
            if len(in_measure) <= 1:
                break
            bad = None
            for i, event in enumerate(in_measure):
                next_onset = in_measure[i + 1].onset_beat if i + 1 < len(in_measure) else bpm + 1
                if not is_legal_duration(round(next_onset - event.onset_beat, 3), bpm):
                    bad = i
                    break
            if bad is None:
                break
            dropped = in_measure.pop(bad + 1 if bad + 1 < len(in_measure) else bad)
            logger.debug("[finalize] drop m%s onset=%s", measure, dropped.onset_beat)

        split_log: List[RepairLogEntry] = []
        split_unrepresentable_measure(in_measure, measure, bpm, split_log)
        if split_log:
            logger.debug("[finalize] %s", split_log[0])
            in_measure.sort(key=lambda e: e.onset_beat)

        for i, event in enumerate(in_measure):
            next_onset = in_measure[i + 1].onset_beat if i + 1 < len(in_measure) else bpm + 1
            event.duration_beats = round(next_onset - event.onset_beat, 3)
            event.is_attack = True
            result.append(event)
    return result


def remove_stray_phrase_start_trailing_eighths(
    events: Sequence[MelodyEvent], phrase_length_measures: int, beats_per_measure: int
) -> List[MelodyEvent]:
    """Drop an unpaired beat-3.5 attack from the first measure of each 3/4 phrase."""

    working = [e.copy() for e in events]
    if beats_per_measure != 3:
        return working
    last_measure = max((e.measure for e in working), default=0)
    for measure in range(1, last_measure + 1, max(1, phrase_length_measures)):
        in_measure = [e for e in attack_events(working) if e.measure == measure]
        at_three = next((e for e in in_measure if abs(e.onset_beat - 3) < _EPS), None)
        trailing = next((e for e in in_measure if abs(e.onset_beat - 3.5) < _EPS), None)
        if trailing is None:
            continue
        if (
            at_three is not None
            and abs(at_three.duration_beats - 0.5) < _EPS
            and abs(trailing.duration_beats - 0.5) < _EPS
        ):
            continue
        demote_event(trailing)
        trailing.duration_beats = 0
    return build_playback_array(working, beats_per_measure)


def merge_tied_playback(events: Sequence[MelodyEvent], beats_per_measure: int) -> List[PlaybackEvent]:
    bpm = max(1, beats_per_measure)
    playback: List[PlaybackEvent] = []
    for attack in attack_events(events):
        start = (attack.measure - 1) * bpm + attack.onset_beat - 1
        prev = playback[-1] if playback else None
        if (
            prev is not None
            and prev.midi == attack.midi
            and abs(prev.start_beats + prev.duration_beats - start) < 1e-6
            and (attack.tie_stop or attack.tie_start or attack.has_tag(FunctionTag.CADENCE))
        ):
            prev.duration_beats += attack.duration_beats
            continue
        playback.append(PlaybackEvent(attack.midi, attack.measure, attack.onset_beat, attack.duration_beats, start))
    return playback


def render_playback(events: Sequence[MelodyEvent], beats_per_measure: int) -> List[PlaybackEvent]:
    """Return the merged playback view after checking it against the attacks.

    Raises
    ------
    PlaybackMismatchError
        If the playback view has more notes than the notation or a sounding
        note has no attack at the same start and pitch.
    """

    bpm = max(1, beats_per_measure)
    playback = merge_tied_playback(events, bpm)
    attacks = attack_events(events)
    if len(playback) > len(attacks):
        raise PlaybackMismatchError(f"pass11_assert_event_count playback={len(playback)} notation={len(attacks)}")
    starts = {((a.measure - 1) * bpm + a.onset_beat - 1, a.midi) for a in attacks}
    for note in playback:
        if not any(abs(start - note.start_beats) < 1e-6 and midi == note.midi for start, midi in starts):
            raise PlaybackMismatchError(f"pass11_assert_timing_mismatch midi={note.midi} start={note.start_beats}")
    return playback
