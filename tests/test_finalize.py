"""Tests for the playback view built from finished melodies."""

import importlib
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

finalize = importlib.import_module("sightsinging_generator.finalize")
models = importlib.import_module("sightsinging_generator.models")
errors = importlib.import_module("sightsinging_generator.errors")

MelodyEvent = models.MelodyEvent


def test_tied_repeat_sounds_as_one_note():
    notes = [MelodyEvent(60, 1, 1, 2), MelodyEvent(60, 1, 3, 2, tie_stop=True)]
    playback = finalize.render_playback(notes, 4)
    assert [(p.midi, p.start_beats, p.duration_beats) for p in playback] == [(60, 0, 4)]


def test_untied_repeat_is_restruck():
    notes = [MelodyEvent(60, 1, 1, 2), MelodyEvent(60, 1, 3, 2)]
    assert len(finalize.render_playback(notes, 4)) == 2


def test_start_beats_follow_the_meter():
    notes = [MelodyEvent(60, 1, 1, 3), MelodyEvent(62, 2, 1, 3)]
    playback = finalize.render_playback(notes, 3)
    assert [p.start_beats for p in playback] == [0, 3]


def test_mismatch_between_views_raises(monkeypatch):
    notes = [MelodyEvent(60, 1, 1, 4)]
    fake = [finalize.PlaybackEvent(62, 1, 1, 4, 0)]
    monkeypatch.setattr(finalize, "merge_tied_playback", lambda events, bpm: fake)
    with pytest.raises(errors.PlaybackMismatchError):
        finalize.render_playback(notes, 4)


def test_playback_array_drops_unpaired_half_onset():
    notes = [MelodyEvent(60, 1, 1, 1.5), MelodyEvent(62, 1, 2.5, 2.5)]
    result = finalize.build_playback_array(notes, 4)
    assert [(e.midi, e.onset_beat, e.duration_beats) for e in result] == [(60, 1, 4)]
    assert notes[0].duration_beats == 1.5


def test_stray_trailing_eighth_removed_in_three_four():
    notes = [MelodyEvent(60, 1, 1, 1), MelodyEvent(62, 1, 2, 1.5), MelodyEvent(64, 1, 3.5, 0.5)]
    result = finalize.remove_stray_phrase_start_trailing_eighths(notes, 4, 3)
    assert [(e.midi, e.onset_beat, e.duration_beats) for e in result] == [(60, 1, 1), (62, 2, 2)]


def test_lone_three_four_attack_becomes_tied_quarter_and_half():
    result = finalize.build_playback_array([MelodyEvent(64, 1, 1, 3)], 3)
    assert [(e.midi, e.onset_beat, e.duration_beats) for e in result] == [(64, 1, 1), (64, 2, 2)]
    assert result[0].tie_start and result[1].tie_stop
    playback = finalize.render_playback(result, 3)
    assert [(p.midi, p.start_beats, p.duration_beats) for p in playback] == [(64, 0, 3)]
